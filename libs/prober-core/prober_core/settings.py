from prober_core.snapshot import SEGMENT_FIELDS

#
# Per-probe execution limits
#

TIMEOUT_PER_PROBE = 10.0  # seconds, handed to Runner.execute
JOIN_GRACE_PERIOD = 5.0  # seconds on top of the probe timeout before a runner is abandoned

#
# Orchestrator policy
#

# segment values depend on where each environment loads the image
IGNORED_FIELDS_DEFAULT = SEGMENT_FIELDS
MAX_CONSECUTIVE_BACKEND_FATAL = 3
CONNECTION_RETRIES_PER_ITERATION = 1
PROGRESS_LOG_INTERVAL = 100  # iterations

#
# Corpus layout
#

CORPUS_FILE_NAME = "mismatches.jsonl"
REPRODUCER_DIR_NAME = "reproducers"

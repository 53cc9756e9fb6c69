#
# Guest agent endpoint
#

DEFAULT_AGENT_URL = "http://127.0.0.1:8420"
UPLOAD_PATH = "/probes/{name}"
RUN_PATH = "/probes/{name}/run"
OUTPUT_PATH = "/probes/{name}/output"

PROBE_NAME = "PROBE.COM"

#
# Timeouts
#

CONNECT_TIMEOUT = 3.0  # seconds
TRANSFER_TIMEOUT = 10.0  # seconds for upload and download
RUN_GRACE_PERIOD = 2.0  # seconds on top of the probe timeout for the run request

# status codes the agent uses when the probe itself overran its timeout
TIMEOUT_STATUS_CODES = frozenset([408, 504])

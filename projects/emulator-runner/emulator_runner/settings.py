PROBE_NAME = "PROBE.COM"
CAPTURE_NAME = "PROBE.OUT"
WORK_DIR_PREFIX = "prober-emu-"

#
# Command templates
#
# Placeholders: {work_dir} (host directory holding the probe), {probe} and
# {capture} (file names inside it).
#

DOSEMU2_COMMAND = ("dosemu", "-dumb", "-quiet", "-td", "-K", "{work_dir}", "-E", "{probe}")

DOSBOX_X_COMMAND = (
    "dosbox-x",
    "-silent",
    "-nogui",
    "-nomenu",
    "-exit",
    "-c",
    "MOUNT C {work_dir}",
    "-c",
    "C:",
    "-c",
    "{probe} > {capture}",
    "-c",
    "EXIT",
)

#
# Host side
#

VBOXMANAGE = "VBoxManage"
COMMAND_GRACE_PERIOD = 5.0  # seconds on top of the probe timeout for each VBoxManage call
TRANSFER_TIMEOUT = 30.0  # seconds for copyto / copyfrom / showvminfo
# `guestcontrol run` exit code when the guest process outlived --timeout
GUEST_TIMEOUT_EXIT_CODE = 19

#
# Guest side
#

GUEST_USERNAME = "prober"
GUEST_PASSWORD = "prober"
GUEST_DIR = "/tmp/prober"
GUEST_SHELL = "/bin/sh"
PROBE_NAME = "PROBE.COM"
OUTPUT_NAME = "PROBE.OUT"

# the guest shell redirects the probe's stdout into the output file
GUEST_RUN_TEMPLATE = "cd {guest_dir} && dosemu -dumb -quiet {probe} > {output}"

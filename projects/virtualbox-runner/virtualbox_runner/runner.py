import logging
import shutil
import tempfile
from pathlib import Path, PurePosixPath

from prober_core.kinds import RunnerErrorKind
from prober_core.probe import ProbeProgram
from prober_core.runner import Runner
from prober_core.settings import TIMEOUT_PER_PROBE
from prober_utils.cmd import ExecStatus, invoke_command
from prober_utils.file import clean_dir, create_dir, create_file
from virtualbox_runner.settings import (
    COMMAND_GRACE_PERIOD,
    GUEST_DIR,
    GUEST_PASSWORD,
    GUEST_RUN_TEMPLATE,
    GUEST_SHELL,
    GUEST_TIMEOUT_EXIT_CODE,
    GUEST_USERNAME,
    OUTPUT_NAME,
    PROBE_NAME,
    TRANSFER_TIMEOUT,
    VBOXMANAGE,
)

logger = logging.getLogger("fuzzer")


class VirtualBoxRunner(Runner):
    """Backend driving a running VirtualBox guest through `VBoxManage
    guestcontrol`. The machine has to be up with guest additions installed."""

    name = "virtualbox"

    def __init__(
        self,
        vm_name: str,
        timeout: float = TIMEOUT_PER_PROBE,
        username: str = GUEST_USERNAME,
        password: str = GUEST_PASSWORD,
        guest_dir: str = GUEST_DIR,
        run_template: str = GUEST_RUN_TEMPLATE,
        work_dir: Path | None = None,
        vboxmanage: str = VBOXMANAGE,
    ):
        super().__init__(timeout)
        self.vm_name = vm_name
        self.username = username
        self.password = password
        self.guest_dir = PurePosixPath(guest_dir)
        self.run_template = run_template
        self.vboxmanage = vboxmanage
        self.work_dir = work_dir
        self._owns_work_dir = work_dir is None

    # ------------------------------- commands ------------------------------- #

    def _guestcontrol(self, *args: str) -> list[str]:
        return [
            self.vboxmanage,
            "guestcontrol",
            self.vm_name,
            "--username",
            self.username,
            "--password",
            self.password,
            *args,
        ]

    def showvminfo_command(self) -> list[str]:
        return [self.vboxmanage, "showvminfo", self.vm_name, "--machinereadable"]

    def copyto_command(self, host_file: Path) -> list[str]:
        return self._guestcontrol("copyto", "--target-directory", str(self.guest_dir), str(host_file))

    def run_command(self, timeout: float) -> list[str]:
        script = self.run_template.format(
            guest_dir=self.guest_dir,
            probe=PROBE_NAME,
            output=self.guest_dir / OUTPUT_NAME,
        )
        return self._guestcontrol(
            "run",
            "--exe",
            GUEST_SHELL,
            "--timeout",
            str(int(timeout * 1000)),
            "--",
            GUEST_SHELL,
            "-c",
            script,
        )

    def copyfrom_command(self) -> list[str]:
        return self._guestcontrol(
            "copyfrom", "--target-directory", str(self.work_dir), str(self.guest_dir / OUTPUT_NAME)
        )

    def closesession_command(self) -> list[str]:
        return self._guestcontrol("closesession", "--all")

    # ------------------------------- lifecycle ------------------------------ #

    def _open(self):
        if self.work_dir is None:
            self.work_dir = Path(tempfile.mkdtemp(prefix="prober-vbox-"))
        create_dir(self.work_dir)

        status = invoke_command(self.showvminfo_command(), timeout=TRANSFER_TIMEOUT, is_log_debug=False)
        if status.is_timeout or status.is_failure():
            raise self._error(RunnerErrorKind.CONNECTION_FAILED, f"cannot query vm {self.vm_name}: {status.stderr}")
        if 'VMState="running"' not in status.stdout:
            raise self._error(RunnerErrorKind.CONNECTION_FAILED, f"vm {self.vm_name} is not running")

    def _close(self):
        if self._owns_work_dir and self.work_dir is not None:
            shutil.rmtree(self.work_dir, ignore_errors=True)
            self.work_dir = None

    def _close_guest_sessions(self):
        status = invoke_command(self.closesession_command(), timeout=TRANSFER_TIMEOUT)
        if status.is_failure():
            logger.warning(f"[{self.name}] unable to close guest sessions: {status.stderr}")

    # ------------------------------- execution ------------------------------ #

    def _invoke(self, command: list[str], timeout: float, step: str) -> ExecStatus:
        status = invoke_command(command, timeout=timeout)
        if status.is_timeout:
            self._close_guest_sessions()
            raise self._error(RunnerErrorKind.EXECUTION_TIMEOUT, f"{step} did not finish within {timeout:.2f}s")
        return status

    def _run(self, probe: ProbeProgram, timeout: float) -> bytes:
        clean_dir(self.work_dir)
        host_probe = self.work_dir / PROBE_NAME
        create_file(host_probe, probe.image)

        status = self._invoke(self.copyto_command(host_probe), TRANSFER_TIMEOUT, "copyto")
        if status.is_failure():
            raise self._error(RunnerErrorKind.BACKEND_FATAL, f"copyto failed: {status.stderr}")

        status = self._invoke(self.run_command(timeout), timeout + COMMAND_GRACE_PERIOD, "run")
        if status.returncode == GUEST_TIMEOUT_EXIT_CODE:
            self._close_guest_sessions()
            raise self._error(RunnerErrorKind.EXECUTION_TIMEOUT, f"guest process did not finish within {timeout:.2f}s")
        if status.is_failure():
            raise self._error(RunnerErrorKind.BACKEND_FATAL, f"guest run exited with {status.returncode}: {status.stderr}")

        status = self._invoke(self.copyfrom_command(), TRANSFER_TIMEOUT, "copyfrom")
        host_output = self.work_dir / OUTPUT_NAME
        if status.is_failure() or not host_output.exists():
            raise self._error(RunnerErrorKind.MALFORMED_OUTPUT, f"guest produced no {OUTPUT_NAME}")
        return host_output.read_bytes()

import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

from prober_core.kinds import RunnerErrorKind
from prober_core.probe import ProbeProgram
from prober_core.runner import Runner
from prober_core.settings import TIMEOUT_PER_PROBE
from prober_utils.cmd import invoke_command
from prober_utils.file import create_dir, create_file, path_to_binary
from emulator_runner.settings import (
    CAPTURE_NAME,
    DOSBOX_X_COMMAND,
    DOSEMU2_COMMAND,
    PROBE_NAME,
    WORK_DIR_PREFIX,
)

logger = logging.getLogger("fuzzer")


@dataclass(frozen=True)
class EmulatorPreset:
    command: tuple[str, ...]
    # read the output block from this file in the work directory instead of stdout
    capture_file: str | None = None

    def render(self, work_dir: Path) -> list[str]:
        return [
            part.format(work_dir=work_dir, probe=PROBE_NAME, capture=self.capture_file or CAPTURE_NAME)
            for part in self.command
        ]


PRESETS = {
    "dosemu2": EmulatorPreset(DOSEMU2_COMMAND),
    "dosbox-x": EmulatorPreset(DOSBOX_X_COMMAND, capture_file=CAPTURE_NAME),
}


class EmulatorRunner(Runner):
    """Backend launching a DOS emulator once per probe."""

    name = "emulator"

    def __init__(
        self,
        preset: str | EmulatorPreset = "dosemu2",
        timeout: float = TIMEOUT_PER_PROBE,
        work_root: Path | None = None,
        keep_work_dirs: bool = False,
        memory: int | None = None,
    ):
        super().__init__(timeout)
        if isinstance(preset, str):
            if preset not in PRESETS:
                raise ValueError(f"unknown emulator preset {preset!r}, expected one of {sorted(PRESETS)}")
            self.name = f"emulator:{preset}"
            preset = PRESETS[preset]
        self.preset = preset
        self.work_root = work_root
        self.keep_work_dirs = keep_work_dirs
        self.memory = memory

    def _open(self):
        try:
            path_to_binary(self.preset.command[0])
        except FileNotFoundError as e:
            raise self._error(RunnerErrorKind.BACKEND_FATAL, str(e)) from e
        if self.work_root is not None:
            create_dir(self.work_root)

    def _run(self, probe: ProbeProgram, timeout: float) -> bytes:
        work_dir = Path(tempfile.mkdtemp(prefix=WORK_DIR_PREFIX, dir=self.work_root))
        try:
            return self._run_in(work_dir, probe, timeout)
        finally:
            if self.keep_work_dirs:
                logger.debug(f"[{self.name}] keeping {work_dir}")
            else:
                shutil.rmtree(work_dir, ignore_errors=True)

    def _run_in(self, work_dir: Path, probe: ProbeProgram, timeout: float) -> bytes:
        create_file(work_dir / PROBE_NAME, probe.image)
        status = invoke_command(
            self.preset.render(work_dir),
            cwd=work_dir,
            timeout=timeout,
            memory=self.memory,
            explicit_clean_zombies=True,
        )
        if status.is_timeout:
            raise self._error(RunnerErrorKind.EXECUTION_TIMEOUT, f"emulator did not exit within {timeout:.2f}s")

        if self.preset.capture_file is None:
            output = status.stdout_raw
        else:
            capture = work_dir / self.preset.capture_file
            if not capture.exists():
                raise self._error(
                    RunnerErrorKind.MALFORMED_OUTPUT, f"emulator left no {self.preset.capture_file}"
                )
            output = capture.read_bytes()

        if status.is_failure() and not output:
            raise self._error(
                RunnerErrorKind.BACKEND_FATAL, f"emulator exited with {status.returncode}: {status.stderr[:200]}"
            )
        return output

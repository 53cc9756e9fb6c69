import sys

import pytest

from prober_core.kinds import RunnerErrorKind
from prober_core.probe import build
from prober_core.runner import RunnerError
from prober_core.snapshot import CpuStateSnapshot, encode_output_block
from prober_core.x86 import Instruction
from emulator_runner.runner import PRESETS, EmulatorPreset, EmulatorRunner
from emulator_runner.settings import CAPTURE_NAME, PROBE_NAME

STATE = CpuStateSnapshot(ax=0x0018, bx=0x0002, flags=0x0202)
BLOCK = encode_output_block(STATE).hex()

# stand-in emulators; commands go through str.format, so no braces
PRINT_BLOCK = "import os, sys; assert os.path.exists(sys.argv[2]); sys.stdout.buffer.write(bytes.fromhex(sys.argv[1]))"
CAPTURE_BLOCK = "import sys; open(sys.argv[2], 'wb').write(bytes.fromhex(sys.argv[1]))"


def python_preset(code: str, *args: str, capture_file: str | None = None) -> EmulatorPreset:
    return EmulatorPreset((sys.executable, "-c", code, *args), capture_file=capture_file)


@pytest.fixture
def probe():
    return build([Instruction.from_asm("idiv bl")], {"ax": 0x30, "bx": 0x2})


def test_builtin_presets_render_paths(tmp_path):
    dosemu = PRESETS["dosemu2"].render(tmp_path)
    assert dosemu[0] == "dosemu"
    assert str(tmp_path) in dosemu and PROBE_NAME in dosemu

    dosbox = PRESETS["dosbox-x"].render(tmp_path)
    assert f"MOUNT C {tmp_path}" in dosbox
    assert f"{PROBE_NAME} > {CAPTURE_NAME}" in dosbox
    assert PRESETS["dosbox-x"].capture_file == CAPTURE_NAME


def test_output_block_read_from_stdout(probe, tmp_path):
    runner = EmulatorRunner(python_preset(PRINT_BLOCK, BLOCK, "{probe}"), work_root=tmp_path)
    assert runner.execute(probe) == STATE
    # per-probe work directories are removed
    assert list(tmp_path.iterdir()) == []


def test_output_block_read_from_capture_file(probe, tmp_path):
    preset = python_preset(CAPTURE_BLOCK, BLOCK, "{capture}", capture_file=CAPTURE_NAME)
    runner = EmulatorRunner(preset, work_root=tmp_path, keep_work_dirs=True)
    assert runner.execute(probe) == STATE

    (work_dir,) = tmp_path.iterdir()
    assert (work_dir / PROBE_NAME).read_bytes() == probe.image
    assert (work_dir / CAPTURE_NAME).exists()


def test_nonzero_exit_with_output_is_accepted(probe):
    code = PRINT_BLOCK + "; sys.exit(3)"
    assert EmulatorRunner(python_preset(code, BLOCK, "{probe}")).execute(probe) == STATE


@pytest.mark.parametrize(
    "preset, kind",
    [
        (python_preset("import time; time.sleep(5)"), RunnerErrorKind.EXECUTION_TIMEOUT),
        (python_preset("import sys; sys.exit(3)"), RunnerErrorKind.BACKEND_FATAL),
        (python_preset("pass", capture_file=CAPTURE_NAME), RunnerErrorKind.MALFORMED_OUTPUT),
        (python_preset("print('Bad command or file name')"), RunnerErrorKind.MALFORMED_OUTPUT),
        (EmulatorPreset(("definitely-not-a-dos-emulator",)), RunnerErrorKind.BACKEND_FATAL),
    ],
)
def test_failures_are_classified(probe, preset, kind):
    runner = EmulatorRunner(preset, timeout=0.5)
    with pytest.raises(RunnerError) as exc_info:
        runner.execute(probe)
    assert exc_info.value.kind == kind


def test_unknown_preset_is_rejected():
    with pytest.raises(ValueError, match="unknown emulator preset"):
        EmulatorRunner("qemu")
    assert EmulatorRunner("dosbox-x").name == "emulator:dosbox-x"

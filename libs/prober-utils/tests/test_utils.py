import logging
import sys

import pytest

from prober_utils.cmd import TIMEOUT_RETURNCODE, ExecStatus, invoke_command, make_printable
from prober_utils.file import append_line, clean_dir, create_file, path_to_binary
from prober_utils.log import LOGGER_NAME, configure_logger

# ---------------------------------------------------------------------------- #
#                                    Commands                                  #
# ---------------------------------------------------------------------------- #


def test_invoke_command_captures_output():
    status = invoke_command([sys.executable, "-c", "print('hello')"])
    assert not status.is_failure()
    assert status.stdout.strip() == "hello"
    assert status.stdout_raw.strip() == b"hello"
    assert not status.is_timeout


def test_invoke_command_passes_input_and_env():
    code = "import os, sys; sys.stdout.write(os.environ['PROBER_TEST'] + sys.stdin.read())"
    status = invoke_command([sys.executable, "-c", code], env={"PROBER_TEST": "x"}, input_data=b"yz")
    assert status.stdout_raw == b"xyz"


def test_invoke_command_reports_timeout():
    status = invoke_command(
        [sys.executable, "-c", "import time; time.sleep(5)"], timeout=0.5, explicit_clean_zombies=True
    )
    assert status.is_timeout
    assert status.returncode == TIMEOUT_RETURNCODE
    assert status.is_failure()
    assert status.delta_time < 5


def test_exec_status_is_readable():
    status = ExecStatus("run probe", "out", "err", b"out", b"err", 3, 0.25)
    text = str(status)
    assert "returncode: 3" in text
    assert "time: 0.250s" in text


def test_make_printable_keeps_line_breaks():
    assert make_printable(b"a\x00b\r\nc\x1b") == "ab\r\nc"
    assert make_printable(None) == ""


# ---------------------------------------------------------------------------- #
#                                     Files                                    #
# ---------------------------------------------------------------------------- #


def test_file_helpers(tmp_path):
    create_file(tmp_path / "a" / "probe.com", b"\x90\xc3")
    create_file(tmp_path / "a" / "probe.asm", "nop\n")
    append_line(tmp_path / "log.jsonl", "{}")
    append_line(tmp_path / "log.jsonl", "{}\n")

    assert (tmp_path / "a" / "probe.com").read_bytes() == b"\x90\xc3"
    assert (tmp_path / "log.jsonl").read_text() == "{}\n{}\n"

    clean_dir(tmp_path)
    assert tmp_path.exists()
    assert list(tmp_path.iterdir()) == []

    clean_dir(tmp_path / "fresh")
    assert (tmp_path / "fresh").is_dir()


def test_path_to_binary():
    assert path_to_binary("sh").name == "sh"
    with pytest.raises(FileNotFoundError):
        path_to_binary("definitely-not-a-prober-binary")


# ---------------------------------------------------------------------------- #
#                                    Logging                                   #
# ---------------------------------------------------------------------------- #


def test_configure_logger_does_not_stack_handlers():
    logger = configure_logger(2)
    configure_logger(0, prefix="other")
    console = [handler for handler in logger.handlers if getattr(handler, "_prober_console", False)]
    assert logger is logging.getLogger(LOGGER_NAME)
    assert len(console) == 1
    assert console[0].level == logging.ERROR

import logging
import os
import resource
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import psutil

logger = logging.getLogger("fuzzer")

TIMEOUT_RETURNCODE = 124

# ---------------------------------------------------------------------------- #
#                               Helper Functions                               #
# ---------------------------------------------------------------------------- #


# build a table mapping all non-printable characters to None
LINE_BREAK_CHARACTERS = set(["\n", "\r"])
NO_PRINT_TRANS_TABLE = {
    i: None
    for i in range(0, sys.maxunicode + 1)
    if not chr(i).isprintable() and not chr(i) in LINE_BREAK_CHARACTERS
}


def make_printable(data: bytes | None) -> str:
    """Decode captured output for logging, dropping non-printable characters."""
    text = "" if data is None else data.decode("utf-8", errors="ignore")
    return text.translate(NO_PRINT_TRANS_TABLE)


def generate_preexec_fn_memory_limit(limit_memory: int | None) -> Callable[[], Any] | None:
    if limit_memory is None:
        return None
    max_virtual_memory = limit_memory * 1024 * 1024  # limit_memory in MB
    return lambda: resource.setrlimit(
        resource.RLIMIT_AS, (max_virtual_memory, resource.RLIM_INFINITY)
    )


# ---------------------------------------------------------------------------- #
#                            Execution Status Class                            #
# ---------------------------------------------------------------------------- #


@dataclass
class ExecStatus:
    command: str
    stdout: str
    stderr: str
    stdout_raw: bytes
    stderr_raw: bytes
    returncode: int
    delta_time: float
    is_timeout: bool = False
    cwd: Path | None = None

    def is_failure(self):
        return not self.returncode == 0

    def __str__(self):
        return f"""
command   : {self.command}
returncode: {self.returncode}
stdout:
{self.stdout}
stderr:
{self.stderr}
time: {self.delta_time:.3f}s
"""


# ---------------------------------------------------------------------------- #
#                       Core Command Invocation Function                       #
# ---------------------------------------------------------------------------- #


def _kill_process_group(process: subprocess.Popen):
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def invoke_command(
    command: list[str],
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
    memory: int | None = None,
    input_data: bytes | None = None,
    is_log_debug: bool = True,
    explicit_clean_zombies: bool = False,
) -> ExecStatus:
    """Run `command` and capture its raw output.

    Emulators and hypervisor front ends tend to spawn helpers, so the command
    runs in its own session and the whole group is killed on timeout. A
    timeout is reported through `is_timeout` and return code 124, never as an
    exception.
    """

    # ------------------------- debug initial information ------------------------ #

    logger.debug("run command: " + " ".join(command))
    logger.debug(f"  - cwd     : {cwd}")
    logger.debug(f"  - timeout : {timeout}")
    logger.debug(f"  - memory  : {memory}")

    # ------------ combine current environment with passed environment ----------- #

    combined_env = None
    if env is not None:
        combined_env = os.environ.copy()
        combined_env.update(env)

    # ----------------- preprocessing for zombie process cleanup ----------------- #

    pre_call_active_children = None
    if explicit_clean_zombies:
        pre_call_active_children = set(p.pid for p in psutil.Process().children(recursive=True))

    # ------------------------------ call subprocess ----------------------------- #

    start_time = time.time()
    is_timeout = False
    process = subprocess.Popen(
        command,
        close_fds=True,
        shell=False,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        cwd=cwd,
        env=combined_env,
        preexec_fn=generate_preexec_fn_memory_limit(memory),
        start_new_session=True,
    )
    try:
        stdout_bytes, stderr_bytes = process.communicate(input=input_data, timeout=timeout)
        returncode = process.returncode
    except subprocess.TimeoutExpired:
        _kill_process_group(process)
        stdout_bytes, stderr_bytes = process.communicate()
        returncode = TIMEOUT_RETURNCODE
        is_timeout = True

    delta_time = time.time() - start_time

    # ------------------------------ process output ------------------------------ #

    stdout_bytes = stdout_bytes or b""
    stderr_bytes = stderr_bytes or b""
    stdout, stderr = make_printable(stdout_bytes), make_printable(stderr_bytes)

    logger.debug(f"  => exit {returncode}{' (timeout)' if is_timeout else ''} after {delta_time:.3f}s")
    if is_log_debug:
        logger.debug("========== START STDOUT ==========")
        logger.debug(stdout)
        logger.debug("=========== END STDOUT ===========")

        logger.debug("========== START STDERR ==========")
        logger.debug(stderr)
        logger.debug("=========== END STDERR ===========")

    status = ExecStatus(
        " ".join(command),
        stdout,
        stderr,
        stdout_bytes,
        stderr_bytes,
        returncode,
        delta_time,
        is_timeout,
        cwd,
    )

    # ----------------- postprocessing for zombie process cleanup ---------------- #

    if explicit_clean_zombies:
        assert pre_call_active_children is not None, "unexpected value of child process list"

        post_call_active_children = psutil.Process().children(recursive=True)
        possible_zombies = [
            p for p in post_call_active_children if p.pid not in pre_call_active_children
        ]

        for possible_zombie in possible_zombies:
            z_pid = possible_zombie.pid
            logger.debug(f"possible zombie detected, waiting for {z_pid} ...")
            try:
                if possible_zombie.status() == psutil.STATUS_ZOMBIE:
                    possible_zombie.wait()
                elif possible_zombie.is_running():
                    possible_zombie.terminate()
                    possible_zombie.wait(timeout=5)
            except (psutil.NoSuchProcess, psutil.TimeoutExpired):
                logger.error(f"unable to clean up possible zombie {z_pid}")

    return status

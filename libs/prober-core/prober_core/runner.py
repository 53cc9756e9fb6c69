import logging
import threading
from abc import ABC, abstractmethod

from prober_core.kinds import RunnerErrorKind
from prober_core.probe import ProbeProgram
from prober_core.settings import TIMEOUT_PER_PROBE
from prober_core.snapshot import CpuStateSnapshot, OutputBlockError, decode_output_block

logger = logging.getLogger("fuzzer")

# kinds after which the backend resource is torn down before the next probe
RESET_ON = frozenset(
    [RunnerErrorKind.CONNECTION_FAILED, RunnerErrorKind.EXECUTION_TIMEOUT, RunnerErrorKind.BACKEND_FATAL]
)


class RunnerError(Exception):
    kind: RunnerErrorKind
    backend: str

    def __init__(self, kind: RunnerErrorKind, backend: str, message: str):
        super().__init__(f"[{backend}] {kind}: {message}")
        self.kind = kind
        self.backend = backend


class Runner(ABC):
    """Uniform handle on one execution environment.

    A runner is opened lazily on the first `execute`, reused for many probes
    and closed at the end of a run. Calls on the same instance never overlap.
    Backends only implement `_run`, which returns the raw byte stream captured
    from the probe; decoding the output block is shared by all of them.
    """

    name: str = "runner"
    timeout: float

    def __init__(self, timeout: float = TIMEOUT_PER_PROBE):
        self.timeout = timeout
        # reentrant: execute resets the runner while holding it
        self._lock = threading.RLock()
        self._is_open = False

    # ------------------------------ lifecycle ------------------------------ #

    def open(self):
        if not self._is_open:
            logger.debug(f"[{self.name}] opening runner")
            self._open()
            self._is_open = True

    def close(self):
        with self._lock:
            if self._is_open:
                logger.debug(f"[{self.name}] closing runner")
                self._is_open = False
                self._close()

    def reset(self):
        """Tear the backend resource down; the next probe opens a fresh one."""
        logger.info(f"[{self.name}] resetting runner")
        try:
            self.close()
        except RunnerError as e:
            logger.warning(f"[{self.name}] error while closing for reset: {e}")

    @property
    def is_open(self) -> bool:
        return self._is_open

    def __enter__(self) -> "Runner":
        self.open()
        return self

    def __exit__(self, *exc_info):
        self.close()

    # ------------------------------ execution ------------------------------ #

    def execute(self, probe: ProbeProgram, timeout: float | None = None) -> CpuStateSnapshot:
        timeout = self.timeout if timeout is None else timeout
        with self._lock:
            try:
                self.open()
                output = self._run(probe, timeout)
                try:
                    snapshot = decode_output_block(output)
                except OutputBlockError as e:
                    raise RunnerError(RunnerErrorKind.MALFORMED_OUTPUT, self.name, str(e)) from e
            except RunnerError as e:
                if e.kind in RESET_ON:
                    self.reset()
                raise

        if snapshot.trapped:
            logger.debug(f"[{self.name}] probe trapped through vector {snapshot.trap}")
        return snapshot

    def _open(self):
        pass

    def _close(self):
        pass

    @abstractmethod
    def _run(self, probe: ProbeProgram, timeout: float) -> bytes:
        """Load and run `probe`, return everything it wrote to its output."""
        raise NotImplementedError()

    def _error(self, kind: RunnerErrorKind, message: str) -> RunnerError:
        return RunnerError(kind, self.name, message)

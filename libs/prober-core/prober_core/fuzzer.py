import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from prober_core.compare import ALL_FLAGS_MASK, MismatchReport, compare
from prober_core.corpus import Corpus, CorpusEntry, load_corpus
from prober_core.generator import FuzzingCase
from prober_core.kinds import IterationStatus, RunnerErrorKind
from prober_core.probe import DEFAULT_FLAGS, BuildError, ProbeBuilder, ProbeProgram
from prober_core.runner import Runner, RunnerError
from prober_core.settings import (
    CONNECTION_RETRIES_PER_ITERATION,
    IGNORED_FIELDS_DEFAULT,
    JOIN_GRACE_PERIOD,
    MAX_CONSECUTIVE_BACKEND_FATAL,
    PROGRESS_LOG_INTERVAL,
    TIMEOUT_PER_PROBE,
)
from prober_core.snapshot import CpuStateSnapshot
from prober_core.x86 import TF, Instruction, undefined_flags

logger = logging.getLogger("fuzzer")

_CARRIED_REGISTERS = ("ax", "bx", "cx", "dx", "si", "di", "bp")


@dataclass
class FuzzerConfig:
    iterations: int | None = None
    time_budget: float | None = None  # seconds
    execution_timeout: float = TIMEOUT_PER_PROBE
    concurrent: bool = True
    ignored_fields: tuple[str, ...] = IGNORED_FIELDS_DEFAULT
    minimize: bool = True
    max_backend_fatal: int = MAX_CONSECUTIVE_BACKEND_FATAL
    connection_retries: int = CONNECTION_RETRIES_PER_ITERATION
    out_dir: Path | None = None
    join_grace_period: float = JOIN_GRACE_PERIOD


@dataclass
class FuzzStats:
    iterations: int = 0
    matches: int = 0
    mismatches: int = 0
    build_errors: int = 0
    execution_errors: dict[str, int] = field(default_factory=dict)
    aborted: bool = False
    elapsed: float = 0.0

    @property
    def total_execution_errors(self) -> int:
        return sum(self.execution_errors.values())

    def record_error(self, kind: RunnerErrorKind):
        self.execution_errors[str(kind)] = self.execution_errors.get(str(kind), 0) + 1

    def __str__(self) -> str:
        return (
            f"{self.iterations} iterations in {self.elapsed:.1f}s: {self.matches} matches, "
            f"{self.mismatches} mismatches, {self.build_errors} build errors, "
            f"{self.total_execution_errors} execution errors"
            + (" (aborted)" if self.aborted else "")
        )


@dataclass(frozen=True)
class IterationResult:
    case: FuzzingCase
    status: IterationStatus
    report: MismatchReport | None = None
    error: Exception | None = None


class FuzzOrchestrator:
    """Drives cases through both runners and collects mismatches.

    Per iteration: build the probe, execute it on the target and the
    reference (concurrently, each runner owned by one worker), wait for both,
    compare and record. Build failures and runner errors end the iteration
    without ending the run; repeated fatal backend errors abort it.
    """

    def __init__(
        self,
        cases: Iterable[FuzzingCase],
        target: Runner,
        reference: Runner,
        config: FuzzerConfig | None = None,
        builder: ProbeBuilder | None = None,
    ):
        self.cases = iter(cases)
        self.target = target
        self.reference = reference
        self.config = config or FuzzerConfig()
        self.builder = builder or ProbeBuilder()
        self.corpus = Corpus(self.config.out_dir)
        self.stats = FuzzStats()
        self._consecutive_fatal = 0
        # one single-threaded worker per runner, so a runner is only ever touched by its owner
        self._workers: list[ThreadPoolExecutor] | None = None
        self._pending: list[Future | None] = [None, None]

    # ---------------------------------------------------------------------- #
    #                                Main Loop                               #
    # ---------------------------------------------------------------------- #

    def run(self) -> FuzzStats:
        start_time = time.monotonic()
        if self.config.concurrent:
            self._workers = [
                ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"runner-{role}") for role in ("target", "reference")
            ]

        logger.info(f"fuzzing {self.target.name} against {self.reference.name}")
        try:
            while not self._budget_exhausted(start_time):
                case = next(self.cases, None)
                if case is None:
                    logger.info("case stream exhausted")
                    break
                self.stats.iterations += 1
                self.run_case(case)
                if self.stats.iterations % PROGRESS_LOG_INTERVAL == 0:
                    logger.info(f"progress: {self.stats}")
                if self.stats.aborted:
                    break
        except KeyboardInterrupt:
            logger.warning("interrupted, stopping the fuzzing loop")
        finally:
            self._shutdown_runners()
            self.stats.elapsed = time.monotonic() - start_time

        logger.info(f"done: {self.stats}")
        return self.stats

    def _shutdown_runners(self):
        runners = [self.target, self.reference]
        if self._workers is None:
            for runner in runners:
                runner.close()
            return

        for runner, worker, pending in zip(runners, self._workers, self._pending):
            if pending is None or pending.done():
                runner.close()
            else:
                logger.warning(f"[{runner.name}] still busy, closing it once the abandoned execution returns")
                worker.submit(runner.close)
            worker.shutdown(wait=False)
        self._workers = None
        self._pending = [None, None]

    def _budget_exhausted(self, start_time: float) -> bool:
        if self.config.iterations is not None and self.stats.iterations >= self.config.iterations:
            return True
        if self.config.time_budget is not None and time.monotonic() - start_time >= self.config.time_budget:
            logger.info("time budget exhausted")
            return True
        return False

    def run_case(self, case: FuzzingCase) -> IterationResult:
        asm = "; ".join(case.asm())
        logger.debug(f"case {case.case_id}: {asm}")

        try:
            probe = self.builder.build(case.instructions, case.seed)
        except BuildError as e:
            self.stats.build_errors += 1
            logger.warning(f"case {case.case_id}: build failed for [{asm}]: {e}")
            return IterationResult(case, IterationStatus.BUILD_ERROR, error=e)

        retries = 0
        while True:
            try:
                target_state, reference_state = self.execute_pair(probe)
                break
            except RunnerError as e:
                if e.kind == RunnerErrorKind.CONNECTION_FAILED and retries < self.config.connection_retries:
                    retries += 1
                    logger.warning(f"case {case.case_id}: {e}, retrying ({retries})")
                    continue
                self._record_execution_error(case, e)
                return IterationResult(case, IterationStatus.EXECUTION_ERROR, error=e)

        self._consecutive_fatal = 0
        flag_mask = self.flag_mask(case.instructions)
        report = compare(
            target_state,
            reference_state,
            flag_mask=flag_mask,
            ignored_fields=self.config.ignored_fields,
            instructions=case.instructions,
        )
        if report is None:
            self.stats.matches += 1
            return IterationResult(case, IterationStatus.MATCH)

        self.stats.mismatches += 1
        logger.warning(f"case {case.case_id}: mismatch {report.summary()}")
        self._record_mismatch(case, probe, report, flag_mask)
        return IterationResult(case, IterationStatus.MISMATCH, report=report)

    # ---------------------------------------------------------------------- #
    #                                Execution                               #
    # ---------------------------------------------------------------------- #

    def execute_pair(self, probe: ProbeProgram) -> tuple[CpuStateSnapshot, CpuStateSnapshot]:
        """Run `probe` on target and reference and return both snapshots.

        Both executions are joined before any error is raised, so a failure
        on one side never leaves the other running unobserved.
        """
        timeout = self.config.execution_timeout
        runners = [self.target, self.reference]
        if self._workers is None:
            states = [runner.execute(probe, timeout) for runner in runners]
            return states[0], states[1]

        futures: list[Future | None] = []
        for index, runner in enumerate(runners):
            pending = self._pending[index]
            if pending is not None and not pending.done():
                # an earlier execution never returned; do not queue behind it
                futures.append(None)
                continue
            self._pending[index] = self._workers[index].submit(runner.execute, probe, timeout)
            futures.append(self._pending[index])

        states: list[CpuStateSnapshot | None] = [None, None]
        errors: list[RunnerError] = []
        for index, (runner, future) in enumerate(zip(runners, futures)):
            if future is None:
                errors.append(
                    RunnerError(RunnerErrorKind.EXECUTION_TIMEOUT, runner.name, "runner is still busy with an earlier probe")
                )
                continue
            try:
                states[index] = future.result(timeout=timeout + self.config.join_grace_period)
            except FutureTimeoutError:
                # the owning worker resets the runner once the stuck execution returns
                logger.error(f"[{runner.name}] did not return in time, scheduling a reset")
                self._workers[index].submit(runner.reset)
                errors.append(
                    RunnerError(RunnerErrorKind.EXECUTION_TIMEOUT, runner.name, "runner did not return in time")
                )
            except RunnerError as e:
                errors.append(e)

        if errors:
            for extra in errors[1:]:
                logger.error(f"additional runner error: {extra}")
            raise errors[0]
        return states[0], states[1]

    def _record_execution_error(self, case: FuzzingCase, error: RunnerError):
        self.stats.record_error(error.kind)
        logger.error(f"case {case.case_id}: {error} while running [{'; '.join(case.asm())}]")
        if error.kind != RunnerErrorKind.BACKEND_FATAL:
            self._consecutive_fatal = 0
            return
        self._consecutive_fatal += 1
        if self._consecutive_fatal >= self.config.max_backend_fatal:
            self.stats.aborted = True
            logger.critical(
                f"{self._consecutive_fatal} consecutive fatal errors from {error.backend}, aborting run"
            )

    # ---------------------------------------------------------------------- #
    #                           Mismatch Handling                            #
    # ---------------------------------------------------------------------- #

    @staticmethod
    def flag_mask(instructions) -> int:
        return ALL_FLAGS_MASK & ~undefined_flags(instructions)

    def _record_mismatch(
        self, case: FuzzingCase, probe: ProbeProgram, report: MismatchReport, flag_mask: int
    ):
        minimized = None
        if self.config.minimize and len(case.instructions) > 1:
            minimized = self.minimize(case)

        if minimized is None:
            entry = CorpusEntry.from_report(
                report,
                case.seed,
                flag_mask,
                self.config.ignored_fields,
                metadata={"case_id": case.case_id},
            )
        else:
            entry, probe = minimized
        self.corpus.add(entry, probe, self.builder.render_source(probe))

    def minimize(self, case: FuzzingCase) -> tuple[CorpusEntry, ProbeProgram] | None:
        """Isolate the first diverging instruction of `case`.

        Each instruction runs alone, seeded with the reference state left by
        its predecessor. The first single-instruction probe that still
        mismatches is the reproducer. Memory written by earlier instructions
        is not carried over.
        """
        seed = dict(case.seed)
        for position, instruction in enumerate(case.instructions):
            single = (instruction,)
            try:
                probe = self.builder.build(single, seed)
                target_state, reference_state = self.execute_pair(probe)
            except (BuildError, RunnerError) as e:
                logger.warning(f"case {case.case_id}: minimization stopped at '{instruction.asm}': {e}")
                return None

            flag_mask = self.flag_mask(single)
            report = compare(
                target_state,
                reference_state,
                flag_mask=flag_mask,
                ignored_fields=self.config.ignored_fields,
                instructions=single,
            )
            if report is not None:
                logger.info(f"case {case.case_id}: isolated '{instruction.asm}' at position {position}")
                entry = CorpusEntry.from_report(
                    report,
                    seed,
                    flag_mask,
                    self.config.ignored_fields,
                    metadata={
                        "case_id": case.case_id,
                        "position": position,
                        "minimized_from": case.asm(),
                    },
                )
                return entry, probe
            if reference_state.trapped:
                return None
            seed = carried_seed(reference_state)

        logger.info(f"case {case.case_id}: no single instruction reproduces the mismatch")
        return None

    # ---------------------------------------------------------------------- #
    #                                  Replay                                #
    # ---------------------------------------------------------------------- #

    def replay(self, entry: CorpusEntry) -> MismatchReport | None:
        """Re-run a recorded case with its recorded mask and ignored fields."""
        probe = self.builder.build(entry.instructions, entry.seed)
        target_state, reference_state = self.execute_pair(probe)
        return compare(
            target_state,
            reference_state,
            flag_mask=entry.flag_mask,
            ignored_fields=entry.ignored_fields,
            instructions=tuple(entry.instructions),
        )

    def replay_corpus(self, path: Path) -> list[tuple[CorpusEntry, MismatchReport | None]]:
        results = []
        for entry in load_corpus(path):
            report = self.replay(entry)
            status = "reproduced" if report is not None else "no longer reproduces"
            logger.info(f"replay {entry.name}: {status}")
            results.append((entry, report))
        return results


def carried_seed(state: CpuStateSnapshot) -> dict[str, int]:
    """Seed that recreates `state` for the registers the probe preloads."""
    seed = {name: state.register(name) for name in _CARRIED_REGISTERS}
    seed["flags"] = (state.flags & ~TF) | (DEFAULT_FLAGS & 0x0002)
    return seed


def cases_from_instructions(sequences: Iterable[Iterable[Instruction]], seed: dict[str, int] | None = None):
    """Wrap fixed instruction sequences as fuzzing cases, e.g. for regression runs."""
    for case_id, sequence in enumerate(sequences):
        yield FuzzingCase(tuple(sequence), dict(seed or {}), case_id)

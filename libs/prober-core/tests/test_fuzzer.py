import json
import threading
import time

import pytest

from prober_core.compare import ALL_FLAGS_MASK
from prober_core.corpus import load_corpus
from prober_core.fuzzer import FuzzerConfig, FuzzOrchestrator, carried_seed, cases_from_instructions
from prober_core.generator import GeneratorConfig, generate
from prober_core.kinds import IterationStatus, RunnerErrorKind
from prober_core.runner import Runner, RunnerError
from prober_core.snapshot import CpuStateSnapshot, encode_output_block
from prober_core.x86 import AF, ARITHMETIC_FLAGS, TF, Instruction, Register


class ScriptedRunner(Runner):
    """In-process backend whose final state is a function of the probe."""

    def __init__(self, name, state_for=None, errors=()):
        super().__init__(timeout=1.0)
        self.name = name
        self.state_for = state_for or (lambda probe: CpuStateSnapshot(ax=1, flags=0x0202))
        self.errors = list(errors)
        self.calls = 0
        self.opened = 0

    def _open(self):
        self.opened += 1

    def _run(self, probe, timeout):
        self.calls += 1
        if self.errors:
            kind = self.errors.pop(0)
            if kind is not None:
                raise self._error(kind, "scripted failure")
        return b"console noise\r\n" + encode_output_block(self.state_for(probe))


class GarbageRunner(ScriptedRunner):
    def _run(self, probe, timeout):
        self.calls += 1
        return b"Bad command or file name\r\n"


class StuckRunner(ScriptedRunner):
    """Backend whose first execution outlives every timeout and which records
    whether it was ever closed while an execution was still in progress."""

    def __init__(self, name, delay):
        super().__init__(name)
        self.delay = delay
        self.running = threading.Event()
        self.closed_while_running = []

    def _run(self, probe, timeout):
        self.running.set()
        try:
            if self.calls == 0:
                time.sleep(self.delay)
            return super()._run(probe, timeout)
        finally:
            self.running.clear()

    def _close(self):
        self.closed_while_running.append(self.running.is_set())


def daa_is_broken(probe):
    broken = any(instruction.mnemonic == "daa" for instruction in probe.instructions)
    return CpuStateSnapshot(ax=2 if broken else 1, flags=0x0202)


NOP = Instruction("nop")
DAA = Instruction("daa")


def test_mismatches_are_recorded_and_minimized(tmp_path):
    target = ScriptedRunner("target", daa_is_broken)
    reference = ScriptedRunner("reference")
    cases = cases_from_instructions([[NOP], [DAA], [NOP, DAA, NOP]], seed={"ax": 5})
    fuzzer = FuzzOrchestrator(cases, target, reference, FuzzerConfig(out_dir=tmp_path))

    stats = fuzzer.run()

    assert stats.iterations == 3
    assert stats.matches == 1
    assert stats.mismatches == 2
    assert not stats.aborted
    assert len(fuzzer.corpus) == 2

    direct, minimized = fuzzer.corpus.entries
    assert direct.instructions == [DAA]
    assert direct.seed == {"ax": 5}
    assert [diff.field for diff in direct.diffs] == ["ax"]
    assert minimized.instructions == [DAA]
    assert minimized.metadata["position"] == 1
    assert minimized.metadata["minimized_from"] == ["nop", "daa", "nop"]

    lines = (tmp_path / "mismatches.jsonl").read_text().splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0])["asm"] == ["daa"]
    assert (tmp_path / "reproducers" / "mismatch_000000.com").exists()
    assert "daa" in (tmp_path / "reproducers" / "mismatch_000001.asm").read_text()

    # runners are closed once the loop ends
    assert not target.is_open and not reference.is_open


def test_replay_reproduces_recorded_diffs(tmp_path):
    target = ScriptedRunner("target", daa_is_broken)
    reference = ScriptedRunner("reference")
    cases = cases_from_instructions([[DAA, NOP], [NOP]])
    FuzzOrchestrator(cases, target, reference, FuzzerConfig(out_dir=tmp_path)).run()

    replayer = FuzzOrchestrator([], target, reference, FuzzerConfig(concurrent=False))
    results = replayer.replay_corpus(tmp_path / "mismatches.jsonl")
    assert len(results) == 1
    entry, report = results[0]
    assert report is not None
    assert list(report.diffs) == entry.diffs
    assert entry == load_corpus(tmp_path / "mismatches.jsonl")[0]


def test_undefined_flags_are_masked():
    target = ScriptedRunner("target", lambda probe: CpuStateSnapshot(ax=1, flags=0x0202 | AF))
    reference = ScriptedRunner("reference")
    fuzzer = FuzzOrchestrator([], target, reference, FuzzerConfig(concurrent=False, minimize=False))

    and_case, nop_case = cases_from_instructions([[Instruction.from_asm("and al, bl")], [NOP]])
    assert fuzzer.run_case(and_case).status == IterationStatus.MATCH
    result = fuzzer.run_case(nop_case)
    assert result.status == IterationStatus.MISMATCH
    assert result.report.fields == ["flags.AF"]


def test_flag_mask_excludes_undefined_flags():
    assert FuzzOrchestrator.flag_mask([Instruction.from_asm("div bl")]) == ALL_FLAGS_MASK & ~ARITHMETIC_FLAGS
    assert FuzzOrchestrator.flag_mask([NOP]) == ALL_FLAGS_MASK


def test_segment_registers_are_ignored_by_default():
    target = ScriptedRunner("target", lambda probe: CpuStateSnapshot(ax=1, cs=0x0800, flags=0x0202))
    reference = ScriptedRunner("reference", lambda probe: CpuStateSnapshot(ax=1, cs=0x1000, flags=0x0202))
    stats = FuzzOrchestrator(cases_from_instructions([[NOP]]), target, reference).run()
    assert stats.matches == 1


def test_build_errors_do_not_stop_the_run():
    target, reference = ScriptedRunner("target"), ScriptedRunner("reference")
    broken = Instruction("add", (Register("ax"), Register("bl")))
    stats = FuzzOrchestrator(cases_from_instructions([[broken], [NOP]]), target, reference).run()
    assert stats.iterations == 2
    assert stats.build_errors == 1
    assert stats.matches == 1
    assert target.calls == 1


def test_connection_failure_is_retried_once():
    target = ScriptedRunner("target", errors=[RunnerErrorKind.CONNECTION_FAILED])
    reference = ScriptedRunner("reference")
    stats = FuzzOrchestrator(cases_from_instructions([[NOP]]), target, reference).run()
    assert stats.matches == 1
    assert stats.total_execution_errors == 0
    assert target.calls == 2
    # the failed attempt tore the runner down, so it was opened twice
    assert target.opened == 2


@pytest.mark.parametrize("concurrent", [True, False])
def test_repeated_fatal_errors_abort_the_run(concurrent):
    target = ScriptedRunner("target", errors=[RunnerErrorKind.BACKEND_FATAL] * 10)
    reference = ScriptedRunner("reference")
    cases = cases_from_instructions([[NOP]] * 10)
    config = FuzzerConfig(concurrent=concurrent, max_backend_fatal=3)

    stats = FuzzOrchestrator(cases, target, reference, config).run()

    assert stats.aborted
    assert stats.iterations == 3
    assert stats.execution_errors == {str(RunnerErrorKind.BACKEND_FATAL): 3}


def test_malformed_output_is_an_execution_error():
    target, reference = GarbageRunner("target"), ScriptedRunner("reference")
    fuzzer = FuzzOrchestrator([], target, reference)
    (case,) = cases_from_instructions([[NOP]])
    result = fuzzer.run_case(case)
    assert result.status == IterationStatus.EXECUTION_ERROR
    assert result.error.kind == RunnerErrorKind.MALFORMED_OUTPUT
    # malformed output does not require tearing the backend down
    assert target.is_open


def test_timeouts_reset_the_runner():
    runner = ScriptedRunner("target", errors=[RunnerErrorKind.EXECUTION_TIMEOUT])
    probe = FuzzOrchestrator([], runner, runner).builder.build([NOP])
    with pytest.raises(RunnerError) as exc_info:
        runner.execute(probe)
    assert exc_info.value.kind == RunnerErrorKind.EXECUTION_TIMEOUT
    assert exc_info.value.backend == "target"
    assert not runner.is_open
    assert runner.execute(probe).ax == 1
    assert runner.opened == 2


def test_close_waits_for_the_running_probe():
    runner = StuckRunner("target", delay=0.3)
    probe = FuzzOrchestrator([], runner, runner).builder.build([NOP])
    worker = threading.Thread(target=runner.execute, args=(probe,))
    worker.start()
    assert runner.running.wait(timeout=2)
    runner.close()
    worker.join(timeout=2)
    assert runner.closed_while_running == [False]


def test_unresponsive_runner_is_reset_by_its_own_worker():
    target, reference = StuckRunner("target", delay=1.0), ScriptedRunner("reference")
    config = FuzzerConfig(execution_timeout=0.05, join_grace_period=0.05)

    stats = FuzzOrchestrator(cases_from_instructions([[NOP]] * 3), target, reference, config).run()

    assert stats.execution_errors == {str(RunnerErrorKind.EXECUTION_TIMEOUT): 3}
    # later cases were not queued behind the stuck execution
    assert target.calls == 0
    assert reference.calls == 3

    deadline = time.monotonic() + 5
    while not target.closed_while_running and time.monotonic() < deadline:
        time.sleep(0.02)
    assert not target.is_open
    assert target.calls == 1
    assert target.closed_while_running == [False]


def test_iteration_and_time_budgets():
    config = GeneratorConfig(seed=11, iterations=50)
    target, reference = ScriptedRunner("target"), ScriptedRunner("reference")
    stats = FuzzOrchestrator(generate(config), target, reference, FuzzerConfig(iterations=5)).run()
    assert stats.iterations == 5

    stats = FuzzOrchestrator(generate(config), target, reference, FuzzerConfig(time_budget=0)).run()
    assert stats.iterations == 0


def test_carried_seed_recreates_registers():
    state = CpuStateSnapshot(ax=0x1234, bx=2, si=0x150, flags=0x0A93 | TF)
    seed = carried_seed(state)
    assert seed["ax"] == 0x1234
    assert seed["si"] == 0x150
    assert seed["flags"] & TF == 0
    assert seed["flags"] & 0x0002

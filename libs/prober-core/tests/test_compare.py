import pytest

from prober_core.compare import ALL_FLAGS_MASK, FieldDiff, compare, flag_field
from prober_core.snapshot import SEGMENT_FIELDS, CpuStateSnapshot
from prober_core.x86 import AF, CF, OF, Instruction


@pytest.fixture
def reference():
    return CpuStateSnapshot(ax=0x0018, bx=0x0002, cs=0x1000, ds=0x1000, flags=0x0202)


def with_values(state: CpuStateSnapshot, **values) -> CpuStateSnapshot:
    return CpuStateSnapshot(**{**state.to_dict(), **values})


def test_identical_states_do_not_mismatch(reference):
    assert compare(reference, reference) is None


def test_register_difference_is_reported(reference):
    target = with_values(reference, ax=0x0019)
    report = compare(target, reference, instructions=[Instruction.from_asm("idiv bl")])
    assert report is not None
    assert report.diffs == (FieldDiff("ax", 0x0019, 0x0018),)
    assert report.fields == ["ax"]
    assert "idiv bl" in report.summary()
    assert "ax: target=0x0019 reference=0x0018" in report.summary()


def test_flag_bits_are_reported_individually(reference):
    target = with_values(reference, flags=reference.flags | CF | OF)
    report = compare(target, reference)
    assert report.fields == ["flags.CF", "flags.OF"]
    assert report.diffs[0] == FieldDiff("flags.CF", 1, 0)


def test_masked_flags_never_show_up(reference):
    target = with_values(reference, flags=reference.flags | AF)
    assert compare(target, reference, flag_mask=ALL_FLAGS_MASK & ~AF) is None

    target = with_values(reference, flags=reference.flags | AF | CF)
    report = compare(target, reference, flag_mask=ALL_FLAGS_MASK & ~AF)
    assert report.fields == ["flags.CF"]


def test_ignored_fields_are_skipped(reference):
    target = with_values(reference, cs=0x2000, ds=0x2000, es=0x2000)
    assert compare(target, reference, ignored_fields=SEGMENT_FIELDS) is None
    assert compare(target, reference).fields == ["es", "cs", "ds"]


def test_trap_is_compared_as_its_own_field(reference):
    target = with_values(reference, trap=0)
    report = compare(target, reference)
    assert report.fields == ["trap"]
    assert report.diffs[0] == FieldDiff("trap", 0, None)
    assert "trap: target=0x0000 reference=none" in str(report.diffs[0])
    assert compare(target, reference, ignored_fields=["trap"]) is None


def test_unnamed_flag_bits_get_positional_names():
    assert flag_field(0) == "flags.CF"
    assert flag_field(1) == "flags.bit1"
    assert flag_field(15) == "flags.bit15"

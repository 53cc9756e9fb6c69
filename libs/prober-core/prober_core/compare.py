from dataclasses import dataclass, field

from prober_core.snapshot import SNAPSHOT_FIELDS, CpuStateSnapshot
from prober_core.x86 import FLAG_BITS, Instruction

ALL_FLAGS_MASK = 0xFFFF

_BIT_NAMES = {bit: name for name, bit in FLAG_BITS.items()}


def flag_field(bit: int) -> str:
    return f"flags.{_BIT_NAMES.get(bit, f'bit{bit}')}"


@dataclass(frozen=True)
class FieldDiff:
    field: str
    target: int | None
    reference: int | None

    def __str__(self) -> str:
        def show(value):
            return "none" if value is None else f"{value:#06x}"

        return f"{self.field}: target={show(self.target)} reference={show(self.reference)}"

    def to_dict(self) -> dict:
        return {"field": self.field, "target": self.target, "reference": self.reference}

    @classmethod
    def from_dict(cls, data: dict) -> "FieldDiff":
        return cls(data["field"], data["target"], data["reference"])


@dataclass(frozen=True)
class MismatchReport:
    instructions: tuple[Instruction, ...]
    target_state: CpuStateSnapshot
    reference_state: CpuStateSnapshot
    diffs: tuple[FieldDiff, ...] = field(default_factory=tuple)

    @property
    def fields(self) -> list[str]:
        return [diff.field for diff in self.diffs]

    def summary(self) -> str:
        asm = "; ".join(instruction.asm for instruction in self.instructions)
        return f"[{asm}] " + ", ".join(str(diff) for diff in self.diffs)


def compare(
    target: CpuStateSnapshot,
    reference: CpuStateSnapshot,
    *,
    flag_mask: int = ALL_FLAGS_MASK,
    ignored_fields=(),
    instructions=(),
) -> MismatchReport | None:
    """Field-by-field diff of two snapshots.

    Registers are compared by value, flags bit by bit restricted to
    `flag_mask` and the trap vector as a field of its own. Fields named in
    `ignored_fields` are skipped. Returns `None` when nothing differs.
    """
    ignored = set(ignored_fields)
    diffs: list[FieldDiff] = []

    for name in SNAPSHOT_FIELDS:
        if name == "flags" or name in ignored:
            continue
        target_value, reference_value = getattr(target, name), getattr(reference, name)
        if target_value != reference_value:
            diffs.append(FieldDiff(name, target_value, reference_value))

    if "flags" not in ignored:
        differing = (target.flags ^ reference.flags) & flag_mask
        for bit in range(16):
            if differing & (1 << bit):
                diffs.append(
                    FieldDiff(flag_field(bit), (target.flags >> bit) & 1, (reference.flags >> bit) & 1)
                )

    if "trap" not in ignored and target.trap != reference.trap:
        diffs.append(FieldDiff("trap", target.trap, reference.trap))

    if not diffs:
        return None
    return MismatchReport(tuple(instructions), target, reference, tuple(diffs))

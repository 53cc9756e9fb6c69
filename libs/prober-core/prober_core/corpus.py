import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from prober_core.compare import ALL_FLAGS_MASK, FieldDiff, MismatchReport
from prober_core.probe import ProbeProgram
from prober_core.settings import CORPUS_FILE_NAME, REPRODUCER_DIR_NAME
from prober_core.snapshot import CpuStateSnapshot
from prober_core.x86 import Instruction
from prober_utils.file import append_line, create_dir, create_file

logger = logging.getLogger("fuzzer")


@dataclass
class CorpusEntry:
    instructions: list[Instruction]
    seed: dict[str, int]
    target: CpuStateSnapshot
    reference: CpuStateSnapshot
    diffs: list[FieldDiff]
    flag_mask: int = ALL_FLAGS_MASK
    ignored_fields: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_report(
        cls,
        report: MismatchReport,
        seed: dict[str, int],
        flag_mask: int = ALL_FLAGS_MASK,
        ignored_fields=(),
        metadata: dict | None = None,
    ) -> "CorpusEntry":
        return cls(
            instructions=list(report.instructions),
            seed=dict(seed),
            target=report.target_state,
            reference=report.reference_state,
            diffs=list(report.diffs),
            flag_mask=flag_mask,
            ignored_fields=list(ignored_fields),
            metadata=dict(metadata or {}),
        )

    @property
    def name(self) -> str:
        return str(self.metadata.get("name", "entry"))

    def to_dict(self):
        return {
            "asm": [instruction.asm for instruction in self.instructions],
            "instructions": [instruction.to_dict() for instruction in self.instructions],
            "seed": self.seed,
            "target": self.target.to_dict(),
            "reference": self.reference.to_dict(),
            "diffs": [diff.to_dict() for diff in self.diffs],
            "flag_mask": self.flag_mask,
            "ignored_fields": self.ignored_fields,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            instructions=[Instruction.from_dict(inst) for inst in data["instructions"]],
            seed={str(k): int(v) for k, v in data.get("seed", {}).items()},
            target=CpuStateSnapshot.from_dict(data["target"]),
            reference=CpuStateSnapshot.from_dict(data["reference"]),
            diffs=[FieldDiff.from_dict(diff) for diff in data.get("diffs", [])],
            flag_mask=data.get("flag_mask", ALL_FLAGS_MASK),
            ignored_fields=list(data.get("ignored_fields", [])),
            metadata=data.get("metadata", {}),
        )


class Corpus:
    """Mismatches found during one run. With an output directory every entry
    is appended to a JSON Lines file and its probe is written beside it as a
    runnable .COM image plus NASM source."""

    entries: list[CorpusEntry]
    out_dir: Path | None

    def __init__(self, out_dir: Path | None = None):
        self.entries = []
        self.out_dir = out_dir
        if out_dir is not None:
            create_dir(out_dir)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @property
    def corpus_file(self) -> Path | None:
        return None if self.out_dir is None else self.out_dir / CORPUS_FILE_NAME

    def add(self, entry: CorpusEntry, probe: ProbeProgram | None = None, source: str | None = None):
        entry.metadata.setdefault("name", f"mismatch_{len(self.entries):06d}")
        self.entries.append(entry)
        if self.out_dir is None:
            return

        append_line(self.corpus_file, json.dumps(entry.to_dict(), sort_keys=True))
        reproducer_dir = self.out_dir / REPRODUCER_DIR_NAME
        if probe is not None:
            create_file(reproducer_dir / f"{entry.name}.com", probe.image)
        if source is not None:
            create_file(reproducer_dir / f"{entry.name}.asm", source)
        logger.info(f"corpus: stored {entry.name} ({len(entry.diffs)} differing fields)")


def load_corpus(path: Path) -> list[CorpusEntry]:
    entries = []
    with path.open() as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                entries.append(CorpusEntry.from_dict(json.loads(line)))
            except (KeyError, ValueError) as e:
                raise ValueError(f"{path}:{line_number}: malformed corpus entry: {e}") from e
    return entries

import json

import pytest

from prober_core.compare import ALL_FLAGS_MASK, compare
from prober_core.corpus import Corpus, CorpusEntry, load_corpus
from prober_core.probe import build
from prober_core.snapshot import CpuStateSnapshot
from prober_core.x86 import AF, Instruction


@pytest.fixture
def entry():
    instructions = (Instruction.from_asm("idiv bl"),)
    target = CpuStateSnapshot(ax=0x0019, bx=0x0002, flags=0x0202)
    reference = CpuStateSnapshot(ax=0x0018, bx=0x0002, flags=0x0202)
    report = compare(target, reference, instructions=instructions)
    return CorpusEntry.from_report(
        report,
        {"ax": 0x30, "bx": 0x2},
        flag_mask=ALL_FLAGS_MASK & ~AF,
        ignored_fields=("cs",),
        metadata={"case_id": 7},
    )


def test_in_memory_corpus_names_entries(entry):
    corpus = Corpus()
    corpus.add(entry)
    assert len(corpus) == 1
    assert corpus.corpus_file is None
    assert list(corpus)[0].name == "mismatch_000000"


def test_entries_are_persisted_with_reproducers(tmp_path, entry):
    corpus = Corpus(tmp_path / "out")
    probe = build(entry.instructions, entry.seed)
    corpus.add(entry, probe, "; source\nidiv bl\n")

    line = json.loads((tmp_path / "out" / "mismatches.jsonl").read_text())
    assert line["asm"] == ["idiv bl"]
    assert line["seed"] == {"ax": 0x30, "bx": 0x2}
    assert line["diffs"][0]["field"] == "ax"
    assert line["metadata"] == {"case_id": 7, "name": "mismatch_000000"}

    reproducers = tmp_path / "out" / "reproducers"
    assert (reproducers / "mismatch_000000.com").read_bytes() == probe.image
    assert (reproducers / "mismatch_000000.asm").read_text().startswith("; source")


def test_load_corpus_restores_entries(tmp_path, entry):
    corpus = Corpus(tmp_path)
    corpus.add(entry)
    corpus.add(CorpusEntry.from_dict(entry.to_dict()))

    loaded = load_corpus(corpus.corpus_file)
    assert len(loaded) == 2
    assert loaded[0] == entry
    assert loaded[0].flag_mask == ALL_FLAGS_MASK & ~AF
    assert loaded[0].ignored_fields == ["cs"]
    # a reloaded entry keeps the name it was stored under
    assert loaded[1] == loaded[0]


def test_malformed_lines_point_at_their_location(tmp_path, entry):
    path = tmp_path / "mismatches.jsonl"
    path.write_text(json.dumps(entry.to_dict()) + "\n\n" + json.dumps({"asm": ["nop"]}) + "\n")
    with pytest.raises(ValueError, match=":3: malformed corpus entry"):
        load_corpus(path)

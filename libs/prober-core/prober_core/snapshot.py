import struct
from dataclasses import asdict, dataclass, fields

# ---------------------------------------------------------------------------- #
#                             Output Block Layout                              #
# ---------------------------------------------------------------------------- #
#
# The probe writes this block to standard output on exit. Every backend hands
# its captured byte stream to `decode_output_block`, so the layout below is
# the single contract between the probe program and all runners.
#
#   magic    4 bytes  b"PRB1"
#   fields  15 words  ax bx cx dx sp bp si di es cs ss ds fs gs flags
#   status   1 word   0 = completed, n + 1 = trapped through vector n
#   checksum 1 word   sum of the 16 preceding words, mod 2**16
#

OUTPUT_BLOCK_MAGIC = b"PRB1"
SNAPSHOT_FIELDS = (
    "ax", "bx", "cx", "dx", "sp", "bp", "si", "di",
    "es", "cs", "ss", "ds", "fs", "gs", "flags",
)  # fmt: skip
GENERAL_FIELDS = SNAPSHOT_FIELDS[:8]
SEGMENT_FIELDS = SNAPSHOT_FIELDS[8:14]

STATUS_COMPLETED = 0

_WORDS = struct.Struct(f"<{len(SNAPSHOT_FIELDS) + 2}H")
OUTPUT_BLOCK_SIZE = len(OUTPUT_BLOCK_MAGIC) + _WORDS.size
STATUS_OFFSET = len(OUTPUT_BLOCK_MAGIC) + 2 * len(SNAPSHOT_FIELDS)
CHECKSUM_OFFSET = STATUS_OFFSET + 2


class OutputBlockError(ValueError):
    pass


def field_offset(name: str) -> int:
    """Byte offset of a snapshot field inside the output block."""
    return len(OUTPUT_BLOCK_MAGIC) + 2 * SNAPSHOT_FIELDS.index(name)


def block_checksum(words) -> int:
    return sum(words) & 0xFFFF


# ---------------------------------------------------------------------------- #
#                                   Snapshot                                   #
# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class CpuStateSnapshot:
    ax: int = 0
    bx: int = 0
    cx: int = 0
    dx: int = 0
    sp: int = 0
    bp: int = 0
    si: int = 0
    di: int = 0
    es: int = 0
    cs: int = 0
    ss: int = 0
    ds: int = 0
    fs: int = 0
    gs: int = 0
    flags: int = 0
    # vector of the exception that ended the probe, None when it completed
    trap: int | None = None

    def __post_init__(self):
        for name in SNAPSHOT_FIELDS:
            value = getattr(self, name)
            if not 0 <= value <= 0xFFFF:
                raise ValueError(f"{name}={value:#x} is not a 16-bit value")

    @property
    def trapped(self) -> bool:
        return self.trap is not None

    @property
    def status(self) -> int:
        return STATUS_COMPLETED if self.trap is None else self.trap + 1

    def register(self, name: str) -> int:
        """Value of a 16-bit field or of an 8-bit half such as `al` or `bh`."""
        if name in SNAPSHOT_FIELDS:
            return getattr(self, name)
        if len(name) == 2 and name[1] in "lh":
            word = getattr(self, f"{name[0]}x")
            return word & 0xFF if name[1] == "l" else word >> 8
        raise KeyError(name)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "CpuStateSnapshot":
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


# ---------------------------------------------------------------------------- #
#                             Block Encode / Decode                            #
# ---------------------------------------------------------------------------- #


def encode_output_block(snapshot: CpuStateSnapshot) -> bytes:
    words = [getattr(snapshot, name) for name in SNAPSHOT_FIELDS] + [snapshot.status]
    return OUTPUT_BLOCK_MAGIC + _WORDS.pack(*words, block_checksum(words))


def _decode_block_at(stream: bytes, start: int) -> CpuStateSnapshot:
    payload = stream[start + len(OUTPUT_BLOCK_MAGIC) : start + OUTPUT_BLOCK_SIZE]
    if len(payload) < _WORDS.size:
        raise OutputBlockError(
            f"output block truncated: {len(payload)} of {_WORDS.size} bytes after the magic"
        )

    *words, checksum = _WORDS.unpack(payload)
    expected = block_checksum(words)
    if checksum != expected:
        raise OutputBlockError(f"output block checksum {checksum:#06x}, expected {expected:#06x}")

    *values, status = words
    trap = None if status == STATUS_COMPLETED else status - 1
    return CpuStateSnapshot(**dict(zip(SNAPSHOT_FIELDS, values)), trap=trap)


def decode_output_block(stream: bytes) -> CpuStateSnapshot:
    """Locate and decode the output block inside an arbitrary captured stream.

    Backends capture console, file or serial output that may carry extra text
    around the block, and that text may itself contain the magic bytes. Every
    occurrence is tried in order; the first one with a valid checksum wins.
    When none decodes, the error of the first candidate is raised.
    """
    start = stream.find(OUTPUT_BLOCK_MAGIC)
    if start < 0:
        raise OutputBlockError(f"output block magic not found in {len(stream)} captured bytes")

    first_error = None
    while start >= 0:
        try:
            return _decode_block_at(stream, start)
        except OutputBlockError as e:
            first_error = first_error or e
        start = stream.find(OUTPUT_BLOCK_MAGIC, start + 1)
    raise first_error

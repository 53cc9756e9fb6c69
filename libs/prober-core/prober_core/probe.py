import logging
import struct
from dataclasses import dataclass
from pathlib import Path

from jinja2 import Environment, FileSystemLoader

from prober_core.encoder import EncodingError, encode
from prober_core.kinds import BuildErrorKind
from prober_core.snapshot import (
    CHECKSUM_OFFSET,
    OUTPUT_BLOCK_MAGIC,
    OUTPUT_BLOCK_SIZE,
    SNAPSHOT_FIELDS,
    STATUS_OFFSET,
    field_offset,
)
from prober_core.x86 import (
    GENERAL_REGISTERS,
    REGISTERS_8,
    SEGMENT_REGISTERS,
    Immediate,
    Instruction,
    Memory,
    Register,
)

logger = logging.getLogger("fuzzer")

# --- Image Layout Constants ---
PROBE_ORIGIN = 0x100  # DOS loads .COM images at cs:0100
COM_MAX_SIZE = 0xFF00  # a .COM image plus its stack has to fit one segment
BLOCK_OFFSET = 0x04
VECTOR_SAVE_OFFSET = BLOCK_OFFSET + OUTPUT_BLOCK_SIZE
DATA_OFFSET = 0x40
DATA_SIZE = 0x100
DATA_BASE = PROBE_ORIGIN + DATA_OFFSET  # scratch memory for memory operands
TRAP_VECTORS = (0, 6)  # divide error, invalid opcode
DEFAULT_FLAGS = 0x0202  # IF and the reserved bit 1

_SEGMENT_SEED_ORDER = ("ds", "es", "ss", "fs", "gs", "cs")
_WORD_SEED_ORDER = ("ax", "bx", "cx", "dx", "si", "di", "bp")
SEED_KEYS = frozenset(GENERAL_REGISTERS) | frozenset(SEGMENT_REGISTERS) | {"flags"}


class BuildError(Exception):
    kind: BuildErrorKind

    def __init__(self, kind: BuildErrorKind, message: str):
        super().__init__(f"{kind}: {message}")
        self.kind = kind


# ---------------------------------------------------------------------------- #
#                                 Probe Program                                #
# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class ProbeLine:
    offset: int
    data: bytes
    text: str


@dataclass(frozen=True)
class ProbeSection:
    label: str
    offset: int
    lines: tuple[ProbeLine, ...]


@dataclass(frozen=True)
class ProbeProgram:
    image: bytes
    entry_offset: int
    block_offset: int
    instructions: tuple[Instruction, ...]
    seed: tuple[tuple[str, int], ...]
    sections: tuple[ProbeSection, ...]

    @property
    def size(self) -> int:
        return len(self.image)

    @property
    def origin(self) -> int:
        return PROBE_ORIGIN

    @property
    def block_address(self) -> int:
        return PROBE_ORIGIN + self.block_offset

    @property
    def seed_values(self) -> dict[str, int]:
        return dict(self.seed)

    def section(self, label: str) -> ProbeSection:
        for section in self.sections:
            if section.label == label:
                return section
        raise KeyError(label)

    def listing(self) -> str:
        return "\n".join(
            f"{PROBE_ORIGIN + line.offset:04x}  {line.data.hex(' ') if len(line.data) <= 8 else '..':<24} {line.text}"
            for section in self.sections
            for line in section.lines
        )


# ---------------------------------------------------------------------------- #
#                                   Assembler                                  #
# ---------------------------------------------------------------------------- #


class _Assembler:
    """Collects labelled sections of encoded lines and patches near jumps."""

    def __init__(self):
        self.offset = 0
        self._sections: list[tuple[str, int, list[ProbeLine]]] = []
        self._fixups: list[tuple[int, int, str]] = []

    def section(self, label: str):
        self._sections.append((label, self.offset, []))

    def address(self, label: str) -> int:
        for name, offset, _ in self._sections:
            if name == label:
                return PROBE_ORIGIN + offset
        raise KeyError(label)

    def raw(self, data: bytes, text: str):
        self._sections[-1][2].append(ProbeLine(self.offset, bytes(data), text))
        self.offset += len(data)

    def emit(self, instruction: Instruction):
        self.raw(encode(instruction), instruction.asm)

    def jump(self, label: str):
        self._fixups.append((len(self._sections) - 1, len(self._sections[-1][2]), label))
        self.raw(b"\xe9\x00\x00", f"jmp near {label}")

    def finish(self) -> tuple[bytes, tuple[ProbeSection, ...]]:
        for section_index, line_index, label in self._fixups:
            lines = self._sections[section_index][2]
            line = lines[line_index]
            relative = (self.address(label) - PROBE_ORIGIN - (line.offset + 3)) & 0xFFFF
            lines[line_index] = ProbeLine(line.offset, b"\xe9" + struct.pack("<H", relative), line.text)

        sections = tuple(
            ProbeSection(label, offset, tuple(lines)) for label, offset, lines in self._sections
        )
        image = b"".join(line.data for section in sections for line in section.lines)
        return image, sections


def _mov(destination, source) -> Instruction:
    return Instruction("mov", (destination, source))


def _cs_word(address: int) -> Memory:
    return Memory(None, address, 16, "cs")


def _es_word(address: int) -> Memory:
    return Memory(None, address, 16, "es")


def _zero_fill(size: int) -> str:
    return f"times {size:#x} db 0"


# ---------------------------------------------------------------------------- #
#                                 Probe Builder                                #
# ---------------------------------------------------------------------------- #


class ProbeBuilder:
    max_image_size: int
    trap_vectors: tuple[int, ...]
    flags: int

    def __init__(
        self,
        max_image_size: int = COM_MAX_SIZE,
        trap_vectors: tuple[int, ...] = TRAP_VECTORS,
        flags: int = DEFAULT_FLAGS,
    ):
        if VECTOR_SAVE_OFFSET + 4 * len(trap_vectors) > DATA_OFFSET:
            raise ValueError(f"too many trap vectors for the probe header: {trap_vectors}")
        self.max_image_size = max_image_size
        self.trap_vectors = tuple(trap_vectors)
        self.flags = flags
        self.template_env = Environment(
            loader=FileSystemLoader(Path(__file__).parent / "templates"),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def build(self, instructions, seed: dict[str, int] | None = None) -> ProbeProgram:
        """Wrap `instructions` into a flat .COM image that reports the final
        register state through the output block.

        Raises `BuildError` with `ENCODING_FAILED` when any instruction (or a
        seed value) cannot be encoded and `IMAGE_TOO_LARGE` when the image
        exceeds `max_image_size`. Images are never truncated.
        """
        instructions = tuple(instructions)
        seed = dict(seed or {})
        unknown = set(seed) - SEED_KEYS
        if unknown:
            raise ValueError(f"unknown seed registers: {sorted(unknown)}")

        asm = _Assembler()
        try:
            self._emit_header(asm)
            self._emit_trap_handlers(asm)
            asm.section("prologue")
            for instruction in self._prologue(asm, seed):
                asm.emit(instruction)
            asm.section("body")
            for instruction in instructions:
                asm.emit(instruction)
            asm.section("epilogue")
            for instruction in self._epilogue(asm):
                asm.emit(instruction)
        except EncodingError as e:
            raise BuildError(BuildErrorKind.ENCODING_FAILED, str(e)) from e

        image, sections = asm.finish()
        if len(image) > self.max_image_size:
            raise BuildError(
                BuildErrorKind.IMAGE_TOO_LARGE,
                f"probe image is {len(image):#x} bytes, limit is {self.max_image_size:#x}",
            )

        logger.debug(f"built probe: {len(instructions)} instructions, {len(image)} bytes")
        return ProbeProgram(
            image=image,
            entry_offset=0,
            block_offset=BLOCK_OFFSET,
            instructions=instructions,
            seed=tuple(sorted(seed.items())),
            sections=sections,
        )

    def render_source(self, probe: ProbeProgram) -> str:
        """NASM source equivalent to the probe image."""
        template = self.template_env.get_template("probe.asm.j2")
        return template.render(
            origin=PROBE_ORIGIN,
            sections=probe.sections,
            instructions=probe.instructions,
            seed=probe.seed,
        )

    # ------------------------------- image parts ------------------------------- #

    def _emit_header(self, asm: _Assembler):
        asm.section("entry")
        asm.jump("prologue")
        asm.raw(b"\x90", "nop")

        asm.section("output_block")
        asm.raw(OUTPUT_BLOCK_MAGIC, f'db "{OUTPUT_BLOCK_MAGIC.decode()}"')
        asm.raw(bytes(OUTPUT_BLOCK_SIZE - len(OUTPUT_BLOCK_MAGIC)), _zero_fill(OUTPUT_BLOCK_SIZE - 4))

        asm.section("saved_vectors")
        asm.raw(bytes(4 * len(self.trap_vectors)), _zero_fill(4 * len(self.trap_vectors)))
        if asm.offset < DATA_OFFSET:
            asm.raw(bytes(DATA_OFFSET - asm.offset), _zero_fill(DATA_OFFSET - asm.offset))

        asm.section("scratch")
        asm.raw(bytes(DATA_SIZE), _zero_fill(DATA_SIZE))

    def _emit_trap_handlers(self, asm: _Assembler):
        status_address = PROBE_ORIGIN + BLOCK_OFFSET + STATUS_OFFSET
        for vector in self.trap_vectors:
            asm.section(f"trap_{vector}")
            asm.emit(_mov(_cs_word(status_address), Immediate(vector + 1, 16)))
            asm.jump("trap_common")

        # drop the return ip:cs and restore the flags of the faulting instruction
        asm.section("trap_common")
        asm.emit(Instruction("add", (Register("sp"), Immediate(4, 8))))
        asm.emit(Instruction("popf"))
        asm.jump("epilogue")

    def _save_slot(self, index: int) -> int:
        return PROBE_ORIGIN + VECTOR_SAVE_OFFSET + 4 * index

    def _prologue(self, asm: _Assembler, seed: dict[str, int]) -> list[Instruction]:
        ax = Register("ax")
        code = [_mov(ax, Immediate(0, 16)), _mov(Register("es"), ax)]
        for index, vector in enumerate(self.trap_vectors):
            slot = self._save_slot(index)
            code += [
                _mov(ax, _es_word(vector * 4)),
                _mov(_cs_word(slot), ax),
                _mov(ax, _es_word(vector * 4 + 2)),
                _mov(_cs_word(slot + 2), ax),
                _mov(_es_word(vector * 4), Immediate(asm.address(f"trap_{vector}"), 16)),
                _mov(_es_word(vector * 4 + 2), Register("cs")),
            ]
        code += [_mov(ax, Register("cs")), _mov(Register("es"), ax)]

        # only mov and popf from here on, so the seeded flags survive
        code += [
            _mov(ax, Immediate(seed.get("flags", self.flags), 16)),
            Instruction("push", (ax,)),
            Instruction("popf"),
        ]
        for name in _SEGMENT_SEED_ORDER:
            if name in seed:
                code += [_mov(ax, Immediate(seed[name], 16)), _mov(Register(name), ax)]
        for name in _WORD_SEED_ORDER:
            code.append(_mov(Register(name), Immediate(seed.get(name, 0), 16)))
        if "sp" in seed:
            code.append(_mov(Register("sp"), Immediate(seed["sp"], 16)))
        for name in REGISTERS_8:
            if name in seed:
                code.append(_mov(Register(name), Immediate(seed[name], 8)))
        return code

    def _epilogue(self, asm: _Assembler) -> list[Instruction]:
        block = PROBE_ORIGIN + BLOCK_OFFSET
        code = [
            _mov(_cs_word(block + field_offset(name)), Register(name))
            for name in SNAPSHOT_FIELDS
            if name != "flags"
        ]
        code += [
            Instruction("pushf"),
            Instruction("pop", (_cs_word(block + field_offset("flags")),)),
        ]

        ax = Register("ax")
        words = [block + field_offset(name) for name in SNAPSHOT_FIELDS] + [block + STATUS_OFFSET]
        code.append(_mov(ax, _cs_word(words[0])))
        code += [Instruction("add", (ax, _cs_word(address))) for address in words[1:]]
        code.append(_mov(_cs_word(block + CHECKSUM_OFFSET), ax))

        code += [_mov(ax, Immediate(0, 16)), _mov(Register("es"), ax)]
        for index, vector in enumerate(self.trap_vectors):
            slot = self._save_slot(index)
            code += [
                _mov(ax, _cs_word(slot)),
                _mov(_es_word(vector * 4), ax),
                _mov(ax, _cs_word(slot + 2)),
                _mov(_es_word(vector * 4 + 2), ax),
            ]

        # int 21h/40h: write cx bytes from ds:dx to handle bx (stdout)
        code += [
            _mov(ax, Register("cs")),
            _mov(Register("ds"), ax),
            _mov(Register("ah"), Immediate(0x40, 8)),
            _mov(Register("bx"), Immediate(1, 16)),
            _mov(Register("cx"), Immediate(OUTPUT_BLOCK_SIZE, 16)),
            _mov(Register("dx"), Immediate(block, 16)),
            Instruction("int", (Immediate(0x21, 8),)),
            _mov(ax, Immediate(0x4C00, 16)),
            Instruction("int", (Immediate(0x21, 8),)),
        ]
        return code


def build(instructions, seed: dict[str, int] | None = None, max_image_size: int = COM_MAX_SIZE) -> ProbeProgram:
    return ProbeBuilder(max_image_size=max_image_size).build(instructions, seed)

import re
from dataclasses import dataclass, field
from typing import Union

from prober_core.kinds import OperandKind, X86Group

# --- Register File ---
REGISTERS_8 = ("al", "cl", "dl", "bl", "ah", "ch", "dh", "bh")
REGISTERS_16 = ("ax", "cx", "dx", "bx", "sp", "bp", "si", "di")
SEGMENT_REGISTERS = ("es", "cs", "ss", "ds", "fs", "gs")
GENERAL_REGISTERS = REGISTERS_8 + REGISTERS_16
ALL_REGISTERS = GENERAL_REGISTERS + SEGMENT_REGISTERS

# 16-bit ModRM addressing modes, indexed by the r/m field
ADDRESSING_MODES = ("bx+si", "bx+di", "bp+si", "bp+di", "si", "di", "bp", "bx")
_ADDRESSING_ORDER = ("bx", "bp", "si", "di")

# --- Flags ---
CF = 1 << 0
PF = 1 << 2
AF = 1 << 4
ZF = 1 << 6
SF = 1 << 7
TF = 1 << 8
IF = 1 << 9
DF = 1 << 10
OF = 1 << 11

FLAG_BITS = {"CF": 0, "PF": 2, "AF": 4, "ZF": 6, "SF": 7, "TF": 8, "IF": 9, "DF": 10, "OF": 11}
ARITHMETIC_FLAGS = CF | PF | AF | ZF | SF | OF


# ---------------------------------------------------------------------------- #
#                                   Operands                                   #
# ---------------------------------------------------------------------------- #


def _hex(value: int) -> str:
    return f"-0x{-value:x}" if value < 0 else f"0x{value:x}"


def _size_keyword(width: int) -> str:
    return "byte" if width == 8 else "word"


@dataclass(frozen=True)
class Register:
    name: str

    @property
    def kind(self) -> OperandKind:
        return OperandKind.REGISTER

    @property
    def size(self) -> int:
        return 8 if self.name in REGISTERS_8 else 16

    @property
    def index(self) -> int:
        """Register number as used in opcode and ModRM fields."""
        for table in (REGISTERS_8, REGISTERS_16, SEGMENT_REGISTERS):
            if self.name in table:
                return table.index(self.name)
        raise ValueError(f"unknown register '{self.name}'")

    @property
    def is_segment(self) -> bool:
        return self.name in SEGMENT_REGISTERS

    @property
    def is_general(self) -> bool:
        return self.name in GENERAL_REGISTERS

    @property
    def asm(self) -> str:
        return self.name

    def to_dict(self) -> dict:
        return {"register": self.name}


@dataclass(frozen=True)
class Immediate:
    value: int
    width: int = 16

    @property
    def kind(self) -> OperandKind:
        return OperandKind.IMMEDIATE

    @property
    def size(self) -> int:
        return self.width

    @property
    def asm(self) -> str:
        return _hex(self.value)

    def to_dict(self) -> dict:
        return {"immediate": self.value, "width": self.width}


@dataclass(frozen=True)
class Memory:
    """Memory operand `[segment:base+displacement]`. A `base` of `None` is a
    direct 16-bit address held in `displacement`."""

    base: str | None
    displacement: int = 0
    width: int = 16
    segment: str | None = None

    @property
    def kind(self) -> OperandKind:
        return OperandKind.MEMORY

    @property
    def size(self) -> int:
        return self.width

    @property
    def asm(self) -> str:
        if self.base is None:
            address = _hex(self.displacement & 0xFFFF)
        elif self.displacement == 0:
            address = self.base
        elif self.displacement < 0:
            address = f"{self.base}-0x{-self.displacement:x}"
        else:
            address = f"{self.base}+0x{self.displacement:x}"
        prefix = f"{self.segment}:" if self.segment else ""
        return f"{_size_keyword(self.width)} [{prefix}{address}]"

    def to_dict(self) -> dict:
        return {
            "memory": self.base,
            "displacement": self.displacement,
            "width": self.width,
            "segment": self.segment,
        }


Operand = Union[Register, Immediate, Memory]


def operand_from_dict(data: dict) -> Operand:
    if "register" in data:
        return Register(data["register"])
    if "immediate" in data:
        return Immediate(data["immediate"], data.get("width", 16))
    if "memory" in data:
        return Memory(
            data["memory"],
            data.get("displacement", 0),
            data.get("width", 16),
            data.get("segment"),
        )
    raise ValueError(f"unknown operand encoding: {data}")


# ---------------------------------------------------------------------------- #
#                                Mnemonic Table                                #
# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class X86Mnemonic:
    literal: str
    group: X86Group
    opcode: int = 0
    ext: int = 0
    arities: tuple[int, ...] = (2,)
    fuzzable: bool = True
    # immediate operand is always a single byte (shift counts, vectors, bases)
    byte_immediate: bool = False


# ALU: opcode is the r/m,reg byte form, ext the /n of the 0x80 group
ADD = X86Mnemonic("add", X86Group.ALU, 0x00, 0)
OR = X86Mnemonic("or", X86Group.ALU, 0x08, 1)
ADC = X86Mnemonic("adc", X86Group.ALU, 0x10, 2)
SBB = X86Mnemonic("sbb", X86Group.ALU, 0x18, 3)
AND = X86Mnemonic("and", X86Group.ALU, 0x20, 4)
SUB = X86Mnemonic("sub", X86Group.ALU, 0x28, 5)
XOR = X86Mnemonic("xor", X86Group.ALU, 0x30, 6)
CMP = X86Mnemonic("cmp", X86Group.ALU, 0x38, 7)

MOV = X86Mnemonic("mov", X86Group.MOV, 0x88)
TEST = X86Mnemonic("test", X86Group.TEST, 0x84)
XCHG = X86Mnemonic("xchg", X86Group.XCHG, 0x86)

INC = X86Mnemonic("inc", X86Group.INCDEC, 0x40, 0, (1,))
DEC = X86Mnemonic("dec", X86Group.INCDEC, 0x48, 1, (1,))

# F6/F7 group
NOT = X86Mnemonic("not", X86Group.UNARY, 0xF6, 2, (1,))
NEG = X86Mnemonic("neg", X86Group.UNARY, 0xF6, 3, (1,))
MUL = X86Mnemonic("mul", X86Group.UNARY, 0xF6, 4, (1,))
DIV = X86Mnemonic("div", X86Group.UNARY, 0xF6, 6, (1,))
IDIV = X86Mnemonic("idiv", X86Group.UNARY, 0xF6, 7, (1,))
IMUL = X86Mnemonic("imul", X86Group.IMUL, 0xF6, 5, (1, 2, 3))

# D0-D3 / C0-C1 group
ROL = X86Mnemonic("rol", X86Group.SHIFT, 0xD0, 0, byte_immediate=True)
ROR = X86Mnemonic("ror", X86Group.SHIFT, 0xD0, 1, byte_immediate=True)
RCL = X86Mnemonic("rcl", X86Group.SHIFT, 0xD0, 2, byte_immediate=True)
RCR = X86Mnemonic("rcr", X86Group.SHIFT, 0xD0, 3, byte_immediate=True)
SHL = X86Mnemonic("shl", X86Group.SHIFT, 0xD0, 4, byte_immediate=True)
SHR = X86Mnemonic("shr", X86Group.SHIFT, 0xD0, 5, byte_immediate=True)
SAR = X86Mnemonic("sar", X86Group.SHIFT, 0xD0, 7, byte_immediate=True)

# Stack and control, used by the probe scaffolding only
PUSH = X86Mnemonic("push", X86Group.STACK, 0x50, 6, (1,), fuzzable=False)
POP = X86Mnemonic("pop", X86Group.STACK, 0x58, 0, (1,), fuzzable=False)
PUSHF = X86Mnemonic("pushf", X86Group.IMPLIED, 0x9C, arities=(0,), fuzzable=False)
POPF = X86Mnemonic("popf", X86Group.IMPLIED, 0x9D, arities=(0,), fuzzable=False)
INT = X86Mnemonic("int", X86Group.INT, 0xCD, arities=(1,), fuzzable=False, byte_immediate=True)
CLI = X86Mnemonic("cli", X86Group.IMPLIED, 0xFA, arities=(0,), fuzzable=False)
STI = X86Mnemonic("sti", X86Group.IMPLIED, 0xFB, arities=(0,), fuzzable=False)

# Implied operands
NOP = X86Mnemonic("nop", X86Group.IMPLIED, 0x90, arities=(0,))
CLC = X86Mnemonic("clc", X86Group.IMPLIED, 0xF8, arities=(0,))
STC = X86Mnemonic("stc", X86Group.IMPLIED, 0xF9, arities=(0,))
CMC = X86Mnemonic("cmc", X86Group.IMPLIED, 0xF5, arities=(0,))
CLD = X86Mnemonic("cld", X86Group.IMPLIED, 0xFC, arities=(0,))
STD = X86Mnemonic("std", X86Group.IMPLIED, 0xFD, arities=(0,))
CBW = X86Mnemonic("cbw", X86Group.IMPLIED, 0x98, arities=(0,))
CWD = X86Mnemonic("cwd", X86Group.IMPLIED, 0x99, arities=(0,))
SAHF = X86Mnemonic("sahf", X86Group.IMPLIED, 0x9E, arities=(0,))
LAHF = X86Mnemonic("lahf", X86Group.IMPLIED, 0x9F, arities=(0,))
DAA = X86Mnemonic("daa", X86Group.IMPLIED, 0x27, arities=(0,))
DAS = X86Mnemonic("das", X86Group.IMPLIED, 0x2F, arities=(0,))
AAA = X86Mnemonic("aaa", X86Group.IMPLIED, 0x37, arities=(0,))
AAS = X86Mnemonic("aas", X86Group.IMPLIED, 0x3F, arities=(0,))
AAM = X86Mnemonic("aam", X86Group.ASCII_ADJUST, 0xD4, arities=(0, 1), byte_immediate=True)
AAD = X86Mnemonic("aad", X86Group.ASCII_ADJUST, 0xD5, arities=(0, 1), byte_immediate=True)

ALL_MNEMONICS = [
    ADD, OR, ADC, SBB, AND, SUB, XOR, CMP,
    MOV, TEST, XCHG, INC, DEC,
    NOT, NEG, MUL, DIV, IDIV, IMUL,
    ROL, ROR, RCL, RCR, SHL, SHR, SAR,
    PUSH, POP, PUSHF, POPF, INT, CLI, STI,
    NOP, CLC, STC, CMC, CLD, STD, CBW, CWD, SAHF, LAHF,
    DAA, DAS, AAA, AAS, AAM, AAD,
]  # fmt: skip

LITERAL_TO_MNEMONIC = {m.literal: m for m in ALL_MNEMONICS}
FUZZABLE_MNEMONICS = frozenset(m.literal for m in ALL_MNEMONICS if m.fuzzable)

# base value of the `aam`/`aad` immediate when it is omitted
DEFAULT_ASCII_ADJUST_BASE = 0x0A


# ---------------------------------------------------------------------------- #
#                                  Instruction                                 #
# ---------------------------------------------------------------------------- #


_MEMORY_PATTERN = re.compile(r"^(?:(byte|word)\s+)?\[\s*(?:(es|cs|ss|ds|fs|gs)\s*:)?([^\]]+)\]$")
_IMMEDIATE_PATTERN = re.compile(r"^(?:(byte|word)\s+)?([+-]?(?:0x[0-9a-f]+|[0-9]+))$")
_ADDRESS_TERM_PATTERN = re.compile(r"([+-]?)\s*([0-9a-z]+)")
_KEYWORD_WIDTH = {"byte": 8, "word": 16}


@dataclass(frozen=True)
class Instruction:
    mnemonic: str
    operands: tuple[Operand, ...] = field(default_factory=tuple)

    def __post_init__(self):
        # accept lists from callers, keep the dataclass hashable
        object.__setattr__(self, "operands", tuple(self.operands))

    @property
    def spec(self) -> X86Mnemonic | None:
        return LITERAL_TO_MNEMONIC.get(self.mnemonic)

    @property
    def arity(self) -> int:
        return len(self.operands)

    @property
    def operand_size(self) -> int:
        """Width of the operation, taken from the first sized register or memory
        operand. Instructions without such an operand default to 16 bits."""
        for operand in self.operands:
            if isinstance(operand, Memory):
                return operand.width
            if isinstance(operand, Register) and operand.is_general:
                return operand.size
        return 16

    @property
    def asm(self) -> str:
        if not self.operands:
            return self.mnemonic
        spec = self.spec
        rendered = []
        for operand in self.operands:
            text = operand.asm
            if (
                isinstance(operand, Immediate)
                and not (spec and spec.byte_immediate)
                and operand.width < self.operand_size
            ):
                text = f"byte {text}"
            rendered.append(text)
        return f"{self.mnemonic} {', '.join(rendered)}"

    def __str__(self) -> str:
        return self.asm

    def to_dict(self) -> dict:
        return {"mnemonic": self.mnemonic, "operands": [op.to_dict() for op in self.operands]}

    @classmethod
    def from_dict(cls, data: dict) -> "Instruction":
        return cls(data["mnemonic"], tuple(operand_from_dict(op) for op in data.get("operands", [])))

    @staticmethod
    def from_asm(line: str) -> "Instruction":
        # Example: "add ax, 0x10"           -> Register, Immediate(16)
        # Example: "add ax, byte 0x10"      -> Register, Immediate(8)
        # Example: "mov byte [bx+si+0x4], al"
        line = line.strip().lower()
        if not line:
            raise ValueError(f"empty instruction line: {line!r}")
        literal, _, rest = line.partition(" ")
        spec = LITERAL_TO_MNEMONIC.get(literal)
        if spec is None:
            raise ValueError(f"unknown mnemonic '{literal}' in line: {line}")

        tokens = [token.strip() for token in rest.split(",")] if rest.strip() else []
        parsed = [_parse_operand_token(token, line) for token in tokens]

        size = None
        for operand, _ in parsed:
            if isinstance(operand, Register) and operand.is_general:
                size = operand.size
                break
            if isinstance(operand, Memory) and operand.width:
                size = operand.width
                break

        operands: list[Operand] = []
        for operand, explicit_width in parsed:
            if isinstance(operand, Memory) and explicit_width is None:
                if size is None:
                    raise ValueError(f"ambiguous memory operand size in line: {line}")
                operand = Memory(operand.base, operand.displacement, size, operand.segment)
            elif isinstance(operand, Immediate) and explicit_width is None:
                if spec.byte_immediate:
                    width = 8
                else:
                    width = size if size is not None else 16
                operand = Immediate(operand.value, width)
            operands.append(operand)
        return Instruction(literal, tuple(operands))


def _parse_address(text: str, line: str) -> tuple[str | None, int]:
    registers = []
    displacement = 0
    compact = text.replace(" ", "")
    for sign, term in _ADDRESS_TERM_PATTERN.findall(compact):
        if term in _ADDRESSING_ORDER:
            if sign == "-":
                raise ValueError(f"negative base register in line: {line}")
            registers.append(term)
        else:
            value = int(term, 0)
            displacement += -value if sign == "-" else value
    if not registers:
        return None, displacement
    registers.sort(key=_ADDRESSING_ORDER.index)
    base = "+".join(registers)
    if base not in ADDRESSING_MODES:
        raise ValueError(f"invalid 16-bit addressing mode '{base}' in line: {line}")
    return base, displacement


def _parse_operand_token(token: str, line: str) -> tuple[Operand, int | None]:
    if token in ALL_REGISTERS:
        return Register(token), None

    matched = _MEMORY_PATTERN.match(token)
    if matched:
        keyword, segment, address = matched.groups()
        base, displacement = _parse_address(address, line)
        width = _KEYWORD_WIDTH[keyword] if keyword else None
        return Memory(base, displacement, width or 0, segment), width

    matched = _IMMEDIATE_PATTERN.match(token)
    if matched:
        keyword, value = matched.groups()
        width = _KEYWORD_WIDTH[keyword] if keyword else None
        return Immediate(int(value, 0), width or 0), width

    raise ValueError(f"cannot parse operand '{token}' in line: {line}")


# ---------------------------------------------------------------------------- #
#                                 Flag Effects                                 #
# ---------------------------------------------------------------------------- #


_FIXED_FLAG_EFFECTS: dict[str, tuple[int, int]] = {
    "add": (ARITHMETIC_FLAGS, 0),
    "adc": (ARITHMETIC_FLAGS, 0),
    "sub": (ARITHMETIC_FLAGS, 0),
    "sbb": (ARITHMETIC_FLAGS, 0),
    "cmp": (ARITHMETIC_FLAGS, 0),
    "neg": (ARITHMETIC_FLAGS, 0),
    "and": (ARITHMETIC_FLAGS & ~AF, AF),
    "or": (ARITHMETIC_FLAGS & ~AF, AF),
    "xor": (ARITHMETIC_FLAGS & ~AF, AF),
    "test": (ARITHMETIC_FLAGS & ~AF, AF),
    "inc": (ARITHMETIC_FLAGS & ~CF, 0),
    "dec": (ARITHMETIC_FLAGS & ~CF, 0),
    "mul": (CF | OF, SF | ZF | AF | PF),
    "imul": (CF | OF, SF | ZF | AF | PF),
    "div": (0, ARITHMETIC_FLAGS),
    "idiv": (0, ARITHMETIC_FLAGS),
    "clc": (CF, 0),
    "stc": (CF, 0),
    "cmc": (CF, 0),
    "cld": (DF, 0),
    "std": (DF, 0),
    "cli": (IF, 0),
    "sti": (IF, 0),
    "sahf": (SF | ZF | AF | PF | CF, 0),
    "popf": (ARITHMETIC_FLAGS | TF | IF | DF, 0),
    "daa": (CF | AF | SF | ZF | PF, OF),
    "das": (CF | AF | SF | ZF | PF, OF),
    "aaa": (AF | CF, OF | SF | ZF | PF),
    "aas": (AF | CF, OF | SF | ZF | PF),
    "aam": (SF | ZF | PF, CF | OF | AF),
    "aad": (SF | ZF | PF, CF | OF | AF),
}


def flag_effects(instruction: Instruction) -> tuple[int, int]:
    """Return `(defined, undefined)` flag masks written by `instruction`.

    Flags in neither mask keep their previous value. Shift and rotate effects
    depend on the count: a count of 1 defines OF, larger counts leave it
    undefined, a zero count changes nothing and a `cl` count is treated
    conservatively.
    """
    literal = instruction.mnemonic
    if literal in _FIXED_FLAG_EFFECTS:
        return _FIXED_FLAG_EFFECTS[literal]

    spec = instruction.spec
    if spec is None or spec.group != X86Group.SHIFT or len(instruction.operands) != 2:
        return (0, 0)

    count_operand = instruction.operands[1]
    is_rotate = literal in ("rol", "ror", "rcl", "rcr")
    if isinstance(count_operand, Immediate):
        count = count_operand.value & 0x1F
        if count == 0:
            return (0, 0)
        if is_rotate:
            return (CF | OF, 0) if count == 1 else (CF, OF)
        if count == 1:
            return (ARITHMETIC_FLAGS & ~AF, AF)
        if count >= instruction.operand_size:
            return (SF | ZF | PF, CF | AF | OF)
        return (CF | SF | ZF | PF, AF | OF)

    if is_rotate:
        return (CF, OF)
    return (SF | ZF | PF, CF | AF | OF)


def undefined_flags(instructions) -> int:
    """Mask of flags whose value is architecturally undefined after running
    `instructions` in order."""
    undefined = 0
    for instruction in instructions:
        defined, unknown = flag_effects(instruction)
        undefined = (undefined & ~defined) | unknown
    return undefined

import struct

from prober_core.kinds import EncodingErrorKind, X86Group
from prober_core.x86 import (
    ADDRESSING_MODES,
    DEFAULT_ASCII_ADJUST_BASE,
    LITERAL_TO_MNEMONIC,
    Immediate,
    Instruction,
    Memory,
    Operand,
    Register,
    X86Mnemonic,
)

SEGMENT_OVERRIDE_PREFIXES = {"es": 0x26, "cs": 0x2E, "ss": 0x36, "ds": 0x3E, "fs": 0x64, "gs": 0x65}

# push/pop of segment registers, pop cs does not exist
_PUSH_SEGMENT = {"es": b"\x06", "cs": b"\x0e", "ss": b"\x16", "ds": b"\x1e", "fs": b"\x0f\xa0", "gs": b"\x0f\xa8"}
_POP_SEGMENT = {"es": b"\x07", "ss": b"\x17", "ds": b"\x1f", "fs": b"\x0f\xa1", "gs": b"\x0f\xa9"}


class EncodingError(Exception):
    kind: EncodingErrorKind
    instruction: Instruction

    def __init__(self, kind: EncodingErrorKind, instruction: Instruction, message: str):
        super().__init__(f"{kind}: {message} ({instruction.asm})")
        self.kind = kind
        self.instruction = instruction


# ---------------------------------------------------------------------------- #
#                                Encoding Helpers                              #
# ---------------------------------------------------------------------------- #


def _invalid(instruction: Instruction, message: str) -> EncodingError:
    return EncodingError(EncodingErrorKind.INVALID_OPERAND_FORM, instruction, message)


def _out_of_range(instruction: Instruction, message: str) -> EncodingError:
    return EncodingError(EncodingErrorKind.OPERAND_OUT_OF_RANGE, instruction, message)


def _modrm(mod: int, reg: int, rm: int) -> int:
    return ((mod & 0x3) << 6) | ((reg & 0x7) << 3) | (rm & 0x7)


def _immediate_bytes(instruction: Instruction, value: int, width: int) -> bytes:
    if width not in (8, 16):
        raise _invalid(instruction, f"immediate width {width} is not 8 or 16")
    if not -(1 << (width - 1)) <= value < (1 << width):
        raise _out_of_range(instruction, f"immediate {value:#x} does not fit {width} bits")
    mask = (1 << width) - 1
    return struct.pack("<B" if width == 8 else "<H", value & mask)


def _general_register(instruction: Instruction, operand: Operand) -> Register:
    if not isinstance(operand, Register) or not operand.is_general:
        raise _invalid(instruction, f"expected a general register, found {operand.asm}")
    return operand


def _check_register(instruction: Instruction, operand: Operand):
    if isinstance(operand, Register) and not (operand.is_general or operand.is_segment):
        raise _invalid(instruction, f"unknown register '{operand.name}'")


def _segment_prefix(instruction: Instruction) -> bytes:
    prefixes = bytearray()
    for operand in instruction.operands:
        if isinstance(operand, Memory) and operand.segment is not None:
            if operand.segment not in SEGMENT_OVERRIDE_PREFIXES:
                raise _invalid(instruction, f"unknown segment override '{operand.segment}'")
            prefixes.append(SEGMENT_OVERRIDE_PREFIXES[operand.segment])
    if len(prefixes) > 1:
        raise _invalid(instruction, "more than one memory operand")
    return bytes(prefixes)


def _rm_bytes(instruction: Instruction, operand: Operand, reg_field: int) -> bytes:
    """ModRM (and displacement) selecting `operand` with `reg_field` as the reg bits."""
    if isinstance(operand, Register):
        if not operand.is_general:
            raise _invalid(instruction, f"'{operand.name}' is not addressable through ModRM")
        return bytes([_modrm(0b11, reg_field, operand.index)])

    if not isinstance(operand, Memory):
        raise _invalid(instruction, f"expected register or memory, found {operand.asm}")
    if operand.width not in (8, 16):
        raise _invalid(instruction, f"memory width {operand.width} is not 8 or 16")

    displacement = operand.displacement
    if not -0x8000 <= displacement <= 0xFFFF:
        raise _out_of_range(instruction, f"displacement {displacement:#x} does not fit 16 bits")

    if operand.base is None:
        return bytes([_modrm(0b00, reg_field, 0b110)]) + struct.pack("<H", displacement & 0xFFFF)

    if operand.base not in ADDRESSING_MODES:
        raise _invalid(instruction, f"invalid 16-bit addressing mode '{operand.base}'")
    rm = ADDRESSING_MODES.index(operand.base)

    signed = displacement - 0x10000 if displacement > 0x7FFF else displacement
    # [bp] has no mod=00 form, r/m 110 means a direct address there
    if signed == 0 and operand.base != "bp":
        return bytes([_modrm(0b00, reg_field, rm)])
    if -0x80 <= signed <= 0x7F:
        return bytes([_modrm(0b01, reg_field, rm)]) + struct.pack("<b", signed)
    return bytes([_modrm(0b10, reg_field, rm)]) + struct.pack("<H", displacement & 0xFFFF)


def _matching_sizes(instruction: Instruction, first: Operand, second: Operand) -> int:
    if first.size != second.size:
        raise _invalid(instruction, f"operand size mismatch {first.asm}, {second.asm}")
    return first.size


def _w(size: int) -> int:
    return 0 if size == 8 else 1


# ---------------------------------------------------------------------------- #
#                                 Group Encoders                               #
# ---------------------------------------------------------------------------- #


def _encode_alu(instruction: Instruction, spec: X86Mnemonic) -> bytes:
    destination, source = instruction.operands
    _general_or_memory(instruction, destination)

    if isinstance(source, Immediate):
        size = destination.size
        if isinstance(destination, Register) and destination.index == 0 and source.width == size:
            return bytes([spec.opcode + 4 + _w(size)]) + _immediate_bytes(instruction, source.value, size)
        if source.width == size:
            opcode = 0x80 + _w(size)
        elif size == 16 and source.width == 8:
            opcode = 0x83
        else:
            raise _invalid(instruction, f"immediate width {source.width} for a {size}-bit operand")
        return (
            bytes([opcode])
            + _rm_bytes(instruction, destination, spec.ext)
            + _immediate_bytes(instruction, source.value, source.width)
        )

    return _encode_rm_reg(instruction, spec.opcode, destination, source)


def _general_or_memory(instruction: Instruction, operand: Operand):
    if isinstance(operand, Immediate):
        raise _invalid(instruction, "immediate cannot be a destination")
    if isinstance(operand, Register) and not operand.is_general:
        raise _invalid(instruction, f"'{operand.name}' is not a general register")


def _encode_rm_reg(instruction: Instruction, opcode: int, destination: Operand, source: Operand) -> bytes:
    """`opcode` r/m,reg and `opcode + 2` reg,r/m, with the width bit folded in."""
    _general_or_memory(instruction, source)
    size = _matching_sizes(instruction, destination, source)
    if isinstance(source, Register):
        return bytes([opcode + _w(size)]) + _rm_bytes(instruction, destination, source.index)
    if isinstance(destination, Register):
        return bytes([opcode + 2 + _w(size)]) + _rm_bytes(instruction, source, destination.index)
    raise _invalid(instruction, "two memory operands")


def _encode_mov(instruction: Instruction, spec: X86Mnemonic) -> bytes:
    destination, source = instruction.operands

    if isinstance(destination, Register) and destination.is_segment:
        if destination.name == "cs":
            raise _invalid(instruction, "cs cannot be loaded with mov")
        if isinstance(source, Immediate) or source.size != 16 or (
            isinstance(source, Register) and not source.is_general
        ):
            raise _invalid(instruction, "segment registers load from a 16-bit register or memory")
        return bytes([0x8E]) + _rm_bytes(instruction, source, destination.index)

    if isinstance(source, Register) and source.is_segment:
        _general_or_memory(instruction, destination)
        if destination.size != 16:
            raise _invalid(instruction, "segment registers store to a 16-bit register or memory")
        return bytes([0x8C]) + _rm_bytes(instruction, destination, source.index)

    _general_or_memory(instruction, destination)
    if isinstance(source, Immediate):
        size = destination.size
        if source.width != size:
            raise _invalid(instruction, f"immediate width {source.width} for a {size}-bit operand")
        immediate = _immediate_bytes(instruction, source.value, size)
        if isinstance(destination, Register):
            base = 0xB0 if size == 8 else 0xB8
            return bytes([base + destination.index]) + immediate
        return bytes([0xC6 + _w(size)]) + _rm_bytes(instruction, destination, 0) + immediate

    return _encode_rm_reg(instruction, spec.opcode, destination, source)


def _encode_test(instruction: Instruction, spec: X86Mnemonic) -> bytes:
    destination, source = instruction.operands
    _general_or_memory(instruction, destination)

    if isinstance(source, Immediate):
        if spec.group == X86Group.XCHG:
            raise _invalid(instruction, "xchg cannot take an immediate")
        size = destination.size
        if source.width != size:
            raise _invalid(instruction, f"immediate width {source.width} for a {size}-bit operand")
        immediate = _immediate_bytes(instruction, source.value, size)
        if isinstance(destination, Register) and destination.index == 0:
            return bytes([0xA8 + _w(size)]) + immediate
        return bytes([0xF6 + _w(size)]) + _rm_bytes(instruction, destination, 0) + immediate

    # test and xchg are symmetric, only the r/m,reg opcode exists
    if isinstance(source, Memory):
        destination, source = source, destination
    _general_or_memory(instruction, source)
    if not isinstance(source, Register):
        raise _invalid(instruction, "two memory operands")
    size = _matching_sizes(instruction, destination, source)
    return bytes([spec.opcode + _w(size)]) + _rm_bytes(instruction, destination, source.index)


def _encode_incdec(instruction: Instruction, spec: X86Mnemonic) -> bytes:
    (operand,) = instruction.operands
    _general_or_memory(instruction, operand)
    if isinstance(operand, Register) and operand.size == 16:
        return bytes([spec.opcode + operand.index])
    return bytes([0xFE + _w(operand.size)]) + _rm_bytes(instruction, operand, spec.ext)


def _encode_unary(instruction: Instruction, spec: X86Mnemonic) -> bytes:
    (operand,) = instruction.operands
    _general_or_memory(instruction, operand)
    return bytes([0xF6 + _w(operand.size)]) + _rm_bytes(instruction, operand, spec.ext)


def _encode_imul(instruction: Instruction, spec: X86Mnemonic) -> bytes:
    if instruction.arity == 1:
        return _encode_unary(instruction, spec)

    destination = _general_register(instruction, instruction.operands[0])
    source = instruction.operands[1]
    _general_or_memory(instruction, source)
    if destination.size != 16 or source.size != 16:
        raise _invalid(instruction, "multi-operand imul only exists for 16-bit operands")

    if instruction.arity == 2:
        return b"\x0f\xaf" + _rm_bytes(instruction, source, destination.index)

    immediate = instruction.operands[2]
    if not isinstance(immediate, Immediate):
        raise _invalid(instruction, "third imul operand must be an immediate")
    opcode = 0x6B if immediate.width == 8 else 0x69
    return (
        bytes([opcode])
        + _rm_bytes(instruction, source, destination.index)
        + _immediate_bytes(instruction, immediate.value, immediate.width)
    )


def _encode_shift(instruction: Instruction, spec: X86Mnemonic) -> bytes:
    destination, count = instruction.operands
    _general_or_memory(instruction, destination)
    w = _w(destination.size)
    if isinstance(count, Register):
        if count.name != "cl":
            raise _invalid(instruction, "shift count register must be cl")
        return bytes([0xD2 + w]) + _rm_bytes(instruction, destination, spec.ext)
    if not isinstance(count, Immediate) or count.width != 8:
        raise _invalid(instruction, "shift count must be cl or an 8-bit immediate")
    if count.value == 1:
        return bytes([0xD0 + w]) + _rm_bytes(instruction, destination, spec.ext)
    return (
        bytes([0xC0 + w])
        + _rm_bytes(instruction, destination, spec.ext)
        + _immediate_bytes(instruction, count.value, 8)
    )


def _encode_stack(instruction: Instruction, spec: X86Mnemonic) -> bytes:
    (operand,) = instruction.operands
    is_push = spec.literal == "push"

    if isinstance(operand, Register) and operand.is_segment:
        table = _PUSH_SEGMENT if is_push else _POP_SEGMENT
        if operand.name not in table:
            raise _invalid(instruction, f"cannot pop into {operand.name}")
        return table[operand.name]

    if isinstance(operand, Immediate):
        if not is_push:
            raise _invalid(instruction, "cannot pop into an immediate")
        opcode = 0x6A if operand.width == 8 else 0x68
        return bytes([opcode]) + _immediate_bytes(instruction, operand.value, operand.width)

    _general_or_memory(instruction, operand)
    if operand.size != 16:
        raise _invalid(instruction, "stack operands are 16 bits wide")
    if isinstance(operand, Register):
        return bytes([spec.opcode + operand.index])
    opcode = 0xFF if is_push else 0x8F
    return bytes([opcode]) + _rm_bytes(instruction, operand, spec.ext)


def _encode_int(instruction: Instruction, spec: X86Mnemonic) -> bytes:
    (vector,) = instruction.operands
    if not isinstance(vector, Immediate) or vector.width != 8:
        raise _invalid(instruction, "interrupt vector must be an 8-bit immediate")
    if not 0 <= vector.value <= 0xFF:
        raise _out_of_range(instruction, f"interrupt vector {vector.value:#x} is not 0..0xff")
    return bytes([spec.opcode, vector.value])


def _encode_ascii_adjust(instruction: Instruction, spec: X86Mnemonic) -> bytes:
    base = DEFAULT_ASCII_ADJUST_BASE
    if instruction.arity == 1:
        (operand,) = instruction.operands
        if not isinstance(operand, Immediate) or operand.width != 8:
            raise _invalid(instruction, "base must be an 8-bit immediate")
        base = operand.value
    return bytes([spec.opcode]) + _immediate_bytes(instruction, base, 8)


_GROUP_ENCODERS = {
    X86Group.ALU: _encode_alu,
    X86Group.MOV: _encode_mov,
    X86Group.TEST: _encode_test,
    X86Group.XCHG: _encode_test,
    X86Group.INCDEC: _encode_incdec,
    X86Group.UNARY: _encode_unary,
    X86Group.IMUL: _encode_imul,
    X86Group.SHIFT: _encode_shift,
    X86Group.STACK: _encode_stack,
    X86Group.INT: _encode_int,
    X86Group.ASCII_ADJUST: _encode_ascii_adjust,
}


# ---------------------------------------------------------------------------- #
#                                 Public Encoder                               #
# ---------------------------------------------------------------------------- #


def encode(instruction: Instruction) -> bytes:
    """Encode a single instruction into 16-bit real-mode machine code.

    The operand widths of the instruction are taken literally; the only sign
    extension performed is the one the selected opcode does on the CPU
    (`0x83`, `0x6B`, `0x6A`).
    """
    spec = LITERAL_TO_MNEMONIC.get(instruction.mnemonic)
    if spec is None:
        raise EncodingError(
            EncodingErrorKind.UNSUPPORTED_MNEMONIC,
            instruction,
            f"mnemonic '{instruction.mnemonic}' is not supported",
        )
    if instruction.arity not in spec.arities:
        raise _invalid(instruction, f"'{spec.literal}' takes {spec.arities} operands")
    for operand in instruction.operands:
        _check_register(instruction, operand)

    if spec.group == X86Group.IMPLIED:
        return bytes([spec.opcode])

    prefix = _segment_prefix(instruction)
    body = _GROUP_ENCODERS[spec.group](instruction, spec)
    return prefix + body


def encode_all(instructions) -> bytes:
    return b"".join(encode(instruction) for instruction in instructions)


def is_encodable(instruction: Instruction) -> bool:
    try:
        encode(instruction)
    except EncodingError:
        return False
    return True

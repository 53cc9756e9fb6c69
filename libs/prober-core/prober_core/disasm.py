import logging

from capstone import CS_ARCH_X86, CS_MODE_16, Cs
from capstone.x86 import X86_OP_IMM, X86_OP_MEM, X86_OP_REG

from prober_core.encoder import encode
from prober_core.x86 import Immediate, Instruction, Memory, Operand, Register

logger = logging.getLogger("fuzzer")

# capstone names the 16-bit sign extensions after their 32-bit forms
_MNEMONIC_ALIASES = {"cwde": "cbw", "cdq": "cwd"}


def _signed16(value: int) -> int:
    value &= 0xFFFF
    return value - 0x10000 if value & 0x8000 else value


def same_operand(left: Operand, right: Operand) -> bool:
    """Operand equality modulo the representation of immediates and displacements.

    Decoders report sign-extended immediates at the operation width and may
    print displacements as signed or unsigned values; both describe the same
    machine code.
    """
    if isinstance(left, Register) and isinstance(right, Register):
        return left.name == right.name
    if isinstance(left, Immediate) and isinstance(right, Immediate):
        width = min(left.width, right.width)
        mask = (1 << width) - 1
        return (left.value & mask) == (right.value & mask)
    if isinstance(left, Memory) and isinstance(right, Memory):
        return (
            left.base == right.base
            and (left.displacement & 0xFFFF) == (right.displacement & 0xFFFF)
            and left.width == right.width
            and left.segment == right.segment
        )
    return False


def same_instruction(left: Instruction, right: Instruction) -> bool:
    return (
        left.mnemonic == right.mnemonic
        and left.arity == right.arity
        and all(same_operand(a, b) for a, b in zip(left.operands, right.operands))
    )


class Disassembler:
    """Independent 16-bit decoder used to cross-check the encoder and to
    produce human readable listings of reproducers."""

    def __init__(self):
        self.cs = Cs(CS_ARCH_X86, CS_MODE_16)
        self.cs.detail = True

    def _operand(self, insn, op) -> Operand:
        if op.type == X86_OP_REG:
            return Register(insn.reg_name(op.reg))
        if op.type == X86_OP_IMM:
            width = 8 if op.size == 1 else 16
            return Immediate(op.imm & ((1 << width) - 1), width)
        if op.type == X86_OP_MEM:
            registers = [insn.reg_name(reg) for reg in (op.mem.base, op.mem.index) if reg != 0]
            segment = insn.reg_name(op.mem.segment) if op.mem.segment != 0 else None
            if registers:
                return Memory("+".join(registers), _signed16(op.mem.disp), op.size * 8, segment)
            return Memory(None, op.mem.disp & 0xFFFF, op.size * 8, segment)
        raise ValueError(f"unsupported capstone operand type {op.type} in '{insn.mnemonic} {insn.op_str}'")

    def decode(self, code: bytes, address: int = 0) -> list[Instruction]:
        decoded = []
        for insn in self.cs.disasm(code, address):
            operands = tuple(self._operand(insn, op) for op in insn.operands)
            mnemonic = _MNEMONIC_ALIASES.get(insn.mnemonic, insn.mnemonic)
            decoded.append(Instruction(mnemonic, operands))
        return decoded

    def decode_one(self, code: bytes) -> Instruction | None:
        decoded = self.decode(code)
        return decoded[0] if decoded else None

    def listing(self, code: bytes, address: int = 0) -> list[str]:
        return [
            f"{insn.address:04x}  {insn.bytes.hex(' '):<24} {insn.mnemonic} {insn.op_str}".rstrip()
            for insn in self.cs.disasm(code, address)
        ]

    def cross_check(self, instruction: Instruction) -> Instruction | None:
        """Encode `instruction`, decode it again and return the decoded form
        when it disagrees with the original, `None` when both agree."""
        code = encode(instruction)
        decoded = self.decode(code)
        if len(decoded) == 1 and same_instruction(instruction, decoded[0]):
            return None
        disagreement = decoded[0] if decoded else Instruction("(bad)")
        logger.debug(f"encoder/decoder disagree: {instruction.asm} -> {code.hex()} -> {disagreement.asm}")
        return disagreement

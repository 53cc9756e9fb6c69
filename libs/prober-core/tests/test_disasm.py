import pytest

from prober_core.disasm import Disassembler, same_instruction, same_operand
from prober_core.encoder import encode
from prober_core.generator import GeneratorConfig, X86Generator
from prober_core.x86 import Immediate, Instruction, Memory


@pytest.fixture
def disassembler():
    return Disassembler()


@pytest.mark.parametrize(
    "asm",
    [
        "add bx, cx",
        "add bx, byte -0x1",
        "sub cx, word [si]",
        "mov byte [bx+si+0x4], al",
        "mov ax, word [bp+di-0x2]",
        "mov word [cs:0x104], 0x1",
        "xor word [0x140], 0x1234",
        "test al, 0x1",
        "inc cx",
        "dec byte [di]",
        "div bl",
        "idiv word [si+0x10]",
        "imul ax, bx",
        "imul ax, bx, byte 0x3",
        "sar dx, 3",
        "rcl al, cl",
        "cbw",
        "lahf",
    ],
)
def test_encoding_decodes_to_same_instruction(disassembler, asm: str):
    instruction = Instruction.from_asm(asm)
    assert disassembler.cross_check(instruction) is None


@pytest.mark.parametrize("code, mnemonic", [(b"\x98", "cbw"), (b"\x99", "cwd")])
def test_sign_extensions_use_16_bit_names(disassembler, code: bytes, mnemonic: str):
    (decoded,) = disassembler.decode(code)
    assert decoded == Instruction(mnemonic)


def test_generated_instructions_survive_decoding(disassembler):
    """Everything the generator emits decodes back to a single matching
    instruction, which keeps encoder bugs from masquerading as CPU bugs."""
    allowlist = frozenset(["add", "adc", "sub", "and", "xor", "mov", "test", "inc", "neg", "mul", "div", "imul"])
    generator = X86Generator(GeneratorConfig(opcode_allowlist=allowlist, seed=7))
    for _ in range(300):
        instruction = generator.random_instruction()
        decoded = disassembler.decode(encode(instruction))
        assert len(decoded) == 1, instruction.asm
        assert same_instruction(instruction, decoded[0]), f"{instruction.asm} -> {decoded[0].asm}"


def test_same_operand_ignores_immediate_representation():
    assert same_operand(Immediate(-1, 8), Immediate(0xFFFF, 16))
    assert not same_operand(Immediate(1, 8), Immediate(2, 8))
    assert same_operand(Memory("si", -2, 16), Memory("si", 0xFFFE, 16))
    assert not same_operand(Memory("si", 0, 16), Memory("si", 0, 8))


def test_listing_shows_addresses_and_bytes(disassembler):
    code = encode(Instruction.from_asm("inc ax")) + encode(Instruction.from_asm("mov bx, 0x1234"))
    lines = disassembler.listing(code, address=0x100)
    assert len(lines) == 2
    assert lines[0].startswith("0100")
    assert "inc" in lines[0]
    assert lines[1].startswith("0101")
    assert "bb 34 12" in lines[1]

import logging
import random
from dataclasses import dataclass, field
from typing import Callable, Iterator

from prober_core.encoder import is_encodable
from prober_core.kinds import OperandKind, OperandWidth, X86Group
from prober_core.probe import DATA_BASE, DATA_SIZE, DEFAULT_FLAGS
from prober_core.x86 import (
    ARITHMETIC_FLAGS,
    DEFAULT_ASCII_ADJUST_BASE,
    FUZZABLE_MNEMONICS,
    LITERAL_TO_MNEMONIC,
    Immediate,
    Instruction,
    Memory,
    Operand,
    Register,
    X86Mnemonic,
)

logger = logging.getLogger("fuzzer")

# Only these registers are ever written by generated code. si and di hold
# pointers into the scratch area, sp and bp belong to the probe.
DESTINATION_REGISTERS_8 = ("al", "ah", "bl", "bh", "cl", "ch", "dl", "dh")
DESTINATION_REGISTERS_16 = ("ax", "bx", "cx", "dx")
SOURCE_REGISTERS_16 = DESTINATION_REGISTERS_16 + ("si", "di", "bp")
MEMORY_BASES = ("si", "di", None)

# si/di start inside [DATA_BASE, DATA_BASE + POINTER_WINDOW), displacements
# stay below DISPLACEMENT_WINDOW, so every access lands in the scratch area
POINTER_WINDOW = 0x80
DISPLACEMENT_WINDOW = 0x40

BYTE_CORNERS = [0x00, 0x01, 0x7F, 0x80, 0xFF]
WORD_CORNERS = [0x0000, 0x0001, 0x007F, 0x0080, 0x00FF, 0x7FFF, 0x8000, 0xFFFF, 0x5555, 0xAAAA]
SHIFT_COUNT_CORNERS = [0, 1, 2, 7, 8, 9, 15, 16, 17, 31, 32, 33]
ASCII_ADJUST_CORNERS = [DEFAULT_ASCII_ADJUST_BASE, 0x10, 0x07, 0x01, 0x00, 0xFF]


@dataclass(frozen=True)
class GeneratorConfig:
    opcode_allowlist: frozenset[str] = FUZZABLE_MNEMONICS
    operand_width: OperandWidth = OperandWidth.MIXED
    max_instructions_per_probe: int = 4
    seed: int = 0
    iterations: int = 1000
    immediate_range: tuple[int, int] | None = None
    mutation_rate: float = 0.3
    retry_cap: int = 16

    def __post_init__(self):
        allowlist = frozenset(self.opcode_allowlist)
        unknown = allowlist - set(LITERAL_TO_MNEMONIC)
        if unknown:
            raise ValueError(f"unsupported mnemonics in allowlist: {sorted(unknown)}")
        unsafe = allowlist - FUZZABLE_MNEMONICS
        if unsafe:
            raise ValueError(f"mnemonics alter the stack or control flow of the probe: {sorted(unsafe)}")
        if not allowlist:
            raise ValueError("opcode allowlist is empty")
        if self.max_instructions_per_probe < 1:
            raise ValueError("probes need at least one instruction")
        if self.retry_cap < 1:
            raise ValueError("retry cap must be positive")
        object.__setattr__(self, "opcode_allowlist", allowlist)
        object.__setattr__(self, "operand_width", OperandWidth(self.operand_width))


@dataclass(frozen=True)
class FuzzingCase:
    instructions: tuple[Instruction, ...]
    seed: dict[str, int] = field(default_factory=dict, hash=False)
    case_id: int = 0

    def asm(self) -> list[str]:
        return [instruction.asm for instruction in self.instructions]


class X86Generator:
    """Seeded generator of short instruction sequences plus register seeds.

    All randomness flows through `self.rng`, so a config with the same seed
    yields the same cases in the same order.
    """

    def __init__(self, config: GeneratorConfig):
        self.config = config
        self.rng = random.Random(config.seed)
        self.mnemonics = sorted(config.opcode_allowlist)
        self.mutations_skipped = 0

    # ---------------------------------------------------------------------- #
    #                               Generation                               #
    # ---------------------------------------------------------------------- #

    def generate(self) -> Iterator[FuzzingCase]:
        for case_id in range(self.config.iterations):
            yield self.generate_case(case_id)

    def generate_case(self, case_id: int = 0) -> FuzzingCase:
        count = self.rng.randint(1, self.config.max_instructions_per_probe)
        instructions: list[Instruction] = []
        while len(instructions) < count:
            if instructions and self.rng.random() < self.config.mutation_rate:
                mutated = self.mutate(self.rng.choice(instructions))
                if mutated is not None:
                    instructions.append(mutated)
                    continue
            instructions.append(self.random_instruction())
        return FuzzingCase(tuple(instructions), self.random_seed(), case_id)

    def random_seed(self) -> dict[str, int]:
        seed = {name: self._value(16) for name in DESTINATION_REGISTERS_16}
        seed["si"] = DATA_BASE + self.rng.randrange(POINTER_WINDOW)
        seed["di"] = DATA_BASE + self.rng.randrange(POINTER_WINDOW)
        seed["bp"] = self._value(16)
        # TF stays clear, a single-step trap would end the probe early
        seed["flags"] = DEFAULT_FLAGS | (self.rng.getrandbits(16) & ARITHMETIC_FLAGS)
        return seed

    def random_instruction(self) -> Instruction:
        for _ in range(self.config.retry_cap):
            spec = LITERAL_TO_MNEMONIC[self.rng.choice(self.mnemonics)]
            candidate = self._instruction(spec, self.rng.choice(spec.arities))
            if self.is_valid(candidate):
                return candidate
        raise RuntimeError(
            f"no encodable instruction after {self.config.retry_cap} attempts "
            f"(allowlist: {self.mnemonics})"
        )

    def is_valid(self, instruction: Instruction) -> bool:
        """Encodable, writes only destination registers and keeps every
        memory access inside the scratch area."""
        if not is_encodable(instruction):
            return False
        spec = instruction.spec
        written = instruction.operands[:2] if spec.group == X86Group.XCHG else instruction.operands[:1]
        for operand in written:
            if isinstance(operand, Register) and operand.name not in (
                DESTINATION_REGISTERS_8 + DESTINATION_REGISTERS_16
            ):
                return False
        return all(_in_scratch(op) for op in instruction.operands if isinstance(op, Memory))

    # ---------------------------------------------------------------------- #
    #                                Mutation                                #
    # ---------------------------------------------------------------------- #

    def mutate(self, instruction: Instruction) -> Instruction | None:
        """Derive a valid variant of `instruction`, or `None` once
        `retry_cap` candidates have been rejected."""
        strategies: list[Callable[[Instruction], Instruction | None]] = [
            self.mutate_form,
            self.mutate_value,
            self.mutate_arity,
        ]
        for _ in range(self.config.retry_cap):
            candidate = self.rng.choice(strategies)(instruction)
            if candidate is not None and candidate != instruction and self.is_valid(candidate):
                return candidate
        self.mutations_skipped += 1
        logger.debug(f"mutation of '{instruction.asm}' skipped after {self.config.retry_cap} attempts")
        return None

    def mutate_form(self, instruction: Instruction) -> Instruction | None:
        """Swap one operand between register, immediate and memory form."""
        if not instruction.operands:
            return None
        index = self.rng.randrange(instruction.arity)
        current = instruction.operands[index]
        kinds = [kind for kind in OperandKind if kind != current.kind]
        kind = self.rng.choice(kinds)
        width = instruction.operand_size
        if kind == OperandKind.REGISTER:
            replacement: Operand = self._register(width, destination=index == 0)
        elif kind == OperandKind.IMMEDIATE:
            spec = instruction.spec
            replacement = self._immediate(8 if spec and spec.byte_immediate else width)
        else:
            replacement = self._memory(width)
        return _replace(instruction, index, replacement)

    def mutate_value(self, instruction: Instruction) -> Instruction | None:
        """Move one operand by a bounded delta or onto a boundary value."""
        if not instruction.operands:
            return None
        index = self.rng.randrange(instruction.arity)
        operand = instruction.operands[index]
        if isinstance(operand, Register):
            if operand.name == "cl" and instruction.spec.group == X86Group.SHIFT and index == 1:
                return None
            return _replace(instruction, index, self._register(operand.size, destination=index == 0))
        if isinstance(operand, Immediate):
            return _replace(instruction, index, Immediate(self._nudge(operand.value, operand.width), operand.width))
        if self.rng.random() < 0.5:
            moved = Memory(operand.base, operand.displacement + self.rng.randint(-8, 8), operand.width, operand.segment)
        else:
            moved = self._memory(operand.width)
        return _replace(instruction, index, moved)

    def mutate_arity(self, instruction: Instruction) -> Instruction | None:
        """Switch between the operand counts a mnemonic supports, e.g. the
        one, two and three operand forms of `imul`."""
        spec = instruction.spec
        if spec is None:
            return None
        arities = [arity for arity in spec.arities if arity != instruction.arity]
        if not arities:
            return None
        candidate = self._instruction(spec, self.rng.choice(arities))
        if candidate.operands and instruction.operands:
            kept = _replace(candidate, 0, instruction.operands[0])
            if self.is_valid(kept):
                return kept
        return candidate

    # ---------------------------------------------------------------------- #
    #                                Operands                                #
    # ---------------------------------------------------------------------- #

    def _width(self) -> int:
        match self.config.operand_width:
            case OperandWidth.BYTE:
                return 8
            case OperandWidth.WORD:
                return 16
            case _:
                return self.rng.choice([8, 16])

    def _value(self, width: int) -> int:
        corners = BYTE_CORNERS if width == 8 else WORD_CORNERS
        if self.rng.random() < 0.5:
            return self.rng.choice(corners)
        return self.rng.getrandbits(width)

    def _nudge(self, value: int, width: int) -> int:
        if self.rng.random() < 0.5:
            return self.rng.choice([0, (1 << width) - 1, 1 << (width - 1), (1 << (width - 1)) - 1])
        return value + self.rng.randint(-16, 16)

    def _register(self, width: int, destination: bool = True) -> Register:
        if width == 8:
            return Register(self.rng.choice(DESTINATION_REGISTERS_8))
        pool = DESTINATION_REGISTERS_16 if destination else SOURCE_REGISTERS_16
        return Register(self.rng.choice(pool))

    def _immediate(self, width: int) -> Immediate:
        if self.config.immediate_range is not None:
            low, high = self.config.immediate_range
            low = max(low, -(1 << (width - 1)))
            high = min(high, (1 << width) - 1)
            if low <= high:
                return Immediate(self.rng.randint(low, high), width)
        return Immediate(self._value(width), width)

    def _memory(self, width: int) -> Memory:
        base = self.rng.choice(MEMORY_BASES)
        if base is None:
            return Memory(None, DATA_BASE + self.rng.randrange(DATA_SIZE - 1), width)
        return Memory(base, self.rng.randrange(DISPLACEMENT_WINDOW), width)

    def _destination(self, width: int) -> Operand:
        if self.rng.random() < 0.7:
            return self._register(width)
        return self._memory(width)

    def _source(self, width: int, destination: Operand, allow_memory: bool = True) -> Operand:
        choices = ["register", "immediate"]
        if allow_memory and not isinstance(destination, Memory):
            choices.append("memory")
        match self.rng.choice(choices):
            case "register":
                return self._register(width, destination=False)
            case "immediate":
                return self._immediate(width)
            case _:
                return self._memory(width)

    def _instruction(self, spec: X86Mnemonic, arity: int) -> Instruction:
        literal = spec.literal
        if arity == 0:
            return Instruction(literal)

        width = self._width()
        match spec.group:
            case X86Group.ALU | X86Group.MOV:
                destination = self._destination(width)
                source = self._source(width, destination)
                # sign-extended imm8 form of the ALU group
                if (
                    spec.group == X86Group.ALU
                    and isinstance(source, Immediate)
                    and width == 16
                    and self.rng.random() < 0.3
                ):
                    source = self._immediate(8)
                return Instruction(literal, (destination, source))
            case X86Group.TEST:
                destination = self._destination(width)
                return Instruction(literal, (destination, self._source(width, destination, allow_memory=False)))
            case X86Group.XCHG:
                return Instruction(literal, (self._destination(width), self._register(width)))
            case X86Group.INCDEC | X86Group.UNARY:
                return Instruction(literal, (self._destination(width),))
            case X86Group.IMUL:
                if arity == 1:
                    return Instruction(literal, (self._destination(width),))
                source = self._register(16, destination=False) if self.rng.random() < 0.6 else self._memory(16)
                operands: tuple[Operand, ...] = (self._register(16), source)
                if arity == 3:
                    operands += (self._immediate(self.rng.choice([8, 16])),)
                return Instruction(literal, operands)
            case X86Group.SHIFT:
                count = self.rng.choice(
                    [Immediate(1, 8), Register("cl"), Immediate(self.rng.choice(SHIFT_COUNT_CORNERS), 8)]
                )
                return Instruction(literal, (self._destination(width), count))
            case X86Group.ASCII_ADJUST:
                return Instruction(literal, (Immediate(self.rng.choice(ASCII_ADJUST_CORNERS), 8),))
        raise ValueError(f"no operand generator for '{literal}'")


def _replace(instruction: Instruction, index: int, operand: Operand) -> Instruction:
    operands = list(instruction.operands)
    operands[index] = operand
    return Instruction(instruction.mnemonic, tuple(operands))


def _in_scratch(operand: Memory) -> bool:
    if operand.base is None:
        return DATA_BASE <= operand.displacement <= DATA_BASE + DATA_SIZE - operand.width // 8
    return operand.base in ("si", "di") and 0 <= operand.displacement < DISPLACEMENT_WINDOW


def generate(config: GeneratorConfig) -> Iterator[FuzzingCase]:
    """Lazy, finite stream of `config.iterations` fuzzing cases."""
    return X86Generator(config).generate()

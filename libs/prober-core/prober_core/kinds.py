try:
    from enum import StrEnum  # py>=3.11
except ImportError:  # pragma: no cover
    from enum import Enum

    class StrEnum(str, Enum):
        pass


# ---------------------------------------------------------------------------- #
#                               Instruction Model                              #
# ---------------------------------------------------------------------------- #


class OperandKind(StrEnum):
    REGISTER = "register"
    IMMEDIATE = "immediate"
    MEMORY = "memory"


class X86Group(StrEnum):
    ALU = "alu"
    MOV = "mov"
    TEST = "test"
    XCHG = "xchg"
    INCDEC = "incdec"
    UNARY = "unary"
    IMUL = "imul"
    SHIFT = "shift"
    STACK = "stack"
    INT = "int"
    IMPLIED = "implied"
    ASCII_ADJUST = "ascii_adjust"


class OperandWidth(StrEnum):
    BYTE = "8"
    WORD = "16"
    MIXED = "mixed"


# ---------------------------------------------------------------------------- #
#                                  Error Kinds                                 #
# ---------------------------------------------------------------------------- #


class EncodingErrorKind(StrEnum):
    UNSUPPORTED_MNEMONIC = "unsupported_mnemonic"
    INVALID_OPERAND_FORM = "invalid_operand_form"
    OPERAND_OUT_OF_RANGE = "operand_out_of_range"


class BuildErrorKind(StrEnum):
    ENCODING_FAILED = "encoding_failed"
    IMAGE_TOO_LARGE = "image_too_large"


class RunnerErrorKind(StrEnum):
    CONNECTION_FAILED = "connection_failed"
    EXECUTION_TIMEOUT = "execution_timeout"
    MALFORMED_OUTPUT = "malformed_output"
    BACKEND_FATAL = "backend_fatal"


class IterationStatus(StrEnum):
    MATCH = "match"
    MISMATCH = "mismatch"
    BUILD_ERROR = "build_error"
    EXECUTION_ERROR = "execution_error"

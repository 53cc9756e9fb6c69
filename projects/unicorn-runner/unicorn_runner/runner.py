import logging
import struct

from unicorn import UC_ARCH_X86, UC_ERR_INSN_INVALID, UC_HOOK_INTR, UC_MODE_16, UC_PROT_ALL, Uc, UcError
from unicorn.x86_const import (
    UC_X86_REG_AX,
    UC_X86_REG_BX,
    UC_X86_REG_CS,
    UC_X86_REG_CX,
    UC_X86_REG_DS,
    UC_X86_REG_DX,
    UC_X86_REG_EFLAGS,
    UC_X86_REG_ES,
    UC_X86_REG_IP,
    UC_X86_REG_SP,
    UC_X86_REG_SS,
)

from prober_core.kinds import RunnerErrorKind
from prober_core.probe import PROBE_ORIGIN, ProbeProgram
from prober_core.runner import Runner
from prober_core.settings import TIMEOUT_PER_PROBE
from prober_core.x86 import IF, TF
from unicorn_runner.settings import (
    DOS_EXIT,
    DOS_TERMINATE_VECTOR,
    DOS_VECTOR,
    DOS_WRITE,
    DUMMY_HANDLER_OFFSET,
    DUMMY_HANDLER_SEGMENT,
    INVALID_OPCODE_VECTOR,
    IVT_ENTRIES,
    LOAD_SEGMENT,
    MAX_FAULT_DELIVERIES,
    MAX_INSTRUCTIONS,
    MEMORY_SIZE,
    STACK_POINTER,
    STDOUT_HANDLE,
)

logger = logging.getLogger("fuzzer")

IRET = b"\xcf"
INT_20H = b"\xcd\x20"


def linear(segment: int, offset: int) -> int:
    return ((segment << 4) + (offset & 0xFFFF)) % MEMORY_SIZE


class _Session:
    """State of one probe execution inside a fresh Unicorn instance."""

    def __init__(self, probe: ProbeProgram, max_instructions: int):
        self.uc = Uc(UC_ARCH_X86, UC_MODE_16)
        self.max_instructions = max_instructions
        self.output = bytearray()
        self.exited = False
        self.hook_error: Exception | None = None
        self.pending: tuple[int, int] | None = None

        self.uc.mem_map(0, MEMORY_SIZE, UC_PROT_ALL)
        dummy = struct.pack("<HH", DUMMY_HANDLER_OFFSET, DUMMY_HANDLER_SEGMENT)
        self.uc.mem_write(0, dummy * IVT_ENTRIES)
        self.uc.mem_write(linear(DUMMY_HANDLER_SEGMENT, DUMMY_HANDLER_OFFSET), IRET)

        # a minimal PSP: returning to cs:0000 terminates the program
        self.uc.mem_write(linear(LOAD_SEGMENT, 0), INT_20H)
        self.uc.mem_write(linear(LOAD_SEGMENT, PROBE_ORIGIN), probe.image)

        for register in (UC_X86_REG_CS, UC_X86_REG_DS, UC_X86_REG_ES, UC_X86_REG_SS):
            self.uc.reg_write(register, LOAD_SEGMENT)
        self.uc.reg_write(UC_X86_REG_SP, STACK_POINTER)
        self.uc.hook_add(UC_HOOK_INTR, self.hook_interrupt)
        self.entry = linear(LOAD_SEGMENT, PROBE_ORIGIN + probe.entry_offset)

    # -------------------------------- interrupts ------------------------------- #

    def hook_interrupt(self, uc: Uc, intno: int, user_data):
        try:
            if intno == DOS_VECTOR:
                self._dos_service()
            elif intno == DOS_TERMINATE_VECTOR:
                self._exit()
            else:
                # dispatched from run() once emulation has stopped
                self.pending = (intno, uc.reg_read(UC_X86_REG_IP))
                uc.emu_stop()
        except UcError as e:
            self.hook_error = e
            uc.emu_stop()

    def _dos_service(self):
        ah = (self.uc.reg_read(UC_X86_REG_AX) >> 8) & 0xFF
        if ah == DOS_WRITE:
            handle = self.uc.reg_read(UC_X86_REG_BX)
            count = self.uc.reg_read(UC_X86_REG_CX)
            address = linear(self.uc.reg_read(UC_X86_REG_DS), self.uc.reg_read(UC_X86_REG_DX))
            if handle == STDOUT_HANDLE:
                self.output += self.uc.mem_read(address, count)
            self.uc.reg_write(UC_X86_REG_AX, count)
            self._set_carry(False)
        elif ah == DOS_EXIT:
            self._exit()
        else:
            logger.debug(f"[unicorn] unsupported int 21h function {ah:#04x}")
            self._set_carry(True)

    def _exit(self):
        self.exited = True
        self.uc.emu_stop()

    def _set_carry(self, value: bool):
        flags = self.uc.reg_read(UC_X86_REG_EFLAGS)
        self.uc.reg_write(UC_X86_REG_EFLAGS, (flags | 1) if value else (flags & ~1))

    def deliver(self, vector: int, return_ip: int) -> int:
        """Dispatch `vector` the way a real-mode CPU does: push flags, cs and
        ip, clear IF and TF and load cs:ip from the IVT. Returns the linear
        address of the handler."""
        uc = self.uc
        flags = uc.reg_read(UC_X86_REG_EFLAGS) & 0xFFFF
        cs = uc.reg_read(UC_X86_REG_CS)
        ss = uc.reg_read(UC_X86_REG_SS)
        sp = uc.reg_read(UC_X86_REG_SP)
        for word in (flags, cs, return_ip):
            sp = (sp - 2) & 0xFFFF
            uc.mem_write(linear(ss, sp), struct.pack("<H", word))
        uc.reg_write(UC_X86_REG_SP, sp)
        uc.reg_write(UC_X86_REG_EFLAGS, flags & ~(IF | TF))

        offset, segment = struct.unpack("<HH", uc.mem_read(vector * 4, 4))
        uc.reg_write(UC_X86_REG_CS, segment)
        uc.reg_write(UC_X86_REG_IP, offset)
        return linear(segment, offset)

    # --------------------------------- running --------------------------------- #

    def run(self, timeout: float):
        begin = self.entry
        for _ in range(MAX_FAULT_DELIVERIES + 1):
            self.pending = None
            try:
                self.uc.emu_start(
                    begin, MEMORY_SIZE - 1, timeout=int(timeout * 1_000_000), count=self.max_instructions
                )
            except UcError as e:
                if e.errno != UC_ERR_INSN_INVALID:
                    raise
                # unicorn stops on #UD instead of raising it
                self.pending = (INVALID_OPCODE_VECTOR, self.uc.reg_read(UC_X86_REG_IP))

            if self.pending is None or self.hook_error is not None:
                return
            vector, return_ip = self.pending
            logger.debug(f"[unicorn] delivering vector {vector:#04x}")
            begin = self.deliver(vector, return_ip)


class UnicornRunner(Runner):
    """Reference backend running probes on the Unicorn CPU emulator in
    16-bit real mode."""

    name = "unicorn"

    def __init__(self, timeout: float = TIMEOUT_PER_PROBE, max_instructions: int = MAX_INSTRUCTIONS):
        super().__init__(timeout)
        self.max_instructions = max_instructions

    def _run(self, probe: ProbeProgram, timeout: float) -> bytes:
        session = _Session(probe, self.max_instructions)
        try:
            session.run(timeout)
        except UcError as e:
            raise self._error(RunnerErrorKind.BACKEND_FATAL, f"emulation failed: {e}") from e

        if session.hook_error is not None:
            raise self._error(RunnerErrorKind.BACKEND_FATAL, f"interrupt dispatch failed: {session.hook_error}")
        if not session.exited:
            raise self._error(
                RunnerErrorKind.EXECUTION_TIMEOUT,
                f"probe did not exit within {timeout:.2f}s or {self.max_instructions} instructions",
            )
        return bytes(session.output)

#
# Real-mode machine layout
#

MEMORY_SIZE = 0x100000  # 1 MB, the whole real-mode address space
LOAD_SEGMENT = 0x1000  # the probe runs at 1000:0100 like a DOS .COM
STACK_POINTER = 0xFFFE
IVT_ENTRIES = 0x100

# every vector the probe leaves alone points at a bare iret, as a BIOS would
DUMMY_HANDLER_SEGMENT = 0xF000
DUMMY_HANDLER_OFFSET = 0xFF53

#
# Execution limits
#

MAX_INSTRUCTIONS = 100_000
MAX_FAULT_DELIVERIES = 8  # interrupts and exceptions dispatched through the IVT per probe

#
# DOS services
#

DOS_VECTOR = 0x21
DOS_TERMINATE_VECTOR = 0x20
DOS_WRITE = 0x40
DOS_EXIT = 0x4C
STDOUT_HANDLE = 1
INVALID_OPCODE_VECTOR = 6

#
# Port parameters (8N1)
#

DEFAULT_BAUDRATE = 115200
PORT_READ_TIMEOUT = 0.05  # seconds per read call, the link keeps its own deadlines
PORT_WRITE_TIMEOUT = 2.0

#
# Link policy
#

RETRY_LIMIT = 5
ACK_TIMEOUT = 1.0
BYTE_TIMEOUT = 0.5
HANDSHAKE_TIMEOUT = 3.0

#
# Messages understood by the on-target monitor
#

PING_REQUEST = b"P"
PING_REPLY = b"K"
RUN_REQUEST = b"R"  # followed by the raw probe image

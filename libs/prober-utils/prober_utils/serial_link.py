import binascii
import logging
import struct
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol

logger = logging.getLogger("fuzzer")

# ---------------------------------------------------------------------------- #
#                                  Wire Format                                 #
# ---------------------------------------------------------------------------- #
#
#   frame  : STX flags seq length(u16 le) payload checksum(u16 le)
#   reply  : ACK seq | NAK seq
#
# The checksum is CRC-16/CCITT over flags, seq, length and payload. Bit 0 of
# flags marks the last frame of a message; longer messages are split into
# frames of at most MAX_FRAME_PAYLOAD bytes and sent stop-and-wait.
#
# Bit 1 marks a sync frame. A link sends one, empty, before its first message
# and again after every reset; the receiver acknowledges it, never delivers
# it, and forgets the last delivered sequence number, so a reconnecting peer
# that restarts its numbering is not mistaken for a retransmission.
#

STX = 0x02
ACK = 0x06
NAK = 0x15
FLAG_FINAL = 0x01
FLAG_SYNC = 0x02
MAX_FRAME_PAYLOAD = 256
CRC_INIT = 0xFFFF

HEADER = struct.Struct("<BBH")
CHECKSUM = struct.Struct("<H")


def frame_checksum(flags: int, seq: int, payload: bytes) -> int:
    return binascii.crc_hqx(HEADER.pack(flags, seq, len(payload)) + payload, CRC_INIT)


@dataclass(frozen=True)
class Frame:
    seq: int
    payload: bytes
    final: bool = True
    sync: bool = False

    @property
    def flags(self) -> int:
        return (FLAG_FINAL if self.final else 0) | (FLAG_SYNC if self.sync else 0)

    @property
    def length(self) -> int:
        return len(self.payload)

    @property
    def checksum(self) -> int:
        return frame_checksum(self.flags, self.seq, self.payload)

    def encode(self) -> bytes:
        return (
            bytes([STX])
            + HEADER.pack(self.flags, self.seq, self.length)
            + self.payload
            + CHECKSUM.pack(self.checksum)
        )


# ---------------------------------------------------------------------------- #
#                                 State Machine                                #
# ---------------------------------------------------------------------------- #


class LinkState(str, Enum):
    IDLE = "idle"
    # sender
    SENDING = "sending"
    AWAITING_ACK = "awaiting_ack"
    FAILED = "failed"
    # receiver
    RECEIVING = "receiving"
    VERIFYING = "verifying"
    ACK_SENT = "ack_sent"
    NAK_SENT = "nak_sent"


_TRANSITIONS: dict[LinkState, frozenset[LinkState]] = {
    LinkState.IDLE: frozenset([LinkState.SENDING, LinkState.RECEIVING]),
    LinkState.SENDING: frozenset([LinkState.AWAITING_ACK]),
    LinkState.AWAITING_ACK: frozenset([LinkState.IDLE, LinkState.SENDING, LinkState.FAILED]),
    LinkState.FAILED: frozenset([LinkState.IDLE]),
    LinkState.RECEIVING: frozenset([LinkState.VERIFYING, LinkState.IDLE]),
    LinkState.VERIFYING: frozenset([LinkState.ACK_SENT, LinkState.NAK_SENT]),
    LinkState.ACK_SENT: frozenset([LinkState.IDLE]),
    LinkState.NAK_SENT: frozenset([LinkState.RECEIVING, LinkState.FAILED]),
}


class LinkError(Exception):
    pass


class LinkExhausted(LinkError):
    """A frame could not be transferred within the retry limit."""


class LinkTimeout(LinkError):
    """Nothing arrived before the caller's deadline."""


@dataclass
class LinkStats:
    frames_sent: int = 0
    retransmissions: int = 0
    acks_received: int = 0
    naks_received: int = 0
    ack_timeouts: int = 0
    syncs_sent: int = 0
    frames_received: int = 0
    acks_sent: int = 0
    naks_sent: int = 0
    duplicates: int = 0
    syncs_received: int = 0


class BytePort(Protocol):
    def write(self, data: bytes) -> int | None: ...

    def read(self, size: int = 1) -> bytes: ...

    def close(self): ...


# ---------------------------------------------------------------------------- #
#                                  Serial Link                                 #
# ---------------------------------------------------------------------------- #


class SerialLink:
    """Checksummed stop-and-wait transfer of messages over a half-duplex byte
    stream such as a serial port.

    A corrupted frame is never delivered: the receiver answers it with a NAK
    and the sender retransmits, up to `retry_limit` times per frame, after
    which `LinkExhausted` is raised.
    """

    def __init__(
        self,
        port: BytePort,
        retry_limit: int = 5,
        ack_timeout: float = 1.0,
        byte_timeout: float = 0.5,
        max_payload: int = MAX_FRAME_PAYLOAD,
    ):
        self.port = port
        self.retry_limit = retry_limit
        self.ack_timeout = ack_timeout
        self.byte_timeout = byte_timeout
        self.max_payload = max_payload
        self.state = LinkState.IDLE
        self.stats = LinkStats()
        self._seq = 0
        self._last_delivered: int | None = None
        self._synced = False

    def _transition(self, state: LinkState):
        if state not in _TRANSITIONS[self.state]:
            raise LinkError(f"illegal link transition {self.state.value} -> {state.value}")
        self.state = state

    def reset(self):
        """Return to idle after a failure and drop whatever is buffered."""
        self.state = LinkState.IDLE
        self._synced = False
        self._drain()

    # ------------------------------- byte level ------------------------------- #

    def _read_exact(self, size: int, timeout: float) -> bytes:
        deadline = time.monotonic() + timeout
        buffer = bytearray()
        while len(buffer) < size and time.monotonic() < deadline:
            buffer += self.port.read(size - len(buffer))
        return bytes(buffer)

    def _read_byte(self, deadline: float) -> int | None:
        while time.monotonic() < deadline:
            data = self.port.read(1)
            if data:
                return data[0]
        return None

    def _drain(self):
        reset_input_buffer = getattr(self.port, "reset_input_buffer", None)
        if reset_input_buffer is not None:
            reset_input_buffer()
            return
        deadline = time.monotonic() + self.byte_timeout
        while time.monotonic() < deadline and self.port.read(MAX_FRAME_PAYLOAD):
            pass

    # --------------------------------- sender --------------------------------- #

    def send_message(self, data: bytes):
        if self.state != LinkState.IDLE:
            raise LinkError(f"cannot send while {self.state.value}")
        if not self._synced:
            self.sync()
        chunks = [data[i : i + self.max_payload] for i in range(0, len(data), self.max_payload)] or [b""]
        for index, chunk in enumerate(chunks):
            self._send_frame(Frame(self._seq, chunk, final=index == len(chunks) - 1))
            self._seq = (self._seq + 1) & 0xFF

    def sync(self):
        """Start a new session with the peer; sent implicitly before the first
        message and after every reset."""
        self._send_frame(Frame(self._seq, b"", final=False, sync=True))
        self._seq = (self._seq + 1) & 0xFF
        self.stats.syncs_sent += 1
        self._synced = True

    def _send_frame(self, frame: Frame):
        encoded = frame.encode()
        attempts = 0
        while True:
            self._transition(LinkState.SENDING)
            self.port.write(encoded)
            self.stats.frames_sent += 1
            self._transition(LinkState.AWAITING_ACK)

            reply = self._await_reply(frame.seq)
            if reply == ACK:
                self.stats.acks_received += 1
                self._transition(LinkState.IDLE)
                return
            if reply == NAK:
                self.stats.naks_received += 1
            else:
                self.stats.ack_timeouts += 1

            attempts += 1
            if attempts > self.retry_limit:
                self._transition(LinkState.FAILED)
                raise LinkExhausted(f"frame {frame.seq} not acknowledged after {attempts} attempts")
            self.stats.retransmissions += 1
            logger.debug(f"serial: retransmitting frame {frame.seq} ({'nak' if reply == NAK else 'timeout'})")

    def _await_reply(self, seq: int) -> int | None:
        deadline = time.monotonic() + self.ack_timeout
        while True:
            code = self._read_byte(deadline)
            if code is None:
                return None
            if code not in (ACK, NAK):
                continue
            reply_seq = self._read_byte(deadline)
            if reply_seq is None:
                return None
            if reply_seq == seq:
                return code
            # stale reply to an earlier frame

    # -------------------------------- receiver -------------------------------- #

    def receive_message(self, timeout: float) -> bytes:
        """Block up to `timeout` seconds for the first frame of a message and
        return the reassembled payload."""
        payload = bytearray()
        wait = timeout
        while True:
            frame = self.receive_frame(wait)
            payload += frame.payload
            if frame.final:
                return bytes(payload)
            wait = self.ack_timeout * (self.retry_limit + 1)

    def receive_frame(self, timeout: float) -> Frame:
        if self.state != LinkState.IDLE:
            raise LinkError(f"cannot receive while {self.state.value}")
        self._transition(LinkState.RECEIVING)
        deadline = time.monotonic() + timeout
        failures = 0
        while True:
            if not self._wait_for_start(deadline):
                self._transition(LinkState.IDLE)
                raise LinkTimeout(f"no frame within {timeout:.2f}s")

            frame, seq = self._read_frame()
            self._transition(LinkState.VERIFYING)
            if frame is None:
                failures += 1
                self._reply(NAK, seq)
                self.stats.naks_sent += 1
                self._transition(LinkState.NAK_SENT)
                if failures > self.retry_limit:
                    self._transition(LinkState.FAILED)
                    raise LinkExhausted(f"{failures} corrupted frames in a row")
                self._transition(LinkState.RECEIVING)
                continue

            self._reply(ACK, frame.seq)
            self.stats.acks_sent += 1
            self._transition(LinkState.ACK_SENT)
            self._transition(LinkState.IDLE)
            if frame.sync:
                logger.debug(f"serial: peer started a new session at frame {frame.seq}")
                self._last_delivered = None
                self.stats.syncs_received += 1
                self._transition(LinkState.RECEIVING)
                continue
            if frame.seq == self._last_delivered:
                # our ACK was lost and the sender repeated the frame
                self.stats.duplicates += 1
                self._transition(LinkState.RECEIVING)
                continue

            self._last_delivered = frame.seq
            self.stats.frames_received += 1
            return frame

    def _wait_for_start(self, deadline: float) -> bool:
        while True:
            code = self._read_byte(deadline)
            if code is None:
                return False
            if code == STX:
                return True

    def _read_frame(self) -> tuple[Frame | None, int]:
        header = self._read_exact(HEADER.size, self.byte_timeout)
        if len(header) < HEADER.size:
            return None, 0
        flags, seq, length = HEADER.unpack(header)
        if length > self.max_payload:
            self._drain()
            return None, seq
        body = self._read_exact(length + CHECKSUM.size, self.byte_timeout)
        if len(body) < length + CHECKSUM.size:
            return None, seq
        payload = body[:length]
        (checksum,) = CHECKSUM.unpack(body[length:])
        if checksum != frame_checksum(flags, seq, payload):
            logger.debug(f"serial: checksum mismatch on frame {seq}")
            return None, seq
        return Frame(seq, payload, bool(flags & FLAG_FINAL), bool(flags & FLAG_SYNC)), seq

    def _reply(self, code: int, seq: int):
        self.port.write(bytes([code, seq & 0xFF]))


# ---------------------------------------------------------------------------- #
#                               Simulated Channel                              #
# ---------------------------------------------------------------------------- #


class MemoryPort:
    """One end of an in-memory serial line. `tamper` rewrites outgoing writes,
    which is how tests inject corruption and loss."""

    def __init__(self, timeout: float = 0.05):
        self.timeout = timeout
        self.peer: "MemoryPort | None" = None
        self.tamper: Callable[[bytes], bytes] | None = None
        self.written: list[bytes] = []
        self.is_open = True
        self._inbox = bytearray()
        self._condition = threading.Condition()

    def write(self, data: bytes) -> int:
        data = bytes(data)
        self.written.append(data)
        if self.tamper is not None:
            data = self.tamper(data)
        if self.peer is not None and data:
            self.peer._deliver(data)
        return len(data)

    def _deliver(self, data: bytes):
        with self._condition:
            self._inbox += data
            self._condition.notify_all()

    def read(self, size: int = 1) -> bytes:
        with self._condition:
            self._condition.wait_for(lambda: len(self._inbox) > 0, timeout=self.timeout)
            chunk = bytes(self._inbox[:size])
            del self._inbox[:size]
            return chunk

    def reset_input_buffer(self):
        with self._condition:
            self._inbox.clear()

    def close(self):
        self.is_open = False


def loopback_pair(timeout: float = 0.05) -> tuple[MemoryPort, MemoryPort]:
    host, device = MemoryPort(timeout), MemoryPort(timeout)
    host.peer, device.peer = device, host
    return host, device


def corrupt_once(offset: int) -> Callable[[bytes], bytes]:
    """Tamper hook flipping the byte at `offset` of the first write long enough."""
    done = threading.Event()

    def tamper(data: bytes) -> bytes:
        if done.is_set() or len(data) <= offset:
            return data
        done.set()
        mutated = bytearray(data)
        mutated[offset] ^= 0xFF
        return bytes(mutated)

    return tamper


def drop_first(count: int = 1) -> Callable[[bytes], bytes]:
    """Tamper hook losing the first `count` writes entirely."""
    remaining = [count]

    def tamper(data: bytes) -> bytes:
        if remaining[0] > 0:
            remaining[0] -= 1
            return b""
        return data

    return tamper

import logging
from typing import Callable

import serial

from prober_core.kinds import RunnerErrorKind
from prober_core.probe import ProbeProgram
from prober_core.runner import Runner
from prober_core.settings import TIMEOUT_PER_PROBE
from prober_utils.serial_link import BytePort, LinkExhausted, LinkTimeout, SerialLink
from serial_runner.settings import (
    ACK_TIMEOUT,
    BYTE_TIMEOUT,
    DEFAULT_BAUDRATE,
    HANDSHAKE_TIMEOUT,
    PING_REPLY,
    PING_REQUEST,
    PORT_READ_TIMEOUT,
    PORT_WRITE_TIMEOUT,
    RETRY_LIMIT,
    RUN_REQUEST,
)

logger = logging.getLogger("fuzzer")


class SerialRunner(Runner):
    """Backend for a physical machine running a small monitor that receives
    probes over a serial line, executes them and sends back their output.

    A lost or corrupted frame is retransmitted by the link; only a link that
    gives up surfaces as `CONNECTION_FAILED`.
    """

    name = "serial"

    def __init__(
        self,
        port: str | None = None,
        baudrate: int = DEFAULT_BAUDRATE,
        timeout: float = TIMEOUT_PER_PROBE,
        handshake: bool = True,
        retry_limit: int = RETRY_LIMIT,
        ack_timeout: float = ACK_TIMEOUT,
        port_factory: Callable[[], BytePort] | None = None,
    ):
        super().__init__(timeout)
        if port is None and port_factory is None:
            raise ValueError("either a serial port name or a port factory is required")
        self.port_name = port
        self.baudrate = baudrate
        self.handshake = handshake
        self.retry_limit = retry_limit
        self.ack_timeout = ack_timeout
        self.port_factory = port_factory or self._open_serial_port
        self.port: BytePort | None = None
        self.link: SerialLink | None = None

    def _open_serial_port(self) -> BytePort:
        return serial.Serial(
            self.port_name,
            self.baudrate,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            timeout=PORT_READ_TIMEOUT,
            write_timeout=PORT_WRITE_TIMEOUT,
        )

    def _open(self):
        try:
            self.port = self.port_factory()
        except serial.SerialException as e:
            raise self._error(RunnerErrorKind.CONNECTION_FAILED, f"cannot open {self.port_name}: {e}") from e
        self.link = SerialLink(
            self.port,
            retry_limit=self.retry_limit,
            ack_timeout=self.ack_timeout,
            byte_timeout=BYTE_TIMEOUT,
        )
        if not self.handshake:
            return

        try:
            self.link.send_message(PING_REQUEST)
            reply = self.link.receive_message(HANDSHAKE_TIMEOUT)
        except (LinkExhausted, LinkTimeout, serial.SerialException) as e:
            self._close()
            raise self._error(RunnerErrorKind.CONNECTION_FAILED, f"handshake failed: {e}") from e
        if reply != PING_REPLY:
            self._close()
            raise self._error(RunnerErrorKind.CONNECTION_FAILED, f"unexpected handshake reply {reply!r}")
        logger.debug(f"[{self.name}] monitor on {self.port_name or 'injected port'} answered")

    def _close(self):
        if self.link is not None:
            logger.debug(f"[{self.name}] link stats: {self.link.stats}")
        if self.port is not None:
            self.port.close()
        self.port = None
        self.link = None

    def _run(self, probe: ProbeProgram, timeout: float) -> bytes:
        try:
            self.link.send_message(RUN_REQUEST + probe.image)
        except LinkExhausted as e:
            raise self._error(RunnerErrorKind.CONNECTION_FAILED, f"upload failed: {e}") from e
        except serial.SerialException as e:
            raise self._error(RunnerErrorKind.CONNECTION_FAILED, f"port error during upload: {e}") from e

        try:
            return self.link.receive_message(timeout)
        except LinkTimeout as e:
            raise self._error(RunnerErrorKind.EXECUTION_TIMEOUT, f"no result within {timeout:.2f}s") from e
        except LinkExhausted as e:
            raise self._error(RunnerErrorKind.CONNECTION_FAILED, f"result transfer failed: {e}") from e
        except serial.SerialException as e:
            raise self._error(RunnerErrorKind.CONNECTION_FAILED, f"port error while waiting: {e}") from e

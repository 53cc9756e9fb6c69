import threading

import pytest

from prober_utils.serial_link import (
    ACK,
    CHECKSUM,
    FLAG_SYNC,
    NAK,
    STX,
    Frame,
    LinkError,
    LinkExhausted,
    LinkState,
    LinkTimeout,
    MemoryPort,
    SerialLink,
    corrupt_once,
    drop_first,
    frame_checksum,
    loopback_pair,
)


def receive_in_background(link: SerialLink, timeout: float):
    result = {}

    def receive():
        try:
            result["data"] = link.receive_message(timeout)
        except LinkError as e:
            result["error"] = e

    thread = threading.Thread(target=receive, daemon=True)
    thread.start()
    return thread, result


@pytest.fixture
def links():
    host_port, device_port = loopback_pair()
    host = SerialLink(host_port, retry_limit=3, ack_timeout=0.2, byte_timeout=0.2)
    device = SerialLink(device_port, retry_limit=3, ack_timeout=0.2, byte_timeout=0.2)
    return host, device


def test_frame_layout():
    frame = Frame(3, b"\x01\x02", final=False)
    encoded = frame.encode()
    assert encoded[:5] == bytes([STX, 0x00, 0x03, 0x02, 0x00])
    assert encoded[5:7] == b"\x01\x02"
    assert encoded[7:] == CHECKSUM.pack(frame_checksum(0, 3, b"\x01\x02"))
    # the final flag is covered by the checksum
    assert Frame(3, b"\x01\x02").checksum != frame.checksum


@pytest.mark.parametrize("message", [b"", b"R" + bytes(range(200)), bytes(700)])
def test_message_roundtrip(links, message: bytes):
    host, device = links
    thread, result = receive_in_background(device, timeout=2.0)
    host.send_message(message)
    thread.join(timeout=5)

    assert result["data"] == message
    frames = max(1, -(-len(message) // 256))
    # one sync frame opens the session
    assert host.stats.frames_sent == frames + 1
    assert host.stats.syncs_sent == device.stats.syncs_received == 1
    assert host.stats.retransmissions == 0
    assert device.stats.frames_received == frames
    assert host.state == device.state == LinkState.IDLE


def test_corrupted_frame_is_retransmitted(links):
    host, device = links
    # offset 8 is a payload byte; the empty sync frame is too short to be hit
    host.port.tamper = corrupt_once(8)
    thread, result = receive_in_background(device, timeout=2.0)
    host.send_message(b"payload")
    thread.join(timeout=5)

    assert result["data"] == b"payload"
    assert device.stats.naks_sent == 1
    assert host.stats.naks_received == 1
    assert host.stats.retransmissions == 1
    assert host.stats.frames_sent == 3


def test_lost_frame_times_out_and_is_resent(links):
    host, device = links
    host.port.tamper = drop_first(1)
    thread, result = receive_in_background(device, timeout=2.0)
    host.send_message(b"payload")
    thread.join(timeout=5)

    assert result["data"] == b"payload"
    assert host.stats.ack_timeouts == 1
    assert host.stats.retransmissions == 1


def test_lost_ack_is_not_delivered_twice(links):
    host, device = links
    message = bytes(range(256)) + b"tail"
    thread, result = receive_in_background(device, timeout=2.0)
    host.sync()
    device.port.tamper = drop_first(1)
    host.send_message(message)
    thread.join(timeout=5)

    assert result["data"] == message
    assert device.stats.duplicates == 1
    assert device.stats.frames_received == 2
    assert host.stats.ack_timeouts == 1


def test_sender_gives_up_after_retry_limit():
    port = MemoryPort(timeout=0.01)
    link = SerialLink(port, retry_limit=2, ack_timeout=0.05)
    with pytest.raises(LinkExhausted):
        link.send_message(b"nobody listens")

    assert link.state == LinkState.FAILED
    assert link.stats.frames_sent == 3
    assert link.stats.ack_timeouts == 3
    assert link.stats.retransmissions == 2
    with pytest.raises(LinkError, match="cannot send"):
        link.send_message(b"again")

    link.reset()
    assert link.state == LinkState.IDLE


def test_reconnected_peer_is_not_taken_for_a_retransmission(links):
    host, device = links
    thread, result = receive_in_background(device, timeout=2.0)
    host.send_message(b"first")
    thread.join(timeout=5)
    assert result["data"] == b"first"

    # a fresh link on the same line numbers its frames from zero again
    reopened = SerialLink(host.port, retry_limit=3, ack_timeout=0.2, byte_timeout=0.2)
    thread, result = receive_in_background(device, timeout=2.0)
    reopened.send_message(b"second")
    thread.join(timeout=5)

    assert result["data"] == b"second"
    assert device.stats.syncs_received == 2
    assert device.stats.duplicates == 0


def test_reset_starts_a_new_session(links):
    host, device = links
    for message in (b"before", b"after"):
        thread, result = receive_in_background(device, timeout=2.0)
        host.send_message(message)
        thread.join(timeout=5)
        assert result["data"] == message
        host.reset()
    assert host.stats.syncs_sent == 2
    assert device.stats.frames_received == 2


def test_sync_flag_is_covered_by_the_checksum():
    frame = Frame(0, b"", final=False, sync=True)
    assert frame.encode()[1] == FLAG_SYNC
    assert frame.checksum != Frame(0, b"", final=False).checksum


def test_receiver_gives_up_on_persistent_corruption():
    host_port, device_port = loopback_pair()
    device = SerialLink(device_port, retry_limit=1, byte_timeout=0.1)
    bad = bytearray(Frame(0, b"abc").encode())
    bad[-1] ^= 0xFF
    host_port.write(bytes(bad) * 3)

    with pytest.raises(LinkExhausted):
        device.receive_message(timeout=1.0)
    assert device.state == LinkState.FAILED
    assert device.stats.naks_sent == 2
    assert host_port.read(2) == bytes([NAK, 0])


def test_silence_raises_timeout(links):
    _, device = links
    with pytest.raises(LinkTimeout):
        device.receive_message(timeout=0.1)
    assert device.state == LinkState.IDLE


def test_stale_replies_are_ignored():
    host_port, device_port = loopback_pair()
    host = SerialLink(host_port, retry_limit=0, ack_timeout=0.3)
    # an ACK for another sequence number followed by the real one
    device_port.write(bytes([ACK, 9, ACK, 0, ACK, 1]))
    host.send_message(b"x")
    assert host.stats.acks_received == 2


def test_illegal_transition_is_rejected(links):
    host, _ = links
    with pytest.raises(LinkError, match="illegal link transition"):
        host._transition(LinkState.ACK_SENT)

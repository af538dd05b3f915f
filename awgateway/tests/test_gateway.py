"""Tests for the gateway TCP client."""
import pytest

from awgateway.exceptions import TransportFailure
from awgateway.gateway import GatewayClient
from awgateway.protocol import Command, build_cmd_packet


class FakeSocket:
    def __init__(self, chunks):
        self.chunks = list(chunks)
        self.sent = []
        self.timeout = None
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True
        return False

    def settimeout(self, timeout):
        self.timeout = timeout

    def sendall(self, data):
        self.sent.append(data)

    def recv(self, size):
        if not self.chunks:
            return b""
        return self.chunks.pop(0)


class FakeConnector:
    """Hands out one scripted socket (or error) per connection attempt."""

    def __init__(self, *attempts):
        self.attempts = list(attempts)
        self.addresses = []
        self.sockets = []

    def __call__(self, address, timeout=None):
        self.addresses.append((address, timeout))
        attempt = self.attempts.pop(0)
        if isinstance(attempt, Exception):
            raise attempt
        sock = FakeSocket(attempt)
        self.sockets.append(sock)
        return sock


def test_send_cmd_reads_until_frame_complete(make_frame):
    frame = make_frame(Command.LIVEDATA, bytes([0x0E, 0x00, 0x19]))
    connector = FakeConnector([frame[:3], frame[3:6], frame[6:], b"unread"])
    client = GatewayClient("192.0.2.10", timeout=1.5, connection_factory=connector)

    assert client.send_cmd(Command.LIVEDATA) == frame
    assert connector.addresses == [(("192.0.2.10", 45000), 1.5)]
    sock = connector.sockets[0]
    assert sock.sent == [build_cmd_packet(Command.LIVEDATA)]
    assert sock.chunks == [b"unread"]
    assert sock.closed is True


def test_send_cmd_retries_after_socket_error(make_frame):
    frame = make_frame(Command.READ_STATION_MAC, bytes(6))
    connector = FakeConnector(ConnectionRefusedError("refused"), OSError("timed out"), [frame])
    client = GatewayClient("192.0.2.10", max_tries=3, retry_wait=0, connection_factory=connector)
    assert client.send_cmd(Command.READ_STATION_MAC) == frame
    assert len(connector.addresses) == 3


def test_send_cmd_gives_up(make_frame):
    connector = FakeConnector(OSError("unreachable"), [], OSError("unreachable"))
    client = GatewayClient("192.0.2.10", max_tries=3, retry_wait=0, connection_factory=connector)
    with pytest.raises(TransportFailure) as excinfo:
        client.send_cmd(Command.LIVEDATA)
    assert "after 3 attempts" in str(excinfo.value)
    assert len(connector.addresses) == 3


def test_live_data(make_frame):
    frame = make_frame(Command.LIVEDATA, bytes([0x0E, 0x00, 0x19, 0x0A, 0x00, 0x03]))
    client = GatewayClient("192.0.2.10", connection_factory=FakeConnector([frame]))
    assert [(r.key, r.value) for r in client.live_data()] == [("rain_rate", 2.5), ("wind_dir", 3)]


def test_firmware_and_mac(make_frame):
    version = b"GW2000A_V3.0.1"
    connector = FakeConnector(
        [make_frame(Command.READ_FIRMWARE_VERSION, bytes([len(version)]) + version)],
        [make_frame(Command.READ_STATION_MAC, bytes([0x48, 0x3F, 0xDA, 0x01, 0x02, 0x03]))],
    )
    client = GatewayClient("192.0.2.10", port=4500, connection_factory=connector)
    assert client.firmware_version() == "GW2000A_V3.0.1"
    assert client.mac_address() == "48:3F:DA:01:02:03"
    assert connector.addresses[0][0] == ("192.0.2.10", 4500)


def test_sensor_ids(make_frame):
    payload = bytes([0x06, 0x00, 0x00, 0x00, 0xAB, 0x00, 0x04])
    client = GatewayClient("192.0.2.10", connection_factory=FakeConnector(
        [make_frame(Command.READ_SENSOR_ID_NEW, payload)]))
    sensors = client.sensor_ids()
    assert [(s.name, s.signal) for s in sensors] == [("wh31_ch1", 4)]

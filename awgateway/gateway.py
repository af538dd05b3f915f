# awgateway - Gateway TCP Client
# -*- coding: utf-8 -*-
"""
 Blocking TCP client for the gateway command protocol

 One command packet is sent per connection and the response is read until the
 size field of the frame says it is complete. Failed attempts are retried
 `max_tries` times, `retry_wait` seconds apart.

 Class:
    GatewayClient(host, port=45000, timeout=2.0, max_tries=3, retry_wait=2.0)

 Functions:
    send_cmd(command, payload)  # Raw response frame for one command
    live_data()                 # Decoded live data FieldRecords
    sensor_ids()                # Decoded SensorMetadata of registered sensors
    firmware_version()          # Firmware version string
    mac_address()               # Station MAC "AA:BB:CC:DD:EE:FF"
"""
import logging
import socket
import time
from typing import List

from awgateway.exceptions import TransportFailure
from awgateway.models import FieldRecord, SensorMetadata
from awgateway.protocol import (Command, build_cmd_packet, decode, decode_firmware, decode_mac, decode_sensor_ids,
                                frame_length)

log = logging.getLogger(__name__)

DEFAULT_PORT = 45000
RECV_SIZE = 1024


class GatewayClient:
    def __init__(self, host: str, port: int = DEFAULT_PORT, timeout: float = 2.0, max_tries: int = 3,
                 retry_wait: float = 2.0, connection_factory=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.max_tries = max(1, max_tries)
        self.retry_wait = retry_wait
        self._connect = connection_factory or socket.create_connection

    def __repr__(self):
        return f"GatewayClient({self.host}:{self.port})"

    def _exchange(self, command: int, packet: bytes) -> bytes:
        with self._connect((self.host, self.port), timeout=self.timeout) as conn:
            conn.settimeout(self.timeout)
            conn.sendall(packet)
            response = b""
            while True:
                chunk = conn.recv(RECV_SIZE)
                if not chunk:
                    # Peer closed, let the decoder judge what arrived
                    break
                response += chunk
                length = frame_length(response, command)
                if length is not None and len(response) >= length:
                    break
        return response

    def send_cmd(self, command: int, payload: bytes = b"") -> bytes:
        """Send one command and return the raw response frame."""
        command = int(command)
        packet = build_cmd_packet(command, payload)
        for attempt in range(1, self.max_tries + 1):
            log.debug(f"Sending to {self.host}:{self.port} [{attempt}/{self.max_tries}]: {packet.hex(' ')}")
            try:
                response = self._exchange(command, packet)
            except OSError as e:
                log.debug(f"Attempt {attempt} to {self.host}:{self.port} failed: {e}")
            else:
                if response:
                    log.debug(f"Received {len(response)} bytes: {response.hex(' ')}")
                    return response
                log.debug(f"Attempt {attempt} to {self.host}:{self.port} returned no data")
            if attempt < self.max_tries:
                time.sleep(self.retry_wait)
        raise TransportFailure(f"Failed to obtain response to command 0x{command:02X} from "
                               f"{self.host}:{self.port} after {self.max_tries} attempts")

    def live_data(self, diagnostics=None) -> List[FieldRecord]:
        return decode(self.send_cmd(Command.LIVEDATA), Command.LIVEDATA, diagnostics)

    def sensor_ids(self, diagnostics=None) -> List[SensorMetadata]:
        return decode_sensor_ids(self.send_cmd(Command.READ_SENSOR_ID_NEW), diagnostics)

    def firmware_version(self) -> str:
        return decode_firmware(self.send_cmd(Command.READ_FIRMWARE_VERSION))

    def mac_address(self) -> str:
        return decode_mac(self.send_cmd(Command.READ_STATION_MAC))

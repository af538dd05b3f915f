# awgateway - Gateway Wire Protocol
# -*- coding: utf-8 -*-
"""
 Gateway Wire Protocol

 Encodes command packets and decodes response frames of the gateway TCP API.

 Frame layout (requests and responses):
    FF FF | command (1) | size (1 or 2, big-endian) | payload | checksum (1)

    size counts every byte from the command byte through the checksum. Live
    data and sensor id responses carry a 2-byte size, everything else a
    1-byte size. The checksum is the sum of the bytes from the command byte
    through the end of the payload, modulo 256.

 Functions:
    build_cmd_packet(command, payload) - Build a request packet
    frame_length(buffer, command) - Total frame length once the size field is readable
    unpack_frame(raw, command) - Validate a frame and return its payload
    decode(raw, command, diagnostics) - Decode a live data frame into FieldRecords
    decode_sensor_ids(raw, diagnostics) - Decode the sensor id frame into SensorMetadata
    decode_firmware(raw) - Decode the firmware version frame
    decode_mac(raw) - Decode the station MAC frame
"""
import logging
from enum import IntEnum
from typing import List, Optional

from awgateway.exceptions import ChecksumMismatch, FramingError, TruncatedFrame, UnknownField
from awgateway.models import FieldRecord, SensorMetadata
from awgateway.protocol.fields import (BITFIELD, ENUM, FIELD_TYPES, INT, RAW, SENSOR_TYPES, FieldPart,
                                       battery_state)

log = logging.getLogger(__name__)

HEADER = b"\xff\xff"

# Sensor id entries: type (1) address (4) battery (1) signal (1)
SENSOR_ID_ENTRY_SIZE = 7
INACTIVE_ADDRESS = 0xFFFFFFFF


class Command(IntEnum):
    READ_STATION_MAC = 0x26
    LIVEDATA = 0x27
    READ_SENSOR_ID_NEW = 0x3C
    READ_FIRMWARE_VERSION = 0x50


LONG_SIZE_COMMANDS = frozenset({Command.LIVEDATA, Command.READ_SENSOR_ID_NEW})


def checksum(data: bytes) -> int:
    return sum(data) & 0xFF


def size_width(command: int) -> int:
    return 2 if command in LONG_SIZE_COMMANDS else 1


def build_cmd_packet(command: int, payload: bytes = b"") -> bytes:
    """Build a request packet, requests always use a 1-byte size."""
    body = bytes([command, len(payload) + 3]) + bytes(payload)
    return HEADER + body + bytes([checksum(body)])


def frame_length(buffer: bytes, command: int) -> Optional[int]:
    """Return the total frame length, or None while the size field is incomplete."""
    width = size_width(command)
    if len(buffer) < 3 + width:
        return None
    return 2 + int.from_bytes(buffer[3:3 + width], "big")


def unpack_frame(raw: bytes, command: int) -> bytes:
    """
    Validate header, command, size and checksum of a response frame.

    Returns the payload between the size field and the checksum. Bytes past
    the declared frame end are ignored.
    """
    raw = bytes(raw)
    if len(raw) < 3 and HEADER.startswith(raw):
        raise TruncatedFrame(f"Frame ends before the command byte, received {len(raw)} bytes")
    if raw[:2] != HEADER:
        raise FramingError(f"Missing frame header, received {raw[:2].hex(' ')}")
    if raw[2] != command:
        raise FramingError(f"Invalid command code in gateway response. Expected '{command}' (0x{command:02X}), "
                           f"received '{raw[2]}' (0x{raw[2]:02X}).")
    width = size_width(command)
    length = frame_length(raw, command)
    if length is None:
        raise TruncatedFrame("Frame ends inside the size field")
    if length < 2 + 1 + width + 1:
        raise FramingError(f"Declared frame size {length - 2} is smaller than the frame overhead")
    if len(raw) < length:
        raise TruncatedFrame(f"Payload size does not match response length len: {len(raw)} declared: {length}")

    frame = raw[:length]
    expected = checksum(frame[2:-1])
    if expected != frame[-1]:
        raise ChecksumMismatch(expected, frame[-1])
    return frame[3 + width:-1]


def _decode_int(part: FieldPart, data: bytes):
    value = int.from_bytes(data, "big", signed=part.signed)
    if part.scale != 1:
        return value / part.scale
    return value


def _decode_enum(part: FieldPart, data: bytes):
    return part.table.get(int.from_bytes(data, "big"), "unknown")


def _decode_bitfield(part: FieldPart, data: bytes):
    return {name: bool((data[byte] >> bit) & 1) for name, (byte, bit) in part.table.items()}


def _decode_raw(part: FieldPart, data: bytes):
    # pylint: disable=unused-argument
    return data.hex(" ")


DECODERS = {
    INT: _decode_int,
    ENUM: _decode_enum,
    BITFIELD: _decode_bitfield,
    RAW: _decode_raw,
}


def decode(raw: bytes, command: int = Command.LIVEDATA, diagnostics: Optional[list] = None) -> List[FieldRecord]:
    """
    Decode a live data frame into field records in frame order.

    Args:
        raw: Complete response frame
        command: Expected command byte (default: live data)
        diagnostics: Optional list that receives UnknownField records

    Raises:
        FramingError, TruncatedFrame, ChecksumMismatch: the whole frame is discarded
    """
    payload = unpack_frame(raw, command)
    records = []
    index = 0
    while index < len(payload):
        type_code = payload[index]
        field_type = FIELD_TYPES.get(type_code)
        if field_type is None:
            # Field length unknown, nothing after this point can be located
            unknown = UnknownField(type_code, index)
            log.warning(f"{unknown} - abandoning remaining {len(payload) - index} bytes")
            if diagnostics is not None:
                diagnostics.append(unknown)
            break

        start = index + 1
        end = start + field_type.size
        if end > len(payload):
            raise TruncatedFrame(f"Field 0x{type_code:02x} needs {field_type.size} bytes, "
                                 f"{len(payload) - start} left in payload")
        for part in field_type.parts:
            data = payload[start:start + part.size]
            start += part.size
            value = DECODERS[part.rule](part, data)
            log.debug(f"field: {part.key} type: 0x{type_code:02x} val: {value}")
            records.append(FieldRecord(type_code=type_code, key=part.key, raw_bytes=data, value=value))
        index = end
    return records


def decode_sensor_ids(raw: bytes, diagnostics: Optional[list] = None) -> List[SensorMetadata]:
    """Decode the sensor id frame, skipping slots without a registered sensor."""
    payload = unpack_frame(raw, Command.READ_SENSOR_ID_NEW)
    if len(payload) % SENSOR_ID_ENTRY_SIZE:
        raise TruncatedFrame(f"Sensor id payload of {len(payload)} bytes is not a multiple of "
                             f"{SENSOR_ID_ENTRY_SIZE}")
    sensors = []
    for index in range(0, len(payload), SENSOR_ID_ENTRY_SIZE):
        entry = payload[index:index + SENSOR_ID_ENTRY_SIZE]
        type_id = entry[0]
        address = int.from_bytes(entry[1:5], "big")
        battery, signal = entry[5], entry[6]
        log.debug(f"Metadata type={type_id} address:{address} battery:{battery} signal:{signal}")
        if address == INACTIVE_ADDRESS:
            continue

        sensor_type = SENSOR_TYPES.get(type_id)
        if sensor_type is None:
            log.warning(f"Found unknown sensor type 0x{type_id:02x} address {address}")
            if diagnostics is not None:
                diagnostics.append(UnknownField(type_id, index))
            name = description = "unknown"
        else:
            name, description = sensor_type.name, sensor_type.description
        sensors.append(SensorMetadata(
            type_id=type_id,
            name=name,
            description=description,
            address=address,
            battery_raw=battery,
            battery_state=battery_state(type_id, battery),
            signal=signal,
        ))
    return sensors


def decode_firmware(raw: bytes) -> str:
    payload = unpack_frame(raw, Command.READ_FIRMWARE_VERSION)
    if not payload or len(payload) < 1 + payload[0]:
        raise TruncatedFrame("Firmware version string is shorter than declared")
    return payload[1:1 + payload[0]].decode("ascii", errors="replace")


def decode_mac(raw: bytes) -> str:
    payload = unpack_frame(raw, Command.READ_STATION_MAC)
    if len(payload) < 6:
        raise TruncatedFrame(f"Station MAC needs 6 bytes, received {len(payload)}")
    return ":".join(f"{byte:02X}" for byte in payload[:6])

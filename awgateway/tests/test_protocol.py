"""Tests for the gateway wire protocol decoder."""
import pytest

from awgateway.exceptions import ChecksumMismatch, FramingError, TruncatedFrame, UnknownField
from awgateway.models import BatteryState
from awgateway.protocol import (Command, build_cmd_packet, decode, decode_firmware, decode_mac, decode_sensor_ids,
                                frame_length)
from awgateway.protocol.fields import FIELD_TYPES, battery_state


def test_build_cmd_packet():
    """Requests use a 1-byte size and the sum checksum."""
    assert build_cmd_packet(Command.LIVEDATA) == bytes.fromhex("ffff27032a")
    assert build_cmd_packet(Command.READ_FIRMWARE_VERSION) == bytes.fromhex("ffff500353")


def test_decode_rain_and_wind(make_frame):
    raw = make_frame(Command.LIVEDATA, bytes([0x0E, 0x00, 0x19, 0x0A, 0x00, 0x03]))
    records = decode(raw)
    assert [(r.type_code, r.key, r.value) for r in records] == [(0x0E, "rain_rate", 2.5), (0x0A, "wind_dir", 3)]
    assert isinstance(records[1].value, int)
    assert records[0].raw_bytes == b"\x00\x19"


def test_decode_order_matches_frame(make_frame):
    payload = bytes([0x01, 0x00, 0xEB, 0x02, 0xFF, 0x9C, 0x06, 0x37])
    records = decode(make_frame(Command.LIVEDATA, payload))
    assert [r.key for r in records] == ["indoor_temp", "outdoor_temp", "in_humidity"]
    assert [r.value for r in records] == [23.5, -10.0, 55]


def test_decode_light_uses_hundredths(make_frame):
    records = decode(make_frame(Command.LIVEDATA, bytes([0x15, 0x00, 0x00, 0x27, 0x10])))
    assert records[0].key == "light"
    assert records[0].value == 100.0


def test_composite_field_yields_all_parts(make_frame):
    payload = bytes([0x70,
                     0x00, 0xFA,  # temp 25.0
                     0x32,  # humidity 50
                     0x00, 0x64, 0x00, 0x50,  # pm10 10.0 / 8.0
                     0x00, 0x2D, 0x00, 0x28,  # pm2.5 4.5 / 4.0
                     0x01, 0xF4, 0x01, 0xC2,  # co2 500 / 450
                     0x04])  # battery level 4
    records = decode(make_frame(Command.LIVEDATA, payload))
    assert {r.type_code for r in records} == {0x70}
    values = {r.key: r.value for r in records}
    assert values == {
        "temp_wh45": 25.0,
        "humid_wh45": 50,
        "pm10_wh45": 10.0,
        "pm10_avg_24h_wh45": 8.0,
        "pm25_wh45": 4.5,
        "pm25_avg_24h_wh45": 4.0,
        "co2_wh45": 500,
        "co2_avg_24h_wh45": 450,
        "battery_wh45": "ok",
    }
    assert FIELD_TYPES[0x70].size == 16


def test_legacy_battery_bitfield(make_frame):
    flags = bytes([0x10, 0x01]) + bytes(14)
    records = decode(make_frame(Command.LIVEDATA, bytes([0x4C]) + flags))
    assert len(records) == 1
    low = records[0].value
    assert low["wh40"] is True
    assert low["wh65"] is False
    assert low["wh31_ch1"] is True
    assert low["wh51_ch8"] is False


def test_corrupt_checksum_returns_nothing(make_frame):
    raw = bytearray(make_frame(Command.LIVEDATA, bytes([0x0E, 0x00, 0x19])))
    raw[-1] ^= 0xFF
    with pytest.raises(ChecksumMismatch) as excinfo:
        decode(bytes(raw))
    assert excinfo.value.received == raw[-1]


def test_bad_header(make_frame):
    raw = b"\xfe\xff" + make_frame(Command.LIVEDATA, bytes([0x0E, 0x00, 0x19]))[2:]
    with pytest.raises(FramingError):
        decode(raw)


def test_wrong_command(make_frame):
    with pytest.raises(FramingError):
        decode(make_frame(Command.READ_SENSOR_ID_NEW, bytes([0x0E, 0x00, 0x19])))


def test_truncated_frame(make_frame):
    raw = make_frame(Command.LIVEDATA, bytes([0x0E, 0x00, 0x19, 0x0A, 0x00, 0x03]))
    with pytest.raises(TruncatedFrame):
        decode(raw[:-3])
    with pytest.raises(TruncatedFrame):
        decode(raw[:4])


@pytest.mark.parametrize("raw", [b"", b"\xff", b"\xff\xff"])
def test_frame_shorter_than_header(raw):
    with pytest.raises(TruncatedFrame):
        decode(raw)


def test_trailing_bytes_are_ignored(make_frame):
    raw = make_frame(Command.LIVEDATA, bytes([0x0A, 0x01, 0x0E])) + b"\x00\x01\x02"
    assert [(r.key, r.value) for r in decode(raw)] == [("wind_dir", 270)]


def test_field_past_payload_end(make_frame):
    with pytest.raises(TruncatedFrame):
        decode(make_frame(Command.LIVEDATA, bytes([0x0E, 0x00])))


def test_unknown_code_stops_walk(make_frame, caplog):
    payload = bytes([0x01, 0x00, 0xEB, 0xFE, 0x00, 0x0A, 0x00, 0x03])
    diagnostics = []
    records = decode(make_frame(Command.LIVEDATA, payload), diagnostics=diagnostics)
    assert [r.key for r in records] == ["indoor_temp"]
    assert len(diagnostics) == 1
    assert isinstance(diagnostics[0], UnknownField)
    assert diagnostics[0].type_code == 0xFE
    assert diagnostics[0].offset == 3
    assert "0xfe" in caplog.text


def test_frame_length():
    assert frame_length(b"\xff\xff\x27\x00", Command.LIVEDATA) is None
    assert frame_length(b"\xff\xff\x27\x00\x07", Command.LIVEDATA) == 9
    assert frame_length(b"\xff\xff\x50\x05", Command.READ_FIRMWARE_VERSION) == 7


def test_decode_sensor_ids(make_frame):
    payload = bytes([
        0x06, 0x00, 0x00, 0x00, 0xAB, 0x00, 0x04,  # wh31 ch1, battery ok
        0x00, 0xFF, 0xFF, 0xFF, 0xFF, 0x00, 0x00,  # not registered
        0x16, 0x00, 0x00, 0x01, 0x00, 0x06, 0x03,  # wh41 ch1, external power
        0x0E, 0x00, 0x00, 0x02, 0x00, 0x0B, 0x02,  # wh51 ch1, 1.1 V
        0x7F, 0x00, 0x00, 0x03, 0x00, 0x00, 0x01,  # unlisted type
    ])
    diagnostics = []
    sensors = decode_sensor_ids(make_frame(Command.READ_SENSOR_ID_NEW, payload), diagnostics)
    assert [s.name for s in sensors] == ["wh31_ch1", "wh41_ch1", "wh51_ch1", "unknown"]
    assert sensors[0].address == 0xAB
    assert sensors[0].signal == 4
    assert sensors[0].description == "WH-31 channel 1"
    assert [s.battery_state for s in sensors] == [BatteryState.OK, BatteryState.CONNECTED, BatteryState.LOW,
                                                  BatteryState.UNKNOWN]
    assert sensors[0].info_key == "wh31_ch1_info"
    assert len(diagnostics) == 1


def test_decode_sensor_ids_partial_entry(make_frame):
    with pytest.raises(TruncatedFrame):
        decode_sensor_ids(make_frame(Command.READ_SENSOR_ID_NEW, bytes(10)))


@pytest.mark.parametrize("type_id, raw, expected", [
    (0x00, 0, BatteryState.OK),
    (0x00, 1, BatteryState.LOW),
    (0x27, 1, BatteryState.LOW),
    (0x27, 5, BatteryState.OK),
    (0x27, 6, BatteryState.CONNECTED),
    (0x02, 12, BatteryState.LOW),
    (0x02, 16, BatteryState.OK),
])
def test_battery_state_rules(type_id, raw, expected):
    assert battery_state(type_id, raw) is expected


def test_decode_firmware(make_frame):
    version = b"GW1100A_V2.1.4"
    raw = make_frame(Command.READ_FIRMWARE_VERSION, bytes([len(version)]) + version)
    assert decode_firmware(raw) == "GW1100A_V2.1.4"


def test_decode_mac(make_frame):
    raw = make_frame(Command.READ_STATION_MAC, bytes([0xAA, 0xBB, 0xCC, 0x01, 0x02, 0x03]))
    assert decode_mac(raw) == "AA:BB:CC:01:02:03"

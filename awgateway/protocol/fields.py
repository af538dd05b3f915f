# awgateway - Gateway Field Tables
# -*- coding: utf-8 -*-
"""
 Static tables for the gateway binary protocol

 FIELD_TYPES maps every live data type code to the sub-fields it carries. Each
 sub-field names its sensor key, byte length, decode rule, scale divisor and
 signedness, so decoding is a table walk rather than a chain of conditionals.

 SENSOR_TYPES maps the sensor type ids of the sensor id frame to names,
 descriptions and the battery rule of the sensor family.

 Protocol:
    Ecowitt WN1900 GW1000,1100 WH2680,2650 telenet v1.6.0
"""
from typing import Dict, Mapping, NamedTuple, Optional, Tuple

from awgateway.models import BatteryState

# Decode rules
INT = "int"
BITFIELD = "bitfield"
ENUM = "enum"
RAW = "raw"


class FieldPart(NamedTuple):
    key: str
    size: int
    rule: str = INT
    scale: int = 1
    signed: bool = False
    table: Optional[Mapping] = None


class FieldType(NamedTuple):
    code: int
    parts: Tuple[FieldPart, ...]

    @property
    def size(self) -> int:
        return sum(part.size for part in self.parts)


# Battery level reported as 0-5 with 6 meaning external power
LEVEL_BATTERY = {
    0: BatteryState.LOW.value,
    1: BatteryState.LOW.value,
    2: BatteryState.OK.value,
    3: BatteryState.OK.value,
    4: BatteryState.OK.value,
    5: BatteryState.OK.value,
    6: BatteryState.CONNECTED.value,
}

# Low battery flags of the legacy 0x4C block as name -> (byte, bit)
LEGACY_LOW_BATTERY = {
    "wh40": (0, 4),
    "wh26": (0, 5),
    "wh25": (0, 6),
    "wh65": (0, 7),
}
LEGACY_LOW_BATTERY.update({f"wh31_ch{ch}": (1, ch - 1) for ch in range(1, 9)})
LEGACY_LOW_BATTERY.update({f"wh51_ch{ch}": (2, ch - 1) for ch in range(1, 9)})


def temperature(key):
    return FieldPart(key, 2, INT, 10, True)


def humidity(key):
    return FieldPart(key, 1)


def pressure(key):
    return FieldPart(key, 2, INT, 10)


def speed(key):
    return FieldPart(key, 2, INT, 10)


def direction(key):
    return FieldPart(key, 2)


def rain(key):
    return FieldPart(key, 2, INT, 10)


def rain_large(key):
    return FieldPart(key, 4, INT, 10)


def pm25(key):
    return FieldPart(key, 2, INT, 10)


def _single(code, part):
    return code, FieldType(code, (part,))


def _build_field_types() -> Dict[int, FieldType]:
    types = dict([
        _single(0x01, temperature("indoor_temp")),
        _single(0x02, temperature("outdoor_temp")),
        _single(0x03, temperature("dewpoint")),
        _single(0x04, temperature("windchill")),
        _single(0x05, temperature("heat_index")),
        _single(0x06, humidity("in_humidity")),
        _single(0x07, humidity("out_humidity")),
        _single(0x08, pressure("abs_barometer")),
        _single(0x09, pressure("rel_barometer")),
        _single(0x0A, direction("wind_dir")),
        _single(0x0B, speed("wind_speed")),
        _single(0x0C, speed("gust_speed")),
        _single(0x0D, rain("rain_event")),
        _single(0x0E, rain("rain_rate")),
        _single(0x0F, FieldPart("rain_gain", 2, INT, 100)),
        _single(0x10, rain("rain_day")),
        _single(0x11, rain("rain_week")),
        _single(0x12, rain_large("rain_month")),
        _single(0x13, rain_large("rain_year")),
        _single(0x14, rain_large("rain_totals")),
        _single(0x15, FieldPart("light", 4, INT, 100)),
        _single(0x16, FieldPart("uv", 2, INT, 10)),
        _single(0x17, FieldPart("uv_index", 1)),
        _single(0x18, FieldPart("datetime", 6, RAW)),
        _single(0x19, speed("day_maxwind")),
        _single(0x2A, pm25("pm25_1")),
        # Low battery block of older firmware
        _single(0x4C, FieldPart("low_batt", 16, BITFIELD, table=LEGACY_LOW_BATTERY)),
        _single(0x60, FieldPart("lightning_distance", 1)),
        _single(0x61, FieldPart("lightning_datetime", 4)),
        _single(0x62, FieldPart("lightning_count", 4)),
        _single(0x6C, FieldPart("heap_free", 4)),
    ])

    for ch in range(1, 9):
        types.update([
            _single(0x19 + ch, temperature(f"temp_{ch}")),
            _single(0x21 + ch, humidity(f"humidity_{ch}")),
            _single(0x29 + 2 * ch, temperature(f"soil_temp_{ch}")),
            _single(0x2A + 2 * ch, FieldPart(f"soil_moist_{ch}", 1)),
        ])

    for ch in range(1, 5):
        types.update([
            _single(0x4C + ch, pm25(f"pm25_{ch}_avg_24h")),
            _single(0x57 + ch, FieldPart(f"leak{ch}", 1)),
        ])
    for ch in range(2, 5):
        types.update([_single(0x4F + ch, pm25(f"pm25_{ch}"))])

    # WH45 CO2 / PM / T&H combo sensor
    types[0x70] = FieldType(0x70, (
        temperature("temp_wh45"),
        humidity("humid_wh45"),
        FieldPart("pm10_wh45", 2, INT, 10),
        FieldPart("pm10_avg_24h_wh45", 2, INT, 10),
        pm25("pm25_wh45"),
        pm25("pm25_avg_24h_wh45"),
        FieldPart("co2_wh45", 2),
        FieldPart("co2_avg_24h_wh45", 2),
        FieldPart("battery_wh45", 1, ENUM, table=LEVEL_BATTERY),
    ))
    return types


FIELD_TYPES: Dict[int, FieldType] = _build_field_types()


# Battery rules of the sensor id frame
BINARY = "binary"
LEVEL = "level"
VOLTAGE = "voltage"

# Voltage sensors report tenths of a volt
VOLTAGE_SCALE = 10
LOW_VOLTAGE = 1.2


class SensorType(NamedTuple):
    name: str
    description: str


def _build_sensor_types() -> Dict[int, SensorType]:
    types = {
        0x00: SensorType("wh65", "WH-65"),
        0x01: SensorType("wh68", "WH-68"),
        0x02: SensorType("wh80", "WH-80"),
        0x03: SensorType("wh40", "WH-40"),
        0x04: SensorType("wh25", "WH-25"),
        0x05: SensorType("wh26", "WH-26"),
        0x1A: SensorType("wh57", "WH-57"),
        0x27: SensorType("wh45", "WH-45"),
    }
    channels = [
        # first id, last id, name, description
        (0x06, 0x0D, "wh31", "WH-31"),
        (0x0E, 0x15, "wh51", "WH-51"),
        (0x16, 0x19, "wh41", "WH-41"),
        (0x1B, 0x1E, "wh55", "WH-55"),
        (0x1F, 0x25, "wh34", "WH-34"),
        (0x28, 0x2F, "wh35", "WH-35"),
    ]
    for first, last, name, description in channels:
        for type_id in range(first, last + 1):
            ch = type_id - first + 1
            types[type_id] = SensorType(f"{name}_ch{ch}", f"{description} channel {ch}")
    return types


SENSOR_TYPES: Dict[int, SensorType] = _build_sensor_types()


def battery_rule(type_id: int) -> Optional[str]:
    if type_id in (0x00, 0x04) or 0x05 <= type_id <= 0x0D:
        return BINARY
    if 0x16 <= type_id <= 0x1E or type_id == 0x27:
        return LEVEL
    if 0x01 <= type_id <= 0x03 or 0x0E <= type_id <= 0x15 or 0x1F <= type_id <= 0x26 or 0x28 <= type_id <= 0x30:
        return VOLTAGE
    return None


def battery_state(type_id: int, raw: int) -> BatteryState:
    rule = battery_rule(type_id)
    if rule == BINARY:
        if raw == 1:
            return BatteryState.LOW
        return BatteryState.OK if raw == 0 else BatteryState.UNKNOWN
    if rule == LEVEL:
        if raw <= 5:
            return BatteryState.LOW if raw <= 1 else BatteryState.OK
        return BatteryState.CONNECTED if raw == 6 else BatteryState.UNKNOWN
    if rule == VOLTAGE:
        return BatteryState.LOW if raw / VOLTAGE_SCALE <= LOW_VOLTAGE else BatteryState.OK
    return BatteryState.UNKNOWN

"""Pydantic models for decoded fields, sensor definitions and gateway state."""
import hashlib
import json
from enum import Enum
from typing import Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# Decoded values are plain JSON types so a state payload can be dumped as-is
FieldValue = Union[int, float, str, Dict[str, bool]]


class BatteryState(str, Enum):
    """Battery status reported for a registered sensor."""
    OK = "ok"
    LOW = "low"
    CONNECTED = "connected"
    UNKNOWN = "unknown"


class FieldRecord(BaseModel):
    """One decoded field of a live data frame.

    Attributes:
        type_code: Type tag the field was read from (u8)
        key: Sensor key assigned by the field table (e.g. "rain_rate")
        raw_bytes: Bytes the value was decoded from
        value: Scaled number, enum label, bitfield flags or hex string
    """
    model_config = ConfigDict(frozen=True)

    type_code: int = Field(ge=0, le=0xFF)
    key: str
    raw_bytes: bytes
    value: FieldValue


class SensorDefinition(BaseModel):
    """Authored configuration for one sensor key in one definition layer.

    Only `key` is required. Older definition files
    spell the device class as "class", both spellings are accepted.
    """
    model_config = ConfigDict(populate_by_name=True)

    key: str
    name: Optional[str] = None
    device_class: Optional[str] = Field(default=None, alias="class")
    unit: Optional[str] = None
    value_template: Optional[str] = None
    json_attributes_topic: Optional[str] = None
    json_attributes_template: Optional[str] = None


class ResolvedSensorSpec(BaseModel):
    """Final configuration of one sensor key for one gateway."""
    model_config = ConfigDict(frozen=True)

    key: str
    name: Optional[str] = None
    device_class: Optional[str] = None
    unit: Optional[str] = None
    value_template: Optional[str] = None
    json_attributes_topic: Optional[str] = None
    json_attributes_template: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.key

    def publishable(self) -> dict:
        return self.model_dump()

    def fingerprint(self, state_topic: str = "") -> str:
        """Stable digest of everything that ends up in a discovery payload."""
        body = json.dumps({"spec": self.publishable(), "state_topic": state_topic}, sort_keys=True)
        return hashlib.sha1(body.encode("utf-8")).hexdigest()


class Reading(BaseModel):
    """A resolved value of one poll cycle."""
    gateway_id: str
    key: str
    value: FieldValue
    poll_timestamp: float
    spec: ResolvedSensorSpec


class SensorMetadata(BaseModel):
    """Registration entry of one sensor paired with a gateway.

    Attributes:
        type_id: Sensor type code (e.g. 0x06 for WH31 channel 1)
        name: Short name (e.g. "wh31_ch1"), "unknown" for unlisted types
        description: Display description (e.g. "WH-31 channel 1")
        address: Radio id of the sensor
        battery_raw: Battery byte as reported
        battery_state: Battery status derived from the sensor family
        signal: Reception quality 0-4
    """
    type_id: int
    name: str
    description: str
    address: int
    battery_raw: int
    battery_state: BatteryState
    signal: int

    @property
    def info_key(self) -> str:
        return f"{self.name}_info"


class DeviceInfo(BaseModel):
    """Identity of a gateway used for the discovery device block."""
    gateway_id: str
    name: str
    firmware: Optional[str] = None
    mac: Optional[str] = None


class GatewayPollState(BaseModel):
    """Poll bookkeeping owned by one gateway poller."""
    gateway_id: str
    last_attempt_time: Optional[float] = None
    consecutive_failures: int = 0
    in_flight: bool = False

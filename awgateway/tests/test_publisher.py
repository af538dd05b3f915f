"""Tests for discovery and state publishing."""
import json

import pytest

from awgateway import __version__
from awgateway.models import BatteryState, DeviceInfo, Reading, ResolvedSensorSpec, SensorMetadata
from awgateway.publisher import DiscoveryPublisher, StatePublisher, discovery_topic, info_topic, state_topic

RAIN = ResolvedSensorSpec(key="rain_rate", name="Rain Rate", device_class="precipitation_intensity", unit="mm/h",
                          value_template="{{ value_json.rain_rate }}")


def metadata(name="wh31_ch1", battery=BatteryState.OK, signal=4):
    return SensorMetadata(type_id=0x06, name=name, description="WH-31 channel 1", address=0xAB, battery_raw=0,
                          battery_state=battery, signal=signal)


def test_topics():
    assert discovery_topic("homeassistant", "gw1", "rain_rate") == "homeassistant/sensor/gw1_rain_rate/config"
    assert state_topic("awgateway", "gw1") == "awgateway/gw1/state"
    assert info_topic("awgateway", "gw1", "wh31_ch1") == "awgateway/gw1/wh31_ch1/info"


@pytest.mark.asyncio
async def test_discovery_sent_once_per_definition(broker):
    discovery = DiscoveryPublisher(broker)
    assert await discovery.publish_discovery("gw1", RAIN) is True
    assert await discovery.publish_discovery("gw1", RAIN) is False
    assert len(broker.messages) == 1

    message = broker.messages[0]
    assert message.topic == "homeassistant/sensor/gw1_rain_rate/config"
    assert message.retain is True
    assert message.qos == 1

    changed = RAIN.model_copy(update={"unit": "in/h"})
    assert await discovery.publish_discovery("gw1", changed) is True
    assert await discovery.publish_discovery("gw1", changed) is False
    assert len(broker.messages) == 2


@pytest.mark.asyncio
async def test_discovery_payload(broker):
    discovery = DiscoveryPublisher(broker, discovery_prefix="ha", topic_root="weather")
    discovery.set_device(DeviceInfo(gateway_id="gw1", name="Garden", firmware="GW1100A_V2.1.4",
                                    mac="AA:BB:CC:DD:EE:FF"))
    await discovery.publish_discovery("gw1", RAIN)
    payload = broker.payload("ha/sensor/gw1_rain_rate/config")
    assert payload["name"] == "Rain Rate"
    assert payload["unique_id"] == "gw1_rain_rate"
    assert payload["state_topic"] == "weather/gw1/state"
    assert payload["device_class"] == "precipitation_intensity"
    assert payload["unit_of_measurement"] == "mm/h"
    assert payload["value_template"] == "{{ value_json.rain_rate }}"
    assert "json_attributes_topic" not in payload
    assert payload["device"] == {
        "identifiers": ["gw1"],
        "name": "Garden",
        "model": "GW1100A",
        "sw_version": "GW1100A_V2.1.4",
        "connections": [["mac", "aa:bb:cc:dd:ee:ff"]],
    }
    assert payload["origin"] == {"name": "awgateway", "sw_version": __version__}


@pytest.mark.asyncio
async def test_discovery_name_defaults_to_key(broker):
    discovery = DiscoveryPublisher(broker)
    await discovery.publish_discovery("gw1", ResolvedSensorSpec(key="uv"))
    payload = broker.payload("homeassistant/sensor/gw1_uv/config")
    assert payload["name"] == "uv"
    assert payload["device"]["model"] == "Ecowitt Gateway"
    assert "unit_of_measurement" not in payload


@pytest.mark.asyncio
async def test_failed_discovery_is_retried(broker):
    discovery = DiscoveryPublisher(broker)
    broker.fail = True
    assert await discovery.publish_discovery("gw1", RAIN) is False
    assert not discovery.announced("gw1", "rain_rate")

    broker.fail = False
    assert await discovery.publish_discovery("gw1", RAIN) is True
    assert discovery.announced("gw1", "rain_rate")


@pytest.mark.asyncio
async def test_fingerprints_are_per_gateway(broker):
    discovery = DiscoveryPublisher(broker)
    await discovery.publish_discovery("gw1", RAIN)
    await discovery.publish_discovery("gw2", RAIN)
    assert broker.topics == ["homeassistant/sensor/gw1_rain_rate/config",
                             "homeassistant/sensor/gw2_rain_rate/config"]


@pytest.mark.asyncio
async def test_fingerprint_expires_after_missing_cycles(broker):
    discovery = DiscoveryPublisher(broker, expire_after=2)
    await discovery.publish_discovery("gw1", RAIN)
    assert discovery.end_cycle("gw1", ["rain_rate"]) == []
    assert discovery.end_cycle("gw1", []) == []
    assert discovery.end_cycle("gw1", []) == ["rain_rate"]
    assert not discovery.announced("gw1", "rain_rate")

    await discovery.publish_discovery("gw1", RAIN)
    assert len(broker.messages) == 2


@pytest.mark.asyncio
async def test_fingerprints_kept_without_expiry(broker):
    discovery = DiscoveryPublisher(broker)
    await discovery.publish_discovery("gw1", RAIN)
    for _ in range(10):
        assert discovery.end_cycle("gw1", []) == []
    await discovery.publish_discovery("gw1", RAIN)
    assert len(broker.messages) == 1


@pytest.mark.asyncio
async def test_forget(broker):
    discovery = DiscoveryPublisher(broker)
    await discovery.publish_discovery("gw1", RAIN)
    discovery.forget("gw1")
    await discovery.publish_discovery("gw1", RAIN)
    assert len(broker.messages) == 2


@pytest.mark.asyncio
async def test_info_discovery(broker):
    discovery = DiscoveryPublisher(broker)
    assert await discovery.publish_info_discovery("gw1", metadata()) is True
    payload = broker.payload("homeassistant/sensor/gw1_wh31_ch1_info/config")
    assert payload["name"] == "wh31_ch1_info"
    assert payload["state_topic"] == "awgateway/gw1/wh31_ch1/info"
    assert payload["json_attributes_topic"] == "awgateway/gw1/wh31_ch1/info"
    assert payload["value_template"] == '{{ value_json.battery_status | default("") }}'
    assert await discovery.publish_info_discovery("gw1", metadata(signal=1)) is False


@pytest.mark.asyncio
async def test_state_payload(broker):
    state = StatePublisher(broker)
    readings = [
        Reading(gateway_id="gw1", key="rain_rate", value=2.5, poll_timestamp=0, spec=RAIN),
        Reading(gateway_id="gw1", key="wind_dir", value=270, poll_timestamp=0, spec=ResolvedSensorSpec(key="wind_dir")),
    ]
    assert await state.publish_state("gw1", readings) is True
    message = broker.messages[0]
    assert message.topic == "awgateway/gw1/state"
    assert message.retain is False
    assert json.loads(message.payload) == {"rain_rate": 2.5, "wind_dir": 270}


@pytest.mark.asyncio
async def test_empty_state_still_published(broker):
    state = StatePublisher(broker, topic_root="weather")
    assert await state.publish_state("gw1", []) is True
    assert broker.messages[0].topic == "weather/gw1/state"
    assert broker.messages[0].payload == "{}"


@pytest.mark.asyncio
async def test_state_publish_failure_is_reported(broker):
    broker.fail = True
    assert await StatePublisher(broker).publish_state("gw1", []) is False


@pytest.mark.asyncio
async def test_info_payload(broker):
    state = StatePublisher(broker)
    assert await state.publish_info("gw1", metadata(battery=BatteryState.LOW, signal=2)) is True
    assert broker.payload("awgateway/gw1/wh31_ch1/info") == {"battery_status": "low", "signal": 2}


@pytest.mark.asyncio
async def test_changed_device_info_announces_again(broker):
    discovery = DiscoveryPublisher(broker)
    discovery.set_device(DeviceInfo(gateway_id="gw1", name="Garden"))
    await discovery.publish_discovery("gw1", RAIN)
    discovery.set_device(DeviceInfo(gateway_id="gw1", name="Garden"))
    await discovery.publish_discovery("gw1", RAIN)
    assert len(broker.messages) == 1

    discovery.set_device(DeviceInfo(gateway_id="gw1", name="Garden", firmware="GW2000A_V3.1.0"))
    await discovery.publish_discovery("gw1", RAIN)
    assert len(broker.messages) == 2
    assert json.loads(broker.messages[-1].payload)["device"]["model"] == "GW2000A"

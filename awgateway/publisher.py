"""
Discovery and state publishing for Home Assistant MQTT.

Topics:
    <discovery_prefix>/sensor/<gateway_id>_<key>/config   retained discovery
    <topic_root>/<gateway_id>/state                       readings of one cycle
    <topic_root>/<gateway_id>/<sensor>/info               battery and signal

Discovery messages are sent once per distinct sensor definition. Each
announced key remembers the fingerprint of the definition it was last
confirmed with, and only a changed fingerprint causes another publish.
"""
import json
import logging
from typing import Dict, Iterable, Optional, Sequence, Tuple

from awgateway import __version__
from awgateway.exceptions import PublishFailure
from awgateway.models import DeviceInfo, Reading, ResolvedSensorSpec, SensorMetadata

log = logging.getLogger(__name__)

ORIGIN_NAME = "awgateway"
DEFAULT_MODEL = "Ecowitt Gateway"
INFO_VALUE_TEMPLATE = '{{ value_json.battery_status | default("") }}'


def discovery_topic(discovery_prefix: str, gateway_id: str, key: str) -> str:
    return f"{discovery_prefix}/sensor/{gateway_id}_{key}/config"


def state_topic(topic_root: str, gateway_id: str) -> str:
    return f"{topic_root}/{gateway_id}/state"


def info_topic(topic_root: str, gateway_id: str, sensor: str) -> str:
    return f"{topic_root}/{gateway_id}/{sensor}/info"


def device_block(device: DeviceInfo) -> dict:
    """Home Assistant device registry entry shared by all sensors of a gateway."""
    block = {
        "identifiers": [device.gateway_id],
        "name": device.name,
        # Firmware strings look like "GW1100A_V2.1.4"
        "model": device.firmware.split("_")[0] if device.firmware else DEFAULT_MODEL,
    }
    if device.firmware:
        block["sw_version"] = device.firmware
    if device.mac:
        block["connections"] = [["mac", device.mac.lower()]]
    return block


class DiscoveryPublisher:
    """Announces sensors to Home Assistant, once per distinct definition.

    Args:
        broker: BrokerSession (or anything with an async publish())
        discovery_prefix: Home Assistant discovery prefix (default "homeassistant")
        topic_root: Root of the state topics
        qos: QoS of discovery messages
        expire_after: Forget a fingerprint after this many cycles without the
            key, None keeps fingerprints for the life of the process
    """

    def __init__(self, broker, discovery_prefix: str = "homeassistant", topic_root: str = "awgateway",
                 qos: int = 1, expire_after: Optional[int] = None):
        self.broker = broker
        self.discovery_prefix = discovery_prefix
        self.topic_root = topic_root
        self.qos = qos
        self.expire_after = expire_after
        self._fingerprints: Dict[Tuple[str, str], str] = {}
        self._absent: Dict[Tuple[str, str], int] = {}
        self._devices: Dict[str, DeviceInfo] = {}

    def set_device(self, device: DeviceInfo):
        """Record the device block, re-announcing the gateway's sensors when it changed."""
        previous = self._devices.get(device.gateway_id)
        self._devices[device.gateway_id] = device
        if previous is not None and previous != device:
            log.info(f"Device info of {device.gateway_id} changed, sending discovery again")
            self.forget(device.gateway_id)

    def device(self, gateway_id: str) -> DeviceInfo:
        return self._devices.get(gateway_id) or DeviceInfo(gateway_id=gateway_id, name=gateway_id)

    def announced(self, gateway_id: str, key: str) -> bool:
        return (gateway_id, key) in self._fingerprints

    def build_payload(self, gateway_id: str, spec: ResolvedSensorSpec, topic: str) -> dict:
        payload = {
            "name": spec.display_name,
            "unique_id": f"{gateway_id}_{spec.key}",
            "state_topic": topic,
        }
        optional = {
            "device_class": spec.device_class,
            "unit_of_measurement": spec.unit,
            "value_template": spec.value_template,
            "json_attributes_topic": spec.json_attributes_topic,
            "json_attributes_template": spec.json_attributes_template,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        payload["device"] = device_block(self.device(gateway_id))
        payload["origin"] = {"name": ORIGIN_NAME, "sw_version": __version__}
        return payload

    async def publish_discovery(self, gateway_id: str, spec: ResolvedSensorSpec,
                                topic: Optional[str] = None) -> bool:
        """
        Announce `spec` unless it was already confirmed with the same fingerprint.

        Returns True when a discovery message was published and confirmed.
        """
        topic = topic or state_topic(self.topic_root, gateway_id)
        slot = (gateway_id, spec.key)
        self._absent.pop(slot, None)
        fingerprint = spec.fingerprint(topic)
        if self._fingerprints.get(slot) == fingerprint:
            return False

        payload = self.build_payload(gateway_id, spec, topic)
        config_topic = discovery_topic(self.discovery_prefix, gateway_id, spec.key)
        try:
            await self.broker.publish(config_topic, json.dumps(payload), qos=self.qos, retain=True)
        except PublishFailure as e:
            log.error(f"Failed to send discovery for {gateway_id}:{spec.key} - {e}")
            return False
        log.debug(f"Sent discovery message {config_topic}: {payload}")
        self._fingerprints[slot] = fingerprint
        return True

    async def publish_info_discovery(self, gateway_id: str, metadata: SensorMetadata) -> bool:
        """Announce the battery/signal entity of one registered sensor."""
        topic = info_topic(self.topic_root, gateway_id, metadata.name)
        spec = ResolvedSensorSpec(
            key=metadata.info_key,
            name=metadata.info_key,
            value_template=INFO_VALUE_TEMPLATE,
            json_attributes_topic=topic,
        )
        return await self.publish_discovery(gateway_id, spec, topic)

    def end_cycle(self, gateway_id: str, seen_keys: Iterable[str]) -> Sequence[str]:
        """
        Age the fingerprints of keys missing from this cycle.

        Returns the keys whose fingerprint was forgotten.
        """
        if self.expire_after is None:
            return []
        seen = set(seen_keys)
        expired = []
        for slot in [s for s in self._fingerprints if s[0] == gateway_id]:
            if slot[1] in seen:
                self._absent.pop(slot, None)
                continue
            self._absent[slot] = self._absent.get(slot, 0) + 1
            if self._absent[slot] >= self.expire_after:
                expired.append(slot[1])
                self.forget(gateway_id, slot[1])
        if expired:
            log.info(f"Expired discovery fingerprints for {gateway_id}: {', '.join(expired)}")
        return expired

    def forget(self, gateway_id: str, key: Optional[str] = None):
        """Drop fingerprints so the keys are announced again."""
        for slot in [s for s in self._fingerprints if s[0] == gateway_id and (key is None or s[1] == key)]:
            self._fingerprints.pop(slot, None)
            self._absent.pop(slot, None)


class StatePublisher:
    """Publishes the readings of one poll cycle as a single JSON object."""

    def __init__(self, broker, topic_root: str = "awgateway", qos: int = 1):
        self.broker = broker
        self.topic_root = topic_root
        self.qos = qos

    @staticmethod
    def build_payload(readings: Sequence[Reading]) -> dict:
        return {reading.key: reading.value for reading in readings}

    async def publish_state(self, gateway_id: str, readings: Sequence[Reading]) -> bool:
        topic = state_topic(self.topic_root, gateway_id)
        payload = json.dumps(self.build_payload(readings))
        try:
            await self.broker.publish(topic, payload, qos=self.qos, retain=False)
        except PublishFailure as e:
            log.error(f"Failed to send state for {gateway_id} - {e}")
            return False
        log.debug(f"Sent {len(readings)} readings to {topic}")
        return True

    async def publish_info(self, gateway_id: str, metadata: SensorMetadata) -> bool:
        topic = info_topic(self.topic_root, gateway_id, metadata.name)
        payload = json.dumps({"battery_status": metadata.battery_state.value, "signal": metadata.signal})
        try:
            await self.broker.publish(topic, payload, qos=self.qos, retain=False)
        except PublishFailure as e:
            log.error(f"Failed to send metadata message for {gateway_id}:{metadata.name} - {e}")
            return False
        return True

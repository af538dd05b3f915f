"""
Sensor Registry - merged sensor definitions per gateway.

Definitions come in two layers: a global set shared by every gateway and an
optional override set per gateway. For a key present in both, every field the
override sets wins and the rest are inherited from the global definition.

The registry keeps one read-only snapshot of all gateways. A rebuild creates a
complete new snapshot and swaps the reference, so a poll cycle that took a
snapshot keeps seeing it unchanged for its whole duration.
"""
import json
import logging
import time
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from awgateway.exceptions import InvalidConfiguration, UnmappedKey
from awgateway.models import FieldRecord, Reading, ResolvedSensorSpec, SensorDefinition

log = logging.getLogger(__name__)

EMPTY: Mapping[str, ResolvedSensorSpec] = MappingProxyType({})


def _by_key(definitions: Iterable[SensorDefinition]) -> Dict[str, SensorDefinition]:
    # Later duplicates replace earlier ones
    layer = {}
    for definition in definitions or ():
        layer[definition.key] = definition
    return layer


def merge_definitions(global_defs: Sequence[SensorDefinition],
                      local_defs: Sequence[SensorDefinition] = ()) -> Dict[str, ResolvedSensorSpec]:
    """Merge the global layer with one gateway's override layer."""
    global_layer = _by_key(global_defs)
    local_layer = _by_key(local_defs)

    merged = {}
    for key in list(global_layer) + [k for k in local_layer if k not in global_layer]:
        fields = {}
        for layer in (global_layer, local_layer):
            definition = layer.get(key)
            if definition is not None:
                fields.update(definition.model_dump(exclude={"key"}, exclude_none=True))
        merged[key] = ResolvedSensorSpec(key=key, **fields)
    return merged


class SensorRegistry:
    """Resolved sensor specs of every gateway, replaced as a whole on rebuild."""

    def __init__(self):
        self._snapshot: Mapping[str, Mapping[str, ResolvedSensorSpec]] = MappingProxyType({})

    def rebuild(self, global_defs: Sequence[SensorDefinition],
                local_defs: Optional[Mapping[str, Sequence[SensorDefinition]]] = None,
                gateway_ids: Iterable[str] = ()) -> None:
        local_defs = local_defs or {}
        gateway_ids = list(gateway_ids)
        snapshot = {}
        for gateway_id in gateway_ids + [g for g in local_defs if g not in gateway_ids]:
            merged = merge_definitions(global_defs, local_defs.get(gateway_id, ()))
            snapshot[gateway_id] = MappingProxyType(merged)
            log.info(f"Loaded {len(merged)} sensor definitions for {gateway_id}")
        self._snapshot = MappingProxyType(snapshot)

    def snapshot(self, gateway_id: str) -> Mapping[str, ResolvedSensorSpec]:
        return self._snapshot.get(gateway_id, EMPTY)

    def resolve(self, gateway_id: str, key: str) -> Optional[ResolvedSensorSpec]:
        return self.snapshot(gateway_id).get(key)


def resolve_cycle(gateway_id: str, fields: Sequence[FieldRecord], sensors: Mapping[str, ResolvedSensorSpec],
                  poll_timestamp: Optional[float] = None, diagnostics: Optional[list] = None) -> List[Reading]:
    """
    Pair decoded fields with their resolved spec.

    Fields without a definition are logged and dropped, they stay unmapped
    until the sensor definitions are updated.
    """
    if poll_timestamp is None:
        poll_timestamp = time.time()
    readings = []
    for field in fields:
        spec = sensors.get(field.key)
        if spec is None:
            unmapped = UnmappedKey(gateway_id, field.key, field.value)
            log.info(str(unmapped))
            if diagnostics is not None:
                diagnostics.append(unmapped)
            continue
        readings.append(Reading(gateway_id=gateway_id, key=field.key, value=field.value,
                                poll_timestamp=poll_timestamp, spec=spec))
    return readings


def parse_definitions(data) -> List[SensorDefinition]:
    """Accept either {key: definition} or [definition with key, ...]."""
    if isinstance(data, dict):
        items = [dict(value or {}, key=key) for key, value in data.items()]
    elif isinstance(data, list):
        items = data
    else:
        raise InvalidConfiguration(f"Sensor definitions must be an object or a list, got {type(data).__name__}")
    try:
        return [SensorDefinition.model_validate(item) for item in items]
    except ValidationError as e:
        raise InvalidConfiguration(f"Invalid sensor definition: {e}") from e


def load_definitions(path: str) -> List[SensorDefinition]:
    """Read a JSON sensor definition file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidConfiguration(f"Unable to read sensor definitions {path}: {e}") from e
    definitions = parse_definitions(data)
    log.debug(f"Read {len(definitions)} sensor definitions from {path}")
    return definitions

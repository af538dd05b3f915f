"""
Configuration Management for awgateway

All settings can be given as environment variables, in a .env file or in a
TOML settings file. Environment variables win over .env, which wins over TOML.

Configuration Methods:

    1. Gateway list (recommended):
        export AW_GATEWAYS='[
          {"id": "house", "host": "192.168.1.20", "name": "House GW1100"},
          {"id": "barn", "host": "192.168.1.21", "sensors": "/config/barn.json"}
        ]'

    2. Host list (legacy single-variable form):
        export AW_GATEWAY_HOSTS=192.168.1.20,192.168.1.21
        export AW_GATEWAY_SENSORS='{"192.168.1.21": "/config/barn.json"}'

    3. TOML settings file (AW_SETTINGS, default /config/settings.toml when it
       exists, else ./settings.toml) using the field names below:
        mqtt_host = "broker.local"
        sensors = "/config/sensors.json"
        [[gateways]]
        id = "house"
        host = "192.168.1.20"

Environment Variables:

    MQTT:
        AW_MQTT_HOST               - Broker host (default: "localhost")
        AW_MQTT_PORT               - Broker port (default: 1883)
        AW_MQTT_USER               - Broker user (default: none)
        AW_MQTT_PASSWORD           - Broker password (default: none, required with user)
        AW_MQTT_CLIENT_ID          - Client id (default: "awgateway")
        AW_MQTT_KEEP_ALIVE         - Keep alive in seconds (default: 20)
        AW_MQTT_QOS                - QoS for all publishes (default: 1)
        AW_MQTT_QUEUE_SIZE         - Max queued publishes while disconnected (default: 100)
        AW_MQTT_PUBLISH_TIMEOUT    - Seconds to wait for a publish confirmation (default: 5)
        AW_MQTT_RECONNECT_MAX_DELAY - Max reconnect backoff in seconds (default: 120)

    Topics:
        AW_DISCOVERY_PREFIX        - Home Assistant discovery prefix (default: "homeassistant")
        AW_TOPIC_ROOT              - Root of state and info topics (default: "awgateway")

    Gateways and Polling:
        AW_SENSORS                 - Global sensor definition file (JSON)
        AW_GATEWAYS                - JSON list of gateways
        AW_GATEWAY_HOSTS           - Comma separated gateway hosts (fallback)
        AW_GATEWAY_SENSORS         - JSON object of per-gateway definition files (fallback)
        AW_POLL_INTERVAL           - Seconds between polls (default: 60)
        AW_FETCH_TIMEOUT           - Upper bound for one gateway call in seconds (default: 10)
        AW_SOCKET_TIMEOUT          - TCP socket timeout in seconds (default: 2)
        AW_MAX_TRIES               - Attempts per gateway command (default: 3)
        AW_RETRY_WAIT              - Seconds between attempts (default: 2)
        AW_PUBLISH_METADATA        - Publish sensor battery/signal "yes"/"no" (default: yes)
        AW_DISCOVERY_EXPIRE_CYCLES - Re-announce keys missing this many cycles (default: never)
        AW_SHUTDOWN_GRACE          - Seconds to drain the publish queue on exit (default: 5)

    Logging:
        AW_DEBUG                   - Enable debug logging (default: no)
        AW_LOG_LEVEL               - Console log level (default: "info")
        AW_LOG_DIR                 - Directory for service.log (default: none, console only)
        AW_LOG_FILES               - Rotated log files to keep (default: 5)
        AW_LOG_ROTATE_SIZE         - Rotate size, e.g. "50MB" (default: 50MB)
"""
import logging
import os
import re
from typing import Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import (BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict, SettingsError,
                               TomlConfigSettingsSource)

from awgateway.exceptions import InvalidConfiguration
from awgateway.gateway import DEFAULT_PORT

logger = logging.getLogger(__name__)

SIZE_UNITS = {
    "": 1,
    "B": 1,
    "KB": 1000,
    "MB": 1000 ** 2,
    "GB": 1000 ** 3,
    "KIB": 1024,
    "MIB": 1024 ** 2,
    "GIB": 1024 ** 3,
}


def parse_size(value) -> int:
    """Parse a byte size such as 50MB, 10 KiB or 1048576."""
    if isinstance(value, (int, float)):
        return int(value)
    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*([A-Za-z]*)\s*", str(value))
    if not match or match.group(2).upper() not in SIZE_UNITS:
        raise ValueError(f"Invalid size {value!r}")
    return int(float(match.group(1)) * SIZE_UNITS[match.group(2).upper()])


def settings_file() -> str:
    path = os.getenv("AW_SETTINGS")
    if path:
        return path
    if os.path.exists("/config/settings.toml"):
        return "/config/settings.toml"
    return "settings.toml"


def gateway_id_from_host(host: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]", "_", host)


class GatewayConfig(BaseModel):
    """Configuration for a single weather station gateway."""
    id: str
    host: str
    port: int = DEFAULT_PORT
    name: Optional[str] = None
    sensors: Optional[str] = None  # Per-gateway sensor definition overrides

    @field_validator("id")
    @classmethod
    def _id_is_topic_safe(cls, value):
        if not value or any(c in value for c in "/+# "):
            raise ValueError(f"Gateway id {value!r} cannot be used in an MQTT topic")
        return value


class Settings(BaseSettings):
    """Bridge settings loaded from AW_* environment variables, .env and TOML."""

    # MQTT broker
    mqtt_host: str = Field(default="localhost", alias="AW_MQTT_HOST")
    mqtt_port: int = Field(default=1883, alias="AW_MQTT_PORT")
    mqtt_user: Optional[str] = Field(default=None, alias="AW_MQTT_USER")
    mqtt_password: Optional[str] = Field(default=None, alias="AW_MQTT_PASSWORD")
    mqtt_client_id: str = Field(default="awgateway", alias="AW_MQTT_CLIENT_ID")
    mqtt_keep_alive: int = Field(default=20, alias="AW_MQTT_KEEP_ALIVE")
    mqtt_qos: int = Field(default=1, ge=0, le=2, alias="AW_MQTT_QOS")
    mqtt_queue_size: int = Field(default=100, ge=1, alias="AW_MQTT_QUEUE_SIZE")
    mqtt_publish_timeout: float = Field(default=5.0, gt=0, alias="AW_MQTT_PUBLISH_TIMEOUT")
    mqtt_reconnect_max_delay: int = Field(default=120, ge=1, alias="AW_MQTT_RECONNECT_MAX_DELAY")

    # Topics
    discovery_prefix: str = Field(default="homeassistant", alias="AW_DISCOVERY_PREFIX")
    topic_root: str = Field(default="awgateway", alias="AW_TOPIC_ROOT")

    # Sensors and gateways
    sensors: Optional[str] = Field(default=None, alias="AW_SENSORS")
    gateways: List[GatewayConfig] = Field(default_factory=list, alias="AW_GATEWAYS")
    gateway_hosts: Optional[str] = Field(default=None, alias="AW_GATEWAY_HOSTS")
    gateway_sensors: Dict[str, str] = Field(default_factory=dict, alias="AW_GATEWAY_SENSORS")

    # Polling
    poll_interval: float = Field(default=60, gt=0, alias="AW_POLL_INTERVAL")
    fetch_timeout: float = Field(default=10.0, gt=0, alias="AW_FETCH_TIMEOUT")
    socket_timeout: float = Field(default=2.0, gt=0, alias="AW_SOCKET_TIMEOUT")
    max_tries: int = Field(default=3, ge=1, alias="AW_MAX_TRIES")
    retry_wait: float = Field(default=2.0, ge=0, alias="AW_RETRY_WAIT")
    publish_metadata: bool = Field(default=True, alias="AW_PUBLISH_METADATA")
    discovery_expire_cycles: Optional[int] = Field(default=None, ge=1, alias="AW_DISCOVERY_EXPIRE_CYCLES")
    shutdown_grace: float = Field(default=5.0, ge=0, alias="AW_SHUTDOWN_GRACE")

    # Logging
    debug: bool = Field(default=False, alias="AW_DEBUG")
    log_level: str = Field(default="info", alias="AW_LOG_LEVEL")
    log_dir: Optional[str] = Field(default=None, alias="AW_LOG_DIR")
    log_files: int = Field(default=5, ge=0, alias="AW_LOG_FILES")
    log_rotate_size: int = Field(default=50 * 1000 ** 2, alias="AW_LOG_ROTATE_SIZE")

    model_config = SettingsConfigDict(
        case_sensitive=False,
        populate_by_name=True,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=settings_file()),
        )

    @field_validator("log_rotate_size", mode="before")
    @classmethod
    def _parse_rotate_size(cls, value):
        return parse_size(value)

    @field_validator("discovery_prefix", "topic_root")
    @classmethod
    def _topic_has_no_wildcards(cls, value):
        if not value or any(c in value for c in "+#"):
            raise ValueError(f"{value!r} cannot be used as an MQTT topic prefix")
        return value

    @model_validator(mode="after")
    def _initialize_gateways(self):
        """Fall back to the host list when no gateway list is configured."""
        if not self.gateways and self.gateway_hosts:
            self.gateways = [
                GatewayConfig(
                    id=gateway_id_from_host(host),
                    host=host,
                    name=host,
                    sensors=self.gateway_sensors.get(host) or self.gateway_sensors.get(gateway_id_from_host(host)),
                )
                for host in (h.strip() for h in self.gateway_hosts.split(",")) if host
            ]
        ids = [gw.id for gw in self.gateways]
        duplicates = sorted({gid for gid in ids if ids.count(gid) > 1})
        if duplicates:
            raise ValueError(f"Duplicate gateway ids: {', '.join(duplicates)}")
        return self

    @model_validator(mode="after")
    def _check_credentials(self):
        if bool(self.mqtt_user) != bool(self.mqtt_password):
            raise ValueError("AW_MQTT_USER and AW_MQTT_PASSWORD must be set together")
        return self


def load_settings(**overrides) -> Settings:
    """Build Settings, turning validation problems into InvalidConfiguration."""
    try:
        settings = Settings(**overrides)
    except (ValidationError, SettingsError, ValueError) as e:
        raise InvalidConfiguration(f"Invalid settings: {e}") from e
    if not settings.gateways:
        logger.warning("No gateways configured - set AW_GATEWAYS or AW_GATEWAY_HOSTS")
    return settings

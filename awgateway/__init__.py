# awgateway Module
# -*- coding: utf-8 -*-
"""
 Python module to bridge Ecowitt / Ambient Weather gateways to MQTT

 Polls one or more local weather station gateways (GW1000, GW1100, GW2000 and
 compatible hubs) over their binary TCP telemetry protocol, decodes the live
 sensor readings and republishes them together with Home Assistant MQTT
 discovery metadata.

 Features
    * Decodes the gateway live data, sensor id, firmware and MAC frames
    * Global sensor definitions with per-gateway overrides
    * One discovery message per distinct sensor definition (fingerprinted)
    * Independent polling and backoff for every gateway
    * Single shared MQTT session with bounded publish queue and reconnect

 Classes
    GatewayClient(host, port, timeout, max_tries, retry_wait)
    SensorRegistry()
    DiscoveryPublisher(broker, discovery_prefix, topic_root, qos, expire_after)
    StatePublisher(broker, topic_root, qos)
    BrokerSession(host, port, username, password, keep_alive, ...)
    GatewayPoller(gateway, client, registry, discovery, state, ...)
    GatewayManager(settings)

 Functions
    decode(raw, command, diagnostics)        # Decode a live data frame into FieldRecords
    decode_sensor_ids(raw, diagnostics)      # Decode the sensor id frame into SensorMetadata
    merge_definitions(global, local)         # Merge two sensor definition layers
    resolve_cycle(gateway_id, fields, ...)   # Map decoded fields to Readings
    set_debug(toggle, color)                 # Enable verbose logging
    setup_logging(level, log_dir, ...)       # Console and rotating file logging

 Requirements
    This module requires the following modules: paho-mqtt, pydantic, pydantic-settings, python-dotenv
    pip install paho-mqtt pydantic pydantic-settings python-dotenv
"""
import logging
import logging.handlers
import os
import sys

version_tuple = (0, 3, 0)
version = __version__ = '%d.%d.%d' % version_tuple
__author__ = 'awgateway'

from awgateway.exceptions import (AwGatewayError, BrokerDisconnected, ChecksumMismatch, DecodeError,
                                  FramingError, InvalidConfiguration, PublishFailure, TransportFailure,
                                  TruncatedFrame, UnknownField, UnmappedKey)
from awgateway.protocol import Command, decode, decode_firmware, decode_mac, decode_sensor_ids
from awgateway.registry import SensorRegistry, load_definitions, merge_definitions, resolve_cycle

log = logging.getLogger(__name__)
log.debug('%s version %s', __name__, __version__)
log.debug('Python %s on %s', sys.version, sys.platform)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def set_debug(toggle=True, color=True):
    """Enable verbose logging"""
    if toggle:
        if color:
            logging.basicConfig(format='\x1b[31;1m%(levelname)s:%(message)s\x1b[0m', level=logging.DEBUG)
        else:
            logging.basicConfig(format='%(levelname)s:%(message)s', level=logging.DEBUG)
        log.setLevel(logging.DEBUG)
        log.debug("%s [%s]\n" % (__name__, __version__))
    else:
        log.setLevel(logging.NOTSET)


def setup_logging(level="info", log_dir=None, files=5, rotate_size=50_000_000):
    """
    Configure the root logger for the bridge service.

    Console output uses `level`. When `log_dir` is set a size rotated
    service.log is written there as well, keeping `files` backups.
    """
    numeric = logging.getLevelName(str(level).upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if log_dir else numeric)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler()
    console.setLevel(numeric)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        logfile = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, "service.log"), maxBytes=rotate_size, backupCount=files)
        logfile.setLevel(logging.DEBUG)
        logfile.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(logfile)
    return root

"""
Gateway Manager - runs one poller per configured gateway against a shared
MQTT session.

Architecture:
    - One asyncio task per gateway, each with its own timer and backoff
    - Blocking gateway calls share one ThreadPoolExecutor sized by gateway count
    - One BrokerSession, DiscoveryPublisher and StatePublisher for all gateways
    - Sensor definitions reload (SIGHUP) swaps the registry snapshot; a cycle
      already running keeps the snapshot it started with

Shutdown:
    stop() asks every poller to stop scheduling; shutdown() waits for running
    cycles, drains the publish queue for shutdown_grace seconds and disconnects.
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Tuple

from awgateway.broker import BrokerSession
from awgateway.exceptions import InvalidConfiguration
from awgateway.gateway import GatewayClient
from awgateway.models import SensorDefinition
from awgateway.publisher import DiscoveryPublisher, StatePublisher
from awgateway.registry import SensorRegistry, load_definitions
from awgateway.scheduler import GatewayPoller

logger = logging.getLogger(__name__)


class GatewayManager:
    """Owns the pollers, the registry and the broker session."""

    def __init__(self, settings, broker=None, client_factory=None):
        self.settings = settings
        self.registry = SensorRegistry()
        self.broker = broker or BrokerSession(
            host=settings.mqtt_host,
            port=settings.mqtt_port,
            username=settings.mqtt_user,
            password=settings.mqtt_password,
            keep_alive=settings.mqtt_keep_alive,
            client_id=settings.mqtt_client_id,
            qos=settings.mqtt_qos,
            queue_size=settings.mqtt_queue_size,
            publish_timeout=settings.mqtt_publish_timeout,
            reconnect_max_delay=settings.mqtt_reconnect_max_delay,
        )
        self.discovery = DiscoveryPublisher(self.broker, settings.discovery_prefix, settings.topic_root,
                                            qos=settings.mqtt_qos, expire_after=settings.discovery_expire_cycles)
        self.state = StatePublisher(self.broker, settings.topic_root, qos=settings.mqtt_qos)
        self.pollers: Dict[str, GatewayPoller] = {}
        self._client_factory = client_factory or GatewayClient
        self._executor: Optional[ThreadPoolExecutor] = None
        self._tasks: List[asyncio.Task] = []
        self._stop: Optional[asyncio.Event] = None

    def load_sensors(self) -> Tuple[List[SensorDefinition], Dict[str, List[SensorDefinition]]]:
        """Read the global and per-gateway definition files."""
        global_defs = []
        if self.settings.sensors:
            global_defs = load_definitions(self.settings.sensors)
        else:
            logger.warning("No global sensor definitions configured (AW_SENSORS)")
        local_defs = {}
        for gateway in self.settings.gateways:
            if gateway.sensors:
                local_defs[gateway.id] = load_definitions(gateway.sensors)
        return global_defs, local_defs

    def reload_sensors(self) -> bool:
        """Rebuild the registry from disk, keeping the current one on error."""
        try:
            global_defs, local_defs = self.load_sensors()
        except InvalidConfiguration as e:
            logger.error(f"Sensor definition reload failed, keeping previous definitions: {e}")
            return False
        self.registry.rebuild(global_defs, local_defs, [gw.id for gw in self.settings.gateways])
        logger.info("Sensor definitions reloaded")
        return True

    async def initialize(self):
        """Load sensor definitions, create pollers and start the broker session.

        Raises:
            InvalidConfiguration: when a sensor definition file is unusable
        """
        settings = self.settings
        global_defs, local_defs = self.load_sensors()
        self.registry.rebuild(global_defs, local_defs, [gw.id for gw in settings.gateways])

        num_gateways = len(settings.gateways)
        pool_size = max(4, num_gateways * 2)
        self._executor = ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="awgateway")
        logger.info(f"Thread pool initialized with {pool_size} workers for {num_gateways} gateway(s)")

        for gateway in settings.gateways:
            client = self._client_factory(gateway.host, port=gateway.port, timeout=settings.socket_timeout,
                                          max_tries=settings.max_tries, retry_wait=settings.retry_wait)
            self.pollers[gateway.id] = GatewayPoller(
                gateway, client, self.registry, self.discovery, self.state,
                executor=self._executor,
                poll_interval=settings.poll_interval,
                fetch_timeout=settings.fetch_timeout,
                publish_metadata=settings.publish_metadata,
            )
            logger.info(f"Registered gateway: {gateway.id} ({gateway.name or gateway.host}) - "
                        f"{gateway.host}:{gateway.port}")

        self._stop = asyncio.Event()
        await self.broker.start()

    async def run(self):
        """Run every poller until stop() is called."""
        if self._stop is None:
            self._stop = asyncio.Event()
        self._tasks = [asyncio.create_task(poller.run(self._stop), name=f"poll-{gateway_id}")
                       for gateway_id, poller in self.pollers.items()]
        logger.info(f"Gateway manager ready - polling {len(self._tasks)} gateway(s)")
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for gateway_id, result in zip(self.pollers, results):
            if isinstance(result, Exception):
                logger.error(f"Poller for {gateway_id} ended with error: {result}")

    def stop(self):
        if self._stop is not None and not self._stop.is_set():
            logger.info("Stopping gateway pollers")
            self._stop.set()

    async def shutdown(self, grace: Optional[float] = None):
        """Stop polling, drain the publish queue and release resources."""
        self.stop()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.broker.close(self.settings.shutdown_grace if grace is None else grace)
        if self._executor:
            self._executor.shutdown(wait=False)
        logger.info("Gateway manager shutdown complete")

"""
Gateway Poller - poll cycle state machine of one gateway.

Every poll_interval seconds the poller runs one cycle:

    idle -> fetching -> decoding -> publishing -> idle
               |           |
               +-----------+--> backoff (5s, 10s, 30s, 60s, 120s) -> idle

Fetch and decode failures put the gateway into backoff; publish failures are
logged by the publishers and never fail a cycle. A tick that arrives while a
cycle is running or while the backoff window is open is skipped, so cycles of
one gateway never overlap.

Blocking socket calls run in a shared ThreadPoolExecutor and are bounded by
fetch_timeout (asyncio.wait_for); a timeout counts as a fetch failure.
"""
import asyncio
import logging
import time
from enum import Enum
from typing import List, Optional

from awgateway.exceptions import AwGatewayError, DecodeError, TransportFailure
from awgateway.models import DeviceInfo, GatewayPollState
from awgateway.protocol import Command, decode
from awgateway.registry import resolve_cycle

logger = logging.getLogger(__name__)

# Exponential backoff: 5s, 10s, 30s, 60s, 120s (max 2 minutes)
BACKOFF_INTERVALS = [5, 10, 30, 60, 120]


class PollPhase(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DECODING = "decoding"
    PUBLISHING = "publishing"
    BACKOFF = "backoff"


def backoff_seconds(failures: int) -> int:
    return BACKOFF_INTERVALS[min(max(failures, 1), len(BACKOFF_INTERVALS)) - 1]


class GatewayPoller:
    """Polls one gateway and publishes what it reports.

    Args:
        gateway: GatewayConfig of the gateway
        client: GatewayClient used for the blocking fetches
        registry: SensorRegistry, one snapshot is taken per cycle
        discovery: DiscoveryPublisher shared by all pollers
        state: StatePublisher shared by all pollers
        executor: ThreadPoolExecutor for blocking calls (None = loop default)
        poll_interval: Seconds between ticks
        fetch_timeout: Upper bound for one blocking gateway call
        publish_metadata: Also publish battery/signal of registered sensors
    """

    def __init__(self, gateway, client, registry, discovery, state, executor=None, poll_interval: float = 60,
                 fetch_timeout: float = 10.0, publish_metadata: bool = True, clock=time.monotonic):
        self.gateway = gateway
        self.gateway_id = gateway.id
        self.client = client
        self.registry = registry
        self.discovery = discovery
        self.state_publisher = state
        self.executor = executor
        self.poll_interval = poll_interval
        self.fetch_timeout = fetch_timeout
        self.publish_metadata = publish_metadata
        self._clock = clock

        self.phase = PollPhase.IDLE
        self.state = GatewayPollState(gateway_id=gateway.id)
        self.backoff_until = 0.0
        self.cycles = 0
        self.device: Optional[DeviceInfo] = None
        self._device_checked = False
        self._cycle_task: Optional[asyncio.Task] = None

    @property
    def label(self) -> str:
        return f"{self.gateway_id} ({self.gateway.host})"

    def tick(self) -> Optional[asyncio.Task]:
        """Start a cycle unless one is running or the gateway is backing off."""
        if self.phase is PollPhase.BACKOFF and self._clock() >= self.backoff_until:
            self.phase = PollPhase.IDLE
        if self.phase is not PollPhase.IDLE:
            logger.debug(f"Gateway {self.gateway_id} is {self.phase.value}, skipping poll")
            return None
        # Leave idle before the task runs so a second tick sees the cycle
        self.phase = PollPhase.FETCHING
        self.state.in_flight = True
        self._cycle_task = asyncio.create_task(self.run_cycle())
        return self._cycle_task

    async def _call(self, func, *args):
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(loop.run_in_executor(self.executor, func, *args),
                                          timeout=self.fetch_timeout)
        except asyncio.TimeoutError:
            raise TransportFailure(f"No answer from {self.label} within {self.fetch_timeout}s") from None

    async def run_cycle(self) -> bool:
        """Fetch, decode, resolve and publish once. Returns True on success."""
        self.phase = PollPhase.FETCHING
        self.state.in_flight = True
        self.state.last_attempt_time = time.time()
        sensors = self.registry.snapshot(self.gateway_id)
        try:
            logger.info(f"Updating live data for {self.gateway_id}")
            raw = await self._call(self.client.send_cmd, Command.LIVEDATA)

            self.phase = PollPhase.DECODING
            diagnostics = []
            fields = decode(raw, Command.LIVEDATA, diagnostics)
            readings = resolve_cycle(self.gateway_id, fields, sensors, diagnostics=diagnostics)

            self.phase = PollPhase.PUBLISHING
            if not self._device_checked:
                await self._fetch_device_info()
            announced = await self._publish_readings(readings)
            seen = [reading.key for reading in readings]
            if self.publish_metadata:
                seen.extend(await self._publish_metadata())
            self.discovery.end_cycle(self.gateway_id, seen)
            logger.info(f"Updated {len(readings)} values and sent {announced} discovery messages "
                        f"for {self.gateway_id}")
        except (TransportFailure, DecodeError) as e:
            self._enter_backoff(e)
            return False
        except Exception as e:
            logger.error(f"Unexpected error polling gateway {self.label}: {e}")
            self._enter_backoff(e)
            return False
        finally:
            self.state.in_flight = False
            if self.phase is not PollPhase.BACKOFF:
                self.phase = PollPhase.IDLE

        self.cycles += 1
        if self.state.consecutive_failures:
            logger.info(f"Gateway {self.label} recovered after {self.state.consecutive_failures} failures")
            self.state.consecutive_failures = 0
        return True

    def _enter_backoff(self, error: Exception):
        self.state.consecutive_failures += 1
        failures = self.state.consecutive_failures
        delay = backoff_seconds(failures)
        self.backoff_until = self._clock() + delay
        self.phase = PollPhase.BACKOFF
        logger.warning(f"Unable to poll gateway {self.label}: {error} - backoff {delay}s (failure #{failures})")

    async def _publish_readings(self, readings) -> int:
        # Discovery for every key of the cycle goes out before the state message
        specs = {}
        for reading in readings:
            specs[reading.key] = reading.spec
        results = await asyncio.gather(*[self.discovery.publish_discovery(self.gateway_id, spec)
                                         for spec in specs.values()])
        await self.state_publisher.publish_state(self.gateway_id, readings)
        return sum(1 for sent in results if sent)

    async def _fetch_device_info(self):
        """Best effort firmware and MAC lookup for the discovery device block.

        Retried every cycle until one of the lookups answers.
        """
        firmware = mac = None
        try:
            firmware = await self._call(self.client.firmware_version)
        except AwGatewayError as e:
            logger.debug(f"Firmware version not available for {self.gateway_id}: {e}")
        try:
            mac = await self._call(self.client.mac_address)
        except AwGatewayError as e:
            logger.debug(f"Station MAC not available for {self.gateway_id}: {e}")
        self._device_checked = firmware is not None or mac is not None
        self.device = DeviceInfo(gateway_id=self.gateway_id, name=self.gateway.name or self.gateway_id,
                                 firmware=firmware, mac=mac)
        self.discovery.set_device(self.device)
        logger.info(f"Gateway {self.label} firmware {firmware or 'unknown'} mac {mac or 'unknown'}")

    async def _publish_metadata(self) -> List[str]:
        """Publish battery and signal of every registered sensor, returns the info keys."""
        try:
            registered = await self._call(self.client.sensor_ids)
        except (TransportFailure, DecodeError) as e:
            logger.warning(f"Unable to update sensor metadata for {self.gateway_id}: {e}")
            return []

        keys = []
        sent_msgs = sent_disc = 0
        for metadata in registered:
            if metadata.name == "unknown":
                continue
            if await self.discovery.publish_info_discovery(self.gateway_id, metadata):
                sent_disc += 1
            if not self.discovery.announced(self.gateway_id, metadata.info_key):
                logger.error(f"Failed to send discovery for {self.gateway_id}:{metadata.info_key}, skipping data")
                continue
            keys.append(metadata.info_key)
            if await self.state_publisher.publish_info(self.gateway_id, metadata):
                sent_msgs += 1
        logger.info(f"Metadata updated {sent_msgs} values and sent {sent_disc} discovery messages "
                    f"for {self.gateway_id}")
        return keys

    async def wait_idle(self):
        """Wait for the running cycle, if any, to finish."""
        if self._cycle_task is not None and not self._cycle_task.done():
            await asyncio.shield(self._cycle_task)

    async def run(self, stop: asyncio.Event):
        """Tick every poll_interval seconds until `stop` is set."""
        logger.info(f"Polling gateway {self.label} every {self.poll_interval}s")
        while not stop.is_set():
            self.tick()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                # Next tick
                continue
        await self.wait_idle()
        logger.info(f"Stopped polling gateway {self.gateway_id}")

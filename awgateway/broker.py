"""
Broker Session - the single MQTT connection shared by all gateway pollers.

Architecture:
    - paho-mqtt client running its network loop in a background thread
    - connect_async + reconnect_delay_set gives exponential reconnect backoff
    - Connection callbacks are handed to the asyncio loop (call_soon_threadsafe)
    - Every publish is appended to one bounded deque; a single writer task is
      the only caller of client.publish()
    - Messages published while the broker is away wait in the deque; when it
      is full the oldest message is dropped and its publisher is told so
    - While connected a full deque holds publishers back until the writer
      has sent the message in front of them, nothing is dropped
    - Messages the client rejects outright (wildcard topic, bad qos) fail
      their publisher and the writer moves on

Publish Results:
    publish() returns once the broker confirmed the message (PUBACK for QoS 1,
    written to the socket for QoS 0). It raises PublishFailure when that does
    not happen within publish_timeout; the message itself stays queued and is
    still sent once the connection is back.
"""
import asyncio
import collections
import logging
from enum import Enum
from typing import Optional

import paho.mqtt.client as mqtt
from paho.mqtt.enums import CallbackAPIVersion

from awgateway.exceptions import BrokerDisconnected, PublishFailure

log = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class PendingPublish:
    """A queued message and the future its publisher waits on.

    The future resolves to None once confirmed, or to the reason it failed.
    """
    __slots__ = ("topic", "payload", "qos", "retain", "future")

    def __init__(self, topic, payload, qos, retain, future):
        self.topic = topic
        self.payload = payload
        self.qos = qos
        self.retain = retain
        self.future = future


def default_client_factory(client_id: str) -> mqtt.Client:
    return mqtt.Client(callback_api_version=CallbackAPIVersion.VERSION2, client_id=client_id, clean_session=True)


class BrokerSession:
    def __init__(self, host: str, port: int = 1883, username: Optional[str] = None,
                 password: Optional[str] = None, keep_alive: int = 20, client_id: str = "awgateway",
                 qos: int = 1, queue_size: int = 100, publish_timeout: float = 5.0,
                 reconnect_min_delay: int = 1, reconnect_max_delay: int = 120, retry_wait: float = 1.0,
                 client_factory=None):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.keep_alive = keep_alive
        self.client_id = client_id
        self.qos = qos
        self.queue_size = queue_size
        self.publish_timeout = publish_timeout
        self.reconnect_min_delay = reconnect_min_delay
        self.reconnect_max_delay = reconnect_max_delay
        self.retry_wait = retry_wait
        self._client_factory = client_factory or default_client_factory

        self.state = ConnectionState.DISCONNECTED
        self.dropped = 0
        self._queue = collections.deque()
        self._client = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._space: Optional[asyncio.Event] = None
        self._connected: Optional[asyncio.Event] = None
        self._closing = False
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def start(self):
        """Create the client and start connecting in the background."""
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._space = asyncio.Event()
        self._connected = asyncio.Event()

        client = self._client_factory(self.client_id)
        if self.username:
            client.username_pw_set(self.username, self.password)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.reconnect_delay_set(min_delay=self.reconnect_min_delay, max_delay=self.reconnect_max_delay)
        self._client = client

        self._set_state(ConnectionState.CONNECTING)
        log.info(f"Connecting to MQTT broker {self.host}:{self.port} (keep alive {self.keep_alive}s)")
        client.connect_async(self.host, self.port, keepalive=self.keep_alive)
        client.loop_start()
        self._writer_task = asyncio.create_task(self._writer())

    # paho callbacks run in the network thread
    def _on_connect(self, client, userdata, connect_flags, reason_code, properties=None):
        # pylint: disable=unused-argument
        if reason_code.is_failure:
            log.error(f"MQTT broker {self.host} refused connection: {reason_code}")
            return
        self._loop.call_soon_threadsafe(self._set_state, ConnectionState.CONNECTED)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        # pylint: disable=unused-argument
        if self._closing:
            self._loop.call_soon_threadsafe(self._set_state, ConnectionState.DISCONNECTED)
            return
        log.warning(f"Lost connection to MQTT broker {self.host} ({reason_code}) - reconnecting")
        self._loop.call_soon_threadsafe(self._set_state, ConnectionState.CONNECTING)

    def _set_state(self, state: ConnectionState):
        if state is self.state:
            return
        log.info(f"MQTT session {self.state.value} -> {state.value}")
        self.state = state
        # Publishers held back by a full queue re-check under the new state
        self._space.set()
        if state is ConnectionState.CONNECTED:
            self._connected.set()
            self._wakeup.set()
        elif self._connected is not None:
            self._connected.clear()

    async def publish(self, topic: str, payload, qos: Optional[int] = None, retain: bool = False) -> None:
        """Queue a message and wait for the broker to confirm it."""
        if self._closing or self._closed or self._loop is None:
            raise BrokerDisconnected(f"MQTT session closed, not publishing to {topic}")

        # While connected a full queue only means the writer is behind, wait for room
        while self.is_connected and len(self._queue) >= self.queue_size:
            self._space.clear()
            await self._space.wait()
        if self._closing or self._closed:
            raise BrokerDisconnected(f"MQTT session closed, not publishing to {topic}")

        item = PendingPublish(topic, payload, self.qos if qos is None else qos, retain, self._loop.create_future())
        if len(self._queue) >= self.queue_size:
            dropped = self._queue.popleft()
            self.dropped += 1
            log.error(f"MQTT publish queue full ({self.queue_size}) - dropping oldest message to {dropped.topic}")
            self._resolve(dropped, "dropped from full publish queue")
        self._queue.append(item)
        self._wakeup.set()

        try:
            error = await asyncio.wait_for(asyncio.shield(item.future), timeout=self.publish_timeout)
        except asyncio.TimeoutError:
            raise PublishFailure(f"Publish to {topic} not confirmed within {self.publish_timeout}s "
                                 f"(broker {self.state.value}, {len(self._queue)} queued)") from None
        if error is not None:
            raise PublishFailure(f"Publish to {topic} failed: {error}")

    @staticmethod
    def _resolve(item: PendingPublish, error: Optional[str]):
        if not item.future.done():
            item.future.set_result(error)

    def _confirm(self, info) -> Optional[str]:
        # Blocking, runs in the executor
        try:
            info.wait_for_publish(timeout=self.publish_timeout)
        except (RuntimeError, ValueError) as e:
            return str(e)
        if not info.is_published():
            return f"no acknowledgement within {self.publish_timeout}s"
        return None

    async def _writer(self):
        """Single consumer of the publish queue."""
        while True:
            if not self._queue:
                if self._closing:
                    return
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            if self.state is not ConnectionState.CONNECTED:
                await self._connected.wait()
                continue

            item = self._queue[0]
            try:
                info = self._client.publish(item.topic, item.payload, qos=item.qos, retain=item.retain)
            except (ValueError, RuntimeError) as e:
                # Rejected by the client itself (bad topic, qos or payload), retrying cannot help
                self._queue.popleft()
                self._space.set()
                log.error(f"MQTT publish to {item.topic} rejected: {e}")
                self._resolve(item, str(e))
                continue
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                log.warning(f"MQTT publish to {item.topic} failed ({mqtt.error_string(info.rc)}) - will retry")
                await asyncio.sleep(self.retry_wait)
                continue
            self._queue.popleft()
            self._space.set()
            error = await self._loop.run_in_executor(None, self._confirm, info)
            if error is None:
                log.debug(f"Published {item.topic} (retain={item.retain})")
            else:
                log.warning(f"MQTT publish to {item.topic} not confirmed: {error}")
            self._resolve(item, error)

    async def close(self, grace: float = 5.0):
        """Stop accepting publishes, drain the queue for up to `grace` seconds, disconnect."""
        if self._closed:
            return
        self._closing = True
        if self._wakeup is not None:
            self._wakeup.set()
            self._space.set()
        if self._writer_task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._writer_task), timeout=grace)
            except asyncio.TimeoutError:
                log.warning(f"Dropping {len(self._queue)} queued MQTT messages after {grace}s shutdown grace")
                self._writer_task.cancel()
                try:
                    await self._writer_task
                except asyncio.CancelledError:
                    # Expected when cancelling the writer during shutdown
                    pass
        for item in self._queue:
            self._resolve(item, "session closed")
        self._queue.clear()

        if self._client is not None:
            self._client.disconnect()
            self._client.loop_stop()
        if self._connected is not None:
            self._set_state(ConnectionState.DISCONNECTED)
        self._closed = True
        log.info("MQTT session closed")

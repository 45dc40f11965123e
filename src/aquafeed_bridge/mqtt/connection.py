"""
Broker connection lifecycle for the AquaFeed bridge.

``ConnectionManager`` owns the one long-lived broker session. Callers get
the session with ``acquire()``; concurrent callers share a single in-flight
connect, and after a transport loss new callers wait for the fixed-period
reconnect instead of opening a second session.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
import time
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from aiomqtt import Client, MqttError, ProtocolVersion

from aquafeed_bridge.exceptions import BridgeConnectionError
from aquafeed_bridge.ingestion.models import InboundMessage

if TYPE_CHECKING:
    from aquafeed_bridge.config.broker import BrokerConfig

MessageHandler = Callable[[InboundMessage], Awaitable[Any]]
ConnectListener = Callable[["ReadyHandle"], Awaitable[Any]]


class ConnectionState(Enum):
    """Broker session states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass(frozen=True)
class ConnectionStatus:
    """Read-only view of the session for status queries."""

    is_connected: bool
    is_connecting: bool
    client_id: str | None

    def to_dict(self) -> dict[str, Any]:
        """Return the status with the field names used by the HTTP API."""
        return {
            "isConnected": self.is_connected,
            "isConnecting": self.is_connecting,
            "clientId": self.client_id,
        }


class ReadyHandle:
    """
    The live broker session handed out by ``acquire()``.

    The handle survives reconnects: the manager swaps the underlying client
    and flips ``ready`` back on once the new session is up.
    """

    def __init__(self, client_id: str, client: Client | None = None) -> None:
        self.client_id = client_id
        self.client = client
        self.ready = False

    def _require_client(self) -> Client:
        if not self.ready or self.client is None:
            raise MqttError("MQTT session is not ready")
        return self.client

    async def publish(
        self,
        topic: str,
        payload: str | bytes,
        *,
        qos: int,
        retain: bool,
    ) -> None:
        """Publish one message and wait for the broker to accept it."""
        await self._require_client().publish(topic, payload=payload, qos=qos, retain=retain)

    async def subscribe(self, subscriptions: list[tuple[str, int]]) -> list[int]:
        """Issue one batched subscribe and return the granted QoS per topic."""
        granted = await self._require_client().subscribe(subscriptions)
        return [int(getattr(code, "value", code)) for code in granted]


def _as_bytes(payload: Any) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    return str(payload).encode("utf-8")


def _consume_exception(future: asyncio.Future) -> None:
    # Rejections may outlive every waiter that timed out
    if not future.cancelled():
        future.exception()


class ConnectionManager:
    """Owns the broker session, its reconnects and the inbound listener."""

    def __init__(
        self,
        config: BrokerConfig,
        *,
        message_handler: MessageHandler | None = None,
        client_factory: Callable[..., Client] = Client,
    ) -> None:
        """
        Initialize the manager. No connection is made until ``acquire()``.

        Args:
            config: Resolved broker settings.
            message_handler: Coroutine called for every inbound message.
            client_factory: Builds the aiomqtt client; replaced in tests.
        """
        self.config = config
        self.logger = logging.getLogger("aquafeed_bridge.mqtt.connection")
        self._client_factory = client_factory
        self._message_handler = message_handler
        self._connect_listeners: list[ConnectListener] = []

        self._state = ConnectionState.DISCONNECTED
        self._handle: ReadyHandle | None = None
        self._pending: asyncio.Future[ReadyHandle] | None = None
        self._ever_connected = False

        self._connect_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._listener_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

        self._stats = {
            "total_connections": 0,
            "total_disconnections": 0,
            "total_reconnections": 0,
            "failed_connections": 0,
            "messages_received": 0,
        }
        self._last_connected_at: float | None = None

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        return self._state

    @property
    def connected(self) -> bool:
        """Check if the session is connected and ready."""
        return self._state is ConnectionState.CONNECTED

    @property
    def stats(self) -> dict[str, Any]:
        """Get connection statistics."""
        return {
            **self._stats,
            "connection_state": self._state.value,
            "last_connected_at": self._last_connected_at,
            "ever_connected": self._ever_connected,
        }

    def set_message_handler(self, handler: MessageHandler | None) -> None:
        """Register the coroutine that receives inbound messages."""
        self._message_handler = handler

    def add_connect_listener(self, listener: ConnectListener) -> None:
        """Register a coroutine to run after every transition to connected."""
        self._connect_listeners.append(listener)

    def status(self) -> ConnectionStatus:
        """Describe the session without touching the transport."""
        return ConnectionStatus(
            is_connected=self._state is ConnectionState.CONNECTED,
            is_connecting=self._state
            in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING),
            client_id=self._handle.client_id if self._handle else None,
        )

    async def acquire(self, timeout: float | None = None) -> ReadyHandle:
        """
        Return the ready session, connecting first if needed.

        Args:
            timeout: Seconds to wait for a connect in progress; defaults to
                the configured acquire timeout.

        Raises:
            BridgeConnectionError: If the first connect fails, the session is
                closed while waiting, or the wait times out.
        """
        handle = self._handle
        if self._state is ConnectionState.CONNECTED and handle and handle.ready:
            return handle

        if self._pending is None:
            self._begin_connect()
        pending = self._pending
        wait = self.config.acquire_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(asyncio.shield(pending), timeout=wait)
        except TimeoutError as e:
            raise BridgeConnectionError(
                f"Timed out after {wait:.1f}s waiting for MQTT connection",
                broker=self.config.hostname,
                port=self.config.port,
            ) from e

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            self.logger.debug("Connection state %s -> %s", self._state.value, state.value)
            self._state = state

    def _new_pending(self) -> asyncio.Future[ReadyHandle]:
        future: asyncio.Future[ReadyHandle] = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        self._pending = future
        return future

    def _reject_pending(self, error: BridgeConnectionError) -> None:
        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            pending.set_exception(error)

    def _begin_connect(self) -> None:
        self._new_pending()
        self._set_state(ConnectionState.CONNECTING)
        self._connect_task = self._spawn(self._open_session())

    def _prepare_client_kwargs(self) -> dict[str, Any]:
        """Prepare connection parameters for the aiomqtt client."""
        config = self.config
        client_kwargs: dict[str, Any] = {
            "hostname": config.hostname,
            "port": config.port,
            "identifier": config.client_id,
            "keepalive": config.keepalive,
            "clean_session": True,
            "protocol": ProtocolVersion.V311,
            "transport": config.transport,
            "timeout": config.connect_timeout,
        }
        if config.username:
            client_kwargs["username"] = config.username
            if config.password:
                client_kwargs["password"] = config.password
        if config.transport == "websockets" and config.websocket_path:
            client_kwargs["websocket_path"] = config.websocket_path

        if config.tls:
            ssl_context = ssl.create_default_context()
            if config.ca_cert:
                ssl_context.load_verify_locations(config.ca_cert)
            if config.cert_file and config.key_file:
                ssl_context.load_cert_chain(config.cert_file, config.key_file)
            client_kwargs["tls_context"] = ssl_context

        self.logger.debug(
            "MQTT connection parameters: hostname=%s, port=%s, transport=%s, keepalive=%s, username=%s, tls=%s, client_id=%s",
            config.hostname,
            config.port,
            config.transport,
            config.keepalive,
            config.username,
            config.tls,
            config.client_id,
        )
        return client_kwargs

    async def _connect_client(self) -> Client:
        client = self._client_factory(**self._prepare_client_kwargs())
        try:
            await asyncio.wait_for(client.__aenter__(), timeout=self.config.connect_timeout)
        except TimeoutError:
            await self._exit_client(client)
            raise
        return client

    async def _exit_client(self, client: Client | None) -> None:
        if client is None:
            return
        try:
            await client.__aexit__(None, None, None)
        except (MqttError, OSError, RuntimeError, TimeoutError) as e:
            self.logger.debug("Error while closing MQTT client: %s", e)

    async def _open_session(self) -> None:
        """First connect of a session; failure rejects every waiter."""
        self.logger.info(
            "Connecting to MQTT broker at %s:%d as %s",
            self.config.hostname,
            self.config.port,
            self.config.client_id,
        )
        try:
            client = await self._connect_client()
        except (MqttError, OSError, TimeoutError) as e:
            self._stats["failed_connections"] += 1
            self.logger.error(
                "Failed to connect to MQTT broker at %s:%d: %s",
                self.config.hostname,
                self.config.port,
                str(e) or type(e).__name__,
            )
            self._set_state(ConnectionState.DISCONNECTED)
            self._reject_pending(
                BridgeConnectionError(
                    f"Failed to connect to MQTT broker: {str(e) or type(e).__name__}",
                    broker=self.config.hostname,
                    port=self.config.port,
                ),
            )
            return

        handle = ReadyHandle(self.config.client_id, client)
        self._handle = handle
        self._mark_connected(handle)

    def _mark_connected(self, handle: ReadyHandle) -> None:
        handle.ready = True
        self._set_state(ConnectionState.CONNECTED)
        self._ever_connected = True
        self._stats["total_connections"] += 1
        self._last_connected_at = time.time()
        self.logger.info(
            "Connected to MQTT broker at %s:%d",
            self.config.hostname,
            self.config.port,
        )

        self._listener_task = self._spawn(self._listen(handle, handle.client))
        for listener in self._connect_listeners:
            self._spawn(self._run_connect_listener(listener, handle))

        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            pending.set_result(handle)

    async def _run_connect_listener(
        self,
        listener: ConnectListener,
        handle: ReadyHandle,
    ) -> None:
        try:
            await listener(handle)
        except Exception:
            self.logger.exception("Connect listener failed")

    async def _listen(self, handle: ReadyHandle, client: Client) -> None:
        """Deliver inbound messages in order to the registered handler."""
        try:
            async for message in client.messages:
                inbound = InboundMessage(
                    topic=message.topic.value,
                    raw_payload=_as_bytes(message.payload),
                    qos=int(message.qos),
                    retained=bool(message.retain),
                )
                self._stats["messages_received"] += 1
                if self._message_handler is None:
                    self.logger.debug("No handler for message on %s", inbound.topic)
                    continue
                try:
                    await self._message_handler(inbound)
                except Exception:
                    self.logger.exception(
                        "Error in message handler for topic '%s'",
                        inbound.topic,
                    )
        except MqttError as e:
            self.logger.warning("Lost connection to MQTT broker: %s", e)
        self._on_transport_lost(handle, client)

    def _on_transport_lost(self, handle: ReadyHandle, client: Client) -> None:
        if (
            handle is not self._handle
            or client is not handle.client
            or self._state is not ConnectionState.CONNECTED
        ):
            self.logger.debug("Ignoring transport loss from a superseded session")
            return

        handle.ready = False
        self._stats["total_disconnections"] += 1
        self._set_state(ConnectionState.RECONNECTING)
        self._new_pending()
        self._reconnect_task = self._spawn(self._reconnect_loop(handle))

    async def _reconnect_loop(self, handle: ReadyHandle) -> None:
        """Reconnect the same handle on a fixed period."""
        period = self.config.reconnect_period
        max_attempts = self.config.max_reconnect_attempts
        attempt = 0
        while True:
            attempt += 1
            self.logger.info(
                "Reconnecting to MQTT broker in %.1fs (attempt %d)",
                period,
                attempt,
            )
            await asyncio.sleep(period)

            old_client, handle.client = handle.client, None
            await self._exit_client(old_client)
            try:
                client = await self._connect_client()
            except (MqttError, OSError, TimeoutError) as e:
                self._stats["failed_connections"] += 1
                self.logger.warning("Reconnection attempt %d failed: %s", attempt, e)
                if max_attempts and attempt >= max_attempts:
                    self._handle_transport_closed(handle)
                    return
                continue

            if handle is not self._handle:
                await self._exit_client(client)
                return
            handle.client = client
            self._stats["total_reconnections"] += 1
            self.logger.info("MQTT reconnection successful")
            self._mark_connected(handle)
            return

    def _handle_transport_closed(self, handle: ReadyHandle) -> None:
        if handle is not self._handle:
            return
        self.logger.error(
            "Giving up on MQTT broker after %d reconnect attempts",
            self.config.max_reconnect_attempts,
        )
        handle.ready = False
        self._handle = None
        self._set_state(ConnectionState.CLOSED)
        self._reject_pending(
            BridgeConnectionError(
                "MQTT connection closed",
                broker=self.config.hostname,
                port=self.config.port,
            ),
        )

    async def close(self) -> None:
        """Close the session; the next ``acquire()`` opens a fresh one."""
        if self._state is ConnectionState.CLOSED and self._handle is None:
            return
        self.logger.info("Disconnecting from MQTT broker")
        was_connected = self._state is ConnectionState.CONNECTED
        self._set_state(ConnectionState.CLOSED)

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is current or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self._reject_pending(
            BridgeConnectionError(
                "MQTT connection closed",
                broker=self.config.hostname,
                port=self.config.port,
            ),
        )

        handle, self._handle = self._handle, None
        if handle is not None:
            handle.ready = False
            client, handle.client = handle.client, None
            await self._exit_client(client)
        if was_connected:
            self._stats["total_disconnections"] += 1
        self.logger.info("Disconnected from MQTT broker")

    async def update_config(self, config: BrokerConfig) -> None:
        """Swap in new settings, closing the session if connection details changed."""
        reconnect = config.connection_fields() != self.config.connection_fields()
        self.config = config
        if reconnect and self._state is not ConnectionState.DISCONNECTED:
            self.logger.info("Broker settings changed, closing current session")
            await self.close()

"""
MODULE OVERVIEW:
The push channel client: one persistent WebSocket per role.

WHAT IS HAPPENING HERE:
We use the `websockets` library. Opening the channel starts a reader task that feeds
every inbound frame to the Dispatcher. Anything the app sends while the channel is
down goes to the OutboundQueue and is flushed, in order, right after the next open.
Unexpected closures schedule a reconnect with exponential backoff
(base, 2x base, 4x base, ... capped) until the attempt budget runs out.

Every open is tagged with a generation number. A newer connect() or a disconnect()
bumps it, and any open, close or frame that belongs to an older generation is ignored.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx
import websockets
from loguru import logger

from roadside_sync.client.credentials import CredentialSource, require_complete
from roadside_sync.client.outbound_queue import OutboundQueue
from roadside_sync.client.state_notifier import ConnectionStateNotifier
from roadside_sync.shared.client_utils import ScheduledTask, Sleep, backoff_delay, make_client_stats
from roadside_sync.shared.errors import ConfigurationError
from roadside_sync.shared.events import WILDCARD, Callback, Dispatcher, Subscription
from roadside_sync.shared.models import MESSAGE_TYPES, ConnectionState, Credentials, Envelope, Role, SendResult

Opener = Callable[[str], Awaitable[Any]]

TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, websockets.WebSocketException)


async def open_websocket(url: str) -> Any:
    return await websockets.connect(url)


class ConnectionManager:
    def __init__(
        self,
        role: Role | str,
        credential_source: CredentialSource,
        ws_base_url: str,
        *,
        base_delay_s: float = 3.0,
        max_delay_s: float = 30.0,
        max_attempts: int = 5,
        queue_maxsize: int = 0,
        open_timeout_s: float = 10.0,
        opener: Opener | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.role = Role(role)
        self.credential_source = credential_source
        self.ws_base_url = ws_base_url.rstrip('/')
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.max_attempts = max_attempts
        self.open_timeout_s = open_timeout_s
        self._opener = opener or open_websocket

        self.dispatcher: Dispatcher[Envelope] = Dispatcher(Envelope, name=self.role.value)
        self.notifier = ConnectionStateNotifier()
        self.queue = OutboundQueue(queue_maxsize)
        self.stats = make_client_stats()

        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self.last_reconnect_delay_s: float | None = None
        self.exhausted = False

        self._channel: Any = None
        self._reader: asyncio.Task | None = None
        self._generation = 0
        self._stopped = True
        self._draining = False
        self._reconnect_timer = ScheduledTask(f"reconnect:{self.role.value}", sleep)

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.OPEN and self._channel is not None

    def build_url(self, credentials: Credentials) -> str:
        params = {"userId": credentials.user_id, "userType": self.role.value, "token": credentials.token}
        return str(httpx.URL(f"{self.ws_base_url}/ws", params=params))

    # ==========================
    # SUBSCRIPTIONS
    # ==========================
    def on(self, message_type: str, callback: Callback) -> Subscription:
        if message_type != WILDCARD and message_type not in MESSAGE_TYPES[self.role]:
            logger.debug(f"role={self.role.value} event=subscribe_unlisted type={message_type}")
        return self.dispatcher.subscribe(message_type, callback)

    def off(self, subscription: Subscription) -> None:
        self.dispatcher.unsubscribe(subscription)

    # ==========================
    # CONNECT / DISCONNECT
    # ==========================
    async def connect(self) -> bool:
        """
        Open the channel. Returns True once open, False if this attempt failed (a
        reconnect is then scheduled) or was superseded by a later connect().
        Raises ConfigurationError when the identifier or token is missing.
        """
        self._reconnect_timer.cancel()
        self._stopped = False
        self.exhausted = False
        self.reconnect_attempts = 0
        return await self._open()

    async def disconnect(self) -> None:
        self._stopped = True
        self._generation += 1
        self._reconnect_timer.cancel()
        if self._channel is not None:
            self.state = ConnectionState.CLOSING
            logger.info(f"role={self.role.value} event=disconnect reason=caller")
        await self._close_channel()
        self.state = ConnectionState.DISCONNECTED
        if self.notifier.connected:
            await self.notifier.notify(False)

        self.dispatcher.clear()
        self.queue.clear()
        self.notifier.clear()
        self.reconnect_attempts = 0

    async def _open(self) -> bool:
        credentials = require_complete(await self.credential_source.fetch())

        self._generation += 1
        generation = self._generation
        await self._close_channel()

        self.state = ConnectionState.CONNECTING
        logger.info(f"role={self.role.value} event=connecting attempt={self.reconnect_attempts}")
        try:
            channel = await asyncio.wait_for(self._opener(self.build_url(credentials)), timeout=self.open_timeout_s)
        except TRANSPORT_ERRORS as e:
            if generation != self._generation:
                return False
            logger.warning(f"role={self.role.value} event=open_failed attempt={self.reconnect_attempts} error='{e}'")
            self.state = ConnectionState.DISCONNECTED
            await self.notifier.notify(False)
            await self._schedule_reconnect()
            return False

        if generation != self._generation or self._stopped:
            logger.debug(f"role={self.role.value} event=open_superseded generation={generation}")
            await _close_quietly(channel)
            return False

        self._channel = channel
        self.state = ConnectionState.OPEN
        self.reconnect_attempts = 0
        self.stats["connected_at"] = datetime.now(timezone.utc).isoformat()
        logger.info(f"role={self.role.value} event=open queued={len(self.queue)}")
        self._reader = asyncio.create_task(self._read_loop(channel, generation))

        # Anything sent from an open listener lands behind what was already queued.
        self._draining = True
        try:
            await self.notifier.notify(True)
            await self._drain()
        finally:
            self._draining = False
        return True

    async def _close_channel(self) -> None:
        channel, self._channel = self._channel, None
        reader, self._reader = self._reader, None
        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
        if channel is not None:
            await _close_quietly(channel)

    # ==========================
    # INBOUND
    # ==========================
    async def _read_loop(self, channel: Any, generation: int) -> None:
        try:
            async for raw in channel:
                if generation != self._generation:
                    return
                self.stats["frames_received"] += 1
                self.stats["last_frame_at"] = datetime.now(timezone.utc).isoformat()
                logger.debug(f"role={self.role.value} event=frame bytes={len(raw)}")
                if not await self.dispatcher.dispatch_raw(raw):
                    self.stats["frames_dropped"] += 1
        except websockets.ConnectionClosed as e:
            logger.info(f"role={self.role.value} event=closed code={getattr(e.rcvd, 'code', None)}")
        except TRANSPORT_ERRORS as e:
            logger.warning(f"role={self.role.value} event=read_error error='{e}'")
        await self._handle_closed(generation)

    async def _handle_closed(self, generation: int) -> None:
        if generation != self._generation or self._stopped:
            return
        self._channel = None
        self._reader = None
        self.state = ConnectionState.DISCONNECTED
        logger.warning(f"role={self.role.value} event=disconnect reason=unexpected")
        await self.notifier.notify(False)
        await self._schedule_reconnect()

    # ==========================
    # RECONNECTION
    # ==========================
    async def _schedule_reconnect(self) -> None:
        if self._stopped:
            return
        if self.reconnect_attempts >= self.max_attempts:
            self.exhausted = True
            logger.error(f"role={self.role.value} event=reconnect_exhausted attempts={self.reconnect_attempts}")
            await self.notifier.notify_exhausted()
            return
        self.reconnect_attempts += 1
        self.stats["reconnect_count"] += 1
        delay = backoff_delay(self.reconnect_attempts, self.base_delay_s, self.max_delay_s)
        self.last_reconnect_delay_s = delay
        logger.info(
            f"role={self.role.value} event=reconnect_scheduled "
            f"attempt={self.reconnect_attempts}/{self.max_attempts} delay={delay:.2f}s"
        )
        self._reconnect_timer.arm(delay, self._reconnect)

    async def _reconnect(self) -> None:
        if self._stopped:
            return
        try:
            await self._open()
        except ConfigurationError as e:
            logger.error(f"role={self.role.value} event=reconnect_aborted error='{e}'")
            self.state = ConnectionState.DISCONNECTED
            self.exhausted = True
            await self.notifier.notify_exhausted()

    # ==========================
    # OUTBOUND
    # ==========================
    async def send(self, message_type: str, data: Any = None) -> SendResult:
        envelope = Envelope(type=message_type, data=data)
        if self._draining or self.queue or not self.is_connected:
            self.queue.push(envelope)
            self.stats["messages_queued"] += 1
            logger.debug(f"role={self.role.value} event=queued type={message_type} depth={len(self.queue)}")
            return SendResult.QUEUED
        if await self._transmit(envelope):
            return SendResult.ACCEPTED
        self.queue.push(envelope)
        self.stats["messages_queued"] += 1
        return SendResult.QUEUED

    async def _drain(self) -> None:
        while self.queue and self.is_connected:
            envelope = self.queue.pop()
            if not await self._transmit(envelope):
                self.queue.push_front(envelope)
                break

    async def _transmit(self, envelope: Envelope) -> bool:
        channel = self._channel
        if channel is None:
            return False
        try:
            await channel.send(envelope.model_dump_json())
        except TRANSPORT_ERRORS as e:
            logger.warning(f"role={self.role.value} event=send_failed type={envelope.type} error='{e}'")
            return False
        self.stats["messages_sent"] += 1
        logger.debug(f"role={self.role.value} event=sent type={envelope.type}")
        return True


async def _close_quietly(channel: Any) -> None:
    try:
        await channel.close()
    except TRANSPORT_ERRORS as e:
        logger.debug(f"event=close_error error='{e}'")

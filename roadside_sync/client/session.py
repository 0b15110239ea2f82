"""
MODULE OVERVIEW:
One RoleSession per signed-in role. It owns that role's ConnectionManager and
BookingApi and every PollingSession started through it. Nothing here is global;
sign-out is close().

WHAT IS HAPPENING HERE:
Tracking a booking runs both channels at once. The PollingSession is the source of
truth, and push messages about the same booking are forwarded to it so a match shows
up as soon as the server pushes it. Each time the channel (re)opens we ask the server
for a fresh status over the channel, and coming back to the foreground reconnects a
dropped channel.
"""
import asyncio
from typing import Any, Mapping

from loguru import logger

from roadside_sync.client.booking_api import BookingApi
from roadside_sync.client.credentials import CredentialSource
from roadside_sync.client.lifecycle import AppLifecycle
from roadside_sync.client.status_poller import PUSH_TYPES, PollingSession
from roadside_sync.client.websocket_client import ConnectionManager, Opener
from roadside_sync.shared.client_utils import Sleep
from roadside_sync.shared.config import Settings
from roadside_sync.shared.config import settings as default_settings
from roadside_sync.shared.errors import ConfigurationError
from roadside_sync.shared.events import Subscription
from roadside_sync.shared.models import LifecycleState, PollState, Role, SendResult


class RoleSession:
    def __init__(
        self,
        role: Role | str,
        connection: ConnectionManager,
        api: BookingApi,
        lifecycle: AppLifecycle | None = None,
        *,
        poll_interval_ms: int = 5000,
        poll_max_attempts: int = 60,
        max_unknown_statuses: int | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.role = Role(role)
        self.connection = connection
        self.api = api
        self.lifecycle = lifecycle or AppLifecycle()
        self.poll_interval_ms = poll_interval_ms
        self.poll_max_attempts = poll_max_attempts
        self.max_unknown_statuses = max_unknown_statuses
        self._sleep = sleep
        self.trackers: dict[PollingSession, list[Subscription]] = {}
        self._started = False
        self._resume_task: asyncio.Task | None = None

    @classmethod
    def from_settings(
        cls,
        role: Role | str,
        credential_source: CredentialSource,
        settings: Settings = default_settings,
        lifecycle: AppLifecycle | None = None,
        opener: Opener | None = None,
    ) -> "RoleSession":
        connection = ConnectionManager(
            role,
            credential_source,
            settings.WS_BASE_URL,
            base_delay_s=settings.RECONNECT_BASE_DELAY_S,
            max_delay_s=settings.RECONNECT_MAX_DELAY_S,
            max_attempts=settings.RECONNECT_MAX_ATTEMPTS,
            queue_maxsize=settings.OUTBOUND_QUEUE_MAXSIZE,
            opener=opener,
        )
        api = BookingApi(settings.API_BASE_URL, credential_source, timeout_s=settings.HTTP_TIMEOUT_S)
        return cls(
            role,
            connection,
            api,
            lifecycle,
            poll_interval_ms=settings.POLL_INTERVAL_MS,
            poll_max_attempts=settings.POLL_MAX_ATTEMPTS,
        )

    async def start(self) -> bool:
        if not self._started:
            self._started = True
            self.lifecycle.subscribe(self._on_lifecycle)
            self.connection.notifier.on_state_change(self._on_connection_change)
        return await self.connection.connect()

    async def close(self) -> None:
        if self._resume_task is not None and not self._resume_task.done():
            self._resume_task.cancel()
        self._resume_task = None
        for tracker in list(self.trackers):
            await self._release(tracker)
            await tracker.close()
        self.lifecycle.unsubscribe(self._on_lifecycle)
        await self.connection.disconnect()
        await self.api.aclose()
        self._started = False
        logger.info(f"role={self.role.value} event=session_closed")

    # ==========================
    # CUSTOMER: BOOKING TRACKING
    # ==========================
    async def track_booking(self, booking_request: Mapping[str, Any]) -> PollingSession:
        """Submit a booking and follow it. Returns the session in `searching` or `error`."""
        if self.role != Role.CUSTOMER:
            raise ValueError("Only a customer session can submit bookings")
        tracker = PollingSession(
            self.api,
            interval_ms=self.poll_interval_ms,
            max_attempts=self.poll_max_attempts,
            max_unknown_statuses=self.max_unknown_statuses,
            lifecycle=self.lifecycle,
            sleep=self._sleep,
        )
        self.trackers[tracker] = []
        tracker.on_state_change(self._on_tracker_state)
        await tracker.start(booking_request)
        return tracker

    async def request_status(self, booking_id: str) -> SendResult:
        return await self.connection.send("request_status", {"bookingId": booking_id})

    async def _on_tracker_state(self, tracker: PollingSession) -> None:
        # Push subscriptions exist only while the tracker is searching; an errored
        # tracker stays registered so a retry() picks them up again.
        if tracker.state == PollState.SEARCHING:
            if tracker in self.trackers and not self.trackers[tracker]:
                self.trackers[tracker] = [self.connection.on(t, tracker.apply_push) for t in sorted(PUSH_TYPES)]
                await self.request_status(tracker.booking_id)
        elif tracker.state == PollState.ERROR:
            self._unsubscribe_pushes(tracker)
        elif tracker.state.is_terminal:
            await self._release(tracker)

    def _unsubscribe_pushes(self, tracker: PollingSession) -> None:
        for sub in self.trackers.get(tracker, []):
            self.connection.off(sub)
        if tracker in self.trackers:
            self.trackers[tracker] = []

    async def _release(self, tracker: PollingSession) -> None:
        self._unsubscribe_pushes(tracker)
        self.trackers.pop(tracker, None)

    # ==========================
    # PROVIDER: PRESENCE
    # ==========================
    async def set_online(self, is_online: bool) -> SendResult:
        return await self.connection.send("provider_status", {"isOnline": is_online})

    async def report_location(self, lat: float, lng: float, **extra: Any) -> SendResult:
        return await self.connection.send("location_update", {"lat": lat, "lng": lng, **extra})

    async def subscribe_room(self, room: str) -> SendResult:
        """Join a server-side broadcast room such as a booking or service area."""
        return await self.connection.send("subscribe", {"room": room})

    # ==========================
    # SIGNALS
    # ==========================
    async def _on_connection_change(self, connected: bool) -> None:
        if not connected:
            return
        for tracker in list(self.trackers):
            if tracker.state == PollState.SEARCHING:
                await self.request_status(tracker.booking_id)

    async def _on_lifecycle(self, state: LifecycleState) -> None:
        if state != LifecycleState.FOREGROUND or self.connection.is_connected:
            return
        if self._resume_task is not None and not self._resume_task.done():
            return
        logger.info(f"role={self.role.value} event=foreground_reconnect exhausted={self.connection.exhausted}")
        # Never awaited here: trackers poll in this same transition while the channel opens.
        self._resume_task = asyncio.create_task(self._reconnect_on_resume())

    async def _reconnect_on_resume(self) -> None:
        try:
            await self.connection.connect()
        except ConfigurationError as e:
            logger.error(f"role={self.role.value} event=foreground_reconnect_failed error='{e}'")

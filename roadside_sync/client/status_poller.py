"""
MODULE OVERVIEW:
The bounded request/poll/terminate state machine that follows one booking to a result.

WHAT IS HAPPENING HERE:
    connecting --submit ok--> searching --success status--> found
        |                        |--failure status or budget spent--> no_providers
        '--submit failed--> error   (the caller may retry(); nothing loops on its own)

While searching, one single-shot timer fires a status fetch every `interval_ms`.
Network failures are transient: they re-arm the timer without spending the attempt
budget. Every non-terminal answer (including statuses we do not recognize) spends one
attempt, and running out of attempts ends the search exactly like a cancellation.

Push messages can settle the search early through apply_push(). Whichever source
reaches a terminal status first wins; everything after that is ignored.

When the app goes to the background the timer is cancelled. Coming back to the
foreground triggers one immediate poll, which re-arms the normal schedule.
"""
import asyncio
import inspect
from typing import Any, Awaitable, Callable, Mapping

from loguru import logger

from roadside_sync.client.booking_api import BookingApi
from roadside_sync.client.lifecycle import AppLifecycle
from roadside_sync.shared.client_utils import ScheduledTask, Sleep
from roadside_sync.shared.errors import (
    BookingRejectedError,
    ConfigurationError,
    SessionTerminatedError,
    TransportError,
)
from roadside_sync.shared.models import BookingResult, BookingStatus, Envelope, LifecycleState, PollState, StatusResponse

StateCallback = Callable[["PollingSession"], Awaitable[None] | None]

SUCCESS_PUSH_TYPES = frozenset({"job_accepted", "provider_assigned", "booking_confirmed", "booking_accepted"})
FAILURE_PUSH_TYPES = {"booking_cancelled": BookingStatus.CANCELLED, "booking_expired": BookingStatus.EXPIRED}
STATUS_PUSH_TYPE = "status_update"
PUSH_TYPES = SUCCESS_PUSH_TYPES | set(FAILURE_PUSH_TYPES) | {STATUS_PUSH_TYPE}


class PollingSession:
    def __init__(
        self,
        api: BookingApi,
        *,
        interval_ms: int = 5000,
        max_attempts: int = 60,
        max_unknown_statuses: int | None = None,
        lifecycle: AppLifecycle | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.api = api
        self.interval_ms = interval_ms
        self.max_attempts = max_attempts
        self.max_unknown_statuses = max_unknown_statuses
        self.lifecycle = lifecycle

        self.booking_id: str | None = None
        self.state = PollState.CONNECTING
        self.attempt_count = 0
        self.polls_issued = 0
        self.unknown_streak = 0
        self.last_status: BookingStatus | None = None
        self.error: str | None = None
        self.reason: str | None = None
        self.result: BookingResult | None = None

        self._request: Mapping[str, Any] | None = None
        self._timer = ScheduledTask("poll", sleep)
        self._in_flight = False
        self._suspended = False
        self._closed = False
        self._settled = asyncio.Event()
        self._listeners: list[StateCallback] = []

    def __repr__(self) -> str:
        return (
            f"PollingSession(booking_id={self.booking_id!r}, state={self.state.value}, "
            f"attempts={self.attempt_count}/{self.max_attempts})"
        )

    def on_state_change(self, callback: StateCallback) -> None:
        self._listeners.append(callback)

    @property
    def timer_pending(self) -> bool:
        return self._timer.pending

    # ==========================
    # CALLER ENTRY POINTS
    # ==========================
    async def start(self, booking_request: Mapping[str, Any]) -> PollState:
        """Submit the booking and begin searching. Returns `searching` or `error`."""
        self._ensure_not_terminal()
        if self._request is not None:
            raise SessionTerminatedError("PollingSession already started; use retry() after an error")
        self._request = booking_request
        return await self._submit()

    async def retry(self) -> PollState:
        """Re-submit after an `error`. Only valid from the error state."""
        self._ensure_not_terminal()
        if self.state != PollState.ERROR:
            raise SessionTerminatedError(f"retry() is only valid from error, session is {self.state.value}")
        return await self._submit()

    async def poll_now(self) -> None:
        """Fetch status immediately instead of waiting for the timer."""
        self._ensure_not_terminal()
        await self._poll_immediately()

    async def wait(self) -> PollState:
        """Block until the session is terminal or in error."""
        await self._settled.wait()
        return self.state

    async def close(self) -> None:
        """Tear the session down. No scheduled poll will have any effect afterwards."""
        self._closed = True
        self._timer.cancel()
        if self.lifecycle is not None:
            self.lifecycle.unsubscribe(self._on_lifecycle)
        self._settled.set()

    def _ensure_not_terminal(self) -> None:
        if self.state.is_terminal or self._closed:
            raise SessionTerminatedError(f"PollingSession for {self.booking_id} is finished ({self.state.value})")

    # ==========================
    # CONNECTING
    # ==========================
    async def _submit(self) -> PollState:
        self.error = None
        self._settled.clear()
        await self._set_state(PollState.CONNECTING)
        try:
            booking_id = await self.api.submit(self._request)
        except BookingRejectedError as e:
            return await self._fail(e.message)
        except (TransportError, ConfigurationError) as e:
            return await self._fail(str(e))

        if self._closed:
            return self.state
        self.booking_id = booking_id
        await self._set_state(PollState.SEARCHING)
        if self.lifecycle is not None:
            self.lifecycle.subscribe(self._on_lifecycle)
            self._suspended = self.lifecycle.state == LifecycleState.BACKGROUND
        self._arm()
        return self.state

    async def _fail(self, message: str) -> PollState:
        logger.warning(f"poller event=submit_failed error='{message}'")
        self.error = message
        await self._set_state(PollState.ERROR)
        self._settled.set()
        return self.state

    # ==========================
    # SEARCHING
    # ==========================
    def _arm(self) -> None:
        if self._closed or self._suspended or self.state != PollState.SEARCHING:
            return
        self._timer.arm(self.interval_ms / 1000.0, self._poll)

    async def _poll_immediately(self) -> None:
        if self.state != PollState.SEARCHING or self._in_flight:
            return
        self._timer.cancel()
        await self._poll()

    async def _poll(self) -> None:
        if self._closed or self._in_flight or self.state != PollState.SEARCHING:
            return
        self._in_flight = True
        try:
            self.polls_issued += 1
            try:
                body = await self.api.fetch_status(self.booking_id)
            except (TransportError, ConfigurationError) as e:
                logger.warning(f"poller booking_id={self.booking_id} event=poll_failed error='{e}'")
            else:
                if not self._closed and self.state == PollState.SEARCHING:
                    raw_status = StatusResponse.model_validate(body).status
                    await self._apply(raw_status, body, source="poll", counted=True)
        finally:
            self._in_flight = False
        self._arm()

    async def _apply(self, raw_status: Any, payload: Mapping[str, Any], source: str, counted: bool) -> None:
        if self.state != PollState.SEARCHING:
            return
        status = BookingStatus.parse(raw_status)
        self.last_status = status
        logger.info(
            f"poller booking_id={self.booking_id} event=status source={source} "
            f"status={status.value} attempt={self.attempt_count}/{self.max_attempts}"
        )

        if status.is_success:
            await self._finish(PollState.FOUND, status, payload, source, reason=status.value)
            return
        if status.is_failure:
            await self._finish(PollState.NO_PROVIDERS, status, payload, source, reason=status.value)
            return
        if not counted:
            return

        if status == BookingStatus.UNKNOWN:
            self.unknown_streak += 1
            logger.warning(f"poller booking_id={self.booking_id} event=unknown_status raw='{raw_status}'")
        else:
            self.unknown_streak = 0

        self.attempt_count += 1
        if self.attempt_count >= self.max_attempts:
            await self._finish(PollState.NO_PROVIDERS, status, payload, source, reason="timeout")
        elif self.max_unknown_statuses is not None and self.unknown_streak >= self.max_unknown_statuses:
            await self._finish(PollState.NO_PROVIDERS, status, payload, source, reason="unknown_status")

    async def _finish(
        self, state: PollState, status: BookingStatus, payload: Mapping[str, Any], source: str, reason: str
    ) -> None:
        if self.state.is_terminal:
            return
        self._timer.cancel()
        self.reason = reason
        self.result = BookingResult(
            booking_id=self.booking_id,
            status=status,
            payload={**payload, "bookingId": self.booking_id},
            source=source,
        )
        if self.lifecycle is not None:
            self.lifecycle.unsubscribe(self._on_lifecycle)
        await self._set_state(state)
        self._settled.set()

    # ==========================
    # PUSH ACCELERATION
    # ==========================
    async def apply_push(self, envelope: Envelope) -> bool:
        """
        Feed a push message into the session. Returns True if it was about this
        booking and the session was still searching.
        """
        if self._closed or self.state != PollState.SEARCHING or envelope.type not in PUSH_TYPES:
            return False
        data = envelope.data if isinstance(envelope.data, dict) else {}
        pushed_id = data.get("bookingId") or data.get("jobId")
        if pushed_id is not None and pushed_id != self.booking_id:
            logger.debug(f"poller booking_id={self.booking_id} event=push_ignored other={pushed_id}")
            return False

        if envelope.type in SUCCESS_PUSH_TYPES:
            status = BookingStatus.parse(data.get("status"))
            raw_status = status.value if status.is_success else BookingStatus.PROVIDER_ASSIGNED.value
        elif envelope.type in FAILURE_PUSH_TYPES:
            raw_status = FAILURE_PUSH_TYPES[envelope.type].value
        else:
            raw_status = data.get("status")
        await self._apply(raw_status, data, source="push", counted=False)
        return True

    # ==========================
    # SUSPENSION
    # ==========================
    async def _on_lifecycle(self, state: LifecycleState) -> None:
        if state == LifecycleState.BACKGROUND:
            self._suspended = True
            self._timer.cancel()
            logger.info(f"poller booking_id={self.booking_id} event=suspended")
            return
        self._suspended = False
        logger.info(f"poller booking_id={self.booking_id} event=resumed in_flight={self._in_flight}")
        # An in-flight poll re-arms the schedule itself when it completes.
        await self._poll_immediately()

    async def _set_state(self, state: PollState) -> None:
        if state == self.state and state != PollState.CONNECTING:
            return
        logger.info(f"poller booking_id={self.booking_id} event=transition from={self.state.value} to={state.value}")
        self.state = state
        for cb in list(self._listeners):
            try:
                result = cb(self)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"poller event=callback_error error='{e}'")

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable

from loguru import logger

Sleep = Callable[[float], Awaitable[None]]


def make_client_stats() -> dict:
    """
    Returns a fresh stats dictionary with zeroed counters.
    The ConnectionManager owns one; the dashboard reads it.
    """
    return {
        "frames_received": 0,
        "frames_dropped": 0,
        "messages_sent": 0,
        "messages_queued": 0,
        "reconnect_count": 0,
        "last_frame_at": None,
        "connected_at": None,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }


def backoff_delay(attempt: int, base_delay_s: float, max_delay_s: float) -> float:
    """Delay before reconnect attempt `attempt` (1-indexed): base * 2^(n-1), capped."""
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return min(max_delay_s, base_delay_s * (2 ** (attempt - 1)))


class ScheduledTask:
    """
    A single-shot, re-armable timer with a cancellation token.

    Only one firing can be pending at a time: arm() refuses while a previous firing is
    still waiting. The pending slot is released right before the callback runs, so the
    callback itself may re-arm. cancel() bumps the token, which stops any firing that
    has already woken up but not yet run its callback.
    """

    def __init__(self, name: str, sleep: Sleep = asyncio.sleep):
        self.name = name
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self._token = 0

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self, delay_s: float, callback: Callable[[], Awaitable[None]]) -> bool:
        if self.pending:
            logger.debug(f"timer={self.name} event=arm_refused reason=already_pending")
            return False
        self._token += 1
        self._task = asyncio.create_task(self._fire(self._token, delay_s, callback))
        return True

    def cancel(self) -> None:
        self._token += 1
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _fire(self, token: int, delay_s: float, callback: Callable[[], Awaitable[None]]) -> None:
        try:
            await self._sleep(delay_s)
        except asyncio.CancelledError:
            return
        if token != self._token:
            return
        self._task = None
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"timer={self.name} event=callback_error")

import inspect
from typing import Awaitable, Callable

from loguru import logger

StateCallback = Callable[[bool], Awaitable[None] | None]
ExhaustedCallback = Callable[[], Awaitable[None] | None]


class ConnectionStateNotifier:
    """
    Broadcasts online/offline transitions only. Subscribers never see the richer
    ConnectionState or the reconnect counter; repeated identical values are collapsed.
    Reconnect exhaustion is a separate terminal signal.
    """

    def __init__(self):
        self._listeners: list[StateCallback] = []
        self._exhausted_listeners: list[ExhaustedCallback] = []
        self.connected: bool | None = None

    def on_state_change(self, callback: StateCallback) -> None:
        self._listeners.append(callback)

    def off_state_change(self, callback: StateCallback) -> None:
        self._listeners = [cb for cb in self._listeners if cb != callback]

    def on_exhausted(self, callback: ExhaustedCallback) -> None:
        self._exhausted_listeners.append(callback)

    async def notify(self, connected: bool) -> None:
        if self.connected == connected:
            return
        self.connected = connected
        for cb in list(self._listeners):
            await _call_safely(cb, connected)

    async def notify_exhausted(self) -> None:
        await self.notify(False)
        for cb in list(self._exhausted_listeners):
            await _call_safely(cb)

    def clear(self) -> None:
        self._listeners = []
        self._exhausted_listeners = []


async def _call_safely(cb, *args) -> None:
    try:
        result = cb(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"notifier=connection event=callback_error error='{e}'")

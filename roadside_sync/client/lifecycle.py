"""
Foreground/background signal from the host app.

The platform integration calls `transition()`; subscribers such as PollingSession and
RoleSession react to it. Repeated transitions to the state we are already in are
ignored.
"""
import inspect
from typing import Awaitable, Callable

from loguru import logger

from roadside_sync.shared.models import LifecycleState

LifecycleCallback = Callable[[LifecycleState], Awaitable[None] | None]


class AppLifecycle:
    def __init__(self, state: LifecycleState = LifecycleState.FOREGROUND):
        self.state = state
        self._listeners: list[LifecycleCallback] = []

    def subscribe(self, callback: LifecycleCallback) -> None:
        self._listeners.append(callback)

    def unsubscribe(self, callback: LifecycleCallback) -> None:
        self._listeners = [cb for cb in self._listeners if cb != callback]

    async def transition(self, state: LifecycleState) -> None:
        if state == self.state:
            return
        logger.info(f"lifecycle event=transition from={self.state.value} to={state.value}")
        self.state = state
        for cb in list(self._listeners):
            try:
                result = cb(state)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"lifecycle event=callback_error error='{e}'")

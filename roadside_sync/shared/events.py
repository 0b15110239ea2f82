"""
MODULE OVERVIEW:
The listener registry and fan-out for inbound push messages.

WHAT IS HAPPENING HERE:
Subscribers register per message type, or under the wildcard key "*" to see
everything. Each inbound frame goes to the exact-type subscribers first, in the order
they registered, then to the wildcard subscribers. One misbehaving subscriber never
stops the others, and a subscriber may unsubscribe itself (or anyone else) while a
dispatch is running.
"""
import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from itertools import count
from typing import Any, Awaitable, Callable, Generic, TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

from roadside_sync.shared.models import Envelope

WILDCARD = "*"

T = TypeVar("T", bound=BaseModel)
Callback = Callable[[Any], Awaitable[None] | None]

_ids = count(1)


@dataclass(eq=False)
class Subscription:
    type: str
    callback: Callback
    id: int = field(default_factory=lambda: next(_ids))
    active: bool = True


class Dispatcher(Generic[T]):
    """
    Typed pub/sub keyed by message type. `model` decodes raw frames; for the push
    channel it is Envelope, whose `type` field is the routing key.
    """

    def __init__(self, model: type[T] = Envelope, name: str = "dispatcher"):
        self.model = model
        self.name = name
        self._listeners: dict[str, list[Subscription]] = defaultdict(list)

    def subscribe(self, message_type: str, callback: Callback) -> Subscription:
        sub = Subscription(message_type, callback)
        self._listeners[message_type].append(sub)
        logger.debug(f"dispatcher={self.name} event=subscribe type={message_type} id={sub.id}")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.active = False
        listeners = self._listeners.get(sub.type)
        if not listeners:
            return
        # Rebinding instead of mutating keeps any in-progress snapshot intact.
        remaining = [s for s in listeners if s is not sub]
        if remaining:
            self._listeners[sub.type] = remaining
        else:
            del self._listeners[sub.type]
        logger.debug(f"dispatcher={self.name} event=unsubscribe type={sub.type} id={sub.id}")

    def clear(self) -> None:
        for listeners in self._listeners.values():
            for sub in listeners:
                sub.active = False
        self._listeners.clear()

    def listener_count(self, message_type: str | None = None) -> int:
        if message_type is not None:
            return len(self._listeners.get(message_type, []))
        return sum(len(v) for v in self._listeners.values())

    def decode(self, raw: str | bytes) -> T | None:
        try:
            return self.model.model_validate_json(raw)
        except ValidationError as e:
            logger.error(f"dispatcher={self.name} event=frame_dropped reason='{e.error_count()} validation errors'")
            return None

    async def dispatch_raw(self, raw: str | bytes) -> bool:
        """Decode and deliver one frame. Returns False if the frame was dropped."""
        message = self.decode(raw)
        if message is None:
            return False
        await self.dispatch(message)
        return True

    async def dispatch(self, message: T) -> None:
        message_type = getattr(message, "type")
        exact = list(self._listeners.get(message_type, ()))
        wildcard = list(self._listeners.get(WILDCARD, ())) if message_type != WILDCARD else []

        for sub in exact + wildcard:
            if not sub.active:
                continue
            try:
                result = sub.callback(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"dispatcher={self.name} event=callback_error type={message_type} "
                    f"listener={sub.type} id={sub.id} error='{e}'"
                )

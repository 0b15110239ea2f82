"""
MODULE OVERVIEW:
Strictly typed data structures shared by the push channel, the status poller and the
sandbox backend, powered by Pydantic v2.

WHAT IS HAPPENING HERE:
Everything that crosses a wire boundary is validated here. A frame that is not a valid
Envelope never reaches a subscriber, and a status word the server invents tomorrow is
normalized to UNKNOWN instead of blowing up a poll.
"""
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


class SendResult(str, Enum):
    ACCEPTED = "accepted"
    QUEUED = "queued"


class LifecycleState(str, Enum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"


class PollState(str, Enum):
    CONNECTING = "connecting"
    SEARCHING = "searching"
    FOUND = "found"
    NO_PROVIDERS = "no_providers"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (PollState.FOUND, PollState.NO_PROVIDERS)


class BookingStatus(str, Enum):
    PENDING = "pending"
    SEARCHING = "searching"
    PROVIDER_ASSIGNED = "provider_assigned"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: Any) -> "BookingStatus":
        """Normalize a server status word. Unrecognized values become UNKNOWN."""
        if not isinstance(raw, str):
            return cls.UNKNOWN
        word = raw.strip().lower()
        word = STATUS_ALIASES.get(word, word)
        try:
            return cls(word)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_success(self) -> bool:
        return self in (BookingStatus.PROVIDER_ASSIGNED, BookingStatus.CONFIRMED)

    @property
    def is_failure(self) -> bool:
        return self in (BookingStatus.CANCELLED, BookingStatus.EXPIRED)

    @property
    def is_terminal(self) -> bool:
        return self.is_success or self.is_failure


# The production backend also says "accepted" for a matched job.
STATUS_ALIASES = {"accepted": "provider_assigned"}


class Envelope(BaseModel):
    """The {type, data} unit exchanged over the push channel."""
    type: str = Field(min_length=1)
    data: Any = None


class Credentials(BaseModel):
    user_id: str | None = None
    role: Role
    token: str | None = None


class SubmissionResponse(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    booking_id: str = Field(alias="bookingId", min_length=1)


class StatusResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: Any = None


class BookingResult(BaseModel):
    """What a PollingSession hands to its caller once it reaches a terminal state."""
    booking_id: str
    status: BookingStatus
    payload: dict[str, Any] = Field(default_factory=dict)
    source: str = "poll"


# Inbound push message types each side of the marketplace listens for.
CUSTOMER_MESSAGE_TYPES = frozenset({
    "job_accepted", "provider_assigned", "booking_confirmed", "booking_accepted",
    "booking_cancelled", "booking_expired", "status_update", "provider_location", "error",
})
PROVIDER_MESSAGE_TYPES = frozenset({
    "new_job_request", "job_cancelled", "job_updated", "notification",
    "provider_status_update", "error",
})
MESSAGE_TYPES = {Role.CUSTOMER: CUSTOMER_MESSAGE_TYPES, Role.PROVIDER: PROVIDER_MESSAGE_TYPES}

"""
MODULE OVERVIEW:
In-memory state for the sandbox backend: bookings and open push channels.

WHAT IS HAPPENING HERE:
There is no matching algorithm. A booking reports `searching` until it has been polled
`match_after_polls` times and is then assigned to a stand-in provider, unless a
connected provider accepted it first via an `accept_job` message. Either way the
customer's open channel gets a `job_accepted` push, so the client can see push and
poll race each other.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict
from uuid import uuid4

from fastapi.websockets import WebSocket
from loguru import logger
from pydantic import BaseModel, Field

from roadside_sync.shared.models import BookingStatus, Envelope, Role

SANDBOX_PROVIDER = {
    "providerId": "sandbox-provider",
    "providerName": "Sandbox Towing",
    "providerRating": 4.5,
    "estimatedArrival": "10-15 minutes",
}


class Booking(BaseModel):
    booking_id: str = Field(default_factory=lambda: f"BK-{uuid4().hex[:8]}")
    owner_token: str
    request: dict[str, Any]
    status: BookingStatus = BookingStatus.PENDING
    polls: int = 0
    provider: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def status_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {"bookingId": self.booking_id, "status": self.status.value}
        if self.provider:
            doc.update(self.provider)
            doc["provider"] = self.provider
        return doc


@dataclass
class ChannelEntry:
    websocket: WebSocket
    user_id: str
    role: Role
    token: str


class BookingStore:
    def __init__(self, match_after_polls: int = 3, reject_submissions: bool = False):
        self.match_after_polls = match_after_polls
        self.reject_submissions = reject_submissions
        self.bookings: Dict[str, Booking] = {}
        self.channels: Dict[str, ChannelEntry] = {}
        self.total_pushes = 0
        self.startup_time = datetime.now(timezone.utc)

    # ==========================
    # CHANNELS
    # ==========================
    async def connect_ws(self, websocket: WebSocket, user_id: str, role: Role, token: str) -> str:
        await websocket.accept()
        key = f"{role.value}:{user_id}"
        self.channels[key] = ChannelEntry(websocket=websocket, user_id=user_id, role=role, token=token)
        logger.info(f"user_id={user_id} role={role.value} event=connect reason=accepted")
        return key

    def disconnect_ws(self, key: str) -> None:
        if key in self.channels:
            del self.channels[key]
            logger.info(f"channel={key} event=disconnect reason=cleanup")

    async def _send(self, key: str, entry: ChannelEntry, envelope: Envelope) -> bool:
        try:
            await entry.websocket.send_text(envelope.model_dump_json())
        except Exception as e:
            logger.warning(f"channel={key} event=error reason='{e}'")
            self.disconnect_ws(key)
            return False
        self.total_pushes += 1
        return True

    async def push_to_owner(self, booking: Booking, envelope: Envelope) -> int:
        targets = [
            (key, entry) for key, entry in self.channels.items()
            if entry.role == Role.CUSTOMER and entry.token == booking.owner_token
        ]
        delivered = 0
        for key, entry in targets:
            delivered += await self._send(key, entry, envelope)
        return delivered

    async def broadcast_to_providers(self, envelope: Envelope) -> int:
        targets = [(key, entry) for key, entry in self.channels.items() if entry.role == Role.PROVIDER]
        delivered = 0
        for key, entry in targets:
            delivered += await self._send(key, entry, envelope)
        return delivered

    # ==========================
    # BOOKINGS
    # ==========================
    async def create(self, request: dict[str, Any], owner_token: str) -> Booking:
        booking = Booking(owner_token=owner_token, request=request)
        self.bookings[booking.booking_id] = booking
        logger.info(f"booking_id={booking.booking_id} event=created")
        await self.broadcast_to_providers(
            Envelope(type="new_job_request", data={"bookingId": booking.booking_id, "request": request})
        )
        return booking

    def get(self, booking_id: str) -> Booking | None:
        return self.bookings.get(booking_id)

    async def poll(self, booking_id: str) -> Booking | None:
        booking = self.bookings.get(booking_id)
        if booking is None:
            return None
        booking.polls += 1
        if booking.status == BookingStatus.PENDING:
            booking.status = BookingStatus.SEARCHING
        if booking.status == BookingStatus.SEARCHING and booking.polls >= self.match_after_polls:
            await self.assign(booking, SANDBOX_PROVIDER)
        return booking

    async def assign(self, booking: Booking, provider: dict[str, Any]) -> bool:
        if booking.status.is_terminal:
            return False
        booking.status = BookingStatus.PROVIDER_ASSIGNED
        booking.provider = provider
        logger.info(f"booking_id={booking.booking_id} event=assigned provider={provider.get('providerId')}")
        await self.push_to_owner(booking, Envelope(type="job_accepted", data=booking.status_document()))
        return True

    async def cancel(self, booking: Booking) -> bool:
        if booking.status.is_terminal:
            return False
        booking.status = BookingStatus.CANCELLED
        await self.push_to_owner(booking, Envelope(type="booking_cancelled", data=booking.status_document()))
        return True

    # ==========================
    # METRICS
    # ==========================
    def get_stats(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        for booking in self.bookings.values():
            by_status[booking.status.value] = by_status.get(booking.status.value, 0) + 1
        return {
            "open_channels": len(self.channels),
            "bookings": by_status,
            "total_pushes": self.total_pushes,
            "uptime_s": (datetime.now(timezone.utc) - self.startup_time).total_seconds(),
            "server_time": datetime.now(timezone.utc).isoformat(),
        }

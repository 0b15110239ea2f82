"""
MODULE OVERVIEW:
The push channel endpoint of the sandbox backend.

WHAT IS HAPPENING HERE:
Clients connect to /ws?userId=..&userType=customer|provider&token=.. and exchange
{type, data} envelopes. The server answers `request_status` with a `status_update`,
lets a provider take a job with `accept_job`, and logs presence and location traffic.
Frames that are not valid envelopes are skipped; the connection stays up.
"""
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status
from loguru import logger
from pydantic import ValidationError

from roadside_sync.server.booking_store import BookingStore
from roadside_sync.shared.models import Envelope, Role
from roadside_sync.shared.route_utils import log_request

router = APIRouter()


async def handle_envelope(store: BookingStore, key: str, role: Role, envelope: Envelope) -> Envelope | None:
    data = envelope.data if isinstance(envelope.data, dict) else {}
    booking = store.get(str(data.get("bookingId", "")))

    if envelope.type == "request_status":
        if booking is None:
            return Envelope(type="error", data={"message": "Unknown booking", "bookingId": data.get("bookingId")})
        return Envelope(type="status_update", data=booking.status_document())

    if envelope.type == "accept_job" and role == Role.PROVIDER:
        if booking is None:
            return Envelope(type="error", data={"message": "Unknown booking", "bookingId": data.get("bookingId")})
        provider = {"providerId": key.split(":", 1)[1], "providerName": data.get("providerName", "Provider")}
        accepted = await store.assign(booking, provider)
        return Envelope(type="job_updated", data={**booking.status_document(), "accepted": accepted})

    if envelope.type in ("provider_status", "location_update", "subscribe"):
        await log_request(envelope.type, channel=key, data=data)
        return None

    logger.debug(f"channel={key} event=unhandled type={envelope.type}")
    return None


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    userId: str | None = Query(None),
    userType: str | None = Query(None),
    token: str | None = Query(None),
):
    if not userId or not token or userType not in (Role.CUSTOMER.value, Role.PROVIDER.value):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    store: BookingStore = websocket.app.state.store
    role = Role(userType)
    key = await store.connect_ws(websocket, userId, role, token)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            text_data = message.get("text")
            if text_data is None:
                logger.warning(f"channel={key} event=frame_dropped reason=binary")
                continue
            try:
                envelope = Envelope.model_validate_json(text_data)
            except ValidationError:
                logger.warning(f"channel={key} event=frame_dropped")
                continue
            reply = await handle_envelope(store, key, role, envelope)
            if reply is not None:
                await websocket.send_text(reply.model_dump_json())
    except WebSocketDisconnect:
        pass
    finally:
        store.disconnect_ws(key)

"""
MODULE OVERVIEW:
Booking submission and status endpoints of the sandbox backend.

WHAT IS HAPPENING HERE:
Both endpoints require `Authorization: Bearer <token>`. Failures answer with a
non-2xx status and a `{"message": ...}` body, which is what the client's BookingApi
surfaces as a server-reported rejection.
"""
from typing import Any

from fastapi import APIRouter, Body, Header, Request
from fastapi.responses import JSONResponse

from roadside_sync.server.booking_store import BookingStore
from roadside_sync.shared.route_utils import bearer_token, log_request

router = APIRouter()


def _store(request: Request) -> BookingStore:
    return request.app.state.store


@router.post("/api/jobs/customer/finding-provider")
async def submit_booking(
    request: Request,
    booking_request: dict[str, Any] = Body(...),
    authorization: str | None = Header(None),
):
    token = bearer_token(authorization)
    if token is None:
        return JSONResponse(status_code=401, content={"message": "Authentication token not found. Please sign in again."})

    store = _store(request)
    if store.reject_submissions:
        return JSONResponse(status_code=422, content={"message": "No service available for this request"})

    booking = await store.create(booking_request, token)
    await log_request("submit", booking_id=booking.booking_id)
    return {"bookingId": booking.booking_id, "status": booking.status.value}


@router.get("/api/jobs/{booking_id}/status")
async def booking_status(booking_id: str, request: Request, authorization: str | None = Header(None)):
    token = bearer_token(authorization)
    if token is None:
        return JSONResponse(status_code=401, content={"message": "Authentication token not found"})

    store = _store(request)
    booking = store.get(booking_id)
    if booking is None or booking.owner_token != token:
        return JSONResponse(status_code=404, content={"message": f"Booking {booking_id} not found"})
    await store.poll(booking_id)
    await log_request("status", booking_id=booking_id, status=booking.status.value, polls=booking.polls)
    return booking.status_document()


@router.post("/api/jobs/{booking_id}/cancel")
async def cancel_booking(booking_id: str, request: Request, authorization: str | None = Header(None)):
    token = bearer_token(authorization)
    store = _store(request)
    booking = store.get(booking_id)
    if token is None or booking is None or booking.owner_token != token:
        return JSONResponse(status_code=404, content={"message": f"Booking {booking_id} not found"})
    await store.cancel(booking)
    return booking.status_document()

"""
MODULE OVERVIEW:
The request/response side of the backend: booking submission and status fetch.

WHAT IS HAPPENING HERE:
We use HTTPX. Every network-level failure, non-2xx status fetch or undecodable body
is turned into TransportError so the poller can treat it as transient. A non-2xx
submission is a different thing: the server said no, and its message travels up in
BookingRejectedError.
"""
from json import JSONDecodeError
from typing import Any, Mapping

import httpx
from loguru import logger
from pydantic import ValidationError

from roadside_sync.client.credentials import CredentialSource
from roadside_sync.shared.errors import BookingRejectedError, ConfigurationError, TransportError
from roadside_sync.shared.models import SubmissionResponse

SUBMIT_PATH = "/api/jobs/customer/finding-provider"
STATUS_PATH = "/api/jobs/{booking_id}/status"


class BookingApi:
    def __init__(
        self,
        api_base_url: str,
        credential_source: CredentialSource,
        timeout_s: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_base_url = api_base_url.rstrip('/')
        self.credential_source = credential_source
        self.client = client or httpx.AsyncClient(base_url=self.api_base_url, timeout=timeout_s)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _auth_headers(self) -> dict[str, str]:
        credentials = await self.credential_source.fetch()
        if not credentials.token:
            raise ConfigurationError("Authentication token not found")
        return {"Authorization": f"Bearer {credentials.token}"}

    async def submit(self, booking_request: Mapping[str, Any]) -> str:
        """POST the booking. Returns the server-assigned booking id."""
        headers = await self._auth_headers()
        try:
            response = await self.client.post(SUBMIT_PATH, json=dict(booking_request), headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(f"Booking submission failed: {e}") from e
        try:
            body = response.json()
        except JSONDecodeError:
            body = None

        if response.is_error:
            message = _server_message(body) or "Failed to create booking"
            logger.warning(f"api=booking event=rejected status={response.status_code} message='{message}'")
            raise BookingRejectedError(message, response.status_code)

        try:
            booking_id = SubmissionResponse.model_validate(body).booking_id
        except ValidationError as e:
            raise TransportError(f"Booking submission returned no bookingId: {e.error_count()} errors") from e
        logger.info(f"api=booking event=submitted booking_id={booking_id}")
        return booking_id

    async def fetch_status(self, booking_id: str) -> dict[str, Any]:
        """GET the current status document for a booking. The caller interprets `status`."""
        headers = await self._auth_headers()
        try:
            response = await self.client.get(STATUS_PATH.format(booking_id=booking_id), headers=headers)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, JSONDecodeError) as e:
            raise TransportError(f"Status fetch failed for {booking_id}: {e}") from e
        if not isinstance(body, dict):
            return {"status": None, "body": body}
        return body


def _server_message(body: Any) -> str | None:
    if isinstance(body, dict):
        return body.get("message") or body.get("error")
    return None

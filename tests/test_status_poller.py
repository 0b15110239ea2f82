from __future__ import annotations

import asyncio

import pytest

from fakes import FakeBookingApi, RecordingSleep, wait_until
from roadside_sync.client.lifecycle import AppLifecycle
from roadside_sync.client.status_poller import PollingSession
from roadside_sync.shared.errors import BookingRejectedError, SessionTerminatedError, TransportError
from roadside_sync.shared.models import BookingStatus, Envelope, LifecycleState, PollState

REQUEST = {"serviceType": "towing", "location": {"lat": 12.97, "lng": 77.59}}


def fast_session(api: FakeBookingApi, **kwargs) -> tuple[PollingSession, RecordingSleep]:
    sleep = RecordingSleep()
    return PollingSession(api, sleep=sleep, **kwargs), sleep


def slow_session(api: FakeBookingApi, **kwargs) -> PollingSession:
    # The timer never fires on its own during a test.
    return PollingSession(api, interval_ms=600_000, **kwargs)


@pytest.mark.asyncio
async def test_found_on_second_poll() -> None:
    api = FakeBookingApi(statuses=["searching", "provider_assigned"])
    session, sleep = fast_session(api, interval_ms=5000)
    states: list[PollState] = []
    session.on_state_change(lambda s: states.append(s.state))

    assert await session.start(REQUEST) == PollState.SEARCHING
    assert await session.wait() == PollState.FOUND

    assert api.status_calls == 2
    assert sleep.delays == [5.0, 5.0]
    assert states == [PollState.CONNECTING, PollState.SEARCHING, PollState.FOUND]
    assert session.result.booking_id == "B1"
    assert session.result.status == BookingStatus.PROVIDER_ASSIGNED
    assert session.result.payload["bookingId"] == "B1"
    assert not session.timer_pending


@pytest.mark.asyncio
async def test_accepted_alias_counts_as_found() -> None:
    api = FakeBookingApi(statuses=[{"status": "accepted", "providerName": "Sandbox Towing"}])
    session, _ = fast_session(api)

    await session.start(REQUEST)
    assert await session.wait() == PollState.FOUND
    assert session.result.payload == {"status": "accepted", "providerName": "Sandbox Towing", "bookingId": "B1"}


@pytest.mark.asyncio
async def test_budget_exhaustion_ends_in_no_providers() -> None:
    api = FakeBookingApi(statuses=["pending"] * 60)
    session, _ = fast_session(api, max_attempts=60)

    await session.start(REQUEST)
    assert await session.wait() == PollState.NO_PROVIDERS

    assert api.status_calls == 60
    assert session.attempt_count == 60
    assert session.reason == "timeout"
    assert session.result.status == BookingStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.parametrize("word", ["cancelled", "expired"])
async def test_failure_status_ends_search(word: str) -> None:
    api = FakeBookingApi(statuses=["searching", word])
    session, _ = fast_session(api)

    await session.start(REQUEST)
    assert await session.wait() == PollState.NO_PROVIDERS
    assert session.reason == word
    assert session.attempt_count == 1


@pytest.mark.asyncio
async def test_transport_errors_do_not_spend_attempts() -> None:
    api = FakeBookingApi(statuses=[TransportError("timeout"), TransportError("reset"), "searching", "searching"])
    session, _ = fast_session(api, max_attempts=2)

    await session.start(REQUEST)
    assert await session.wait() == PollState.NO_PROVIDERS
    assert api.status_calls == 4
    assert session.polls_issued == 4
    assert session.attempt_count == 2


@pytest.mark.asyncio
async def test_unrecognized_statuses_spend_attempts_but_keep_polling() -> None:
    api = FakeBookingApi(statuses=["en_route", {"bookingId": "B1"}, "provider_assigned"])
    session, _ = fast_session(api)

    await session.start(REQUEST)
    assert await session.wait() == PollState.FOUND
    assert session.attempt_count == 2


@pytest.mark.asyncio
async def test_unknown_status_cap() -> None:
    api = FakeBookingApi(statuses=["en_route", "searching", "en_route", "en_route", "en_route"])
    session, _ = fast_session(api, max_unknown_statuses=3)

    await session.start(REQUEST)
    assert await session.wait() == PollState.NO_PROVIDERS
    assert session.reason == "unknown_status"
    assert api.status_calls == 5


@pytest.mark.asyncio
async def test_submit_rejection_is_error_then_retry_succeeds() -> None:
    api = FakeBookingApi(
        statuses=["provider_assigned"],
        submit_error=BookingRejectedError("No providers in your area", 422),
    )
    session, _ = fast_session(api)

    assert await session.start(REQUEST) == PollState.ERROR
    assert session.error == "No providers in your area"
    assert await session.wait() == PollState.ERROR
    assert api.status_calls == 0
    assert not session.timer_pending

    assert await session.retry() == PollState.SEARCHING
    assert await session.wait() == PollState.FOUND
    assert len(api.submitted) == 2


@pytest.mark.asyncio
async def test_submit_transport_failure_is_error() -> None:
    api = FakeBookingApi(submit_error=TransportError("connection refused"))
    session, _ = fast_session(api)

    assert await session.start(REQUEST) == PollState.ERROR
    assert "connection refused" in session.error


@pytest.mark.asyncio
async def test_terminal_session_refuses_to_run_again() -> None:
    api = FakeBookingApi(statuses=["provider_assigned"])
    session, _ = fast_session(api)
    await session.start(REQUEST)
    await session.wait()

    with pytest.raises(SessionTerminatedError):
        await session.start(REQUEST)
    with pytest.raises(SessionTerminatedError):
        await session.retry()
    with pytest.raises(SessionTerminatedError):
        await session.poll_now()
    assert len(api.submitted) == 1


@pytest.mark.asyncio
async def test_retry_only_from_error() -> None:
    session = slow_session(FakeBookingApi())
    await session.start(REQUEST)
    with pytest.raises(SessionTerminatedError):
        await session.retry()
    with pytest.raises(SessionTerminatedError):
        await session.start(REQUEST)
    await session.close()


@pytest.mark.asyncio
async def test_close_stops_scheduled_polls() -> None:
    api = FakeBookingApi()
    session = slow_session(api)
    await session.start(REQUEST)
    assert session.timer_pending

    await session.close()
    assert not session.timer_pending
    assert await session.wait() == PollState.SEARCHING
    with pytest.raises(SessionTerminatedError):
        await session.poll_now()


@pytest.mark.asyncio
async def test_poll_now_counts_like_a_scheduled_poll() -> None:
    api = FakeBookingApi(statuses=["searching"])
    session = slow_session(api)
    await session.start(REQUEST)

    await session.poll_now()
    assert api.status_calls == 1
    assert session.attempt_count == 1
    assert session.timer_pending
    await session.close()


# ==========================
# LIFECYCLE
# ==========================
@pytest.mark.asyncio
async def test_background_cancels_timer_and_foreground_polls_once() -> None:
    api = FakeBookingApi(statuses=["searching", "searching"])
    lifecycle = AppLifecycle()
    session = slow_session(api, lifecycle=lifecycle)
    await session.start(REQUEST)
    assert session.timer_pending

    await lifecycle.transition(LifecycleState.BACKGROUND)
    assert not session.timer_pending
    assert api.status_calls == 0

    await lifecycle.transition(LifecycleState.FOREGROUND)
    assert api.status_calls == 1
    assert session.timer_pending
    await session.close()


@pytest.mark.asyncio
async def test_start_in_background_waits_for_foreground() -> None:
    api = FakeBookingApi(statuses=["provider_assigned"])
    lifecycle = AppLifecycle(LifecycleState.BACKGROUND)
    session = slow_session(api, lifecycle=lifecycle)

    await session.start(REQUEST)
    assert not session.timer_pending

    await lifecycle.transition(LifecycleState.FOREGROUND)
    assert session.state == PollState.FOUND


@pytest.mark.asyncio
async def test_resume_while_poll_in_flight_does_not_start_second_chain() -> None:
    api = FakeBookingApi(statuses=["searching", "searching"])
    api.gate = asyncio.Event()
    lifecycle = AppLifecycle()
    session = slow_session(api, lifecycle=lifecycle)
    await session.start(REQUEST)

    in_flight = asyncio.create_task(session.poll_now())
    await wait_until(lambda: api.status_calls == 1)

    await lifecycle.transition(LifecycleState.BACKGROUND)
    await lifecycle.transition(LifecycleState.FOREGROUND)
    assert api.status_calls == 1

    api.gate.set()
    await in_flight
    assert api.status_calls == 1
    assert session.timer_pending
    await session.close()


@pytest.mark.asyncio
async def test_background_during_in_flight_poll_stays_suspended() -> None:
    api = FakeBookingApi(statuses=["searching"])
    api.gate = asyncio.Event()
    lifecycle = AppLifecycle()
    session = slow_session(api, lifecycle=lifecycle)
    await session.start(REQUEST)

    in_flight = asyncio.create_task(session.poll_now())
    await wait_until(lambda: api.status_calls == 1)
    await lifecycle.transition(LifecycleState.BACKGROUND)

    api.gate.set()
    await in_flight
    assert not session.timer_pending
    await session.close()


@pytest.mark.asyncio
async def test_terminal_session_ignores_lifecycle() -> None:
    api = FakeBookingApi(statuses=["provider_assigned"])
    lifecycle = AppLifecycle()
    session, _ = fast_session(api, lifecycle=lifecycle)
    await session.start(REQUEST)
    await session.wait()

    await lifecycle.transition(LifecycleState.BACKGROUND)
    await lifecycle.transition(LifecycleState.FOREGROUND)
    assert api.status_calls == 1


# ==========================
# PUSH ACCELERATION
# ==========================
@pytest.mark.asyncio
async def test_push_resolves_before_next_poll() -> None:
    api = FakeBookingApi()
    session = slow_session(api)
    await session.start(REQUEST)

    handled = await session.apply_push(
        Envelope(type="job_accepted", data={"bookingId": "B1", "providerName": "Sandbox Towing"})
    )
    assert handled
    assert session.state == PollState.FOUND
    assert session.result.source == "push"
    assert session.result.payload["providerName"] == "Sandbox Towing"
    assert not session.timer_pending
    assert api.status_calls == 0


@pytest.mark.asyncio
async def test_push_for_another_booking_is_ignored() -> None:
    session = slow_session(FakeBookingApi())
    await session.start(REQUEST)

    assert not await session.apply_push(Envelope(type="job_accepted", data={"bookingId": "OTHER"}))
    assert session.state == PollState.SEARCHING
    await session.close()


@pytest.mark.asyncio
async def test_cancel_push_ends_search() -> None:
    session = slow_session(FakeBookingApi())
    await session.start(REQUEST)

    assert await session.apply_push(Envelope(type="booking_cancelled", data={"jobId": "B1"}))
    assert session.state == PollState.NO_PROVIDERS
    assert session.result.status == BookingStatus.CANCELLED


@pytest.mark.asyncio
async def test_non_terminal_push_does_not_spend_attempts() -> None:
    session = slow_session(FakeBookingApi())
    await session.start(REQUEST)

    assert await session.apply_push(Envelope(type="status_update", data={"bookingId": "B1", "status": "searching"}))
    assert session.attempt_count == 0
    assert session.last_status == BookingStatus.SEARCHING
    assert session.state == PollState.SEARCHING
    await session.close()


@pytest.mark.asyncio
async def test_first_terminal_result_wins() -> None:
    session = slow_session(FakeBookingApi())
    await session.start(REQUEST)

    await session.apply_push(Envelope(type="job_accepted", data={"bookingId": "B1"}))
    assert not await session.apply_push(Envelope(type="booking_cancelled", data={"bookingId": "B1"}))
    assert session.state == PollState.FOUND


@pytest.mark.asyncio
@pytest.mark.parametrize("late_status, max_attempts", [("cancelled", 60), ("pending", 1)])
async def test_poll_answer_arriving_after_push_is_discarded(late_status: str, max_attempts: int) -> None:
    api = FakeBookingApi(statuses=[late_status])
    api.gate = asyncio.Event()
    session = slow_session(api, max_attempts=max_attempts)
    states: list[PollState] = []
    session.on_state_change(lambda s: states.append(s.state))
    await session.start(REQUEST)

    in_flight = asyncio.create_task(session.poll_now())
    await wait_until(lambda: api.status_calls == 1)
    await session.apply_push(Envelope(type="job_accepted", data={"bookingId": "B1"}))
    assert session.state == PollState.FOUND

    api.gate.set()
    await in_flight

    assert states == [PollState.CONNECTING, PollState.SEARCHING, PollState.FOUND]
    assert session.reason == "provider_assigned"
    assert session.result.source == "push"
    assert session.attempt_count == 0
    assert not session.timer_pending


@pytest.mark.asyncio
async def test_close_during_submit_leaves_no_lifecycle_listener() -> None:
    api = FakeBookingApi()
    api.submit_gate = asyncio.Event()
    lifecycle = AppLifecycle()
    session = slow_session(api, lifecycle=lifecycle)

    starting = asyncio.create_task(session.start(REQUEST))
    await wait_until(lambda: len(api.submitted) == 1)
    await session.close()
    api.submit_gate.set()
    await starting

    assert session.state == PollState.CONNECTING
    assert not session.timer_pending
    await lifecycle.transition(LifecycleState.BACKGROUND)
    await lifecycle.transition(LifecycleState.FOREGROUND)
    assert api.status_calls == 0

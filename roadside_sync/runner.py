"""
CLI entrypoint for roadside_sync.
"""
import asyncio
import json
import sys
from pathlib import Path

import typer
from loguru import logger

from roadside_sync.client.credentials import SettingsCredentialSource
from roadside_sync.client.session import RoleSession
from roadside_sync.client.visualizer import Visualizer
from roadside_sync.shared.config import settings
from roadside_sync.shared.errors import ConfigurationError, RoadsideSyncError
from roadside_sync.shared.models import PollState, Role

app = typer.Typer(help="Roadside realtime sync CLI")


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


@app.command()
def server():
    """Start the sandbox backend using Uvicorn."""
    import uvicorn
    typer.echo(f"Starting sandbox backend on port {settings.PORT}...")
    uvicorn.run(
        "roadside_sync.server.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


@app.command()
def listen(
    role: Role = typer.Option(Role.CUSTOMER, help="Which side of the marketplace to connect as"),
    duration: float = typer.Option(60.0, help="Seconds to stay connected"),
):
    """Open the push channel and show inbound envelopes live."""
    configure_logging(settings.LOG_LEVEL)
    try:
        asyncio.run(_listen(role, duration))
    except KeyboardInterrupt:
        pass


async def _listen(role: Role, duration: float) -> None:
    session = RoleSession.from_settings(role, SettingsCredentialSource(role, settings))
    visualizer = Visualizer(session)
    visualizer.attach()
    try:
        await session.start()
        if role == Role.PROVIDER:
            await session.set_online(True)
        await visualizer.run(asyncio.create_task(asyncio.sleep(duration)))
    except ConfigurationError as e:
        typer.echo(f"Cannot connect: {e}. Set USER_ID and USER_TOKEN.")
        raise typer.Exit(1)
    finally:
        await session.close()


@app.command()
def track(
    request: Path = typer.Option(..., exists=True, readable=True, help="JSON file holding the booking request"),
    duration: float = typer.Option(300.0, help="Give up watching after this many seconds"),
):
    """Submit a booking and follow it until a provider is found or the search ends."""
    configure_logging(settings.LOG_LEVEL)
    booking_request = json.loads(request.read_text(encoding="utf-8"))
    try:
        state = asyncio.run(_track(booking_request, duration))
    except KeyboardInterrupt:
        return
    if state != PollState.FOUND:
        raise typer.Exit(1)


async def _track(booking_request: dict, duration: float) -> PollState:
    session = RoleSession.from_settings(Role.CUSTOMER, SettingsCredentialSource(Role.CUSTOMER, settings))
    visualizer = Visualizer(session)
    visualizer.attach()
    try:
        await session.start()
        tracker = await session.track_booking(booking_request)
        visualizer.watch(tracker)
        work = asyncio.create_task(asyncio.wait_for(tracker.wait(), timeout=duration))
        await visualizer.run(work)
        if work.exception() is not None:
            typer.echo(f"Stopped watching after {duration:.0f}s; booking {tracker.booking_id} still {tracker.state.value}")
        elif tracker.state == PollState.ERROR:
            typer.echo(f"Booking failed: {tracker.error}")
        elif tracker.result is not None:
            typer.echo(json.dumps(tracker.result.model_dump(mode="json"), indent=2))
        return tracker.state
    except ConfigurationError as e:
        typer.echo(f"Cannot connect: {e}. Set USER_ID and USER_TOKEN.")
        raise typer.Exit(1)
    finally:
        await session.close()


@app.command()
def status(booking_id: str):
    """Fetch the current status of one booking."""
    configure_logging(settings.LOG_LEVEL)
    typer.echo(json.dumps(asyncio.run(_status(booking_id)), indent=2))


async def _status(booking_id: str) -> dict:
    session = RoleSession.from_settings(Role.CUSTOMER, SettingsCredentialSource(Role.CUSTOMER, settings))
    try:
        return await session.api.fetch_status(booking_id)
    except RoadsideSyncError as e:
        typer.echo(f"Status fetch failed: {e}")
        raise typer.Exit(1)
    finally:
        await session.api.aclose()


if __name__ == "__main__":
    app()

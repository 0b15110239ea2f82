"""
MODULE OVERVIEW:
The Rich terminal dashboard for a RoleSession.

WHAT IS HAPPENING HERE:
We subscribe to the wildcard key, the connectivity notifier and (when tracking) the
PollingSession, and redraw a Layout four times a second until the work finishes.
"""
import asyncio
from collections import deque
from datetime import datetime

from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from roadside_sync.client.session import RoleSession
from roadside_sync.client.status_poller import PollingSession
from roadside_sync.shared.events import WILDCARD
from roadside_sync.shared.models import Envelope, PollState

STATE_COLORS = {
    PollState.CONNECTING: "yellow",
    PollState.SEARCHING: "yellow",
    PollState.FOUND: "green",
    PollState.NO_PROVIDERS: "red",
    PollState.ERROR: "red",
}


class Visualizer:
    def __init__(self, session: RoleSession):
        self.session = session
        self.tracker: PollingSession | None = None
        self.recent_envelopes = deque(maxlen=10)
        self.timeline = deque(maxlen=6)
        self.online = False

    def attach(self) -> None:
        self.session.connection.on(WILDCARD, self.on_envelope)
        self.session.connection.notifier.on_state_change(self.on_connection_change)
        self.session.connection.notifier.on_exhausted(self.on_exhausted)

    def watch(self, tracker: PollingSession) -> None:
        self.tracker = tracker
        tracker.on_state_change(self.on_poll_state)
        self.on_poll_state(tracker)

    def _stamp(self, line: str) -> None:
        ts = datetime.now().strftime("%H:%M:%S")
        self.timeline.appendleft(f"[{ts}] {line}")

    def on_envelope(self, envelope: Envelope) -> None:
        ts = datetime.now().strftime("%H:%M:%S")
        data = str(envelope.data)
        self.recent_envelopes.appendleft((ts, envelope.type, data[:60] + "..." if len(data) > 60 else data))

    def on_connection_change(self, connected: bool) -> None:
        self.online = connected
        self._stamp("Channel: ONLINE" if connected else "Channel: OFFLINE")

    def on_exhausted(self) -> None:
        self._stamp("Channel: reconnect attempts exhausted")

    def on_poll_state(self, tracker: PollingSession) -> None:
        self._stamp(f"Booking: {tracker.state.value}")

    def generate_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(Layout(name="header", size=3), Layout(name="main"))
        layout["main"].split_row(Layout(name="left", ratio=2), Layout(name="right", ratio=1))
        layout["right"].split_column(Layout(name="stats"), Layout(name="booking"), Layout(name="timeline"))

        connection = self.session.connection
        color = "green" if self.online else "red"
        layout["header"].update(Panel(
            f"[{color} bold]Role: {self.session.role.value} | Channel: {connection.state.value}[/]", style=color
        ))

        table = Table(title="Inbound Envelopes", expand=True)
        table.add_column("Time", justify="left", style="cyan", no_wrap=True)
        table.add_column("Type", style="magenta")
        table.add_column("Data", style="green")
        for row in self.recent_envelopes:
            table.add_row(*row)
        layout["left"].update(Panel(table, title="Feed"))

        stats = connection.stats
        layout["stats"].update(Panel(
            f"Frames: {stats['frames_received']} (dropped {stats['frames_dropped']})\n"
            f"Sent: {stats['messages_sent']}  Queued now: {len(connection.queue)}\n"
            f"Reconnects: {stats['reconnect_count']}",
            title="Channel Stats",
        ))

        if self.tracker is None:
            booking_text = "Not tracking a booking"
            booking_color = "white"
        else:
            t = self.tracker
            booking_color = STATE_COLORS[t.state]
            booking_text = (
                f"[{booking_color}]{t.state.value}[/]\n"
                f"Booking: {t.booking_id or '-'}\n"
                f"Attempts: {t.attempt_count}/{t.max_attempts}  Polls: {t.polls_issued}\n"
                f"Last status: {t.last_status.value if t.last_status else '-'}"
            )
            if t.error:
                booking_text += f"\nError: {t.error}"
        layout["booking"].update(Panel(booking_text, title="Booking", border_style=booking_color))
        layout["timeline"].update(Panel("\n".join(self.timeline), title="Timeline"))
        return layout

    async def run(self, work: asyncio.Task) -> None:
        with Live(self.generate_layout(), refresh_per_second=4) as live:
            while not work.done():
                live.update(self.generate_layout())
                await asyncio.sleep(0.25)
            live.update(self.generate_layout())

"""
MODULE OVERVIEW:
The Rich Terminal Dashboard for one session.

WHAT IS HAPPENING HERE:
We subscribe to the orchestrator's emitter with the wildcard listener, so every
event that reaches consumers also lands in the feed. The Layout is rebuilt on a
timer from the orchestrator's public state (status, mode, reconnects, stats).
"""

from rich.live import Live
from rich.layout import Layout
from rich.panel import Panel
from rich.table import Table
from collections import deque
from datetime import datetime
import asyncio

from vex_client.client.orchestrator import SessionOrchestrator
from vex_client.shared.events import ANY_EVENT

MODE_INFO = {
    "push": "Push: events arrive over the subscribed WebSocket. No polling, no health check.",
    "poll": "Poll: status and events are fetched on an interval, with a periodic health check.",
    "webhook": "Webhook: the backend POSTs events to your app's receiver.",
}

STATUS_COLORS = {"open": "green", "qrcode": "yellow", "connecting": "yellow", "close": "red"}


class Visualizer:
    def __init__(self, client: SessionOrchestrator):
        self.client = client
        self.recent_events = deque(maxlen=10)
        self.timeline = deque(maxlen=6)
        self.last_qr: str | None = None

    def on_event(self, name: str, data=None):
        ts = datetime.now().strftime("%H:%M:%S")
        if name == "connection.update" and isinstance(data, dict):
            if data.get("qrCode"):
                self.last_qr = data["qrCode"]
            label = data.get("connection") or ("qrcode" if data.get("qrCode") else "update")
            self.timeline.appendleft(f"[{ts}] {label}")
        payload_str = str(data)[:40] + "..." if len(str(data)) > 40 else str(data)
        self.recent_events.appendleft((ts, name, payload_str))

    def generate_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="main")
        )
        layout["main"].split_row(
            Layout(name="left", ratio=2),
            Layout(name="right", ratio=1)
        )
        layout["right"].split_column(
            Layout(name="stats"),
            Layout(name="timeline"),
            Layout(name="info")
        )

        status = self.client.connection_status
        color = STATUS_COLORS.get(status, "red")
        layout["header"].update(Panel(
            f"[{color} bold]Session: {self.client.session_id or '(pending)'} | "
            f"Status: {status} | Mode: {self.client.mode or '-'}[/]",
            style=color,
        ))

        table = Table(title="Live Event Feed", expand=True)
        table.add_column("Time", justify="left", style="cyan", no_wrap=True)
        table.add_column("Event", style="magenta")
        table.add_column("Payload", style="green")
        for e in self.recent_events:
            table.add_row(*e)
        layout["left"].update(Panel(table, title="Feed"))

        stats = self.client.stats
        stats_text = (
            f"Events Received: {stats['events_received']}\n"
            f"Reconnects: {stats['reconnect_count']}\n"
            f"Poll Cycles: {stats['poll_cycles']}\n"
            f"Server Online: {self.client.is_server_online}\n"
            f"Socket Connected: {self.client.is_socket_connected}"
        )
        layout["stats"].update(Panel(stats_text, title="Connection Stats"))

        layout["timeline"].update(Panel("\n".join(self.timeline), title="Timeline"))

        info = MODE_INFO.get(self.client.mode or "", "Initializing...")
        if self.last_qr and status == "qrcode":
            info += f"\n\nQR: {self.last_qr[:60]}"
        layout["info"].update(Panel(info, title="Transport"))

        return layout

    async def run(self, duration_s: float):
        self.client.ev.on(ANY_EVENT, self.on_event)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration_s

        with Live(self.generate_layout(), refresh_per_second=4) as live:
            while loop.time() < deadline and not self.client.is_destroyed:
                live.update(self.generate_layout())
                await asyncio.sleep(0.25)

"""``edgerelay demo`` — run the dispatch core against a simulated controller.

Wires an in-memory ``plc`` connection and an in-memory ``broker``
connection to a handful of handlers, pushes synthetic values through them,
emits an on-demand event, and prints what each handler received.
"""

from __future__ import annotations

import asyncio
import logging
import time

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from edgerelay.config import configure_logging
from edgerelay.core.discovery import event, pre_read, subscribe
from edgerelay.core.handlers import EventHandler, MessageHandler
from edgerelay.events.results import ReadResults
from edgerelay.models.datatypes import Timer
from edgerelay.models.messages import MessageContext
from edgerelay.models.registrations import SubscriptionMode
from edgerelay.models.values import Quality, TagValue
from edgerelay.relay import EdgeRelay, EdgeRelayBuilder
from edgerelay.transport.memory import InMemoryConnection, InMemoryPublisher

console = Console()


class DemoJournal:
    """Collects what the demo handlers saw; injected through the factory."""

    def __init__(self) -> None:
        self.rows: list[tuple[str, str, str, str]] = []

    def record(self, handler: str, key: str, value: object, note: str = "") -> None:
        self.rows.append((handler, key, repr(value), note))


# ---------------------------------------------------------------------------
# Demo handlers
# ---------------------------------------------------------------------------


@subscribe("plc", "Line4.Temperature", deadband=0.5)
class TemperatureHandler(MessageHandler):
    payload_type = float

    def __init__(self, journal: DemoJournal, plc: InMemoryPublisher) -> None:
        # both connections expose a publisher; the parameter name selects one
        self._journal = journal
        self._publisher = plc

    async def handle(self, message: TagValue, context: MessageContext) -> None:
        note = "initial" if message.is_initial_read else f"was {message.previous_value}"
        self._journal.record("TemperatureHandler", message.key, message.value, note)
        if message.value is not None and message.value > 80.0:
            await self._publisher.publish("alarms/line4/temperature", message.value)


@subscribe("plc", "Line4.CycleTimer", on_change_only=False)
class CycleTimerHandler(MessageHandler):
    payload_type = Timer

    def __init__(self, journal: DemoJournal) -> None:
        self._journal = journal

    def handle(self, message: TagValue, context: MessageContext) -> None:
        timer = message.value
        self._journal.record("CycleTimerHandler", message.key, timer, "done" if timer.dn else "running")


@subscribe("broker", "alarms/#", mode=SubscriptionMode.UNSOLICITED)
class AlarmHandler(MessageHandler):
    payload_type = float

    def __init__(self, journal: DemoJournal, log: logging.Logger) -> None:
        self._journal = journal
        self._log = log

    def handle(self, message: TagValue, context: MessageContext) -> None:
        self._log.warning("Alarm on %s: %s", message.key, message.value)
        self._journal.record("AlarmHandler", message.key, message.value, context.connection_name)


@event("shift.report", priority=10)
@pre_read("plc", "Line4.Temperature", alias="temperature", value_type=float)
@pre_read("plc", "Line4.PartCount", alias="parts", value_type="DINT")
class ShiftReportHandler(EventHandler):
    event_data_type = str
    result_type = dict

    def __init__(self, relay: EdgeRelay) -> None:
        self._relay = relay

    def handle(self, data: str, reads: ReadResults) -> dict:
        return {
            "shift": data,
            "temperature": reads.get("temperature"),
            "parts": reads.get_required("parts"),
            "connections": [c.connection_name for c in self._relay.connections],
        }


@event("shift.report", priority=1, fire_and_forget=True)
class ShiftArchiveHandler(EventHandler):
    def __init__(self, journal: DemoJournal) -> None:
        self._journal = journal

    async def handle(self, data: object, reads: ReadResults) -> None:
        await asyncio.sleep(0.01)
        self._journal.record("ShiftArchiveHandler", "shift.report", data, "archived")


DEMO_HANDLERS = (
    TemperatureHandler,
    CycleTimerHandler,
    AlarmHandler,
    ShiftReportHandler,
    ShiftArchiveHandler,
)


# ---------------------------------------------------------------------------
# Demo run
# ---------------------------------------------------------------------------


async def run_demo(journal: DemoJournal, delay: float = 0.0) -> dict:
    """Run the scripted scenario and return the shift report."""
    plc = InMemoryConnection("plc", initial_values={"Line4.PartCount": "1250"})
    broker = InMemoryConnection("broker")

    def factory(requested: object) -> object:
        return journal if requested is DemoJournal else None

    relay = (
        EdgeRelayBuilder()
        .with_factory(factory)
        .add_connection(plc)
        .add_connection(broker)
        .add_handlers(*DEMO_HANDLERS)
        .build()
    )

    # alarms are published on the plc connection's publisher and routed to the broker
    async def forward_alarm(message: TagValue, context: MessageContext) -> None:
        broker.set_value(message.key, message.value)

    async with relay:
        await relay.subscribe("plc", "alarms/#", forward_alarm, on_change_only=False)
        for value in (72.0, 72.2, 73.1, 73.1, 85.4):
            plc.set_value("Line4.Temperature", value)
            await relay.drain()
            if delay:
                await asyncio.sleep(delay)
        plc.set_value("Line4.Temperature", None, Quality.BAD)
        plc.set_value("Line4.Temperature", 74.0)
        await relay.drain()
        for raw in ([5000, 1200, True, True, False], [5000, 5000, True, False, True]):
            plc.set_value("Line4.CycleTimer", raw)
            await relay.drain()
        report = await relay.emit_one("shift.report", "B")
        await relay.drain()
    return report


def demo_cmd(
    delay: float = typer.Option(
        0.0,
        "--delay",
        "-d",
        help="Delay in seconds between simulated value changes.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show edgerelay log output."),
) -> None:
    """Run a simulated controller/broker session through the dispatch core."""
    configure_logging("DEBUG" if verbose else "WARNING")

    console.print()
    console.print(
        Panel(
            "[bold]edgerelay demo[/bold]\n\n"
            "Simulated controller values flow through change/deadband filtering,\n"
            "typed payload construction and handler activation.",
            border_style="cyan",
            padding=(1, 2),
        )
    )

    journal = DemoJournal()
    started = time.monotonic()
    report = asyncio.run(run_demo(journal, delay))
    elapsed = time.monotonic() - started

    table = Table(title="Handler deliveries")
    table.add_column("Handler", style="cyan")
    table.add_column("Key", style="green")
    table.add_column("Value")
    table.add_column("Note")
    for row in journal.rows:
        table.add_row(*row)
    console.print(table)

    console.print(
        Panel(
            "\n".join(
                [
                    "[bold green]Demo complete[/bold green]",
                    "",
                    f"[bold]Deliveries:[/bold]   {len(journal.rows)}",
                    f"[bold]Shift report:[/bold] {report}",
                    f"[bold]Elapsed:[/bold]      {elapsed:.2f}s",
                ]
            ),
            title="[bold]Summary[/bold]",
            border_style="green",
            padding=(1, 2),
        )
    )

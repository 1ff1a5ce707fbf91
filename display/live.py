"""Rich live display: one panel per policy, updating in real time.

The display layer is fully decoupled from the reporter. It subscribes to an
asyncio.Queue of AssessmentEvents and renders them into a live terminal
layout. Policies are not known up front (they come from the policy-service
consensus), so a panel is created the first time a policy's event arrives.

Usage:
    event_queue = asyncio.Queue()
    display = LiveDisplay()

    with display.make_live() as live:
        run = asyncio.create_task(reporter.run(event_queue))
        consumer = asyncio.create_task(display.consume(event_queue, live))
        summary = await run
        await event_queue.put(None)  # sentinel: tells consume() to stop
        await consumer
"""

import asyncio
from dataclasses import dataclass, field

from rich.columns import Columns
from rich.console import Group
from rich.live import Live
from rich.panel import Panel
from rich.text import Text

from schemas.events import AssessmentEvent, Stage


# ── Per-policy state ──────────────────────────────────────────────────────────

@dataclass
class _PolicyState:
    """Mutable state for one policy's panel."""
    policy_id: str
    status: str = "running"    # running | done | below | rejected | error
    elapsed_ms: float = 0.0
    messages: list[str] = field(default_factory=list)


_STATUS_BY_STAGE = {
    Stage.FETCHING: "running",
    Stage.SCORING: "running",
    Stage.SUBMITTING: "running",
    Stage.BELOW_THRESHOLD: "below",
    Stage.CONFIRMED: "done",
    Stage.REJECTED: "rejected",
    Stage.ERROR: "error",
}

_PREFIX_BY_STAGE = {
    Stage.BELOW_THRESHOLD: "·",
    Stage.CONFIRMED: "✓",
    Stage.REJECTED: "⊘",
    Stage.ERROR: "✗",
}


# ── Display ───────────────────────────────────────────────────────────────────

class LiveDisplay:
    """Manages the Rich live layout and subscribes to the event queue.

    Attributes:
        _states: policy id → _PolicyState, updated as events arrive.
        _order:  Policy ids in first-seen order, which fixes the panel layout.
    """

    COLUMNS = 3
    MAX_LINES = 4

    def __init__(self) -> None:
        self._states: dict[str, _PolicyState] = {}
        self._order: list[str] = []

    def make_live(self) -> Live:
        """Return a Rich Live context manager ready to use with `with`."""
        return Live(self._render(), refresh_per_second=12, transient=False)

    async def consume(self, queue: asyncio.Queue, live: Live) -> None:
        """Read events from the queue and update the display until sentinel."""
        while True:
            event = await queue.get()
            if event is None:
                break
            self._apply(event)
            live.update(self._render())

    # ── Private ───────────────────────────────────────────────────────────────

    def _apply(self, event: AssessmentEvent) -> None:
        state = self._states.get(event.policy_id)
        if state is None:
            state = _PolicyState(policy_id=event.policy_id)
            self._states[event.policy_id] = state
            self._order.append(event.policy_id)

        state.elapsed_ms = event.timestamp_ms
        state.status = _STATUS_BY_STAGE.get(event.stage, state.status)
        prefix = _PREFIX_BY_STAGE.get(event.stage, "→")
        state.messages.append(f"{prefix} {event.message}")
        state.messages = state.messages[-self.MAX_LINES:]

    def _render_panel(self, state: _PolicyState) -> Panel:
        icons = {
            "running":  "[bold yellow]●[/bold yellow]",
            "done":     "[bold green]✓[/bold green]",
            "below":    "[dim]○[/dim]",
            "rejected": "[bold magenta]⊘[/bold magenta]",
            "error":    "[bold red]✗[/bold red]",
        }
        border_styles = {
            "running":  "yellow",
            "done":     "green",
            "below":    "dim",
            "rejected": "magenta",
            "error":    "red",
        }

        elapsed = f"[dim][{state.elapsed_ms / 1000:.2f}s][/dim]"
        lines: list[Text] = [Text.from_markup(f"{elapsed}  {icons.get(state.status, '○')}")]
        for msg in state.messages:
            lines.append(Text(f"  {msg}", style="dim"))

        return Panel(
            Group(*lines),
            title=f"[bold]{state.policy_id}[/bold]",
            border_style=border_styles.get(state.status, "dim"),
            width=42,
        )

    def _render(self) -> Group:
        if not self._order:
            return Group(Text("waiting for active policies...", style="dim"))
        panels = [self._render_panel(self._states[pid]) for pid in self._order]
        rows = [
            Columns(panels[i : i + self.COLUMNS], equal=True)
            for i in range(0, len(panels), self.COLUMNS)
        ]
        return Group(*rows)

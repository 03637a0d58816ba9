"""Rich UI components for the human-facing commands.

Why separate:
- Keeps command logic apart from visual details.
- Integration verbs never use these: their stdout is JSON only.
"""

from __future__ import annotations

from rich.align import Align
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

STATUS_STYLES = {"OK": "green", "FAIL": "red", "MISSING": "yellow", "SKIPPED": "dim"}


def print_banner(console: Console) -> None:
    title = Text("skillquery", style="bold cyan")
    subtitle = Text("PostHog • Sentry • Trigger.dev • Cloud Run • DB", style="dim")
    body = Align.center(Text.assemble(title, "\n", subtitle), vertical="middle")
    console.print(Panel(body, border_style="cyan", padding=(1, 4)))


def build_status_table(title: str = "skillquery doctor") -> Table:
    table = Table(title=title)
    table.add_column("Integration", style="bright_green", no_wrap=True)
    table.add_column("Config", style="white")
    table.add_column("Connectivity", style="white")
    table.add_column("Details", style="dim")
    return table


def styled_status(status: str) -> Text:
    """Colour a status cell (`OK`, `FAIL`, ...)."""

    return Text(status, style=STATUS_STYLES.get(status, "white"))

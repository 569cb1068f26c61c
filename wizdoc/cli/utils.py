"""CLI utilities for WizDoc.

Rich console, tables, progress rows and the per-stage wording shown while a
run is processing.
"""

import os
import random
from contextlib import contextmanager
from typing import List

from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table
from rich.theme import Theme

from wizdoc.core.models import Card, PipelineState

# Create themed console for consistent output
_theme = Theme(
    {
        "info": "cyan",
        "success": "green",
        "warning": "yellow",
        "error": "bold red",
        "debug": "dim white",
    }
)

console = Console(theme=_theme)

STAGE_MESSAGES = {
    PipelineState.RECORDING: "Recording audio...",
    PipelineState.TRANSCRIBING: "Transcribing your recording...",
    PipelineState.ANALYZING: "Analyzing medical content...",
    PipelineState.GENERATING: "Generating WizDoc...",
    PipelineState.REFINING: "Refining content...",
    PipelineState.PUBLISHING: "Publishing card...",
}

TEACHING_TIPS = [
    "WizDoc automatically formats clinical wisdom for easy reference.",
    "Teaching moments captured now can benefit learners for years to come.",
    "The best medical documentation captures both facts and clinical reasoning.",
    "Regular teaching improves both the teacher's and learner's knowledge retention.",
    "Modern medical education blends traditional teaching with digital tools.",
    "Clear documentation is essential for knowledge transfer in medicine.",
    "Sharing clinical pearls helps standardize best practices across an organization.",
]


def message_for_stage(stage: PipelineState) -> str:
    return STAGE_MESSAGES.get(stage, "Processing...")


def random_tip() -> str:
    return random.choice(TEACHING_TIPS)


def format_duration(seconds: float) -> str:
    """Format *seconds* as ``MM:SS``."""
    total = int(seconds)
    return f"{total // 60:02d}:{total % 60:02d}"


def make_device_table(devices: List[dict]) -> Table:
    """Build a Rich Table from the list returned by ``list_input_devices()``.

    Args:
        devices: List of dicts with keys: id, name, channels, rate, is_default

    Returns:
        Configured Rich Table ready to print.
    """
    table = Table(show_header=True, header_style="bold", show_lines=False, expand=False)
    table.add_column("ID", style="cyan", width=4, justify="right")
    table.add_column("Name", min_width=30)
    table.add_column("Ch", justify="right", style="dim", width=4)
    table.add_column("Rate", justify="right", style="dim", width=12)
    table.add_column("", width=9)

    for d in devices:
        default_mark = "[bold green]DEFAULT[/bold green]" if d.get("is_default") else ""
        table.add_row(
            str(d["id"]),
            d["name"],
            str(d.get("channels", "")),
            f"{d.get('rate', '')} Hz",
            default_mark,
        )
    return table


def make_capture_progress() -> Progress:
    """Create a Rich Progress row showing elapsed time and input level.

    Usage::

        with make_capture_progress() as progress:
            task = progress.add_task("rec", total=120, elapsed="00:00", db_text="-- dB")
            capture.on_tick(lambda s: progress.update(task, elapsed=format_duration(s)))

    Returns:
        Configured Rich Progress instance (0–120 dB scale).
    """
    return Progress(
        TextColumn("[bold red]● REC[/bold red] {task.fields[elapsed]}"),
        BarColumn(
            bar_width=40,
            complete_style="green",
            finished_style="green",
            pulse_style="yellow",
        ),
        TextColumn("[bold]{task.fields[db_text]}[/bold]"),
        console=console,
        transient=True,
        expand=False,
    )


def make_card_panel(card: Card) -> Panel:
    """Render a published card."""
    grid = Table.grid(padding=(0, 1))
    grid.add_column(style="dim", justify="right")
    grid.add_column()
    grid.add_row("Evidence:", card.evidence or "[dim]—[/dim]")
    grid.add_row("Wisdom:", card.wisdom or "[dim]—[/dim]")
    grid.add_row("Transcript:", card.transcript or "[dim]—[/dim]")
    grid.add_row("Owner:", card.user_id)
    grid.add_row("Created:", card.created_at.strftime("%Y-%m-%d %H:%M:%S %Z"))
    grid.add_row("Card ID:", f"[dim]{card.id}[/dim]")
    return Panel(grid, title=f"[bold]✨ {card.title or 'Untitled'}[/bold]", border_style="green")


@contextmanager
def suppress_stderr():
    """Context manager to suppress stderr output from libraries like ALSA, JACK.

    Used to hide debug/warning messages from audio subsystems that pollute
    terminal output.
    """
    original_stderr_fd = os.dup(2)
    null_fd = os.open(os.devnull, os.O_WRONLY)
    try:
        os.dup2(null_fd, 2)
        yield
    finally:
        os.dup2(original_stderr_fd, 2)
        os.close(original_stderr_fd)
        os.close(null_fd)


__all__ = [
    "console",
    "suppress_stderr",
    "make_device_table",
    "make_capture_progress",
    "make_card_panel",
    "message_for_stage",
    "random_tip",
    "format_duration",
]

"""Shared utility functions for the LightApp pipeline.

Provides request-id generation, text truncation, JSON I/O, duration
formatting, and the Rich-based console helpers every pipeline component uses
to report progress.  Console lines are tagged with ``[run_id][stage]`` so that
interleaved output from concurrent runs stays readable.
"""

from __future__ import annotations

import asyncio
import json
import secrets
import string
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.table import Table

console = Console()

_REQUEST_ID_ALPHABET = string.ascii_uppercase + string.digits


# ---------------------------------------------------------------------------
# Identifiers / string helpers
# ---------------------------------------------------------------------------


def make_request_id(length: int = 5) -> str:
    """Return a short random correlation id such as ``"K3Q9Z"``.

    The id only needs to be unique among the runs that are in flight at the
    same time; it also becomes the prefix of stored image identifiers.
    """
    return "".join(secrets.choice(_REQUEST_ID_ALPHABET) for _ in range(length))


def truncate(text: str | None, limit: int = 200) -> str:
    """Return at most *limit* characters of *text*, marking the cut with ``...``.

    Examples::

        truncate("hello", 10)        -> "hello"
        truncate("hello world", 5)   -> "hello..."
        truncate(None)               -> ""
    """
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def tag(*parts: str | None) -> str:
    """Build a ``[a][b]`` console prefix from the non-empty *parts*.

    The prefix is plain text; the ``print_*`` helpers escape it before it
    reaches Rich markup.
    """
    return "".join(f"[{p}]" for p in parts if p)


# ---------------------------------------------------------------------------
# JSON I/O
# ---------------------------------------------------------------------------


def load_json(path: str | Path) -> dict[str, Any]:
    """Load and parse a JSON file that holds a top-level object.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the top-level value is not an object.
    """
    raw = Path(path).read_text(encoding="utf-8")
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object in {path}, got {type(data).__name__}")
    return data


async def save_json(data: dict[str, Any] | list[Any], path: str | Path) -> None:
    """Save data as pretty-printed JSON.

    Parent directories are created automatically and the write runs in a
    worker thread so large artifacts do not block the event loop.
    """
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    await asyncio.to_thread(file_path.write_text, content, "utf-8")


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples::

        format_duration(3.7)    -> "3.7s"
        format_duration(65.2)   -> "1m 5s"
        format_duration(3661.0) -> "1h 1m 1s"
    """
    if seconds < 0:
        return "0.0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60

    parts: list[str] = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")

    if hours > 0 or minutes > 0:
        parts.append(f"{int(secs)}s")
    else:
        parts.append(f"{secs:.1f}s")

    return " ".join(parts)


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------


STAGE_COLORS: dict[str, str] = {
    "stage1": "bright_cyan",
    "stage1_5": "bright_magenta",
    "stage2": "bright_green",
    "stage3": "bright_yellow",
    "stage4": "bright_blue",
    "stage5": "bright_red",
}


def print_stage_header(run_id: str, stage_id: str, name: str) -> None:
    """Print a full-width rule announcing that *stage_id* is starting."""
    color = STAGE_COLORS.get(stage_id, "white")
    console.print()
    console.print(
        Rule(
            f"[bold {color}] {escape(tag(run_id))} {escape(stage_id)}: {escape(name)} [/bold {color}]",
            style=color,
        )
    )


def print_summary_table(data: dict[str, str], title: str = "Summary") -> None:
    """Print a two-column key/value summary table."""
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Item", style="dim", no_wrap=True)
    table.add_column("Value")

    for key, value in data.items():
        table.add_row(key, escape(str(value)))

    console.print(table)
    console.print()


def print_info(prefix: str, message: str) -> None:
    """Print a dim, tagged progress line."""
    console.print(f"[dim]{escape(prefix)}[/dim] {escape(message)}")


def print_success(message: str) -> None:
    """Print a green success message."""
    console.print(f"[bold green]{escape(message)}[/bold green]")


def print_error(message: str) -> None:
    """Print a red error message."""
    console.print(f"[bold red]{escape(message)}[/bold red]")


def print_warning(message: str) -> None:
    """Print a yellow warning message."""
    console.print(f"[bold yellow]{escape(message)}[/bold yellow]")

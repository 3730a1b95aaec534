"""Terminal styling shared by the CLI and the stream renderer."""

from __future__ import annotations

import os

from rich.box import ROUNDED
from rich.console import Console
from rich.panel import Panel
from rich.text import Text


def is_light_theme() -> bool:
    """
    Detect if terminal is using a light theme.
    Uses multiple heuristics:
    1. COLORFGBG environment variable
    2. Terminal-specific profile variables
    """
    # COLORFGBG is "fg;bg"; 7 and 15 are the usual light backgrounds
    colorfgbg = os.environ.get("COLORFGBG", "")
    if ";" in colorfgbg:
        try:
            _, bg = colorfgbg.rsplit(";", 1)
            bg_idx = int(bg)
            if bg_idx in (7, 15):
                return True
            if bg_idx == 0:
                return False
        except ValueError:
            pass

    if os.environ.get("TERM_PROGRAM", "") == "Apple_Terminal":
        return True

    iterm_profile = os.environ.get("ITERM_PROFILE", "").lower()
    if "light" in iterm_profile:
        return True

    return False


class Theme:
    """Color theme for the UI - adapts to terminal colors."""

    _is_light = is_light_theme()

    PRIMARY = "cyan"
    SECONDARY = "blue"
    ACCENT = "magenta"

    # Status colors
    SUCCESS = "green"
    WARNING = "yellow"
    ERROR = "red"
    INFO = "cyan"

    # Content colors
    REASONING = "dim italic"
    MESSAGE = "default"
    CODE = "bright_white" if not _is_light else "black"
    MUTED = "dim"

    HEADER = "bold cyan"
    SUBHEADER = "bold"


class Icons:
    """Unicode icons for the UI."""

    # Status
    DONE = "✓"
    ERROR = "✗"
    WARNING = "⚠"
    INFO = "ℹ"
    PENDING = "○"
    ACTIVE = "◐"
    WAITING = "⏸"
    CANCELLED = "⊘"

    # Activity
    ROBOT = "🤖"
    TOOL = "🔧"
    BRAIN = "💭"
    OUTPUT = "📝"
    CLOCK = "⏳"

    # Navigation
    ARROW_RIGHT = "→"
    BULLET = "•"

    # Progress bar
    BAR_FILLED = "█"
    BAR_EMPTY = "-"


STATUS_STYLES = {
    "pending": (Icons.PENDING, Theme.MUTED),
    "active": (Icons.ACTIVE, Theme.PRIMARY),
    "awaiting_approval": (Icons.WAITING, Theme.WARNING),
    "complete": (Icons.DONE, Theme.SUCCESS),
    "failed": (Icons.ERROR, Theme.ERROR),
    "cancelled": (Icons.CANCELLED, Theme.MUTED),
}


def status_text(status: str) -> Text:
    """Icon plus status label, colored by status."""
    icon, style = STATUS_STYLES.get(status, (Icons.BULLET, Theme.MESSAGE))
    return Text(f"{icon} {status}", style=style)


def print_error(console: Console, error: str) -> None:
    """Print an error message."""
    console.print(Panel(
        Text(f"{Icons.ERROR} {error}", style=Theme.ERROR),
        border_style=Theme.ERROR,
        title="Error",
        title_align="left",
        box=ROUNDED,
    ))


def print_success(console: Console, message: str) -> None:
    console.print(Text(f"{Icons.DONE} {message}", style=Theme.SUCCESS))


def print_warning(console: Console, message: str) -> None:
    console.print(Text(f"{Icons.WARNING} {message}", style=Theme.WARNING))

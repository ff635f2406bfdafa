"""
aiko.renderer - Rich terminal rendering for the chat REPL.

``ConsoleChatView`` is the terminal implementation of the engine's
``ChatView``: a spinner while a job prepares, dim lines for thinking steps,
token-by-token streaming through a Live display, and a final panel once
the message is finalized.
"""

from __future__ import annotations

import sys
from typing import Iterable

from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.status import Status
from rich.table import Table
from rich.text import Text

from aiko.core.models import ConversationSession, Message, TokenLimits

THEME = {
    "primary": "#1F6FEB",
    "primary_dim": "#274B7A",
    "accent": "#58A6FF",
    "text_dim": "#7D8590",
    "success": "#3FB950",
    "warning": "#D29922",
    "error": "#F85149",
}

console = Console(force_terminal=sys.stdout.isatty())

SLASH_COMMANDS: dict[str, str] = {
    "/new": "Start a new chat",
    "/level N": "Set the thinking level (0-4)",
    "/provider NAME": "Switch provider (OPENAI, GEMINI, DEEPSEEK, QWEN)",
    "/model NAME": "Switch model for the current provider",
    "/image PATH": "Attach an image to the next message",
    "/video PATH [quick|standard|detailed]": "Analyze a video",
    "/help": "Show this help",
    "/quit": "Exit",
}


def render_banner(version: str, provider: str, model: str, level_name: str) -> None:
    body = Text()
    body.append("aiko", style=f"bold {THEME['accent']}")
    body.append(f"  v{version}\n", style=THEME["text_dim"])
    body.append(f"{provider} · {model} · thinking: {level_name}", style=THEME["text_dim"])
    console.print(Panel(body, border_style=THEME["primary"], padding=(0, 2)))
    console.print(f"[{THEME['text_dim']}]Type /help for commands. Ctrl-C cancels a reply.[/{THEME['text_dim']}]")


def print_help() -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style=f"bold {THEME['accent']}")
    table.add_column(style=THEME["text_dim"])
    for cmd, desc in SLASH_COMMANDS.items():
        table.add_row(cmd, desc)
    console.print(table)


def render_error(msg: str) -> None:
    console.print(f"[{THEME['error']}]✗ {msg}[/{THEME['error']}]")


def render_success(msg: str) -> None:
    console.print(f"[{THEME['success']}]✓[/{THEME['success']}] {msg}")


def render_info(msg: str) -> None:
    console.print(f"[{THEME['text_dim']}]{msg}[/{THEME['text_dim']}]")


def render_models_table(rows: Iterable[tuple[str, str, TokenLimits, bool]]) -> None:
    """Rows are (provider, model, limits, is_default)."""
    table = Table(title="Models")
    table.add_column("Provider", style="cyan")
    table.add_column("Model")
    table.add_column("Max tokens", justify="right")
    table.add_column("Context", justify="right")
    table.add_column("History", justify="right")
    table.add_column("Default", width=7)
    for provider, model, limits, is_default in rows:
        table.add_row(
            provider,
            model,
            str(limits.max_tokens),
            str(limits.max_context),
            str(limits.history_messages),
            f"[green]{'  ●' if is_default else ''}[/green]",
        )
    console.print(table)


def render_sessions_table(sessions: Iterable[ConversationSession]) -> None:
    table = Table(title="Sessions")
    table.add_column("ID", style="yellow", justify="right")
    table.add_column("Name")
    for s in sessions:
        table.add_row(str(s.id), s.name)
    console.print(table)


class ConsoleChatView:
    """Streams one reply at a time to the terminal."""

    # Characters to accumulate before switching from raw text to markdown
    _MD_THRESHOLD = 80

    def __init__(self, out: Console | None = None) -> None:
        self.console = out or console
        self._status: Status | None = None
        self._live: Live | None = None
        self._buffer = ""

    def set_loading_state(self, message: str, cancellable: bool) -> None:
        if self._live is not None:
            return
        hint = "  (Ctrl-C to cancel)" if cancellable else ""
        text = f"[{THEME['text_dim']}]{message}{hint}[/{THEME['text_dim']}]"
        if self._status is None:
            self._status = self.console.status(text, spinner="dots")
            self._status.start()
        else:
            self._status.update(text)

    def show_thinking_step(self, step: str) -> None:
        self.console.print(f"[{THEME['text_dim']}]{step}[/{THEME['text_dim']}]")

    def append_chunk(self, text: str) -> None:
        if self._live is None:
            self._stop_status()
            self._buffer = ""
            self._live = Live(
                Text(""),
                console=self.console,
                refresh_per_second=12,
                transient=True,
                vertical_overflow="visible",
            )
            self._live.start()
        self._buffer += text
        if len(self._buffer) < self._MD_THRESHOLD:
            self._live.update(Text(self._buffer + "▌"))
        else:
            self._live.update(Markdown(self._buffer + "▌"))

    def notify_finalized(self, message: Message) -> None:
        self._stop_live()
        self._stop_status()
        if message.text.strip():
            self.console.print(
                Panel(
                    Markdown(message.text),
                    border_style=THEME["primary_dim"],
                    title=f"[bold {THEME['accent']}]aiko[/bold {THEME['accent']}]",
                    title_align="left",
                    padding=(1, 2),
                )
            )
        self._buffer = ""

    def end_loading(self) -> None:
        self._stop_live()
        self._stop_status()

    def _stop_status(self) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None

    def _stop_live(self) -> None:
        if self._live is not None:
            self._live.stop()
            self._live = None

"""Rich console rendering of discussion events and markdown transcript export."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.rule import Rule
from rich.text import Text

from polychat.models import (
    Conversation,
    DiscussionCompleteEvent,
    DiscussionEvent,
    ErrorEvent,
    Participant,
    TokenEvent,
    TurnEndEvent,
    TurnStartEvent,
)

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_STYLES = ["cyan", "green", "magenta", "yellow", "blue", "red"]


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


class EventPrinter:
    """Streams events to the console as they arrive.

    Independent mode interleaves tokens of several participants, so every
    switch of speaker mid-stream starts a fresh labeled line.
    """

    def __init__(self, participants: list[Participant], out: Console | None = None) -> None:
        self._console = out or console
        self._names = {p.id: p.display_name for p in participants}
        self._styles = {p.id: _STYLES[i % len(_STYLES)] for i, p in enumerate(participants)}
        self._current: str | None = None
        self.turns = 0
        self.errors = 0

    def _label(self, participant_id: str) -> Text:
        name = self._names.get(participant_id, participant_id)
        return Text(f"{name}: ", style=f"bold {self._styles.get(participant_id, 'white')}")

    def handle(self, event: DiscussionEvent) -> None:
        if isinstance(event, TurnStartEvent):
            round_label = "opening" if event.round == 0 else f"round {event.round}"
            self._console.print(
                Rule(f"[bold]{event.display_name}[/bold] [dim]({event.model_id}, {round_label})[/dim]")
            )
            self._current = event.participant_id
        elif isinstance(event, TokenEvent):
            if self._current != event.participant_id:
                self._console.print()
                self._console.print(self._label(event.participant_id), end="")
                self._current = event.participant_id
            self._console.print(event.content, end="", markup=False, highlight=False)
        elif isinstance(event, TurnEndEvent):
            self.turns += 1
            self._console.print()
            if event.message_id is None:
                self._console.print(Text("(not saved)", style="dim yellow"))
        elif isinstance(event, ErrorEvent):
            self.errors += 1
            who = self._names.get(event.participant_id, "discussion") if event.participant_id else "discussion"
            self._console.print()
            self._console.print(Text(f"Error ({who}): {event.message}", style="bold red"))
        elif isinstance(event, DiscussionCompleteEvent):
            self._console.print(Rule("[bold green]Discussion complete[/bold green]"))
            self._console.print(
                Text(
                    f"Rounds: {event.total_rounds} | Turns: {self.turns} | Errors: {self.errors}",
                    style="dim",
                )
            )


def save_transcript(conversation: Conversation, output_dir: Path) -> Path:
    """Save a conversation as a markdown transcript.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filepath = output_dir / f"{timestamp}_{_slug(conversation.title) or conversation.id}.md"

    by_id = {p.id: p for p in conversation.participants}
    panel = ", ".join(
        f"{p.display_name} ({p.model_id}{', moderator' if p.is_moderator else ''})"
        for p in sorted(conversation.participants, key=lambda p: p.order_index)
    )

    lines: list[str] = [
        f"# Polychat: {conversation.title}",
        "",
        f"**Date:** {conversation.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Mode:** {conversation.mode}",
        f"**Panel:** {panel}",
        "",
        "---",
        "",
    ]

    current_round: int | None = None
    for message in conversation.messages:
        if message.role == "user":
            lines += ["## Topic", "", message.content, ""]
            continue
        if message.round_number is not None and message.round_number != current_round:
            current_round = message.round_number
            lines += ["## Opening" if current_round == 0 else f"## Round {current_round}", ""]
        speaker = by_id.get(message.participant_id or "")
        name = speaker.display_name if speaker else (message.model_id or "assistant")
        if speaker and speaker.is_moderator:
            name += " (moderator)"
        lines += [f"### {name}", "", message.content, ""]

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Transcript saved to: %s", filepath)
    return filepath

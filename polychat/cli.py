"""Click CLI: loads config, builds the panel, runs a discussion and renders its events."""

import asyncio
import logging
import signal as signal_module
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

from config.config_loader import AppConfig, load_config
from polychat.cancel import CancelSignal
from polychat.models import Conversation, DiscussionMode, Participant
from polychat.orchestrator import ConfigurationError, orchestrate, run_independent
from polychat.output import EventPrinter, save_transcript
from polychat.participants import build_panel
from polychat.providers.base import CompletionProvider, ProviderError
from polychat.providers.factory import build_provider
from polychat.sse import encode_event
from polychat.storage import JsonConversationStore

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _determine_panel(
    config: AppConfig,
    models_arg: str | None,
    moderator_arg: str | None,
    mode: str,
) -> tuple[list[str], str | None]:
    """Returns (participant model ids, moderator model id). CLI flags override config."""
    if models_arg:
        model_ids = [m.strip() for m in models_arg.split(",") if m.strip()]
    else:
        model_ids = list(config.defaults.panel)

    if mode != "moderated":
        return model_ids, None

    moderator = moderator_arg or config.defaults.moderator
    # The moderator only moderates; drop it from the debaters when that still leaves someone to talk
    if moderator in model_ids and len(model_ids) > 1:
        model_ids = [m for m in model_ids if m != moderator]
    return model_ids, moderator


async def _install_interrupt(cancel: CancelSignal) -> bool:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal_module.SIGINT, cancel.abort)
    except (NotImplementedError, RuntimeError):
        # Windows event loops do not support signal handlers
        return False
    return True


async def _run(
    store: JsonConversationStore,
    mode: DiscussionMode,
    panel: list[Participant],
    topic: str,
    rounds: int,
    provider: CompletionProvider,
    sse: bool,
) -> tuple[bool, Conversation | None]:
    """Create the conversation and stream one run to stdout.

    Returns:
        Whether the run finished uninterrupted, and the conversation as
        stored afterwards.
    """
    conversation = await store.create_conversation(mode, panel)

    if not sse:
        names = ", ".join(p.display_name + (" (moderator)" if p.is_moderator else "") for p in conversation.participants)
        console.print(f"\n[bold cyan]Polychat[/bold cyan] [{mode}] {rounds} round(s)")
        console.print(f"Panel: {names}")
        console.print(f"Topic: [italic]{topic[:80]}{'...' if len(topic) > 80 else ''}[/italic]\n")

    cancel = CancelSignal()
    installed = await _install_interrupt(cancel)

    if mode == "independent":
        events = run_independent(
            conversation.id, topic, conversation.participants, cancel, provider=provider, store=store
        )
    else:
        events = orchestrate(
            conversation.id,
            topic,
            mode,
            conversation.participants,
            rounds,
            cancel,
            provider=provider,
            store=store,
        )

    printer = EventPrinter(conversation.participants, console)
    try:
        async for event in events:
            if sse:
                click.echo(encode_event(event), nl=False)
            else:
                printer.handle(event)
    finally:
        if installed:
            asyncio.get_running_loop().remove_signal_handler(signal_module.SIGINT)

    if cancel.aborted:
        console.print("\n[yellow]Stopped.[/yellow]")
    return not cancel.aborted, await store.get_conversation(conversation.id)


@click.command()
@click.argument("topic", required=False)
@click.option("--file", "topic_file", type=click.Path(exists=True), help="Read the topic from a text/markdown file")
@click.option(
    "--mode",
    type=click.Choice(["independent", "round_robin", "moderated"]),
    default=None,
    help="Discussion mode (default: from config)",
)
@click.option("--rounds", default=None, type=int, help="Number of discussion rounds (default: from config)")
@click.option("--models", default=None, help="Comma-separated OpenRouter model ids, overrides the configured panel")
@click.option("--moderator", default=None, help="Moderator model id for moderated mode (default: from config)")
@click.option("--sse", is_flag=True, help="Print raw 'data: <json>' event frames instead of rendering")
@click.option("--save/--no-save", default=True, help="Write a markdown transcript to the output dir")
@click.option("--output", "output_path", default=None, help="Transcript directory (default: from config)")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def main(
    topic: str | None,
    topic_file: str | None,
    mode: str | None,
    rounds: int | None,
    models: str | None,
    moderator: str | None,
    sse: bool,
    save: bool,
    output_path: str | None,
    verbose: bool,
) -> None:
    """Polychat -- let several models discuss a topic.

    \b
    Examples:
      polychat "Is a hot dog a sandwich?"
      polychat "Tabs or spaces?" --rounds 3 --models openai/gpt-4o,deepseek/deepseek-r1
      polychat "Remote work?" --mode moderated --moderator anthropic/claude-sonnet-4
      polychat "Explain monads" --mode independent --sse
    """
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    if topic_file:
        topic_text = Path(topic_file).read_text(encoding="utf-8").strip()
    elif topic:
        topic_text = topic
    else:
        console.print("[bold red]Error:[/bold red] Provide a TOPIC argument or --file.")
        sys.exit(1)

    effective_mode = mode or config.defaults.mode
    effective_rounds = rounds if rounds is not None else config.defaults.max_rounds
    if not 1 <= effective_rounds <= config.defaults.rounds_limit:
        console.print(
            f"[bold red]Error:[/bold red] --rounds must be between 1 and {config.defaults.rounds_limit}."
        )
        sys.exit(1)

    model_ids, moderator_id = _determine_panel(config, models, moderator, effective_mode)
    if effective_mode == "moderated" and not moderator_id:
        console.print("[bold red]Error:[/bold red] Moderated mode needs --moderator or defaults.moderator.")
        sys.exit(1)
    try:
        panel = build_panel(model_ids, moderator_id, config.models)
    except ValueError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)

    if not config.api_key_available:
        console.print(
            f"[bold red]Error:[/bold red] No API key for {config.provider.name}. "
            f"Set {config.provider.api_key_env} in .env."
        )
        sys.exit(1)
    try:
        provider = build_provider(config.provider)
    except ProviderError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)

    store = JsonConversationStore(config.defaults.data_dir)
    try:
        completed, saved = asyncio.run(
            _run(store, effective_mode, panel, topic_text, effective_rounds, provider, sse)  # type: ignore[arg-type]
        )
    except ConfigurationError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)

    if save and not sse and saved is not None and saved.messages:
        output_dir = Path(output_path) if output_path else config.defaults.output_dir
        path = save_transcript(saved, output_dir)
        console.print(f"\n[dim]Saved to: {path}[/dim]")

    if not completed:
        sys.exit(130)


if __name__ == "__main__":
    main()

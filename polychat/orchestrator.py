"""Discussion scheduling: round-robin and moderated protocols, plus independent fan-out."""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from polychat.cancel import CancelSignal, DiscussionCancelled
from polychat.models import (
    DiscussionCompleteEvent,
    DiscussionEvent,
    DiscussionHistory,
    DiscussionMode,
    ErrorEvent,
    Participant,
)
from polychat.prompts import build_independent_prompt, build_moderator_prompt, build_participant_prompt
from polychat.providers.base import CompletionProvider
from polychat.storage import MessageStore
from polychat.turn import TurnExecutor

logger = logging.getLogger(__name__)

DISCUSSION_MODES = ("round_robin", "moderated")


class ConfigurationError(ValueError):
    """Raised for a run that cannot start: bad mode, round count or panel."""


@dataclass
class _DiscussionRun:
    """State owned by one ``orchestrate`` call; never shared between runs."""

    executor: TurnExecutor
    history: DiscussionHistory
    max_rounds: int
    spoken: list[str] = field(default_factory=list)

    @property
    def signal(self) -> CancelSignal:
        return self.executor.signal


async def _save_user_message(store: MessageStore, conversation_id: str, content: str) -> None:
    try:
        await store.create_message(conversation_id, "user", content)
    except Exception:
        logger.warning("Failed to persist user message for conversation %s", conversation_id, exc_info=True)


async def _take_turn(
    run: _DiscussionRun,
    participant: Participant,
    system_prompt: str,
    round_number: int,
    *,
    counts_as_spoken: bool = True,
) -> AsyncIterator[DiscussionEvent]:
    """Run one turn and record it; stops the protocol if the run was cancelled.

    A failed turn leaves no trace in the history or the spoken list.
    """
    if run.signal.aborted:
        raise DiscussionCancelled("Cancelled before turn")

    turn = run.executor.run(participant, system_prompt, run.history, round_number)
    async for event in turn.events():
        yield event

    if turn.failed:
        return
    run.history.append_turn(participant, turn.content)
    if counts_as_spoken and participant.display_name not in run.spoken:
        run.spoken.append(participant.display_name)


async def _round_robin(run: _DiscussionRun, participants: list[Participant]) -> AsyncIterator[DiscussionEvent]:
    ordered = sorted(participants, key=lambda p: p.order_index)

    for round_number in range(1, run.max_rounds + 1):
        for participant in ordered:
            others = [p.display_name for p in ordered if p.id != participant.id]
            system_prompt = build_participant_prompt(
                display_name=participant.display_name,
                other_participants=others,
                round_number=round_number,
                max_rounds=run.max_rounds,
                spoken_before=list(run.spoken),
            )
            async for event in _take_turn(run, participant, system_prompt, round_number):
                yield event


async def _moderated(run: _DiscussionRun, participants: list[Participant]) -> AsyncIterator[DiscussionEvent]:
    moderators = [p for p in participants if p.is_moderator]
    if len(moderators) != 1:
        message = "No moderator designated" if not moderators else "More than one moderator designated"
        logger.error("Moderated discussion rejected: %s", message)
        yield ErrorEvent(message=message)
        return

    moderator = moderators[0]
    others = [p for p in participants if not p.is_moderator]
    names = [p.display_name for p in others]

    def moderator_prompt(phase: str, round_number: int | None = None) -> str:
        return build_moderator_prompt(
            display_name=moderator.display_name,
            participants=names,
            phase=phase,  # type: ignore[arg-type]
            round_number=round_number,
            max_rounds=run.max_rounds,
        )

    async for event in _take_turn(run, moderator, moderator_prompt("open"), 0):
        yield event

    for round_number in range(1, run.max_rounds + 1):
        async for event in _take_turn(
            run, moderator, moderator_prompt("direct_round", round_number), round_number, counts_as_spoken=False
        ):
            yield event

        for participant in others:
            peers = [p.display_name for p in others if p.id != participant.id]
            peers.append(f"Moderator: {moderator.display_name}")
            system_prompt = build_participant_prompt(
                display_name=participant.display_name,
                other_participants=peers,
                round_number=round_number,
                max_rounds=run.max_rounds,
                spoken_before=list(run.spoken),
            )
            async for event in _take_turn(run, participant, system_prompt, round_number):
                yield event

        if round_number < run.max_rounds:
            async for event in _take_turn(
                run, moderator, moderator_prompt("summarize", round_number), round_number, counts_as_spoken=False
            ):
                yield event

    async for event in _take_turn(
        run, moderator, moderator_prompt("conclude"), run.max_rounds, counts_as_spoken=False
    ):
        yield event


def _validate(mode: str, participants: list[Participant], max_rounds: int, allowed: tuple[str, ...]) -> None:
    if mode not in allowed:
        raise ConfigurationError(f"Unsupported mode {mode!r}; expected one of {', '.join(allowed)}")
    if max_rounds < 1:
        raise ConfigurationError(f"max_rounds must be >= 1, got {max_rounds}")
    if not participants:
        raise ConfigurationError("At least one participant is required")


async def orchestrate(
    conversation_id: str,
    user_message: str,
    mode: DiscussionMode,
    participants: list[Participant],
    max_rounds: int,
    signal: CancelSignal | None = None,
    *,
    provider: CompletionProvider,
    store: MessageStore,
) -> AsyncIterator[DiscussionEvent]:
    """Run a round-robin or moderated discussion and stream its events.

    Turns run strictly one after another because every prompt is built
    from all earlier turns. The opening user message is persisted first.
    A cancelled run ends without further events; otherwise the stream
    closes with one ``discussion_complete``.

    Raises:
        ConfigurationError: Before anything is persisted, for an unknown
            mode, ``max_rounds < 1`` or an empty panel.
    """
    _validate(mode, participants, max_rounds, DISCUSSION_MODES)
    signal = signal or CancelSignal()

    await _save_user_message(store, conversation_id, user_message)
    run = _DiscussionRun(
        executor=TurnExecutor(provider, store, conversation_id, signal),
        history=DiscussionHistory(user_message),
        max_rounds=max_rounds,
    )
    protocol = _round_robin if mode == "round_robin" else _moderated
    logger.info(
        "Discussion %s started: mode=%s participants=%d rounds=%d",
        conversation_id,
        mode,
        len(participants),
        max_rounds,
    )

    configuration_failed = False
    try:
        async for event in protocol(run, participants):
            if isinstance(event, ErrorEvent) and event.participant_id is None:
                configuration_failed = True
            yield event
    except DiscussionCancelled:
        logger.info("Discussion %s cancelled after %d turns", conversation_id, len(run.history) - 1)
        return
    except Exception:
        if signal.aborted:
            logger.info("Discussion %s cancelled mid-turn", conversation_id)
            return
        raise

    if configuration_failed:
        return
    logger.info("Discussion %s complete", conversation_id)
    yield DiscussionCompleteEvent(total_rounds=max_rounds)


async def run_independent(
    conversation_id: str,
    user_message: str,
    participants: list[Participant],
    signal: CancelSignal | None = None,
    *,
    provider: CompletionProvider,
    store: MessageStore,
) -> AsyncIterator[DiscussionEvent]:
    """Ask every participant the same question in parallel.

    Each participant streams through its own child signal and has no view
    of the others. Events from all turns are multiplexed in arrival order.
    """
    _validate("independent", participants, 1, ("independent",))
    signal = signal or CancelSignal()

    await _save_user_message(store, conversation_id, user_message)
    history = DiscussionHistory(user_message)
    system_prompt = build_independent_prompt()

    queue: asyncio.Queue[DiscussionEvent | None] = asyncio.Queue()

    async def _answer(participant: Participant) -> None:
        executor = TurnExecutor(provider, store, conversation_id, signal.child())
        try:
            async for event in executor.run(participant, system_prompt, history, 1).events():
                await queue.put(event)
        except DiscussionCancelled:
            logger.info("Independent turn of %s cancelled", participant.display_name)
        except Exception as exc:
            if not executor.signal.aborted:
                await queue.put(ErrorEvent(message=str(exc), participant_id=participant.id))
        finally:
            await queue.put(None)

    tasks = [asyncio.create_task(_answer(p)) for p in participants]
    finished = 0
    try:
        while finished < len(tasks):
            event = await signal.guard(queue.get())
            if event is None:
                finished += 1
                continue
            yield event
    except DiscussionCancelled:
        logger.info("Independent run %s cancelled", conversation_id)
        return
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    yield DiscussionCompleteEvent(total_rounds=1)

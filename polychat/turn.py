"""One participant's turn: prompt, stream, strip, persist, report."""

import logging
from collections.abc import AsyncIterator

from polychat.cancel import CancelSignal, DiscussionCancelled
from polychat.models import (
    DiscussionEvent,
    DiscussionHistory,
    ErrorEvent,
    Participant,
    TokenEvent,
    TurnEndEvent,
    TurnStartEvent,
)
from polychat.prefix import PrefixStripper, strip_speaker_label
from polychat.prompts import consolidate_history
from polychat.providers.base import CompletionProvider
from polychat.storage import MessageStore

logger = logging.getLogger(__name__)


class Turn:
    """A single scheduled turn. Iterate ``events()`` once to run it.

    After iteration, ``content`` holds the cleaned full text, ``message_id``
    the persisted message id (None if persistence failed) and ``failed``
    whether the upstream call failed.
    """

    def __init__(
        self,
        executor: "TurnExecutor",
        participant: Participant,
        system_prompt: str,
        history: DiscussionHistory,
        round_number: int,
    ) -> None:
        self._executor = executor
        self.participant = participant
        self.system_prompt = system_prompt
        self.round_number = round_number
        # Snapshot now so the prompt reflects history at scheduling time
        self.user_content = consolidate_history(history)
        self.content = ""
        self.message_id: str | None = None
        self.failed = False

    async def events(self) -> AsyncIterator[DiscussionEvent]:
        executor = self._executor
        participant = self.participant
        signal = executor.signal

        yield TurnStartEvent(
            participant_id=participant.id,
            model_id=participant.model_id,
            display_name=participant.display_name,
            round=self.round_number,
        )
        logger.info("Turn start: %s (%s) round %d", participant.display_name, participant.model_id, self.round_number)

        messages = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": self.user_content},
        ]
        raw_text = ""
        stripper = PrefixStripper()
        try:
            async for delta in executor.provider.stream_completion(participant.model_id, messages, signal):
                raw_text += delta
                cleaned = stripper.feed(delta)
                if cleaned:
                    yield TokenEvent(content=cleaned, participant_id=participant.id)
            leftover = stripper.flush()
            if leftover:
                yield TokenEvent(content=leftover, participant_id=participant.id)
        except DiscussionCancelled:
            raise
        except Exception as exc:
            if signal.aborted:
                raise
            self.failed = True
            logger.warning("Turn failed: %s round %d: %s", participant.display_name, self.round_number, exc)
            yield ErrorEvent(message=str(exc) or type(exc).__name__, participant_id=participant.id)
            return

        self.content = strip_speaker_label(raw_text)
        self.message_id = await executor.persist(participant, self.content, self.round_number)

        yield TurnEndEvent(
            participant_id=participant.id,
            full_content=self.content,
            round=self.round_number,
            message_id=self.message_id,
        )
        logger.info(
            "Turn end: %s round %d, %d chars",
            participant.display_name,
            self.round_number,
            len(self.content),
        )


class TurnExecutor:
    """Runs turns for one conversation against one provider and store."""

    def __init__(
        self,
        provider: CompletionProvider,
        store: MessageStore,
        conversation_id: str,
        signal: CancelSignal,
    ) -> None:
        self.provider = provider
        self.store = store
        self.conversation_id = conversation_id
        self.signal = signal

    def run(
        self,
        participant: Participant,
        system_prompt: str,
        history: DiscussionHistory,
        round_number: int,
    ) -> Turn:
        return Turn(self, participant, system_prompt, history, round_number)

    async def persist(self, participant: Participant, content: str, round_number: int) -> str | None:
        """Best-effort write of a finished turn; failures are logged, not raised."""
        try:
            message = await self.store.create_message(
                self.conversation_id,
                "assistant",
                content,
                participant_id=participant.id,
                model_id=participant.model_id,
                round_number=round_number,
            )
        except Exception:
            logger.warning(
                "Failed to persist turn of %s in conversation %s",
                participant.display_name,
                self.conversation_id,
                exc_info=True,
            )
            return None
        return message.id

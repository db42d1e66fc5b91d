"""Tests for polychat/orchestrator.py."""

import asyncio

import pytest

from polychat.cancel import CancelSignal
from polychat.models import (
    DiscussionCompleteEvent,
    ErrorEvent,
    TokenEvent,
    TurnEndEvent,
    TurnStartEvent,
)
from polychat.orchestrator import ConfigurationError, orchestrate, run_independent
from tests.conftest import FailingStore, ScriptedProvider, collect, upstream_error


def _system(call) -> str:
    return call[1][0]["content"]


def _user(call) -> str:
    return call[1][1]["content"]


class HangingProvider(ScriptedProvider):
    """Emits one delta, then waits on the signal forever."""

    async def stream_completion(self, model, messages, signal=None):
        self.calls.append((model, messages))
        yield "partial"
        await signal.guard(asyncio.Event().wait())
        yield "never"


# --- round robin ---


async def test_round_robin_order_follows_order_index(three_participants, memory_store):
    provider = ScriptedProvider()
    events = await collect(
        orchestrate("c1", "Topic", "round_robin", three_participants, 2, provider=provider, store=memory_store)
    )

    starts = [e for e in events if isinstance(e, TurnStartEvent)]
    assert [(s.display_name, s.round) for s in starts] == [
        ("GPT", 1), ("Claude", 1), ("Gemini", 1),
        ("GPT", 2), ("Claude", 2), ("Gemini", 2),
    ]
    assert provider.models_called == ["model/a", "model/b", "model/c"] * 2
    assert isinstance(events[-1], DiscussionCompleteEvent)
    assert events[-1].total_rounds == 2
    assert sum(isinstance(e, DiscussionCompleteEvent) for e in events) == 1


async def test_round_robin_turn_events_are_not_interleaved(three_participants, memory_store):
    events = await collect(
        orchestrate("c1", "Topic", "round_robin", three_participants, 1, provider=ScriptedProvider(), store=memory_store)
    )
    current = None
    for event in events:
        if isinstance(event, TurnStartEvent):
            assert current is None
            current = event.participant_id
        elif isinstance(event, TokenEvent):
            assert event.participant_id == current
        elif isinstance(event, TurnEndEvent):
            assert event.participant_id == current
            current = None


async def test_round_robin_prompts_track_who_has_spoken(three_participants, memory_store):
    provider = ScriptedProvider()
    await collect(orchestrate("c1", "Topic", "round_robin", three_participants, 2, provider=provider, store=memory_store))

    calls = provider.calls
    assert "You are the first to speak" in _system(calls[0])
    assert "Other participants: Claude, Gemini" in _system(calls[0])
    assert "already spoken: GPT." in _system(calls[1])
    assert "already spoken: GPT, Claude." in _system(calls[2])
    # Round two: everybody has spoken, names are listed once each
    assert "already spoken: GPT, Claude, Gemini." in _system(calls[3])
    assert "round 2 of 2" in _system(calls[3])


async def test_round_robin_history_is_consolidated_into_user_message(three_participants, memory_store):
    provider = ScriptedProvider(scripts={"model/a": ["[GPT]: Spaces."], "model/b": ["Tabs."]})
    await collect(orchestrate("c1", "Tabs or spaces?", "round_robin", three_participants, 1, provider=provider, store=memory_store))

    assert _user(provider.calls[0]) == "Tabs or spaces?"
    third = _user(provider.calls[2])
    assert third.startswith("Topic: Tabs or spaces?\n\nDiscussion so far:\n")
    assert "[GPT]: Spaces.\n\n[Claude]: Tabs." in third


async def test_user_message_is_persisted_before_turns(three_participants, memory_store):
    await collect(orchestrate("c1", "Topic", "round_robin", three_participants, 1, provider=ScriptedProvider(), store=memory_store))

    roles = [m.role for m in memory_store.messages]
    assert roles == ["user", "assistant", "assistant", "assistant"]
    assert memory_store.messages[0].content == "Topic"
    assert memory_store.messages[0].participant_id is None


async def test_turn_end_message_ids_match_store(three_participants, memory_store):
    events = await collect(
        orchestrate("c1", "Topic", "round_robin", three_participants, 1, provider=ScriptedProvider(), store=memory_store)
    )
    ids = [e.message_id for e in events if isinstance(e, TurnEndEvent)]
    assert ids == [m.id for m in memory_store.messages[1:]]


async def test_upstream_error_skips_turn_and_discussion_continues(three_participants, memory_store):
    provider = ScriptedProvider(scripts={"model/b": [upstream_error("model/b")]})
    events = await collect(
        orchestrate("c1", "Topic", "round_robin", three_participants, 1, provider=provider, store=memory_store)
    )

    errors = [e for e in events if isinstance(e, ErrorEvent)]
    assert len(errors) == 1
    assert errors[0].participant_id == "p-b"
    assert "HTTP 500 from model/b" in errors[0].message

    assert provider.models_called == ["model/a", "model/b", "model/c"]
    gemini_call = provider.calls[2]
    assert "[Claude]" not in _user(gemini_call)
    assert "already spoken: GPT." in _system(gemini_call)

    assert isinstance(events[-1], DiscussionCompleteEvent)
    assert len(memory_store.messages) == 3  # user + two successful turns


async def test_persistence_failure_does_not_stop_discussion(three_participants):
    provider = ScriptedProvider()
    events = await collect(
        orchestrate("c1", "Topic", "round_robin", three_participants, 1, provider=provider, store=FailingStore())
    )

    ends = [e for e in events if isinstance(e, TurnEndEvent)]
    assert len(ends) == 3
    assert all(e.message_id is None for e in ends)
    assert "[GPT]: Hello world" in _user(provider.calls[1])
    assert isinstance(events[-1], DiscussionCompleteEvent)


async def test_abort_between_rounds_schedules_nothing_more(three_participants, memory_store):
    signal = CancelSignal()

    def abort_on_last_turn_of_round_one(model, call_number):
        if call_number == 3:
            signal.abort()

    provider = ScriptedProvider(on_call=abort_on_last_turn_of_round_one)
    events = await collect(
        orchestrate("c1", "Topic", "round_robin", three_participants, 3, signal, provider=provider, store=memory_store)
    )

    assert len(provider.calls) == 3
    assert [e.type for e in events if e.type != "token"] == ["turn_start", "turn_end"] * 3
    assert not any(isinstance(e, (ErrorEvent, DiscussionCompleteEvent)) for e in events)


async def test_abort_mid_stream_ends_run_silently(three_participants, memory_store):
    signal = CancelSignal()
    provider = HangingProvider()
    seen = []

    async for event in orchestrate(
        "c1", "Topic", "round_robin", three_participants, 2, signal, provider=provider, store=memory_store
    ):
        seen.append(event)
        if isinstance(event, TokenEvent):
            signal.abort()

    assert [e.type for e in seen] == ["turn_start", "token"]
    assert len(provider.calls) == 1
    assert [m.role for m in memory_store.messages] == ["user"]


# --- moderated ---


async def test_moderated_call_counts_and_order(moderated_panel, memory_store):
    provider = ScriptedProvider()
    events = await collect(
        orchestrate("c1", "Topic", "moderated", moderated_panel, 2, provider=provider, store=memory_store)
    )

    assert provider.models_called == [
        "model/m",                          # open
        "model/m", "model/a", "model/b",    # round 1
        "model/m",                          # summarize round 1
        "model/m", "model/a", "model/b",    # round 2, no summary after the last round
        "model/m",                          # conclude
    ]
    starts = [e for e in events if isinstance(e, TurnStartEvent)]
    assert [s.round for s in starts] == [0, 1, 1, 1, 1, 2, 2, 2, 2]
    assert events[-1] == DiscussionCompleteEvent(total_rounds=2)


@pytest.mark.parametrize("rounds", [1, 3])
async def test_moderated_call_count_formula(moderated_panel, memory_store, rounds):
    provider = ScriptedProvider()
    await collect(orchestrate("c1", "Topic", "moderated", moderated_panel, rounds, provider=provider, store=memory_store))

    moderator_calls = provider.models_called.count("model/m")
    assert moderator_calls == 1 + rounds + (rounds - 1) + 1
    assert len(provider.calls) - moderator_calls == 2 * rounds


async def test_moderated_prompts_use_phases_and_name_moderator(moderated_panel, memory_store):
    provider = ScriptedProvider()
    await collect(orchestrate("c1", "Topic", "moderated", moderated_panel, 2, provider=provider, store=memory_store))

    calls = provider.calls
    assert "Open the discussion by framing the topic" in _system(calls[0])
    assert "Participants: GPT, Claude" in _system(calls[0])
    assert "This is round 1 of 2." in _system(calls[1])
    assert "Other participants: Claude, Moderator: Mod" in _system(calls[2])
    # The opening counts as having spoken; directing turns do not add to it
    assert "already spoken: Mod." in _system(calls[2])
    assert "Round 1 of 2 just ended." in _system(calls[4])
    assert "The discussion has concluded after 2 rounds." in _system(calls[-1])
    assert "[Moderator - Mod]: Hello world" in _user(calls[2])


async def test_moderated_without_moderator_reports_single_error(three_participants, memory_store):
    provider = ScriptedProvider()
    events = await collect(
        orchestrate("c1", "Topic", "moderated", three_participants, 2, provider=provider, store=memory_store)
    )

    assert events == [ErrorEvent(message="No moderator designated")]
    assert events[0].to_dict() == {"type": "error", "message": "No moderator designated"}
    assert provider.calls == []


# --- configuration ---


@pytest.mark.parametrize(
    "mode, rounds, use_panel",
    [
        ("debate", 2, True),
        ("independent", 2, True),
        ("round_robin", 0, True),
        ("round_robin", 2, False),
    ],
)
async def test_invalid_configuration_raises_before_persisting(three_participants, memory_store, mode, rounds, use_panel):
    participants = three_participants if use_panel else []
    with pytest.raises(ConfigurationError):
        await collect(orchestrate("c1", "Topic", mode, participants, rounds, provider=ScriptedProvider(), store=memory_store))
    assert memory_store.messages == []


# --- independent ---


async def test_independent_answers_every_participant_with_topic_only(three_participants, memory_store):
    provider = ScriptedProvider()
    events = await collect(run_independent("c1", "Question?", three_participants, provider=provider, store=memory_store))

    assert sorted(provider.models_called) == ["model/a", "model/b", "model/c"]
    assert all(_user(call) == "Question?" for call in provider.calls)
    assert all("helpful AI assistant" in _system(call) for call in provider.calls)

    ends = [e for e in events if isinstance(e, TurnEndEvent)]
    assert {e.participant_id for e in ends} == {"p-a", "p-b", "p-c"}
    assert all(e.round == 1 for e in ends)
    assert events[-1] == DiscussionCompleteEvent(total_rounds=1)
    assert [m.role for m in memory_store.messages].count("assistant") == 3


async def test_independent_failure_is_isolated(three_participants, memory_store):
    provider = ScriptedProvider(scripts={"model/a": [upstream_error("model/a")]})
    events = await collect(run_independent("c1", "Question?", three_participants, provider=provider, store=memory_store))

    errors = [e for e in events if isinstance(e, ErrorEvent)]
    assert [e.participant_id for e in errors] == ["p-a"]
    ends = [e for e in events if isinstance(e, TurnEndEvent)]
    assert {e.participant_id for e in ends} == {"p-b", "p-c"}
    assert isinstance(events[-1], DiscussionCompleteEvent)


async def test_independent_pre_aborted_signal_yields_nothing(three_participants, memory_store):
    signal = CancelSignal()
    signal.abort()
    events = await collect(
        run_independent("c1", "Question?", three_participants, signal, provider=ScriptedProvider(), store=memory_store)
    )
    assert events == []


async def test_independent_abort_mid_stream_stops_all_turns(three_participants, memory_store):
    signal = CancelSignal()
    seen = []
    async for event in run_independent(
        "c1", "Question?", three_participants, signal, provider=HangingProvider(), store=memory_store
    ):
        seen.append(event)
        if isinstance(event, TokenEvent):
            signal.abort()

    assert not any(isinstance(e, (TurnEndEvent, DiscussionCompleteEvent, ErrorEvent)) for e in seen)
    assert [m.role for m in memory_store.messages] == ["user"]


async def test_independent_requires_participants(memory_store):
    with pytest.raises(ConfigurationError):
        await collect(run_independent("c1", "Q", [], provider=ScriptedProvider(), store=memory_store))

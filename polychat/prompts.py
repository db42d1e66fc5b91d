"""Instruction builders and history consolidation. Pure functions, no I/O."""

from typing import Literal

from polychat.models import DiscussionHistory

ModeratorPhase = Literal["open", "direct_round", "summarize", "conclude"]

_LANGUAGE_RULE = (
    "IMPORTANT: You MUST respond in the same language as the user's message. "
    "If the user writes in Chinese, respond entirely in Chinese. If in English, respond in English. "
    "Match the user's language exactly."
)
_NO_LABEL_RULE = (
    'IMPORTANT: Do NOT prefix your response with your name or any label like "[Name]:". '
    "Just respond directly."
)
_TURN_INVITATION = "Now it's your turn. Share your perspective."


def build_participant_prompt(
    display_name: str,
    other_participants: list[str],
    round_number: int,
    max_rounds: int,
    spoken_before: list[str] | None = None,
) -> str:
    """System instruction for one ordinary participant turn."""
    has_spoken = bool(spoken_before)

    if has_spoken:
        speaker_context = (
            f"Participants who have already spoken: {', '.join(spoken_before)}. "
            "You can reference and build on their points."
        )
        engagement = (
            "- You may agree, disagree, or add nuance to points already made.\n"
            "- Address others by name when responding to their specific points.\n"
            "- Do NOT repeat what others have already said."
        )
    else:
        speaker_context = (
            "You are the first to speak. No other participant has spoken yet, "
            "so do NOT reference or cite other participants."
        )
        engagement = "- Share your own unique analysis of the topic."

    return (
        f"You are {display_name}, participating in a group discussion with other AI models.\n"
        f"This is round {round_number} of {max_rounds}.\n"
        "\n"
        f"Other participants: {', '.join(other_participants)}\n"
        f"{speaker_context}\n"
        "\n"
        "Guidelines:\n"
        f"- {_LANGUAGE_RULE}\n"
        "- Be concise (2-3 paragraphs max).\n"
        f"- {_NO_LABEL_RULE}\n"
        f"{engagement}\n"
        "- Bring your unique perspective and reasoning style."
    )


def build_moderator_prompt(
    display_name: str,
    participants: list[str],
    phase: ModeratorPhase,
    round_number: int | None = None,
    max_rounds: int | None = None,
) -> str:
    """System instruction for the moderator in the given phase.

    Raises:
        ValueError: If ``phase`` is not one of the four moderator phases.
    """
    base = (
        f"You are {display_name}, the moderator of a group discussion between AI models.\n"
        f"Participants: {', '.join(participants)}\n"
        "\n"
        f"{_NO_LABEL_RULE}\n"
        f"{_LANGUAGE_RULE}"
    )

    if phase == "open":
        return (
            f"{base}\n\n"
            "Your role now: Open the discussion by framing the topic. Introduce the key questions "
            "and angles to explore. Be concise (1-2 paragraphs). End by inviting participants to "
            "share their perspectives."
        )
    if phase == "direct_round":
        return (
            f"{base}\n"
            f"This is round {round_number} of {max_rounds}.\n\n"
            "Your role now: Guide this round by posing a specific question or highlighting a point "
            "of tension from previous responses. Direct the conversation to explore new angles. "
            "Be brief (1-2 sentences)."
        )
    if phase == "summarize":
        return (
            f"{base}\n"
            f"Round {round_number} of {max_rounds} just ended.\n\n"
            "Your role now: Briefly summarize the key insights, agreements, and disagreements from "
            "this round. Highlight any particularly interesting or novel points. "
            "Be concise (1-2 paragraphs)."
        )
    if phase == "conclude":
        return (
            f"{base}\n"
            f"The discussion has concluded after {max_rounds} rounds.\n\n"
            "Your role now: Provide a final synthesis of all perspectives. Summarize the main "
            "takeaways, areas of consensus, remaining disagreements, and any actionable insights. "
            "Be thorough but concise (2-3 paragraphs)."
        )
    raise ValueError(f"Unknown moderator phase: {phase!r}")


def build_independent_prompt() -> str:
    """System instruction for a standalone answer in independent mode."""
    return (
        "You are a helpful AI assistant. Provide a thoughtful and comprehensive response to the "
        f"user's question. {_LANGUAGE_RULE}"
    )


def consolidate_history(history: DiscussionHistory) -> str:
    """Flatten the topic and all prior turns into one user message.

    Some providers reject a message list that ends on an assistant turn, so
    every model call sees a single user message instead of the raw history.
    """
    prior_turns = history.prior_turns
    if not prior_turns:
        return history.topic

    discussion = "\n\n".join(entry.content for entry in prior_turns)
    return f"Topic: {history.topic}\n\nDiscussion so far:\n{discussion}\n\n{_TURN_INVITATION}"

"""Model catalogue and panel construction from plain model ids."""

from polychat.models import Participant

# Curated defaults for quick selection; settings.yaml may extend or override these.
DEFAULT_MODELS: dict[str, str] = {
    "openai/gpt-4o": "GPT-4o",
    "anthropic/claude-sonnet-4": "Claude Sonnet 4",
    "google/gemini-2.5-pro-preview": "Gemini 2.5 Pro",
    "deepseek/deepseek-r1": "DeepSeek R1",
    "meta-llama/llama-4-maverick": "Llama 4 Maverick",
    "qwen/qwen3-235b-a22b": "Qwen3 235B",
}


def model_display_name(model_id: str, catalogue: dict[str, str] | None = None) -> str:
    """Human-readable name: catalogue entry, else the prettified model slug."""
    names = {**DEFAULT_MODELS, **(catalogue or {})}
    if model_id in names:
        return names[model_id]
    slug = model_id.split("/")[-1]
    return " ".join(word[:1].upper() + word[1:] for word in slug.replace("-", " ").split())


def build_panel(
    model_ids: list[str],
    moderator: str | None = None,
    catalogue: dict[str, str] | None = None,
) -> list[Participant]:
    """Turn model ids into ordered participants; the moderator, if any, goes last.

    Ids are positional (``p0``, ``p1``, ...) and are replaced when the panel
    is saved with a conversation. A model listed twice gets a numbered
    display name so history labels stay distinguishable.

    Raises:
        ValueError: If ``model_ids`` is empty.
    """
    if not model_ids:
        raise ValueError("A panel needs at least one model")

    entries: list[tuple[str, str]] = [(m, "participant") for m in model_ids]
    if moderator:
        entries.append((moderator, "moderator"))

    seen: dict[str, int] = {}
    panel: list[Participant] = []
    for index, (model_id, role) in enumerate(entries):
        name = model_display_name(model_id, catalogue)
        seen[name] = seen.get(name, 0) + 1
        if seen[name] > 1:
            name = f"{name} ({seen[name]})"
        panel.append(
            Participant(
                id=f"p{index}",
                model_id=model_id,
                display_name=name,
                role=role,  # type: ignore[arg-type]
                order_index=index,
            )
        )
    return panel

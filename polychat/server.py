"""FastAPI boundary: streams discussion events as SSE and serves stored conversations."""

import logging
import uuid
from collections.abc import AsyncIterator
from time import perf_counter
from typing import Literal

import click
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from config.config_loader import AppConfig, load_config
from polychat.cancel import CancelSignal
from polychat.models import DiscussionEvent, ErrorEvent, Participant
from polychat.orchestrator import orchestrate, run_independent
from polychat.participants import model_display_name
from polychat.providers.base import CompletionProvider
from polychat.providers.factory import build_provider
from polychat.sse import encode_event
from polychat.storage import JsonConversationStore

logger = logging.getLogger(__name__)

_SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ParticipantPayload(_CamelModel):
    id: str | None = None
    model_id: str = Field(alias="modelId")
    display_name: str | None = Field(default=None, alias="displayName")
    role: Literal["participant", "moderator"] = "participant"
    order_index: int = Field(default=0, alias="orderIndex")


class DiscussRequest(_CamelModel):
    conversation_id: str = Field(alias="conversationId")
    user_message: str = Field(alias="userMessage", min_length=1)
    mode: Literal["round_robin", "moderated"]
    participants: list[ParticipantPayload] | None = None
    max_rounds: int = Field(alias="maxRounds", ge=1)


class IndependentRequest(_CamelModel):
    conversation_id: str = Field(alias="conversationId")
    user_message: str = Field(alias="userMessage", min_length=1)
    participants: list[ParticipantPayload] | None = None


class CreateConversationRequest(_CamelModel):
    mode: Literal["independent", "round_robin", "moderated"]
    participants: list[ParticipantPayload] = Field(min_length=1)


class UpdateConversationRequest(_CamelModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=200)


def _to_participants(
    payloads: list[ParticipantPayload],
    conversation_id: str,
    catalogue: dict[str, str],
) -> list[Participant]:
    return [
        Participant(
            id=p.id or f"{conversation_id}-p{i}",
            model_id=p.model_id,
            display_name=p.display_name or model_display_name(p.model_id, catalogue),
            role=p.role,
            order_index=p.order_index,
            conversation_id=conversation_id,
        )
        for i, p in enumerate(payloads)
    ]


async def _sse_frames(
    events: AsyncIterator[DiscussionEvent],
    cancel: CancelSignal,
    request_id: str,
) -> AsyncIterator[str]:
    """Frame events for the wire; a dropped client tears this generator down and aborts the run."""
    start = perf_counter()
    try:
        async for event in events:
            yield encode_event(event)
    except Exception as exc:
        if cancel.aborted:
            return
        logger.exception("api.stream.error id=%s error=%s", request_id, exc)
        yield encode_event(ErrorEvent(message=str(exc) or "Discussion failed"))
    finally:
        cancel.abort()
        logger.info("api.stream.done id=%s elapsed_s=%.2f", request_id, perf_counter() - start)


def create_app(
    config: AppConfig,
    provider: CompletionProvider | None = None,
    store: JsonConversationStore | None = None,
) -> FastAPI:
    """Build the API. ``provider`` and ``store`` default to the configured ones."""
    provider = provider or build_provider(config.provider)
    store = store or JsonConversationStore(config.defaults.data_dir)

    app = FastAPI(title="Polychat API")
    if config.server.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.server.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    async def _participants_for(conversation_id: str, payloads: list[ParticipantPayload] | None) -> list[Participant]:
        conversation = await store.get_conversation(conversation_id)
        if conversation is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
        participants = (
            _to_participants(payloads, conversation_id, config.models) if payloads else conversation.participants
        )
        if not participants:
            raise HTTPException(status_code=400, detail="At least one participant is required")
        return participants

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "Polychat API"}

    @app.post("/api/discuss")
    async def discuss(request: DiscussRequest):
        """Run a round-robin or moderated discussion, streamed as server-sent events."""
        if request.max_rounds > config.defaults.rounds_limit:
            raise HTTPException(status_code=400, detail=f"maxRounds must be <= {config.defaults.rounds_limit}")
        participants = await _participants_for(request.conversation_id, request.participants)

        request_id = str(uuid.uuid4())[:8]
        logger.info(
            "api.discuss.start id=%s conversation_id=%s mode=%s participants=%d rounds=%d",
            request_id,
            request.conversation_id,
            request.mode,
            len(participants),
            request.max_rounds,
        )
        cancel = CancelSignal()
        events = orchestrate(
            request.conversation_id,
            request.user_message,
            request.mode,
            participants,
            request.max_rounds,
            cancel,
            provider=provider,
            store=store,
        )
        return StreamingResponse(
            _sse_frames(events, cancel, request_id), media_type="text/event-stream", headers=_SSE_HEADERS
        )

    @app.post("/api/independent")
    async def independent(request: IndependentRequest):
        """Ask every participant in parallel, streamed as server-sent events."""
        participants = await _participants_for(request.conversation_id, request.participants)
        request_id = str(uuid.uuid4())[:8]
        logger.info(
            "api.independent.start id=%s conversation_id=%s participants=%d",
            request_id,
            request.conversation_id,
            len(participants),
        )
        cancel = CancelSignal()
        events = run_independent(
            request.conversation_id,
            request.user_message,
            participants,
            cancel,
            provider=provider,
            store=store,
        )
        return StreamingResponse(
            _sse_frames(events, cancel, request_id), media_type="text/event-stream", headers=_SSE_HEADERS
        )

    @app.get("/api/conversations")
    async def list_conversations():
        """List all conversations (metadata only)."""
        return [
            {
                "id": c.id,
                "title": c.title,
                "mode": c.mode,
                "createdAt": c.created_at.isoformat(),
                "updatedAt": c.updated_at.isoformat(),
                "messageCount": len(c.messages),
            }
            for c in await store.list_conversations()
        ]

    @app.post("/api/conversations")
    async def create_conversation(request: CreateConversationRequest):
        moderators = [p for p in request.participants if p.role == "moderator"]
        if len(moderators) > 1:
            raise HTTPException(status_code=400, detail="At most one moderator per conversation")
        conversation = await store.create_conversation(
            request.mode, _to_participants(request.participants, "", config.models)
        )
        return conversation.to_dict()

    @app.get("/api/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str):
        conversation = await store.get_conversation(conversation_id)
        if conversation is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return conversation.to_dict()

    @app.patch("/api/conversations/{conversation_id}")
    async def rename_conversation(conversation_id: str, request: UpdateConversationRequest):
        try:
            conversation = await store.update_title(conversation_id, request.title)
        except KeyError:
            raise HTTPException(status_code=404, detail="Conversation not found") from None
        return conversation.to_dict()

    @app.delete("/api/conversations/{conversation_id}", status_code=204)
    async def delete_conversation(conversation_id: str):
        if not await store.delete_conversation(conversation_id):
            raise HTTPException(status_code=404, detail="Conversation not found")
        return Response(status_code=204)

    return app


@click.command()
@click.option("--host", default=None, help="Bind address (default: from config)")
@click.option("--port", default=None, type=int, help="Port (default: from config)")
@click.option("--log-level", default="info", type=click.Choice(["critical", "error", "warning", "info", "debug"]))
def main(host: str | None, port: int | None, log_level: str) -> None:
    """Serve the Polychat API with uvicorn."""
    import uvicorn

    load_dotenv()
    logging.basicConfig(level=log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    config = load_config()
    app = create_app(config)
    uvicorn.run(
        app,
        host=host or config.server.host,
        port=port or config.server.port,
        log_level=log_level,
    )


if __name__ == "__main__":
    main()

"""FastAPI entry point for the completion relay."""

from __future__ import annotations

import json
import logging
import uuid
from typing import AsyncIterator, Dict, Optional, Tuple

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, validator
from starlette.background import BackgroundTask

from .config import RelayConfig, SESSION_TTL_SECONDS
from .exceptions import RelayError
from .llm_client import EVENT_STREAM_MEDIA_TYPE, UpstreamCompletionClient
from .models import Role
from .service import CompletionOrchestrator, CompletionRun
from .store import ConversationStore, build_store
from .utils import setup_logging

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
}


class CompletionRequest(BaseModel):
    message: str = Field(..., description="User message for this turn.")

    @validator("message")
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class ChatMessageResponse(BaseModel):
    id: str
    role: str
    content: str
    done: bool = True


class MessagesResponse(BaseModel):
    messages: list[ChatMessageResponse] = Field(default_factory=list)


def format_sse(data: str, *, event: Optional[str] = None) -> str:
    """Frame ``data`` as one ``text/event-stream`` message."""
    lines = []
    if event:
        lines.append(f"event: {event}")
    lines.extend(f"data: {line}" for line in data.split("\n"))
    return "\n".join(lines) + "\n\n"


def _resolve_session(request: Request, config: RelayConfig) -> Tuple[str, bool]:
    session_id = request.cookies.get(config.session_cookie_name)
    if session_id:
        return session_id, False
    return uuid.uuid4().hex, True


def _attach_session_cookie(response: Response, session_id: str, config: RelayConfig) -> None:
    response.set_cookie(
        config.session_cookie_name,
        session_id,
        max_age=SESSION_TTL_SECONDS,
        httponly=True,
        samesite="strict",
        secure=config.session_cookie_secure,
    )


async def _sse_stream(run: CompletionRun) -> AsyncIterator[str]:
    try:
        async for event in run.events():
            yield format_sse(event.to_json())
    except RelayError as exc:
        payload = json.dumps({"error": exc.code, "message": exc.message})
        yield format_sse(payload, event="error")


def create_app(
    config: Optional[RelayConfig] = None,
    *,
    store: Optional[ConversationStore] = None,
    client: Optional[UpstreamCompletionClient] = None,
    log_dir: Optional[str] = None,
) -> FastAPI:
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    config = config or RelayConfig()
    orchestrator = CompletionOrchestrator(
        store or build_store(config.store),
        client or UpstreamCompletionClient(config.upstream),
        config,
    )

    app = FastAPI(title="Chat Relay", version="0.1.0")
    app.state.config = config
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/completion")
    async def completion(request: Request, body: CompletionRequest):
        session_id, is_new = _resolve_session(request, config)
        logger.info("Streaming completion for session %s", session_id)
        try:
            run = await app.state.orchestrator.start(session_id, body.message)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except RelayError as exc:
            raise HTTPException(status_code=exc.http_status, detail={"error": exc.code, "message": exc.message}) from exc
        except Exception as exc:
            logger.exception("Completion request failed (session_id=%s)", session_id)
            raise HTTPException(status_code=500, detail="Completion request failed") from exc

        response = StreamingResponse(
            _sse_stream(run),
            media_type=EVENT_STREAM_MEDIA_TYPE,
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
            background=BackgroundTask(run.aclose),
        )
        if is_new:
            _attach_session_cookie(response, session_id, config)
        return response

    @app.get("/api/messages", response_model=MessagesResponse)
    async def messages(request: Request, response: Response):
        session_id, is_new = _resolve_session(request, config)
        if is_new:
            _attach_session_cookie(response, session_id, config)
            return MessagesResponse()
        try:
            history = await app.state.orchestrator.get_history(session_id)
        except RelayError as exc:
            raise HTTPException(status_code=exc.http_status, detail={"error": exc.code, "message": exc.message}) from exc
        items = [
            ChatMessageResponse(id=uuid.uuid4().hex, role=message.role.value, content=message.content)
            for message in history
            if message.role is not Role.SYSTEM
        ]
        return MessagesResponse(messages=items)

    @app.delete("/api/messages")
    async def clear_messages(request: Request) -> Dict[str, bool]:
        session_id, is_new = _resolve_session(request, config)
        if not is_new:
            try:
                await app.state.orchestrator.clear_history(session_id)
            except RelayError as exc:
                raise HTTPException(
                    status_code=exc.http_status, detail={"error": exc.code, "message": exc.message}
                ) from exc
        return {"success": True}

    return app

"""FastAPI SSE adapter: thin translation layer, no business logic."""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from docchat_engine import create_engine
from docchat_engine.engine.agent import DocChatEngine
from docchat_engine.engine.models import EngineEvent, Role, SelectionContext
from docchat_engine.engine.session import InMemorySesStore, SesStore
from docchat_engine.prompts import NO_CHANGES_TO_SAVE

logger = logging.getLogger(__name__)


class SendBody(BaseModel):
    text: str | None = None


class EditBody(BaseModel):
    text: str


class ContextBody(BaseModel):
    source_documents: list[str] | None = None
    selection: SelectionContext | None = None
    model: str | None = None
    pending_input: str | None = None


class DocumentBody(BaseModel):
    html: str


class SaveBody(BaseModel):
    content: str
    reason: str | None = None


def _sse(events: AsyncIterator[EngineEvent]) -> StreamingResponse:
    async def sse_stream():
        async for event in events:
            payload = json.dumps(event.model_dump(mode="json"), default=str)
            yield f"event: {event.type.value}\ndata: {payload}\n\n"

    return StreamingResponse(
        sse_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


def create_app(engine: DocChatEngine | None = None, store: SesStore | None = None) -> FastAPI:
    engine = engine or create_engine()
    store = store or InMemorySesStore()
    app = FastAPI(title="DocChat API", version="0.1.0")

    # -- conversation ---------------------------------------------------------

    @app.post("/sessions/{session_id}/messages")
    async def send_message(session_id: str, body: SendBody) -> StreamingResponse:
        session = await store.get_or_create(session_id)
        return _sse(engine.send_message(session, body.text))

    @app.post("/sessions/{session_id}/messages/{index}/edit")
    async def edit_message(session_id: str, index: int, body: EditBody) -> StreamingResponse:
        session = await store.get_or_create(session_id)
        return _sse(engine.edit_message(session, index, body.text))

    @app.post("/sessions/{session_id}/messages/{index}/retry")
    async def retry_message(session_id: str, index: int) -> StreamingResponse:
        session = await store.get_or_create(session_id)
        messages = session.history.messages
        if 0 <= index < len(messages) and messages[index].role == Role.ASSISTANT:
            return _sse(engine.retry_assistant_message(session, index))
        return _sse(engine.retry_user_message(session, index))

    @app.post("/sessions/{session_id}/stop")
    async def stop(session_id: str) -> JSONResponse:
        session = await store.get_or_create(session_id)
        return JSONResponse({"stopped": engine.stop(session)})

    @app.post("/sessions/{session_id}/reset")
    async def reset(session_id: str) -> JSONResponse:
        session = await store.get_or_create(session_id)
        engine.reset(session)
        return JSONResponse(engine.snapshot(session))

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str) -> JSONResponse:
        session = await store.get_or_create(session_id)
        return JSONResponse(engine.snapshot(session))

    @app.put("/sessions/{session_id}/context")
    async def set_context(session_id: str, body: ContextBody) -> JSONResponse:
        session = await store.get_or_create(session_id)
        if body.source_documents is not None:
            session.source_documents = body.source_documents
        if body.pending_input is not None:
            session.pending_input = body.pending_input
        if body.model is not None:
            session.model = body.model
        session.selection = body.selection
        await store.save(session)
        return JSONResponse(engine.snapshot(session))

    # -- document versions ------------------------------------------------------

    @app.post("/sessions/{session_id}/document")
    async def load_document(session_id: str, body: DocumentBody) -> JSONResponse:
        session = await store.get_or_create(session_id)
        version = engine.load_generated_document(session, body.html)
        return JSONResponse(version.model_dump(mode="json"))

    @app.post("/sessions/{session_id}/document/dirty")
    async def mark_dirty(session_id: str) -> JSONResponse:
        session = await store.get_or_create(session_id)
        engine.mark_document_dirty(session)
        return JSONResponse(engine.snapshot(session))

    @app.post("/sessions/{session_id}/versions")
    async def save_version(session_id: str, body: SaveBody) -> JSONResponse:
        session = await store.get_or_create(session_id)
        if body.reason:
            version = engine.save_version(session, body.content, body.reason)
        else:
            version = engine.save_version(session, body.content)
        if version is None:
            return JSONResponse({"saved": False, "notice": NO_CHANGES_TO_SAVE})
        return JSONResponse({"saved": True, "version": version.model_dump(mode="json")})

    @app.post("/sessions/{session_id}/versions/{version_id}/preview")
    async def preview_version(session_id: str, version_id: str) -> JSONResponse:
        session = await store.get_or_create(session_id)
        if engine.preview_version(session, version_id) is None:
            raise HTTPException(status_code=404, detail="version not found")
        return JSONResponse(engine.snapshot(session))

    @app.post("/sessions/{session_id}/preview/exit")
    async def exit_preview(session_id: str) -> JSONResponse:
        session = await store.get_or_create(session_id)
        engine.exit_preview(session)
        return JSONResponse(engine.snapshot(session))

    @app.post("/sessions/{session_id}/versions/{version_id}/revert")
    async def revert_version(session_id: str, version_id: str) -> JSONResponse:
        session = await store.get_or_create(session_id)
        engine.revert_version(session, version_id)
        return JSONResponse(engine.snapshot(session))

    @app.delete("/sessions/{session_id}/versions/{version_id}")
    async def delete_version(session_id: str, version_id: str) -> JSONResponse:
        session = await store.get_or_create(session_id)
        engine.delete_version(session, version_id)
        return JSONResponse(engine.snapshot(session))

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    return app


# Module-level instance for ``uvicorn docchat_engine.adapters.web_fastapi.app:app``
app = create_app()


def serve() -> None:
    """Entry-point for ``docchat-web`` console script."""
    import uvicorn

    uvicorn.run(
        "docchat_engine.adapters.web_fastapi.app:app",
        host="0.0.0.0",
        port=8000,
        log_level="info",
    )

"""FastAPI entrypoint for the journal context backend."""

from __future__ import annotations

import asyncio
import logging
import threading

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from app_state import JournalAppState
from config import Settings
from context_models import (
    ChatRequest,
    ChatResponsePayload,
    ContextBlockPayload,
    ContextRequest,
    ContextResponsePayload,
    ConversationTurnPayload,
    CreateSessionRequest,
    RebuildResponsePayload,
    SelectionRequest,
    SessionPayload,
    SessionsResponsePayload,
    StatsResponsePayload,
)
from context_service import AssembledContext
from conversations import ConversationSession
from logging_config import configure_logging
from models import (
    CreateFolderRequest,
    CreateNoteRequest,
    DeleteNoteRequest,
    NoteContentPayload,
    NotesResponsePayload,
    PinRequest,
    SearchHitPayload,
    SearchRequest,
    SearchResponsePayload,
    UpdateNoteRequest,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Journal Context Backend", description="Offline retrieval and context assembly for a journal")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_state_lock = threading.Lock()


def services() -> JournalAppState:
    """Application state, built from the environment on first use."""
    with _state_lock:
        state = getattr(app.state, "journal", None)
        if state is None:
            settings = Settings.from_env()
            configure_logging(settings.log_level)
            state = JournalAppState(settings)
            app.state.journal = state
        return state


async def _in_worker(operation):
    """Run `operation(state)` in a worker thread, resolving the state there too."""
    return await asyncio.to_thread(lambda: operation(services()))


def _hit_payload(hit) -> SearchHitPayload:
    return SearchHitPayload(
        note_id=hit.note_id,
        chunk_id=hit.chunk_id,
        ordinal=hit.ordinal,
        text=hit.text,
        score=hit.score,
    )


def _session_payload(session: ConversationSession) -> SessionPayload:
    return SessionPayload(
        id=session.id,
        title=session.title,
        messages=[ConversationTurnPayload(role=m.role, content=m.content, timestamp=m.timestamp) for m in session.messages],
        selected_document_ids=list(session.selected_document_ids),
        created_at=session.created_at,
        updated_at=session.updated_at,
    )


def _context_payload(context: AssembledContext) -> ContextResponsePayload:
    return ContextResponsePayload(
        context=context.text,
        blocks=[
            ContextBlockPayload(tier=b.tier, text=b.text, tokens=b.tokens, sources=list(b.sources))
            for b in context.blocks
        ],
        usage=context.usage(),
        total_tokens=context.total_tokens,
        token_budget=context.budget.total_tokens,
        degraded=context.degraded,
        skipped=context.skipped,
        retrieved=[_hit_payload(hit) for hit in context.retrieved],
    )


@app.get("/", tags=["health"])
async def root():
    return {"status": "ok", "message": "Journal context backend is running"}


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok", "message": "Journal context backend is running"}


@app.get("/notes", response_model=NotesResponsePayload, tags=["notes"])
async def notes():
    try:
        return await _in_worker(lambda s: s.notes.tree())
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@app.get("/note/{note_id:path}", response_model=NoteContentPayload, tags=["notes"])
async def get_note(note_id: str):
    try:
        return await _in_worker(lambda s: s.notes.get_note(note_id))
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Note not found")
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/update-note", tags=["notes"])
async def update_note(request: UpdateNoteRequest):
    try:
        record = await _in_worker(lambda s: s.notes.save_note(request))
        return {"success": True, "note_id": record.id}
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        logger.exception("Failed to save note %s", request.note_id)
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/create-note", tags=["notes"])
async def create_note(request: CreateNoteRequest):
    try:
        record = await _in_worker(lambda s: s.notes.create_note(request))
        return {
            "success": True,
            "note_id": record.id,
            "note": {
                "id": record.id,
                "title": record.title,
                "type": record.kind.value,
                "children": record.children,
                "pinned": record.pinned,
            },
        }
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        logger.exception("Failed to create note %s", request.note_id)
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/create-folder", tags=["notes"])
async def create_folder(request: CreateFolderRequest):
    try:
        folder = await _in_worker(lambda s: s.notes.create_folder(request))
        return {
            "success": True,
            "folder_id": folder.id,
            "folder": {
                "id": folder.id,
                "title": folder.title,
                "type": folder.kind.value,
                "children": folder.children,
                "pinned": folder.pinned,
            },
        }
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/delete-note", tags=["notes"])
async def delete(request: DeleteNoteRequest):
    try:
        deleted = await _in_worker(lambda s: s.notes.delete_item(request.note_id))
        return {"success": True, "deleted": deleted}
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Note not found")
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/pin", tags=["notes"])
async def pin(request: PinRequest):
    try:
        record = await _in_worker(lambda s: s.notes.set_pinned(request.note_id, request.pinned))
        return {"success": True, "note_id": record.id, "pinned": record.pinned}
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Note not found")
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/search", response_model=SearchResponsePayload, tags=["search"])
async def search(request: SearchRequest):
    try:
        hits = await _in_worker(lambda s: s.indexing.find_similar(request.query, request.top_k))
        return SearchResponsePayload(results=[_hit_payload(hit) for hit in hits])
    except Exception as exc:
        logger.exception("Search failed")
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/sessions", response_model=SessionPayload, tags=["chat"])
async def create_session(request: CreateSessionRequest = CreateSessionRequest()):
    try:
        session = await _in_worker(lambda s: s.conversations.create_session(request.title))
        return _session_payload(session)
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@app.get("/sessions", response_model=SessionsResponsePayload, tags=["chat"])
async def list_sessions():
    try:
        sessions = await _in_worker(lambda s: s.conversations.list_sessions())
        return SessionsResponsePayload(sessions=[_session_payload(s) for s in sessions])
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@app.get("/sessions/{session_id}", response_model=SessionPayload, tags=["chat"])
async def get_session(session_id: str):
    try:
        session = await _in_worker(lambda s: s.conversations.get_session(session_id))
        return _session_payload(session)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/sessions/{session_id}/selection", response_model=SessionPayload, tags=["chat"])
async def set_selection(session_id: str, request: SelectionRequest):
    try:
        session = await _in_worker(lambda s: s.conversations.set_selection(session_id, request.document_ids))
        return _session_payload(session)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/context", response_model=ContextResponsePayload, tags=["chat"])
async def context(request: ContextRequest):
    try:
        assembled = await _in_worker(
            lambda s: s.chat.build_context(request.query, request.session_id, request.token_budget)
        )
        return _context_payload(assembled)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    except Exception as exc:
        logger.exception("Context assembly failed")
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/chat", response_model=ChatResponsePayload, tags=["chat"])
async def chat(request: ChatRequest):
    try:
        answer = await _in_worker(
            lambda s: s.chat.answer(request.query, request.session_id, request.token_budget)
        )
        return ChatResponsePayload(
            answer=answer.answer,
            available=answer.available,
            reason=answer.reason,
            session_id=answer.session_id,
            context_tokens=answer.context.total_tokens,
            degraded=answer.context.degraded,
        )
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    except Exception as exc:
        logger.exception("Chat failed")
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/admin/rebuild-index", response_model=RebuildResponsePayload, tags=["admin"])
async def rebuild_index():
    try:
        processed, chunks = await _in_worker(lambda s: (s.notes.rebuild_index(), s.index.chunk_count()))
        return RebuildResponsePayload(documents=processed, chunks=chunks)
    except Exception as exc:
        logger.exception("Index rebuild failed")
        raise HTTPException(status_code=500, detail=str(exc))


@app.get("/admin/stats", response_model=StatsResponsePayload, tags=["admin"])
async def stats():
    try:
        summary = await _in_worker(lambda s: s.indexing.stats())
        return StatsResponsePayload(**summary)
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))


if __name__ == "__main__":
    services()
    uvicorn.run(app, host="127.0.0.1", port=8000)

"""FastAPI REST API for Recall."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from recall.config import get_settings
from recall.ingestion.chunks import Chunk
from recall.storage.db import get_session, init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from recall.daemon import run_sweeper

    await init_db()
    stop_event = asyncio.Event()
    sweeper = asyncio.create_task(run_sweeper(stop_event))
    try:
        yield
    finally:
        stop_event.set()
        await sweeper


app = FastAPI(
    title="Recall API",
    description="Conversation capture and context memory for terminal AI sessions",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().server.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Pydantic request/response models ---

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CaptureRequest(CamelModel):
    chunks: list[Chunk] = Field(min_length=1)
    project_path: Optional[str] = None


class CaptureResponse(CamelModel):
    success: bool = True
    processed: int
    current_session: str
    total_conversations: int
    conversations_stored: int = 0
    patterns_detected: int = 0
    duplicates_skipped: int = 0


class InitRequest(CamelModel):
    project_path: str = Field(min_length=1)
    enable_watcher: Optional[bool] = None
    name: Optional[str] = None


class InitResponse(CamelModel):
    success: bool = True
    folder_id: str
    session_id: str
    watcher_enabled: bool


class FinalizeRequest(CamelModel):
    summary: Optional[str] = None
    next_steps: Optional[list[str]] = None


class SessionResponse(CamelModel):
    id: str
    folder_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    total_conversations: int = 0
    success_rate: float = 0.0
    summary: Optional[str] = None
    next_steps: Optional[list[str]] = None
    files_modified: Optional[list[str]] = None


class ConversationResponse(CamelModel):
    id: str
    session_id: str
    source_session_id: Optional[str] = None
    user_input: str
    claude_reply: str
    timestamp: datetime
    success: Optional[int] = None
    error_type: Optional[str] = None
    files_involved: list[str] = []
    tokens_used: int = 0
    completed_at: Optional[datetime] = None


class PatternResponse(CamelModel):
    id: str
    pattern_type: str
    description: str
    frequency: int
    confidence: float
    first_seen: datetime
    last_seen: datetime
    metadata: Optional[dict] = Field(default=None, validation_alias="metadata_")


class TerminalEndResponse(CamelModel):
    success: bool = True
    turns_closed: int


# --- Helpers ---

async def _folder_or_404(session, project_path: str):
    from recall.storage.store import get_folder_by_path

    folder = await get_folder_by_path(session, project_path)
    if not folder:
        raise HTTPException(status_code=404, detail="Project not found")
    return folder


# --- Endpoints ---

@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/context/init", response_model=InitResponse)
async def init_context(body: InitRequest):
    """Create (or fetch) the context folder for a project and open a session."""
    from recall.storage.store import ensure_folder, ensure_open_session

    async with get_session() as session:
        folder = await ensure_folder(
            session, body.project_path, name=body.name, watcher_enabled=body.enable_watcher
        )
        ctx = await ensure_open_session(session, folder.id)
        return InitResponse(folder_id=folder.id, session_id=ctx.id, watcher_enabled=folder.watcher_enabled)


@app.post("/api/context/capture", response_model=CaptureResponse)
async def capture(body: CaptureRequest):
    """Ingest a batch of terminal chunks."""
    from recall.ingestion.pipeline import get_capture_service

    try:
        result = await get_capture_service().process_batch(body.chunks, project_path=body.project_path)
    except Exception as e:
        logger.error("Capture failed: %s", e, exc_info=True)
        raise HTTPException(status_code=500, detail="Capture failed; retry the batch")
    return CaptureResponse(
        processed=result["processed"],
        current_session=result["currentSession"],
        total_conversations=result["totalConversations"],
        conversations_stored=result["conversationsStored"],
        patterns_detected=result["patternsDetected"],
        duplicates_skipped=result["duplicatesSkipped"],
    )


@app.get("/api/context/stats")
async def stats(project_path: Optional[str] = Query(None, alias="projectPath")):
    """Memory statistics for one project, or all of them."""
    from recall.context.stats import get_stats

    async with get_session() as session:
        folder_id = None
        if project_path:
            folder_id = (await _folder_or_404(session, project_path)).id
        return await get_stats(session, folder_id)


@app.post("/api/context/sessions/{session_id}/finalize", response_model=SessionResponse)
async def finalize(session_id: str, body: Optional[FinalizeRequest] = None):
    """Close a context session with an optional summary and next steps."""
    from recall.storage.store import finalize_session

    body = body or FinalizeRequest()
    async with get_session() as session:
        ctx = await finalize_session(session, session_id, summary=body.summary, next_steps=body.next_steps)
        if not ctx:
            raise HTTPException(status_code=404, detail="Session not found")
        return SessionResponse.model_validate(ctx, from_attributes=True)


@app.post("/api/context/terminals/{terminal_id}/end", response_model=TerminalEndResponse)
async def end_terminal(terminal_id: str):
    """Close a terminal session's open turn."""
    from recall.ingestion.pipeline import get_capture_service

    closed = await get_capture_service().end_terminal_session(terminal_id)
    return TerminalEndResponse(turns_closed=closed)


@app.get("/api/context/resumption")
async def resumption(
    project_path: str = Query(..., alias="projectPath"),
    scope: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=50),
):
    """Continuity context for picking a project back up."""
    from recall.context.resumption import get_resumption_context

    async with get_session() as session:
        folder = await _folder_or_404(session, project_path)
        limit = limit or get_settings().sessions.resumption_limit
        return await get_resumption_context(session, folder.id, scope=scope, limit=limit)


@app.get("/api/context/conversations", response_model=list[ConversationResponse])
async def conversations(
    project_path: str = Query(..., alias="projectPath"),
    limit: int = Query(20, le=200),
):
    """Recent conversations for a project, newest first."""
    from recall.storage.store import list_recent_conversations

    async with get_session() as session:
        folder = await _folder_or_404(session, project_path)
        rows = await list_recent_conversations(session, folder.id, limit=limit)
        return [ConversationResponse.model_validate(r, from_attributes=True) for r in rows]


@app.get("/api/context/patterns", response_model=list[PatternResponse])
async def patterns(
    project_path: str = Query(..., alias="projectPath"),
    pattern_type: Optional[str] = Query(None, alias="patternType"),
    limit: int = Query(20, le=200),
):
    """Detected patterns for a project, most frequent first."""
    from recall.storage.memory import list_patterns

    async with get_session() as session:
        folder = await _folder_or_404(session, project_path)
        rows = await list_patterns(session, folder.id, pattern_type=pattern_type, limit=limit)
        return [PatternResponse.model_validate(r, from_attributes=True) for r in rows]


@app.get("/api/context/relevant")
async def relevant(
    query: str = Query(..., min_length=1),
    project_path: Optional[str] = Query(None, alias="projectPath"),
    files: list[str] = Query([]),
    error_context: Optional[str] = Query(None, alias="errorContext"),
    limit: Optional[int] = Query(None, ge=1, le=20),
):
    """Past successful conversations relevant to what the user is doing now."""
    from recall.context.retrieval import find_relevant_conversations

    async with get_session() as session:
        folder_id = None
        if project_path:
            folder_id = (await _folder_or_404(session, project_path)).id
        return await find_relevant_conversations(
            session, query, folder_id=folder_id, current_files=files, error_context=error_context, limit=limit
        )

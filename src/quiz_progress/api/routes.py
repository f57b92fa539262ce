"""REST API routes for the UI/session layer."""

import uuid
from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from quiz_progress.models.progress import MistakeSource, display_correct_count
from quiz_progress.models.session import Answer, StudyMode, StudySession
from quiz_progress.store import ProgressStore

logger = structlog.get_logger()
router = APIRouter(prefix="/api")


class IdentityRequest(BaseModel):
    identity: str = Field(min_length=1)


class StartSessionRequest(BaseModel):
    mode: StudyMode = StudyMode.CATEGORY
    category: str | None = None
    question_ids: list[str] = Field(default_factory=list)
    questions: list[dict[str, Any]] = Field(default_factory=list)
    part: int | None = None
    time_limit: int | None = None


class AnswerRequest(BaseModel):
    question_id: str
    selected_answer: str = ""
    is_correct: bool
    source: MistakeSource | None = None
    mock_number: int | None = None


class ResetRequest(BaseModel):
    confirm: bool = False


def get_store(request: Request) -> ProgressStore:
    return request.app.state.store


def _active_sessions(request: Request) -> dict[str, StudySession]:
    return request.app.state.sessions


def require_identity(store: ProgressStore) -> str:
    if store.identity is None:
        raise HTTPException(status_code=409, detail="No identity established")
    return store.identity


def validate_session_id(session_id: str) -> str:
    try:
        uuid.UUID(session_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid session ID format")
    return session_id


def _find_session(request: Request, session_id: str) -> StudySession:
    session_id = validate_session_id(session_id)
    session = _active_sessions(request).get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@router.post("/identity")
async def establish_identity(body: IdentityRequest, request: Request) -> dict:
    """Load (and start syncing) the given identity's progress."""
    store = get_store(request)
    progress = await store.establish_identity(body.identity)
    _active_sessions(request).clear()
    return {
        "identity": store.identity,
        "progress": progress.to_document(),
        "persistent": store.gateway.persistent,
        "sync": store.sync_status(),
    }


@router.get("/progress")
async def get_progress(request: Request) -> dict:
    """Current aggregate plus display counts."""
    store = get_store(request)
    identity = require_identity(store)
    progress = store.repository.progress
    return {
        "identity": identity,
        "progress": progress.to_document(),
        "display_correct_count": display_correct_count(progress),
        "accuracy": progress.accuracy,
    }


@router.post("/sessions")
async def start_session(body: StartSessionRequest, request: Request) -> dict:
    store = get_store(request)
    require_identity(store)
    session = store.repository.start_session(
        mode=body.mode,
        category=body.category,
        questions=body.questions,
        question_ids=body.question_ids,
        part=body.part,
        time_limit=body.time_limit,
    )
    _active_sessions(request)[session.id] = session
    return session.to_document()


@router.get("/sessions/snapshot")
async def restore_snapshot(request: Request) -> dict:
    """Resume the in-progress session saved by the last snapshot."""
    store = get_store(request)
    require_identity(store)
    session = store.repository.restore_session()
    if session is None:
        raise HTTPException(status_code=404, detail="No saved session")
    _active_sessions(request)[session.id] = session
    document = session.to_document()
    document["questions"] = session.questions
    return document


@router.post("/sessions/{session_id}/answers")
async def record_answer(session_id: str, body: AnswerRequest, request: Request) -> dict:
    store = get_store(request)
    require_identity(store)
    session = _find_session(request, session_id)
    answer = Answer(
        question_id=body.question_id,
        selected_answer=body.selected_answer,
        is_correct=body.is_correct,
    )
    progress = store.repository.record_answer(
        session, answer, source=body.source, mock_number=body.mock_number
    )
    category = progress.category_progress.get(session.category or "")
    return {
        "session_id": session.id,
        "answered": len(session.answers),
        "correct": session.correct_count,
        "category_progress": category.to_document() if category else None,
    }


@router.post("/sessions/{session_id}/snapshot")
async def snapshot_session(session_id: str, request: Request) -> dict:
    store = get_store(request)
    require_identity(store)
    session = _find_session(request, session_id)
    store.repository.snapshot_session(session)
    return {"session_id": session.id, "saved": True}


@router.post("/sessions/{session_id}/complete")
async def complete_session(session_id: str, request: Request) -> dict:
    store = get_store(request)
    require_identity(store)
    session = _find_session(request, session_id)
    persisted = store.repository.complete_session(session)
    _active_sessions(request).pop(session.id, None)
    progress = store.repository.progress
    return {
        "session": persisted.to_document(),
        "score": persisted.score,
        "current_streak": progress.current_streak,
        "best_streak": progress.best_streak,
    }


@router.get("/exams/history")
async def exam_history(request: Request) -> list[dict]:
    store = get_store(request)
    require_identity(store)
    return [record.to_document() for record in store.repository.exam_history()]


@router.post("/reset")
async def reset_progress(body: ResetRequest, request: Request) -> dict:
    """Reset all progress for the current identity. Preferences are kept."""
    store = get_store(request)
    identity = require_identity(store)
    if not body.confirm:
        raise HTTPException(status_code=400, detail="Reset requires confirm=true")
    result = store.repository.reset_all()
    logger.info("reset_requested", identity=identity, success=result.success)
    return result.model_dump()


@router.get("/storage")
async def storage_info(request: Request) -> dict:
    return get_store(request).storage_info().model_dump()


@router.post("/storage/cleanup")
async def storage_cleanup(request: Request) -> dict:
    return get_store(request).gateway.cleanup().model_dump()


@router.get("/sync")
async def sync_status(request: Request) -> dict:
    return get_store(request).sync_status()


@router.post("/sync/retry")
async def sync_retry(request: Request) -> dict:
    store = get_store(request)
    require_identity(store)
    if store.sync is not None:
        await store.sync.reconnect()
    return store.sync_status()


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}

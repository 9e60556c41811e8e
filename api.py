"""
api.py - FastAPI HTTP layer for reconciliation sessions.

Exposes the session lifecycle over HTTP. No matching or pairing logic is
implemented here; every mutation goes through `ReconciliationSession`.

Error mapping:
    not_found            -> 404
    invalid_transition   -> 409
    version conflict     -> 409
    malformed input      -> 400
"""

from __future__ import annotations

import os
import threading
from typing import Any, Callable, Optional, TypeVar

import uvicorn
from dotenv import load_dotenv
from fastapi import Body, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from explain import format_session_json, pair_to_dict
from logging_config import get_logger, setup_logging
from models import ErrorKind, OperationResult, Suggestion
from scorer import MIN_CONFIDENCE, VendorSimilarityScorer
from session import ReconciliationSession, VersionConflict
from session_store import SessionStore
from suggest import build_suggestion_request

load_dotenv()
logger = get_logger("recon-api")

T = TypeVar("T")

app = FastAPI(
    title="Reconciliation API",
    version="1.0.0",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

# Allows local UI use from file:// or another local host/port.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.MALFORMED_INPUT: 400,
}


class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    expected_version: Optional[int] = Field(default=None, ge=0)


class CreateSessionRequest(_Request):
    internal_items: list[dict[str, Any]] = Field(default_factory=list)
    external_rows: list[dict[str, Any]] = Field(default_factory=list)
    vat_only: bool = True
    query: str = ""
    label: str = ""
    session_id: Optional[str] = None


class ReportRequest(_Request):
    rows: list[dict[str, Any]] = Field(default_factory=list)


class PairRequest(_Request):
    pair_id: str


class LinkRequest(_Request):
    internal_id: str
    external_index: int = Field(..., ge=0)


class SuggestRequest(_Request):
    suggestions: Optional[list[Suggestion]] = None
    response_text: Optional[str] = None
    min_confidence: float = Field(default=MIN_CONFIDENCE, ge=0.0, le=1.0)


class SessionNotFound(KeyError):
    pass


class SessionExists(Exception):
    pass


class SessionRegistry:
    """In-memory sessions backed by the JSON session store."""

    def __init__(self, store: Optional[SessionStore] = None) -> None:
        self.store = store or SessionStore()
        self._sessions: dict[str, ReconciliationSession] = {}
        self._lock = threading.Lock()

    def _get(self, session_id: str) -> ReconciliationSession:
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        try:
            snapshot = self.store.load(session_id)
        except ValueError as exc:
            raise SessionNotFound(session_id) from exc
        if snapshot is None:
            raise SessionNotFound(session_id)
        session = ReconciliationSession.from_snapshot(snapshot)
        self._sessions[session_id] = session
        return session

    def add(self, session: ReconciliationSession) -> None:
        """Register a new session; an id already in memory or on disk is refused."""
        with self._lock:
            if session.session_id in self._sessions or self.store.exists(session.session_id):
                raise SessionExists(session.session_id)
            self.store.save(session.to_snapshot())
            self._sessions[session.session_id] = session

    def read(self, session_id: str, fn: Callable[[ReconciliationSession], T]) -> T:
        with self._lock:
            return fn(self._get(session_id))

    def mutate(self, session_id: str, fn: Callable[[ReconciliationSession], T]) -> T:
        """Run `fn` under the registry lock and persist the session afterwards.

        If the save fails the cached session is evicted, so the next access
        reloads the last state that reached disk.
        """
        with self._lock:
            session = self._get(session_id)
            out = fn(session)
            try:
                self.store.save(session.to_snapshot())
            except Exception:
                self._sessions.pop(session_id, None)
                raise
            return out

    def delete(self, session_id: str) -> bool:
        with self._lock:
            in_memory = self._sessions.pop(session_id, None) is not None
            try:
                on_disk = self.store.delete(session_id)
            except ValueError:
                on_disk = False
            return in_memory or on_disk

    def list_ids(self) -> list[str]:
        with self._lock:
            return sorted(set(self._sessions) | set(self.store.list_ids()))


registry = SessionRegistry()


def _is_debug_enabled() -> bool:
    """Return True when DEBUG mode is enabled via environment variable."""
    return os.getenv("DEBUG", "").strip().lower() in {"1", "true", "yes", "on"}


def _parse(model: type[_Request], payload: dict[str, Any]) -> Any:
    try:
        return model.model_validate(payload or {})
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _session_payload(session: ReconciliationSession) -> dict[str, Any]:
    return format_session_json(
        session.pairs,
        session.summary(),
        session_id=session.session_id,
        version=session.version,
    )


def _result_payload(session: ReconciliationSession, result: OperationResult) -> dict[str, Any]:
    payload = _session_payload(session)
    payload["result"] = {
        "ok": result.ok,
        "error": result.error.value if result.error else None,
        "message": result.message,
        "created": list(result.created),
        "removed": list(result.removed),
    }
    return payload


def _run(session_id: str, fn: Callable[[ReconciliationSession], T], mutate: bool = True) -> T:
    """Map registry/session failures onto HTTP errors."""
    try:
        if mutate:
            return registry.mutate(session_id, fn)
        return registry.read(session_id, fn)
    except HTTPException:
        raise
    except SessionNotFound as exc:
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}") from exc
    except VersionConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.error(
            "api_session_error | session_id=%s | error_type=%s | error=%s",
            session_id,
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        detail = f"{type(exc).__name__}: {exc}" if _is_debug_enabled() else "Unexpected server error."
        raise HTTPException(status_code=500, detail=detail) from exc


def _lifecycle(
    session_id: str,
    operation: Callable[[ReconciliationSession], OperationResult],
) -> dict[str, Any]:
    def handler(session: ReconciliationSession) -> dict[str, Any]:
        result = operation(session)
        if not result.ok:
            status = ERROR_STATUS.get(result.error, 400) if result.error else 400
            raise HTTPException(status_code=status, detail=result.message)
        return _result_payload(session, result)

    return _run(session_id, handler)


@app.get("/health")
def health() -> dict[str, str]:
    """Service health check."""
    return {"status": "ok"}


@app.get("/sessions")
def list_sessions() -> dict[str, Any]:
    return {"sessions": registry.list_ids()}


@app.post("/sessions")
def create_session(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    """Create a session from bookkeeping records and an optional report."""
    request = _parse(CreateSessionRequest, payload)
    try:
        session = ReconciliationSession(
            request.internal_items,
            request.external_rows,
            session_id=request.session_id,
            vat_only=request.vat_only,
            query=request.query,
            label=request.label,
        )
        registry.add(session)
    except SessionExists as exc:
        raise HTTPException(status_code=409, detail=f"Session already exists: {exc}") from exc
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("api_session_created | session_id=%s", session.session_id)
    return _session_payload(session)


@app.get("/sessions/{session_id}")
def get_session(session_id: str) -> dict[str, Any]:
    return _run(session_id, _session_payload, mutate=False)


@app.delete("/sessions/{session_id}")
def delete_session(session_id: str) -> dict[str, Any]:
    if not registry.delete(session_id):
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
    return {"sessionId": session_id, "deleted": True}


@app.get("/sessions/{session_id}/summary")
def get_summary(session_id: str) -> dict[str, Any]:
    return _run(session_id, lambda s: s.summary().model_dump(mode="json", by_alias=True), mutate=False)


@app.get("/sessions/{session_id}/review")
def get_review_queue(session_id: str) -> dict[str, Any]:
    """Pairs in review order: pending AI, leftovers, then settled."""
    return _run(
        session_id,
        lambda s: {"pairs": [pair_to_dict(pair) for pair in s.review_order()], "version": s.version},
        mutate=False,
    )


@app.post("/sessions/{session_id}/report")
def load_report(session_id: str, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    """Replace the imported report; all previous pairings are rebuilt."""
    request = _parse(ReportRequest, payload)

    def handler(session: ReconciliationSession) -> dict[str, Any]:
        session.load_report(request.rows, expected_version=request.expected_version)
        return _session_payload(session)

    return _run(session_id, handler)


@app.post("/sessions/{session_id}/reset")
def reset_session(session_id: str, payload: Optional[dict[str, Any]] = Body(default=None)) -> dict[str, Any]:
    request = _parse(_Request, payload or {})

    def handler(session: ReconciliationSession) -> dict[str, Any]:
        session.reset(expected_version=request.expected_version)
        return _session_payload(session)

    return _run(session_id, handler)


@app.get("/sessions/{session_id}/suggestion-request")
def get_suggestion_request(session_id: str) -> dict[str, Any]:
    """The leftovers an external scorer should see, with their batch indices."""
    return _run(
        session_id,
        lambda s: build_suggestion_request(s.pairs).model_dump(mode="json", by_alias=True),
        mutate=False,
    )


@app.post("/sessions/{session_id}/suggest")
def suggest(session_id: str, payload: Optional[dict[str, Any]] = Body(default=None)) -> dict[str, Any]:
    """Merge AI suggestions: posted suggestions, raw scorer text, or the local scorer.

    Returns 200 even when nothing merged; `result.ok` tells the caller.
    """
    request = _parse(SuggestRequest, payload or {})

    def handler(session: ReconciliationSession) -> dict[str, Any]:
        if request.suggestions is not None:
            result = session.merge_suggestions(request.suggestions, request.expected_version)
        elif request.response_text is not None:
            result = session.merge_response_text(request.response_text, request.expected_version)
        else:
            scorer = VendorSimilarityScorer(min_confidence=request.min_confidence)
            result = session.suggest(scorer, request.expected_version)
        return _result_payload(session, result)

    return _run(session_id, handler)


@app.post("/sessions/{session_id}/confirm")
def confirm(session_id: str, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    request = _parse(PairRequest, payload)
    return _lifecycle(session_id, lambda s: s.confirm_ai(request.pair_id, request.expected_version))


@app.post("/sessions/{session_id}/reject")
def reject(session_id: str, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    request = _parse(PairRequest, payload)
    return _lifecycle(session_id, lambda s: s.reject_ai(request.pair_id, request.expected_version))


@app.post("/sessions/{session_id}/link")
def link(session_id: str, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    request = _parse(LinkRequest, payload)
    return _lifecycle(
        session_id,
        lambda s: s.manual_link(request.internal_id, request.external_index, request.expected_version),
    )


@app.post("/sessions/{session_id}/unlink")
def unlink(session_id: str, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    request = _parse(PairRequest, payload)
    return _lifecycle(session_id, lambda s: s.unlink(request.pair_id, request.expected_version))


if __name__ == "__main__":
    setup_logging()
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("api:app", host="0.0.0.0", port=port, reload=False)

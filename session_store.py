"""
session_store.py - JSON-file persistence for reconciliation sessions.

A snapshot stores the session inputs and its command log, never the pairing
set: pairs are re-derived on load by re-running the match and replaying the
log, so a stored session can never hold a pairing set that violates the
partition invariants.

One file per session under RECON_SESSION_DIR (default data/sessions),
written atomically via temp-file + replace.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from logging_config import get_logger
from models import Command, ExternalRow, InternalItem

logger = get_logger(__name__)

DEFAULT_SESSION_DIR = "data/sessions"
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


class SessionSnapshot(BaseModel):
    """Persisted state of one reconciliation session."""

    model_config = ConfigDict(extra="ignore")

    session_id: str
    label: str = ""
    vat_only: bool = True
    internal_items: list[InternalItem] = Field(default_factory=list)
    external_rows: list[ExternalRow] = Field(default_factory=list)
    commands: list[Command] = Field(default_factory=list)
    version_offset: int = Field(default=0, ge=0)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("session_id", mode="before")
    @classmethod
    def _clean_session_id(cls, value: Any) -> str:
        text = str(value or "").strip()
        if not _SESSION_ID_RE.match(text):
            raise ValueError(f"invalid session id: {value!r}")
        return text


class SessionStore:
    """Disk-backed session store using one JSON file per session."""

    def __init__(self, directory: Optional[str] = None) -> None:
        target = directory or os.getenv("RECON_SESSION_DIR", DEFAULT_SESSION_DIR)
        self.directory = Path(target).resolve()

    def _path(self, session_id: str) -> Path:
        if not _SESSION_ID_RE.match(session_id or ""):
            raise ValueError(f"invalid session id: {session_id!r}")
        return self.directory / f"{session_id}.json"

    def exists(self, session_id: str) -> bool:
        return self._path(session_id).exists()

    def load(self, session_id: str) -> Optional[SessionSnapshot]:
        """Load a snapshot; None when missing or unreadable."""
        path = self._path(session_id)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return SessionSnapshot.model_validate(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning(
                "session_load_warning | path=%s | error_type=%s | error=%s | fallback=None",
                path,
                type(exc).__name__,
                exc,
            )
            return None

    def save(self, snapshot: SessionSnapshot) -> Path:
        """Persist a snapshot atomically via temp-file + replace."""
        now = datetime.now(timezone.utc).isoformat()
        snapshot = snapshot.model_copy(
            update={"updated_at": now, "created_at": snapshot.created_at or now}
        )
        path = self._path(snapshot.session_id)
        self.directory.mkdir(parents=True, exist_ok=True)

        payload = snapshot.model_dump(mode="json")
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=str(self.directory),
            delete=False,
            suffix=".tmp",
            prefix="session-",
        ) as tmp_file:
            json.dump(payload, tmp_file, ensure_ascii=False, indent=2)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
            tmp_path = Path(tmp_file.name)

        os.replace(tmp_path, path)
        logger.info(
            "session_saved | session_id=%s | commands=%s | path=%s",
            snapshot.session_id,
            len(snapshot.commands),
            path,
        )
        return path

    def delete(self, session_id: str) -> bool:
        """Remove a persisted session; True when a file was deleted."""
        path = self._path(session_id)
        try:
            if path.exists():
                path.unlink()
                return True
        except OSError as exc:
            logger.warning(
                "session_delete_warning | path=%s | error_type=%s | error=%s",
                path,
                type(exc).__name__,
                exc,
            )
        return False

    def list_ids(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(path.stem for path in self.directory.glob("*.json"))

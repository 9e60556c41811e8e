"""
session.py - One operator's reconciliation session.

Holds the selected internal records, the imported report rows, the current
pairing set and the log of every command that changed it. The pairing set
is always `replay(match(internal, external), commands)`; `rebuild()`
recomputes it that way and `from_snapshot()` relies on it.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional, Sequence

from lifecycle import apply_command, partition_violations, replay
from logging_config import get_logger
from match import match, select_internal_items
from models import (
    Command,
    ConfirmAI,
    ExternalRow,
    InternalItem,
    ManualLink,
    MergeSuggestions,
    OperationResult,
    Pair,
    RejectAI,
    ReconciliationSummary,
    Suggestion,
    Unlink,
)
from normalize import normalize_external_rows, normalize_internal_items
from session_store import SessionSnapshot
from suggest import Scorer, build_suggestion_request, parse_suggestion_response, request_suggestions
from summary import ordered_for_review, summarize

logger = get_logger(__name__)


class VersionConflict(Exception):
    """Raised when a caller's expected version no longer matches the session."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"session is at version {actual}, expected {expected}")
        self.expected = expected
        self.actual = actual


def new_session_id() -> str:
    return f"sess_{secrets.token_hex(4)}"


class ReconciliationSession:
    """Pairing state for one period's internal records against one report."""

    def __init__(
        self,
        internal_items: Iterable[Mapping[str, Any] | InternalItem],
        external_rows: Iterable[Mapping[str, Any] | ExternalRow] = (),
        session_id: Optional[str] = None,
        vat_only: bool = True,
        query: str = "",
        label: str = "",
    ) -> None:
        self.session_id = session_id or new_session_id()
        self.label = label
        self.vat_only = vat_only
        self.all_items = normalize_internal_items(internal_items)
        self.internal_items = select_internal_items(self.all_items, vat_only=vat_only, query=query)
        self.external_rows: list[ExternalRow] = normalize_external_rows(external_rows)
        self.commands: list[Command] = []
        self.version_offset = 0
        self.created_at: Optional[str] = datetime.now(timezone.utc).isoformat()
        self.pairs: list[Pair] = match(self.internal_items, self.external_rows)
        logger.info(
            "session_created | session_id=%s | records=%s | selected=%s | rows=%s",
            self.session_id,
            len(self.all_items),
            len(self.internal_items),
            len(self.external_rows),
        )

    @property
    def version(self) -> int:
        """Monotonic revision: applied commands plus one per report load or reset.

        Never repeats a value, so a client holding a version from before a
        report reload cannot act on row indices of the new report.
        """
        return self.version_offset + len(self.commands)

    def check_version(self, expected_version: Optional[int]) -> None:
        if expected_version is not None and expected_version != self.version:
            raise VersionConflict(expected_version, self.version)

    def load_report(
        self,
        rows: Iterable[Mapping[str, Any] | ExternalRow],
        expected_version: Optional[int] = None,
    ) -> list[Pair]:
        """Replace the report and rebuild pairs from scratch.

        Every pairing made on the previous report (AI, manual) is discarded.
        """
        self.check_version(expected_version)
        self.external_rows = normalize_external_rows(rows)
        self.version_offset = self.version + 1
        self.commands = []
        self.pairs = match(self.internal_items, self.external_rows)
        logger.info(
            "session_report_loaded | session_id=%s | rows=%s | pairs=%s",
            self.session_id,
            len(self.external_rows),
            len(self.pairs),
        )
        return self.pairs

    def reset(self, expected_version: Optional[int] = None) -> list[Pair]:
        """Drop the report and every pairing. Internal records stay."""
        self.check_version(expected_version)
        self.external_rows = []
        self.version_offset = self.version + 1
        self.commands = []
        self.pairs = match(self.internal_items, self.external_rows)
        logger.info("session_reset | session_id=%s", self.session_id)
        return self.pairs

    def apply(self, command: Command, expected_version: Optional[int] = None) -> OperationResult:
        """Run one command; only successful commands enter the log."""
        self.check_version(expected_version)
        result = apply_command(self.pairs, command)
        if result.ok:
            self.pairs = result.pairs
            self.commands.append(command)
        return result

    def confirm_ai(self, pair_id: str, expected_version: Optional[int] = None) -> OperationResult:
        return self.apply(ConfirmAI(pair_id=pair_id), expected_version)

    def reject_ai(self, pair_id: str, expected_version: Optional[int] = None) -> OperationResult:
        return self.apply(RejectAI(pair_id=pair_id), expected_version)

    def manual_link(
        self,
        internal_id: str,
        external_index: int,
        expected_version: Optional[int] = None,
    ) -> OperationResult:
        return self.apply(
            ManualLink(internal_id=internal_id, external_index=external_index),
            expected_version,
        )

    def unlink(self, pair_id: str, expected_version: Optional[int] = None) -> OperationResult:
        return self.apply(Unlink(pair_id=pair_id), expected_version)

    def merge_suggestions(
        self,
        suggestions: Sequence[Suggestion],
        expected_version: Optional[int] = None,
    ) -> OperationResult:
        return self.apply(MergeSuggestions(suggestions=list(suggestions)), expected_version)

    def suggest(self, scorer: Scorer, expected_version: Optional[int] = None) -> OperationResult:
        """Ask `scorer` about the leftovers and merge what it proposes."""
        self.check_version(expected_version)
        return self.merge_suggestions(request_suggestions(scorer, self.pairs))

    def merge_response_text(self, text: str, expected_version: Optional[int] = None) -> OperationResult:
        """Merge a free-text scorer reply whose indices are leftover positions."""
        self.check_version(expected_version)
        request = build_suggestion_request(self.pairs)
        return self.merge_suggestions(parse_suggestion_response(text, request))

    def summary(self) -> ReconciliationSummary:
        return summarize(self.pairs)

    def review_order(self) -> list[Pair]:
        return ordered_for_review(self.pairs)

    def rebuild(self) -> list[Pair]:
        """Recompute pairs from the inputs and the command log."""
        return replay(match(self.internal_items, self.external_rows), self.commands)

    def violations(self) -> list[str]:
        return partition_violations(self.pairs, self.internal_items, self.external_rows)

    def to_snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            label=self.label,
            vat_only=self.vat_only,
            internal_items=self.internal_items,
            external_rows=self.external_rows,
            commands=self.commands,
            version_offset=self.version_offset,
            created_at=self.created_at,
        )

    @classmethod
    def from_snapshot(cls, snapshot: SessionSnapshot) -> "ReconciliationSession":
        """Restore a session; the stored items are already the selected set."""
        session = cls(
            snapshot.internal_items,
            snapshot.external_rows,
            session_id=snapshot.session_id,
            vat_only=False,
            label=snapshot.label,
        )
        session.vat_only = snapshot.vat_only
        session.created_at = snapshot.created_at
        session.version_offset = snapshot.version_offset
        session.commands = list(snapshot.commands)
        session.pairs = session.rebuild()
        return session

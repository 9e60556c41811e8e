"""
suggest.py - Folding scorer suggestions into the pairing set.

The scorer (an LLM prompt, a vendor-name matcher, a test stub) lives outside
the engine behind the `Scorer` protocol. This module:

- builds the request the scorer sees (current leftovers only)
- calls it, isolating any failure so the pairing set stays unchanged
- parses free-text scorer responses into `Suggestion` objects
- merges valid suggestions as `ai` pairs pending human confirmation

Discard rules for `merge_suggestions`, in suggestion input order:
    malformed_input     internal id / external index not in the session
    invalid_transition  the target is already paired, or an earlier
                        suggestion in the same batch already claimed it
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable, Optional, Protocol, Sequence

from pydantic import ValidationError

from logging_config import get_logger, graceful
from match import pair_id
from models import (
    DiscardedSuggestion,
    ErrorKind,
    IndexedRow,
    InternalItem,
    MergeResult,
    Pair,
    Suggestion,
    SuggestionRequest,
    Tier,
)

logger = get_logger(__name__)

_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


class Scorer(Protocol):
    """Anything that proposes pairings between leftover records and rows."""

    def suggest(
        self,
        internal_items: Sequence[InternalItem],
        external_rows: Sequence[IndexedRow],
    ) -> Iterable[Suggestion | dict[str, Any]]: ...


def build_suggestion_request(pairs: Sequence[Pair]) -> SuggestionRequest:
    """Collect the unpaired internal items and unpaired rows, in set order."""
    internal_items = [
        pair.internal_item
        for pair in pairs
        if pair.tier is Tier.INTERNAL_ONLY and pair.internal_item is not None
    ]
    external_rows = [
        IndexedRow(index=pair.external_index, row=pair.external_row)
        for pair in pairs
        if pair.tier is Tier.EXTERNAL_ONLY
        and pair.external_row is not None
        and pair.external_index is not None
    ]
    return SuggestionRequest(internal_items=internal_items, external_rows=external_rows)


def coerce_suggestions(raw: Iterable[Suggestion | dict[str, Any]] | None) -> list[Suggestion]:
    """Validate scorer output, dropping entries that are not suggestions."""
    suggestions: list[Suggestion] = []
    for entry in raw or []:
        if isinstance(entry, Suggestion):
            suggestions.append(entry)
            continue
        try:
            suggestions.append(Suggestion.model_validate(entry))
        except ValidationError as exc:
            logger.warning(
                "suggestion_malformed | entry=%r | error_count=%s | fallback='drop'",
                entry,
                exc.error_count(),
            )
    return suggestions


@graceful(default_factory=list, log_level=logging.WARNING)
def _call_scorer(scorer: Scorer, request: SuggestionRequest) -> list[Suggestion]:
    raw = scorer.suggest(request.internal_items, request.external_rows)
    return coerce_suggestions(raw)


def request_suggestions(scorer: Scorer, pairs: Sequence[Pair]) -> list[Suggestion]:
    """Ask the scorer about the current leftovers.

    Never raises: a failing or empty scorer yields []. The scorer is not
    called at all when either side has no leftovers.
    """
    request = build_suggestion_request(pairs)
    if not request.is_actionable:
        logger.info(
            "suggest_skipped | unpaired_internal=%s | unpaired_external=%s",
            len(request.internal_items),
            len(request.external_rows),
        )
        return []

    suggestions = _call_scorer(scorer, request)
    logger.info(
        "suggest_complete | scorer=%s | unpaired_internal=%s | unpaired_external=%s | suggestions=%s",
        type(scorer).__name__,
        len(request.internal_items),
        len(request.external_rows),
        len(suggestions),
    )
    return suggestions


def _first(entry: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in entry and entry[key] is not None:
            return entry[key]
    return None


def parse_suggestion_response(
    text: str | None,
    request: Optional[SuggestionRequest] = None,
) -> list[Suggestion]:
    """Parse the first JSON array found in a free-text scorer response.

    With a `request`, each item's index is a position in
    `request.external_rows` and is translated to the real batch index.
    Without one, indices are taken as real batch indices.
    """
    if not text:
        return []
    found = _JSON_ARRAY_RE.search(text)
    if not found:
        logger.warning("suggestion_parse | no_json_array=True | fallback=[]")
        return []
    try:
        payload = json.loads(found.group(0))
    except json.JSONDecodeError as exc:
        logger.warning("suggestion_parse | json_error=%s | fallback=[]", exc)
        return []
    if not isinstance(payload, list):
        return []

    suggestions: list[Suggestion] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        internal_id = _first(entry, "internalId", "internal_id", "systemId")
        position = _first(entry, "externalIndex", "external_index", "accountingIndex")
        try:
            position = int(position)
            confidence = float(_first(entry, "confidence") or 0.0)
        except (TypeError, ValueError):
            logger.warning("suggestion_parse | bad_entry=%r | fallback='drop'", entry)
            continue

        if request is not None:
            if not 0 <= position < len(request.external_rows):
                logger.warning(
                    "suggestion_parse | position_out_of_range=%s | rows=%s | fallback='drop'",
                    position,
                    len(request.external_rows),
                )
                continue
            position = request.external_rows[position].index

        if internal_id is None or position < 0:
            continue
        suggestions.append(
            Suggestion(
                internal_id=str(internal_id),
                external_index=position,
                confidence=min(1.0, max(0.0, confidence)),
                reason=str(_first(entry, "reason") or ""),
            )
        )
    return suggestions


def _discard(
    discarded: list[DiscardedSuggestion],
    suggestion: Suggestion,
    kind: ErrorKind,
    message: str,
) -> None:
    discarded.append(DiscardedSuggestion(suggestion=suggestion, kind=kind, message=message))
    logger.debug(
        "suggestion_discarded | internal_id=%s | external_index=%s | kind=%s | reason=%r",
        suggestion.internal_id,
        suggestion.external_index,
        kind.value,
        message,
    )


def merge_suggestions(pairs: Sequence[Pair], suggestions: Sequence[Suggestion]) -> MergeResult:
    """Replace leftover pairs named by valid suggestions with `ai` pairs.

    Deterministic and order-preserving; the merged pair takes the list
    position of the earlier of the two leftovers it replaces. Safe to call
    repeatedly as the leftover sets shrink.
    """
    updated = list(pairs)
    known_internal = {pair.internal_id for pair in pairs if pair.internal_item is not None}
    known_external = {pair.external_index for pair in pairs if pair.external_index is not None}
    claimed_external: set[int] = set()
    merged: list[str] = []
    discarded: list[DiscardedSuggestion] = []

    for suggestion in suggestions:
        if suggestion.internal_id not in known_internal:
            _discard(discarded, suggestion, ErrorKind.MALFORMED_INPUT, "unknown internal id")
            continue
        if suggestion.external_index not in known_external:
            _discard(discarded, suggestion, ErrorKind.MALFORMED_INPUT, "unknown external index")
            continue
        if suggestion.external_index in claimed_external:
            _discard(
                discarded,
                suggestion,
                ErrorKind.INVALID_TRANSITION,
                "external index already claimed in this batch",
            )
            continue

        internal_pos = next(
            (
                pos
                for pos, pair in enumerate(updated)
                if pair.tier is Tier.INTERNAL_ONLY and pair.internal_id == suggestion.internal_id
            ),
            None,
        )
        external_pos = next(
            (
                pos
                for pos, pair in enumerate(updated)
                if pair.tier is Tier.EXTERNAL_ONLY
                and pair.external_index == suggestion.external_index
            ),
            None,
        )
        if internal_pos is None or external_pos is None:
            _discard(discarded, suggestion, ErrorKind.INVALID_TRANSITION, "target already paired")
            continue

        internal_pair = updated[internal_pos]
        external_pair = updated[external_pos]
        ai_pair = Pair(
            id=pair_id("ai", suggestion.internal_id, suggestion.external_index),
            tier=Tier.AI,
            internal_item=internal_pair.internal_item,
            external_row=external_pair.external_row,
            external_index=suggestion.external_index,
            confidence=suggestion.confidence,
            reason=suggestion.reason,
        )
        del updated[max(internal_pos, external_pos)]
        updated[min(internal_pos, external_pos)] = ai_pair
        claimed_external.add(suggestion.external_index)
        merged.append(ai_pair.id)

    logger.info(
        "merge_complete | received=%s | merged=%s | discarded=%s",
        len(suggestions),
        len(merged),
        len(discarded),
    )
    return MergeResult(pairs=updated, merged=merged, discarded=discarded)


def suggest_and_merge(scorer: Scorer, pairs: Sequence[Pair]) -> MergeResult:
    """Request suggestions for the current leftovers and merge them."""
    return merge_suggestions(pairs, request_suggestions(scorer, pairs))

"""
scorer.py - Local vendor-similarity scorer for leftover pairing suggestions.

Implements the `suggest.Scorer` protocol without any remote service, so the
suggestion flow works offline and deterministically. The weighting mirrors
how an accountant pairs leftovers by hand:

- amount is the primary signal (base amounts must be within 1%)
- vendor name similarity (RapidFuzz on normalized company names) confirms
- date proximity breaks near-ties

Only candidates at or above MIN_CONFIDENCE are proposed, and each internal
item and each report row appears in at most one suggestion.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from rapidfuzz import fuzz

from logging_config import get_logger
from match import days_between
from models import IndexedRow, InternalItem, Suggestion
from normalize import normalize_tax_id, normalize_vendor

logger = get_logger(__name__)

AMOUNT_WEIGHT = 0.50
NAME_WEIGHT = 0.35
DATE_WEIGHT = 0.15

AMOUNT_REL_TOLERANCE = 0.01
DATE_DECAY_DAYS = 31.0
MIN_CONFIDENCE = 0.6


def score_amount(internal_amount: float, external_amount: float) -> float:
    """1.0 for equal amounts, falling to 0.0 at a 1% relative difference."""
    diff = abs(internal_amount - external_amount)
    if diff < 0.01:
        return 1.0
    scale = max(abs(internal_amount), abs(external_amount), 1.0)
    relative = diff / scale
    if relative > AMOUNT_REL_TOLERANCE:
        return 0.0
    return round(1.0 - relative / AMOUNT_REL_TOLERANCE, 4)


def score_vendor(internal_name: str, external_name: str) -> float:
    """Similarity of normalized company names in [0, 1]."""
    a = normalize_vendor(internal_name)
    b = normalize_vendor(external_name)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return round(float(fuzz.token_sort_ratio(a, b)) / 100.0, 4)


def score_date(internal_date: str, external_date: str) -> tuple[float, float]:
    days = days_between(internal_date, external_date)
    if math.isinf(days):
        return 0.0, days
    return round(max(0.0, 1.0 - days / DATE_DECAY_DAYS), 4), days


@dataclass(frozen=True)
class _Candidate:
    confidence: float
    internal_pos: int
    external_pos: int
    suggestion: Suggestion


class VendorSimilarityScorer:
    """Greedy best-first scorer over the leftover cross product."""

    def __init__(self, min_confidence: float = MIN_CONFIDENCE) -> None:
        self.min_confidence = min_confidence

    def score(self, item: InternalItem, indexed: IndexedRow) -> tuple[float, str]:
        row = indexed.row
        amount_score = score_amount(item.base_amount, row.base_amount)
        if amount_score <= 0.0:
            return 0.0, "amounts differ"

        name_score = score_vendor(item.vendor_name, row.vendor_name)
        tax_digits = normalize_tax_id(item.tax_id)
        if tax_digits and tax_digits == normalize_tax_id(row.tax_id):
            name_score = 1.0
        date_score, days = score_date(item.date, row.date)

        confidence = round(
            amount_score * AMOUNT_WEIGHT + name_score * NAME_WEIGHT + date_score * DATE_WEIGHT,
            2,
        )
        gap = "date unknown" if math.isinf(days) else f"{days:.0f} day(s) apart"
        reason = (
            f"amount diff {abs(item.base_amount - row.base_amount):.2f}, "
            f"vendor similarity {name_score:.0%}, {gap}"
        )
        return confidence, reason

    def suggest(
        self,
        internal_items: Sequence[InternalItem],
        external_rows: Sequence[IndexedRow],
    ) -> list[Suggestion]:
        candidates: list[_Candidate] = []
        for i_pos, item in enumerate(internal_items):
            for e_pos, indexed in enumerate(external_rows):
                confidence, reason = self.score(item, indexed)
                if confidence < self.min_confidence:
                    continue
                candidates.append(
                    _Candidate(
                        confidence=confidence,
                        internal_pos=i_pos,
                        external_pos=e_pos,
                        suggestion=Suggestion(
                            internal_id=item.id,
                            external_index=indexed.index,
                            confidence=confidence,
                            reason=reason,
                        ),
                    )
                )

        candidates.sort(key=lambda c: (-c.confidence, c.internal_pos, c.external_pos))
        used_internal: set[str] = set()
        used_external: set[int] = set()
        suggestions: list[Suggestion] = []
        for candidate in candidates:
            suggestion = candidate.suggestion
            if suggestion.internal_id in used_internal or suggestion.external_index in used_external:
                continue
            used_internal.add(suggestion.internal_id)
            used_external.add(suggestion.external_index)
            suggestions.append(suggestion)

        logger.info(
            "scorer_complete | scored=%s | above_threshold=%s | suggested=%s",
            len(internal_items) * len(external_rows),
            len(candidates),
            len(suggestions),
        )
        return suggestions

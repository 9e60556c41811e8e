"""
summary.py - Balance and KPI figures derived from a pairing set.

Everything here is recomputed from the pairs on every call. Because each
internal item and each report row sits in exactly one pair, summing over
pair members gives the full-period totals for both sides.
"""

from __future__ import annotations

from typing import Sequence

from models import Pair, ReconciliationSummary, Tier

BALANCE_TOLERANCE = 0.01


def summarize(pairs: Sequence[Pair]) -> ReconciliationSummary:
    """Totals, tier counts and the balanced flag for one pairing set."""
    internal_total = internal_vat = 0.0
    external_total = external_vat = 0.0
    internal_count = external_count = 0
    tier_counts = {tier.value: 0 for tier in Tier}
    matched = ai_pending = 0

    for pair in pairs:
        tier_counts[pair.tier.value] += 1
        if pair.internal_item is not None:
            internal_count += 1
            internal_total += pair.internal_item.base_amount
            internal_vat += pair.internal_item.vat_amount
        if pair.external_row is not None:
            external_count += 1
            external_total += pair.external_row.base_amount
            external_vat += pair.external_row.vat_amount
        if pair.is_settled:
            matched += 1
        if pair.is_ai_pending:
            ai_pending += 1

    raw_total_diff = abs(internal_total - external_total)
    raw_vat_diff = abs(internal_vat - external_vat)

    return ReconciliationSummary(
        internal_count=internal_count,
        external_count=external_count,
        internal_total=round(internal_total, 2),
        internal_vat=round(internal_vat, 2),
        external_total=round(external_total, 2),
        external_vat=round(external_vat, 2),
        total_diff=round(raw_total_diff, 2),
        vat_diff=round(raw_vat_diff, 2),
        balanced=raw_total_diff < BALANCE_TOLERANCE and raw_vat_diff < BALANCE_TOLERANCE,
        has_external_data=external_count > 0,
        tier_counts=tier_counts,
        matched=matched,
        ai_pending=ai_pending,
        internal_only=tier_counts[Tier.INTERNAL_ONLY.value],
        external_only=tier_counts[Tier.EXTERNAL_ONLY.value],
    )


def ordered_for_review(pairs: Sequence[Pair]) -> list[Pair]:
    """Pending AI suggestions first, then leftovers, then everything settled."""
    pending = [pair for pair in pairs if pair.is_ai_pending]
    leftovers = [pair for pair in pairs if not pair.is_paired]
    rest = [pair for pair in pairs if pair.is_paired and not pair.is_ai_pending]
    return pending + leftovers + rest

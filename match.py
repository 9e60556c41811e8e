"""
match.py - Multi-pass pairing of internal records against report rows.

Three ordered passes, each only seeing what earlier passes left unconsumed:

    1. exact   invoice numbers equal (trimmed, case-insensitive)      -> 1.0
    2. strong  tax ids equal on digits AND base amounts within 0.01   -> 0.95
    3. fuzzy   base AND VAT within 0.01 AND dates <= 3 days apart     -> 0.8

Tie-break is greedy and order-based: internal items in their given order,
and for each item the FIRST unconsumed report row satisfying the pass. It
can leave a better global assignment unused; the trade is determinism and
O(n*m) speed. Leftovers become `internal-only` / `external-only` pairs.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from dateutil import parser as dateparser

from logging_config import get_logger
from models import AUTO_TIER_CONFIDENCE, ExternalRow, InternalItem, Pair, Tier
from normalize import normalize_invoice_number, normalize_tax_id

logger = get_logger(__name__)

AMOUNT_TOLERANCE = 0.01
MAX_DATE_DIFF_DAYS = 3
SECONDS_PER_DAY = 86400.0

Predicate = Callable[[InternalItem, ExternalRow], bool]


def pair_id(prefix: str, internal_id: str, external_index: int) -> str:
    return f"{prefix}-{internal_id}-{external_index}"


def internal_only_id(internal_id: str) -> str:
    return f"int-{internal_id}"


def external_only_id(external_index: int) -> str:
    return f"ext-{external_index}"


def _cents(amount: float) -> int:
    return round(amount * 100)


def amounts_close(a: float, b: float) -> bool:
    """True when two amounts differ by strictly less than AMOUNT_TOLERANCE.

    Compared in whole cents, so a gap of exactly 0.01 is never close
    regardless of float representation (500.01 - 500 is 0.00999... as floats).
    """
    return abs(_cents(a) - _cents(b)) < _cents(AMOUNT_TOLERANCE)


def days_between(date_a: str, date_b: str) -> float:
    """Absolute distance in days between two parsed timestamps.

    Plain elapsed-time arithmetic, not calendar-aware. Returns infinity when
    either side is missing or unparseable so the fuzzy pass can never fire.
    """
    if not date_a or not date_b:
        return math.inf
    try:
        a = dateparser.isoparse(date_a)
        b = dateparser.isoparse(date_b)
    except (ValueError, OverflowError):
        try:
            a = dateparser.parse(date_a)
            b = dateparser.parse(date_b)
        except (ValueError, OverflowError, TypeError):
            logger.debug("days_between | unparseable | a=%r | b=%r", date_a, date_b)
            return math.inf
    if (a.tzinfo is None) != (b.tzinfo is None):
        a = a.replace(tzinfo=None)
        b = b.replace(tzinfo=None)
    return abs((a - b).total_seconds()) / SECONDS_PER_DAY


def invoice_numbers_match(item: InternalItem, row: ExternalRow) -> bool:
    key = normalize_invoice_number(item.invoice_number)
    return bool(key) and key == normalize_invoice_number(row.invoice_number)


def tax_id_and_amount_match(item: InternalItem, row: ExternalRow) -> bool:
    digits = normalize_tax_id(item.tax_id)
    return (
        bool(digits)
        and digits == normalize_tax_id(row.tax_id)
        and amounts_close(item.base_amount, row.base_amount)
    )


def amounts_and_date_match(item: InternalItem, row: ExternalRow) -> bool:
    return (
        amounts_close(item.base_amount, row.base_amount)
        and amounts_close(item.vat_amount, row.vat_amount)
        and days_between(item.date, row.date) <= MAX_DATE_DIFF_DAYS
    )


@dataclass(frozen=True)
class MatchPass:
    tier: Tier
    predicate: Predicate

    @property
    def confidence(self) -> float:
        return AUTO_TIER_CONFIDENCE[self.tier.value]


MATCH_PASSES: tuple[MatchPass, ...] = (
    MatchPass(Tier.EXACT, invoice_numbers_match),
    MatchPass(Tier.STRONG, tax_id_and_amount_match),
    MatchPass(Tier.FUZZY, amounts_and_date_match),
)


def _run_pass(
    match_pass: MatchPass,
    internal_items: Sequence[InternalItem],
    external_rows: Sequence[ExternalRow],
    used_internal: set[str],
    used_external: set[int],
) -> list[Pair]:
    pairs: list[Pair] = []
    for item in internal_items:
        if item.id in used_internal:
            continue
        for index, row in enumerate(external_rows):
            if index in used_external or not match_pass.predicate(item, row):
                continue
            pairs.append(
                Pair(
                    id=pair_id("pair", item.id, index),
                    tier=match_pass.tier,
                    internal_item=item,
                    external_row=row,
                    external_index=index,
                    confidence=match_pass.confidence,
                )
            )
            used_internal.add(item.id)
            used_external.add(index)
            logger.debug(
                "match_pair | tier=%s | internal_id=%s | external_index=%s",
                match_pass.tier.value,
                item.id,
                index,
            )
            break
    return pairs


def leftover_internal(item: InternalItem) -> Pair:
    return Pair(id=internal_only_id(item.id), tier=Tier.INTERNAL_ONLY, internal_item=item)


def leftover_external(index: int, row: ExternalRow) -> Pair:
    return Pair(
        id=external_only_id(index),
        tier=Tier.EXTERNAL_ONLY,
        external_row=row,
        external_index=index,
    )


def match(internal_items: Sequence[InternalItem], external_rows: Sequence[ExternalRow]) -> list[Pair]:
    """Pair internal items with report rows. Pure and deterministic.

    Output order: exact pairs, strong pairs, fuzzy pairs (each in internal
    item order), then internal-only leftovers, then external-only leftovers.
    """
    used_internal: set[str] = set()
    used_external: set[int] = set()
    pairs: list[Pair] = []
    counts: dict[str, int] = {}

    for match_pass in MATCH_PASSES:
        found = _run_pass(match_pass, internal_items, external_rows, used_internal, used_external)
        counts[match_pass.tier.value] = len(found)
        pairs.extend(found)

    for item in internal_items:
        if item.id not in used_internal:
            used_internal.add(item.id)
            pairs.append(leftover_internal(item))

    for index, row in enumerate(external_rows):
        if index not in used_external:
            pairs.append(leftover_external(index, row))

    logger.info(
        "match_complete | internal=%s | external=%s | exact=%s | strong=%s | fuzzy=%s | internal_only=%s | external_only=%s",
        len(internal_items),
        len(external_rows),
        counts.get("exact", 0),
        counts.get("strong", 0),
        counts.get("fuzzy", 0),
        sum(1 for pair in pairs if pair.tier is Tier.INTERNAL_ONLY),
        sum(1 for pair in pairs if pair.tier is Tier.EXTERNAL_ONLY),
    )
    return pairs


def select_internal_items(
    items: Iterable[InternalItem],
    vat_only: bool = True,
    query: str = "",
) -> list[InternalItem]:
    """Pick the records that take part in a reconciliation run.

    A tax report only lists VAT-bearing documents, so by default records
    without VAT are left out. `query` filters on vendor name or description.
    """
    needle = (query or "").strip().lower()
    selected: list[InternalItem] = []
    for item in items:
        if vat_only and item.vat_amount <= 0:
            continue
        if needle and needle not in item.vendor_name.lower() and needle not in item.description.lower():
            continue
        selected.append(item)
    return selected

"""
explain.py - Human-readable and JSON-ready reconciliation formatting.

This module converts a pairing set and its summary into:
- terminal-friendly text output for CLI usage
- machine-friendly dictionary output for APIs/logging/storage
"""

from __future__ import annotations

from typing import Optional, Sequence

from logging_config import get_logger
from models import Pair, ReconciliationSummary, Tier
from summary import ordered_for_review, summarize

logger = get_logger(__name__)

TIER_NAMES: dict[Tier, str] = {
    Tier.EXACT: "Exact",
    Tier.STRONG: "Strong",
    Tier.FUZZY: "Fuzzy",
    Tier.AI: "AI",
    Tier.MANUAL: "Manual",
    Tier.INTERNAL_ONLY: "Internal only",
    Tier.EXTERNAL_ONLY: "Report only",
}

OUTPUT_WIDTH = 72
SEPARATOR = "=" * OUTPUT_WIDTH
RULE = "-" * OUTPUT_WIDTH
MAX_PAIRS_DISPLAY = 50
VENDOR_WIDTH = 22


def tier_label(pair: Pair) -> str:
    label = TIER_NAMES.get(pair.tier, pair.tier.value)
    if pair.tier is Tier.AI:
        label += " (confirmed)" if pair.confirmed is True else " (pending)"
    return label


def _side(pair: Pair) -> tuple[str, str, str]:
    """Vendor, invoice and amount text for whichever side is present."""
    item = pair.internal_item
    row = pair.external_row
    vendor = (item.vendor_name if item else "") or (row.vendor_name if row else "")
    invoice = (item.invoice_number if item else "") or (row.invoice_number if row else "")
    amount = item.base_amount if item else (row.base_amount if row else 0.0)
    return vendor[:VENDOR_WIDTH], invoice or "-", f"{amount:,.2f}"


def format_summary(summary: ReconciliationSummary) -> str:
    """Totals block with the balance verdict."""
    lines = [
        SEPARATOR,
        "  BALANCED" if summary.balanced else "  NOT BALANCED",
        SEPARATOR,
        "",
        f"  {'':<12}{'Records':>10}{'Base total':>18}{'VAT':>16}",
        f"  {'Internal':<12}{summary.internal_count:>10}{summary.internal_total:>18,.2f}{summary.internal_vat:>16,.2f}",
        f"  {'Report':<12}{summary.external_count:>10}{summary.external_total:>18,.2f}{summary.external_vat:>16,.2f}",
        f"  {'Difference':<12}{'':>10}{summary.total_diff:>18,.2f}{summary.vat_diff:>16,.2f}",
        "",
        f"  Matched: {summary.matched}   AI pending: {summary.ai_pending}   "
        f"Internal only: {summary.internal_only}   Report only: {summary.external_only}",
    ]
    if not summary.has_external_data:
        lines.append("")
        lines.append("  WARNING: No report rows loaded. Import a report to reconcile.")
    return "\n".join(lines)


def format_pairs(pairs: Sequence[Pair], limit: int = MAX_PAIRS_DISPLAY) -> str:
    """Pairs table in review order: pending AI, leftovers, then the rest."""
    ordered = ordered_for_review(pairs)
    lines = [
        f"  {'Tier':<18}{'Vendor':<{VENDOR_WIDTH + 2}}{'Invoice':<14}{'Amount':>14}",
        "  " + RULE[2:],
    ]
    if not ordered:
        lines.append("  (no records)")
    for pair in ordered[:limit]:
        vendor, invoice, amount = _side(pair)
        confidence = f" {pair.confidence:.0%}" if pair.confidence is not None and pair.tier is Tier.AI else ""
        lines.append(
            f"  {tier_label(pair) + confidence:<18}{vendor:<{VENDOR_WIDTH + 2}}{invoice[:13]:<14}{amount:>14}"
        )
        if pair.tier is Tier.AI and pair.reason:
            lines.append(f"      {pair.reason}")
    if len(ordered) > limit:
        lines.append(f"  ... and {len(ordered) - limit} more pair(s)")
    return "\n".join(lines)


def format_report(pairs: Sequence[Pair], summary: Optional[ReconciliationSummary] = None) -> str:
    """Full terminal report: summary block plus pairs table."""
    try:
        summary = summary or summarize(pairs)
        return "\n".join(["", format_summary(summary), "", format_pairs(pairs), "", SEPARATOR, ""])
    except Exception as exc:
        logger.error(
            "explain_format_error | error_type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        return (
            "\n"
            + SEPARATOR
            + "\n"
            + "  REPORT FORMAT ERROR\n"
            + SEPARATOR
            + "\n\n"
            + f"  Error: {type(exc).__name__}: {exc}\n\n"
            + SEPARATOR
            + "\n"
        )


def pair_to_dict(pair: Pair) -> dict:
    return pair.model_dump(mode="json", by_alias=True)


def format_session_json(
    pairs: Sequence[Pair],
    summary: Optional[ReconciliationSummary] = None,
    session_id: Optional[str] = None,
    version: Optional[int] = None,
) -> dict:
    """Structured JSON-compatible payload for APIs and `--json` output."""
    summary = summary or summarize(pairs)
    warnings: list[str] = []
    if not summary.has_external_data:
        warnings.append("No report rows loaded.")
    if summary.ai_pending:
        warnings.append(f"{summary.ai_pending} AI suggestion(s) awaiting review.")

    payload: dict = {
        "status": "balanced" if summary.balanced else "unbalanced",
        "summary": summary.model_dump(mode="json", by_alias=True),
        "pairs": [pair_to_dict(pair) for pair in pairs],
        "warnings": warnings,
    }
    if session_id is not None:
        payload["sessionId"] = session_id
    if version is not None:
        payload["version"] = version
    return payload

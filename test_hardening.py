"""
test_hardening.py - Hardening Regression Tests.

Regression suite for:
- pair shape validation (invalid pairs cannot be built)
- bad-type input handling in normalizers and the matcher
- Unicode vendor names
- logging module and the graceful decorator

Usage:
    python test_hardening.py
"""

from __future__ import annotations

import logging
import os
import sys

from pydantic import ValidationError

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from logging_config import get_logger, graceful, setup_logging
from match import match
from models import ExternalRow, InternalItem, Pair, Suggestion, Tier
from normalize import normalize_amount, normalize_date, normalize_external_rows, normalize_vendor


def _configure_output_symbols() -> tuple[str, str, str]:
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    except Exception:
        pass

    try:
        "✓✗═".encode(sys.stdout.encoding or "utf-8")
        return "✓", "✗", "═"
    except Exception:
        return "[OK]", "[FAIL]", "="


PASS, FAIL, LINE = _configure_output_symbols()


def _rejected(**fields) -> bool:
    try:
        Pair(**fields)
    except ValidationError:
        return True
    return False


def main() -> int:
    passed = 0
    failed = 0

    def check(name: str, condition: bool) -> None:
        nonlocal passed, failed
        if condition:
            print(f"    {PASS} {name}")
            passed += 1
        else:
            print(f"    {FAIL} {name}")
            failed += 1

    print(LINE * 62)
    print("  Hardening Regression Tests")
    print(LINE * 62)

    item = InternalItem(id="s1", base_amount=10)
    row = ExternalRow(vendor_name="V", base_amount=10)

    print("\n  Pair Shape Validation:")
    check("Paired tier without a row rejected", _rejected(id="p", tier=Tier.EXACT, internal_item=item, confidence=1.0))
    check(
        "Paired tier without confidence rejected",
        _rejected(id="p", tier=Tier.FUZZY, internal_item=item, external_row=row, external_index=0),
    )
    check(
        "Row without index rejected",
        _rejected(id="p", tier=Tier.EXACT, internal_item=item, external_row=row, confidence=1.0),
    )
    check(
        "Leftover with confidence rejected",
        _rejected(id="int-s1", tier=Tier.INTERNAL_ONLY, internal_item=item, confidence=0.5),
    )
    check(
        "internal-only holding a row rejected",
        _rejected(id="int-s1", tier=Tier.INTERNAL_ONLY, internal_item=item, external_row=row, external_index=0),
    )
    check(
        "confirmed on a non-ai tier rejected",
        _rejected(id="p", tier=Tier.MANUAL, internal_item=item, external_row=row, external_index=0, confidence=1.0, confirmed=True),
    )
    check(
        "Confidence above 1 rejected",
        _rejected(id="p", tier=Tier.AI, internal_item=item, external_row=row, external_index=0, confidence=1.2),
    )
    check(
        "Negative index rejected",
        _rejected(id="ext--1", tier=Tier.EXTERNAL_ONLY, external_row=row, external_index=-1),
    )
    valid = Pair(id="ai-s1-0", tier=Tier.AI, internal_item=item, external_row=row, external_index=0, confidence=0.7)
    check("Valid ai pair builds as pending", valid.is_ai_pending and not valid.is_settled)
    check("confirmed=False counts as not settled", not valid.model_copy(update={"confirmed": False}).is_settled)
    check("Pairs are immutable", _frozen(valid))
    check("Empty internal id rejected", _raises_validation(lambda: InternalItem(id="")))
    check("Suggestion confidence bounded", _raises_validation(lambda: Suggestion(internal_id="s1", external_index=0, confidence=2)))

    print("\n  Input Validation - Bad Types:")
    check("Amount from a list falls back to 0.0", normalize_amount([1, 2]) == 0.0)
    check("Amount from bool-like text falls back to 0.0", normalize_amount("True") == 0.0)
    check("Date from a list without digits becomes ''", normalize_date(["x"]) == "")
    check("Vendor from None", normalize_vendor(None) == "")
    check("Rows with None values normalize", len(normalize_external_rows([{"vendorName": None, "baseAmount": None}])) == 0)
    check("Matcher is total on degenerate rows", len(match([item], [row, row])) == 3)

    print("\n  Unicode Handling:")
    check("Thai tone marks preserved", "้" in normalize_vendor("บริษัท แม่น้ำ จำกัด"))
    check("Full-width characters folded", normalize_vendor("ＡＢＣ Trading") == "abc trading")

    print("\n  Logging Module:")
    setup_ok = True
    try:
        setup_logging(level=logging.DEBUG)
        setup_logging(level="warning", json_format=True)
        setup_logging(level=None, json_format=False)
    except Exception:
        setup_ok = False
    check("setup_logging works", setup_ok)

    logger = get_logger("test-hardening")
    logger_ok = isinstance(logger, logging.Logger)
    try:
        logger.info("test message")
    except Exception:
        logger_ok = False
    check("get_logger returns valid logger", logger_ok)

    @graceful(default_factory=list, log_level=logging.DEBUG)
    def _explodes() -> list:
        raise RuntimeError("boom")

    @graceful(default_factory=dict)
    def _works() -> dict:
        return {"ok": True}

    check("graceful returns the default on failure", _explodes() == [])
    check("graceful passes results through", _works() == {"ok": True})

    print(f"\n{LINE * 62}")
    print(f"  Results: {passed}/{passed + failed} passed")
    if failed == 0:
        print(f"  Hardening: COMPLETE {PASS}")
    else:
        print(f"  Hardening: {failed} FAILED - fix before proceeding")
    print(f"{LINE * 62}")
    return failed


def _frozen(pair: Pair) -> bool:
    try:
        pair.confidence = 0.1  # type: ignore[misc]
    except ValidationError:
        return True
    return False


def _raises_validation(fn) -> bool:
    try:
        fn()
    except ValidationError:
        return True
    return False


def test_hardening_checks() -> None:
    assert main() == 0


if __name__ == "__main__":
    sys.exit(1 if main() else 0)

"""
test_integration.py - Full Session Integration Tests

Acceptance test for the complete reconciliation flow:
normalize -> match -> suggest -> confirm/reject/link/unlink -> summary

A seeded random operator drives a session through a long command
sequence; the partition of inputs and log replay are checked after every
step.

Usage: python test_integration.py
"""

from __future__ import annotations

import os
import random
import sys
import time

# Ensure local imports resolve from project root.
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from models import Tier
from scorer import VendorSimilarityScorer
from session import ReconciliationSession


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

VENDORS = [
    "บริษัท ชมอรรถ การ์เม้นท์ จำกัด",
    "หจก. สยามค้าส่ง",
    "Acme Supplies Co., Ltd.",
    "Bangkok Office Mart",
    "บมจ. ปตท",
]


def build_period(seed: int, count: int = 40) -> tuple[list[dict], list[dict]]:
    """Synthetic month: some rows exact, some strong, some fuzzy, some noise."""
    rng = random.Random(seed)
    internal: list[dict] = []
    report: list[dict] = []
    for index in range(count):
        base = round(rng.uniform(100, 5000), 2)
        vat = round(base * 0.07, 2)
        vendor = VENDORS[index % len(VENDORS)]
        day = 1 + index % 28
        internal.append(
            {
                "id": f"s{index}",
                "date": f"2024-03-{day:02d}",
                "invoiceNumber": f"IV{index:04d}" if index % 3 == 0 else "",
                "vendorName": vendor,
                "taxId": f"0-1055-{index:04d}-1" if index % 3 == 1 else "",
                "baseAmount": base,
                "vatAmount": vat,
            }
        )
        kind = index % 5
        if kind == 4:
            continue
        offset = rng.randint(0, 3) if kind != 3 else rng.randint(0, 10)
        report.append(
            {
                "date": f"{min(day + offset, 28):02d}/03/2567",
                "invoiceNumber": f"iv{index:04d}" if index % 3 == 0 and kind != 3 else "",
                "vendorName": vendor.replace("บริษัท", "บ.") if kind == 3 else vendor,
                "taxId": f"01055{index:04d}1" if index % 3 == 1 else "",
                "baseAmount": base if kind != 3 else round(base * 1.004, 2),
                "vatAmount": vat,
            }
        )
    report.append({"vendorName": "Unknown extra", "baseAmount": 123.45, "vatAmount": 8.64, "date": "01/03/2567"})
    rng.shuffle(report)
    return internal, report


def random_operation(rng: random.Random, session: ReconciliationSession):
    pairs = session.pairs
    ai = [p.id for p in pairs if p.tier is Tier.AI]
    paired = [p.id for p in pairs if p.is_paired]
    loose_internal = [p.internal_id for p in pairs if p.tier is Tier.INTERNAL_ONLY]
    loose_external = [p.external_index for p in pairs if p.tier is Tier.EXTERNAL_ONLY]
    choice = rng.randint(0, 5)
    if choice == 0 and ai:
        return session.confirm_ai(rng.choice(ai))
    if choice == 1 and ai:
        return session.reject_ai(rng.choice(ai))
    if choice == 2 and loose_internal and loose_external:
        return session.manual_link(rng.choice(loose_internal), rng.choice(loose_external))
    if choice == 3 and paired:
        return session.unlink(rng.choice(paired))
    if choice == 4:
        return session.suggest(VendorSimilarityScorer())
    # Deliberately invalid requests must never change anything.
    return session.confirm_ai(rng.choice(paired) if paired else "missing")


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
    print("  Full Session Integration Tests")
    print(LINE * 62)

    internal, report = build_period(seed=7)

    print("\n  Initial Match:")
    start = time.time()
    session = ReconciliationSession(internal, report, session_id="sess_integration")
    elapsed = time.time() - start
    tiers = session.summary().tier_counts
    check("All three automatic tiers fire", tiers["exact"] > 0 and tiers["strong"] > 0 and tiers["fuzzy"] > 0)
    check("Leftovers on both sides", tiers["internal-only"] > 0 and tiers["external-only"] > 0)
    check("Inputs partitioned", session.violations() == [])
    check("Initial match is fast", elapsed < 5.0)
    again = ReconciliationSession(internal, report, session_id="sess_integration")
    check("Same inputs give the same pairs", again.pairs == session.pairs)

    print("\n  Suggestions:")
    result = session.suggest(VendorSimilarityScorer())
    check("Local scorer proposes pairs", result.ok and len(result.created) > 0)
    check("All new pairs are pending ai", all(p.is_ai_pending for p in session.pairs if p.id in result.created))
    check("Inputs still partitioned", session.violations() == [])

    print("\n  Random Operator (300 steps):")
    rng = random.Random(11)
    partition_ok = True
    failures_are_noops = True
    for _ in range(300):
        before = list(session.pairs)
        version = session.version
        outcome = random_operation(rng, session)
        if not outcome.ok:
            failures_are_noops = failures_are_noops and session.pairs == before and session.version == version
        if session.violations():
            partition_ok = False
    check("Partition holds after every step", partition_ok)
    check("Failed operations never change state", failures_are_noops)
    check("Log replay reproduces the final state", session.rebuild() == session.pairs)
    check("Version counts applied commands", session.version == len(session.commands))

    print("\n  Totals:")
    summary = session.summary()
    check("Totals independent of pairing", summary.internal_total == again.summary().internal_total)
    check("Matched never exceeds internal count", summary.matched <= summary.internal_count)
    paired_internal = sum(1 for p in session.pairs if p.is_paired)
    check("Tier counts add up", paired_internal + summary.internal_only == summary.internal_count)

    print(f"\n{LINE * 62}")
    print(f"  Results: {passed}/{passed + failed} passed")
    if failed == 0:
        print(f"  Integration: COMPLETE {PASS}")
    else:
        print(f"  Integration: {failed} FAILED")
    print(f"{LINE * 62}")
    return failed


def test_integration_checks() -> None:
    assert main() == 0


if __name__ == "__main__":
    sys.exit(1 if main() else 0)

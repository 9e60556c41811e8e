"""
main.py - CLI orchestration for the reconciliation engine.

This module is orchestration-only:
1. load bookkeeping records + report CSVs
2. match
3. suggest (optional, local vendor-similarity scorer)
4. explain
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from typing import Any, Optional

import pandas as pd
from dotenv import load_dotenv

from explain import format_report, format_session_json
from logging_config import get_logger, setup_logging
from scorer import MIN_CONFIDENCE, VendorSimilarityScorer
from session import ReconciliationSession
from session_store import SessionStore

logger = get_logger("recon-cli")

# Report exports come from Thai accounting packages as often as English ones.
COLUMN_ALIASES: dict[str, str] = {
    "id": "id",
    "record_id": "id",
    "date": "date",
    "วันที่": "date",
    "invoice": "invoice_number",
    "invoice_number": "invoice_number",
    "invoice no": "invoice_number",
    "invoice no.": "invoice_number",
    "เลขที่ใบกำกับ": "invoice_number",
    "เลขที่ใบกำกับภาษี": "invoice_number",
    "vendor": "vendor_name",
    "vendor_name": "vendor_name",
    "customer": "vendor_name",
    "name": "vendor_name",
    "ชื่อผู้ขาย": "vendor_name",
    "ชื่อผู้ซื้อ": "vendor_name",
    "tax_id": "tax_id",
    "tax id": "tax_id",
    "เลขประจำตัวผู้เสียภาษี": "tax_id",
    "base": "base_amount",
    "amount": "base_amount",
    "base_amount": "base_amount",
    "มูลค่าสินค้า": "base_amount",
    "มูลค่า": "base_amount",
    "vat": "vat_amount",
    "vat_amount": "vat_amount",
    "จำนวนเงินภาษี": "vat_amount",
    "ภาษีมูลค่าเพิ่ม": "vat_amount",
    "total": "total_amount",
    "total_amount": "total_amount",
    "รวม": "total_amount",
    "จำนวนเงินรวม": "total_amount",
    "description": "description",
    "รายละเอียด": "description",
    "status": "status",
}

INTERNAL_REQUIRED = ["id", "base_amount"]
REPORT_REQUIRED = ["base_amount"]


def _configure_output_symbols() -> str:
    """Configure stdout encoding and return a safe failure symbol."""
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    except (AttributeError, OSError, ValueError):
        pass

    try:
        "✗".encode(sys.stdout.encoding or "utf-8")
        return "✗"
    except (LookupError, UnicodeEncodeError):
        return "X"


FAIL_CHAR = _configure_output_symbols()


def canonical_column(name: Any) -> str:
    key = str(name).strip().lower()
    return COLUMN_ALIASES.get(key, key.replace(" ", "_"))


def load_records(csv_path: str, required: list[str], kind: str = "records") -> list[dict[str, Any]]:
    """Load a CSV into raw record dicts with canonical column names."""
    if csv_path is None:
        raise ValueError("csv_path cannot be None")

    csv_path = str(csv_path).strip()
    if not csv_path:
        raise ValueError("csv_path cannot be empty")

    if not os.path.exists(csv_path):
        raise FileNotFoundError(f"{kind.capitalize()} CSV not found: {csv_path}")

    try:
        df = pd.read_csv(csv_path, dtype=str, encoding="utf-8-sig")
    except UnicodeDecodeError:
        logger.warning(
            "csv_encoding_warning | path=%s | reason='utf-8 decode failed' | fallback=cp874",
            csv_path,
        )
        df = pd.read_csv(csv_path, dtype=str, encoding="cp874")
    except Exception as exc:
        raise ValueError(f"Failed to read CSV '{csv_path}': {exc}") from exc

    df.columns = [canonical_column(col) for col in df.columns]
    df = df.loc[:, ~df.columns.duplicated()]
    df = df.dropna(how="all").fillna("")

    missing = [column for column in required if column not in df.columns]
    if missing:
        raise ValueError(
            f"{kind.capitalize()} CSV missing required columns: {missing}\n"
            f"Required: {required}\n"
            f"Found: {list(df.columns)}"
        )

    records = df.to_dict(orient="records")
    logger.info(
        "csv_loaded | kind=%s | path=%s | rows=%s | columns=%s",
        kind,
        csv_path,
        len(records),
        list(df.columns),
    )
    return records


def load_internal_items(csv_path: str) -> list[dict[str, Any]]:
    return load_records(csv_path, INTERNAL_REQUIRED, kind="internal")


def load_report(csv_path: str) -> list[dict[str, Any]]:
    return load_records(csv_path, REPORT_REQUIRED, kind="report")


def run_reconciliation(
    internal_path: str,
    report_path: Optional[str] = None,
    suggest: bool = False,
    vat_only: bool = True,
    query: str = "",
    min_confidence: float = MIN_CONFIDENCE,
) -> ReconciliationSession:
    """Load inputs, match, and optionally merge local suggestions."""
    pipeline_start = time.time()
    logger.info("pipeline_start | internal=%s | report=%s", internal_path, report_path)

    internal_rows = load_internal_items(internal_path)
    report_rows = load_report(report_path) if report_path else []
    session = ReconciliationSession(internal_rows, report_rows, vat_only=vat_only, query=query)

    if suggest:
        result = session.suggest(VendorSimilarityScorer(min_confidence=min_confidence))
        logger.info("pipeline_stage | name=suggest | ok=%s | message=%r", result.ok, result.message)

    logger.info(
        "pipeline_complete | session_id=%s | pairs=%s | duration_s=%.2f",
        session.session_id,
        len(session.pairs),
        time.time() - pipeline_start,
    )
    return session


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point for the reconciliation engine."""
    load_dotenv()
    parser = argparse.ArgumentParser(
        prog="recon",
        description=(
            "Tax-report reconciliation\n"
            "Pairs bookkeeping records with an imported accounting report "
            "and shows what does not balance."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s --internal records.csv --report vat_report.csv\n"
            "  %(prog)s --internal records.csv --report vat_report.csv --suggest\n"
            "  %(prog)s --internal records.csv --report vat_report.csv --json --save\n"
        ),
    )
    parser.add_argument("--internal", "-i", type=str, required=True, help="Bookkeeping records CSV (required)")
    parser.add_argument("--report", "-r", type=str, help="Accounting report CSV")
    parser.add_argument(
        "--suggest",
        "-s",
        action="store_true",
        help="Propose AI-tier pairs for leftovers using the local vendor-similarity scorer",
    )
    parser.add_argument(
        "--min-confidence",
        type=float,
        default=MIN_CONFIDENCE,
        help=f"Minimum scorer confidence for a suggestion (default {MIN_CONFIDENCE})",
    )
    parser.add_argument(
        "--all-items",
        action="store_true",
        help="Include records without VAT (default: VAT-bearing records only)",
    )
    parser.add_argument("--query", "-q", type=str, default="", help="Only records whose vendor/description contains this text")
    parser.add_argument("--save", action="store_true", help="Persist the session under RECON_SESSION_DIR")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose (DEBUG-level) logging")
    parser.add_argument("--json", action="store_true", help="Output results as JSON instead of formatted text")
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON lines (for production/log aggregation)",
    )

    args = parser.parse_args(argv)
    setup_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        json_format=args.log_json,
    )

    try:
        session = run_reconciliation(
            args.internal,
            args.report,
            suggest=args.suggest,
            vat_only=not args.all_items,
            query=args.query,
            min_confidence=args.min_confidence,
        )
        if args.save:
            path = SessionStore().save(session.to_snapshot())
            logger.info("cli_saved | session_id=%s | path=%s", session.session_id, path)

        summary = session.summary()
        if args.json:
            payload = format_session_json(
                session.pairs,
                summary,
                session_id=session.session_id,
                version=session.version,
            )
            print(json.dumps(payload, indent=2, ensure_ascii=False))
        else:
            print(format_report(session.pairs, summary))
    except FileNotFoundError as exc:
        logger.error("cli_error | type=FileNotFoundError | error=%s", exc)
        print(f"\n{FAIL_CHAR} Error: {exc}")
        raise SystemExit(1) from exc
    except ValueError as exc:
        logger.error("cli_error | type=ValueError | error=%s", exc)
        print(f"\n{FAIL_CHAR} Error: {exc}")
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        print("\nInterrupted.")
        raise SystemExit(130)
    except Exception as exc:
        logger.error(
            "cli_error | type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        print(f"\nUnexpected error: {exc}")
        print("Run with --verbose for full traceback.")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()

"""
normalize.py - Canonical shape for internal records and report rows.

Core normalizers:
    normalize_text(value)            -> trimmed string ('' for None)
    normalize_amount(value)          -> signed float rounded to 2 decimals
    normalize_date(value)            -> ISO YYYY-MM-DD ('' when unparseable)
    normalize_invoice_number(value)  -> comparison key for invoice numbers
    normalize_tax_id(value)          -> digits only
    normalize_vendor(value)          -> company name without legal-form noise

Record builders:
    normalize_internal_item(raw)  /  normalize_internal_items(raws)
    normalize_external_row(raw)   /  normalize_external_rows(raws)

Design principles:
    - SAME normalization on BOTH sides
    - Pure transformations, no I/O
    - Invalid input degrades to neutral defaults
"""

from __future__ import annotations

import math
import re
import unicodedata
from datetime import date
from typing import Any, Iterable, Mapping

from dateutil import parser as dateparser

from logging_config import get_logger
from models import ExternalRow, InternalItem

logger = get_logger(__name__)

BUDDHIST_ERA_OFFSET = 543
BUDDHIST_ERA_THRESHOLD = 2500

EMPTY_MARKERS = {"n/a", "na", "none", "null", "-", "nan"}
CURRENCY_SYMBOLS = ("฿", "$", "€", "£", "thb", "บาท")

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T\s].*)?$")
_DMY_DATE_RE = re.compile(r"^(\d{1,2})[/.\-](\d{1,2})[/.\-](\d{2,4})$")
_NON_DIGIT_RE = re.compile(r"\D")
_MULTI_SPACE_RE = re.compile(r"\s+")

# Legal-form words that vary between how a business records a counterparty
# and how the accountant's report prints it.
VENDOR_PREFIXES: list[str] = [
    "ห้างหุ้นส่วนจำกัด",
    "ห้างหุ้นส่วน",
    "บริษัท",
    "บจก.",
    "บมจ.",
    "หจก.",
    "บ.",
]

LEADING_TOKENS: set[str] = {"บริษัท", "บ", "บจก", "บมจ", "หจก", "the"}

TRAILING_TOKENS: set[str] = {
    "จำกัด",
    "มหาชน",
    "co",
    "ltd",
    "limited",
    "company",
    "inc",
    "corp",
    "corporation",
    "plc",
    "public",
}

VENDOR_SUFFIXES: list[str] = ["(มหาชน)", "จำกัด"]


def _fold(text: str) -> str:
    # NFKC splits SARA AM (U+0E33) into NIKHAHIT + SARA AA, so names and the
    # tables above must go through the same folding to compare equal.
    return unicodedata.normalize("NFKC", text).lower()


VENDOR_PREFIXES = [_fold(prefix) for prefix in VENDOR_PREFIXES]
VENDOR_SUFFIXES = [_fold(suffix) for suffix in VENDOR_SUFFIXES]
LEADING_TOKENS = {_fold(token) for token in LEADING_TOKENS}
TRAILING_TOKENS = {_fold(token) for token in TRAILING_TOKENS}


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    """Return the first present, non-None value among alternative key spellings."""
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def normalize_text(value: Any) -> str:
    """Trim any value into a string; None and float NaN become ''."""
    if value is None:
        return ""
    if isinstance(value, float) and not math.isfinite(value):
        return ""
    text = str(value).strip()
    if text.lower() == "nan":
        return ""
    return text


def normalize_amount(value: Any) -> float:
    """Normalize amount input into a 2-decimal float.

    Negative amounts are kept: credit notes legitimately reduce a period.
    """
    if value is None:
        return 0.0

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        number = float(value)
        if not math.isfinite(number):
            logger.debug("normalize_amount | non_finite=%r | fallback=0.0", value)
            return 0.0
        return round(number, 2)

    cleaned = normalize_text(value).lower()
    if not cleaned or cleaned in EMPTY_MARKERS:
        return 0.0

    is_negative = cleaned.startswith("(") and cleaned.endswith(")")
    for symbol in CURRENCY_SYMBOLS:
        cleaned = cleaned.replace(symbol, "")
    cleaned = cleaned.replace("(", "").replace(")", "").replace(",", "").replace(" ", "")
    if not cleaned:
        return 0.0

    try:
        number = float(cleaned)
    except ValueError:
        logger.warning("normalize_amount | parse_failed | raw=%r | fallback=0.0", value)
        return 0.0

    if not math.isfinite(number):
        return 0.0
    if is_negative:
        number = -abs(number)
    return round(number, 2)


def _gregorian_year(year: int) -> int:
    if year > BUDDHIST_ERA_THRESHOLD:
        return year - BUDDHIST_ERA_OFFSET
    if year < 100:
        return 2000 + year
    return year


def _iso(year: int, month: int, day: int, raw: Any) -> str:
    try:
        return date(_gregorian_year(year), month, day).isoformat()
    except ValueError:
        logger.warning("normalize_date | invalid_calendar_date | raw=%r | fallback=''", raw)
        return ""


def normalize_date(value: Any) -> str:
    """Normalize date text to ISO YYYY-MM-DD.

    Slash/dot/dash dates are read day-first (d/m/y) as printed on Thai tax
    reports. Years above 2500 are Buddhist Era and converted to Gregorian.
    """
    if value is None:
        return ""
    if isinstance(value, date):
        return _iso(value.year, value.month, value.day, value)

    text = normalize_text(value)
    if not text or text.lower() in EMPTY_MARKERS:
        return ""
    if not any(char.isdigit() for char in text):
        return ""

    iso_match = _ISO_DATE_RE.match(text)
    if iso_match:
        year, month, day = (int(part) for part in iso_match.groups())
        return _iso(year, month, day, value)

    dmy_match = _DMY_DATE_RE.match(text)
    if dmy_match:
        day, month, year = (int(part) for part in dmy_match.groups())
        return _iso(year, month, day, value)

    try:
        parsed = dateparser.parse(text, dayfirst=True)
    except (ValueError, TypeError, OverflowError) as exc:
        logger.warning(
            "normalize_date | parse_error=%s | raw=%r | fallback=''",
            type(exc).__name__,
            text,
        )
        return ""
    if parsed is None:
        return ""
    return _iso(parsed.year, parsed.month, parsed.day, value)


def normalize_invoice_number(value: Any) -> str:
    """Comparison key for invoice numbers: trimmed and case-folded."""
    return normalize_text(value).lower()


def normalize_tax_id(value: Any) -> str:
    """Strip every non-digit character from a tax id."""
    return _NON_DIGIT_RE.sub("", normalize_text(value))


def normalize_vendor(value: Any) -> str:
    """Normalize a company name for similarity scoring.

    'บ.ชมอรรถ การ์เม้นท์ จำกัด' and 'บริษัท ชมอรรถ การ์เม้นท์ จำกัด' both
    become 'ชมอรรถ การ์เม้นท์'.
    """
    name = _fold(normalize_text(value))
    if not name:
        return ""

    for prefix in VENDOR_PREFIXES:
        if name.startswith(prefix):
            name = name[len(prefix) :].strip()
            break
    for suffix in VENDOR_SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)].strip()

    # Thai vowels and tone marks are combining marks (Mn) and must survive,
    # so only punctuation and symbols are blanked out.
    name = "".join(
        " " if unicodedata.category(char)[0] in ("P", "S") else char for char in name
    )

    words = name.split()
    while words and words[0] in LEADING_TOKENS:
        words.pop(0)
    while words and words[-1] in TRAILING_TOKENS:
        words.pop()

    normalized = _MULTI_SPACE_RE.sub(" ", " ".join(words)).strip()
    logger.debug("normalize_vendor | raw=%r | normalized=%r", value, normalized)
    return normalized


def _financials(raw: Mapping[str, Any]) -> dict[str, Any]:
    base = normalize_amount(_pick(raw, "base_amount", "baseAmount", "amount"))
    vat = normalize_amount(_pick(raw, "vat_amount", "vatAmount", "vat"))
    total_raw = _pick(raw, "total_amount", "totalAmount", "total")
    total = normalize_amount(total_raw) if total_raw not in (None, "") else round(base + vat, 2)
    return {
        "date": normalize_date(_pick(raw, "date")),
        "invoice_number": normalize_text(_pick(raw, "invoice_number", "invoiceNumber", "invoice")),
        "vendor_name": normalize_text(_pick(raw, "vendor_name", "vendorName", "vendor")),
        "tax_id": normalize_text(_pick(raw, "tax_id", "taxId")),
        "base_amount": base,
        "vat_amount": vat,
        "total_amount": total,
    }


def normalize_internal_item(raw: Mapping[str, Any] | InternalItem) -> InternalItem:
    """Coerce one bookkeeping record into an InternalItem.

    Raises:
        ValueError: when the record has no id (it could never be referenced).
    """
    if isinstance(raw, InternalItem):
        return raw
    item_id = normalize_text(_pick(raw, "id"))
    if not item_id:
        raise ValueError(f"Internal record without an id: {dict(raw)!r}")
    return InternalItem(
        id=item_id,
        description=normalize_text(_pick(raw, "description")),
        status=normalize_text(_pick(raw, "status")),
        **_financials(raw),
    )


def normalize_internal_items(raws: Iterable[Mapping[str, Any] | InternalItem]) -> list[InternalItem]:
    """Normalize a batch of records, rejecting duplicate ids."""
    items: list[InternalItem] = []
    seen: set[str] = set()
    for raw in raws:
        item = normalize_internal_item(raw)
        if item.id in seen:
            raise ValueError(f"Duplicate internal item id: {item.id!r}")
        seen.add(item.id)
        items.append(item)
    logger.debug("normalize_internal_items | count=%s", len(items))
    return items


def normalize_external_row(raw: Mapping[str, Any] | ExternalRow) -> ExternalRow:
    """Coerce one imported report line into an ExternalRow."""
    if isinstance(raw, ExternalRow):
        return raw
    return ExternalRow(**_financials(raw))


def is_blank_row(row: ExternalRow) -> bool:
    """Spreadsheet filler: no counterparty name and nothing to book."""
    return not row.vendor_name and row.base_amount <= 0


def normalize_external_rows(raws: Iterable[Mapping[str, Any] | ExternalRow]) -> list[ExternalRow]:
    """Normalize a report batch, dropping blank lines before indexing."""
    rows: list[ExternalRow] = []
    dropped = 0
    for raw in raws:
        row = normalize_external_row(raw)
        if is_blank_row(row):
            dropped += 1
            continue
        rows.append(row)
    if dropped:
        logger.info("normalize_external_rows | kept=%s | dropped_blank=%s", len(rows), dropped)
    return rows

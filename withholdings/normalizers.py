"""Cell normalizers for tax-portal exports (Portuguese number and date formats)."""

from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from withholdings.models import IncomeCategory

# Excel serial day numbers that map to plausible receipt dates (1982..2064).
EXCEL_SERIAL_MIN = 30000
EXCEL_SERIAL_MAX = 60000
_EXCEL_EPOCH = date(1899, 12, 30)

# Largest amount the Numeric(14, 2) columns can hold.
MAX_AMOUNT = Decimal("999999999999.99")

_PT_DECIMAL = re.compile(r"\d+,\d{1,2}$")
_DATE_FORMATS = ("%Y-%m-%d", "%d-%m-%Y", "%d/%m/%Y", "%Y/%m/%d", "%d.%m.%Y")

_CATEGORY_WORDS = {
    "renda": IncomeCategory.RENTAL,
    "predia": IncomeCategory.RENTAL,
    "capita": IncomeCategory.CAPITAL,
    "juro": IncomeCategory.CAPITAL,
    "dividend": IncomeCategory.CAPITAL,
    "pens": IncomeCategory.PENSION,
    "independente": IncomeCategory.INDEPENDENT_WORK,
    "servi": IncomeCategory.INDEPENDENT_WORK,
    "honor": IncomeCategory.INDEPENDENT_WORK,
}


def normalize_text(value: Any) -> str:
    """Lowercase, strip accents and collapse whitespace."""
    text = unicodedata.normalize("NFKD", str(value or ""))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return " ".join(text.lower().split())


def cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _bounded(value: Decimal) -> Optional[Decimal]:
    if not value.is_finite() or value > MAX_AMOUNT:
        return None
    return value


def parse_amount(raw: Any) -> Optional[Decimal]:
    """Parse a monetary cell as an absolute Decimal.

    Blank, unparseable, percentage-valued, non-finite and out-of-range
    cells return None.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float, Decimal)):
        try:
            return _bounded(abs(Decimal(str(raw))))
        except InvalidOperation:
            return None

    text = str(raw).strip()
    if not text or "%" in text:
        return None
    cleaned = re.sub(r"[€$\s ]", "", text)
    if _PT_DECIMAL.search(cleaned):
        cleaned = cleaned.replace(".", "").replace(",", ".")
    else:
        cleaned = cleaned.replace(",", "")
    try:
        return _bounded(abs(Decimal(cleaned)))
    except InvalidOperation:
        return None


def parse_percentage(raw: Any) -> Optional[Decimal]:
    """Parse a rate as a fraction: 0.23, "23", "23%" and "23,00 %" all give 0.23."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float, Decimal)):
        value = Decimal(str(raw))
    else:
        text = str(raw).strip().replace("%", "").replace(" ", "").replace(",", ".")
        if not text:
            return None
        try:
            value = Decimal(text)
        except InvalidOperation:
            return None
    if 0 < value <= 1:
        return value
    if 1 < value <= 100:
        return value / Decimal("100")
    return None


def _from_excel_serial(serial: float) -> Optional[date]:
    if EXCEL_SERIAL_MIN <= serial <= EXCEL_SERIAL_MAX:
        return _EXCEL_EPOCH + timedelta(days=int(serial))
    return None


def parse_date(raw: Any) -> Optional[date]:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, (int, float)):
        return _from_excel_serial(float(raw))

    text = str(raw).strip()
    if not text:
        return None
    if re.fullmatch(r"\d{5}(\.\d+)?", text):
        return _from_excel_serial(float(text))
    # Drop a trailing time component ("2025-03-01 00:00:00", "2025-03-01T10:00").
    text = re.split(r"[ T]", text, maxsplit=1)[0]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_category(raw: Any) -> Optional[IncomeCategory]:
    text = normalize_text(raw)
    if not text:
        return None
    code = re.match(r"^(?:cat(?:egoria)?\.?\s*)?([a-z])(?:\b|$)", text)
    if code:
        try:
            return IncomeCategory(code.group(1).upper())
        except ValueError:
            pass
    for word, category in _CATEGORY_WORDS.items():
        if word in text:
            return category
    return None

"""Triage of fields returned by the external document-extraction service."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

from withholdings.models import IncomeCategory, NormalizedRecord
from withholdings.normalizers import cell_text, parse_amount, parse_category, parse_date, parse_percentage
from withholdings.rates import default_rate
from withholdings.reconciler import ReconciliationError, ReconciliationTolerances, reconcile
from withholdings.tax_id import is_valid_tax_id

MISSING_NAME_FACTOR = 0.95
MISSING_DATE_FACTOR = 0.90
UNKNOWN_CATEGORY_FACTOR = 0.88
MIN_NAME_LENGTH = 3
# Categories the declaration accepts, even if only some have nominal rates here.
DECLARATION_CATEGORIES = {"A", "B", "E", "F", "G", "H", "R"}


class ExtractionResult(BaseModel):
    fields: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = 0.0


def normalize_confidence(value: Any) -> float:
    """Accept 0-1 or 0-100 and clamp into 0-1."""
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if confidence > 1:
        confidence /= 100
    return min(max(confidence, 0.0), 1.0)


def _tax_id_digits(value: Any) -> str:
    return "".join(ch for ch in cell_text(value) if ch.isdigit())


def score_confidence(fields: Mapping[str, Any], base_confidence: Any = 1.0) -> Tuple[float, List[str]]:
    confidence = normalize_confidence(base_confidence)
    warnings: List[str] = []

    tax_id = _tax_id_digits(fields.get("beneficiary_nif"))
    if not tax_id:
        return 0.0, ["Beneficiary tax id not found"]
    if not is_valid_tax_id(tax_id):
        return 0.0, [f"Beneficiary tax id {tax_id} fails checksum validation"]

    gross = parse_amount(fields.get("gross_amount"))
    if gross is None or gross <= 0:
        return 0.0, ["Gross amount missing or not positive"]
    withheld = parse_amount(fields.get("withholding_amount"))
    if withheld is not None and withheld > gross:
        return 0.0, ["Withheld amount exceeds gross amount"]

    name = cell_text(fields.get("beneficiary_name"))
    if len(name) < MIN_NAME_LENGTH:
        confidence *= MISSING_NAME_FACTOR
        warnings.append("Beneficiary name not found")
    if parse_date(fields.get("payment_date")) is None:
        confidence *= MISSING_DATE_FACTOR
        warnings.append("Payment date not found")
    category = cell_text(fields.get("income_category")).upper()
    if category not in DECLARATION_CATEGORIES:
        confidence *= UNKNOWN_CATEGORY_FACTOR
        warnings.append("Income category not identified")
    return confidence, warnings


def build_record_from_extraction(
    fields: Mapping[str, Any],
    source_file: str,
    fiscal_year: Optional[int] = None,
    tolerances: Optional[ReconciliationTolerances] = None,
) -> Tuple[Optional[NormalizedRecord], List[str]]:
    """Run extracted amounts through the reconciler and build a record.

    Returns (None, warnings) when the amounts cannot be reconciled.
    """
    warnings: List[str] = []
    category = parse_category(fields.get("income_category"))
    if category is None:
        category = IncomeCategory.INDEPENDENT_WORK
        warnings.append("Income category unknown; using category B")

    rate = parse_percentage(fields.get("withholding_rate"))
    if rate is None:
        rate = default_rate(category, fiscal_year)

    try:
        reconciled = reconcile(
            parse_amount(fields.get("gross_amount")),
            parse_amount(fields.get("withholding_amount")),
            parse_amount(fields.get("net_amount")),
            rate,
            tolerances,
        )
    except ReconciliationError as exc:
        return None, warnings + [str(exc)]
    warnings.extend(reconciled.warnings)

    tax_id = _tax_id_digits(fields.get("beneficiary_nif"))
    paid = parse_date(fields.get("payment_date"))
    record = NormalizedRecord(
        source_file=source_file,
        source_row=1,
        tax_id=tax_id if is_valid_tax_id(tax_id) else None,
        issuer_name=cell_text(fields.get("beneficiary_name")),
        payer_name=cell_text(fields.get("payer_name")),
        period_start=paid,
        period_end=paid,
        payment_date=paid,
        gross_amount=reconciled.gross,
        withheld_amount=reconciled.withheld,
        net_amount=reconciled.net,
        nominal_rate=Decimal(rate),
        category=category,
        document_reference=cell_text(fields.get("document_reference")) or source_file,
        warnings=list(warnings),
    )
    return record, warnings

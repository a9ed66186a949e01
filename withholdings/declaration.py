from __future__ import annotations

from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import List

from withholdings.models import DeclarationRow, Summary

DEFAULT_REGION = "C"
# Rate reported when a beneficiary has no gross amount to divide by.
FALLBACK_RATE_PERCENT = Decimal("25")


def to_declaration_rows(summary: Summary, year: int, region: str = DEFAULT_REGION) -> List[DeclarationRow]:
    """One declaration line per beneficiary with a known tax id, sorted by tax id."""
    rows: List[DeclarationRow] = []
    for group in summary.by_counterparty.values():
        if not group.tax_id:
            continue
        if group.gross_amount > 0:
            rate = (group.withheld_amount / group.gross_amount * 100).quantize(
                Decimal("0.01"), rounding=ROUND_HALF_UP
            )
        else:
            rate = FALLBACK_RATE_PERCENT
        rows.append(
            DeclarationRow(
                beneficiary_tax_id=group.tax_id,
                beneficiary_name=group.name,
                category_code=group.category.value,
                gross_amount=group.gross_amount,
                withheld_amount=group.withheld_amount,
                effective_rate=rate,
                region_code=region,
                payment_date=date(year, 12, 31),
            )
        )
    rows.sort(key=lambda r: r.beneficiary_tax_id)
    return rows

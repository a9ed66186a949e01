from __future__ import annotations

from decimal import Decimal
from typing import Dict, Optional

from withholdings.loader import load_withholding_rates
from withholdings.models import IncomeCategory


def default_rate(
    category: IncomeCategory,
    year: Optional[int] = None,
    table: Optional[Dict[int, Dict[str, float]]] = None,
) -> Decimal:
    """Nominal rate for a category and year.

    Unknown years use the nearest earlier year in the table, then the latest one.
    """
    table = table if table is not None else load_withholding_rates()
    years = sorted(table)
    if year in table:
        chosen = year
    else:
        earlier = [y for y in years if year is not None and y < year]
        chosen = earlier[-1] if earlier else years[-1]
    code = IncomeCategory(category).value
    try:
        return Decimal(str(table[chosen][code]))
    except KeyError as exc:
        raise ValueError(f"No withholding rate for category {code} in {chosen}") from exc

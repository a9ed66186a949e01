from __future__ import annotations

from collections import Counter
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional

from withholdings.models import CategoryTotal, CounterpartySummary, NormalizedRecord, Summary
from withholdings.normalizers import normalize_text

NO_TAX_ID_KEY = "NO_TAX_ID"
NAME_KEY_PREFIX = "NAME:"
RATE_PRECISION = Decimal("0.0001")


def counterparty_key(record: NormalizedRecord) -> str:
    """Tax id when known, else a name-derived key, else the catch-all bucket."""
    if record.tax_id:
        return record.tax_id
    name = normalize_text(record.issuer_name or record.payer_name)
    if name:
        return f"{NAME_KEY_PREFIX}{name}"
    return NO_TAX_ID_KEY


def event_date(record: NormalizedRecord) -> Optional[date]:
    return record.payment_date or record.period_end or record.period_start


def effective_rate(gross: Decimal, withheld: Decimal) -> Decimal:
    if gross == 0:
        return Decimal("0")
    return (withheld / gross).quantize(RATE_PRECISION, rounding=ROUND_HALF_UP)


def _group_summary(key: str, records: List[NormalizedRecord]) -> CounterpartySummary:
    names: List[str] = []
    for r in records:
        name = (r.issuer_name or r.payer_name).strip()
        if name and name not in names:
            names.append(name)
    name_counts = Counter((r.issuer_name or r.payer_name).strip() for r in records)
    name_counts.pop("", None)
    dates = [d for d in (event_date(r) for r in records) if d is not None]
    sources: List[str] = []
    for r in records:
        if r.source_file not in sources:
            sources.append(r.source_file)

    gross = sum((r.gross_amount for r in records), Decimal("0"))
    withheld = sum((r.withheld_amount for r in records), Decimal("0"))
    return CounterpartySummary(
        key=key,
        tax_id=records[0].tax_id,
        name=name_counts.most_common(1)[0][0] if name_counts else "",
        names=names,
        category=Counter(r.category for r in records).most_common(1)[0][0],
        gross_amount=gross,
        withheld_amount=withheld,
        net_amount=sum((r.net_amount for r in records), Decimal("0")),
        effective_rate=effective_rate(gross, withheld),
        document_count=len(records),
        first_date=min(dates) if dates else None,
        last_date=max(dates) if dates else None,
        sources=sources,
    )


def build_summary(records: Iterable[NormalizedRecord]) -> Summary:
    """Aggregate records by counterparty and by category. Always rebuilt from scratch."""
    records = list(records)
    summary = Summary(record_count=len(records))

    groups: Dict[str, List[NormalizedRecord]] = {}
    for r in records:
        groups.setdefault(counterparty_key(r), []).append(r)
        summary.gross_amount += r.gross_amount
        summary.withheld_amount += r.withheld_amount
        summary.net_amount += r.net_amount

        total = summary.by_category.get(r.category)
        if total is None:
            total = summary.by_category[r.category] = CategoryTotal(category=r.category)
        total.gross_amount += r.gross_amount
        total.withheld_amount += r.withheld_amount
        total.net_amount += r.net_amount
        total.document_count += 1

    for key, members in groups.items():
        summary.by_counterparty[key] = _group_summary(key, members)

    for category, total in summary.by_category.items():
        total.counterparty_count = len(
            {counterparty_key(r) for r in records if r.category == category}
        )
    return summary

from datetime import date
from decimal import Decimal

from withholdings.dedup import (
    InMemoryRecordLookup,
    MatchKind,
    MergePolicy,
    find_match,
    plan_merge,
)
from withholdings.models import IncomeCategory, NormalizedRecord


def _record(gross="1000.00", paid=date(2025, 3, 10), reference="FR-1", **overrides) -> NormalizedRecord:
    gross = Decimal(gross)
    values = dict(
        source_file="recibos.csv",
        source_row=2,
        tax_id="123456789",
        issuer_name="Ana Silva",
        payment_date=paid,
        gross_amount=gross,
        withheld_amount=(gross * Decimal("0.23")).quantize(Decimal("0.01")),
        net_amount=gross - (gross * Decimal("0.23")).quantize(Decimal("0.01")),
        nominal_rate=Decimal("0.23"),
        category=IncomeCategory.INDEPENDENT_WORK,
        document_reference=reference,
    )
    values.update(overrides)
    return NormalizedRecord(**values)


def _lookup(*records):
    lookup = InMemoryRecordLookup()
    ids = [lookup.add(r) for r in records]
    return lookup, ids


def test_same_reference_is_exact():
    lookup, ids = _lookup(_record())
    match = find_match(_record(gross="999.00", paid=date(2025, 3, 12)), lookup)
    assert match.kind == MatchKind.EXACT
    assert match.existing_id == ids[0]


def test_same_amounts_and_date_is_exact_even_without_reference():
    lookup, _ = _lookup(_record(reference=None))
    assert find_match(_record(reference=None), lookup).kind == MatchKind.EXACT


def test_invoice_and_receipt_for_same_payment_are_semantic():
    lookup, ids = _lookup(_record(reference="FT-7"))
    match = find_match(_record(gross="1000.01", paid=date(2025, 3, 13), reference="RC-7"), lookup)

    assert match.kind == MatchKind.SEMANTIC
    assert match.existing_id == ids[0]
    assert match.evidence.day_delta == 3
    assert match.evidence.amount_delta == Decimal("0.01")
    assert match.evidence.reference_differs


def test_outside_window_or_tolerance_is_no_match():
    lookup, _ = _lookup(_record(reference="FT-7"))
    assert find_match(_record(paid=date(2025, 3, 20), reference="RC-7"), lookup).kind == MatchKind.NONE
    assert find_match(_record(gross="1005.00", reference="RC-7"), lookup).kind == MatchKind.NONE
    assert find_match(_record(tax_id="501964843", reference="RC-7"), lookup).kind == MatchKind.NONE


def test_day_window_is_configurable():
    lookup, _ = _lookup(_record(reference="FT-7"))
    candidate = _record(gross="1000.01", paid=date(2025, 3, 20), reference="RC-7")
    assert find_match(candidate, lookup).kind == MatchKind.NONE
    assert find_match(candidate, lookup, day_window=14).kind == MatchKind.SEMANTIC


def test_records_without_counterparty_never_match():
    orphan = _record(tax_id=None, issuer_name="")
    lookup, _ = _lookup(orphan)
    assert find_match(orphan, lookup).kind == MatchKind.NONE


def test_name_keyed_records_can_match():
    lookup, _ = _lookup(_record(tax_id=None, reference="FT-7"))
    match = find_match(_record(tax_id=None, gross="1000.01", reference="RC-7"), lookup)
    assert match.kind == MatchKind.SEMANTIC


def test_plan_merge_policies():
    existing = _record(reference="FT-7", payer_name="")
    candidate = _record(gross="1000.01", reference="RC-7", payer_name="Empresa Lda")
    lookup, ids = _lookup(existing)
    match = find_match(candidate, lookup)

    assert plan_merge(match, candidate, existing, MergePolicy.SKIP).action == "skip"
    assert plan_merge(match, candidate, existing, MergePolicy.OVERWRITE).action == "overwrite"
    merge = plan_merge(match, candidate, existing, MergePolicy.MERGE)
    assert merge.action == "merge"
    assert merge.existing_id == ids[0]
    assert merge.fields == ["payer_name"]


def test_exact_matches_are_always_skipped_and_no_match_inserts():
    existing = _record()
    lookup, _ = _lookup(existing)
    exact = find_match(_record(), lookup)
    assert plan_merge(exact, _record(), existing, MergePolicy.OVERWRITE).action == "skip"

    fresh = _record(tax_id="501964843")
    assert plan_merge(find_match(fresh, lookup), fresh, None, MergePolicy.MERGE).action == "insert"

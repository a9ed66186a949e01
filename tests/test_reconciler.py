from decimal import Decimal

import pytest

from withholdings import reconciler
from withholdings.reconciler import (
    ReconciliationCase,
    ReconciliationError,
    ReconciliationTolerances,
    reconcile,
)

RATE = Decimal("0.23")


def test_every_case_has_a_handler():
    assert set(reconciler._HANDLERS) == set(ReconciliationCase)


def test_gross_only_derives_withheld_without_warning():
    result = reconcile(Decimal("450.00"), None, None, RATE)
    assert result.case == ReconciliationCase.GROSS_ONLY
    assert result.withheld == Decimal("103.50")
    assert result.net == Decimal("346.50")
    assert result.warnings == []


def test_net_only_grosses_up_with_one_warning():
    result = reconcile(None, None, Decimal("376.50"), RATE)
    assert result.case == ReconciliationCase.NET_ONLY
    assert result.gross == Decimal("488.96")
    assert result.withheld == Decimal("112.46")
    assert len(result.warnings) == 1


def test_net_only_exempt():
    result = reconcile(None, None, Decimal("500"), Decimal("0"))
    assert result.case == ReconciliationCase.NET_ONLY_EXEMPT
    assert (result.gross, result.withheld, result.net) == (Decimal("500.00"), Decimal("0"), Decimal("500.00"))
    assert result.warnings == []


def test_net_and_withheld():
    result = reconcile(None, Decimal("103.50"), Decimal("346.50"), RATE)
    assert result.case == ReconciliationCase.NET_AND_WITHHELD
    assert result.gross == Decimal("450.00")
    assert len(result.warnings) == 1


def test_value_column_confirmed_as_gross():
    result = reconcile(Decimal("450.00"), Decimal("103.50"), None, RATE)
    assert result.gross == Decimal("450.00")
    assert result.net == Decimal("346.50")
    assert "gross" in result.warnings[0]


def test_value_column_recognised_as_net():
    result = reconcile(Decimal("346.50"), Decimal("103.50"), None, RATE)
    assert result.gross == Decimal("450.00")
    assert result.net == Decimal("346.50")
    assert "forced" not in result.warnings[0]


def test_ambiguous_value_column_is_forced_to_net():
    result = reconcile(Decimal("1000"), Decimal("10"), None, RATE)
    assert result.gross == Decimal("1010.00")
    assert result.net == Decimal("1000.00")
    assert "forced" in result.warnings[0]


def test_loose_tolerance_makes_both_hypotheses_fit_and_forces_net():
    loose = ReconciliationTolerances(gross_net=Decimal("0.5"))
    result = reconcile(Decimal("450.00"), Decimal("103.50"), None, RATE, loose)
    assert result.net == Decimal("450.00")
    assert "forced" in result.warnings[0]


def test_gross_and_net_consistent():
    result = reconcile(Decimal("450.00"), None, Decimal("346.50"), RATE)
    assert result.case == ReconciliationCase.GROSS_AND_NET
    assert result.withheld == Decimal("103.50")
    assert len(result.warnings) == 1


def test_gross_and_net_drift_warns_but_does_not_block():
    result = reconcile(Decimal("450.00"), None, Decimal("400.00"), RATE)
    assert result.withheld == Decimal("50.00")
    assert len(result.warnings) == 2
    assert "differs" in result.warnings[1]


def test_all_present_recomputes_net():
    result = reconcile(Decimal("450.00"), Decimal("103.50"), Decimal("340.00"), RATE)
    assert result.case == ReconciliationCase.ALL_PRESENT
    assert result.net == Decimal("346.50")
    assert "disagrees" in result.warnings[0]


def test_all_present_with_both_columns_holding_net():
    result = reconcile(Decimal("346.50"), Decimal("103.50"), Decimal("346.50"), RATE)
    assert result.gross == Decimal("450.00")
    assert result.net == Decimal("346.50")
    assert "both" in result.warnings[0]


def test_zero_amounts_count_as_absent():
    result = reconcile(Decimal("0"), None, Decimal("100"), RATE)
    assert result.case == ReconciliationCase.NET_ONLY


def test_unreconcilable_rows_raise():
    with pytest.raises(ReconciliationError):
        reconcile(None, None, None, RATE)
    with pytest.raises(ReconciliationError):
        reconcile(None, Decimal("50"), None, RATE)
    with pytest.raises(ReconciliationError):
        reconcile(Decimal("100"), None, None, Decimal("1.5"))


def test_net_equals_gross_minus_withheld_for_any_present_subset():
    gross, withheld, net = Decimal("1000.00"), Decimal("230.00"), Decimal("770.00")
    subsets = [
        (gross, withheld, net),
        (gross, withheld, None),
        (gross, None, net),
        (None, withheld, net),
        (gross, None, None),
        (None, None, net),
    ]
    for g, w, n in subsets:
        result = reconcile(g, w, n, RATE)
        assert abs(result.net - (result.gross - result.withheld)) <= 1
        assert abs(result.gross - gross) <= 1


def test_out_of_range_amounts_raise_reconciliation_error():
    with pytest.raises(ReconciliationError):
        reconcile(Decimal("1E+30"), None, None, RATE)

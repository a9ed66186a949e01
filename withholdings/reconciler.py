"""Gross / withheld / net reconciliation.

Exports disagree on what their value columns hold, so the triple is rebuilt
from whichever amounts are present and the nominal rate. Each way of getting
there is a ``ReconciliationCase``; every case except the two direct ones
(gross only, exempt net only) leaves a warning for the reviewer.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from withholdings.settings import Settings, get_settings

CENT = Decimal("0.01")

GROSS_NET_TOLERANCE = Decimal("0.05")
RETENTION_DRIFT_TOLERANCE = Decimal("0.02")
ROUNDING_UNIT = Decimal("1")


class ReconciliationError(ValueError):
    """The amounts present cannot produce a coherent triple."""


class ReconciliationCase(str, Enum):
    NET_AND_WITHHELD = "net_and_withheld"
    GROSS_AND_WITHHELD = "gross_and_withheld"
    GROSS_AND_NET = "gross_and_net"
    NET_ONLY = "net_only"
    GROSS_ONLY = "gross_only"
    NET_ONLY_EXEMPT = "net_only_exempt"
    ALL_PRESENT = "all_present"


class ReconciliationTolerances(BaseModel):
    gross_net: Decimal = GROSS_NET_TOLERANCE
    retention_drift: Decimal = RETENTION_DRIFT_TOLERANCE
    rounding_unit: Decimal = ROUNDING_UNIT

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ReconciliationTolerances":
        settings = settings or get_settings()
        return cls(gross_net=settings.gross_net_tolerance, retention_drift=settings.retention_drift_tolerance)


class Reconciled(BaseModel):
    case: ReconciliationCase
    gross: Decimal
    withheld: Decimal
    net: Decimal
    warnings: List[str] = Field(default_factory=list)


def _q(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _present(value: Optional[Decimal]) -> Optional[Decimal]:
    if value is None:
        return None
    value = abs(Decimal(value))
    return value if value != 0 else None


def classify(
    gross: Optional[Decimal], withheld: Optional[Decimal], net: Optional[Decimal], rate: Decimal
) -> ReconciliationCase:
    gross, withheld, net = _present(gross), _present(withheld), _present(net)
    if gross is not None and withheld is not None and net is not None:
        return ReconciliationCase.ALL_PRESENT
    if gross is None and withheld is not None and net is not None:
        return ReconciliationCase.NET_AND_WITHHELD
    if gross is not None and withheld is not None:
        return ReconciliationCase.GROSS_AND_WITHHELD
    if gross is not None and net is not None:
        return ReconciliationCase.GROSS_AND_NET
    if gross is not None:
        return ReconciliationCase.GROSS_ONLY
    if net is not None:
        return ReconciliationCase.NET_ONLY if rate > 0 else ReconciliationCase.NET_ONLY_EXEMPT
    if withheld is not None:
        raise ReconciliationError("Only a withheld amount is present; gross and net cannot be derived")
    raise ReconciliationError("No gross, withheld or net amount found")


def _net_and_withheld(gross, withheld, net, rate, tol) -> Reconciled:
    return Reconciled(
        case=ReconciliationCase.NET_AND_WITHHELD,
        gross=_q(net + withheld),
        withheld=_q(withheld),
        net=_q(net),
        warnings=["Gross amount derived from net + withheld"],
    )


def _relative_error(expected: Decimal, actual: Decimal) -> Decimal:
    return abs(expected - actual) / actual


def _gross_and_withheld(gross, withheld, net, rate, tol) -> Reconciled:
    as_gross_ok = withheld < gross and _relative_error(gross * rate, withheld) <= tol.gross_net
    as_net_ok = _relative_error((gross + withheld) * rate, withheld) <= tol.gross_net

    if as_gross_ok and not as_net_ok:
        return Reconciled(
            case=ReconciliationCase.GROSS_AND_WITHHELD,
            gross=_q(gross),
            withheld=_q(withheld),
            net=_q(gross - withheld),
            warnings=["Value column read as gross (withheld matches gross x rate); net derived as gross - withheld"],
        )
    if as_net_ok and not as_gross_ok:
        message = "Value column read as net (withheld matches (value + withheld) x rate); gross derived as net + withheld"
    else:
        message = (
            "Could not tell whether the value column is gross or net at rate "
            f"{rate}; treated it as net and derived gross as net + withheld (forced)"
        )
    return Reconciled(
        case=ReconciliationCase.GROSS_AND_WITHHELD,
        gross=_q(gross + withheld),
        withheld=_q(withheld),
        net=_q(gross),
        warnings=[message],
    )


def _gross_and_net(gross, withheld, net, rate, tol) -> Reconciled:
    warnings = []
    if net > gross:
        gross, net = net, gross
        warnings.append("Gross and net columns were swapped (net exceeded gross)")
    withheld = gross - net
    warnings.append("Withheld amount derived from gross - net")
    expected = gross * rate
    if abs(withheld - expected) > tol.retention_drift * gross:
        warnings.append(
            f"Derived withheld {_q(withheld)} differs from gross x rate ({_q(expected)}) by more than "
            f"{tol.retention_drift * 100}% of gross"
        )
    return Reconciled(
        case=ReconciliationCase.GROSS_AND_NET,
        gross=_q(gross),
        withheld=_q(withheld),
        net=_q(net),
        warnings=warnings,
    )


def _net_only(gross, withheld, net, rate, tol) -> Reconciled:
    derived_gross = _q(net / (Decimal("1") - rate))
    return Reconciled(
        case=ReconciliationCase.NET_ONLY,
        gross=derived_gross,
        withheld=_q(derived_gross - net),
        net=_q(net),
        warnings=[f"Gross amount derived from net / (1 - {rate}); withheld = gross - net"],
    )


def _gross_only(gross, withheld, net, rate, tol) -> Reconciled:
    derived_withheld = _q(gross * rate)
    return Reconciled(
        case=ReconciliationCase.GROSS_ONLY,
        gross=_q(gross),
        withheld=derived_withheld,
        net=_q(gross) - derived_withheld,
    )


def _net_only_exempt(gross, withheld, net, rate, tol) -> Reconciled:
    return Reconciled(
        case=ReconciliationCase.NET_ONLY_EXEMPT,
        gross=_q(net),
        withheld=Decimal("0.00"),
        net=_q(net),
    )


def _all_present(gross, withheld, net, rate, tol) -> Reconciled:
    unit = tol.rounding_unit
    if abs(gross - net) <= unit and abs(gross - (net + withheld)) > unit:
        return Reconciled(
            case=ReconciliationCase.ALL_PRESENT,
            gross=_q(net + withheld),
            withheld=_q(withheld),
            net=_q(net),
            warnings=["Gross and net columns both held the net amount; gross derived as net + withheld"],
        )
    recomputed = gross - withheld
    if abs(recomputed - net) > unit:
        message = f"Net column ({_q(net)}) disagrees with gross - withheld; net recomputed as {_q(recomputed)}"
    else:
        message = "Net recomputed as gross - withheld"
    return Reconciled(
        case=ReconciliationCase.ALL_PRESENT,
        gross=_q(gross),
        withheld=_q(withheld),
        net=_q(recomputed),
        warnings=[message],
    )


_HANDLERS: Dict[ReconciliationCase, Callable[..., Reconciled]] = {
    ReconciliationCase.NET_AND_WITHHELD: _net_and_withheld,
    ReconciliationCase.GROSS_AND_WITHHELD: _gross_and_withheld,
    ReconciliationCase.GROSS_AND_NET: _gross_and_net,
    ReconciliationCase.NET_ONLY: _net_only,
    ReconciliationCase.GROSS_ONLY: _gross_only,
    ReconciliationCase.NET_ONLY_EXEMPT: _net_only_exempt,
    ReconciliationCase.ALL_PRESENT: _all_present,
}

_unhandled = set(ReconciliationCase) - set(_HANDLERS)
if _unhandled:
    raise RuntimeError(f"Reconciliation cases without a handler: {sorted(c.value for c in _unhandled)}")


def reconcile(
    gross_raw: Optional[Decimal],
    withheld_raw: Optional[Decimal],
    net_raw: Optional[Decimal],
    nominal_rate: Decimal,
    tolerances: Optional[ReconciliationTolerances] = None,
) -> Reconciled:
    """Rebuild (gross, withheld, net); zero amounts count as absent."""
    tol = tolerances or ReconciliationTolerances.from_settings()
    rate = Decimal(str(nominal_rate))
    if rate < 0 or rate >= 1:
        raise ReconciliationError(f"Nominal rate out of range: {rate}")
    case = classify(gross_raw, withheld_raw, net_raw, rate)
    try:
        return _HANDLERS[case](_present(gross_raw), _present(withheld_raw), _present(net_raw), rate, tol)
    except InvalidOperation as exc:
        raise ReconciliationError(f"Amounts out of range for {case.value}: {gross_raw}, {withheld_raw}, {net_raw}") from exc

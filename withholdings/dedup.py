"""Duplicate detection for withholding records.

The detector reports what it found and the evidence for it; the caller
chooses the policy (skip, merge or overwrite) applied to semantic matches.
"""

from __future__ import annotations

import uuid
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from withholdings.models import NormalizedRecord
from withholdings.summary import NO_TAX_ID_KEY, counterparty_key, event_date

DAY_WINDOW = 7
AMOUNT_TOLERANCE = Decimal("0.01")

MERGEABLE_FIELDS = (
    "tax_id",
    "issuer_name",
    "payer_name",
    "period_start",
    "period_end",
    "payment_date",
    "document_reference",
)


class MatchKind(str, Enum):
    NONE = "none"
    EXACT = "exact"
    SEMANTIC = "semantic"


class MergePolicy(str, Enum):
    SKIP = "skip"
    MERGE = "merge"
    OVERWRITE = "overwrite"


class StoredRecord(BaseModel):
    id: str
    record: NormalizedRecord


class MatchEvidence(BaseModel):
    counterparty_key: str
    amount_delta: Decimal
    day_delta: Optional[int] = None
    reference_differs: bool = False


class DuplicateMatch(BaseModel):
    kind: MatchKind = MatchKind.NONE
    existing_id: Optional[str] = None
    evidence: Optional[MatchEvidence] = None


class MergeAction(BaseModel):
    action: str  # insert | skip | merge | overwrite
    existing_id: Optional[str] = None
    fields: List[str] = Field(default_factory=list)


class RecordLookup(Protocol):
    def find_candidates(
        self, key: str, start: Optional[date], end: Optional[date]
    ) -> List[StoredRecord]: ...


class InMemoryRecordLookup:
    """Dict-backed lookup, handy for a single import run or tests."""

    def __init__(self) -> None:
        self._records: Dict[str, StoredRecord] = {}

    def add(self, record: NormalizedRecord, record_id: Optional[str] = None) -> str:
        stored = StoredRecord(id=record_id or str(uuid.uuid4()), record=record)
        self._records[stored.id] = stored
        return stored.id

    def get(self, record_id: str) -> Optional[StoredRecord]:
        return self._records.get(record_id)

    def find_candidates(self, key: str, start: Optional[date], end: Optional[date]) -> List[StoredRecord]:
        return [
            s
            for s in self._records.values()
            if counterparty_key(s.record) == key and in_window(event_date(s.record), start, end)
        ]


def in_window(value: Optional[date], start: Optional[date], end: Optional[date]) -> bool:
    if value is None or start is None or end is None:
        return True
    return start <= value <= end


def _reference(record: NormalizedRecord) -> str:
    return (record.document_reference or "").strip().upper()


def _evidence(candidate: NormalizedRecord, existing: NormalizedRecord, key: str) -> MatchEvidence:
    a, b = event_date(candidate), event_date(existing)
    return MatchEvidence(
        counterparty_key=key,
        amount_delta=abs(candidate.gross_amount - existing.gross_amount),
        day_delta=abs((a - b).days) if a and b else None,
        reference_differs=_reference(candidate) != _reference(existing),
    )


def _is_exact(candidate: NormalizedRecord, existing: NormalizedRecord) -> bool:
    ref = _reference(candidate)
    if ref and ref == _reference(existing):
        return True
    return (
        candidate.gross_amount == existing.gross_amount
        and candidate.withheld_amount == existing.withheld_amount
        and event_date(candidate) == event_date(existing)
    )


def find_match(
    candidate: NormalizedRecord,
    lookup: RecordLookup,
    day_window: int = DAY_WINDOW,
    amount_tolerance: Decimal = AMOUNT_TOLERANCE,
) -> DuplicateMatch:
    key = counterparty_key(candidate)
    if key == NO_TAX_ID_KEY:
        return DuplicateMatch()

    when = event_date(candidate)
    window = timedelta(days=day_window)
    start, end = (when - window, when + window) if when else (None, None)

    best: Optional[DuplicateMatch] = None
    best_rank = None
    for stored in lookup.find_candidates(key, start, end):
        evidence = _evidence(candidate, stored.record, key)
        if _is_exact(candidate, stored.record):
            return DuplicateMatch(kind=MatchKind.EXACT, existing_id=stored.id, evidence=evidence)
        if evidence.amount_delta > amount_tolerance:
            continue
        if evidence.day_delta is None or evidence.day_delta > day_window:
            continue
        rank = (evidence.day_delta, evidence.amount_delta)
        if best_rank is None or rank < best_rank:
            best_rank = rank
            best = DuplicateMatch(kind=MatchKind.SEMANTIC, existing_id=stored.id, evidence=evidence)
    return best or DuplicateMatch()


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def plan_merge(
    match: DuplicateMatch,
    candidate: NormalizedRecord,
    existing: Optional[NormalizedRecord],
    policy: MergePolicy,
) -> MergeAction:
    if match.kind == MatchKind.NONE:
        return MergeAction(action="insert")
    if match.kind == MatchKind.EXACT or policy == MergePolicy.SKIP:
        return MergeAction(action="skip", existing_id=match.existing_id)
    if policy == MergePolicy.OVERWRITE:
        return MergeAction(action="overwrite", existing_id=match.existing_id)
    if existing is None:
        raise ValueError("Merge policy needs the existing record")
    fields = [
        name
        for name in MERGEABLE_FIELDS
        if _is_blank(getattr(existing, name)) and not _is_blank(getattr(candidate, name))
    ]
    return MergeAction(action="merge", existing_id=match.existing_id, fields=fields)

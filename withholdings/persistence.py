from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from withholdings.db import SessionLocal
from withholdings.db_models import WithholdingRecordORM
from withholdings.dedup import (
    MatchKind,
    MergePolicy,
    StoredRecord,
    find_match,
    in_window,
    plan_merge,
)
from withholdings.models import IncomeCategory, NormalizedRecord
from withholdings.settings import get_settings
from withholdings.summary import counterparty_key, event_date

logger = logging.getLogger(__name__)


class SaveDecision(BaseModel):
    source_file: str
    source_row: int
    action: str
    match: MatchKind
    existing_id: Optional[str] = None
    fields: List[str] = Field(default_factory=list)


class SaveReport(BaseModel):
    inserted: int = 0
    merged: int = 0
    overwritten: int = 0
    skipped: int = 0
    decisions: List[SaveDecision] = Field(default_factory=list)


def _to_record(row: WithholdingRecordORM) -> NormalizedRecord:
    return NormalizedRecord(
        source_file=row.source_file,
        source_row=row.source_row,
        tax_id=row.tax_id,
        issuer_name=row.issuer_name or "",
        payer_name=row.payer_name or "",
        period_start=row.period_start,
        period_end=row.period_end,
        payment_date=row.payment_date,
        gross_amount=Decimal(str(row.gross_amount)),
        withheld_amount=Decimal(str(row.withheld_amount)),
        net_amount=Decimal(str(row.net_amount)),
        nominal_rate=Decimal(str(row.nominal_rate)),
        category=IncomeCategory(row.category),
        document_reference=row.document_reference,
        warnings=list(row.warnings_json or []),
    )


def _apply(row: WithholdingRecordORM, record: NormalizedRecord) -> None:
    row.counterparty_key = counterparty_key(record)
    row.source_file = record.source_file
    row.source_row = record.source_row
    row.tax_id = record.tax_id
    row.issuer_name = record.issuer_name
    row.payer_name = record.payer_name
    row.period_start = record.period_start
    row.period_end = record.period_end
    row.payment_date = record.payment_date
    row.gross_amount = record.gross_amount
    row.withheld_amount = record.withheld_amount
    row.net_amount = record.net_amount
    row.nominal_rate = record.nominal_rate
    row.category = record.category.value
    row.document_reference = record.document_reference
    row.warnings_json = list(record.warnings)


class _SessionLookup:
    def __init__(self, db: Session):
        self._db = db

    def find_candidates(self, key: str, start: Optional[date], end: Optional[date]) -> List[StoredRecord]:
        rows = self._db.query(WithholdingRecordORM).filter(WithholdingRecordORM.counterparty_key == key).all()
        stored = [StoredRecord(id=row.id, record=_to_record(row)) for row in rows]
        return [s for s in stored if in_window(event_date(s.record), start, end)]


class WithholdingRepository:
    """Persisted withholding records, deduplicated on save."""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    def find_candidates(self, key: str, start: Optional[date], end: Optional[date]) -> List[StoredRecord]:
        with self._session_factory() as db:
            return _SessionLookup(db).find_candidates(key, start, end)

    def get(self, record_id: str) -> Optional[StoredRecord]:
        with self._session_factory() as db:
            row = db.get(WithholdingRecordORM, record_id)
            return StoredRecord(id=row.id, record=_to_record(row)) if row else None

    def all_records(self) -> List[StoredRecord]:
        with self._session_factory() as db:
            rows = db.query(WithholdingRecordORM).order_by(WithholdingRecordORM.created_at).all()
            return [StoredRecord(id=row.id, record=_to_record(row)) for row in rows]

    def save(
        self,
        records: Iterable[NormalizedRecord],
        policy: MergePolicy = MergePolicy.SKIP,
        day_window: Optional[int] = None,
        amount_tolerance: Optional[Decimal] = None,
    ) -> SaveReport:
        """Insert records, resolving duplicates against what is already stored.

        Exact matches are always skipped; ``policy`` applies to semantic matches.
        """
        settings = get_settings()
        if day_window is None:
            day_window = settings.dedup_day_window
        if amount_tolerance is None:
            amount_tolerance = settings.dedup_amount_tolerance
        report = SaveReport()
        with self._session_factory() as db:
            lookup = _SessionLookup(db)
            for record in records:
                match = find_match(record, lookup, day_window=day_window, amount_tolerance=amount_tolerance)
                existing_row = db.get(WithholdingRecordORM, match.existing_id) if match.existing_id else None
                existing = _to_record(existing_row) if existing_row is not None else None
                action = plan_merge(match, record, existing, policy)

                if action.action == "insert":
                    row = WithholdingRecordORM()
                    _apply(row, record)
                    db.add(row)
                    report.inserted += 1
                elif action.action == "overwrite":
                    _apply(existing_row, record)
                    report.overwritten += 1
                elif action.action == "merge":
                    merged = existing.model_copy(update={f: getattr(record, f) for f in action.fields})
                    merged.warnings = existing.warnings + [
                        w for w in record.warnings if w not in existing.warnings
                    ]
                    _apply(existing_row, merged)
                    report.merged += 1
                else:
                    report.skipped += 1
                db.flush()

                logger.info(
                    "Record %s:%s -> %s (%s match%s)",
                    record.source_file,
                    record.source_row,
                    action.action,
                    match.kind.value,
                    f" with {match.existing_id}" if match.existing_id else "",
                )
                report.decisions.append(
                    SaveDecision(
                        source_file=record.source_file,
                        source_row=record.source_row,
                        action=action.action,
                        match=match.kind,
                        existing_id=action.existing_id,
                        fields=action.fields,
                    )
                )
            db.commit()
        return report

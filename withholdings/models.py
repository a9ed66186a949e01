from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class IncomeCategory(str, Enum):
    """Income categories of the annual withholding declaration."""

    INDEPENDENT_WORK = "B"
    CAPITAL = "E"
    RENTAL = "F"
    PENSION = "H"


class ReceiptLayout(str, Enum):
    INDEPENDENT_WORKER = "independent_worker"
    RENTAL = "rental"
    UNKNOWN = "unknown"


class TaxId(BaseModel):
    """Tax identifier recovered from a free-form reference."""

    value: str
    reliable: bool = True
    note: Optional[str] = None


class NormalizedRecord(BaseModel):
    """One reconciled withholding event (a receipt row or a scanned document)."""

    source_file: str
    source_row: int
    tax_id: Optional[str] = None
    issuer_name: str = ""
    payer_name: str = ""
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    payment_date: Optional[date] = None
    gross_amount: Decimal
    withheld_amount: Decimal
    net_amount: Decimal
    nominal_rate: Decimal
    category: IncomeCategory
    document_reference: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class RowError(BaseModel):
    row: int
    reason: str


class CounterpartySummary(BaseModel):
    key: str
    tax_id: Optional[str] = None
    name: str = ""
    names: List[str] = Field(default_factory=list)
    category: IncomeCategory
    gross_amount: Decimal = Decimal("0")
    withheld_amount: Decimal = Decimal("0")
    net_amount: Decimal = Decimal("0")
    effective_rate: Decimal = Decimal("0")
    document_count: int = 0
    first_date: Optional[date] = None
    last_date: Optional[date] = None
    sources: List[str] = Field(default_factory=list)


class CategoryTotal(BaseModel):
    category: IncomeCategory
    gross_amount: Decimal = Decimal("0")
    withheld_amount: Decimal = Decimal("0")
    net_amount: Decimal = Decimal("0")
    counterparty_count: int = 0
    document_count: int = 0


class Summary(BaseModel):
    record_count: int = 0
    gross_amount: Decimal = Decimal("0")
    withheld_amount: Decimal = Decimal("0")
    net_amount: Decimal = Decimal("0")
    by_counterparty: Dict[str, CounterpartySummary] = Field(default_factory=dict)
    by_category: Dict[IncomeCategory, CategoryTotal] = Field(default_factory=dict)


class ReconciliationResult(BaseModel):
    """Outcome of parsing one spreadsheet export."""

    filename: str
    layout: ReceiptLayout
    category: IncomeCategory
    nominal_rate: Decimal
    column_map: Dict[str, str] = Field(default_factory=dict)
    records: List[NormalizedRecord] = Field(default_factory=list)
    errors: List[RowError] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    blank_rows: int = 0
    summary: Summary = Field(default_factory=Summary)

    @property
    def processed_rows(self) -> int:
        return len(self.records)

    @property
    def skipped_rows(self) -> int:
        return len(self.errors)

    @property
    def warned_rows(self) -> int:
        return sum(1 for r in self.records if r.warnings)

    @property
    def success(self) -> bool:
        return len(self.records) > 0


class DeclarationRow(BaseModel):
    """Per-beneficiary line of the annual withholding declaration."""

    beneficiary_tax_id: str
    beneficiary_name: str
    category_code: str
    gross_amount: Decimal
    withheld_amount: Decimal
    effective_rate: Decimal  # percent, e.g. 23.00
    region_code: str = "C"
    payment_date: date


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class UploadDocument(BaseModel):
    """A scanned document submitted for extraction. Holds a pointer, not the bytes."""

    file_name: str
    payload_ref: str
    mime_type: str
    size: Optional[int] = None


class QueueItem(BaseModel):
    id: str
    batch_id: str
    file_name: str
    payload_ref: str
    mime_type: str
    fiscal_year: int
    status: QueueStatus
    attempts: int = 0
    max_attempts: int = 3
    confidence: Optional[float] = None
    extracted_data: Optional[Dict[str, Any]] = None
    warnings: List[str] = Field(default_factory=list)
    needs_review: bool = False
    error_message: Optional[str] = None
    record_count: int = 0
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def retries_left(self) -> int:
        return max(self.max_attempts - self.attempts, 0)


class BatchProgress(BaseModel):
    batch_id: str
    cancelled: bool = False
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    needs_review: int = 0
    exhausted: int = 0
    extracted_records: int = 0

    @property
    def done(self) -> bool:
        return self.processing == 0 and (self.pending == 0 or self.cancelled)


__all__ = [
    "IncomeCategory",
    "ReceiptLayout",
    "TaxId",
    "NormalizedRecord",
    "RowError",
    "CounterpartySummary",
    "CategoryTotal",
    "Summary",
    "ReconciliationResult",
    "DeclarationRow",
    "QueueStatus",
    "UploadDocument",
    "QueueItem",
    "BatchProgress",
]

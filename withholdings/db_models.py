from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.types import JSON

from withholdings.db import Base


def _uuid_str() -> str:
    return str(uuid.uuid4())


class WithholdingRecordORM(Base):
    __tablename__ = "withholding_records"

    id = Column(String, primary_key=True, default=_uuid_str)
    counterparty_key = Column(String, nullable=False, index=True)
    source_file = Column(String, nullable=False)
    source_row = Column(Integer, nullable=False)
    tax_id = Column(String, nullable=True, index=True)
    issuer_name = Column(String, nullable=False, default="")
    payer_name = Column(String, nullable=False, default="")
    period_start = Column(Date, nullable=True)
    period_end = Column(Date, nullable=True)
    payment_date = Column(Date, nullable=True)
    gross_amount = Column(Numeric(14, 2), nullable=False)
    withheld_amount = Column(Numeric(14, 2), nullable=False)
    net_amount = Column(Numeric(14, 2), nullable=False)
    nominal_rate = Column(Numeric(6, 4), nullable=False)
    category = Column(String, nullable=False)
    document_reference = Column(String, nullable=True)
    warnings_json = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class UploadBatchORM(Base):
    __tablename__ = "upload_batches"

    id = Column(String, primary_key=True, default=_uuid_str)
    fiscal_year = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="open")

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class UploadQueueItemORM(Base):
    __tablename__ = "upload_queue"

    id = Column(String, primary_key=True, default=_uuid_str)
    batch_id = Column(String, ForeignKey("upload_batches.id"), nullable=False, index=True)
    file_name = Column(String, nullable=False)
    payload_ref = Column(String, nullable=False)
    mime_type = Column(String, nullable=False)
    fiscal_year = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    confidence = Column(Float, nullable=True)
    extracted_data = Column(JSON, nullable=True)
    warnings_json = Column(JSON, nullable=True)
    needs_review = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    record_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

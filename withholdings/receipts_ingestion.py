"""Parse tax-portal receipt exports (CSV or .xlsx) into reconciled records."""

from __future__ import annotations

import csv
import io
import logging
from decimal import Decimal
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from openpyxl import load_workbook

from withholdings.column_mapping import map_column_indices
from withholdings.loader import SynonymEntry
from withholdings.models import (
    IncomeCategory,
    NormalizedRecord,
    ReceiptLayout,
    ReconciliationResult,
    RowError,
)
from withholdings.normalizers import (
    cell_text,
    normalize_text,
    parse_amount,
    parse_category,
    parse_date,
    parse_percentage,
)
from withholdings.rates import default_rate
from withholdings.reconciler import ReconciliationTolerances, reconcile
from withholdings.settings import get_settings
from withholdings.summary import build_summary
from withholdings.tax_id import extract_tax_id

logger = logging.getLogger(__name__)

CANCELLED_STATUSES = {"anulado", "anulada", "cancelado", "cancelada", "cancelled", "canceled"}

_XLSX_MAGIC = b"PK"
_OLE_MAGIC = b"\xd0\xcf\x11\xe0"

_RENTAL_FILENAME_HINTS = ("renda", "predial")
_WORKER_FILENAME_HINTS = ("recibo",)
_RENTAL_HEADER_WORDS = ("locador", "senhorio", "inquilino", "locatario")
_WORKER_HEADER_WORDS = ("prestador", "emitente", "adquirente")

Source = Union[bytes, str, BinaryIO]


class ReceiptFileError(ValueError):
    """The file as a whole cannot be parsed (unreadable, no header, no data)."""


def _read_bytes(source: Source) -> bytes:
    if isinstance(source, bytes):
        return source
    if isinstance(source, str):
        return source.encode("utf-8")
    content = source.read()
    return content.encode("utf-8") if isinstance(content, str) else content


def _decode(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def _read_xlsx(content: bytes) -> List[List[Any]]:
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except Exception as exc:
        raise ReceiptFileError(f"Unreadable spreadsheet: {exc}") from exc
    try:
        sheet = workbook.active
        return [list(row) for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


def _read_csv(text: str) -> List[List[Any]]:
    sample = text[:4096]
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=",;\t")
        delimiter = dialect.delimiter
    except csv.Error:
        first_line = sample.splitlines()[0] if sample else ""
        delimiter = ";" if first_line.count(";") > first_line.count(",") else ","
    return [row for row in csv.reader(io.StringIO(text), delimiter=delimiter)]


def _is_empty_row(row: Sequence[Any]) -> bool:
    return all(cell_text(cell) == "" for cell in row)


def read_table(source: Source) -> Tuple[List[str], List[List[Any]], int]:
    """Return (headers, data rows, 1-based line number of the header row)."""
    content = _read_bytes(source)
    if not content:
        raise ReceiptFileError("File is empty")
    if content.startswith(_OLE_MAGIC):
        raise ReceiptFileError("Legacy .xls workbooks are not supported; export as .xlsx or CSV")
    if content.startswith(_XLSX_MAGIC):
        rows = _read_xlsx(content)
    else:
        rows = _read_csv(_decode(content))

    header_idx = next((i for i, row in enumerate(rows) if not _is_empty_row(row)), None)
    if header_idx is None:
        raise ReceiptFileError("No header row found")
    headers = [cell_text(cell) for cell in rows[header_idx]]
    data = rows[header_idx + 1 :]
    if all(_is_empty_row(row) for row in data):
        raise ReceiptFileError("No data rows found")
    return headers, data, header_idx + 1


def detect_layout(headers: Iterable[object], filename: str = "") -> ReceiptLayout:
    name = normalize_text(filename)
    if any(hint in name for hint in _RENTAL_FILENAME_HINTS):
        return ReceiptLayout.RENTAL
    if any(hint in name for hint in _WORKER_FILENAME_HINTS):
        return ReceiptLayout.INDEPENDENT_WORKER

    vocabulary = " ".join(normalize_text(h) for h in headers)
    if any(word in vocabulary for word in _RENTAL_HEADER_WORDS):
        return ReceiptLayout.RENTAL
    if any(word in vocabulary for word in _WORKER_HEADER_WORDS):
        return ReceiptLayout.INDEPENDENT_WORKER
    return ReceiptLayout.UNKNOWN


def _category_for_layout(layout: ReceiptLayout) -> IncomeCategory:
    if layout == ReceiptLayout.RENTAL:
        return IncomeCategory.RENTAL
    return IncomeCategory.INDEPENDENT_WORK


class _RowReader:
    def __init__(self, index: Dict[str, int], row: Sequence[Any]):
        self._index = index
        self._row = row

    def raw(self, field: str) -> Any:
        idx = self._index.get(field)
        if idx is None or idx >= len(self._row):
            return None
        return self._row[idx]

    def text(self, field: str) -> str:
        return cell_text(self.raw(field))


def _parse_row(
    reader: _RowReader,
    row_num: int,
    filename: str,
    file_category: IncomeCategory,
    year: Optional[int],
    nominal_rate: Optional[Decimal],
    tolerances: ReconciliationTolerances,
    explicit_rate_drift: Decimal,
) -> NormalizedRecord:
    warnings: List[str] = []

    status = normalize_text(reader.text("status"))
    if status in CANCELLED_STATUSES:
        raise ValueError(f"Receipt marked as {reader.text('status')}")

    reference = reader.text("reference")
    tax_id = None
    if reference:
        extracted = extract_tax_id(reference)
        if extracted is None:
            warnings.append(f"Reference {reference!r} is not a tax id (legacy reference); grouped by name")
        elif not extracted.reliable:
            warnings.append(f"{extracted.note}; tax id not trusted, grouped by name")
        else:
            tax_id = extracted.value
    else:
        warnings.append("No tax id reference; grouped by name")

    category = parse_category(reader.raw("category")) or file_category
    category_rate = nominal_rate if nominal_rate is not None else default_rate(category, year)
    rate = category_rate
    explicit = parse_percentage(reader.raw("rate"))
    if explicit is not None:
        rate = explicit
        if abs(explicit - category_rate) > explicit_rate_drift:
            warnings.append(f"Explicit rate {explicit} differs from the category {category.value} rate {category_rate}")

    reconciled = reconcile(
        parse_amount(reader.raw("gross_amount")),
        parse_amount(reader.raw("withheld_amount")),
        parse_amount(reader.raw("net_amount")),
        rate,
        tolerances,
    )
    warnings.extend(reconciled.warnings)

    receipt_date = parse_date(reader.raw("receipt_date"))
    start = parse_date(reader.raw("period_start"))
    end = parse_date(reader.raw("period_end"))
    best = receipt_date or end or start
    if best is None:
        warnings.append("No valid date found")

    return NormalizedRecord(
        source_file=filename,
        source_row=row_num,
        tax_id=tax_id,
        issuer_name=reader.text("issuer_name"),
        payer_name=reader.text("payer_name"),
        period_start=start or best,
        period_end=end or best,
        payment_date=receipt_date or best,
        gross_amount=reconciled.gross,
        withheld_amount=reconciled.withheld,
        net_amount=reconciled.net,
        nominal_rate=rate,
        category=category,
        document_reference=reader.text("receipt_number") or reader.text("contract_number") or None,
        warnings=warnings,
    )


def parse_receipt_rows(
    headers: Sequence[str],
    rows: Sequence[Sequence[Any]],
    filename: str = "",
    category: Optional[IncomeCategory] = None,
    year: Optional[int] = None,
    nominal_rate: Optional[Decimal] = None,
    tolerances: Optional[ReconciliationTolerances] = None,
    synonyms: Optional[Iterable[SynonymEntry]] = None,
    explicit_rate_drift: Optional[Decimal] = None,
    first_row_number: int = 2,
) -> ReconciliationResult:
    headers = [cell_text(h) for h in headers]
    index = map_column_indices(headers, synonyms)
    column_map = {field: headers[idx].strip() for field, idx in index.items()}
    layout = detect_layout(headers, filename)
    file_category = IncomeCategory(category) if category else _category_for_layout(layout)
    rate = Decimal(str(nominal_rate)) if nominal_rate is not None else None
    settings = get_settings()
    tolerances = tolerances or ReconciliationTolerances.from_settings(settings)
    if explicit_rate_drift is None:
        explicit_rate_drift = settings.explicit_rate_drift

    result = ReconciliationResult(
        filename=filename,
        layout=layout,
        category=file_category,
        nominal_rate=rate if rate is not None else default_rate(file_category, year),
        column_map=column_map,
    )
    if not {"gross_amount", "withheld_amount", "net_amount"} & set(column_map):
        result.warnings.append("No amount column recognised in the header row")
    if layout == ReceiptLayout.UNKNOWN and category is None:
        result.warnings.append(f"Layout not recognised; using category {file_category.value}")

    for offset, row in enumerate(rows):
        row_num = first_row_number + offset
        reader = _RowReader(index, row)
        if _is_empty_row(row) or (not reader.text("reference") and not reader.text("issuer_name")):
            result.blank_rows += 1
            continue
        try:
            record = _parse_row(
                reader, row_num, filename, file_category, year, rate, tolerances, explicit_rate_drift
            )
        except (ValueError, ArithmeticError) as exc:
            logger.debug("Skipping row %s of %s: %s", row_num, filename, exc)
            result.errors.append(RowError(row=row_num, reason=str(exc)))
            continue
        result.records.append(record)

    result.summary = build_summary(result.records)
    logger.info(
        "Parsed %s (%s): %s records, %s skipped, %s warned, %s blank",
        filename or "<unnamed>",
        layout.value,
        result.processed_rows,
        result.skipped_rows,
        result.warned_rows,
        result.blank_rows,
    )
    return result


def parse_receipts_file(
    source: Source,
    filename: str = "",
    category: Optional[IncomeCategory] = None,
    year: Optional[int] = None,
    nominal_rate: Optional[Decimal] = None,
    tolerances: Optional[ReconciliationTolerances] = None,
    synonyms: Optional[Iterable[SynonymEntry]] = None,
    explicit_rate_drift: Optional[Decimal] = None,
) -> ReconciliationResult:
    """Read a whole export; structural problems raise ``ReceiptFileError``."""
    headers, rows, header_line = read_table(source)
    return parse_receipt_rows(
        headers,
        rows,
        filename=filename,
        category=category,
        year=year,
        nominal_rate=nominal_rate,
        tolerances=tolerances,
        synonyms=synonyms,
        explicit_rate_drift=explicit_rate_drift,
        first_row_number=header_line + 1,
    )

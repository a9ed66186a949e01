"""Reconciliation of tax-authority withholding receipts into declaration-ready records."""

from .declaration import to_declaration_rows
from .receipts_ingestion import ReceiptFileError, parse_receipt_rows, parse_receipts_file
from .reconciler import ReconciliationError, reconcile
from .summary import build_summary

__all__ = [
    "ReceiptFileError",
    "ReconciliationError",
    "build_summary",
    "parse_receipt_rows",
    "parse_receipts_file",
    "reconcile",
    "to_declaration_rows",
]

"""Pydantic schemas."""

from mcsd_sync.schemas.directory import (
    Directory,
    EntryRequest,
    HistoryEntry,
    HistoryPage,
    HTTPVerb,
    LocalTransactionEntry,
    TransactionOutcome,
)
from mcsd_sync.schemas.report import DirectoryUpdateReport, UpdateReport

__all__ = [
    "Directory",
    "EntryRequest",
    "HistoryEntry",
    "HistoryPage",
    "HTTPVerb",
    "LocalTransactionEntry",
    "TransactionOutcome",
    # Report schemas
    "DirectoryUpdateReport",
    "UpdateReport",
]

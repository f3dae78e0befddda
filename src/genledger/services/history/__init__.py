"""Unified history storage and attempt lifecycle."""

from genledger.services.history.service import FinalizeOutcome, HistoryService
from genledger.services.history.store import HistoryStore, MemoryHistoryStore, SqlHistoryStore

__all__ = [
    "FinalizeOutcome",
    "HistoryService",
    "HistoryStore",
    "MemoryHistoryStore",
    "SqlHistoryStore",
]

# Ledger Store Module
from .base import LedgerStore, ScoreCompute
from .memory import InMemoryLedgerStore
from .sql import SqlLedgerStore

__all__ = ["InMemoryLedgerStore", "LedgerStore", "ScoreCompute", "SqlLedgerStore"]

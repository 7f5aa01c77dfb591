"""Persistence layer for run history and cross-session state.

Public API:
- StateStore: JSON-backed key-value document with deferred writes
- HistoryStore: bounded, newest-first automation run log
- HistoryEntry: immutable record of one run
- RunRecord: unsanitised run outcome handed to HistoryStore.record
- HistoryStatistics: aggregates derived from the run log

Example:
    from autocurate.persistence import HistoryStore, RunRecord, StateStore

    store = HistoryStore(StateStore(Path("/path/to/state")))
    store.record("42", RunRecord(success=True, sources_used=["stashdb"]))
"""

from .history_store import HistoryEntry, HistoryStatistics, HistoryStore, RunRecord, compute_statistics
from .state_store import StateStore

__all__ = [
    "HistoryEntry",
    "HistoryStatistics",
    "HistoryStore",
    "RunRecord",
    "StateStore",
    "compute_statistics",
]

"""
Session Module - The caller side of the scoring core.

The core only reads snapshots and returns new entries and values.
This module owns a snapshot and decides what gets written:
- The evaluation cycle picks the trigger and suppresses duplicates
- The session manager appends entries and stores object values
"""

from .cycle import EvaluationCycle, CycleResult, is_duplicate, suppress_duplicates
from .manager import SessionManager, SessionNotFoundError, EntryResult

__all__ = [
    "EvaluationCycle",
    "CycleResult",
    "is_duplicate",
    "suppress_duplicates",
    "SessionManager",
    "SessionNotFoundError",
    "EntryResult",
]

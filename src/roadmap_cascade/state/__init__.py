"""
Roadmap Cascade State Module

Contains durable state management:
- StateStore: per-item JSON records, alignment reports and findings
- FileLock: Cross-platform file locking mechanism
- ItemLease: single-writer lease on one work item
"""

from .state_store import STATE_DIR_NAME, FileLock, ItemLease, StateStore

__all__ = [
    "StateStore",
    "FileLock",
    "ItemLease",
    "STATE_DIR_NAME",
]

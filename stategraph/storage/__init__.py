"""
Storage package - In-memory tracking of runs.
"""

from stategraph.storage.memory import RunStorage, StoredRun

__all__ = [
    "RunStorage",
    "StoredRun",
]

"""
Scheduling policy system.

Per-job serialization of state writes and the failure-threshold policy that
turns an execution outcome into a run-state transition.
"""

from .concurrency import KeyedLock
from .failure import FailurePolicy, storable_result

__all__ = [
    "KeyedLock",
    "FailurePolicy",
    "storable_result",
]

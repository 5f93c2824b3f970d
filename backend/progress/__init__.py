"""
Progress Module

Reconciles pushed progress events with the authoritative Operation Store.

Components:
- reducer: OperationProgressReducer (idempotent, monotonic per stage)
- sources: StreamProgressSource, PollingProgressSource, OperationWatcher
"""

from progress.reducer import MemberProgress, OperationProgressReducer, ProgressSummary, combine_summaries

__all__ = [
    'MemberProgress',
    'OperationProgressReducer',
    'ProgressSummary',
    'combine_summaries',
]

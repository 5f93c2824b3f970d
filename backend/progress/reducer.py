"""
Operation progress reducer.

Folds two feeds into one view of an operation:
- ProgressEvents pushed on the EventBus (fast, may drop or duplicate)
- Snapshots polled from the Operation Store (slow, authoritative)

Rules:
- An event is applied at most once, keyed by
  (operation_id, container_name, stage, percent)
- Within a stage, percent never goes down; a new stage may start lower
- Nothing changes a member after it reached a terminal state, except a
  snapshot, which always wins for status
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple

from event_bus import ProgressEvent
from updates.types import BatchMemberStatus, Stage

logger = logging.getLogger(__name__)

_TERMINAL_OPERATION_STATES = ('complete', 'failed')


class ProgressSummary(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class MemberProgress:
    """Latest known progress of one container"""
    container_name: str
    status: str = BatchMemberStatus.QUEUED.value
    stage: Optional[str] = None
    percent: int = 0
    message: str = ""
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return BatchMemberStatus(self.status).is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'container_name': self.container_name,
            'status': self.status,
            'stage': self.stage,
            'percent': self.percent,
            'message': self.message,
        }


def _status_for_stage(stage: str) -> str:
    if stage == Stage.COMPLETE.value:
        return BatchMemberStatus.SUCCESS.value
    if stage == Stage.FAILED.value:
        return BatchMemberStatus.FAILED.value
    return BatchMemberStatus.IN_PROGRESS.value


class OperationProgressReducer:
    """Idempotent, monotonic progress state of one operation"""

    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        self.status = 'pending'
        self.operation_type: Optional[str] = None
        self.error_message: Optional[str] = None
        self.members: Dict[str, MemberProgress] = {}
        self._seen: Set[Tuple[str, str, str, int]] = set()

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL_OPERATION_STATES

    def _member(self, name: str) -> MemberProgress:
        member = self.members.get(name)
        if member is None:
            member = MemberProgress(container_name=name)
            self.members[name] = member
        return member

    def apply_event(self, event: ProgressEvent) -> bool:
        """
        Apply one pushed event.

        Returns:
            True if the view changed, False for duplicates, stale or
            regressing events and events for other operations
        """
        if event.operation_id != self.operation_id:
            return False

        key = event.dedup_key
        if key in self._seen:
            return False
        self._seen.add(key)

        member = self._member(event.container_name)
        if member.is_terminal:
            logger.debug(f"Ignoring {event.stage} for {event.container_name}: already {member.status}")
            return False

        if event.stage == member.stage:
            if event.percent <= member.percent:
                return False
        elif member.updated_at is not None and event.timestamp < member.updated_at:
            # Late delivery of an earlier stage
            return False

        member.stage = event.stage
        member.percent = event.percent
        member.message = event.message or member.message
        member.status = _status_for_stage(event.stage)
        member.updated_at = event.timestamp

        if self.status == 'pending':
            self.status = 'in_progress'
        return True

    def apply_snapshot(self, operation: Dict[str, Any]) -> bool:
        """
        Reconcile with the stored operation.

        The store decides operation status, terminal state and member
        status. Stage and percent are only taken when they do not move a
        running member backwards.
        """
        if operation.get('operation_id') != self.operation_id:
            return False

        before = self._fingerprint()
        self.status = operation['status']
        self.operation_type = operation.get('operation_type')
        self.error_message = operation.get('error_message')

        for detail in operation.get('batch_details', []):
            member = self._member(detail['container_name'])
            status = detail['status']
            stage = detail.get('stage')
            percent = detail.get('percent') or 0

            if BatchMemberStatus(status).is_terminal:
                member.status = status
                member.stage = stage or member.stage
                member.percent = percent
                member.message = detail.get('message') or member.message
                continue

            if member.is_terminal:
                # Reached through a dropped-then-replayed event; the store has not caught up
                continue

            member.status = status
            if stage and (member.stage is None or member.stage == stage):
                member.stage = stage
                member.percent = max(member.percent, percent)
                member.message = detail.get('message') or member.message

        return self._fingerprint() != before

    def _fingerprint(self):
        return (
            self.status,
            tuple((m.container_name, m.status, m.stage, m.percent) for m in self.members.values()),
        )

    def summary(self) -> ProgressSummary:
        """
        Aggregate outcome.

        A complete operation whose members partly failed is PARTIAL; one
        where no member succeeded is FAILED.
        """
        if not self.is_terminal or any(not m.is_terminal for m in self.members.values()):
            return ProgressSummary.RUNNING

        succeeded = sum(1 for m in self.members.values() if m.status == BatchMemberStatus.SUCCESS.value)
        if self.status == 'failed':
            return ProgressSummary.FAILED if succeeded == 0 else ProgressSummary.PARTIAL
        if not self.members:
            return ProgressSummary.COMPLETED if self.status == 'complete' else ProgressSummary.FAILED
        if succeeded == len(self.members):
            return ProgressSummary.COMPLETED
        if succeeded == 0:
            return ProgressSummary.FAILED
        return ProgressSummary.PARTIAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation_id': self.operation_id,
            'operation_type': self.operation_type,
            'status': self.status,
            'summary': self.summary().value,
            'error_message': self.error_message,
            'members': [m.to_dict() for m in self.members.values()],
        }


def combine_summaries(summaries) -> ProgressSummary:
    """Summary of a batch group from the summaries of its operations"""
    summaries = list(summaries)
    if not summaries or ProgressSummary.RUNNING in summaries:
        return ProgressSummary.RUNNING
    if all(s == ProgressSummary.COMPLETED for s in summaries):
        return ProgressSummary.COMPLETED
    if all(s == ProgressSummary.FAILED for s in summaries):
        return ProgressSummary.FAILED
    return ProgressSummary.PARTIAL

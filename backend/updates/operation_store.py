"""
Operation Store

Persistent, authoritative record of every operation. The orchestrator is
the only writer; progress pollers and status queries only read.

Each method opens and closes its own session and returns plain dicts, so
callers never hold a session across an await.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from database import BatchContainerDetail, DatabaseManager, UpdateOperation
from errors import ErrorKind, NotFoundError, ValidationError
from updates.state_machine import OperationStateMachine
from updates.types import BatchMemberStatus, DependentRestartResult

logger = logging.getLogger(__name__)

# Columns a member row accepts through update_member
_MEMBER_FIELDS = {
    'status', 'stage', 'percent', 'message', 'old_version', 'new_version',
    'change_type', 'old_resolved_version', 'new_resolved_version', 'old_digest',
}


class OperationImmutableError(ValidationError):
    """Attempt to change an operation that already reached a terminal state"""


class OperationStore:
    """Reads and writes UpdateOperation rows through the DatabaseManager"""

    def __init__(self, db: DatabaseManager):
        self.db = db
        self.state_machine = OperationStateMachine()

    def create_operation(
        self,
        operation_id: str,
        operation_type: str,
        members: Iterable[Dict[str, Any]],
        stack_name: Optional[str] = None,
        batch_group_id: Optional[str] = None,
        force: bool = False,
        rollback_of: Optional[str] = None,
        old_version: Optional[str] = None,
        new_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Persist a new pending operation.

        Args:
            members: one dict per container, at least {'container_name': ...};
                any other member column may be seeded here
        """
        members = list(members)
        if not members:
            raise ValidationError("An operation needs at least one container")

        with self.db.get_session() as session:
            operation = UpdateOperation(
                operation_id=operation_id,
                operation_type=operation_type,
                status='pending',
                # Single-member operations are addressable by container name
                container_name=members[0]['container_name'] if len(members) == 1 else None,
                stack_name=stack_name,
                batch_group_id=batch_group_id,
                force=force,
                rollback_of=rollback_of,
                old_version=old_version,
                new_version=new_version,
                dependents_affected=[],
                dependents_restarted=[],
                dependents_blocked=[],
            )
            for member in members:
                fields = {k: v for k, v in member.items() if k in _MEMBER_FIELDS}
                fields.setdefault('status', BatchMemberStatus.QUEUED.value)
                operation.batch_details.append(
                    BatchContainerDetail(container_name=member['container_name'], **fields)
                )
            session.add(operation)
            session.commit()
            result = operation.to_dict()

        logger.info(
            f"Created {operation_type} operation {operation_id} for "
            f"{', '.join(m['container_name'] for m in members)}"
        )
        return result

    def _get_mutable(self, session, operation_id: str) -> UpdateOperation:
        operation = session.query(UpdateOperation).filter_by(operation_id=operation_id).first()
        if operation is None:
            raise NotFoundError(f"Operation {operation_id} not found")
        if self.state_machine.is_terminal(operation.status):
            raise OperationImmutableError(
                f"Operation {operation_id} is {operation.status} and can no longer change"
            )
        return operation

    def start_operation(self, operation_id: str) -> Dict[str, Any]:
        with self.db.get_session() as session:
            operation = self._get_mutable(session, operation_id)
            if operation.status != 'in_progress':
                self.state_machine.transition(operation, 'in_progress')
            session.commit()
            return operation.to_dict()

    def update_member(self, operation_id: str, container_name: str, **fields) -> Dict[str, Any]:
        """Update one member row (status, stage, percent, message, versions)"""
        unknown = set(fields) - _MEMBER_FIELDS
        if unknown:
            raise ValueError(f"Unknown member fields: {sorted(unknown)}")

        with self.db.get_session() as session:
            operation = self._get_mutable(session, operation_id)
            detail = next((d for d in operation.batch_details if d.container_name == container_name), None)
            if detail is None:
                raise NotFoundError(f"Container {container_name} is not part of operation {operation_id}")

            if 'percent' in fields and fields.get('stage', detail.stage) == detail.stage:
                # Within one stage percent only moves forward
                fields['percent'] = max(fields['percent'], detail.percent or 0)

            for key, value in fields.items():
                setattr(detail, key, value)

            status = fields.get('status')
            now = datetime.now(timezone.utc)
            if status == BatchMemberStatus.IN_PROGRESS.value and not detail.started_at:
                detail.started_at = now
            if status and BatchMemberStatus(status).is_terminal and not detail.completed_at:
                detail.completed_at = now

            session.commit()
            return detail.to_dict()

    def set_dependents_affected(self, operation_id: str, dependents: List[str]):
        with self.db.get_session() as session:
            operation = self._get_mutable(session, operation_id)
            operation.dependents_affected = sorted(set(operation.dependents_affected or []) | set(dependents))
            session.commit()

    def record_dependents(self, operation_id: str, result: DependentRestartResult):
        """Merge a cascade partition into the operation (batches run one cascade per member)"""
        with self.db.get_session() as session:
            operation = self._get_mutable(session, operation_id)
            blocked = set(operation.dependents_blocked or []) | set(result.blocked)
            restarted = (set(operation.dependents_restarted or []) | set(result.restarted)) - blocked
            operation.dependents_affected = sorted(set(operation.dependents_affected or []) | set(result.dependents))
            operation.dependents_restarted = sorted(restarted)
            operation.dependents_blocked = sorted(blocked)
            session.commit()

    def set_versions(self, operation_id: str, old_version: Optional[str] = None, new_version: Optional[str] = None):
        with self.db.get_session() as session:
            operation = self._get_mutable(session, operation_id)
            if old_version is not None:
                operation.old_version = old_version
            if new_version is not None:
                operation.new_version = new_version
            session.commit()

    def complete_operation(self, operation_id: str, message: Optional[str] = None) -> Dict[str, Any]:
        """Move to complete; message is kept as error_message when some members failed"""
        with self.db.get_session() as session:
            operation = self._get_mutable(session, operation_id)
            if operation.status == 'pending':
                self.state_machine.transition(operation, 'in_progress')
            if message:
                operation.error_message = message
            self.state_machine.transition(operation, 'complete')
            session.commit()
            return operation.to_dict()

    def fail_operation(self, operation_id: str, error_message: str, error_kind: Optional[str]) -> Dict[str, Any]:
        """Move to failed; members not yet terminal are marked failed too"""
        with self.db.get_session() as session:
            operation = self._get_mutable(session, operation_id)
            operation.error_message = error_message
            operation.error_kind = error_kind
            now = datetime.now(timezone.utc)
            for detail in operation.batch_details:
                if not BatchMemberStatus(detail.status).is_terminal:
                    detail.status = BatchMemberStatus.FAILED.value
                    detail.message = detail.message or error_message
                    detail.completed_at = now
            self.state_machine.transition(operation, 'failed')
            session.commit()
            return operation.to_dict()

    def mark_rollback_occurred(self, operation_id: str):
        """
        Flag an operation as rolled back.

        The only write allowed on a terminal operation: it records that a
        later Rollback referenced it and changes nothing about its outcome.
        """
        with self.db.get_session() as session:
            operation = session.query(UpdateOperation).filter_by(operation_id=operation_id).first()
            if operation is None:
                raise NotFoundError(f"Operation {operation_id} not found")
            operation.rollback_occurred = True
            session.commit()

    def get_operation(self, operation_id: str) -> Optional[Dict[str, Any]]:
        with self.db.get_session() as session:
            operation = session.query(UpdateOperation).filter_by(operation_id=operation_id).first()
            return operation.to_dict() if operation else None

    def get_group(self, batch_group_id: str) -> List[Dict[str, Any]]:
        """All operations sharing a batch group id, oldest first"""
        with self.db.get_session() as session:
            operations = (
                session.query(UpdateOperation)
                .filter_by(batch_group_id=batch_group_id)
                .order_by(UpdateOperation.created_at)
                .all()
            )
            return [op.to_dict() for op in operations]

    def list_operations(
        self,
        container_name: Optional[str] = None,
        status: Optional[str] = None,
        operation_type: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """Newest first. container_name also matches batch members."""
        with self.db.get_session() as session:
            query = session.query(UpdateOperation)
            if container_name:
                query = query.filter(
                    UpdateOperation.batch_details.any(BatchContainerDetail.container_name == container_name)
                )
            if status:
                query = query.filter(UpdateOperation.status == status)
            if operation_type:
                query = query.filter(UpdateOperation.operation_type == operation_type)
            operations = query.order_by(UpdateOperation.created_at.desc()).limit(limit).all()
            return [op.to_dict() for op in operations]

    def find_active_operations(self) -> List[Dict[str, Any]]:
        """Operations not yet terminal (pending or in_progress)"""
        with self.db.get_session() as session:
            operations = (
                session.query(UpdateOperation)
                .filter(UpdateOperation.status.in_(['pending', 'in_progress']))
                .all()
            )
            return [op.to_dict() for op in operations]

    def fail_interrupted_operations(self) -> int:
        """
        Fail operations left non-terminal by a previous process.

        Their tasks died with that process, so nothing will ever finish them.
        """
        count = 0
        for operation in self.find_active_operations():
            self.fail_operation(
                operation['operation_id'],
                "Interrupted by service restart",
                ErrorKind.EXECUTION,
            )
            count += 1
        if count:
            logger.warning(f"Marked {count} interrupted operations as failed")
        return count

    def cleanup_old_operations(self, days: int) -> int:
        """Delete terminal operations completed more than `days` ago"""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        with self.db.get_session() as session:
            old = (
                session.query(UpdateOperation)
                .filter(UpdateOperation.status.in_(['complete', 'failed']))
                .filter(UpdateOperation.completed_at < cutoff)
                .all()
            )
            for operation in old:
                session.delete(operation)
            session.commit()
            count = len(old)
        if count:
            logger.info(f"Cleaned up {count} operations older than {days} days")
        return count

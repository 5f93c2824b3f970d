"""
Shared types for update checking and operation orchestration.

This module contains the enums and dataclasses passed between the
checker, the container registry, the orchestrator and the progress channel.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from versioning.types import ChangeType


class UpdateStatus(str, Enum):
    """Update status of a tracked container."""
    UPDATE_AVAILABLE = "UPDATE_AVAILABLE"
    UPDATE_AVAILABLE_BLOCKED = "UPDATE_AVAILABLE_BLOCKED"  # Blocked by pre-update check
    UP_TO_DATE = "UP_TO_DATE"
    UP_TO_DATE_PINNABLE = "UP_TO_DATE_PINNABLE"  # Running :latest, a semver tag is available
    LOCAL_IMAGE = "LOCAL_IMAGE"
    IGNORED = "IGNORED"
    METADATA_UNAVAILABLE = "METADATA_UNAVAILABLE"  # Registry has no metadata for the image
    COMPOSE_MISMATCH = "COMPOSE_MISMATCH"  # Running image differs from compose file
    CHECK_FAILED = "CHECK_FAILED"
    UNKNOWN = "UNKNOWN"


class OperationType(str, Enum):
    UPDATE = "update"
    RESTART = "restart"
    ROLLBACK = "rollback"
    LABEL_CHANGE = "label_change"
    STOP = "stop"
    REMOVE = "remove"
    FIX_MISMATCH = "fix_mismatch"


class OperationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.COMPLETE, OperationStatus.FAILED)


class Stage(str, Enum):
    """Progress stages reported on the progress channel."""
    VALIDATING = "validating"
    PRE_CHECK = "pre_check"
    BACKUP = "backup"
    UPDATING_COMPOSE = "updating_compose"
    PULLING_IMAGE = "pulling_image"
    RECREATING = "recreating"
    STOPPING = "stopping"
    STARTING = "starting"
    REMOVING = "removing"
    HEALTH_CHECK = "health_check"
    RESTARTING_DEPENDENTS = "restarting_dependents"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.COMPLETE, Stage.FAILED)


class HealthResult(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMEOUT = "timeout"


class BatchMemberStatus(str, Enum):
    """Per-member status inside batch_details"""
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchMemberStatus.SUCCESS, BatchMemberStatus.FAILED, BatchMemberStatus.BLOCKED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ContainerRecord:
    """
    Last-known state of a tracked container.

    Built from scratch on every check cycle and swapped into the
    ContainerRegistry whole; never partially updated.
    """
    name: str
    image: str
    current_tag: str = ""
    current_version: str = ""
    current_suffix: str = ""
    latest_tag: str = ""
    latest_version: str = ""
    recommended_tag: str = ""
    change_type: ChangeType = ChangeType.UNKNOWN
    status: UpdateStatus = UpdateStatus.UNKNOWN
    labels: Dict[str, str] = field(default_factory=dict)
    compose_labels: Dict[str, str] = field(default_factory=dict)
    dependencies: Tuple[str, ...] = ()
    restart_after: Tuple[str, ...] = ()
    pre_update_check: str = ""
    pre_update_check_pass: bool = False
    pre_update_check_fail: str = ""
    using_latest_tag: bool = False
    available_tags: Tuple[str, ...] = ()
    current_digest: str = ""
    compose_file: str = ""
    compose_image: str = ""
    service_name: str = ""
    stack_name: str = ""
    health_status: str = ""
    error: str = ""
    checked_at: datetime = field(default_factory=_utcnow)

    @property
    def labels_out_of_sync(self) -> bool:
        """Effective labels differ from what the compose file declares"""
        if not self.compose_file:
            return False
        from updates.labels import managed_labels
        return managed_labels(self.labels) != managed_labels(self.compose_labels)

    @property
    def update_available(self) -> bool:
        return self.status in (UpdateStatus.UPDATE_AVAILABLE, UpdateStatus.UPDATE_AVAILABLE_BLOCKED)

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'image': self.image,
            'current_tag': self.current_tag,
            'current_version': self.current_version,
            'current_suffix': self.current_suffix,
            'latest_tag': self.latest_tag,
            'latest_version': self.latest_version,
            'recommended_tag': self.recommended_tag,
            'change_type': self.change_type.value,
            'status': self.status.value,
            'labels': dict(self.labels),
            'compose_labels': dict(self.compose_labels),
            'labels_out_of_sync': self.labels_out_of_sync,
            'dependencies': list(self.dependencies),
            'restart_after': list(self.restart_after),
            'pre_update_check': self.pre_update_check,
            'pre_update_check_pass': self.pre_update_check_pass,
            'pre_update_check_fail': self.pre_update_check_fail,
            'using_latest_tag': self.using_latest_tag,
            'compose_image': self.compose_image,
            'stack_name': self.stack_name,
            'health_status': self.health_status,
            'error': self.error,
            'checked_at': self.checked_at.isoformat(),
        }


@dataclass
class CheckResult:
    """Aggregate outcome of one check cycle."""
    records: List[ContainerRecord] = field(default_factory=list)
    total_checked: int = 0
    updates_found: int = 0
    up_to_date: int = 0
    local_images: int = 0
    failed: int = 0
    ignored: int = 0

    def add(self, record: ContainerRecord):
        self.records.append(record)
        if record.status == UpdateStatus.UPDATE_AVAILABLE:
            self.updates_found += 1
        elif record.status in (UpdateStatus.UP_TO_DATE, UpdateStatus.UP_TO_DATE_PINNABLE):
            self.up_to_date += 1
        elif record.status == UpdateStatus.LOCAL_IMAGE:
            self.local_images += 1
        elif record.status in (UpdateStatus.CHECK_FAILED, UpdateStatus.METADATA_UNAVAILABLE):
            self.failed += 1
        elif record.status == UpdateStatus.IGNORED:
            self.ignored += 1


@dataclass(frozen=True)
class PreCheckResult:
    """Outcome of running a pre-update check script."""
    passed: bool
    exit_code: Optional[int] = None
    output: str = ""


@dataclass
class DependentRestartResult:
    """
    Partition of one-hop dependents after a cascade.

    restarted and blocked are disjoint; their union is the dependent set
    captured when the cascade started.
    """
    dependents: List[str] = field(default_factory=list)
    restarted: List[str] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


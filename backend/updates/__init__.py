"""
Updates Module

Update checking and operation orchestration for compose-managed containers.

Architecture:
- UpdateChecker: builds ContainerRecords into the ContainerRegistry
- OperationOrchestrator: drives updates, restarts, rollbacks and label changes
- OperationStore: persistent operation history (authoritative progress)
- DockerComposeClient: docker SDK + docker compose collaborator

Only the lightweight types are re-exported here; import the services from
their modules.
"""

from updates.types import (
    ContainerRecord,
    CheckResult,
    OperationStatus,
    OperationType,
    Stage,
    UpdateStatus,
)
from updates.labels import LabelConfig, LabelChangeSet, SetLabelsRequest, RemoveLabelsRequest

__all__ = [
    'ContainerRecord',
    'CheckResult',
    'OperationStatus',
    'OperationType',
    'Stage',
    'UpdateStatus',
    'LabelConfig',
    'LabelChangeSet',
    'SetLabelsRequest',
    'RemoveLabelsRequest',
]

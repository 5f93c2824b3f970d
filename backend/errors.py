"""
Error taxonomy for DockPilot

Every failure the orchestration engine records falls into one of four kinds:
- validation: bad regex, malformed version or request (rejected synchronously)
- blocked: a pre-update check failed (force-retryable)
- transient: registry/network trouble (retried with backoff before surfacing)
- execution: pull, recreate, health or daemon failure (terminal, resubmit)
"""

from typing import Optional


class ErrorKind:
    """String constants stored in UpdateOperation.error_kind"""
    VALIDATION = "validation"
    BLOCKED = "blocked"
    TRANSIENT = "transient"
    EXECUTION = "execution"


class DockPilotError(Exception):
    """Base class for all DockPilot errors"""
    kind: str = ErrorKind.EXECUTION

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DockPilotError):
    """Request or configuration is malformed and can never succeed as-is"""
    kind = ErrorKind.VALIDATION


class NotFoundError(DockPilotError):
    """Container or operation does not exist"""
    kind = ErrorKind.VALIDATION


class ContainerBusyError(DockPilotError):
    """Container already has a non-terminal mutating operation"""
    kind = ErrorKind.VALIDATION

    def __init__(self, container_name: str, operation_id: Optional[str] = None):
        message = f"Container {container_name} already has an operation in progress"
        if operation_id:
            message += f" ({operation_id})"
        super().__init__(message)
        self.container_name = container_name
        self.operation_id = operation_id


class PreUpdateCheckBlocked(DockPilotError):
    """Pre-update check script exited non-zero; retry with force to override"""
    kind = ErrorKind.BLOCKED

    def __init__(self, container_name: str, reason: str, exit_code: Optional[int] = None):
        super().__init__(f"Pre-update check failed for {container_name}: {reason}")
        self.container_name = container_name
        self.reason = reason
        self.exit_code = exit_code


class TransientRegistryError(DockPilotError):
    """Registry unreachable, rate limited or 5xx after all retries"""
    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, status: Optional[int] = None, retry_after: Optional[float] = None):
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after


class RegistryMetadataError(DockPilotError):
    """Registry answered but has no usable metadata (404, auth denied)"""
    kind = ErrorKind.EXECUTION

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ExecutionError(DockPilotError):
    """Pull, recreate, restart or health check failed"""
    kind = ErrorKind.EXECUTION

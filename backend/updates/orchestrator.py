"""
Operation Orchestrator

Accepts mutating requests (update, batch update, restart, rollback, label
change, stop, remove, compose mismatch fix), persists each as an
UpdateOperation and drives it to a terminal state in a background task.

Workflow of a submission:
1. Validate synchronously (ValidationError / NotFoundError / ContainerBusyError)
2. Claim the containers in _busy_containers
3. Create the pending operation in the Operation Store
4. Schedule the task and return the operation id
5. The task reports stages on the EventBus and in the store, then completes
   or fails the operation and releases the containers

Cascade restarts of dependents are sub-steps of the primary operation and
never fail it.
"""

import asyncio
import json
import logging
import re
import threading
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from errors import (
    ContainerBusyError,
    DockPilotError,
    ErrorKind,
    ExecutionError,
    NotFoundError,
    PreUpdateCheckBlocked,
    ValidationError,
)
from event_bus import Event, EventBus, EventType, ProgressEvent, get_event_bus
from updates.container_registry import ContainerRegistry
from updates.dependency_graph import DependencyGraph
from updates.docker_executor import DockerComposeClient
from updates.labels import LabelConfig, RemoveLabelsRequest, SetLabelsRequest, managed_labels
from updates.operation_store import OperationStore
from updates.pre_update_check import PreUpdateCheckRunner
from updates.types import (
    BatchMemberStatus,
    ContainerRecord,
    DependentRestartResult,
    HealthResult,
    OperationType,
    Stage,
    UpdateStatus,
)
from versioning.classifier import classify_tags
from versioning.parser import is_meta_tag, parse_image_ref, parse_tag
from versioning.types import ChangeType

logger = logging.getLogger(__name__)

_TAG_PATTERN = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')


@dataclass(frozen=True)
class BatchSubmission:
    """Handle returned for a batch update"""
    batch_group_id: str
    operation_id: str
    members: Tuple[str, ...]


class RollbackStrategy(str, Enum):
    """How a rollback finds the image to return to, in priority order"""
    TAG = "tag"
    RESOLVED_VERSION = "resolved_version"
    DIGEST = "digest"
    NONE = "none"


@dataclass(frozen=True)
class RollbackTarget:
    strategy: RollbackStrategy
    image: Optional[str] = None
    tag: Optional[str] = None


def resolve_rollback_target(image: str, detail: Dict[str, Any]) -> RollbackTarget:
    """
    Pick the image a member returns to.

    1. The previous tag, when it names a fixed version
    2. The resolved version behind a moving tag (e.g. :latest -> 1.25.3)
    3. The previous repo digest
    """
    ref = parse_image_ref(image)
    old_tag = detail.get('old_version')
    if old_tag and not is_meta_tag(old_tag) and parse_tag(old_tag).is_versioned:
        return RollbackTarget(RollbackStrategy.TAG, ref.with_tag(old_tag), old_tag)

    resolved = detail.get('old_resolved_version')
    if resolved and _TAG_PATTERN.match(resolved):
        return RollbackTarget(RollbackStrategy.RESOLVED_VERSION, ref.with_tag(resolved), resolved)

    digest = detail.get('old_digest')
    if digest:
        return RollbackTarget(RollbackStrategy.DIGEST, f"{ref.name}@{digest}")

    return RollbackTarget(RollbackStrategy.NONE)


def validate_tag(tag: str) -> str:
    if not tag or not _TAG_PATTERN.match(tag):
        raise ValidationError(f"Invalid image tag: {tag!r}")
    return tag


def _new_operation_id() -> str:
    return f"op_{uuid.uuid4().hex[:12]}"


def _new_group_id() -> str:
    return f"grp_{uuid.uuid4().hex[:12]}"


class OperationOrchestrator:
    """
    Drives every mutating operation.

    Collaborators are injected; timeouts and knobs default from AppConfig.
    """

    def __init__(
        self,
        store: OperationStore,
        docker_client: DockerComposeClient,
        container_registry: ContainerRegistry,
        pre_check_runner: Optional[PreUpdateCheckRunner] = None,
        event_bus: Optional[EventBus] = None,
        health_check_timeout: Optional[int] = None,
        commit_before_verify: Optional[bool] = None,
        batch_concurrency: Optional[int] = None,
    ):
        from config.settings import AppConfig

        self.store = store
        self.docker = docker_client
        self.container_registry = container_registry
        self.graph = DependencyGraph(container_registry)
        self.pre_check_runner = pre_check_runner or PreUpdateCheckRunner()
        self.event_bus = event_bus or get_event_bus()
        self.health_check_timeout = (
            health_check_timeout if health_check_timeout is not None else AppConfig.HEALTH_CHECK_TIMEOUT
        )
        self.commit_before_verify = (
            commit_before_verify if commit_before_verify is not None else AppConfig.COMMIT_BEFORE_VERIFY
        )
        self.batch_concurrency = batch_concurrency or AppConfig.BATCH_CONCURRENCY

        # container name -> operation id holding it
        self._busy_containers: Dict[str, str] = {}
        self._busy_lock = threading.Lock()
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Exclusivity
    # ------------------------------------------------------------------

    def _claim(self, names: Sequence[str], operation_id: str):
        """Claim all containers or none"""
        with self._busy_lock:
            for name in names:
                holder = self._busy_containers.get(name)
                if holder is not None:
                    logger.warning(f"Rejecting operation on {name}: {holder} is still running")
                    raise ContainerBusyError(name, holder)
            for name in names:
                self._busy_containers[name] = operation_id

    def _release(self, names: Iterable[str], operation_id: str):
        with self._busy_lock:
            for name in names:
                if self._busy_containers.get(name) == operation_id:
                    del self._busy_containers[name]

    def is_busy(self, name: str) -> bool:
        with self._busy_lock:
            return name in self._busy_containers

    def _ensure_not_busy(self, name: str, operation_id: str):
        """Refuse to touch a container another operation is working on"""
        with self._busy_lock:
            holder = self._busy_containers.get(name)
        if holder is not None and holder != operation_id:
            raise ContainerBusyError(name, holder)

    # ------------------------------------------------------------------
    # Submission plumbing
    # ------------------------------------------------------------------

    def _get_record(self, name: str) -> ContainerRecord:
        record = self.container_registry.get(name)
        if record is None:
            raise NotFoundError(f"Container {name} not found")
        return record

    def _submit(
        self,
        operation_type: OperationType,
        members: List[Dict[str, Any]],
        body: Callable[[str], Awaitable[Optional[str]]],
        stack_name: Optional[str] = None,
        batch_group_id: Optional[str] = None,
        force: bool = False,
        rollback_of: Optional[str] = None,
        old_version: Optional[str] = None,
        new_version: Optional[str] = None,
    ) -> str:
        """Claim, persist and schedule; returns the operation id"""
        operation_id = _new_operation_id()
        names = [m['container_name'] for m in members]

        self._claim(names, operation_id)
        try:
            self.store.create_operation(
                operation_id,
                operation_type.value,
                members,
                stack_name=stack_name,
                batch_group_id=batch_group_id,
                force=force,
                rollback_of=rollback_of,
                old_version=old_version,
                new_version=new_version,
            )
        except Exception:
            self._release(names, operation_id)
            raise

        task = asyncio.create_task(self._run_operation(operation_id, operation_type, names, body))
        self._tasks[operation_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(operation_id, None))
        return operation_id

    async def _run_operation(
        self,
        operation_id: str,
        operation_type: OperationType,
        names: List[str],
        body: Callable[[str], Awaitable[Optional[str]]],
    ):
        """Task boundary: every failure ends here and is recorded, never re-raised"""
        scope = names[0] if len(names) == 1 else operation_id
        final = None
        try:
            self.store.start_operation(operation_id)
            await self._emit_lifecycle(EventType.OPERATION_STARTED, scope, operation_id, operation_type)

            message = await body(operation_id)
            final = self.store.complete_operation(operation_id, message)
            logger.info(f"Operation {operation_id} ({operation_type.value}) complete")

        except Exception as e:
            kind = e.kind if isinstance(e, DockPilotError) else ErrorKind.EXECUTION
            if isinstance(e, DockPilotError):
                logger.warning(f"Operation {operation_id} ({operation_type.value}) failed [{kind}]: {e}")
            else:
                logger.error(f"Operation {operation_id} ({operation_type.value}) failed: {e}", exc_info=True)
            try:
                if len(names) == 1 and not self._member_terminal(operation_id, names[0]):
                    await self._finish_member(operation_id, names[0], e)
                final = self.store.fail_operation(operation_id, str(e), kind)
            except Exception as store_error:
                logger.error(f"Could not record failure of {operation_id}: {store_error}", exc_info=True)

        finally:
            self._release(names, operation_id)

        # Store session is closed here; safe to notify
        if final is not None:
            event_type = EventType.OPERATION_COMPLETED if final['status'] == 'complete' else EventType.OPERATION_FAILED
            await self._emit_lifecycle(
                event_type, scope, operation_id, operation_type,
                error_message=final.get('error_message'),
                dependents_blocked=final.get('dependents_blocked', []),
            )

    def _member_terminal(self, operation_id: str, name: str) -> bool:
        operation = self.store.get_operation(operation_id) or {}
        for detail in operation.get('batch_details', []):
            if detail['container_name'] == name:
                return BatchMemberStatus(detail['status']).is_terminal
        return False

    async def wait_for_operation(self, operation_id: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Wait for a scheduled operation's task, then return its stored state"""
        task = self._tasks.get(operation_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return self.store.get_operation(operation_id)

    async def _emit_lifecycle(self, event_type: EventType, scope: str, operation_id: str,
                              operation_type: OperationType, **data):
        await self.event_bus.emit(Event(
            event_type=event_type,
            scope_name=scope,
            operation_id=operation_id,
            data={'operation_type': operation_type.value, **data},
        ))

    async def _progress(self, operation_id: str, name: str, stage: Stage, percent: int, message: str = ""):
        fields = {'stage': stage.value, 'percent': percent, 'message': message}
        if stage == Stage.VALIDATING:
            fields['status'] = BatchMemberStatus.IN_PROGRESS.value
        self.store.update_member(operation_id, name, **fields)

        record = self.container_registry.get(name)
        await self.event_bus.emit_progress(ProgressEvent(
            operation_id=operation_id,
            container_name=name,
            stage=stage.value,
            percent=percent,
            message=message,
            stack_name=(record.stack_name or None) if record else None,
        ))

    async def _finish_member(self, operation_id: str, name: str, error: Optional[BaseException] = None,
                             message: str = ""):
        """Put one member into its terminal state and announce it"""
        if error is None:
            status, stage = BatchMemberStatus.SUCCESS, Stage.COMPLETE
        elif isinstance(error, PreUpdateCheckBlocked):
            status, stage, message = BatchMemberStatus.BLOCKED, Stage.FAILED, str(error)
        else:
            status, stage, message = BatchMemberStatus.FAILED, Stage.FAILED, str(error)

        self.store.update_member(operation_id, name, status=status.value, stage=stage.value,
                                 percent=100, message=message)
        record = self.container_registry.get(name)
        await self.event_bus.emit_progress(ProgressEvent(
            operation_id=operation_id,
            container_name=name,
            stage=stage.value,
            percent=100,
            message=message,
            stack_name=(record.stack_name or None) if record else None,
        ))

    async def _run_members(
        self,
        operation_id: str,
        names: List[str],
        runner: Callable[[str, str], Awaitable[str]],
    ) -> Tuple[List[str], Dict[str, BaseException]]:
        """
        Run one sub-state machine per member, concurrently.

        A member failure is recorded on that member only; it never stops
        the others.
        """
        semaphore = asyncio.Semaphore(self.batch_concurrency)

        async def run_one(name: str):
            async with semaphore:
                try:
                    message = await runner(operation_id, name)
                except Exception as e:
                    if not isinstance(e, DockPilotError):
                        logger.error(f"Member {name} of {operation_id} failed: {e}", exc_info=True)
                    await self._finish_member(operation_id, name, e)
                    raise
                await self._finish_member(operation_id, name, message=message or "")

        results = await asyncio.gather(*(run_one(name) for name in names), return_exceptions=True)

        succeeded = []
        failures: Dict[str, BaseException] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                failures[name] = result
            else:
                succeeded.append(name)
        return succeeded, failures

    @staticmethod
    def _summarize(succeeded: List[str], failures: Dict[str, BaseException]) -> Optional[str]:
        if not failures:
            return None
        parts = [f"{name}: {error}" for name, error in sorted(failures.items())]
        return f"{len(failures)} of {len(succeeded) + len(failures)} containers failed: " + "; ".join(parts)

    # ------------------------------------------------------------------
    # Pre-update checks and dependents
    # ------------------------------------------------------------------

    async def _run_pre_check(self, name: str, script: Optional[str]):
        """Raise PreUpdateCheckBlocked when the container's script fails"""
        if not script:
            return
        result = await self.pre_check_runner.run(script, name)
        if not result.passed:
            reason = result.output or f"exit code {result.exit_code}"
            raise PreUpdateCheckBlocked(name, reason, result.exit_code)

    async def _wait_healthy(self, name: str):
        health = await self.docker.health_check(name, self.health_check_timeout)
        if health != HealthResult.HEALTHY:
            raise ExecutionError(f"Health check failed for {name}: {health.value}")

    async def _restart_dependent(self, operation_id: str, name: str, run_check: bool):
        self._ensure_not_busy(name, operation_id)
        record = self.container_registry.get(name)
        if run_check and record is not None:
            await self._run_pre_check(name, record.pre_update_check)
            # May have been claimed while the check ran
            self._ensure_not_busy(name, operation_id)
        await self.docker.restart(name)
        await self._wait_healthy(name)

    async def _restart_dependents(
        self,
        operation_id: str,
        primaries: Sequence[str],
        run_checks: bool = True,
        members: Optional[Iterable[str]] = None,
    ) -> DependentRestartResult:
        """
        Restart the one-hop dependents of the primaries, concurrently.

        The dependent set is taken once, at cascade start; every dependent
        ends up in exactly one of restarted / blocked. Containers in members
        (default: the primaries) are never dependents, whatever their own
        outcome. A dependent held by another operation is blocked.
        """
        dependents = set()
        for primary in primaries:
            dependents.update(self.graph.dependents_of(primary))
        dependents -= set(primaries)
        dependents -= set(members or ())
        ordered = sorted(dependents)

        result = DependentRestartResult(dependents=ordered)
        if not ordered:
            return result

        self.store.set_dependents_affected(operation_id, ordered)
        logger.info(f"Operation {operation_id}: restarting dependents {ordered}")

        outcomes = await asyncio.gather(
            *(self._restart_dependent(operation_id, name, run_checks) for name in ordered),
            return_exceptions=True,
        )
        for name, outcome in zip(ordered, outcomes):
            if isinstance(outcome, BaseException):
                result.blocked.append(name)
                result.errors[name] = str(outcome)
                logger.warning(f"Dependent {name} blocked: {outcome}")
                await self.event_bus.emit(Event(
                    event_type=EventType.DEPENDENT_BLOCKED,
                    scope_name=name,
                    operation_id=operation_id,
                    data={'reason': str(outcome), 'primaries': list(primaries)},
                ))
            else:
                result.restarted.append(name)

        self.store.record_dependents(operation_id, result)
        return result

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def _prepare_update(self, name: str, target_tag: Optional[str]) -> Tuple[ContainerRecord, Dict[str, Any]]:
        record = self._get_record(name)
        if record.status == UpdateStatus.COMPOSE_MISMATCH:
            raise ValidationError(f"Container {name} does not match its compose file; fix the mismatch first")
        if record.status == UpdateStatus.LOCAL_IMAGE:
            raise ValidationError(f"Container {name} runs a locally built image")
        if not record.compose_file:
            raise ValidationError(f"Container {name} is not managed by docker compose")

        tag = target_tag or record.recommended_tag
        if not tag:
            raise ValidationError(f"No update available for {name}")
        validate_tag(tag)
        if tag == record.current_tag:
            raise ValidationError(f"Container {name} already runs {tag}")

        if target_tag is None:
            change_type = record.change_type
        else:
            change_type = classify_tags(parse_tag(record.current_tag), parse_tag(tag))
        new_value = parse_tag(tag).value

        member = {
            'container_name': name,
            'old_version': record.current_tag,
            'new_version': tag,
            'change_type': change_type.value,
            'old_resolved_version': record.current_version or None,
            'new_resolved_version': str(new_value) or None,
            'old_digest': record.current_digest or None,
        }
        return record, member

    async def update_container(
        self,
        name: str,
        target_tag: Optional[str] = None,
        force: bool = False,
        batch_group_id: Optional[str] = None,
        force_dependents: bool = False,
    ) -> str:
        """
        Update one container to target_tag (default: its recommended tag).

        Returns:
            operation_id
        """
        record, member = self._prepare_update(name, target_tag)
        tag = member['new_version']

        async def body(operation_id: str) -> Optional[str]:
            await self._update_member(operation_id, record, tag, force)
            await self._progress(operation_id, name, Stage.RESTARTING_DEPENDENTS, 90)
            await self._restart_dependents(operation_id, [name], run_checks=not force_dependents)
            await self._finish_member(operation_id, name, message=f"Updated to {tag}")
            return None

        logger.info(f"Update requested for {name}: {record.current_tag} -> {tag} (force={force})")
        return self._submit(
            OperationType.UPDATE, [member], body,
            stack_name=record.stack_name or None,
            batch_group_id=batch_group_id,
            force=force,
            old_version=record.current_tag,
            new_version=tag,
        )

    async def update_batch(
        self,
        names: Sequence[str],
        target_tags: Optional[Dict[str, str]] = None,
        force_containers: Optional[Iterable[str]] = None,
        force_dependents: bool = False,
    ) -> BatchSubmission:
        """
        Update several containers as one operation.

        Members run concurrently (bounded by batch_concurrency); the
        operation completes once every member is terminal, whatever the
        member outcomes, unless the batch has a single member that failed.
        Dependents of the successful members restart once, after all members
        finished; batch members are never restarted as dependents.
        """
        ordered = list(dict.fromkeys(names))
        if not ordered:
            raise ValidationError("Batch update needs at least one container")
        target_tags = target_tags or {}
        forced = set(force_containers or [])
        unknown = forced - set(ordered)
        if unknown:
            raise ValidationError(f"force_containers not in batch: {', '.join(sorted(unknown))}")

        prepared = {name: self._prepare_update(name, target_tags.get(name)) for name in ordered}
        members = [member for _, member in prepared.values()]
        stacks = {record.stack_name for record, _ in prepared.values() if record.stack_name}
        group_id = _new_group_id()

        async def update_one(operation_id: str, name: str) -> str:
            record, member = prepared[name]
            await self._update_member(operation_id, record, member['new_version'], name in forced)
            return f"Updated to {member['new_version']}"

        async def body(operation_id: str) -> Optional[str]:
            succeeded, failures = await self._run_members(operation_id, ordered, update_one)
            if succeeded:
                await self._restart_dependents(
                    operation_id, succeeded, run_checks=not force_dependents, members=ordered,
                )
            if len(ordered) == 1 and failures:
                raise failures[ordered[0]]
            return self._summarize(succeeded, failures)

        operation_id = self._submit(
            OperationType.UPDATE, members, body,
            stack_name=stacks.pop() if len(stacks) == 1 else None,
            batch_group_id=group_id,
            force=bool(forced),
        )
        logger.info(f"Batch update {operation_id} (group {group_id}) for {ordered}")
        return BatchSubmission(batch_group_id=group_id, operation_id=operation_id, members=tuple(ordered))

    async def _update_member(self, operation_id: str, record: ContainerRecord, tag: str, force: bool):
        """validating -> pre_check -> updating_compose -> pulling_image -> recreating -> health_check"""
        name = record.name
        await self._progress(operation_id, name, Stage.VALIDATING, 0, f"Updating to {tag}")

        if record.pre_update_check:
            if force:
                logger.info(f"Skipping pre-update check for {name} (forced)")
            else:
                await self._progress(operation_id, name, Stage.PRE_CHECK, 5, "Running pre-update check")
                await self._run_pre_check(name, record.pre_update_check)

        new_image = parse_image_ref(record.compose_image or record.image).with_tag(tag)

        await self._progress(operation_id, name, Stage.UPDATING_COMPOSE, 20, f"Setting image to {new_image}")
        backup = await self.docker.backup_compose(name)
        await self.docker.update_compose_image(name, new_image)

        try:
            await self._progress(operation_id, name, Stage.PULLING_IMAGE, 30, f"Pulling {new_image}")
            await self.docker.pull(new_image)
            await self._progress(operation_id, name, Stage.PULLING_IMAGE, 60, "Image pulled")
        except Exception:
            # Container untouched; only the compose file needs reverting
            await self.docker.restore_compose(name, backup)
            raise

        try:
            await self._progress(operation_id, name, Stage.RECREATING, 65, "Recreating container")
            await self.docker.recreate(name, new_image)
            await self._progress(operation_id, name, Stage.HEALTH_CHECK, 80, "Waiting for container health")
            await self._wait_healthy(name)
        except Exception as e:
            await self._revert_compose(name, backup, e)
            raise

        await self.docker.discard_compose_backup(backup)

        current = parse_tag(tag)
        self.container_registry.put(replace(
            record,
            image=new_image,
            compose_image=new_image,
            current_tag=tag,
            current_version=str(current.value),
            current_suffix=current.suffix,
            using_latest_tag=current.is_latest,
            recommended_tag="",
            change_type=ChangeType.NO_CHANGE,
            status=UpdateStatus.UP_TO_DATE if tag == record.latest_tag else UpdateStatus.UNKNOWN,
        ))

    async def _revert_compose(self, name: str, backup: str, cause: Exception):
        """Put the previous compose definition back and recreate from it"""
        logger.warning(f"Reverting {name} to its previous compose definition after: {cause}")
        try:
            await self.docker.restore_compose(name, backup)
            await self.docker.recreate(name)
        except DockPilotError as e:
            logger.error(f"Could not revert {name}: {e}")

    # ------------------------------------------------------------------
    # Restart
    # ------------------------------------------------------------------

    async def restart_container(self, name: str, force: bool = False, force_dependents: bool = False) -> str:
        record = self._get_record(name)

        async def body(operation_id: str) -> Optional[str]:
            await self._progress(operation_id, name, Stage.VALIDATING, 0, "Restarting container")
            if record.pre_update_check and not force:
                await self._progress(operation_id, name, Stage.PRE_CHECK, 10, "Running pre-update check")
                await self._run_pre_check(name, record.pre_update_check)

            await self._progress(operation_id, name, Stage.STOPPING, 20, "Stopping container")
            await self.docker.stop(name)
            await self._progress(operation_id, name, Stage.STARTING, 40, "Starting container")
            await self.docker.start(name)
            await self._progress(operation_id, name, Stage.HEALTH_CHECK, 60, "Waiting for container health")
            await self._wait_healthy(name)
            await self._progress(operation_id, name, Stage.HEALTH_CHECK, 80, "Container healthy")

            await self._progress(operation_id, name, Stage.RESTARTING_DEPENDENTS, 85)
            await self._restart_dependents(operation_id, [name], run_checks=not force_dependents)
            await self._finish_member(operation_id, name, message="Restarted")
            return None

        logger.info(f"Restart requested for {name} (force={force})")
        return self._submit(
            OperationType.RESTART, [{'container_name': name}], body,
            stack_name=record.stack_name or None,
            force=force,
        )

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback_operation(
        self,
        operation_id: str,
        force: bool = False,
        container_names: Optional[Sequence[str]] = None,
    ) -> str:
        """
        Return the members of a finished update (or rollback) to their
        previous images, as a new Rollback operation.
        """
        original = self.store.get_operation(operation_id)
        if original is None:
            raise NotFoundError(f"Operation {operation_id} not found")
        if original['operation_type'] not in (OperationType.UPDATE.value, OperationType.ROLLBACK.value):
            raise ValidationError(f"Cannot roll back a {original['operation_type']} operation")
        if original['status'] not in ('complete', 'failed'):
            raise ValidationError(f"Operation {operation_id} is still {original['status']}")

        details = {d['container_name']: d for d in original['batch_details']}
        if container_names:
            missing = [n for n in container_names if n not in details]
            if missing:
                raise ValidationError(f"Not part of {operation_id}: {', '.join(missing)}")
            selected = list(dict.fromkeys(container_names))
        else:
            selected = [n for n, d in details.items() if d['status'] == BatchMemberStatus.SUCCESS.value]
        selected = [n for n in selected if details[n]['status'] == BatchMemberStatus.SUCCESS.value]
        if not selected:
            raise ValidationError(f"Operation {operation_id} has no successfully changed containers to roll back")

        records = {name: self._get_record(name) for name in selected}
        targets = {
            name: resolve_rollback_target(records[name].compose_image or records[name].image, details[name])
            for name in selected
        }
        members = []
        for name in selected:
            detail = details[name]
            target = targets[name]
            members.append({
                'container_name': name,
                'old_version': detail.get('new_version'),
                'new_version': target.tag or target.image,
                'change_type': (
                    classify_tags(parse_tag(detail.get('new_version') or ''), parse_tag(target.tag)).value
                    if target.tag else ChangeType.UNKNOWN.value
                ),
                'old_resolved_version': detail.get('new_resolved_version'),
                'new_resolved_version': detail.get('old_resolved_version'),
                'old_digest': records[name].current_digest or None,
            })

        async def rollback_one(new_operation_id: str, name: str) -> str:
            return await self._rollback_member(new_operation_id, records[name], targets[name], force)

        async def body(new_operation_id: str) -> Optional[str]:
            succeeded, failures = await self._run_members(new_operation_id, selected, rollback_one)
            if succeeded:
                self.store.mark_rollback_occurred(operation_id)
                # Rollback restores a known-good state; dependents skip their checks
                await self._restart_dependents(new_operation_id, succeeded, run_checks=False, members=selected)
            if len(selected) == 1 and failures:
                raise failures[selected[0]]
            return self._summarize(succeeded, failures)

        new_id = self._submit(
            OperationType.ROLLBACK, members, body,
            stack_name=original.get('stack_name'),
            batch_group_id=original.get('batch_group_id'),
            force=force,
            rollback_of=operation_id,
            old_version=original.get('new_version'),
            new_version=original.get('old_version'),
        )
        logger.info(f"Rollback {new_id} of {operation_id} for {selected}")
        return new_id

    async def _rollback_member(self, operation_id: str, record: ContainerRecord, target: RollbackTarget,
                               force: bool) -> str:
        """validating -> backup -> updating_compose -> pulling_image -> recreating -> health_check"""
        name = record.name
        await self._progress(operation_id, name, Stage.VALIDATING, 0, "Rolling back")
        if target.strategy == RollbackStrategy.NONE:
            raise ValidationError(f"No previous tag, version or digest recorded for {name}")

        if record.pre_update_check and not force:
            await self._progress(operation_id, name, Stage.PRE_CHECK, 5, "Running pre-update check")
            await self._run_pre_check(name, record.pre_update_check)

        await self._progress(operation_id, name, Stage.BACKUP, 10, "Backing up compose file")
        backup = await self.docker.backup_compose(name)

        await self._progress(operation_id, name, Stage.UPDATING_COMPOSE, 20,
                             f"Setting image to {target.image} ({target.strategy.value})")
        await self.docker.update_compose_image(name, target.image)

        try:
            await self._progress(operation_id, name, Stage.PULLING_IMAGE, 35, f"Pulling {target.image}")
            await self.docker.pull(target.image)
        except Exception:
            await self.docker.restore_compose(name, backup)
            raise

        try:
            await self._progress(operation_id, name, Stage.RECREATING, 60, "Recreating container")
            await self.docker.recreate(name, target.image)
            await self._progress(operation_id, name, Stage.HEALTH_CHECK, 80, "Waiting for container health")
            await self._wait_healthy(name)
        except Exception as e:
            await self._revert_compose(name, backup, e)
            raise

        await self.docker.discard_compose_backup(backup)

        if target.tag:
            parsed = parse_tag(target.tag)
            record = replace(record, current_tag=target.tag, current_version=str(parsed.value),
                             current_suffix=parsed.suffix)
        self.container_registry.put(replace(
            record,
            image=target.image,
            compose_image=target.image,
            status=UpdateStatus.UNKNOWN,
            recommended_tag="",
        ))
        return f"Rolled back to {target.image}"

    # ------------------------------------------------------------------
    # Labels
    # ------------------------------------------------------------------

    async def set_labels(self, request: SetLabelsRequest) -> str:
        record = self._get_record(request.container)
        current = LabelConfig.from_labels(record.compose_labels)
        return self._submit_label_change(record, current, request.apply(current), request.no_restart, request.force)

    async def remove_labels(self, request: RemoveLabelsRequest) -> str:
        record = self._get_record(request.container)
        current = LabelConfig.from_labels(record.compose_labels)
        return self._submit_label_change(record, current, request.apply(current), request.no_restart, request.force)

    def _submit_label_change(self, record: ContainerRecord, current: LabelConfig, desired: LabelConfig,
                             no_restart: bool, force: bool) -> str:
        name = record.name
        if not record.compose_file:
            raise ValidationError(f"Container {name} is not managed by docker compose")
        if name in desired.restart_after:
            raise ValidationError(f"Container {name} cannot restart after itself")
        # Bad regex or bounds are rejected before anything is written
        desired.to_policy()

        delta = desired.diff(current)
        if delta.is_empty:
            raise ValidationError(f"No label changes for {name}")

        old_labels = current.to_labels()
        new_labels = desired.to_labels()

        async def body(operation_id: str) -> Optional[str]:
            await self._change_labels(operation_id, record, delta, old_labels, new_labels, no_restart, force)
            return None

        logger.info(f"Label change requested for {name}: set={sorted(delta.set)} removed={delta.removed}")
        return self._submit(
            OperationType.LABEL_CHANGE, [{'container_name': name}], body,
            stack_name=record.stack_name or None,
            force=force,
            old_version=json.dumps(old_labels, sort_keys=True),
            new_version=json.dumps(new_labels, sort_keys=True),
        )

    async def _change_labels(self, operation_id: str, record: ContainerRecord, delta, old_labels: Dict[str, str],
                             new_labels: Dict[str, str], no_restart: bool, force: bool):
        """
        Write labels to the compose file, then recreate and verify.

        commit_before_verify decides what a failed pre-update check leaves
        behind: False checks before writing (file untouched), True writes
        first and keeps the write.
        """
        name = record.name
        await self._progress(operation_id, name, Stage.VALIDATING, 0, "Changing labels")

        run_check = bool(record.pre_update_check) and not no_restart and not force
        if run_check and not self.commit_before_verify:
            await self._progress(operation_id, name, Stage.PRE_CHECK, 5, "Running pre-update check")
            await self._run_pre_check(name, record.pre_update_check)

        await self._progress(operation_id, name, Stage.UPDATING_COMPOSE, 10, "Backing up compose file")
        backup = await self.docker.backup_compose(name)
        await self.docker.write_compose_labels(name, delta)
        self.container_registry.update_labels(name, new_labels, effective=False)
        await self._progress(operation_id, name, Stage.UPDATING_COMPOSE, 30, "Compose labels written")
        await self.event_bus.emit(Event(
            event_type=EventType.CONTAINER_LABELS_CHANGED,
            scope_name=name,
            operation_id=operation_id,
            data={'set': delta.set, 'removed': delta.removed},
        ))

        if run_check and self.commit_before_verify:
            await self._progress(operation_id, name, Stage.PRE_CHECK, 35, "Running pre-update check")
            try:
                await self._run_pre_check(name, record.pre_update_check)
            except PreUpdateCheckBlocked:
                # The written labels stay; only the backup goes
                await self.docker.discard_compose_backup(backup)
                raise

        if no_restart:
            await self.docker.discard_compose_backup(backup)
            await self._finish_member(operation_id, name, message="Labels written; restart pending")
            return

        try:
            await self._progress(operation_id, name, Stage.STOPPING, 40, "Stopping container")
            await self.docker.stop(name)
            await self._progress(operation_id, name, Stage.STARTING, 70, "Recreating with new labels")
            await self.docker.recreate(name)
            await self._progress(operation_id, name, Stage.HEALTH_CHECK, 90, "Waiting for container health")
            await self._wait_healthy(name)
        except Exception as e:
            if not self.commit_before_verify:
                await self._revert_compose(name, backup, e)
                self.container_registry.update_labels(name, old_labels, effective=False)
            raise

        await self.docker.discard_compose_backup(backup)
        self.container_registry.update_labels(name, new_labels, effective=True)
        await self._finish_member(operation_id, name, message="Labels applied")

    # ------------------------------------------------------------------
    # Stop / remove / fix mismatch
    # ------------------------------------------------------------------

    async def stop_container(self, name: str) -> str:
        await self.docker.get_container(name)
        record = self.container_registry.get(name)

        async def body(operation_id: str) -> Optional[str]:
            await self._progress(operation_id, name, Stage.VALIDATING, 0, "Stopping container")
            await self._progress(operation_id, name, Stage.STOPPING, 50, "Stopping container")
            await self.docker.stop(name)
            await self._finish_member(operation_id, name, message="Stopped")
            return None

        return self._submit(
            OperationType.STOP, [{'container_name': name}], body,
            stack_name=(record.stack_name or None) if record else None,
        )

    async def remove_container(self, name: str, force: bool = False) -> str:
        await self.docker.get_container(name)
        record = self.container_registry.get(name)

        async def body(operation_id: str) -> Optional[str]:
            await self._progress(operation_id, name, Stage.VALIDATING, 0, "Removing container")
            await self._progress(operation_id, name, Stage.REMOVING, 50, "Removing container")
            await self.docker.remove(name, force=force)
            self.container_registry.remove(name)
            await self._finish_member(operation_id, name, message="Removed")
            return None

        return self._submit(
            OperationType.REMOVE, [{'container_name': name}], body,
            stack_name=(record.stack_name or None) if record else None,
            force=force,
        )

    async def fix_compose_mismatch(self, name: str) -> str:
        """Recreate a container from its compose definition"""
        record = self._get_record(name)
        if record.status != UpdateStatus.COMPOSE_MISMATCH:
            raise ValidationError(f"Container {name} matches its compose file")

        async def body(operation_id: str) -> Optional[str]:
            await self._progress(operation_id, name, Stage.VALIDATING, 0, record.error or "Fixing compose mismatch")
            if record.compose_image:
                await self._progress(operation_id, name, Stage.PULLING_IMAGE, 30, f"Pulling {record.compose_image}")
                await self.docker.pull(record.compose_image)
            await self._progress(operation_id, name, Stage.RECREATING, 60, "Recreating from compose file")
            await self.docker.recreate(name)
            await self._progress(operation_id, name, Stage.HEALTH_CHECK, 80, "Waiting for container health")
            await self._wait_healthy(name)
            self.container_registry.put(replace(
                record,
                image=record.compose_image or record.image,
                status=UpdateStatus.UNKNOWN,
                error="",
            ))
            await self._finish_member(operation_id, name, message="Recreated from compose file")
            return None

        return self._submit(
            OperationType.FIX_MISMATCH, [{'container_name': name}], body,
            stack_name=record.stack_name or None,
            old_version=record.image,
            new_version=record.compose_image or None,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_operation(self, operation_id: str) -> Dict[str, Any]:
        operation = self.store.get_operation(operation_id)
        if operation is None:
            raise NotFoundError(f"Operation {operation_id} not found")
        return operation

    def get_group(self, batch_group_id: str) -> List[Dict[str, Any]]:
        operations = self.store.get_group(batch_group_id)
        if not operations:
            raise NotFoundError(f"Batch group {batch_group_id} not found")
        return operations

    def list_operations(self, **filters) -> List[Dict[str, Any]]:
        return self.store.list_operations(**filters)

    def list_containers(self) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self.container_registry.list()]

    def get_labels(self, name: str) -> Dict[str, Any]:
        record = self._get_record(name)
        return {
            'container': name,
            'labels': managed_labels(record.labels),
            'compose_labels': managed_labels(record.compose_labels),
            'labels_out_of_sync': record.labels_out_of_sync,
            'config': LabelConfig.from_labels(record.compose_labels).to_labels(),
        }

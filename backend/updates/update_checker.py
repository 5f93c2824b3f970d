"""
Update Checker Service

Checks every container for available image updates and publishes the
results to the ContainerRegistry.

Workflow per container:
1. Ignore label -> IGNORED
2. Running image differs from the compose file -> COMPOSE_MISMATCH
3. Image has no registry digest (built locally) -> LOCAL_IMAGE
4. List registry tags (errors -> METADATA_UNAVAILABLE / CHECK_FAILED)
5. Filter tags by label policy, pick the recommended tag
6. Run the pre-update check, which may block an available update
"""

import asyncio
import logging
from dataclasses import replace
from typing import Dict, Optional

from errors import RegistryMetadataError, TransientRegistryError, ValidationError
from updates.compose_editor import ComposeFile, ComposeParseError, ServiceNotFoundError
from updates.container_registry import ContainerRegistry
from updates.docker_executor import DockerComposeClient, compose_target_from_labels
from updates.labels import COMPOSE_PROJECT_LABEL, LabelConfig
from updates.pre_update_check import PreUpdateCheckRunner
from updates.registry_client import RegistryTagsClient, get_registry_client
from updates.types import CheckResult, ContainerRecord, UpdateStatus
from versioning.classifier import select_pin_target, select_recommended
from versioning.parser import parse_image_ref, parse_tag
from versioning.policy import filter_candidates
from versioning.types import ChangeType

logger = logging.getLogger(__name__)

OCI_VERSION_LABEL = "org.opencontainers.image.version"


def _normalize_image(image: str) -> str:
    """Strip a digest and add the implicit :latest for comparison"""
    if '@' in image:
        image = image.split('@', 1)[0]
    last_slash = image.rfind('/')
    if image.rfind(':') <= last_slash:
        image += ':latest'
    return image


def detect_compose_mismatch(running_image: str, compose_image: Optional[str]) -> Optional[str]:
    """
    Compare the running image against the compose specification.

    Returns:
        A description of the mismatch, or None when they agree or the
        compose side is unknown
    """
    # Lost its tag reference: running from a bare image ID
    if running_image.startswith('sha256:') or (':' not in running_image and len(running_image) == 64):
        return "lost tag reference, running bare image ID"

    if not compose_image:
        return None

    if _normalize_image(running_image) != _normalize_image(compose_image):
        return f"Running image ({running_image}) differs from compose specification ({compose_image})"
    return None


class UpdateChecker:
    """
    Service that checks containers for available image updates.

    Collaborators are injected so each can be replaced in tests; the
    registry client defaults to the global instance.
    """

    def __init__(
        self,
        docker_client: DockerComposeClient,
        container_registry: ContainerRegistry,
        registry_client: Optional[RegistryTagsClient] = None,
        pre_check_runner: Optional[PreUpdateCheckRunner] = None,
        date_delta_as_major: Optional[bool] = None,
    ):
        self.docker = docker_client
        self.container_registry = container_registry
        self.registry = registry_client or get_registry_client()
        self.pre_check_runner = pre_check_runner or PreUpdateCheckRunner()
        if date_delta_as_major is None:
            from config.settings import AppConfig
            date_delta_as_major = AppConfig.DATE_DELTA_AS_MAJOR
        self.date_delta_as_major = date_delta_as_major

    async def check_all_containers(self) -> CheckResult:
        """
        Check all containers and replace the registry contents.

        A failure on one container is recorded as CHECK_FAILED for that
        container; it never aborts the cycle.
        """
        logger.info("Starting update check for all containers")
        result = CheckResult()

        containers = await self.docker.list_containers()
        logger.info(f"Found {len(containers)} containers to check")

        for container in containers:
            result.total_checked += 1
            try:
                record = await self.check_container(container)
            except Exception as e:
                logger.error(f"Error checking container {getattr(container, 'name', 'unknown')}: {e}", exc_info=True)
                record = ContainerRecord(
                    name=container.name,
                    image=self._running_image(container),
                    status=UpdateStatus.CHECK_FAILED,
                    error=str(e),
                )
            result.add(record)

        self.container_registry.replace_all(result.records)
        logger.info(
            f"Update check complete: checked={result.total_checked} updates={result.updates_found} "
            f"up_to_date={result.up_to_date} local={result.local_images} failed={result.failed} "
            f"ignored={result.ignored}"
        )
        return result

    async def check_single_container(self, name: str) -> ContainerRecord:
        """Check one container (manual trigger) and store the fresh record"""
        container = await self.docker.get_container(name)
        record = await self.check_container(container)
        self.container_registry.put(record)
        return record

    @staticmethod
    def _running_image(container) -> str:
        config = (container.attrs or {}).get("Config") or {}
        return config.get("Image") or ""

    async def _load_compose_details(self, name: str, labels: Dict[str, str]) -> Dict:
        """Compose file, service, image, labels and depends_on; empty when unavailable"""
        target = compose_target_from_labels(labels)
        if target is None:
            return {}

        details = {"compose_file": target.compose_file, "service_name": target.service}
        try:
            compose = await asyncio.to_thread(ComposeFile.load, target.compose_file)
            details["compose_image"] = compose.get_image(target.service) or ""
            details["compose_labels"] = compose.get_labels(target.service)
            details["dependencies"] = tuple(compose.get_depends_on(target.service))
        except (ComposeParseError, ServiceNotFoundError) as e:
            # Without the file, only the lost-tag mismatch can be detected
            logger.warning(f"Container {name}: cannot read compose file {target.compose_file}: {e}")
        return details

    async def check_container(self, container) -> ContainerRecord:
        """Build a fresh ContainerRecord for one container"""
        name = container.name
        labels = dict(container.labels or {})
        image = self._running_image(container)
        state = (container.attrs or {}).get("State") or {}

        label_config = LabelConfig.from_labels(labels)
        compose = await self._load_compose_details(name, labels)

        record = ContainerRecord(
            name=name,
            image=image,
            labels=labels,
            compose_labels=compose.get("compose_labels", {}),
            dependencies=compose.get("dependencies", ()),
            restart_after=label_config.restart_after,
            pre_update_check=label_config.pre_update_check or "",
            compose_file=compose.get("compose_file", ""),
            compose_image=compose.get("compose_image", ""),
            service_name=compose.get("service_name", ""),
            stack_name=labels.get(COMPOSE_PROJECT_LABEL, ""),
            health_status=(state.get("Health") or {}).get("Status", ""),
        )

        if label_config.ignore:
            logger.debug(f"Container {name}: ignored via label")
            return replace(record, status=UpdateStatus.IGNORED)

        mismatch = detect_compose_mismatch(image, record.compose_image)
        if mismatch:
            logger.info(f"Container {name}: COMPOSE MISMATCH - {mismatch}")
            return replace(record, status=UpdateStatus.COMPOSE_MISMATCH, error=mismatch)

        ref = parse_image_ref(image)
        current = parse_tag(ref.tag)
        record = replace(
            record,
            current_tag=ref.tag,
            current_suffix=current.suffix,
            using_latest_tag=current.is_latest,
        )

        digest = await self.docker.image_digest(image)
        if digest is None:
            return replace(record, status=UpdateStatus.LOCAL_IMAGE)
        record = replace(record, current_digest=digest)

        try:
            tags = await self.registry.list_tags(ref)
        except RegistryMetadataError as e:
            logger.info(f"Container {name}: registry metadata unavailable: {e}")
            return replace(
                record,
                status=UpdateStatus.METADATA_UNAVAILABLE,
                error="Version information unavailable (registry lookup failed)",
            )
        except TransientRegistryError as e:
            logger.warning(f"Container {name}: registry check failed: {e}")
            return replace(record, status=UpdateStatus.CHECK_FAILED, error=str(e))

        try:
            policy = label_config.to_policy(self.date_delta_as_major)
        except ValidationError as e:
            logger.warning(f"Container {name}: invalid label configuration: {e}")
            return replace(record, status=UpdateStatus.CHECK_FAILED, error=str(e))

        filtered = filter_candidates(current, tags, policy)
        record = replace(record, available_tags=tuple(c.tag for c in filtered.candidates))

        record = await self._classify(record, container, current, filtered.candidates, label_config.allow_latest)
        return await self._apply_pre_update_check(record)

    async def _classify(self, record: ContainerRecord, container, current, candidates, allow_latest: bool) -> ContainerRecord:
        if current.is_versioned:
            current_version = str(current.value)
            recommendation = select_recommended(
                current, candidates, date_delta_as_major=self.date_delta_as_major
            )
            if recommendation is None:
                return replace(
                    record,
                    current_version=current_version,
                    latest_tag=record.current_tag,
                    latest_version=current_version,
                    change_type=ChangeType.NO_CHANGE,
                    status=UpdateStatus.UP_TO_DATE,
                )
            logger.info(
                f"Update available for {record.name}: {record.current_tag} -> "
                f"{recommendation.tag} ({recommendation.change_type.value})"
            )
            return replace(
                record,
                current_version=current_version,
                latest_tag=recommendation.tag,
                latest_version=str(recommendation.parsed.value),
                recommended_tag=recommendation.tag,
                change_type=recommendation.change_type,
                status=UpdateStatus.UPDATE_AVAILABLE,
            )

        # Moving or unparseable tag: nothing to compare numerically
        image_labels = ((container.attrs or {}).get("Config") or {}).get("Labels") or {}
        record = replace(record, current_version=image_labels.get(OCI_VERSION_LABEL, ""), change_type=ChangeType.UNKNOWN)

        if current.is_latest and not allow_latest:
            target = select_pin_target(current, candidates)
            if target is not None:
                return replace(
                    record,
                    latest_tag=target.tag,
                    latest_version=str(target.value),
                    recommended_tag=target.tag,
                    status=UpdateStatus.UP_TO_DATE_PINNABLE,
                )
            logger.debug(f"Container {record.name}: using :latest but no versioned tags to pin to")

        return replace(record, status=UpdateStatus.UNKNOWN)

    async def _apply_pre_update_check(self, record: ContainerRecord) -> ContainerRecord:
        if not record.pre_update_check:
            return record

        result = await self.pre_check_runner.run(record.pre_update_check, record.name)
        if result.passed:
            return replace(record, pre_update_check_pass=True)

        reason = result.output or f"exit code {result.exit_code}"
        # Only block when there is actually something to apply
        status = record.status
        if status in (UpdateStatus.UPDATE_AVAILABLE, UpdateStatus.UP_TO_DATE_PINNABLE):
            status = UpdateStatus.UPDATE_AVAILABLE_BLOCKED
        return replace(record, pre_update_check_fail=reason, status=status)


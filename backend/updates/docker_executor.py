"""
Docker / Compose collaborator.

All daemon access goes through the Docker SDK wrapped in async_docker_call;
recreation goes through `docker compose up` so the container is rebuilt
from its compose definition (image, labels, networks, volumes). Compose
file edits go through ComposeFile.
"""

import asyncio
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import docker

from errors import ExecutionError, NotFoundError
from updates.compose_editor import (
    ComposeFile,
    ComposeParseError,
    ServiceNotFoundError,
    backup_compose_file,
    restore_compose_file,
)
from updates.labels import (
    COMPOSE_CONFIG_FILES_LABEL,
    COMPOSE_PROJECT_LABEL,
    COMPOSE_SERVICE_LABEL,
    COMPOSE_WORKING_DIR_LABEL,
    LabelChangeSet,
)
from updates.types import HealthResult
from utils.async_docker import async_docker_call, async_containers_list
from utils.container_health import wait_for_container_health

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ComposeTarget:
    """Where a container's definition lives"""
    compose_file: str
    service: str
    project: str = ""
    working_dir: str = ""


def compose_target_from_labels(labels: Dict[str, str]) -> Optional[ComposeTarget]:
    """
    Locate the compose file from the labels docker compose stamps on a container.

    config_files may list several files; the first one is the one edited.
    """
    config_files = (labels or {}).get(COMPOSE_CONFIG_FILES_LABEL, "")
    service = (labels or {}).get(COMPOSE_SERVICE_LABEL, "")
    if not config_files or not service:
        return None
    working_dir = labels.get(COMPOSE_WORKING_DIR_LABEL, "")
    compose_file = config_files.split(',')[0].strip()
    if not os.path.isabs(compose_file) and working_dir:
        compose_file = os.path.join(working_dir, compose_file)
    return ComposeTarget(
        compose_file=compose_file,
        service=service,
        project=labels.get(COMPOSE_PROJECT_LABEL, ""),
        working_dir=working_dir,
    )


class DockerComposeClient:
    """
    Executes container operations for the orchestrator.

    Every method is async; blocking SDK calls and subprocesses run in
    worker threads. Failures surface as ExecutionError (or NotFoundError
    for unknown containers).
    """

    def __init__(
        self,
        client: Optional[docker.DockerClient] = None,
        pull_timeout: int = 1800,
        stop_timeout: int = 10,
        compose_timeout: int = 600,
        compose_command: Sequence[str] = ('docker', 'compose'),
    ):
        self._client = client
        self.pull_timeout = pull_timeout
        self.stop_timeout = stop_timeout
        self.compose_timeout = compose_timeout
        self.compose_command = list(compose_command)

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def get_container(self, name: str):
        try:
            return await async_docker_call(self.client.containers.get, name)
        except docker.errors.NotFound:
            raise NotFoundError(f"Container {name} not found")
        except docker.errors.APIError as e:
            raise ExecutionError(f"Docker error inspecting {name}: {e}")

    async def list_containers(self) -> List:
        """All containers, running or not"""
        try:
            return await async_containers_list(self.client, all=True)
        except docker.errors.APIError as e:
            raise ExecutionError(f"Docker error listing containers: {e}")

    async def container_labels(self, name: str) -> Dict[str, str]:
        """Labels on the running container (what the daemon sees)"""
        container = await self.get_container(name)
        return dict(container.labels or {})

    async def compose_target(self, name: str) -> ComposeTarget:
        labels = await self.container_labels(name)
        target = compose_target_from_labels(labels)
        if target is None:
            raise ExecutionError(f"Container {name} is not managed by docker compose")
        return target

    async def _load_compose(self, name: str):
        target = await self.compose_target(name)
        try:
            compose = await asyncio.to_thread(ComposeFile.load, target.compose_file)
        except ComposeParseError as e:
            raise ExecutionError(f"Cannot load compose file for {name}: {e}")
        return target, compose

    async def pull(self, image: str):
        """Pull an image with timeout."""
        try:
            await asyncio.wait_for(
                async_docker_call(self.client.images.pull, image),
                timeout=self.pull_timeout
            )
            logger.debug(f"Successfully pulled image {image}")
        except asyncio.TimeoutError:
            raise ExecutionError(f"Image pull timed out after {self.pull_timeout}s for {image}")
        except docker.errors.APIError as e:
            logger.error(f"Error pulling image {image}: {e}")
            raise ExecutionError(f"Failed to pull {image}: {e}")

    async def image_digest(self, image: str) -> Optional[str]:
        """Repo digest (sha256:...) of a local image, if it came from a registry"""
        try:
            img = await async_docker_call(self.client.images.get, image)
        except docker.errors.ImageNotFound:
            return None
        except docker.errors.APIError as e:
            logger.warning(f"Failed to inspect image {image}: {e}")
            return None
        repo_digests = img.attrs.get("RepoDigests") or []
        if not repo_digests:
            return None
        return repo_digests[0].split('@', 1)[-1]

    async def _run_compose(self, target: ComposeTarget, args: List[str]) -> subprocess.CompletedProcess:
        command = list(self.compose_command) + ['-f', target.compose_file]
        if target.project:
            command += ['-p', target.project]
        command += args
        cwd = target.working_dir or os.path.dirname(target.compose_file) or None

        logger.debug(f"Running {' '.join(command)}")
        try:
            result = await asyncio.to_thread(
                subprocess.run,
                command,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.compose_timeout
            )
        except subprocess.TimeoutExpired:
            raise ExecutionError(f"docker compose timed out after {self.compose_timeout}s")
        except OSError as e:
            raise ExecutionError(f"Cannot run docker compose: {e}")

        if result.returncode != 0:
            stderr = (result.stderr or result.stdout or "").strip()
            raise ExecutionError(f"docker compose {' '.join(args)} failed: {stderr[-1000:]}")
        return result

    async def recreate(self, name: str, new_image: Optional[str] = None):
        """
        Recreate a container from its compose definition.

        The compose file must already reference the wanted image; new_image
        is checked against it so a stale file is caught before recreating.
        """
        target, compose = await self._load_compose(name)
        if new_image:
            declared = compose.get_image(target.service)
            if declared and declared != new_image:
                raise ExecutionError(
                    f"Compose file declares {declared} for {target.service}, expected {new_image}"
                )
        await self._run_compose(target, ['up', '-d', '--no-deps', '--force-recreate', target.service])
        logger.info(f"Recreated {name} (service {target.service})")

    async def restart(self, name: str):
        container = await self.get_container(name)
        try:
            await async_docker_call(container.restart, timeout=self.stop_timeout)
        except docker.errors.APIError as e:
            raise ExecutionError(f"Failed to restart {name}: {e}")
        logger.info(f"Restarted {name}")

    async def stop(self, name: str):
        container = await self.get_container(name)
        try:
            await async_docker_call(container.stop, timeout=self.stop_timeout)
        except docker.errors.APIError as e:
            raise ExecutionError(f"Failed to stop {name}: {e}")
        logger.info(f"Stopped {name}")

    async def start(self, name: str):
        container = await self.get_container(name)
        try:
            await async_docker_call(container.start)
        except docker.errors.APIError as e:
            raise ExecutionError(f"Failed to start {name}: {e}")

    async def remove(self, name: str, force: bool = False):
        container = await self.get_container(name)
        try:
            await async_docker_call(container.remove, force=force)
        except docker.errors.APIError as e:
            raise ExecutionError(f"Failed to remove {name}: {e}")
        logger.info(f"Removed {name}")

    async def health_check(self, name: str, timeout: int) -> HealthResult:
        return await wait_for_container_health(self.client, name, timeout)

    async def read_labels(self, name: str) -> Dict[str, str]:
        """Labels declared for the container's service in its compose file"""
        target, compose = await self._load_compose(name)
        try:
            return compose.get_labels(target.service)
        except ServiceNotFoundError as e:
            raise ExecutionError(str(e))

    async def write_compose_labels(self, name: str, delta: LabelChangeSet):
        """Apply a label change-set to the compose file (not to the running container)"""
        target, compose = await self._load_compose(name)
        try:
            compose.apply_label_delta(target.service, delta.set, delta.removed)
            await asyncio.to_thread(compose.save)
        except (ServiceNotFoundError, OSError) as e:
            raise ExecutionError(f"Failed to write labels for {name}: {e}")
        logger.info(
            f"Wrote labels for {name} in {target.compose_file}: "
            f"set={sorted(delta.set)} removed={delta.removed}"
        )

    async def compose_image(self, name: str) -> Optional[str]:
        target, compose = await self._load_compose(name)
        try:
            return compose.get_image(target.service)
        except ServiceNotFoundError as e:
            raise ExecutionError(str(e))

    async def update_compose_image(self, name: str, image: str) -> Optional[str]:
        """Point the service at a new image; returns the previous image"""
        target, compose = await self._load_compose(name)
        try:
            previous = compose.get_image(target.service)
            compose.set_image(target.service, image)
            await asyncio.to_thread(compose.save)
        except (ServiceNotFoundError, ComposeParseError, OSError) as e:
            raise ExecutionError(f"Failed to update image for {name}: {e}")
        logger.info(f"Compose image for {name}: {previous} -> {image}")
        return previous

    async def backup_compose(self, name: str) -> str:
        target = await self.compose_target(name)
        try:
            return await asyncio.to_thread(backup_compose_file, target.compose_file)
        except OSError as e:
            raise ExecutionError(f"Failed to back up compose file for {name}: {e}")

    async def restore_compose(self, name: str, backup_path: str):
        target = await self.compose_target(name)
        try:
            await asyncio.to_thread(restore_compose_file, target.compose_file, backup_path)
        except OSError as e:
            raise ExecutionError(f"Failed to restore compose file for {name}: {e}")

    async def discard_compose_backup(self, backup_path: str):
        """Delete a backup that is no longer needed; failures are only logged"""
        try:
            await asyncio.to_thread(os.remove, backup_path)
        except OSError as e:
            logger.warning(f"Could not remove compose backup {backup_path}: {e}")

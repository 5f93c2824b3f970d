"""
Shared container health check utility.

Used after every start or recreate (updates, restarts, rollbacks, label
changes and dependent cascades).
"""

import asyncio
import time
import logging
import docker

from updates.types import HealthResult
from utils.async_docker import async_docker_call

logger = logging.getLogger(__name__)

STABILITY_WAIT_SECONDS = 3


async def wait_for_container_health(
    client: docker.DockerClient,
    container_name: str,
    timeout: int = 60
) -> HealthResult:
    """
    Wait for container to become healthy or stable.

    1. Wait for container to reach "running" state (up to timeout)
    2. If container has Docker HEALTHCHECK: Poll for "healthy" status (up to timeout)
       - Short-circuits immediately when "healthy" detected
       - Returns UNHEALTHY immediately if "unhealthy" detected
    3. If no health check: Wait 3s for stability, verify still running

    Args:
        client: Docker SDK client instance
        container_name: Container name or ID
        timeout: Maximum time to wait in seconds

    Returns:
        HEALTHY if container is healthy/stable
        UNHEALTHY if container is unhealthy, crashed or gone
        TIMEOUT if neither happened within timeout
    """
    start_time = time.monotonic()

    while time.monotonic() - start_time < timeout:
        try:
            container = await async_docker_call(client.containers.get, container_name)
            state = container.attrs["State"]

            # Not running YET - container might still be starting up
            if not state.get("Running", False):
                await asyncio.sleep(1)
                continue

            health = state.get("Health")
            if health:
                status = health.get("Status")
                if status == "healthy":
                    logger.info(f"Container {container_name} is healthy")
                    return HealthResult.HEALTHY
                elif status == "unhealthy":
                    logger.error(f"Container {container_name} is unhealthy")
                    return HealthResult.UNHEALTHY
                # Status is "starting", continue waiting
                logger.debug(f"Container {container_name} health status: {status}, waiting...")
                await asyncio.sleep(2)
            else:
                logger.info(f"Container {container_name} has no health check, waiting {STABILITY_WAIT_SECONDS}s for stability")
                await asyncio.sleep(STABILITY_WAIT_SECONDS)

                # Check if STILL running (catch quick crashes)
                container = await async_docker_call(client.containers.get, container_name)
                if container.attrs["State"].get("Running", False):
                    logger.info(f"Container {container_name} stable after {STABILITY_WAIT_SECONDS}s, considering healthy")
                    return HealthResult.HEALTHY
                logger.error(f"Container {container_name} crashed within {STABILITY_WAIT_SECONDS}s of starting")
                return HealthResult.UNHEALTHY

        except docker.errors.NotFound:
            logger.error(f"Container {container_name} not found during health check")
            return HealthResult.UNHEALTHY
        except docker.errors.APIError as e:
            logger.error(f"Error checking container health: {e}")
            return HealthResult.UNHEALTHY

    logger.error(f"Health check timeout after {timeout}s for container {container_name}")
    return HealthResult.TIMEOUT

"""
DockPilot service wiring.

Builds the long-lived collaborators (database, store, registry, checker,
orchestrator) and runs the background jobs:
- update check every CHECK_INTERVAL seconds
- daily cleanup of operations past the retention window
"""

import asyncio
import logging
from typing import Dict, List, Optional

from config.paths import ensure_data_dirs
from config.settings import AppConfig, setup_logging
from database import DatabaseManager, get_database_manager
from event_bus import Event, EventBus, EventType, get_event_bus
from updates.container_registry import ContainerRegistry
from updates.docker_executor import DockerComposeClient
from updates.operation_store import OperationStore
from updates.orchestrator import OperationOrchestrator
from updates.pre_update_check import PreUpdateCheckRunner
from updates.registry_client import RegistryTagsClient
from updates.types import CheckResult, ContainerRecord, UpdateStatus
from updates.update_checker import UpdateChecker

logger = logging.getLogger(__name__)

RETENTION_INTERVAL = 24 * 60 * 60
RETRY_DELAY = 60 * 60


class DockPilotService:
    """Owns every DockPilot component and its background tasks"""

    def __init__(
        self,
        db: Optional[DatabaseManager] = None,
        docker_client: Optional[DockerComposeClient] = None,
        registry_client: Optional[RegistryTagsClient] = None,
        event_bus: Optional[EventBus] = None,
        check_interval: Optional[int] = None,
        retention_days: Optional[int] = None,
    ):
        self.db = db or get_database_manager()
        self.event_bus = event_bus or get_event_bus()
        self.docker = docker_client or DockerComposeClient()
        self.check_interval = AppConfig.CHECK_INTERVAL if check_interval is None else check_interval
        self.retention_days = AppConfig.OPERATION_RETENTION_DAYS if retention_days is None else retention_days

        self.store = OperationStore(self.db)
        self.container_registry = ContainerRegistry()
        pre_check_runner = PreUpdateCheckRunner()
        self.checker = UpdateChecker(
            self.docker,
            self.container_registry,
            registry_client=registry_client,
            pre_check_runner=pre_check_runner,
        )
        self.orchestrator = OperationOrchestrator(
            self.store,
            self.docker,
            self.container_registry,
            pre_check_runner=pre_check_runner,
            event_bus=self.event_bus,
        )
        self._tasks: List[asyncio.Task] = []

    @classmethod
    def from_config(cls) -> 'DockPilotService':
        """Validate configuration, prepare directories and logging, then build the service"""
        AppConfig.validate()
        ensure_data_dirs()
        setup_logging()
        return cls()

    async def start(self, initial_check: bool = True):
        """
        Recover from a previous run and start the background jobs.

        Operations still pending or in progress belong to a process that
        no longer exists; they are failed before anything new is accepted.
        """
        interrupted = self.store.fail_interrupted_operations()
        if interrupted:
            logger.warning(f"Recovered {interrupted} interrupted operations")

        if initial_check:
            try:
                await self.check_updates_now()
            except Exception as e:
                logger.error(f"Initial update check failed: {e}", exc_info=True)

        if self.check_interval > 0:
            self._tasks.append(asyncio.create_task(self.periodic_update_check()))
        else:
            logger.info("Periodic update checks disabled")

        if self.retention_days > 0:
            self._tasks.append(asyncio.create_task(self.daily_maintenance()))

        logger.info("DockPilot service started")

    async def stop(self):
        """Cancel background jobs and wait for them to exit"""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("DockPilot service stopped")

    async def check_updates_now(self) -> CheckResult:
        """Run one full check cycle and announce newly available updates"""
        previous = {record.name: record for record in self.container_registry.list()}
        result = await self.checker.check_all_containers()

        for record in result.records:
            if self._is_new_update(previous.get(record.name), record):
                await self.event_bus.emit(Event(
                    event_type=EventType.UPDATE_AVAILABLE,
                    scope_name=record.name,
                    data={
                        'current_tag': record.current_tag,
                        'latest_tag': record.recommended_tag or record.latest_tag,
                        'change_type': record.change_type.value,
                    },
                ))
        return result

    @staticmethod
    def _is_new_update(previous: Optional[ContainerRecord], record: ContainerRecord) -> bool:
        if record.status != UpdateStatus.UPDATE_AVAILABLE:
            return False
        if previous is None or previous.status != UpdateStatus.UPDATE_AVAILABLE:
            return True
        return previous.recommended_tag != record.recommended_tag

    async def periodic_update_check(self):
        """Run the update check every check_interval seconds"""
        logger.info(f"Periodic update check every {self.check_interval}s")

        while True:
            try:
                await asyncio.sleep(self.check_interval)
                result = await self.check_updates_now()
                logger.info(
                    f"Scheduled update check: {result.total_checked} checked, "
                    f"{result.updates_found} updates available"
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in periodic update check: {e}", exc_info=True)

    async def daily_maintenance(self):
        """Delete finished operations older than the retention window once a day"""
        while True:
            try:
                self.store.cleanup_old_operations(self.retention_days)
                await asyncio.sleep(RETENTION_INTERVAL)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in operation cleanup: {e}")
                await asyncio.sleep(RETRY_DELAY)

    def status(self) -> Dict:
        """Snapshot for health endpoints and the CLI"""
        return {
            'containers': len(self.container_registry.list()),
            'active_operations': len(self.store.find_active_operations()),
            'background_tasks': sum(1 for t in self._tasks if not t.done()),
        }

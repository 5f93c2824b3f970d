"""
Shared pytest fixtures for DockPilot tests.

Fixtures provided:
- test_db: Temporary SQLite database exposing get_session() like DatabaseManager
- operation_store: OperationStore over test_db
- event_bus: Fresh EventBus instance
- container_registry: Empty ContainerRegistry
- make_record: Factory for ContainerRecord test data
- mock_docker: AsyncMock DockerComposeClient whose calls all succeed
- passing_pre_check: Pre-update check runner that always passes
"""

import os
import sys
import tempfile
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from database import Base
from event_bus import EventBus
from updates.container_registry import ContainerRegistry
from updates.operation_store import OperationStore
from updates.types import ContainerRecord, HealthResult, PreCheckResult, UpdateStatus
from versioning.types import ChangeType


class TestDatabase:
    """Stand-in for DatabaseManager bound to a throwaway SQLite file"""

    __test__ = False

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.engine = create_engine(
            f'sqlite:///{db_path}',
            connect_args={'check_same_thread': False},
        )

        @event.listens_for(self.engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def get_session(self):
        return self.SessionLocal()


@pytest.fixture(scope="function")
def test_db():
    """
    Create a temporary SQLite database for testing.

    Ensures tests don't affect each other.
    """
    db_fd, db_path = tempfile.mkstemp(suffix='.db')
    db = TestDatabase(db_path)

    yield db

    db.engine.dispose()
    os.close(db_fd)
    os.unlink(db_path)


@pytest.fixture
def operation_store(test_db):
    return OperationStore(test_db)


@pytest.fixture
def event_bus():
    """Create a fresh EventBus instance for testing"""
    return EventBus()


@pytest.fixture
def container_registry():
    return ContainerRegistry()


@pytest.fixture
def make_record():
    """
    Factory for ContainerRecord test data.

    Usage:
        record = make_record('web', current_tag='1.2.0', recommended_tag='1.3.0')
    """
    def _make(name: str, **overrides) -> ContainerRecord:
        current_tag = overrides.pop('current_tag', '1.0.0')
        repository = overrides.pop('repository', 'example/app')
        fields = {
            'name': name,
            'image': f'{repository}:{current_tag}',
            'current_tag': current_tag,
            'current_version': current_tag,
            'latest_tag': '1.1.0',
            'latest_version': '1.1.0',
            'recommended_tag': '1.1.0',
            'change_type': ChangeType.MINOR,
            'status': UpdateStatus.UPDATE_AVAILABLE,
            'compose_file': f'/stacks/{name}/compose.yaml',
            'compose_image': f'{repository}:{current_tag}',
            'service_name': name,
            'stack_name': 'stack',
            'current_digest': f'sha256:{"a" * 64}',
        }
        fields.update(overrides)
        return ContainerRecord(**fields)

    return _make


@pytest.fixture
def mock_docker():
    """
    AsyncMock DockerComposeClient where every call succeeds.

    Tests flip individual methods to raise to exercise failure paths.
    """
    docker = MagicMock()
    docker.backup_compose = AsyncMock(return_value='/tmp/compose.yaml.bak')
    docker.restore_compose = AsyncMock()
    docker.discard_compose_backup = AsyncMock()
    docker.update_compose_image = AsyncMock(return_value=None)
    docker.write_compose_labels = AsyncMock()
    docker.pull = AsyncMock()
    docker.image_digest = AsyncMock(return_value=f'sha256:{"b" * 64}')
    docker.recreate = AsyncMock()
    docker.restart = AsyncMock()
    docker.stop = AsyncMock()
    docker.start = AsyncMock()
    docker.remove = AsyncMock()
    docker.get_container = AsyncMock(return_value=MagicMock())
    docker.health_check = AsyncMock(return_value=HealthResult.HEALTHY)
    docker.read_labels = AsyncMock(return_value={})
    return docker


@pytest.fixture
def passing_pre_check():
    runner = MagicMock()
    runner.run = AsyncMock(return_value=PreCheckResult(passed=True, exit_code=0))
    return runner

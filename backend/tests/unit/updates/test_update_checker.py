"""
Unit tests for the update checker.

Docker, the registry and the pre-update check runner are mocked; the
version engine and label parsing run for real.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from errors import RegistryMetadataError, TransientRegistryError
from updates.container_registry import ContainerRegistry
from updates.labels import (
    ALLOW_LATEST_LABEL,
    COMPOSE_CONFIG_FILES_LABEL,
    COMPOSE_PROJECT_LABEL,
    COMPOSE_SERVICE_LABEL,
    IGNORE_LABEL,
    PRE_UPDATE_CHECK_LABEL,
    TAG_REGEX_LABEL,
    VERSION_PIN_MAJOR_LABEL,
)
from updates.types import PreCheckResult, UpdateStatus
from updates.update_checker import UpdateChecker, detect_compose_mismatch
from versioning.types import ChangeType


DIGEST = "sha256:" + "b" * 64


def _container(name, image, labels=None, image_labels=None, health=None):
    container = MagicMock()
    container.name = name
    container.labels = labels or {}
    state = {"Status": "running"}
    if health:
        state["Health"] = {"Status": health}
    container.attrs = {"Config": {"Image": image, "Labels": image_labels or {}}, "State": state}
    return container


@pytest.fixture
def docker_client():
    client = MagicMock()
    client.image_digest = AsyncMock(return_value=DIGEST)
    client.list_containers = AsyncMock(return_value=[])
    client.get_container = AsyncMock()
    return client


@pytest.fixture
def registry_client():
    client = MagicMock()
    client.list_tags = AsyncMock(return_value=[])
    return client


@pytest.fixture
def pre_check():
    runner = MagicMock()
    runner.run = AsyncMock(return_value=PreCheckResult(passed=True, exit_code=0))
    return runner


@pytest.fixture
def registry():
    return ContainerRegistry()


@pytest.fixture
def checker(docker_client, registry, registry_client, pre_check):
    return UpdateChecker(
        docker_client,
        registry,
        registry_client=registry_client,
        pre_check_runner=pre_check,
        date_delta_as_major=False,
    )


class TestDetectComposeMismatch:

    @pytest.mark.unit
    def test_matching_images(self):
        assert detect_compose_mismatch("nginx:1.25", "nginx:1.25") is None

    @pytest.mark.unit
    def test_implicit_latest(self):
        assert detect_compose_mismatch("nginx", "nginx:latest") is None

    @pytest.mark.unit
    def test_digest_suffix_ignored(self):
        assert detect_compose_mismatch("nginx:1.25@" + DIGEST, "nginx:1.25") is None

    @pytest.mark.unit
    def test_registry_port_is_not_a_tag(self):
        assert detect_compose_mismatch("localhost:5000/app", "localhost:5000/app:latest") is None

    @pytest.mark.unit
    def test_different_tag(self):
        message = detect_compose_mismatch("nginx:1.24", "nginx:1.25")

        assert "differs from compose specification" in message

    @pytest.mark.unit
    def test_lost_tag_reference(self):
        assert detect_compose_mismatch(DIGEST, None) == "lost tag reference, running bare image ID"
        assert detect_compose_mismatch("c" * 64, "nginx:1.25") == "lost tag reference, running bare image ID"

    @pytest.mark.unit
    def test_unknown_compose_side(self):
        assert detect_compose_mismatch("nginx:1.24", "") is None


class TestCheckContainer:

    @pytest.mark.asyncio
    async def test_update_available(self, checker, registry_client):
        registry_client.list_tags.return_value = ["1.25.3-alpine", "1.25.4-alpine", "1.26.0", "latest"]
        container = _container("web", "nginx:1.25.3-alpine", labels={COMPOSE_PROJECT_LABEL: "media"}, health="healthy")

        record = await checker.check_container(container)

        assert record.status == UpdateStatus.UPDATE_AVAILABLE
        assert record.current_tag == "1.25.3-alpine"
        assert record.current_suffix == "alpine"
        assert record.recommended_tag == "1.25.4-alpine"
        assert record.latest_tag == "1.25.4-alpine"
        assert record.change_type == ChangeType.PATCH
        assert record.current_digest == DIGEST
        assert record.stack_name == "media"
        assert record.health_status == "healthy"
        assert "latest" not in record.available_tags

    @pytest.mark.asyncio
    async def test_up_to_date(self, checker, registry_client):
        registry_client.list_tags.return_value = ["1.0.0", "1.1.0"]

        record = await checker.check_container(_container("app", "example/app:1.1.0"))

        assert record.status == UpdateStatus.UP_TO_DATE
        assert record.change_type == ChangeType.NO_CHANGE
        assert record.latest_tag == "1.1.0"
        assert record.recommended_tag is None

    @pytest.mark.asyncio
    async def test_pin_major_keeps_major(self, checker, registry_client):
        registry_client.list_tags.return_value = ["20.11.1-alpine3.19", "21.0.0-alpine"]
        container = _container("node", "node:20.10.0-alpine", labels={VERSION_PIN_MAJOR_LABEL: "true"})

        record = await checker.check_container(container)

        assert record.recommended_tag == "20.11.1-alpine3.19"
        assert record.change_type == ChangeType.MINOR

    @pytest.mark.asyncio
    async def test_ignored(self, checker, docker_client, registry_client):
        record = await checker.check_container(_container("app", "example/app:1.0.0", labels={IGNORE_LABEL: "true"}))

        assert record.status == UpdateStatus.IGNORED
        docker_client.image_digest.assert_not_awaited()
        registry_client.list_tags.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lost_tag_is_compose_mismatch(self, checker, registry_client):
        record = await checker.check_container(_container("app", DIGEST))

        assert record.status == UpdateStatus.COMPOSE_MISMATCH
        registry_client.list_tags.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_compose_file_mismatch(self, checker, tmp_path):
        compose_path = tmp_path / "compose.yaml"
        compose_path.write_text(
            "services:\n"
            "  app:\n"
            "    image: example/app:1.1.0\n"
            "    labels:\n"
            "      dockpilot.restart-after: db\n"
            "    depends_on:\n"
            "      - db\n"
            "  db:\n"
            "    image: postgres:16\n"
        )
        labels = {
            COMPOSE_CONFIG_FILES_LABEL: str(compose_path),
            COMPOSE_SERVICE_LABEL: "app",
            COMPOSE_PROJECT_LABEL: "stack",
        }

        record = await checker.check_container(_container("app", "example/app:1.0.0", labels=labels))

        assert record.status == UpdateStatus.COMPOSE_MISMATCH
        assert record.compose_image == "example/app:1.1.0"
        assert record.compose_file == str(compose_path)
        assert record.service_name == "app"
        assert record.dependencies == ("db",)
        assert record.compose_labels == {"dockpilot.restart-after": "db"}

    @pytest.mark.asyncio
    async def test_unreadable_compose_file_is_tolerated(self, checker, registry_client, tmp_path):
        registry_client.list_tags.return_value = ["1.0.0"]
        labels = {
            COMPOSE_CONFIG_FILES_LABEL: str(tmp_path / "missing.yaml"),
            COMPOSE_SERVICE_LABEL: "app",
        }

        record = await checker.check_container(_container("app", "example/app:1.0.0", labels=labels))

        assert record.status == UpdateStatus.UP_TO_DATE
        assert record.compose_image == ""

    @pytest.mark.asyncio
    async def test_local_image(self, checker, docker_client, registry_client):
        docker_client.image_digest.return_value = None

        record = await checker.check_container(_container("app", "myapp:dev"))

        assert record.status == UpdateStatus.LOCAL_IMAGE
        registry_client.list_tags.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_metadata_unavailable(self, checker, registry_client):
        registry_client.list_tags.side_effect = RegistryMetadataError("not found", status=404)

        record = await checker.check_container(_container("app", "example/private:1.0.0"))

        assert record.status == UpdateStatus.METADATA_UNAVAILABLE
        assert "unavailable" in record.error

    @pytest.mark.asyncio
    async def test_transient_registry_error(self, checker, registry_client):
        registry_client.list_tags.side_effect = TransientRegistryError("503 from registry", status=503)

        record = await checker.check_container(_container("app", "example/app:1.0.0"))

        assert record.status == UpdateStatus.CHECK_FAILED
        assert record.error == "503 from registry"

    @pytest.mark.asyncio
    async def test_invalid_tag_regex(self, checker, registry_client):
        registry_client.list_tags.return_value = ["1.1.0"]

        record = await checker.check_container(
            _container("app", "example/app:1.0.0", labels={TAG_REGEX_LABEL: "[unclosed"})
        )

        assert record.status == UpdateStatus.CHECK_FAILED
        assert "regex" in record.error

    @pytest.mark.asyncio
    async def test_latest_is_pinnable(self, checker, registry_client):
        registry_client.list_tags.return_value = ["latest", "1.25.0", "1.26.0", "1.26.0-alpine"]

        record = await checker.check_container(
            _container("web", "nginx:latest", image_labels={"org.opencontainers.image.version": "1.26.0"})
        )

        assert record.status == UpdateStatus.UP_TO_DATE_PINNABLE
        assert record.using_latest_tag is True
        assert record.recommended_tag == "1.26.0"
        assert record.change_type == ChangeType.UNKNOWN
        assert record.current_version == "1.26.0"

    @pytest.mark.asyncio
    async def test_latest_without_versioned_tags(self, checker, registry_client):
        registry_client.list_tags.return_value = ["latest", "stable"]

        record = await checker.check_container(_container("web", "example/app:latest"))

        assert record.status == UpdateStatus.UNKNOWN
        assert record.recommended_tag is None

    @pytest.mark.asyncio
    async def test_allow_latest_is_not_pinned(self, checker, registry_client):
        registry_client.list_tags.return_value = ["latest", "1.26.0"]

        record = await checker.check_container(
            _container("web", "nginx:latest", labels={ALLOW_LATEST_LABEL: "true"})
        )

        assert record.status == UpdateStatus.UNKNOWN
        assert record.change_type == ChangeType.UNKNOWN


class TestPreUpdateCheck:

    @pytest.mark.asyncio
    async def test_failing_check_blocks_update(self, checker, registry_client, pre_check):
        registry_client.list_tags.return_value = ["1.0.0", "1.1.0"]
        pre_check.run.return_value = PreCheckResult(passed=False, exit_code=1, output="backup running")

        record = await checker.check_container(
            _container("app", "example/app:1.0.0", labels={PRE_UPDATE_CHECK_LABEL: "/scripts/check.sh"})
        )

        assert record.status == UpdateStatus.UPDATE_AVAILABLE_BLOCKED
        assert record.pre_update_check_fail == "backup running"
        assert record.recommended_tag == "1.1.0"
        pre_check.run.assert_awaited_once_with("/scripts/check.sh", "app")

    @pytest.mark.asyncio
    async def test_failing_check_without_update_keeps_status(self, checker, registry_client, pre_check):
        registry_client.list_tags.return_value = ["1.0.0"]
        pre_check.run.return_value = PreCheckResult(passed=False, exit_code=2)

        record = await checker.check_container(
            _container("app", "example/app:1.0.0", labels={PRE_UPDATE_CHECK_LABEL: "/scripts/check.sh"})
        )

        assert record.status == UpdateStatus.UP_TO_DATE
        assert record.pre_update_check_fail == "exit code 2"

    @pytest.mark.asyncio
    async def test_passing_check(self, checker, registry_client):
        registry_client.list_tags.return_value = ["1.0.0", "1.1.0"]

        record = await checker.check_container(
            _container("app", "example/app:1.0.0", labels={PRE_UPDATE_CHECK_LABEL: "/scripts/check.sh"})
        )

        assert record.status == UpdateStatus.UPDATE_AVAILABLE
        assert record.pre_update_check_pass is True

    @pytest.mark.asyncio
    async def test_no_script_skips_runner(self, checker, registry_client, pre_check):
        registry_client.list_tags.return_value = ["1.0.0", "1.1.0"]

        await checker.check_container(_container("app", "example/app:1.0.0"))

        pre_check.run.assert_not_awaited()


class TestCheckAllContainers:

    @pytest.mark.asyncio
    async def test_counts_and_registry_replacement(self, checker, docker_client, registry_client, registry):
        docker_client.list_containers.return_value = [
            _container("app", "example/app:1.0.0"),
            _container("db", "postgres:16.1"),
            _container("skip", "example/skip:1.0.0", labels={IGNORE_LABEL: "true"}),
        ]

        async def list_tags(ref):
            if ref.repository.endswith("postgres"):
                return ["16.1"]
            return ["1.0.0", "1.1.0"]

        registry_client.list_tags.side_effect = list_tags

        result = await checker.check_all_containers()

        assert result.total_checked == 3
        assert result.updates_found == 1
        assert result.up_to_date == 1
        assert result.ignored == 1
        assert [r.name for r in registry.list()] == ["app", "db", "skip"]
        assert registry.get("app").status == UpdateStatus.UPDATE_AVAILABLE

    @pytest.mark.asyncio
    async def test_one_container_error_does_not_abort_cycle(self, checker, docker_client, registry_client, registry):
        docker_client.list_containers.return_value = [
            _container("broken", "example/broken:1.0.0"),
            _container("app", "example/app:1.0.0"),
        ]
        docker_client.image_digest.side_effect = [RuntimeError("daemon hiccup"), DIGEST]
        registry_client.list_tags.return_value = ["1.0.0"]

        result = await checker.check_all_containers()

        assert result.failed == 1
        assert result.up_to_date == 1
        broken = registry.get("broken")
        assert broken.status == UpdateStatus.CHECK_FAILED
        assert broken.image == "example/broken:1.0.0"
        assert "daemon hiccup" in broken.error

    @pytest.mark.asyncio
    async def test_check_single_container_stores_record(self, checker, docker_client, registry_client, registry):
        docker_client.get_container.return_value = _container("app", "example/app:1.0.0")
        registry_client.list_tags.return_value = ["1.0.0", "2.0.0"]

        record = await checker.check_single_container("app")

        assert record.change_type == ChangeType.MAJOR
        assert registry.get("app") == record
        docker_client.get_container.assert_awaited_once_with("app")

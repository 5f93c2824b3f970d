"""
Unit tests for the compose file editor.

Tests verify:
- Service lookup by container_name, then by service key
- Label edits preserve mapping vs list form
- Image edits refuse build-only services
- Atomic save and backup/restore
"""

import pytest
import yaml

from updates.compose_editor import (
    ComposeFile,
    ComposeParseError,
    ServiceNotFoundError,
    backup_compose_file,
    restore_compose_file,
)


COMPOSE = """
services:
  web:
    image: nginx:1.25.3-alpine
    container_name: frontend
    labels:
      dockpilot.version-pin-major: "true"
      traefik.enable: "true"
  worker:
    image: example/worker:2.0.0
    labels:
      - "dockpilot.restart-after=frontend"
      - "other=1"
    depends_on:
      - web
  builder:
    build: .
"""


@pytest.fixture
def compose_path(tmp_path):
    path = tmp_path / "compose.yaml"
    path.write_text(COMPOSE)
    return str(path)


class TestLoad:

    @pytest.mark.unit
    def test_missing_file(self, tmp_path):
        with pytest.raises(ComposeParseError, match="Cannot read"):
            ComposeFile.load(str(tmp_path / "nope.yaml"))

    @pytest.mark.unit
    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("services: [unclosed")

        with pytest.raises(ComposeParseError, match="Invalid YAML"):
            ComposeFile.load(str(path))

    @pytest.mark.unit
    def test_no_services(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("version: '3'\n")

        with pytest.raises(ComposeParseError, match="No services"):
            ComposeFile.load(str(path))


class TestServiceLookup:

    @pytest.mark.unit
    def test_container_name_wins(self, compose_path):
        compose = ComposeFile.load(compose_path)

        assert compose.find_service("frontend") == "web"

    @pytest.mark.unit
    def test_service_key_fallback(self, compose_path):
        compose = ComposeFile.load(compose_path)

        assert compose.find_service("worker") == "worker"

    @pytest.mark.unit
    def test_unknown_container(self, compose_path):
        compose = ComposeFile.load(compose_path)

        with pytest.raises(ServiceNotFoundError):
            compose.find_service("database")


class TestLabels:

    @pytest.mark.unit
    def test_mapping_labels(self, compose_path):
        compose = ComposeFile.load(compose_path)

        assert compose.get_labels("web") == {
            "dockpilot.version-pin-major": "true",
            "traefik.enable": "true",
        }

    @pytest.mark.unit
    def test_list_labels(self, compose_path):
        compose = ComposeFile.load(compose_path)

        assert compose.get_labels("worker") == {"dockpilot.restart-after": "frontend", "other": "1"}

    @pytest.mark.unit
    def test_delta_keeps_mapping_form(self, compose_path):
        compose = ComposeFile.load(compose_path)
        compose.apply_label_delta(
            "web",
            {"dockpilot.version-pin-minor": "true"},
            ["dockpilot.version-pin-major"],
        )
        compose.save()

        data = yaml.safe_load(open(compose_path))
        assert data["services"]["web"]["labels"] == {
            "traefik.enable": "true",
            "dockpilot.version-pin-minor": "true",
        }

    @pytest.mark.unit
    def test_delta_keeps_list_form(self, compose_path):
        compose = ComposeFile.load(compose_path)
        compose.set_label("worker", "dockpilot.restart-after", "frontend,cache")
        compose.save()

        data = yaml.safe_load(open(compose_path))
        assert data["services"]["worker"]["labels"] == [
            "other=1",
            "dockpilot.restart-after=frontend,cache",
        ]

    @pytest.mark.unit
    def test_removing_last_label_drops_block(self, compose_path):
        compose = ComposeFile.load(compose_path)
        compose.remove_label("worker", "dockpilot.restart-after")
        compose.remove_label("worker", "other")

        assert "labels" not in compose.services["worker"]

    @pytest.mark.unit
    def test_unmanaged_labels_untouched(self, compose_path):
        compose = ComposeFile.load(compose_path)
        compose.apply_label_delta("web", {}, ["dockpilot.version-pin-major"])

        assert compose.get_labels("web") == {"traefik.enable": "true"}


class TestImage:

    @pytest.mark.unit
    def test_set_image(self, compose_path):
        compose = ComposeFile.load(compose_path)
        compose.set_image("web", "nginx:1.26.0-alpine")
        compose.save()

        assert ComposeFile.load(compose_path).get_image("web") == "nginx:1.26.0-alpine"

    @pytest.mark.unit
    def test_build_only_service(self, compose_path):
        compose = ComposeFile.load(compose_path)

        with pytest.raises(ComposeParseError, match="build-only"):
            compose.set_image("builder", "example/builder:1.0")

    @pytest.mark.unit
    def test_depends_on(self, compose_path):
        compose = ComposeFile.load(compose_path)

        assert compose.get_depends_on("worker") == ["web"]
        assert compose.get_depends_on("web") == []


class TestBackup:

    @pytest.mark.unit
    def test_backup_and_restore(self, compose_path):
        backup = backup_compose_file(compose_path)

        compose = ComposeFile.load(compose_path)
        compose.set_image("web", "nginx:9.9.9")
        compose.save()

        restore_compose_file(compose_path, backup)

        assert ComposeFile.load(compose_path).get_image("web") == "nginx:1.25.3-alpine"
        assert ".dockpilot-backup-" in backup

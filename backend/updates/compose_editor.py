"""
Docker Compose file editor.

Loads a compose file, locates the service backing a container, and edits
its labels or image in place. Labels may be declared as a mapping or as a
list of "key=value" strings; the original form is preserved on write.
"""

import logging
import os
import shutil
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


class ComposeParseError(Exception):
    """Raised when compose file cannot be parsed"""
    pass


class ServiceNotFoundError(Exception):
    """Raised when no service in the compose file backs the container"""
    pass


def _parse_label_entry(entry: str):
    if '=' in entry:
        key, value = entry.split('=', 1)
        return key.strip(), value
    return entry.strip(), ""


class ComposeFile:
    """Parsed compose file bound to its path on disk"""

    def __init__(self, path: str, data: Dict[str, Any]):
        self.path = path
        self.data = data

    @classmethod
    def load(cls, path: str) -> 'ComposeFile':
        """
        Load and validate a compose file.

        Raises:
            ComposeParseError: If the file is missing, not YAML, or has no services
        """
        try:
            with open(path, 'r', encoding='utf-8') as f:
                content = f.read()
        except OSError as e:
            raise ComposeParseError(f"Cannot read compose file {path}: {e}")

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ComposeParseError(f"Invalid YAML syntax in {path}: {e}")

        if not isinstance(data, dict):
            raise ComposeParseError("Compose file must be a YAML object")
        if not isinstance(data.get('services'), dict) or not data['services']:
            raise ComposeParseError("No services defined")

        return cls(path, data)

    @property
    def services(self) -> Dict[str, Dict[str, Any]]:
        return self.data['services']

    def find_service(self, container_name: str) -> str:
        """
        Find the service name backing a container.

        Matches an explicit container_name first, then the service key.
        """
        for service_name, service in self.services.items():
            if isinstance(service, dict) and service.get('container_name') == container_name:
                return service_name
        if container_name in self.services:
            return container_name
        raise ServiceNotFoundError(f"No service for container {container_name} in {self.path}")

    def _service(self, service_name: str) -> Dict[str, Any]:
        service = self.services.get(service_name)
        if service is None:
            raise ServiceNotFoundError(f"Service {service_name} not found in {self.path}")
        if not isinstance(service, dict):
            service = {}
            self.services[service_name] = service
        return service

    def get_labels(self, service_name: str) -> Dict[str, str]:
        labels = self._service(service_name).get('labels') or {}
        if isinstance(labels, list):
            return dict(_parse_label_entry(str(entry)) for entry in labels)
        return {str(k): "" if v is None else str(v) for k, v in labels.items()}

    def set_label(self, service_name: str, key: str, value: str):
        service = self._service(service_name)
        labels = service.get('labels')
        if isinstance(labels, list):
            entries = [e for e in labels if _parse_label_entry(str(e))[0] != key]
            entries.append(f"{key}={value}")
            service['labels'] = entries
        else:
            labels = dict(labels or {})
            labels[key] = value
            service['labels'] = labels

    def remove_label(self, service_name: str, key: str):
        service = self._service(service_name)
        labels = service.get('labels')
        if not labels:
            return
        if isinstance(labels, list):
            labels = [e for e in labels if _parse_label_entry(str(e))[0] != key]
        else:
            labels = {k: v for k, v in labels.items() if k != key}
        if labels:
            service['labels'] = labels
        else:
            # Drop the empty labels block entirely
            service.pop('labels', None)

    def apply_label_delta(self, service_name: str, to_set: Dict[str, str], to_remove: List[str]):
        for key in to_remove:
            self.remove_label(service_name, key)
        for key, value in to_set.items():
            self.set_label(service_name, key, value)

    def get_image(self, service_name: str) -> Optional[str]:
        return self._service(service_name).get('image')

    def set_image(self, service_name: str, image: str):
        service = self._service(service_name)
        if 'image' not in service:
            raise ComposeParseError(f"Service {service_name} has no image (build-only services cannot be updated)")
        service['image'] = image

    def get_depends_on(self, service_name: str) -> List[str]:
        depends_on = self._service(service_name).get('depends_on') or []
        if isinstance(depends_on, dict):
            return list(depends_on.keys())
        return [str(d) for d in depends_on]

    def save(self):
        """Write the file atomically (temp file + rename in the same directory)"""
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp_path = tempfile.mkstemp(prefix='.compose-', suffix='.yml', dir=directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                yaml.safe_dump(self.data, f, default_flow_style=False, sort_keys=False)
            if os.path.exists(self.path):
                shutil.copymode(self.path, tmp_path)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.debug(f"Saved compose file {self.path}")


def backup_compose_file(path: str) -> str:
    """Copy the compose file next to itself; returns the backup path"""
    timestamp = datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S%f')
    backup_path = f"{path}.dockpilot-backup-{timestamp}"
    shutil.copy2(path, backup_path)
    logger.info(f"Backed up compose file {path} -> {backup_path}")
    return backup_path


def restore_compose_file(path: str, backup_path: str):
    shutil.copy2(backup_path, path)
    logger.info(f"Restored compose file {path} from {backup_path}")

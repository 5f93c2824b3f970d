"""
In-process registry of tracked containers.

Holds the last ContainerRecord built for each container. Records are
immutable; every change swaps a whole record under the lock.
"""

import logging
import threading
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from updates.labels import MANAGED_LABELS, LabelConfig, managed_labels
from updates.types import ContainerRecord

logger = logging.getLogger(__name__)


class ContainerRegistry:
    """Thread-safe name -> ContainerRecord map"""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, ContainerRecord] = {}

    def replace_all(self, records: Iterable[ContainerRecord]):
        """Swap in the records of a full check cycle"""
        new_records = {record.name: record for record in records}
        with self._lock:
            self._records = new_records
        logger.debug(f"Container registry refreshed with {len(new_records)} records")

    def put(self, record: ContainerRecord):
        with self._lock:
            self._records[record.name] = record

    def get(self, name: str) -> Optional[ContainerRecord]:
        with self._lock:
            return self._records.get(name)

    def list(self) -> List[ContainerRecord]:
        with self._lock:
            return sorted(self._records.values(), key=lambda r: r.name)

    def remove(self, name: str):
        with self._lock:
            self._records.pop(name, None)

    def update_labels(self, name: str, labels: Dict[str, str], effective: bool = True) -> Optional[ContainerRecord]:
        """
        Refresh a record after a label write.

        The compose-declared label set always takes the new managed labels.
        The effective set (and the restart-after / pre-update-check fields
        derived from it) only changes once the container was recreated;
        pass effective=False for a write without restart. Unmanaged labels
        are left as they were.
        """
        with self._lock:
            record = self._records.get(name)
            if record is None:
                return None

            def merged(existing: Dict[str, str]) -> Dict[str, str]:
                result = {k: v for k, v in existing.items() if k not in MANAGED_LABELS}
                result.update(managed_labels(labels))
                return result

            if not effective:
                updated = replace(record, compose_labels=merged(record.compose_labels))
            else:
                config = LabelConfig.from_labels(labels)
                updated = replace(
                    record,
                    labels=merged(record.labels),
                    compose_labels=merged(record.compose_labels),
                    restart_after=config.restart_after,
                    pre_update_check=config.pre_update_check or "",
                )
            self._records[name] = updated
            return updated

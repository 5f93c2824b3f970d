"""
Restart dependency graph.

Edge A -> B exists when B's restart-after label names A: B must be
restarted after A is updated or restarted. The graph is never stored;
it is rebuilt from the container registry on each query, so label
changes take effect immediately.

Only direct (one-hop) dependents are ever returned. A dependent that
itself has dependents is not followed.
"""

import logging
from typing import Dict, List

from updates.container_registry import ContainerRegistry

logger = logging.getLogger(__name__)


class DependencyGraph:
    """One-hop view over restart-after labels"""

    def __init__(self, registry: ContainerRegistry):
        self.registry = registry

    def _edges(self) -> Dict[str, List[str]]:
        edges: Dict[str, List[str]] = {}
        for record in self.registry.list():
            for parent in record.restart_after:
                if parent == record.name:
                    logger.warning(f"Container {record.name} lists itself in restart-after, ignoring")
                    continue
                edges.setdefault(parent, []).append(record.name)
        return edges

    def dependents_of(self, name: str) -> List[str]:
        """
        Containers to restart after `name`.

        Returns:
            Sorted list of container names; dependents not currently tracked
            in the registry cannot appear (they carry the label themselves)
        """
        return sorted(set(self._edges().get(name, [])))

    def dependencies_of(self, name: str) -> List[str]:
        """Containers whose restart triggers a restart of `name`"""
        record = self.registry.get(name)
        if record is None:
            return []
        return [parent for parent in record.restart_after if parent != name]

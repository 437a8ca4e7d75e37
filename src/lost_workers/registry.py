"""Local Registry Reader and the orchestrator collaborator contract.

The surrounding orchestrator owns the set of configured clouds and the worker
nodes registered locally. This module only reads them.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set

import yaml

from lost_workers.errors import RegistryError
from lost_workers.labels import CONFIG_LABEL_KEY

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CloudConfig:
    """One cloud configuration: a project plus the credentials used to reach it."""

    name: str
    project_id: str
    credentials_file: Optional[str] = None
    label_key: str = CONFIG_LABEL_KEY

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CloudConfig":
        return cls(
            name=str(data["name"]),
            project_id=str(data["project_id"]),
            credentials_file=data.get("credentials_file") or None,
            label_key=str(data.get("label_key") or CONFIG_LABEL_KEY),
        )


@dataclass(frozen=True)
class LocalWorkerRef:
    """A worker node registered locally. ``node_name`` equals the VM name."""

    node_name: str
    cloud_name: str


class Orchestrator(ABC):
    """What the reconciler needs from the controller it runs inside."""

    @abstractmethod
    def clouds(self) -> List[CloudConfig]:
        ...

    @abstractmethod
    def nodes(self) -> List[LocalWorkerRef]:
        ...


def local_instance_names(orchestrator: Orchestrator, cloud: CloudConfig) -> Set[str]:
    """Names of the nodes this controller considers its own for ``cloud``."""
    return {node.node_name for node in orchestrator.nodes() if node.cloud_name == cloud.name}


class YamlOrchestrator(Orchestrator):
    """Orchestrator backed by configured clouds and a YAML node registry file.

    The registry file is re-read on every call so the provisioning side can
    rewrite it between cycles::

        nodes:
          - name: build-worker-1a2b
            cloud: gce-east

    With no path configured there are no local nodes. A configured path that
    does not exist raises ``RegistryError`` like any other unreadable registry.
    """

    def __init__(self, clouds: Sequence[CloudConfig], registry_path: Optional[str | Path]):
        self._clouds = list(clouds)
        self.registry_path = Path(registry_path) if registry_path else None

    def clouds(self) -> List[CloudConfig]:
        return list(self._clouds)

    def nodes(self) -> List[LocalWorkerRef]:
        if self.registry_path is None:
            return []
        if not self.registry_path.exists():
            raise RegistryError(f"Node registry {self.registry_path} not found")

        try:
            with self.registry_path.open("r", encoding="utf-8") as f:
                payload = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise RegistryError(f"Cannot read node registry {self.registry_path}: {e}") from e

        entries = payload.get("nodes") if isinstance(payload, dict) else None
        if entries is None:
            return []
        if not isinstance(entries, list):
            raise RegistryError(f"'nodes' in {self.registry_path} must be a list")

        refs: List[LocalWorkerRef] = []
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("name") or not entry.get("cloud"):
                raise RegistryError(f"Malformed node entry in {self.registry_path}: {entry!r}")
            refs.append(LocalWorkerRef(node_name=str(entry["name"]), cloud_name=str(entry["cloud"])))
        logger.debug(f"Read {len(refs)} node(s) from {self.registry_path}")
        return refs

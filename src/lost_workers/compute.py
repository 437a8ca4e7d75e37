"""Instance Directory Client: a thin surface over the Compute Engine instances API.

No policy lives here. Every call is a single request; nothing is retried and
nothing is silently swallowed, except ``NotFound`` on get (None) and on
terminate (already gone counts as accepted).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import requests
from google.api_core.exceptions import Conflict, GoogleAPIError, NotFound, PreconditionFailed
from google.auth.exceptions import GoogleAuthError
from google.cloud import compute_v1

from lost_workers.errors import ClientSetupError, InstanceDirectoryError, LabelFingerprintConflict
from lost_workers.labels import CONFIG_LABEL_KEY, NODE_IN_USE_LABEL_KEY, parse_freshness

logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


class InstanceStatus(str, Enum):
    """Compute Engine instance lifecycle states."""

    PROVISIONING = "PROVISIONING"
    STAGING = "STAGING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    SUSPENDING = "SUSPENDING"
    SUSPENDED = "SUSPENDED"
    REPAIRING = "REPAIRING"
    TERMINATED = "TERMINATED"


def _short_name(url_or_name: str) -> str:
    """Reduce a resource URL (or ``zones/<zone>`` key) to its last segment."""
    return (url_or_name or "").rstrip("/").split("/")[-1]


@dataclass
class RemoteInstance:
    """Transient view of a VM owned by the cloud provider."""

    name: str
    zone: str
    status: str
    labels: Dict[str, str] = field(default_factory=dict)
    label_fingerprint: str = ""

    @property
    def config_name(self) -> Optional[str]:
        return self.labels.get(CONFIG_LABEL_KEY)

    @property
    def freshness_label(self) -> Optional[str]:
        return self.labels.get(NODE_IN_USE_LABEL_KEY)

    @property
    def freshness_ms(self) -> Optional[int]:
        return parse_freshness(self.freshness_label)

    @classmethod
    def from_compute(cls, instance: compute_v1.Instance, zone: str = "") -> "RemoteInstance":
        raw_status = instance.status or ""
        try:
            status: str = InstanceStatus(raw_status)
        except ValueError:
            status = raw_status
        return cls(
            name=instance.name,
            zone=_short_name(instance.zone) or _short_name(zone),
            status=status,
            labels=dict(instance.labels),
            label_fingerprint=instance.label_fingerprint or "",
        )


class InstanceDirectoryClient:
    """Query/mutation surface over ``compute_v1.InstancesClient`` for one project."""

    def __init__(self, project_id: str, instances_client: Any):
        self.project_id = project_id
        self._instances = instances_client

    @classmethod
    def from_cloud(cls, cloud) -> "InstanceDirectoryClient":
        """Build a credentialed client from a cloud configuration.

        Uses the cloud's service-account key file when one is configured and
        application default credentials otherwise.
        """
        try:
            kwargs: Dict[str, Any] = {}
            if cloud.credentials_file:
                from google.oauth2 import service_account

                kwargs["credentials"] = service_account.Credentials.from_service_account_file(
                    cloud.credentials_file,
                    scopes=[CLOUD_PLATFORM_SCOPE],
                )
                logger.info(
                    f"[{cloud.name}] Using service account credentials from {cloud.credentials_file}"
                )
            else:
                logger.debug(f"[{cloud.name}] Using application default credentials")
            instances_client = compute_v1.InstancesClient(**kwargs)
        except (GoogleAuthError, OSError, ValueError) as e:
            raise ClientSetupError(f"Cannot build compute client for cloud {cloud.name}: {e}") from e
        return cls(cloud.project_id, instances_client)

    def list_running_by_label_key(self, key: str) -> List[RemoteInstance]:
        """All RUNNING instances, across zones, that carry label ``key`` (any value)."""
        request = compute_v1.AggregatedListInstancesRequest(
            project=self.project_id,
            filter=f"labels.{key}:* AND status={InstanceStatus.RUNNING.value}",
        )
        instances: List[RemoteInstance] = []
        try:
            for zone_key, scoped_list in self._instances.aggregated_list(request=request):
                for inst in scoped_list.instances or []:
                    instances.append(RemoteInstance.from_compute(inst, zone=zone_key))
        except (GoogleAPIError, GoogleAuthError, requests.RequestException) as e:
            raise InstanceDirectoryError(
                f"Listing instances with label {key} in {self.project_id} failed: {e}"
            ) from e
        return instances

    def get_instance(self, zone: str, name: str) -> Optional[RemoteInstance]:
        try:
            inst = self._instances.get(project=self.project_id, zone=zone, instance=name)
        except NotFound:
            return None
        except (GoogleAPIError, GoogleAuthError, requests.RequestException) as e:
            raise InstanceDirectoryError(f"Fetching instance {name} in {zone} failed: {e}") from e
        return RemoteInstance.from_compute(inst, zone=zone)

    def set_labels(self, instance: RemoteInstance, new_labels: Mapping[str, str]) -> None:
        """Merge ``new_labels`` into the instance's labels and submit them.

        Keys not in ``new_labels`` are kept as read. The instance's fingerprint
        guards the write, so a concurrent label change makes this raise
        ``LabelFingerprintConflict``. ``instance`` itself is left untouched.
        """
        merged = dict(instance.labels)
        merged.update(new_labels)
        body = compute_v1.InstancesSetLabelsRequest(
            labels=merged,
            label_fingerprint=instance.label_fingerprint,
        )
        try:
            self._instances.set_labels(
                project=self.project_id,
                zone=instance.zone,
                instance=instance.name,
                instances_set_labels_request_resource=body,
            )
        except (PreconditionFailed, Conflict) as e:
            raise LabelFingerprintConflict(
                f"Labels of {instance.name} changed since read (fingerprint {instance.label_fingerprint})"
            ) from e
        except (GoogleAPIError, GoogleAuthError, requests.RequestException) as e:
            raise InstanceDirectoryError(f"Setting labels on {instance.name} failed: {e}") from e

    def terminate(self, zone: str, name: str) -> None:
        """Request deletion of an instance without waiting for the operation."""
        try:
            self._instances.delete(project=self.project_id, zone=zone, instance=name)
        except NotFound:
            logger.info(f"Instance {name} in {zone} already gone")
        except (GoogleAPIError, GoogleAuthError, requests.RequestException) as e:
            raise InstanceDirectoryError(f"Terminating instance {name} in {zone} failed: {e}") from e

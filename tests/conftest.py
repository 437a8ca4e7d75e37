"""Shared fakes for the Compute Engine instances API. No network is used."""

import re
import sys
from pathlib import Path

import pytest
import requests
from google.api_core.exceptions import NotFound, PreconditionFailed, ServiceUnavailable
from google.cloud import compute_v1

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from lost_workers.compute import InstanceDirectoryClient
from lost_workers.labels import CONFIG_LABEL_KEY, NODE_IN_USE_LABEL_KEY, format_freshness

PROJECT_ID = "test-project"
ZONE = "us-central1-a"

_LABEL_FILTER_RE = re.compile(r"labels\.([a-z0-9_-]+):\*")
_STATUS_FILTER_RE = re.compile(r"status=([A-Z]+)")


class FakeInstancesClient:
    """In-memory stand-in for ``compute_v1.InstancesClient``.

    Label writes are guarded by a fingerprint the way Compute Engine does it:
    every successful write bumps the fingerprint and a write carrying an old
    one is rejected with 412.

    Instance names in ``transport_errors`` fail the way the REST transport does
    when the connection drops: with a raw ``requests`` exception, not an API error.
    """

    def __init__(self):
        self._instances = {}
        self.list_calls = 0
        self.get_calls = []
        self.set_labels_calls = []
        self.delete_calls = []
        self.fail_list = None
        self.fail_set_labels = set()
        self.fail_delete = set()
        self.transport_errors = set()

    def add(self, name, zone=ZONE, status="RUNNING", labels=None):
        self._instances[name] = {
            "name": name,
            "zone": zone,
            "status": status,
            "labels": dict(labels or {}),
            "fingerprint": 1,
        }

    def labels_of(self, name):
        return dict(self._instances[name]["labels"])

    def status_of(self, name):
        return self._instances[name]["status"]

    def _raise_transport(self, instance):
        if instance in self.transport_errors:
            raise requests.exceptions.ConnectionError(f"connection reset talking about {instance}")

    def _to_compute(self, record):
        return compute_v1.Instance(
            name=record["name"],
            zone=f"https://www.googleapis.com/compute/v1/projects/{PROJECT_ID}/zones/{record['zone']}",
            status=record["status"],
            labels=record["labels"],
            label_fingerprint=f"fp-{record['fingerprint']}",
        )

    def aggregated_list(self, request):
        self.list_calls += 1
        if self.fail_list is not None:
            raise self.fail_list
        key = _LABEL_FILTER_RE.search(request.filter).group(1)
        status = _STATUS_FILTER_RE.search(request.filter).group(1)
        by_zone = {}
        for record in self._instances.values():
            if key in record["labels"] and record["status"] == status:
                by_zone.setdefault(record["zone"], []).append(self._to_compute(record))
        return [
            (f"zones/{zone}", compute_v1.InstancesScopedList(instances=instances))
            for zone, instances in by_zone.items()
        ]

    def get(self, project, zone, instance):
        self.get_calls.append((zone, instance))
        self._raise_transport(instance)
        record = self._instances.get(instance)
        if record is None or record["zone"] != zone:
            raise NotFound(f"instance {instance} not found")
        return self._to_compute(record)

    def set_labels(self, project, zone, instance, instances_set_labels_request_resource):
        body = instances_set_labels_request_resource
        self.set_labels_calls.append((zone, instance, dict(body.labels)))
        self._raise_transport(instance)
        if instance in self.fail_set_labels:
            raise ServiceUnavailable(f"backend unavailable for {instance}")
        record = self._instances.get(instance)
        if record is None:
            raise NotFound(f"instance {instance} not found")
        if body.label_fingerprint != f"fp-{record['fingerprint']}":
            raise PreconditionFailed("Labels fingerprint either invalid or resource labels have changed")
        record["labels"] = dict(body.labels)
        record["fingerprint"] += 1
        return object()

    def delete(self, project, zone, instance):
        self.delete_calls.append((zone, instance))
        self._raise_transport(instance)
        if instance in self.fail_delete:
            raise ServiceUnavailable(f"backend unavailable for {instance}")
        record = self._instances.get(instance)
        if record is None:
            raise NotFound(f"instance {instance} not found")
        record["status"] = "STOPPING"
        return object()


def managed_labels(stamped_ms=None, **extra):
    labels = {CONFIG_LABEL_KEY: "linux-builder"}
    if stamped_ms is not None:
        labels[NODE_IN_USE_LABEL_KEY] = format_freshness(stamped_ms)
    labels.update(extra)
    return labels


@pytest.fixture
def fake_compute():
    return FakeInstancesClient()


@pytest.fixture
def directory(fake_compute):
    return InstanceDirectoryClient(PROJECT_ID, fake_compute)

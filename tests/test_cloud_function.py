"""Tests for gcp/cloud_reconciler/main.py (Cloud Function entry points)."""

import json
import sys
from pathlib import Path

import pytest

from conftest import PROJECT_ID, FakeInstancesClient, managed_labels
from lost_workers.compute import InstanceDirectoryClient
from lost_workers.config import ReconcilerSettings
from lost_workers.registry import CloudConfig, YamlOrchestrator
from lost_workers.scheduler import ReconciliationScheduler

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT / "gcp" / "cloud_reconciler"))

import main as reconciler

NOW = 1_760_000_000_000


@pytest.fixture
def fake_api():
    return FakeInstancesClient()


@pytest.fixture
def installed_scheduler(tmp_path, fake_api, monkeypatch):
    registry = tmp_path / "nodes.yaml"
    registry.write_text("nodes:\n  - name: mine\n    cloud: builders\n")
    cloud = CloudConfig(name="builders", project_id=PROJECT_ID)
    settings = ReconcilerSettings(recurrence_period_sec=60, clouds=[cloud], registry_path=str(registry))
    scheduler = ReconciliationScheduler(
        YamlOrchestrator(settings.clouds, settings.registry_path),
        settings,
        client_factory=lambda c: InstanceDirectoryClient(c.project_id, fake_api),
        clock=lambda: NOW,
    )
    monkeypatch.setattr(reconciler, "_scheduler", scheduler)
    return scheduler


class TestReconcileAll:
    def test_actions_per_cloud(self, fake_api, installed_scheduler):
        fake_api.add("mine", labels=managed_labels(stamped_ms=0))
        fake_api.add("lost", labels=managed_labels(stamped_ms=0))
        fake_api.add("booting", labels=managed_labels())

        actions = reconciler.reconcile_all()

        assert actions["builders"]["orphans"] == ["lost"]
        assert actions["builders"]["terminated"] == ["lost"]
        assert actions["builders"]["heartbeats"]["updated"] == 1
        assert fake_api.status_of("mine") == "RUNNING"
        assert fake_api.status_of("booting") == "RUNNING"

    def test_http_entry_point(self, fake_api, installed_scheduler):
        body, status = reconciler.reconcile_http(request=None)
        payload = json.loads(body)
        assert status == 200
        assert payload["status"] == "ok"
        assert payload["actions"]["builders"]["error"] is None

    def test_event_entry_point(self, fake_api, installed_scheduler):
        fake_api.add("lost", labels=managed_labels(stamped_ms=0))
        reconciler.reconcile_event(cloud_event=None)
        assert fake_api.delete_calls == [("us-central1-a", "lost")]


class TestGetScheduler:
    def test_built_from_env(self, monkeypatch):
        monkeypatch.setattr(reconciler, "_scheduler", None)
        monkeypatch.delenv("LOST_WORKERS_CONFIG", raising=False)
        monkeypatch.setenv("PROJECT", "env-project")
        monkeypatch.setenv("LOST_WORKERS_CLOUD_NAME", "env-cloud")
        monkeypatch.setenv("LOST_WORKERS_DRY_RUN", "true")

        scheduler = reconciler._get_scheduler()

        assert scheduler.settings.dry_run is True
        assert [c.name for c in scheduler.settings.clouds] == ["env-cloud"]
        assert reconciler._get_scheduler() is scheduler

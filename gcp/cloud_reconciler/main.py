"""Cloud Reconciler — terminates lost build-worker VMs.

Deployed as a Cloud Function (gen2) triggered by Cloud Scheduler, one pass per
invocation. The schedule should match LOST_WORKERS_RECURRENCE_PERIOD_SEC so the
orphan threshold (period x multiplier) reflects how often heartbeats land.

Configuration comes from LOST_WORKERS_CONFIG (YAML) or from the environment:
  PROJECT, LOST_WORKERS_CLOUD_NAME, LOST_WORKERS_REGISTRY,
  LOST_WORKERS_DRY_RUN, LOST_WORKERS_WEBHOOK_URL.
"""

import json
import logging

import functions_framework

from lost_workers.config import ReconcilerSettings
from lost_workers.registry import YamlOrchestrator
from lost_workers.scheduler import ReconciliationScheduler
from lost_workers.version import APP_VERSION

logger = logging.getLogger("reconciler")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

_scheduler = None


def _get_scheduler():
    global _scheduler
    if _scheduler is None:
        settings = ReconcilerSettings.from_env()
        logging.getLogger().setLevel(settings.log_level)
        settings.log_config()
        orchestrator = YamlOrchestrator(settings.clouds, settings.registry_path)
        _scheduler = ReconciliationScheduler(orchestrator, settings)
    return _scheduler


def reconcile_all():
    """One reconciliation pass over every configured cloud."""
    scheduler = _get_scheduler()
    logger.info(
        f"Reconciler {APP_VERSION} starting (DRY_RUN={scheduler.settings.dry_run}, "
        f"clouds={[c.name for c in scheduler.settings.clouds]})"
    )

    summaries = scheduler.run_once()

    actions = {name: summary.to_dict() for name, summary in summaries.items()}
    logger.info(f"Reconciliation complete. Clouds: {len(actions)}")
    for name, summary in summaries.items():
        if summary.error:
            logger.info(f"  {name}: error={summary.error}")
        else:
            logger.info(
                f"  {name}: orphans={summary.orphans} terminated={summary.terminated} "
                f"would_terminate={summary.would_terminate}"
            )
    return actions


@functions_framework.http
def reconcile_http(request):
    """HTTP entry point for Cloud Functions."""
    actions = reconcile_all()
    return json.dumps({"status": "ok", "actions": actions}), 200


@functions_framework.cloud_event
def reconcile_event(cloud_event):
    """Cloud Event entry point (for Pub/Sub trigger from Cloud Scheduler)."""
    reconcile_all()


if __name__ == "__main__":
    reconcile_all()

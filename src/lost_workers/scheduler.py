"""Periodic driver: one reconciliation cycle per configured cloud per tick."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional

from lost_workers.compute import InstanceDirectoryClient
from lost_workers.config import ReconcilerSettings
from lost_workers.errors import ClientSetupError, RegistryError
from lost_workers.notify import notify_webhook
from lost_workers.reconciler import CycleSummary, now_millis, reconcile_cloud
from lost_workers.registry import CloudConfig, Orchestrator, local_instance_names

logger = logging.getLogger(__name__)

ClientFactory = Callable[[CloudConfig], InstanceDirectoryClient]


class ReconciliationScheduler:
    """Runs reconciliation cycles for every cloud the orchestrator knows about.

    Clouds are independent: a failure in one never stops the others, and the
    worst a failed cycle does is wait for the next tick. A cycle for a cloud is
    never started while the previous one for that same cloud is still running.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        settings: ReconcilerSettings,
        client_factory: ClientFactory = InstanceDirectoryClient.from_cloud,
        clock: Callable[[], int] = now_millis,
    ):
        self.orchestrator = orchestrator
        self.settings = settings
        self.client_factory = client_factory
        self.clock = clock
        self.tick_count = 0
        self._cloud_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, cloud_name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._cloud_locks.get(cloud_name)
            if lock is None:
                lock = self._cloud_locks[cloud_name] = threading.Lock()
            return lock

    def run_cloud(self, cloud: CloudConfig) -> CycleSummary:
        lock = self._lock_for(cloud.name)
        if not lock.acquire(blocking=False):
            logger.warning(f"[{cloud.name}] Previous cycle still running, skipping this tick")
            return CycleSummary(cloud=cloud.name, skipped=True, dry_run=self.settings.dry_run)
        try:
            return self._run_cloud_locked(cloud)
        finally:
            lock.release()

    def _run_cloud_locked(self, cloud: CloudConfig) -> CycleSummary:
        try:
            client = self.client_factory(cloud)
        except ClientSetupError as e:
            logger.warning(f"[{cloud.name}] No usable compute client, skipping cycle: {e}")
            return CycleSummary(cloud=cloud.name, error=str(e), dry_run=self.settings.dry_run)

        try:
            local_names = local_instance_names(self.orchestrator, cloud)
        except RegistryError as e:
            logger.warning(f"[{cloud.name}] Cannot read local nodes, skipping cycle: {e}")
            return CycleSummary(cloud=cloud.name, error=str(e), dry_run=self.settings.dry_run)

        return reconcile_cloud(
            cloud,
            client,
            local_names,
            self.settings.threshold_ms,
            now_ms=self.clock(),
            dry_run=self.settings.dry_run,
        )

    def run_once(self) -> Dict[str, CycleSummary]:
        """Run one tick: a cycle for each cloud, one after the other."""
        self.tick_count += 1
        logger.debug(f"Starting clean lost nodes tick #{self.tick_count}")

        summaries: Dict[str, CycleSummary] = {}
        for cloud in self.orchestrator.clouds():
            try:
                summaries[cloud.name] = self.run_cloud(cloud)
            except Exception as e:
                logger.error(f"[{cloud.name}] Error reconciling cloud: {e}", exc_info=True)
                summaries[cloud.name] = CycleSummary(
                    cloud=cloud.name, error=str(e), dry_run=self.settings.dry_run
                )

        self._notify(summaries)
        return summaries

    def _notify(self, summaries: Dict[str, CycleSummary]) -> None:
        lines = []
        for name, s in summaries.items():
            if s.terminated:
                lines.append(f"[{name}] terminated {len(s.terminated)} lost instance(s): {', '.join(s.terminated)}")
            if s.would_terminate:
                lines.append(
                    f"[{name}] would terminate {len(s.would_terminate)} lost instance(s): "
                    f"{', '.join(s.would_terminate)}"
                )
        if lines:
            notify_webhook(self.settings.notify_webhook_url, "\n".join(lines), dry_run=self.settings.dry_run)

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """Tick every recurrence period (measured from tick start) until stopped."""
        stop_event = stop_event or threading.Event()
        period = self.settings.recurrence_period_sec
        logger.info(f"Reconciler loop started (period={period:.0f}s)")
        while not stop_event.is_set():
            started = time.monotonic()
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Reconciler tick failed: {e}", exc_info=True)
            elapsed = time.monotonic() - started
            stop_event.wait(max(0.0, period - elapsed))
        logger.info("Reconciler loop stopped")

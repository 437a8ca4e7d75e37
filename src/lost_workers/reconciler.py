"""Lost-instance reconciliation for one cloud.

One cycle: list remote RUNNING managed instances (R) -> take the local node
names (L) -> stamp the freshness label on L ∩ R -> classify the original R ->
terminate the orphans.

No lock or leader is involved. Controllers sharing a project only see each
other through the freshness label, so an instance counts as orphaned only when
(a) this controller does not have it registered, (b) some controller stamped
it at least once, and (c) that stamp is older than the threshold.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from lost_workers.compute import InstanceDirectoryClient, RemoteInstance
from lost_workers.errors import InstanceDirectoryError, LabelFingerprintConflict
from lost_workers.labels import NODE_IN_USE_LABEL_KEY, format_freshness
from lost_workers.registry import CloudConfig

logger = logging.getLogger(__name__)


def now_millis() -> int:
    return int(time.time() * 1000)


@dataclass
class HeartbeatResult:
    updated: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: bool = False


@dataclass
class TerminationResult:
    terminated: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    would_terminate: List[str] = field(default_factory=list)


@dataclass
class CycleSummary:
    """Outcome of one reconciliation cycle for one cloud."""
    cloud: str
    remote_count: int = 0
    local_count: int = 0
    heartbeats_updated: int = 0
    heartbeats_failed: int = 0
    orphans: List[str] = field(default_factory=list)
    terminated: List[str] = field(default_factory=list)
    termination_failed: List[str] = field(default_factory=list)
    would_terminate: List[str] = field(default_factory=list)
    dry_run: bool = False
    skipped: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cloud": self.cloud,
            "remote_count": self.remote_count,
            "local_count": self.local_count,
            "heartbeats": {
                "updated": self.heartbeats_updated,
                "failed": self.heartbeats_failed,
            },
            "orphans": list(self.orphans),
            "terminated": list(self.terminated),
            "termination_failed": list(self.termination_failed),
            "would_terminate": list(self.would_terminate),
            "dry_run": self.dry_run,
            "skipped": self.skipped,
            "error": self.error,
        }


# =========================================================================
# Heartbeat
# =========================================================================


def update_heartbeats(
    client: InstanceDirectoryClient,
    remote: List[RemoteInstance],
    local: Set[str],
    now_ms: int,
) -> HeartbeatResult:
    """Stamp the freshness label on every local instance present in ``remote``.

    The label is merged onto the instance objects already in the snapshot, so
    each stamp costs exactly one API call. Local nodes missing from the snapshot
    have nothing remote to stamp.
    """
    result = HeartbeatResult()
    if not local or not remote:
        result.skipped = True
        logger.debug(f"Heartbeat skipped (local={len(local)}, remote={len(remote)})")
        return result

    stamp = {NODE_IN_USE_LABEL_KEY: format_freshness(now_ms)}
    for instance in remote:
        if instance.name not in local:
            continue
        try:
            client.set_labels(instance, stamp)
        except LabelFingerprintConflict as e:
            logger.warning(f"Label fingerprint conflict on {instance.name}, next cycle will retry: {e}")
            result.failed.append(instance.name)
            continue
        except InstanceDirectoryError as e:
            logger.warning(f"Error updating label for instance {instance.name}: {e}")
            result.failed.append(instance.name)
            continue
        logger.debug(f"Updated label for instance {instance.name}")
        result.updated.append(instance.name)
    return result


# =========================================================================
# Orphan detection
# =========================================================================


def is_orphaned(instance: RemoteInstance, local: Set[str], now_ms: int, threshold_ms: int) -> bool:
    """Decide whether ``instance`` is lost.

    Membership in ``local`` wins over whatever the label says, and the
    instance is never re-read: its label may predate this cycle's stamp.
    """
    label_value = instance.freshness_label
    if instance.name in local:
        orphaned = False
        reason = "registered locally"
    else:
        stamped_at = instance.freshness_ms
        if stamped_at is None:
            orphaned = False
            reason = "never stamped"
        else:
            age_ms = now_ms - stamped_at
            orphaned = age_ms >= threshold_ms
            reason = f"age {age_ms}ms vs threshold {threshold_ms}ms"
    logger.debug(
        f"Instance {instance.name} {NODE_IN_USE_LABEL_KEY}={label_value} orphaned={orphaned} ({reason})"
    )
    return orphaned


def find_orphans(
    remote: Iterable[RemoteInstance],
    local: Set[str],
    now_ms: int,
    threshold_ms: int,
) -> List[RemoteInstance]:
    return [r for r in remote if is_orphaned(r, local, now_ms, threshold_ms)]


# =========================================================================
# Termination
# =========================================================================


def terminate_orphans(
    client: InstanceDirectoryClient,
    orphans: Iterable[RemoteInstance],
    dry_run: bool = False,
) -> TerminationResult:
    """Request termination of each orphan. A failure leaves it for the next cycle.

    In dry-run mode nothing is deleted and orphans land in ``would_terminate``.
    """
    result = TerminationResult()
    for orphan in orphans:
        if dry_run:
            logger.info(f"[DRY-RUN] Would terminate remote instance {orphan.name} ({orphan.zone})")
            result.would_terminate.append(orphan.name)
            continue
        logger.info(f"Remote instance {orphan.name} not found locally, removing it")
        try:
            client.terminate(orphan.zone, orphan.name)
        except InstanceDirectoryError as e:
            logger.warning(f"Error terminating remote instance {orphan.name}: {e}")
            result.failed.append(orphan.name)
            continue
        result.terminated.append(orphan.name)
    return result


# =========================================================================
# Cycle
# =========================================================================


def reconcile_cloud(
    cloud: CloudConfig,
    client: InstanceDirectoryClient,
    local_names: Set[str],
    threshold_ms: int,
    now_ms: Optional[int] = None,
    dry_run: bool = False,
) -> CycleSummary:
    """Run one full cycle for ``cloud`` against an already-built client."""
    summary = CycleSummary(cloud=cloud.name, local_count=len(local_names), dry_run=dry_run)
    logger.debug(f"Cleaning cloud {cloud.name}")

    try:
        remote = client.list_running_by_label_key(cloud.label_key)
    except InstanceDirectoryError as e:
        # No data this cycle is not the same as no instances.
        logger.warning(f"[{cloud.name}] Error finding remote instances: {e}")
        summary.error = str(e)
        return summary
    summary.remote_count = len(remote)

    now_ms = now_millis() if now_ms is None else now_ms

    heartbeat = update_heartbeats(client, remote, local_names, now_ms)
    summary.heartbeats_updated = len(heartbeat.updated)
    summary.heartbeats_failed = len(heartbeat.failed)

    orphans = find_orphans(remote, local_names, now_ms, threshold_ms)
    summary.orphans = [o.name for o in orphans]

    termination = terminate_orphans(client, orphans, dry_run=dry_run)
    summary.terminated = termination.terminated
    summary.termination_failed = termination.failed
    summary.would_terminate = termination.would_terminate

    logger.info(
        f"[{cloud.name}] Cycle done: remote={summary.remote_count} local={summary.local_count} "
        f"heartbeats={summary.heartbeats_updated}/{summary.heartbeats_updated + summary.heartbeats_failed} "
        f"orphans={len(summary.orphans)} terminated={len(summary.terminated)} "
        f"would_terminate={len(summary.would_terminate)}"
    )
    return summary

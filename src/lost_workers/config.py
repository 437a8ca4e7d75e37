"""
Reconciler configuration.

Values come from an optional YAML file, then environment variables override
them. Without a YAML file a single cloud is described by PROJECT,
LOST_WORKERS_CLOUD_NAME and GOOGLE_APPLICATION_CREDENTIALS.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from lost_workers.errors import ConfigError
from lost_workers.labels import (
    DEFAULT_RECURRENCE_PERIOD_SEC,
    ORPHAN_MULTIPLIER,
    is_valid_label_key,
    orphan_threshold_ms,
)
from lost_workers.registry import CloudConfig
from lost_workers.utils import env_flag, load_yaml

logger = logging.getLogger(__name__)


@dataclass
class ReconcilerSettings:
    """Process-wide reconciler settings."""

    recurrence_period_sec: float = DEFAULT_RECURRENCE_PERIOD_SEC
    orphan_multiplier: int = ORPHAN_MULTIPLIER
    dry_run: bool = False
    registry_path: Optional[str] = None
    notify_webhook_url: str = ""
    log_level: str = "INFO"
    clouds: List[CloudConfig] = field(default_factory=list)

    @property
    def threshold_ms(self) -> int:
        return orphan_threshold_ms(self.recurrence_period_sec, self.orphan_multiplier)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], env: Optional[Mapping[str, str]] = None) -> "ReconcilerSettings":
        env = os.environ if env is None else env
        try:
            period = float(env.get("LOST_WORKERS_RECURRENCE_PERIOD_SEC")
                           or data.get("recurrence_period_sec", DEFAULT_RECURRENCE_PERIOD_SEC))
            multiplier = int(env.get("LOST_WORKERS_ORPHAN_MULTIPLIER")
                             or data.get("orphan_multiplier", ORPHAN_MULTIPLIER))
            clouds = [CloudConfig.from_dict(c) for c in data.get("clouds") or []]
            # bool or quoted string
            file_dry_run = data.get("dry_run")
            dry_run = env_flag(None if file_dry_run is None else str(file_dry_run))
        except (TypeError, ValueError, KeyError) as e:
            raise ConfigError(f"Invalid reconciler config: {e}") from e

        settings = cls(
            recurrence_period_sec=period,
            orphan_multiplier=multiplier,
            dry_run=env_flag(env.get("LOST_WORKERS_DRY_RUN"), dry_run),
            registry_path=env.get("LOST_WORKERS_REGISTRY") or data.get("registry_path"),
            notify_webhook_url=env.get("LOST_WORKERS_WEBHOOK_URL") or data.get("notify_webhook_url") or "",
            log_level=str(env.get("LOST_WORKERS_LOG_LEVEL") or data.get("log_level") or "INFO").upper(),
            clouds=clouds,
        )

        if not settings.clouds and env.get("PROJECT"):
            settings.clouds = [
                CloudConfig(
                    name=env.get("LOST_WORKERS_CLOUD_NAME") or env["PROJECT"],
                    project_id=env["PROJECT"],
                    credentials_file=env.get("GOOGLE_APPLICATION_CREDENTIALS") or None,
                )
            ]

        settings.validate()
        return settings

    @classmethod
    def from_yaml(cls, path: str | Path, env: Optional[Mapping[str, str]] = None) -> "ReconcilerSettings":
        try:
            data = load_yaml(path)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read config {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config {path} must be a mapping")
        return cls.from_dict(data, env=env)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ReconcilerSettings":
        """Load from LOST_WORKERS_CONFIG when set, else from environment alone."""
        env = os.environ if env is None else env
        path = env.get("LOST_WORKERS_CONFIG")
        if path:
            return cls.from_yaml(path, env=env)
        return cls.from_dict({}, env=env)

    def validate(self) -> None:
        if self.recurrence_period_sec <= 0:
            raise ConfigError(f"recurrence_period_sec must be positive, got {self.recurrence_period_sec}")
        if self.orphan_multiplier < 1:
            raise ConfigError(f"orphan_multiplier must be >= 1, got {self.orphan_multiplier}")
        names = [c.name for c in self.clouds]
        if len(names) != len(set(names)):
            raise ConfigError(f"Duplicate cloud names: {names}")
        for cloud in self.clouds:
            if not cloud.project_id:
                raise ConfigError(f"Cloud {cloud.name} has no project_id")
            if not is_valid_label_key(cloud.label_key):
                raise ConfigError(f"Cloud {cloud.name} has invalid label_key {cloud.label_key!r}")

    def log_config(self) -> None:
        """Log effective settings at startup."""
        logger.info("RECONCILER CONFIG:")
        logger.info(f"   Period: {self.recurrence_period_sec:.0f}s, multiplier: {self.orphan_multiplier}, "
                    f"threshold: {self.threshold_ms / 1000:.0f}s")
        logger.info(f"   Dry run: {self.dry_run}")
        logger.info(f"   Registry: {self.registry_path or 'none'}")
        logger.info(f"   Webhook: {'SET' if self.notify_webhook_url else 'MISSING'}")
        for cloud in self.clouds:
            logger.info(f"   Cloud {cloud.name}: project={cloud.project_id}, label_key={cloud.label_key}, "
                        f"credentials={'file' if cloud.credentials_file else 'default'}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recurrence_period_sec": self.recurrence_period_sec,
            "orphan_multiplier": self.orphan_multiplier,
            "dry_run": self.dry_run,
            "registry_path": self.registry_path,
            "clouds": [c.name for c in self.clouds],
        }

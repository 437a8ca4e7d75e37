"""Label protocol shared by every controller provisioning into a project.

Two labels matter:

* ``CONFIG_LABEL_KEY`` is written by the provisioning path and marks a VM as a
  managed worker. Only its existence is checked.
* ``NODE_IN_USE_LABEL_KEY`` is the freshness label. A controller stamps it on
  every instance it still has registered locally, once per cycle. Its value is
  the stamp time as zero-padded UTC epoch milliseconds, so values are
  fixed-width, sort lexically in time order and only contain digits.
"""

from __future__ import annotations

import re

CONFIG_LABEL_KEY = "cloud_worker_config"
NODE_IN_USE_LABEL_KEY = "cloud_worker_in_use"

DEFAULT_RECURRENCE_PERIOD_SEC = 3600
ORPHAN_MULTIPLIER = 3

FRESHNESS_WIDTH = 13

_LABEL_KEY_RE = re.compile(r"^[a-z][a-z0-9_-]{0,62}$")


def format_freshness(epoch_ms: int) -> str:
    if epoch_ms < 0:
        raise ValueError(f"Freshness timestamp must be non-negative, got {epoch_ms}")
    value = str(int(epoch_ms)).zfill(FRESHNESS_WIDTH)
    if len(value) > FRESHNESS_WIDTH:
        raise ValueError(f"Freshness timestamp out of range: {epoch_ms}")
    return value


def parse_freshness(value: str | None) -> int | None:
    """Parse a freshness label value. Malformed or missing values give None."""
    if not value:
        return None
    if len(value) > FRESHNESS_WIDTH or not (value.isascii() and value.isdigit()):
        return None
    return int(value)


def orphan_threshold_ms(recurrence_period_sec: float, multiplier: int = ORPHAN_MULTIPLIER) -> int:
    return int(recurrence_period_sec * 1000) * multiplier


def is_valid_label_key(key: str) -> bool:
    return bool(_LABEL_KEY_RE.match(key or ""))

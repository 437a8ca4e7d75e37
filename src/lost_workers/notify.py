from __future__ import annotations

import logging

import requests

logger = logging.getLogger(__name__)


def notify_webhook(url: str, msg: str, dry_run: bool = False) -> None:
    """Post a message to a Discord-style webhook. Never raises."""
    if not url:
        return
    prefix = "[DRY-RUN] " if dry_run else ""
    payload = {"content": f"{prefix}{msg}"}
    try:
        response = requests.post(url, json=payload, timeout=5)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.warning(f"Webhook notify failed: {e}")

"""Exception types raised by the reconciler.

Google API errors are translated into these at the client boundary so callers
never need to import ``google.api_core``.
"""

from __future__ import annotations


class ReconcilerError(Exception):
    """Base class for all reconciler errors."""


class ConfigError(ReconcilerError):
    """Invalid or unreadable configuration."""


class RegistryError(ReconcilerError):
    """The local node registry could not be read."""


class ClientSetupError(ReconcilerError):
    """A Compute Engine client could not be constructed for a cloud."""


class InstanceDirectoryError(ReconcilerError):
    """A list/get/set-labels/terminate call against the instance API failed."""


class LabelFingerprintConflict(InstanceDirectoryError):
    """Labels changed since the instance was read (stale label fingerprint).

    Retryable, but never within the same cycle: the next heartbeat supersedes it.
    """

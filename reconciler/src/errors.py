from __future__ import annotations


class ReconcilerError(RuntimeError):
    """Base class for errors raised by the reconciliation engine."""


class ConfigError(ReconcilerError, ValueError):
    """Raised when the controller configuration is invalid."""


class KeyComputationError(ReconcilerError):
    """An object lacks the identity metadata needed to build its key."""


class TombstoneDecodeError(ReconcilerError):
    """A delete notification whose identity cannot be recovered."""


class CacheLookupError(ReconcilerError):
    """Reading the local cache failed; the item should be retried."""


class ReconcileActionError(ReconcilerError):
    """Retryable failure reported by a reconcile action."""


class CacheSyncAbort(ReconcilerError):
    """Stop was requested before the initial cache sync completed."""

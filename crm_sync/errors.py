"""Exception types raised by the sync layer and its adapters."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for sync-layer failures."""


class TransportUnavailableError(SyncError):
    """The realtime client could not be constructed or is not configured."""


class SubscriptionError(SyncError):
    """A channel was opened but the subscribe handshake failed."""


class AuthError(SyncError):
    """Sign-in, session refresh or session restore was rejected."""


class StorageError(SyncError):
    """A storage adapter failed on transport or validation."""

"""Exceptions for unexpected sync failures.

Expected failures (a remote call that did not succeed, a busy sync lock,
no connectivity) are reported through sentinel return values and
:class:`~vaultsync.models.SyncReport`, not through these types.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for vaultsync errors."""


class CredentialError(SyncError):
    """Raised when no refresh token can be found for the remote store."""

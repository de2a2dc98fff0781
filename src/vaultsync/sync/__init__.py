"""Sync engine: Operation Log, Remote-ID Index, batching and reconcilers."""

from vaultsync.sync.context import SyncContext
from vaultsync.sync.index import RemoteIdIndex
from vaultsync.sync.oplog import LocalEvent, OperationLog, next_state
from vaultsync.sync.pull import PullReconciler
from vaultsync.sync.push import PushDecision, PushReconciler

__all__ = [
    "LocalEvent",
    "OperationLog",
    "PullReconciler",
    "PushDecision",
    "PushReconciler",
    "RemoteIdIndex",
    "SyncContext",
    "next_state",
]

"""
harvest_sync -- offline-first synchronization of simulation mutations.

Every local mutation becomes a SyncAction in a SyncQueue; a SyncWorker
delivers the queue through a Transport in the background; the server side
replays actions deterministically and ConflictResolver settles fields both
sides changed.  Imports harvest_kernel only.
"""

from harvest_sync.actions import (
    DEFAULT_PRIORITY,
    Ack,
    SyncAction,
    SyncKind,
    SyncPriority,
    SyncStatus,
    SyncStatusReport,
    action_from_dict,
    action_to_dict,
    new_action,
)
from harvest_sync.backoff import RetryPolicy
from harvest_sync.conflicts import (
    ConflictAuditLog,
    ConflictRecord,
    ConflictResolver,
    FieldClass,
    Resolution,
    Winner,
    classify,
)
from harvest_sync.queue import DrainReport, SyncQueue, Transport
from harvest_sync.replay import (
    EngineResolver,
    ReplayEngine,
    ServerReplica,
    config_from_request,
    config_to_request,
)
from harvest_sync.transport import InMemoryServerTransport, ServerView
from harvest_sync.worker import SyncWorker

__all__ = [
    "DEFAULT_PRIORITY",
    "Ack",
    "ConflictAuditLog",
    "ConflictRecord",
    "ConflictResolver",
    "DrainReport",
    "EngineResolver",
    "FieldClass",
    "InMemoryServerTransport",
    "ReplayEngine",
    "Resolution",
    "RetryPolicy",
    "ServerReplica",
    "ServerView",
    "SyncAction",
    "SyncKind",
    "SyncPriority",
    "SyncQueue",
    "SyncStatus",
    "SyncStatusReport",
    "SyncWorker",
    "Transport",
    "Winner",
    "action_from_dict",
    "action_to_dict",
    "classify",
    "config_from_request",
    "config_to_request",
    "new_action",
]

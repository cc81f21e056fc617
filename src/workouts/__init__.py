"""Workout record sync across a companion (watch) and a primary (phone) device.

Core modules:
    local_store — on-device record table, last-writer-wins merge
    events      — generation-numbered data-changed notifications
    archiver    — scratch audio notes → durable namespace, never overwriting
    namespace   — FileNamespace protocol and the directory backend
    link        — best-effort companion ↔ primary relay
    bridge      — push/pull against the remote durable store
    cursor      — persistent pull watermark
    coordinator — the single entry point for the UI layer
    container   — builds and runs everything from Settings (import directly)
"""

from src.workouts.archiver import ArchivedArtifact, ArtifactArchiver
from src.workouts.bridge import RemoteChange, RemoteSyncBridge
from src.workouts.coordinator import SyncCoordinator, SyncReport, SyncStatus
from src.workouts.cursor import SyncCursor
from src.workouts.errors import ErrorKind, SyncError
from src.workouts.events import ChangeBus, DataChanged
from src.workouts.link import LinkChannel, SendOutcome
from src.workouts.local_store import LocalStore, MergeOutcome

__all__ = [
    "ArchivedArtifact",
    "ArtifactArchiver",
    "ChangeBus",
    "DataChanged",
    "ErrorKind",
    "LinkChannel",
    "LocalStore",
    "MergeOutcome",
    "RemoteChange",
    "RemoteSyncBridge",
    "SendOutcome",
    "SyncCoordinator",
    "SyncCursor",
    "SyncError",
    "SyncReport",
    "SyncStatus",
]

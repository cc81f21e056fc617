"""Explicit construction and lifecycle of the sync services.

Nothing here is a module-level singleton: ``ServiceContainer.build`` creates
every component from ``Settings`` and passes them to each other by
reference. The FastAPI lifespan calls ``start()`` and ``shutdown()``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from src.config import Settings
from src.models.workouts import Origin
from src.services.r2 import R2Namespace
from src.services.supabase import SupabaseRecordStore
from src.workouts.archiver import ArtifactArchiver
from src.workouts.coordinator import SyncCoordinator
from src.workouts.cursor import SyncCursor
from src.workouts.errors import TransientError
from src.workouts.link import HttpLinkTransport, LinkChannel
from src.workouts.local_store import LocalStore
from src.workouts.namespace import DirectoryNamespace, FileNamespace

logger = logging.getLogger("workoutsync.container")


def build_namespace(settings: Settings) -> FileNamespace:
    if settings.archive_backend == "directory":
        return DirectoryNamespace(settings.archive_dir)
    return R2Namespace(settings=settings)


@dataclass
class ServiceContainer:
    settings: Settings
    store: LocalStore
    remote: SupabaseRecordStore
    link: LinkChannel
    coordinator: SyncCoordinator

    @classmethod
    def build(cls, settings: Settings) -> "ServiceContainer":
        """Wire every component for this device.

        Raises:
            StoreUnavailableError: The local store cannot be opened.
        """
        store = LocalStore(settings.local_store_path)
        archiver = ArtifactArchiver(build_namespace(settings), settings.scratch_dir)

        transport = None
        if settings.link_peer_url:
            transport = HttpLinkTransport(
                settings.link_peer_url, timeout=settings.link_timeout_seconds
            )
        link = LinkChannel(transport)

        remote = SupabaseRecordStore(settings)
        coordinator = SyncCoordinator(
            store=store,
            archiver=archiver,
            link=link,
            remote=remote,
            cursor=SyncCursor.load(Path(settings.cursor_path) if settings.cursor_path else None),
            role=Origin(settings.device_role),
            device_model=settings.device_model,
            orphan_sweep_interval=settings.orphan_sweep_interval_seconds,
        )
        return cls(
            settings=settings,
            store=store,
            remote=remote,
            link=link,
            coordinator=coordinator,
        )

    async def start(self) -> None:
        """Connect to the remote store and start background work.

        An unreachable remote store is not fatal: the device keeps working
        locally and the store reconnects on the next sync trigger.
        """
        try:
            await self.remote.open()
        except TransientError as exc:
            logger.warning("Starting offline: %s", exc)
        try:
            await self.remote.subscribe(self.coordinator.on_remote_change)
        except TransientError as exc:
            logger.warning("Remote change notifications unavailable: %s", exc)
        await self.coordinator.start()

    async def shutdown(self) -> None:
        await self.coordinator.shutdown()
        await self.remote.close()
        await self.link.aclose()
        self.store.close()

"""Durable file namespaces that archived artifacts are copied into.

A namespace is flat: names contain no path separators. Implementations must
never overwrite an existing name; ``copy_in`` raises ``NameTakenError``
instead so the archiver can pick the next suffix.

    DirectoryNamespace: a mounted folder (local dev, tests, synced drives)
    R2Namespace       : Cloudflare R2 bucket, see ``src.services.r2``
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import Protocol

from src.workouts.errors import NameTakenError, TransientError

logger = logging.getLogger("workoutsync.namespace")


class FileNamespace(Protocol):
    async def exists(self, name: str) -> bool:
        """Return True if ``name`` is already taken.

        Raises:
            TransientError: The namespace is unreachable.
        """

    async def copy_in(self, local_path: Path, name: str) -> None:
        """Copy ``local_path`` into the namespace under ``name``.

        Raises:
            NameTakenError: ``name`` exists; nothing was written.
            TransientError: The namespace is unreachable.
            OSError:        The local file could not be read.
        """

    async def stat(self, name: str) -> int | None:
        """Read back ``name`` and return its size in bytes, or None if absent."""


def check_flat_name(name: str) -> str:
    if not name or "/" in name or "\\" in name or name in (".", ".."):
        raise ValueError(f"Invalid artifact name: {name!r}")
    return name


class DirectoryNamespace:
    """A folder acting as the durable archive.

    The root must already exist; a missing root (unmounted volume) is
    treated as the namespace being unavailable, not created on the fly.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _target(self, name: str) -> Path:
        if not self.root.is_dir():
            raise TransientError(f"Archive folder unavailable: {self.root}")
        return self.root / check_flat_name(name)

    async def exists(self, name: str) -> bool:
        return await asyncio.to_thread(lambda: self._target(name).exists())

    async def copy_in(self, local_path: Path, name: str) -> None:
        await asyncio.to_thread(self._copy_in, Path(local_path), name)

    def _copy_in(self, local_path: Path, name: str) -> None:
        target = self._target(name)
        with local_path.open("rb") as src:
            try:
                dst = target.open("xb")
            except FileExistsError as exc:
                raise NameTakenError(name) from exc
            except OSError as exc:
                raise TransientError(f"Cannot create {target}: {exc}") from exc
            try:
                with dst:
                    shutil.copyfileobj(src, dst)
                    dst.flush()
                    os.fsync(dst.fileno())
            except OSError as exc:
                target.unlink(missing_ok=True)
                raise TransientError(f"Copy into {target} failed: {exc}") from exc
        logger.debug("Copied %s -> %s", local_path, target)

    async def stat(self, name: str) -> int | None:
        def _stat() -> int | None:
            target = self._target(name)
            try:
                return target.stat().st_size
            except FileNotFoundError:
                return None

        return await asyncio.to_thread(_stat)

"""ArtifactArchiver: move finished audio notes from scratch storage into the durable namespace.

Lifecycle of one artifact::

    pending ──archive()──▶ archiving ──copy + read-back ok──▶ archived ──▶ scratch file deleted

The scratch file is deleted only after the namespace confirms the copy.
Any failure leaves it in place and raises ``ArchiveError``; retrying is up
to the caller (the coordinator's next trigger or the orphan sweep).

A sidecar manifest ``<file>.archive.json`` carries the owning record id from
the moment the artifact is claimed, and the remote name once the copy has
landed. If the process dies between copy and verification, the next sweep
finds the manifest, sees the object already in the namespace, verifies it
and finishes without making a second copy. A name is never written to the
manifest before its copy succeeds, so the resume path cannot adopt an
object some other writer put there.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from src.models.base import as_utc, utc_now
from src.models.workouts import Origin
from src.workouts.errors import (
    ArchiveError,
    ArchiveFailure,
    NameTakenError,
    TransientError,
)
from src.workouts.namespace import FileNamespace

logger = logging.getLogger("workoutsync.archiver")

MANIFEST_SUFFIX = ".archive.json"
_IGNORED_SUFFIXES = (MANIFEST_SUFFIX, ".tmp", ".part")
_MODEL_SAFE = re.compile(r"[^A-Za-z0-9]+")


class ArtifactState(str, Enum):
    PENDING = "pending"
    ARCHIVING = "archiving"
    ARCHIVED = "archived"


@dataclass
class ArchivedArtifact:
    """An audio note and where it lives.

    Attributes:
        local_path:  Scratch location; owned by the archiver until archived.
        remote_name: Final, unique name in the durable namespace.
        size_bytes:  Size of the artifact.
        archived_at: Set once the namespace confirmed the copy.
        state:       pending / archiving / archived.
        record_id:   Workout the artifact belongs to, if known.
    """

    local_path: Path
    remote_name: str | None = None
    size_bytes: int = 0
    archived_at: datetime | None = None
    state: ArtifactState = ArtifactState.PENDING
    record_id: uuid.UUID | None = None

    @property
    def is_durable(self) -> bool:
        return self.state is ArtifactState.ARCHIVED and self.archived_at is not None


@dataclass
class ReconcileReport:
    """Outcome of one orphan sweep; failures are per file."""

    archived: list[ArchivedArtifact] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.archived) + len(self.failed)


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------


def scratch_filename(
    occurred_at: datetime,
    origin: Origin,
    device_model: str,
    extension: str = ".m4a",
) -> str:
    """Build a scratch filename that capture can never reuse while archiving.

    Embeds the UTC timestamp, the device-type tag, the device model and a
    short random suffix, e.g. ``20260223T064500Z_watch_Watch7-2_1a2b3c4d.m4a``.
    """
    stamp = as_utc(occurred_at).strftime("%Y%m%dT%H%M%SZ")
    model = _MODEL_SAFE.sub("-", device_model).strip("-") or "unknown"
    ext = extension if extension.startswith(".") else f".{extension}"
    return f"{stamp}_{origin.device_tag}_{model}_{uuid.uuid4().hex[:8]}{ext}"


def suffixed_name(name: str, attempt: int) -> str:
    """``note.m4a`` → ``note-1.m4a``, ``note-2.m4a``, ... (attempt 0 = unchanged)."""
    if attempt == 0:
        return name
    path = Path(name)
    return f"{path.stem}-{attempt}{path.suffix}"


def manifest_path(local_path: Path) -> Path:
    return local_path.with_name(local_path.name + MANIFEST_SUFFIX)


# ---------------------------------------------------------------------------
# Archiver
# ---------------------------------------------------------------------------


class ArtifactArchiver:
    """Copy scratch artifacts into a ``FileNamespace`` without ever overwriting.

    Args:
        namespace:   Destination namespace.
        scratch_dir: Directory holding not-yet-archived artifacts.
        max_probes:  Upper bound on collision suffixes tried for one name.
    """

    def __init__(
        self,
        namespace: FileNamespace,
        scratch_dir: str | Path,
        max_probes: int = 1000,
    ) -> None:
        self._namespace = namespace
        self.scratch_dir = Path(scratch_dir)
        self._max_probes = max_probes
        self._locks: dict[Path, asyncio.Lock] = {}
        self._in_flight: set[Path] = set()

    async def archive(
        self,
        local_path: str | Path,
        suggested_name: str | None = None,
        record_id: uuid.UUID | None = None,
    ) -> ArchivedArtifact:
        """Archive one scratch file and reclaim it once durable.

        Args:
            local_path:     The completed scratch file.
            suggested_name: Preferred remote name (defaults to the file name).
            record_id:      Workout this artifact belongs to.

        Returns:
            The archived artifact, ``state == ARCHIVED``.

        Raises:
            ArchiveError: namespace_unavailable, copy_failed or verify_failed.
        """
        path = Path(local_path)
        lock = self._locks.setdefault(path, asyncio.Lock())
        async with lock:
            self._in_flight.add(path)
            try:
                return await self._archive(path, suggested_name or path.name, record_id)
            finally:
                self._in_flight.discard(path)
                if not path.exists():
                    self._locks.pop(path, None)

    def claim(
        self,
        local_path: str | Path,
        record_id: uuid.UUID,
        suggested_name: str | None = None,
    ) -> None:
        """Tie a scratch file to its record before archival is scheduled.

        Writes the manifest with ``record_id`` and keeps orphan sweeps off the
        file until ``archive()`` for it has run. If the process dies first, a
        later sweep still links the artifact through the manifest.

        Raises:
            ArchiveError: copy_failed if the manifest cannot be written.
        """
        path = Path(local_path)
        self._in_flight.add(path)
        manifest = self._read_manifest(path) or {}
        if manifest.get("remote_name"):
            return
        artifact = ArchivedArtifact(local_path=path, record_id=record_id)
        self._write_manifest(
            path, artifact, manifest.get("suggested_name") or suggested_name or path.name
        )

    async def _archive(
        self, path: Path, suggested_name: str, record_id: uuid.UUID | None
    ) -> ArchivedArtifact:
        try:
            size = path.stat().st_size
        except OSError as exc:
            raise ArchiveError(
                ArchiveFailure.COPY_FAILED, f"Scratch file unreadable: {path}: {exc}", local=True
            ) from exc

        manifest = self._read_manifest(path)
        if manifest:
            record_id = record_id or _parse_uuid(manifest.get("record_id"))
            suggested_name = manifest.get("suggested_name") or suggested_name

        artifact = ArchivedArtifact(
            local_path=path,
            size_bytes=size,
            state=ArtifactState.ARCHIVING,
            record_id=record_id,
        )

        if manifest is None:
            # Keeps the record association if this attempt fails before copying.
            self._write_manifest(path, artifact, suggested_name)

        # Resume: a previous run may have copied but not verified.
        if manifest and manifest.get("remote_name"):
            remote_name = manifest["remote_name"]
            try:
                remote_size = await self._namespace.stat(remote_name)
            except TransientError as exc:
                raise ArchiveError(ArchiveFailure.NAMESPACE_UNAVAILABLE, str(exc)) from exc
            if remote_size == size:
                logger.info("Resuming archive of %s: %s already present", path.name, remote_name)
                artifact.remote_name = remote_name
                return self._finish(artifact)

        attempt = 0
        while True:
            remote_name, attempt = await self._resolve_name(suggested_name, attempt)
            artifact.remote_name = remote_name
            try:
                await self._namespace.copy_in(path, remote_name)
                break
            except NameTakenError:
                # Lost a race for this name; probe onward from the next suffix.
                attempt += 1
            except TransientError as exc:
                raise ArchiveError(ArchiveFailure.NAMESPACE_UNAVAILABLE, str(exc)) from exc
            except OSError as exc:
                raise ArchiveError(
                    ArchiveFailure.COPY_FAILED, f"Cannot read {path}: {exc}", local=True
                ) from exc

        try:
            self._write_manifest(path, artifact, suggested_name)
        except ArchiveError as exc:
            # Only costs a second copy if we crash before verify.
            logger.warning("%s", exc)
        try:
            remote_size = await self._namespace.stat(remote_name)
        except TransientError as exc:
            raise ArchiveError(
                ArchiveFailure.VERIFY_FAILED, f"Read-back of {remote_name} failed: {exc}"
            ) from exc
        if remote_size != size:
            raise ArchiveError(
                ArchiveFailure.VERIFY_FAILED,
                f"{remote_name}: expected {size} bytes, namespace reports {remote_size}",
            )

        return self._finish(artifact)

    async def _resolve_name(self, suggested_name: str, start: int) -> tuple[str, int]:
        """Return the first free name at or after suffix ``start``."""
        for attempt in range(start, start + self._max_probes):
            candidate = suffixed_name(suggested_name, attempt)
            try:
                taken = await self._namespace.exists(candidate)
            except TransientError as exc:
                raise ArchiveError(ArchiveFailure.NAMESPACE_UNAVAILABLE, str(exc)) from exc
            if not taken:
                return candidate, attempt
            logger.debug("Name %s taken, probing next suffix", candidate)
        raise ArchiveError(
            ArchiveFailure.COPY_FAILED,
            f"No free name for {suggested_name} after {self._max_probes} probes",
        )

    def _finish(self, artifact: ArchivedArtifact) -> ArchivedArtifact:
        artifact.archived_at = utc_now()
        artifact.state = ArtifactState.ARCHIVED
        logger.info(
            "Archived %s as %s (%d bytes)",
            artifact.local_path.name, artifact.remote_name, artifact.size_bytes,
        )
        try:
            artifact.local_path.unlink(missing_ok=True)
            manifest_path(artifact.local_path).unlink(missing_ok=True)
        except OSError as exc:
            # Durable already; the next sweep retries the reclaim via the manifest.
            logger.warning("Archived but could not reclaim %s: %s", artifact.local_path, exc)
        return artifact

    # ------------------------------------------------------------------
    # Orphan sweep
    # ------------------------------------------------------------------

    def scratch_files(self) -> list[Path]:
        """Scratch artifacts waiting for archival, oldest first."""
        if not self.scratch_dir.is_dir():
            return []
        files = [
            p
            for p in self.scratch_dir.iterdir()
            if p.is_file() and not p.name.endswith(_IGNORED_SUFFIXES)
        ]
        return sorted(files, key=lambda p: p.stat().st_mtime)

    async def reconcile_orphans(self) -> ReconcileReport:
        """Retry archival for every scratch file that is still local.

        One file failing never stops the sweep; each failure is recorded in
        the report and the file stays put for the next sweep.
        """
        report = ReconcileReport()
        for path in self.scratch_files():
            if path in self._in_flight:
                report.skipped.append(path.name)
                continue
            try:
                report.archived.append(await self.archive(path))
            except ArchiveError as exc:
                logger.warning("Orphan %s not archived (%s): %s", path.name, exc.reason.value, exc)
                report.failed[path.name] = exc.reason.value

        if report.total:
            logger.info(
                "Orphan sweep: %d archived, %d failed, %d skipped",
                len(report.archived), len(report.failed), len(report.skipped),
            )
        return report

    # ------------------------------------------------------------------
    # Manifest
    # ------------------------------------------------------------------

    def _read_manifest(self, path: Path) -> dict | None:
        target = manifest_path(path)
        if not target.exists():
            return None
        try:
            return json.loads(target.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable manifest %s: %s", target, exc)
            return None

    def _write_manifest(self, path: Path, artifact: ArchivedArtifact, suggested_name: str) -> None:
        data = {
            "remote_name": artifact.remote_name,
            "suggested_name": suggested_name,
            "size_bytes": artifact.size_bytes,
            "record_id": str(artifact.record_id) if artifact.record_id else None,
            "state": artifact.state.value,
        }
        try:
            manifest_path(path).write_text(json.dumps(data), encoding="utf-8")
        except OSError as exc:
            raise ArchiveError(
                ArchiveFailure.COPY_FAILED, f"Cannot write manifest for {path}: {exc}", local=True
            ) from exc


def _parse_uuid(value: str | None) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None

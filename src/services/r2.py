"""Cloudflare R2 (S3-compatible) artifact namespace."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from src.config import Settings, get_settings
from src.workouts.errors import NameTakenError, TransientError
from src.workouts.namespace import check_flat_name

logger = logging.getLogger("workoutsync.r2")

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_TAKEN_CODES = {"412", "PreconditionFailed", "ConditionalRequestConflict"}


def build_client(settings: Settings | None = None) -> Any:
    s = settings or get_settings()
    return boto3.client(
        "s3",
        endpoint_url=f"https://{s.r2_account_id}.r2.cloudflarestorage.com",
        aws_access_key_id=s.r2_access_key_id,
        aws_secret_access_key=s.r2_secret_access_key,
        config=BotoConfig(
            signature_version="s3v4",
            retries={"max_attempts": 3, "mode": "standard"},
        ),
        region_name="auto",
    )


def compute_file_hash(data: bytes) -> str:
    """Return hex-encoded SHA-256 hash of file contents."""
    return hashlib.sha256(data).hexdigest()


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class R2Namespace:
    """Flat artifact namespace under ``{prefix}/`` in one R2 bucket.

    Writes use ``IfNoneMatch="*"`` so a concurrent writer that grabbed the
    same name first makes our ``put_object`` fail with 412 instead of being
    overwritten. boto3 is blocking, so every call runs in a worker thread.
    """

    def __init__(
        self,
        client: Any | None = None,
        bucket: str | None = None,
        prefix: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        s = settings or get_settings()
        self._client = client or build_client(s)
        self._bucket = bucket or s.r2_bucket_name
        self._prefix = (prefix if prefix is not None else s.archive_prefix).strip("/")

    def key_for(self, name: str) -> str:
        check_flat_name(name)
        return f"{self._prefix}/{name}" if self._prefix else name

    async def exists(self, name: str) -> bool:
        return await self.stat(name) is not None

    async def stat(self, name: str) -> int | None:
        key = self.key_for(name)
        try:
            head = await asyncio.to_thread(
                self._client.head_object, Bucket=self._bucket, Key=key
            )
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                return None
            raise TransientError(f"R2 head_object failed for {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise TransientError(f"R2 unreachable: {exc}") from exc
        return int(head.get("ContentLength", 0))

    async def copy_in(self, local_path: Path, name: str) -> None:
        key = self.key_for(name)
        data = await asyncio.to_thread(Path(local_path).read_bytes)
        file_hash = compute_file_hash(data)
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType="audio/mp4",
                IfNoneMatch="*",
                Metadata={
                    "original_filename": Path(local_path).name,
                    "file_hash": file_hash,
                },
            )
        except ClientError as exc:
            if _error_code(exc) in _TAKEN_CODES:
                raise NameTakenError(name) from exc
            raise TransientError(f"R2 put_object failed for {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise TransientError(f"R2 unreachable: {exc}") from exc

        logger.info(
            "Uploaded %s (%d bytes) to R2 key=%s",
            Path(local_path).name,
            len(data),
            key,
        )

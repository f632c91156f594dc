"""
Artifact store gateway for CFDI XML/PDF files.
"""

import asyncio
import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Optional, Protocol
from uuid import uuid4

import structlog

from ..config import get_settings
from ..exceptions import StorageError
from ..models import utcnow

logger = structlog.get_logger()


@dataclass(frozen=True)
class ArtifactFile:
    """An uploaded file: original filename plus raw bytes."""
    filename: str
    content: bytes

    @property
    def extension(self) -> str:
        return PurePosixPath(self.filename).suffix.lower()

    def text(self, encoding: str = "utf-8") -> str:
        return self.content.decode(encoding, errors="replace")


class ArtifactStore(Protocol):
    """Object storage: upload returns the stored path, delete removes it."""

    async def upload(self, bucket: str, scope_id: str, file: ArtifactFile) -> str:
        ...

    async def delete(self, bucket: str, path: str) -> None:
        ...


def _slugify(name: str) -> str:
    """Lowercase ASCII slug: accents stripped, other runs collapsed to dashes."""
    normalized = unicodedata.normalize("NFD", name.lower())
    ascii_name = "".join(c for c in normalized if not unicodedata.combining(c))
    return re.sub(r"[^a-z0-9]+", "-", ascii_name).strip("-")


def artifact_path(scope_id: str, filename: str, now: Optional[datetime] = None) -> str:
    """
    Unique path inside a bucket: ``{scope_id}/{YYMM}-{uuid4}-{slug}{ext}``.

    Every upload gets a fresh name, so two files with the same original
    filename never share a stored path.
    """
    name = PurePosixPath(filename.replace("\\", "/")).name
    if not scope_id or not name or name in (".", ".."):
        raise StorageError(
            "Invalid artifact path",
            details={"scope_id": scope_id, "filename": filename},
        )

    stem, dot, ext = name.rpartition(".")
    if not dot:
        stem, ext = name, ""
    else:
        ext = f".{ext}"

    stamp = (now or utcnow()).strftime("%y%m")
    slug = _slugify(stem)
    unique = f"{stamp}-{uuid4()}"
    return f"{scope_id}/{unique}-{slug}{ext}" if slug else f"{scope_id}/{unique}{ext}"


class LocalArtifactStore:
    """
    Artifact store backed by the local filesystem.
    Buckets are directories below ``settings.upload_dir``.
    """

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = Path(base_dir or get_settings().upload_dir)

    def _resolve(self, bucket: str, path: str) -> Path:
        target = (self.base_dir / bucket / path).resolve()
        bucket_root = (self.base_dir / bucket).resolve()
        if bucket_root not in target.parents:
            raise StorageError(
                "Path escapes bucket",
                details={"bucket": bucket, "path": path},
            )
        return target

    async def upload(self, bucket: str, scope_id: str, file: ArtifactFile) -> str:
        path = artifact_path(scope_id, file.filename)
        target = self._resolve(bucket, path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            # "x" mode: never overwrite a stored artifact
            with open(target, "xb") as f:
                f.write(file.content)

        try:
            await asyncio.to_thread(_write)
        except FileExistsError as e:
            raise StorageError(
                "Artifact already exists",
                details={"bucket": bucket, "path": path},
            ) from e
        except OSError as e:
            raise StorageError(
                f"Upload failed: {e}",
                details={"bucket": bucket, "path": path},
            ) from e

        logger.info("Artifact uploaded", bucket=bucket, path=path, size=len(file.content))
        return path

    async def delete(self, bucket: str, path: str) -> None:
        target = self._resolve(bucket, path)
        try:
            await asyncio.to_thread(target.unlink, True)
        except OSError as e:
            raise StorageError(
                f"Delete failed: {e}",
                details={"bucket": bucket, "path": path},
            ) from e

        logger.info("Artifact deleted", bucket=bucket, path=path)

    async def exists(self, bucket: str, path: str) -> bool:
        return await asyncio.to_thread(self._resolve(bucket, path).exists)

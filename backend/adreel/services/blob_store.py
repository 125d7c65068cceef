"""
Blob storage for finished artifacts.

The production job only needs upload/delete/list; `LocalBlobStore` keeps
blobs under DATA_DIR/blobs/<folder>/<blob id> and serves them through the
/files route. A blob id is "<folder>/<name>".
"""
from __future__ import annotations

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from adreel.settings import get_settings

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class StoredBlob:
    id: str
    public_url: str
    size: int
    mime_type: str


class BlobStore(Protocol):
    async def upload(self, data: bytes, filename: str, mime_type: str, folder_id: str) -> StoredBlob: ...

    async def delete(self, blob_id: str) -> bool: ...

    async def list(self, folder_id: str) -> list[str]: ...


def safe_segment(value: str) -> str:
    cleaned = _SAFE_NAME.sub("_", value).strip("._")
    if not cleaned:
        raise ValueError(f"Invalid blob path segment: {value!r}")
    return cleaned


class LocalBlobStore:
    def __init__(self, root: Path | str, public_base_url: str):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def path_for(self, blob_id: str) -> Path:
        folder, _, name = blob_id.partition("/")
        return self.root / safe_segment(folder) / safe_segment(name)

    async def upload(self, data: bytes, filename: str, mime_type: str, folder_id: str) -> StoredBlob:
        folder = safe_segment(folder_id)
        name = f"{uuid.uuid4().hex[:12]}_{safe_segment(filename)}"
        path = self.root / folder / name
        await asyncio.to_thread(self._write, path, data)
        blob_id = f"{folder}/{name}"
        logger.info("[blobs] stored %s (%d bytes)", blob_id, len(data))
        return StoredBlob(
            id=blob_id,
            public_url=f"{self.public_base_url}/files/{blob_id}",
            size=len(data),
            mime_type=mime_type,
        )

    async def delete(self, blob_id: str) -> bool:
        path = self.path_for(blob_id)
        if not path.exists():
            return False
        await asyncio.to_thread(path.unlink)
        logger.info("[blobs] deleted %s", blob_id)
        return True

    async def list(self, folder_id: str) -> list[str]:
        folder = self.root / safe_segment(folder_id)
        if not folder.is_dir():
            return []
        return sorted(f"{folder.name}/{p.name}" for p in folder.iterdir() if p.is_file())

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".part")
        tmp.write_bytes(data)
        tmp.replace(path)


_store: BlobStore | None = None


def get_blob_store() -> BlobStore:
    global _store
    if _store is None:
        settings = get_settings()
        _store = LocalBlobStore(Path(settings.data_dir) / "blobs", settings.public_base_url)
    return _store


def set_blob_store(store: BlobStore | None) -> None:
    global _store
    _store = store

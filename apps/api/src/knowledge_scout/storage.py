from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import re
import uuid
from typing import Protocol

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class StoredBlob:
    url: str
    resource_id: str


class BlobStore(Protocol):
    def put(self, data: bytes, filename: str) -> StoredBlob: ...


def _safe_stem(filename: str) -> str:
    stem = _UNSAFE_CHARS.sub("_", Path(filename).stem).strip("._")
    return stem[:120] or "upload"


class LocalBlobStore:
    """Stores uploads in a directory served under ``base_url``."""

    def __init__(self, root_dir: Path, *, base_url: str) -> None:
        self._root_dir = root_dir
        self._base_url = base_url.rstrip("/")

    def put(self, data: bytes, filename: str) -> StoredBlob:
        suffix = Path(filename).suffix.lower()
        resource_id = f"{_safe_stem(filename)}_{uuid.uuid4().hex[:12]}{suffix}"

        self._root_dir.mkdir(parents=True, exist_ok=True)
        target = self._root_dir / resource_id
        tmp_target = target.with_name(f"{target.name}.tmp")
        try:
            tmp_target.write_bytes(data)
            os.replace(tmp_target, target)
        finally:
            if tmp_target.exists():
                tmp_target.unlink()

        return StoredBlob(url=f"{self._base_url}/{resource_id}", resource_id=resource_id)

"""Filesystem-backed blob storage and atomic file helpers.

FileBlobStore owns the on-disk layout under one root. Other modules address
blobs by key and should not build paths manually.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path, PurePosixPath
from typing import Any, Mapping, Protocol

from .constants import JSON_INDENT


class BlobStore(Protocol):
    def put(self, key: str, data: bytes, *, content_type: str | None = None) -> None: ...

    def get(self, key: str) -> bytes | None: ...

    def exists(self, key: str) -> bool: ...

    def list(self, prefix: str) -> list[str]: ...

    def delete(self, key: str) -> bool: ...


def atomic_write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=path.name + ".",
        suffix=".tmp",
    )
    try:
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


def atomic_write_json(path: Path, payload: Mapping[str, Any]) -> None:
    content = json.dumps(payload, ensure_ascii=False, indent=JSON_INDENT, sort_keys=True) + "\n"
    atomic_write_bytes(path, content.encode("utf-8"))


class FileBlobStore:
    """Store blobs as files under `root`, one file per key.

    Writes go through a temp file and `os.replace`, so readers never observe a
    partially written blob and rewriting a key overwrites it in place.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def path_for(self, key: str) -> Path:
        pure = PurePosixPath(key)
        if not key or pure.is_absolute() or ".." in pure.parts:
            raise ValueError(f"Invalid blob key: {key!r}")
        return self.root.joinpath(*pure.parts)

    def put(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        if not isinstance(data, (bytes, bytearray)):
            raise TypeError("put expects `data` as bytes")
        path = self.path_for(key)
        with self._lock:
            atomic_write_bytes(path, bytes(data))

    def get(self, key: str) -> bytes | None:
        path = self.path_for(key)
        if not path.is_file():
            return None
        return path.read_bytes()

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def list(self, prefix: str) -> list[str]:
        """Return keys whose path starts with `prefix`, sorted."""

        search_dir = self.root
        if "/" in prefix:
            search_dir = self.path_for(prefix.rsplit("/", 1)[0])
        if not search_dir.is_dir():
            return []

        keys: list[str] = []
        for path in search_dir.rglob("*"):
            if not path.is_file() or path.name.endswith(".tmp"):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def delete(self, key: str) -> bool:
        path = self.path_for(key)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        return True


__all__ = ["BlobStore", "FileBlobStore", "atomic_write_bytes", "atomic_write_json"]

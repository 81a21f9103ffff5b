"""
Object Store — hierarchical storage capability consumed by the runtime.

The aggregation core only needs:
  list_top_level_prefixes() -> set of folder identifiers
  exists(path)              -> bool
  fetch(path)               -> bytes

list_files() and put() serve the raw-file and upload endpoints.

Paths are "/"-separated and relative to the store root
("{folder}/metadata.json", "{index_name}").
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Protocol, Set


class ObjectStoreError(Exception):
    """Base exception for object store operations."""


class ObjectNotFoundError(ObjectStoreError):
    """The requested object does not exist. Not a failure of the store."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Object not found: {path}")


class StorageError(ObjectStoreError):
    """The store could not be reached or read. Possibly transient."""


class ObjectStore(Protocol):

    async def list_top_level_prefixes(self) -> Set[str]: ...

    async def exists(self, path: str) -> bool: ...

    async def fetch(self, path: str) -> bytes: ...

    async def list_files(self, prefix: str) -> List[str]: ...

    async def put(self, path: str, data: bytes) -> None: ...


def _split_path(path: str) -> List[str]:
    parts = [p for p in path.replace("\\", "/").split("/") if p]
    if not parts or any(p in (".", "..") for p in parts):
        raise ValueError(f"Invalid object path {path!r}")
    return parts


# ══════════════════════════════════════════════════════════════
# Filesystem
# ══════════════════════════════════════════════════════════════

class FilesystemObjectStore:
    """
    Directory tree as an object store: a local disk or a mounted blob
    container. Top-level directories are the folders.

    Blocking calls run in the default thread pool.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, path: str) -> Path:
        return self._root.joinpath(*_split_path(path))

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def list_top_level_prefixes(self) -> Set[str]:
        return await asyncio.to_thread(self._list_top_level_prefixes)

    def _list_top_level_prefixes(self) -> Set[str]:
        try:
            with os.scandir(self._root) as it:
                return {entry.name for entry in it if entry.is_dir()}
        except OSError as exc:
            raise StorageError(f"Cannot list {self._root}: {exc}") from exc

    async def exists(self, path: str) -> bool:
        target = self._resolve(path)
        return await asyncio.to_thread(target.is_file)

    async def fetch(self, path: str) -> bytes:
        target = self._resolve(path)
        return await asyncio.to_thread(self._read, target, path)

    @staticmethod
    def _read(target: Path, path: str) -> bytes:
        try:
            return target.read_bytes()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise ObjectNotFoundError(path) from None
        except OSError as exc:
            raise StorageError(f"Cannot read {path}: {exc}") from exc

    async def list_files(self, prefix: str) -> List[str]:
        target = self._resolve(prefix)
        return await asyncio.to_thread(self._list_files, target, prefix)

    @staticmethod
    def _list_files(target: Path, prefix: str) -> List[str]:
        try:
            with os.scandir(target) as it:
                return sorted(entry.name for entry in it if entry.is_file())
        except (FileNotFoundError, NotADirectoryError):
            raise ObjectNotFoundError(prefix) from None
        except OSError as exc:
            raise StorageError(f"Cannot list {prefix}: {exc}") from exc

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def put(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        await asyncio.to_thread(self._write, target, data)

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        """Write via temp file + rename so readers never see a partial object."""
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp, target)
            except BaseException:
                os.unlink(tmp)
                raise
        except OSError as exc:
            raise StorageError(f"Cannot write {target}: {exc}") from exc


# ══════════════════════════════════════════════════════════════
# In-memory
# ══════════════════════════════════════════════════════════════

class InMemoryObjectStore:
    """Dict-backed store for tests and local development."""

    def __init__(self, objects: Dict[str, bytes] | None = None) -> None:
        self._objects: Dict[str, bytes] = {}
        for path, data in (objects or {}).items():
            self._objects["/".join(_split_path(path))] = data

    async def list_top_level_prefixes(self) -> Set[str]:
        return {path.split("/", 1)[0] for path in self._objects if "/" in path}

    async def exists(self, path: str) -> bool:
        return "/".join(_split_path(path)) in self._objects

    async def fetch(self, path: str) -> bytes:
        key = "/".join(_split_path(path))
        try:
            return self._objects[key]
        except KeyError:
            raise ObjectNotFoundError(path) from None

    async def list_files(self, prefix: str) -> List[str]:
        base = "/".join(_split_path(prefix)) + "/"
        names = [
            path[len(base):] for path in self._objects
            if path.startswith(base) and "/" not in path[len(base):]
        ]
        if not names and not any(path.startswith(base) for path in self._objects):
            raise ObjectNotFoundError(prefix)
        return sorted(names)

    async def put(self, path: str, data: bytes) -> None:
        self._objects["/".join(_split_path(path))] = bytes(data)

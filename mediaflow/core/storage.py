from __future__ import annotations

import os
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator
from urllib.parse import urlparse

from .config import Settings


class BlobStore(ABC):
    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def read_blob(self, key: str) -> bytes: ...

    @abstractmethod
    def write_blob(self, key: str, payload: bytes | BinaryIO) -> str: ...

    @abstractmethod
    def resolve_path(self, key: str) -> Path: ...

    @abstractmethod
    def delete(self, key: str) -> bool: ...

    @abstractmethod
    def atomic_output(self, key: str, *, suffix: str = "") -> Iterator[Path]: ...


class LocalBlobStore(BlobStore):
    """Filesystem-backed blob store. Single-file writes are atomic via rename."""

    def __init__(self, base_path: Path):
        self.base_path = base_path.resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def resolve_path(self, key: str) -> Path:
        parsed = urlparse(key)
        if parsed.scheme == "file":
            return Path(parsed.path).resolve()
        if parsed.scheme:
            raise ValueError(f"Unsupported URI scheme for local storage: {key}")
        path = (self.base_path / key).resolve()
        if not path.is_relative_to(self.base_path):
            raise ValueError(f"Key escapes storage root: {key}")
        return path

    def exists(self, key: str) -> bool:
        return self.resolve_path(key).is_file()

    def read_blob(self, key: str) -> bytes:
        path = self.resolve_path(key)
        if not path.is_file():
            raise FileNotFoundError(key)
        return path.read_bytes()

    def write_blob(self, key: str, payload: bytes | BinaryIO) -> str:
        with self.atomic_output(key) as staging:
            with staging.open("wb") as handle:
                if isinstance(payload, (bytes, bytearray)):
                    handle.write(payload)
                else:
                    while chunk := payload.read(1024 * 1024):
                        handle.write(chunk)
        return key

    def delete(self, key: str) -> bool:
        path = self.resolve_path(key)
        if not path.exists():
            return False
        path.unlink()
        return True

    @contextmanager
    def atomic_output(self, key: str, *, suffix: str = "") -> Iterator[Path]:
        """Yield a staging path next to ``key``; promote it on success, discard it on error."""
        target = self.resolve_path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, staging_name = tempfile.mkstemp(
            prefix=f".{target.stem}.",
            suffix=suffix or target.suffix,
            dir=target.parent,
        )
        os.close(fd)
        staging = Path(staging_name)
        try:
            yield staging
            if not staging.exists() or staging.stat().st_size == 0:
                raise OSError(f"no output produced for {key}")
            os.replace(staging, target)
        finally:
            staging.unlink(missing_ok=True)


def get_blob_store(settings: Settings) -> BlobStore:
    return LocalBlobStore(base_path=Path(settings.storage_root))


__all__ = ["BlobStore", "LocalBlobStore", "get_blob_store"]

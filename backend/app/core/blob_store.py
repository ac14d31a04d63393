"""Append-only blob storage for the cold telemetry archive.

A blob is created on first append and only ever grows; this subsystem
never deletes or rewrites one.
"""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Protocol

logger = logging.getLogger("telemetry.blob_store")


class BlobStore(Protocol):
    async def append(self, name: str, data: bytes) -> None: ...


class LocalBlobStore:
    """Blobs as files under ``root``; blob names map to relative paths."""

    def __init__(self, root: str | os.PathLike):
        self.root = Path(root)

    def path_for(self, name: str) -> Path:
        path = (self.root / name).resolve()
        root = self.root.resolve()
        if root not in path.parents:
            raise ValueError(f"blob name escapes archive root: {name!r}")
        return path

    async def append(self, name: str, data: bytes) -> None:
        path = self.path_for(name)
        await asyncio.to_thread(self._append_sync, path, data)
        logger.debug("Appended %d bytes to %s", len(data), name)

    @staticmethod
    def _append_sync(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        # Single write on an O_APPEND descriptor
        with open(path, "ab") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())

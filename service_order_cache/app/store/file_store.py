"""
File-backed local store for resolved orders.

Each key is persisted as ``<storage_root>/<namespace>/<key>.json``. Writes go
to a temporary file in the same directory and are renamed over the target, so
a reader sees either the previous record or the new one, never a partial file.
Writes to the same key are serialized by a per-key lock; reads take no lock.
"""

import asyncio
import json
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from shared.errors import StorageError
from shared.logging import get_logger
from ..models import CacheRecord, validate_order_id


class LocalOrderStore:
    """Durable key -> order store for a single node."""

    def __init__(self, storage_root: str, namespace: str = "orders", ttl_seconds: Optional[float] = None):
        self.directory = Path(storage_root) / namespace
        self.ttl_seconds = ttl_seconds
        self.logger = get_logger("order_cache.store")
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}

    async def start(self):
        """Create the store directory."""
        await self._run(self._ensure_directory)
        self.logger.info("Local store ready", directory=str(self.directory), ttl_seconds=self.ttl_seconds)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the stored order for ``key`` or None when absent."""
        record = await self.get_record(key)
        return record.value if record else None

    async def get_record(self, key: str) -> Optional[CacheRecord]:
        """Return the stored record for ``key`` with its metadata."""
        path = self._path_for(key)
        record = await self._run(self._read_record, key, path)

        if record is not None and record.is_expired(self.ttl_seconds):
            self.logger.debug("Record expired", key=key, stored_at=record.stored_at)
            return None
        return record

    async def put(
        self,
        key: str,
        value: Dict[str, Any],
        *,
        version: Optional[float] = None,
        source: str = "origin",
        origin_node: Optional[str] = None,
    ) -> CacheRecord:
        """Persist ``value`` for ``key``, replacing any previous record."""
        path = self._path_for(key)
        record = CacheRecord(key=key, value=value, version=version, source=source, origin_node=origin_node)

        async with self._key_lock(key):
            await self._run(self._write_record, path, record)

        self.logger.debug("Record written", key=key, source=source, version=version)
        return record

    async def put_if_newer(
        self,
        key: str,
        value: Dict[str, Any],
        *,
        version: Optional[float],
        source: str = "bus",
        origin_node: Optional[str] = None,
    ) -> bool:
        """Persist ``value`` unless the stored record carries a newer version.

        Unversioned writes always apply. Returns True when the record was
        written.
        """
        path = self._path_for(key)

        async with self._key_lock(key):
            current = await self._run(self._read_record, key, path)
            if (
                current is not None
                and not current.is_expired(self.ttl_seconds)
                and version is not None
                and current.version is not None
                and version < current.version
            ):
                self.logger.debug(
                    "Ignoring stale record",
                    key=key,
                    incoming_version=version,
                    stored_version=current.version
                )
                return False

            record = CacheRecord(key=key, value=value, version=version, source=source, origin_node=origin_node)
            await self._run(self._write_record, path, record)

        self.logger.debug("Record written", key=key, source=source, version=version)
        return True

    async def count(self) -> int:
        """Number of records currently on disk."""
        return await self._run(self._count_records)

    async def health_check(self) -> bool:
        """Check that the store directory exists and is writable."""
        try:
            await self._run(self._ensure_directory)
        except StorageError:
            return False
        return os.access(self.directory, os.W_OK)

    def _path_for(self, key: str) -> Path:
        return self.directory / f"{validate_order_id(key)}.json"

    @asynccontextmanager
    async def _key_lock(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_holders[key] = self._lock_holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[key] -= 1
            if not self._lock_holders[key]:
                del self._lock_holders[key]
                self._locks.pop(key, None)

    @staticmethod
    async def _run(func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    def _ensure_directory(self) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(
                "Cannot create store directory",
                details={"directory": str(self.directory), "error": str(exc)}
            ) from exc

    def _read_record(self, key: str, path: Path) -> Optional[CacheRecord]:
        try:
            raw, mtime = self._read_file(path)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError("Cannot read record", details={"key": key, "error": str(exc)}) from exc

        try:
            data = json.loads(raw.decode("utf-8"))
            if isinstance(data, dict) and "value" not in data and "id" in data:
                # Bare order written by older nodes
                return CacheRecord(key=key, value=data, source="legacy", stored_at=mtime)
            return CacheRecord.model_validate(data)
        except (ValueError, PydanticValidationError) as exc:
            raise StorageError("Corrupt record", details={"key": key, "error": str(exc)}) from exc

    @staticmethod
    def _read_file(path: Path) -> Tuple[bytes, float]:
        with open(path, "rb") as handle:
            return handle.read(), os.fstat(handle.fileno()).st_mtime

    def _write_record(self, path: Path, record: CacheRecord) -> None:
        self._ensure_directory()
        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{record.key}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(record.model_dump(), handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
            tmp_path = None
        except OSError as exc:
            raise StorageError("Cannot write record", details={"key": record.key, "error": str(exc)}) from exc
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass

    def _count_records(self) -> int:
        if not self.directory.exists():
            return 0
        return sum(1 for _ in self.directory.glob("*.json"))

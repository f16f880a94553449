from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from civicsession.logging import get_logger
from civicsession.storage.errors import CredentialStoreError

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    """Durable string key-value storage used for the token pair."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """Process-local store for tests and ephemeral clients."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self.values: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    async def set(self, key: str, value: str) -> None:
        self.values[key] = value

    async def remove(self, key: str) -> None:
        self.values.pop(key, None)


class FileKeyValueStore:
    """JSON file store; every write replaces the file atomically."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _read_all(self) -> Dict[str, str]:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            raise CredentialStoreError(
                "failed to read credential file", {"path": str(self.path), "error": str(exc)}
            ) from exc
        if not isinstance(data, dict):
            raise CredentialStoreError(
                "credential file is not a JSON object", {"path": str(self.path)}
            )
        return {str(k): str(v) for k, v in data.items()}

    def _write_all(self, values: Dict[str, str]) -> None:
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            # Write to temp file then rename so readers never see a torn file
            fd, tmp_path = tempfile.mkstemp(
                dir=str(directory), prefix=f".{self.path.name}_", suffix=".tmp"
            )
            try:
                os.write(fd, json.dumps(values).encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, str(self.path))
        except OSError as exc:
            if "tmp_path" in locals() and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise CredentialStoreError(
                "failed to write credential file", {"path": str(self.path), "error": str(exc)}
            ) from exc

    def _set_sync(self, key: str, value: str) -> None:
        values = self._read_all()
        values[key] = value
        self._write_all(values)

    def _remove_sync(self, key: str) -> None:
        try:
            values = self._read_all()
        except CredentialStoreError as exc:
            # An unreadable file is replaced so the pair can always be cleared
            logger.warning(
                "credential_file_unreadable_reset", path=str(self.path), error=exc.message
            )
            self._write_all({})
            return
        if key in values:
            values.pop(key)
            self._write_all(values)

    async def get(self, key: str) -> Optional[str]:
        values = await asyncio.to_thread(self._read_all)
        return values.get(key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set_sync, key, value)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._remove_sync, key)


class RedisKeyValueStore:
    """Redis-backed store for clients that share credentials across processes."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        socket_timeout: float = 5.0,
        client: Optional[aioredis.Redis] = None,
    ):
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self.redis_url = redis_url
        if client is None:
            client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.client = client

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except RedisError as exc:
            raise CredentialStoreError("redis get failed", {"key": key, "error": str(exc)}) from exc

    async def set(self, key: str, value: str) -> None:
        try:
            await self.client.set(key, value)
        except RedisError as exc:
            raise CredentialStoreError("redis set failed", {"key": key, "error": str(exc)}) from exc

    async def remove(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as exc:
            raise CredentialStoreError(
                "redis delete failed", {"key": key, "error": str(exc)}
            ) from exc

    async def close(self) -> None:
        await self.client.aclose()

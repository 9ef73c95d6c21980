from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from pathlib import Path
import re
import time
from typing import Callable, Protocol

from taxrouter.core.errors import SecretUnavailable


logger = logging.getLogger(__name__)

_MANAGED_SECRET_RE = re.compile(r"^projects/[^/]+/secrets/[^/]+(/versions/[^/]+)?$")


class ManagedSecretProvider(Protocol):
    provider: str

    async def access(self, name: str) -> bytes:
        ...

    async def close(self) -> None:
        ...


def is_managed_secret_path(reference: str) -> bool:
    return _MANAGED_SECRET_RE.fullmatch(reference) is not None


def normalize_secret_path(reference: str) -> str:
    # Unversioned paths resolve to the latest enabled version.
    if "/versions/" in reference:
        return reference
    return f"{reference}/versions/latest"


@dataclass(frozen=True)
class _CachedSecret:
    value: bytes
    expires_at: float


class SecretResolver:
    """Resolve secret references to raw bytes with a per-reference TTL cache.

    References shaped like ``projects/P/secrets/N[/versions/V]`` go to the managed
    secret provider; anything else is read from the local filesystem. The cache
    lock is never held across a fetch, and a cancelled caller cancels its
    in-flight fetch.
    """

    def __init__(
        self,
        *,
        provider: ManagedSecretProvider | None = None,
        ttl_seconds: float = 3600.0,
        fetch_timeout_s: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._ttl_seconds = ttl_seconds
        self._fetch_timeout_s = fetch_timeout_s
        self._clock = clock
        self._cache: dict[str, _CachedSecret] = {}
        self._lock = asyncio.Lock()

    async def resolve(self, reference: str) -> bytes:
        if not reference or not reference.strip():
            raise SecretUnavailable(reference or "", "empty reference")
        async with self._lock:
            cached = self._cache.get(reference)
            if cached is not None and cached.expires_at > self._clock():
                return cached.value
        value = await self._fetch(reference)
        async with self._lock:
            self._cache[reference] = _CachedSecret(value=value, expires_at=self._clock() + self._ttl_seconds)
        return value

    async def clear(self, reference: str) -> None:
        async with self._lock:
            self._cache.pop(reference, None)

    async def clear_all(self) -> None:
        async with self._lock:
            self._cache.clear()

    async def close(self) -> None:
        await self.clear_all()
        if self._provider is not None:
            await self._provider.close()

    async def _fetch(self, reference: str) -> bytes:
        if is_managed_secret_path(reference):
            return await self._fetch_managed(reference)
        return await self._read_file(reference)

    async def _fetch_managed(self, reference: str) -> bytes:
        if self._provider is None:
            raise SecretUnavailable(reference, "managed secret provider not configured")
        name = normalize_secret_path(reference)
        try:
            value = await asyncio.wait_for(self._provider.access(name), timeout=self._fetch_timeout_s)
        except asyncio.TimeoutError as exc:
            logger.error("secret_fetch_timeout reference=%s", reference)
            raise SecretUnavailable(reference, "timed out") from exc
        except SecretUnavailable:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("secret_fetch_failed reference=%s error=%s", reference, type(exc).__name__)
            raise SecretUnavailable(reference, type(exc).__name__) from exc
        logger.info("secret_fetched reference=%s provider=%s", reference, self._provider.provider)
        return value

    async def _read_file(self, reference: str) -> bytes:
        try:
            return await asyncio.to_thread(Path(reference).read_bytes)
        except OSError as exc:
            logger.error("secret_file_unreadable reference=%s error=%s", reference, type(exc).__name__)
            raise SecretUnavailable(reference, "file not readable") from exc

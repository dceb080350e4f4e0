from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import redis.asyncio as redis


class TokenCache(Protocol):
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    async def set(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


@dataclass
class _CacheEntry:
    value: Dict[str, Any]
    expires_at: float


class MemoryTokenCache:
    def __init__(self) -> None:
        self._entries: Dict[str, _CacheEntry] = {}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if not entry:
            return None
        if entry.expires_at <= time.time():
            self._entries.pop(key, None)
            return None
        return dict(entry.value)

    async def set(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        self._entries[key] = _CacheEntry(value=dict(value), expires_at=time.time() + max(ttl, 1))

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)


class RedisTokenCache:
    def __init__(self, url: str) -> None:
        self.url = url
        self.r = redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self.r.get(key)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    async def set(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        await self.r.set(key, json.dumps(value), ex=max(ttl, 1))

    async def delete(self, key: str) -> None:
        await self.r.delete(key)

    async def close(self) -> None:
        await self.r.aclose()


def build_token_cache(url: str) -> Optional[TokenCache]:
    cleaned = (url or '').strip()
    if not cleaned:
        return None
    if cleaned.startswith('memory://'):
        return MemoryTokenCache()
    return RedisTokenCache(cleaned)

# cache.py - Per-user response cache with conditional request support
# - Key: path + sorted query string + authenticated user id
# - TTL expiry checked on read and by a periodic sweep
# - Insertion-order eviction at capacity
# - ETag (quoted MD5 of the body) and Last-Modified validators, 304 on match

import asyncio
import contextlib
import hashlib
import json
import logging
import os
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from email.utils import format_datetime, parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple

from fastapi import Request, Response
from fastapi.encoders import jsonable_encoder

from models import utcnow

logger = logging.getLogger("taskboard.cache")

CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", "30"))
CACHE_MAX_ENTRIES = int(os.getenv("CACHE_MAX_ENTRIES", "1000"))
CACHE_SWEEP_SECONDS = int(os.getenv("CACHE_SWEEP_SECONDS", "60"))


@dataclass
class CacheEntry:
    body: bytes
    etag: str
    last_modified: datetime
    stored_at: float


def render_body(payload: Any) -> bytes:
    return json.dumps(
        jsonable_encoder(payload),
        ensure_ascii=False,
        allow_nan=False,
        separators=(",", ":"),
    ).encode("utf-8")


def fingerprint(body: bytes) -> str:
    return f'"{hashlib.md5(body).hexdigest()}"'


def make_key(path: str, query: Iterable[Tuple[str, str]], user_id: str) -> str:
    # Repeated keys each count; order of the pairs does not
    query_string = "&".join(f"{k}={v}" for k, v in sorted(query))
    return f"{path}?{query_string}|{user_id}" if query_string else f"{path}|{user_id}"


class ResponseCache:
    def __init__(
        self,
        ttl: int = CACHE_TTL_SECONDS,
        max_entries: int = CACHE_MAX_ENTRIES,
        sweep_interval: int = CACHE_SWEEP_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.max_entries = max_entries
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._sweeper: Optional[asyncio.Task] = None
        self.hits = 0
        self.misses = 0

    # --- storage ---

    def _expired(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.stored_at >= self.ttl

    def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry):
            del self._entries[key]
            return None
        return entry

    def put(self, key: str, payload: Any) -> CacheEntry:
        body = render_body(payload)
        entry = CacheEntry(
            body=body,
            etag=fingerprint(body),
            last_modified=utcnow().replace(microsecond=0),
            stored_at=self._clock(),
        )
        # A rewritten key counts as a fresh insertion
        self._entries.pop(key, None)
        while len(self._entries) >= self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted {evicted}")
        self._entries[key] = entry
        return entry

    def sweep(self) -> int:
        expired = [k for k, e in self._entries.items() if self._expired(e)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired entries")
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def stats(self) -> dict:
        return {
            "size": len(self._entries),
            "max_size": self.max_entries,
            "ttl_seconds": self.ttl,
            "hits": self.hits,
            "misses": self.misses,
        }

    # --- HTTP ---

    def _headers(self, entry: CacheEntry, hit: bool) -> Dict[str, str]:
        return {
            "Cache-Control": f"public, max-age={self.ttl}",
            "ETag": entry.etag,
            "Last-Modified": format_datetime(entry.last_modified, usegmt=True),
            "X-Cache": "HIT" if hit else "MISS",
        }

    @staticmethod
    def _not_modified(request: Request, entry: CacheEntry) -> bool:
        if_none_match = request.headers.get("if-none-match")
        if if_none_match:
            tags = [t.strip().removeprefix("W/") for t in if_none_match.split(",")]
            if entry.etag in tags or "*" in tags:
                return True

        if_modified_since = request.headers.get("if-modified-since")
        if if_modified_since:
            try:
                since = parsedate_to_datetime(if_modified_since)
            except (TypeError, ValueError):
                return False
            if since.tzinfo is None:
                return False
            return since >= entry.last_modified
        return False

    async def respond(
        self,
        request: Request,
        user_id: str,
        producer: Callable[[], Awaitable[Any]],
    ) -> Response:
        """Serve ``request`` from cache, or run ``producer`` and cache its result.

        Errors raised by the producer propagate and nothing is stored.
        """
        if request.method != "GET":
            return Response(content=render_body(await producer()), media_type="application/json")

        key = make_key(request.url.path, request.query_params.multi_items(), user_id)
        entry = self.get(key)
        if entry is not None:
            self.hits += 1
            headers = self._headers(entry, hit=True)
            if self._not_modified(request, entry):
                return Response(status_code=304, headers=headers)
            return Response(content=entry.body, media_type="application/json", headers=headers)

        self.misses += 1
        entry = self.put(key, await producer())
        return Response(content=entry.body, media_type="application/json", headers=self._headers(entry, hit=False))

    # --- background sweep ---

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None

from __future__ import annotations

import asyncio
import hashlib
import inspect
import json
import uuid
from collections import Counter as TallyCounter
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Iterable, Mapping, Sequence

import asyncpg

from ..core.config import CacheSettings, Settings
from ..core.logging import get_logger
from ..core.metrics import (
    increment_cache_evictions,
    increment_cache_hit,
    increment_cache_miss,
    increment_cache_write_failure,
)

logger = get_logger(name=__name__)

TimestampFactory = Callable[[], datetime]

RELEVANCE_TOKEN_MIN_LENGTH = 4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class CacheEntry:
    id: str
    matter_id: str | None
    agent_type: str
    result_type: str
    title: str
    query_hash: str
    result_data: dict[str, Any]
    created_at: datetime
    expires_at: datetime
    summary: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    usage_count: int = 0
    last_used_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    @property
    def original_query(self) -> str:
        return str(self.metadata.get("original_query") or "")

    @property
    def confidence(self) -> float:
        value = self.metadata.get("confidence", 1.0)
        return float(value) if isinstance(value, (int, float)) else 1.0

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "matter_id": self.matter_id,
            "agent_type": self.agent_type,
            "result_type": self.result_type,
            "title": self.title,
            "summary": self.summary,
            "query_hash": self.query_hash,
            "result_data": self.result_data,
            "metadata": self.metadata,
            "usage_count": self.usage_count,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
        }


@dataclass(slots=True)
class CacheableResult:
    type: str
    title: str
    data: dict[str, Any]
    summary: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    expiration_hours: float | None = None


@dataclass(slots=True)
class CacheSearchOptions:
    agent_types: Sequence[str] | None = None
    result_types: Sequence[str] | None = None
    max_age_hours: float = 24.0
    limit: int = 10
    exclude_expired: bool = True


@dataclass(slots=True)
class RankedEntry:
    entry: CacheEntry
    relevance_score: float


@dataclass(slots=True)
class CacheStats:
    total_entries: int = 0
    expired_entries: int = 0
    total_usage: int = 0
    entries_by_agent: dict[str, int] = field(default_factory=dict)
    entries_by_type: dict[str, int] = field(default_factory=dict)
    most_used: list[dict[str, Any]] = field(default_factory=list)


def normalize_query(query: str) -> str:
    return query.strip().lower()


def generate_query_hash(query: str, extra_params: Mapping[str, Any] | None = None) -> str:
    serialized = json.dumps(dict(extra_params or {}), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(f"{normalize_query(query)}{serialized}".encode("utf-8")).hexdigest()


def age_decay(
    created_at: datetime,
    *,
    now: datetime,
    window_hours: float = 168.0,
    floor: float = 0.5,
) -> float:
    age_hours = max(0.0, (now - created_at).total_seconds() / 3600)
    return max(floor, 1 - age_hours / window_hours)


def score_relevance(
    entry: CacheEntry,
    current_query: str,
    *,
    now: datetime,
    window_hours: float = 168.0,
    floor: float = 0.5,
) -> float:
    cached_query = normalize_query(entry.original_query)
    current = normalize_query(current_query)
    if cached_query == current:
        score = 1.0
    else:
        cached_tokens = cached_query.split()
        current_tokens = current.split()
        current_vocabulary = set(current_tokens)
        shared = [
            token
            for token in cached_tokens
            if len(token) >= RELEVANCE_TOKEN_MIN_LENGTH and token in current_vocabulary
        ]
        denominator = max(len(cached_tokens), len(current_tokens))
        score = len(shared) / denominator if denominator else 0.0
    score *= entry.confidence
    return score * age_decay(entry.created_at, now=now, window_hours=window_hours, floor=floor)


class CacheStore:
    """PostgreSQL persistence for cache entries (``matter_cache`` table)."""

    _COLUMNS = """
        id, matter_id, agent_type, result_type, title, summary, query_hash, result_data,
        metadata, usage_count, created_at, expires_at, last_used_at
    """

    def __init__(self, pool: Any | None) -> None:
        self._pool_or_factory = pool
        self._pool: asyncpg.Pool | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "CacheStore":
        if settings.storage.backend == "memory":
            return InMemoryCacheStore()
        pool = asyncpg.create_pool(
            dsn=str(settings.postgres.dsn),
            min_size=settings.postgres.pool_min_size,
            max_size=settings.postgres.pool_max_size,
        )
        return cls(pool)

    async def insert(self, entry: CacheEntry) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            await connection.execute(
                f"""
                INSERT INTO matter_cache({self._COLUMNS})
                VALUES($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9::jsonb, $10, $11, $12, $13)
                """,
                entry.id,
                entry.matter_id,
                entry.agent_type,
                entry.result_type,
                entry.title,
                entry.summary,
                entry.query_hash,
                json.dumps(entry.result_data, default=str),
                json.dumps(entry.metadata, default=str),
                entry.usage_count,
                entry.created_at,
                entry.expires_at,
                entry.last_used_at,
            )

    async def find_latest(
        self,
        query_hash: str,
        *,
        matter_id: str | None,
        agent_type: str | None,
        now: datetime,
    ) -> CacheEntry | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            row = await connection.fetchrow(
                f"""
                SELECT {self._COLUMNS}
                FROM matter_cache
                WHERE query_hash = $1
                  AND expires_at > $2
                  AND (matter_id IS NULL OR matter_id = $3)
                  AND ($4::text IS NULL OR agent_type = $4)
                ORDER BY created_at DESC
                LIMIT 1
                """,
                query_hash,
                now,
                matter_id,
                agent_type,
            )
        return _row_to_entry(row) if row is not None else None

    async def touch(self, entry_id: str, *, usage_count: int, last_used_at: datetime) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            await connection.execute(
                "UPDATE matter_cache SET usage_count = $2, last_used_at = $3 WHERE id = $1",
                entry_id,
                usage_count,
                last_used_at,
            )

    async def search(
        self,
        *,
        matter_id: str | None,
        options: CacheSearchOptions,
        now: datetime,
    ) -> list[CacheEntry]:
        cutoff = now - timedelta(hours=options.max_age_hours)
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            rows = await connection.fetch(
                f"""
                SELECT {self._COLUMNS}
                FROM matter_cache
                WHERE (matter_id IS NULL OR matter_id = $1)
                  AND created_at >= $2
                  AND ($3::text[] IS NULL OR agent_type = ANY($3::text[]))
                  AND ($4::text[] IS NULL OR result_type = ANY($4::text[]))
                  AND (NOT $5 OR expires_at > $6)
                ORDER BY created_at DESC
                LIMIT $7
                """,
                matter_id,
                cutoff,
                list(options.agent_types) if options.agent_types else None,
                list(options.result_types) if options.result_types else None,
                options.exclude_expired,
                now,
                options.limit,
            )
        return [_row_to_entry(row) for row in rows]

    async def delete_expired(self, *, matter_id: str | None, now: datetime) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            status = await connection.execute(
                "DELETE FROM matter_cache WHERE expires_at <= $1 AND ($2::text IS NULL OR matter_id = $2)",
                now,
                matter_id,
            )
        # asyncpg returns the command tag, e.g. "DELETE 3"
        try:
            return int(str(status).rsplit(" ", maxsplit=1)[-1])
        except ValueError:  # pragma: no cover - defensive guard
            return 0

    async def list_entries(self, *, matter_id: str | None) -> list[CacheEntry]:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            rows = await connection.fetch(
                f"""
                SELECT {self._COLUMNS}
                FROM matter_cache
                WHERE ($1::text IS NULL OR matter_id = $1)
                """,
                matter_id,
            )
        return [_row_to_entry(row) for row in rows]

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["CacheStore"]:
        try:
            await self._ensure_pool()
            yield self
        finally:
            await self.close()

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool
        candidate = self._pool_or_factory
        if inspect.isawaitable(candidate):
            candidate = await candidate
        if not isinstance(candidate, asyncpg.Pool):
            raise RuntimeError("Invalid asyncpg pool supplied to CacheStore")
        self._pool = candidate
        return self._pool


class InMemoryCacheStore(CacheStore):
    def __init__(self) -> None:
        self._pool_or_factory = None
        self._pool = None
        self._entries: dict[str, CacheEntry] = {}

    @property
    def entries(self) -> list[CacheEntry]:
        return list(self._entries.values())

    async def insert(self, entry: CacheEntry) -> None:
        self._entries[entry.id] = replace(entry)

    async def find_latest(
        self,
        query_hash: str,
        *,
        matter_id: str | None,
        agent_type: str | None,
        now: datetime,
    ) -> CacheEntry | None:
        matches = [
            entry
            for entry in self._entries.values()
            if entry.query_hash == query_hash
            and not entry.is_expired(now)
            and entry.matter_id in {None, matter_id}
            and (agent_type is None or entry.agent_type == agent_type)
        ]
        if not matches:
            return None
        return replace(max(matches, key=lambda entry: entry.created_at))

    async def touch(self, entry_id: str, *, usage_count: int, last_used_at: datetime) -> None:
        entry = self._entries.get(entry_id)
        if entry is not None:
            entry.usage_count = usage_count
            entry.last_used_at = last_used_at

    async def search(
        self,
        *,
        matter_id: str | None,
        options: CacheSearchOptions,
        now: datetime,
    ) -> list[CacheEntry]:
        cutoff = now - timedelta(hours=options.max_age_hours)
        matches = [
            entry
            for entry in self._entries.values()
            if entry.matter_id in {None, matter_id}
            and entry.created_at >= cutoff
            and (not options.agent_types or entry.agent_type in options.agent_types)
            and (not options.result_types or entry.result_type in options.result_types)
            and (not options.exclude_expired or not entry.is_expired(now))
        ]
        matches.sort(key=lambda entry: entry.created_at, reverse=True)
        return [replace(entry) for entry in matches[: options.limit]]

    async def delete_expired(self, *, matter_id: str | None, now: datetime) -> int:
        doomed = [
            entry_id
            for entry_id, entry in self._entries.items()
            if entry.is_expired(now) and (matter_id is None or entry.matter_id == matter_id)
        ]
        for entry_id in doomed:
            del self._entries[entry_id]
        return len(doomed)

    async def list_entries(self, *, matter_id: str | None) -> list[CacheEntry]:
        return [
            replace(entry)
            for entry in self._entries.values()
            if matter_id is None or entry.matter_id == matter_id
        ]

    async def close(self) -> None:
        return

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["InMemoryCacheStore"]:
        yield self


class ResultCache:
    """Request-level result cache shared by agents and the orchestrator.

    Reads pick the newest unexpired entry for a (scope, query hash) pair, where
    the scope is either the requested matter or the global (``None``) scope.
    Expired rows stay in storage until :meth:`evict` runs, so every read checks
    expiry itself. No method raises on backend failures: reads degrade to a miss
    and writes are logged and dropped.
    """

    def __init__(
        self,
        store: CacheStore | None = None,
        *,
        settings: CacheSettings | None = None,
        now: TimestampFactory | None = None,
    ) -> None:
        self._store = store or InMemoryCacheStore()
        self._settings = settings or CacheSettings()
        self._now: TimestampFactory = now or _utcnow
        self._pending_writes: set[asyncio.Task[CacheEntry | None]] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ResultCache":
        return cls(CacheStore.from_settings(settings), settings=settings.cache)

    @property
    def settings(self) -> CacheSettings:
        return self._settings

    async def lookup(
        self,
        request_text: str,
        scope_id: str | None = None,
        extra_params: Mapping[str, Any] | None = None,
        *,
        agent_type: str | None = None,
    ) -> CacheEntry | None:
        query_hash = generate_query_hash(request_text, extra_params)
        now = self._now()
        try:
            entry = await self._store.find_latest(query_hash, matter_id=scope_id, agent_type=agent_type, now=now)
            if entry is None or entry.is_expired(now):
                increment_cache_miss(mode="exact")
                return None
            entry.usage_count += 1
            entry.last_used_at = now
            await self._store.touch(entry.id, usage_count=entry.usage_count, last_used_at=now)
        except Exception as exc:
            logger.exception("cache_lookup_failed", query_hash=query_hash, error=str(exc))
            increment_cache_miss(mode="exact")
            return None
        increment_cache_hit(mode="exact")
        logger.info("cache_hit", entry_id=entry.id, matter_id=scope_id, usage_count=entry.usage_count)
        return entry

    def rank(self, candidates: Iterable[CacheEntry], current_query: str) -> list[RankedEntry]:
        now = self._now()
        ranked = [
            RankedEntry(
                entry=entry,
                relevance_score=score_relevance(
                    entry,
                    current_query,
                    now=now,
                    window_hours=self._settings.age_decay_hours,
                    floor=self._settings.age_decay_floor,
                ),
            )
            for entry in candidates
        ]
        ranked.sort(key=lambda item: item.relevance_score, reverse=True)
        return ranked

    async def search(self, scope_id: str | None = None, options: CacheSearchOptions | None = None) -> list[CacheEntry]:
        resolved = options or CacheSearchOptions(
            max_age_hours=self._settings.search_max_age_hours,
            limit=self._settings.search_limit,
        )
        try:
            entries = await self._store.search(matter_id=scope_id, options=resolved, now=self._now())
        except Exception as exc:
            logger.exception("cache_search_failed", matter_id=scope_id, error=str(exc))
            return []
        if entries:
            increment_cache_hit(mode="search")
        else:
            increment_cache_miss(mode="search")
        return entries

    async def find_related(
        self,
        scope_id: str | None,
        query: str,
        *,
        agent_types: Sequence[str] | None = None,
        threshold: float | None = None,
    ) -> list[RankedEntry]:
        """Search recent entries and keep the ones relevant enough to reuse."""
        options = CacheSearchOptions(
            agent_types=agent_types,
            max_age_hours=self._settings.related_max_age_hours,
            limit=self._settings.related_limit,
        )
        cutoff = self._settings.relevance_threshold if threshold is None else threshold
        candidates = await self.search(scope_id, options)
        return [item for item in self.rank(candidates, query) if item.relevance_score > cutoff]

    async def store(
        self,
        scope_id: str | None,
        request_text: str,
        result: CacheableResult,
        extra_params: Mapping[str, Any] | None = None,
        *,
        agent_type: str,
    ) -> CacheEntry | None:
        now = self._now()
        hours = (
            self._settings.default_expiration_hours if result.expiration_hours is None else result.expiration_hours
        )
        metadata = {
            "confidence": 1.0,
            "source_count": 0,
            **result.metadata,
            "original_query": request_text,
            "additional_params": dict(extra_params or {}),
        }
        entry = CacheEntry(
            id=str(uuid.uuid4()),
            matter_id=scope_id,
            agent_type=agent_type,
            result_type=result.type,
            title=result.title,
            summary=result.summary,
            query_hash=generate_query_hash(request_text, extra_params),
            result_data=dict(result.data),
            metadata=metadata,
            created_at=now,
            expires_at=now + timedelta(hours=hours),
        )
        try:
            await self._store.insert(entry)
        except Exception as exc:
            increment_cache_write_failure()
            logger.exception("cache_write_failed", agent=agent_type, matter_id=scope_id, error=str(exc))
            return None
        logger.info("cache_entry_stored", entry_id=entry.id, agent=agent_type, matter_id=scope_id, hours=hours)
        return entry

    def store_detached(
        self,
        scope_id: str | None,
        request_text: str,
        result: CacheableResult,
        extra_params: Mapping[str, Any] | None = None,
        *,
        agent_type: str,
    ) -> asyncio.Task[CacheEntry | None]:
        """Schedule :meth:`store` without waiting for it."""
        task = asyncio.create_task(
            self.store(scope_id, request_text, result, extra_params, agent_type=agent_type)
        )
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)
        return task

    async def drain(self) -> None:
        """Wait for detached writes scheduled so far."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes))

    async def evict(self, scope_id: str | None = None) -> int:
        try:
            removed = await self._store.delete_expired(matter_id=scope_id, now=self._now())
        except Exception as exc:
            logger.exception("cache_sweep_failed", matter_id=scope_id, error=str(exc))
            return 0
        increment_cache_evictions(count=removed)
        logger.info("cache_swept", matter_id=scope_id, removed=removed)
        return removed

    async def stats(self, scope_id: str | None = None) -> CacheStats:
        try:
            entries = await self._store.list_entries(matter_id=scope_id)
        except Exception as exc:
            logger.exception("cache_stats_failed", matter_id=scope_id, error=str(exc))
            return CacheStats()
        now = self._now()
        top = sorted(entries, key=lambda entry: entry.usage_count, reverse=True)[:5]
        return CacheStats(
            total_entries=len(entries),
            expired_entries=sum(1 for entry in entries if entry.is_expired(now)),
            total_usage=sum(entry.usage_count for entry in entries),
            entries_by_agent=dict(TallyCounter(entry.agent_type for entry in entries)),
            entries_by_type=dict(TallyCounter(entry.result_type for entry in entries)),
            most_used=[
                {"id": entry.id, "title": entry.title, "agent_type": entry.agent_type, "usage_count": entry.usage_count}
                for entry in top
            ],
        )

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["ResultCache"]:
        async with self._store.lifecycle():
            try:
                yield self
            finally:
                await self.drain()


def _decode_json(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:  # pragma: no cover - defensive guard
            return {}
    return dict(value) if isinstance(value, Mapping) else {}


def _row_to_entry(row: Mapping[str, Any]) -> CacheEntry:
    return CacheEntry(
        id=str(row["id"]),
        matter_id=row["matter_id"],
        agent_type=row["agent_type"],
        result_type=row["result_type"],
        title=row["title"],
        summary=row["summary"],
        query_hash=row["query_hash"],
        result_data=_decode_json(row["result_data"]),
        metadata=_decode_json(row["metadata"]),
        usage_count=row["usage_count"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        last_used_at=row["last_used_at"],
    )

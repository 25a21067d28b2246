from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from legalflow.core.config import CacheSettings
from legalflow.services.cache import (
    CacheableResult,
    CacheEntry,
    CacheSearchOptions,
    InMemoryCacheStore,
    ResultCache,
    age_decay,
    generate_query_hash,
    score_relevance,
)

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, value: datetime = START) -> None:
        self.value = value

    def __call__(self) -> datetime:
        return self.value

    def advance(self, **kwargs: float) -> None:
        self.value += timedelta(**kwargs)


class BrokenStore(InMemoryCacheStore):
    async def insert(self, entry: CacheEntry) -> None:
        raise ConnectionError("database unavailable")

    async def find_latest(self, query_hash, *, matter_id, agent_type, now):
        raise ConnectionError("database unavailable")


def _result(title: str = "Research memo", **kwargs) -> CacheableResult:
    return CacheableResult(type="legal_research", title=title, data={"response": "answer"}, **kwargs)


def _entry(query: str, *, created_at: datetime, confidence: float = 1.0) -> CacheEntry:
    return CacheEntry(
        id="entry-1",
        matter_id=None,
        agent_type="research",
        result_type="legal_research",
        title="memo",
        query_hash=generate_query_hash(query),
        result_data={},
        created_at=created_at,
        expires_at=created_at + timedelta(hours=24),
        metadata={"original_query": query, "confidence": confidence},
    )


def test_query_hash_normalises_text_and_parameter_order() -> None:
    assert generate_query_hash("  Breach of Contract ") == generate_query_hash("breach of contract")
    assert generate_query_hash("q", {"a": 1, "b": 2}) == generate_query_hash("q", {"b": 2, "a": 1})
    assert generate_query_hash("q", {"a": 1}) != generate_query_hash("q", {"a": 2})
    assert len(generate_query_hash("q")) == 32


def test_age_decay_reaches_floor() -> None:
    assert age_decay(START, now=START) == 1.0
    assert age_decay(START, now=START + timedelta(hours=84)) == pytest.approx(0.5)
    assert age_decay(START, now=START + timedelta(hours=24)) == pytest.approx(1 - 24 / 168)
    assert age_decay(START, now=START + timedelta(days=30)) == 0.5


def test_relevance_scores() -> None:
    exact = _entry("Statute of limitations", created_at=START)
    assert score_relevance(exact, "statute of limitations", now=START) == 1.0

    partial = _entry("statute limitations breach contract", created_at=START)
    assert score_relevance(partial, "statute limitations fraud claim", now=START) == pytest.approx(0.5)

    short_words_only = _entry("tax law", created_at=START)
    assert score_relevance(short_words_only, "tax law now", now=START) == 0.0

    discounted = _entry("statute of limitations", created_at=START, confidence=0.5)
    aged = START + timedelta(hours=24)
    assert score_relevance(discounted, "statute of limitations", now=aged) == pytest.approx(0.5 * (1 - 24 / 168))


@pytest.mark.asyncio
async def test_lookup_hit_increments_usage() -> None:
    clock = Clock()
    cache = ResultCache(now=clock)
    await cache.store("m-1", "Statute of limitations", _result(), {"jurisdiction": "DE"}, agent_type="research")

    clock.advance(minutes=5)
    first = await cache.lookup("statute of limitations", "m-1", {"jurisdiction": "DE"})
    second = await cache.lookup("statute of limitations", "m-1", {"jurisdiction": "DE"})

    assert first is not None and second is not None
    assert first.usage_count == 1
    assert second.usage_count == 2
    assert second.last_used_at == clock.value
    assert second.original_query == "Statute of limitations"
    assert await cache.lookup("statute of limitations", "m-1", {"jurisdiction": "NY"}) is None


@pytest.mark.asyncio
async def test_lookup_respects_scope() -> None:
    cache = ResultCache()
    await cache.store("m-1", "matter question", _result(), agent_type="research")
    await cache.store(None, "global question", _result(), agent_type="research")

    assert await cache.lookup("matter question", "m-2") is None
    assert await cache.lookup("matter question", None) is None
    assert await cache.lookup("matter question", "m-1") is not None
    assert await cache.lookup("global question", "m-2") is not None
    assert await cache.lookup("global question", None) is not None


@pytest.mark.asyncio
async def test_lookup_filters_agent_type() -> None:
    cache = ResultCache()
    await cache.store("m-1", "question", _result(), agent_type="research")

    assert await cache.lookup("question", "m-1", agent_type="deep-legal-research") is None
    assert await cache.lookup("question", "m-1", agent_type="research") is not None


@pytest.mark.asyncio
async def test_newest_entry_wins() -> None:
    clock = Clock()
    cache = ResultCache(now=clock)
    await cache.store("m-1", "question", _result(title="older"), agent_type="research")
    clock.advance(hours=1)
    await cache.store("m-1", "question", _result(title="newer"), agent_type="research")

    entry = await cache.lookup("question", "m-1")

    assert entry is not None and entry.title == "newer"


@pytest.mark.asyncio
async def test_expired_entries_miss_until_evicted() -> None:
    clock = Clock()
    store = InMemoryCacheStore()
    cache = ResultCache(store, now=clock)
    await cache.store("m-1", "question", _result(expiration_hours=1), agent_type="research")
    await cache.store("m-2", "other", _result(expiration_hours=1), agent_type="research")
    await cache.store("m-1", "fresh", _result(), agent_type="research")

    clock.advance(hours=2)

    assert await cache.lookup("question", "m-1") is None
    assert len(store.entries) == 3
    stats = await cache.stats("m-1")
    assert stats.total_entries == 2
    assert stats.expired_entries == 1

    assert await cache.evict("m-1") == 1
    assert await cache.evict() == 1
    assert await cache.evict() == 0
    assert [entry.original_query for entry in store.entries] == ["fresh"]


@pytest.mark.asyncio
async def test_search_and_find_related() -> None:
    clock = Clock()
    settings = CacheSettings(relevance_threshold=0.4)
    cache = ResultCache(settings=settings, now=clock)
    await cache.store(
        "m-1", "statute limitations breach contract", _result(expiration_hours=72), agent_type="research"
    )
    await cache.store("m-1", "deposition schedule", _result(), agent_type="timeline")
    clock.advance(hours=30)
    await cache.store("m-1", "statute limitations fraud claim", _result(), agent_type="research")

    recent = await cache.search("m-1")
    assert [entry.original_query for entry in recent] == ["statute limitations fraud claim"]

    research_only = await cache.search(
        "m-1", CacheSearchOptions(agent_types=["research"], max_age_hours=48, limit=10)
    )
    assert {entry.agent_type for entry in research_only} == {"research"}
    assert len(research_only) == 2

    related = await cache.find_related("m-1", "statute limitations breach contract", agent_types=["research"])
    assert [item.entry.original_query for item in related] == [
        "statute limitations breach contract",
        "statute limitations fraud claim",
    ]
    assert related[0].relevance_score == pytest.approx(1 - 30 / 168)


@pytest.mark.asyncio
async def test_backend_failures_degrade_quietly() -> None:
    cache = ResultCache(BrokenStore())

    assert await cache.store("m-1", "question", _result(), agent_type="research") is None
    assert await cache.lookup("question", "m-1") is None


@pytest.mark.asyncio
async def test_detached_writes_land_after_drain() -> None:
    cache = ResultCache()

    cache.store_detached("m-1", "question", _result(), agent_type="research")
    await cache.drain()

    assert await cache.lookup("question", "m-1") is not None


@pytest.mark.asyncio
async def test_stats_report_usage() -> None:
    cache = ResultCache()
    await cache.store("m-1", "first", _result(title="first"), agent_type="research")
    await cache.store("m-1", "second", CacheableResult(type="timeline", title="second", data={}), agent_type="timeline")
    await cache.lookup("second", "m-1")
    await cache.lookup("second", "m-1")

    stats = await cache.stats("m-1")

    assert stats.total_entries == 2
    assert stats.total_usage == 2
    assert stats.entries_by_agent == {"research": 1, "timeline": 1}
    assert stats.entries_by_type == {"legal_research": 1, "timeline": 1}
    assert stats.most_used[0]["title"] == "second"


@pytest.mark.asyncio
async def test_related_entries_must_beat_the_threshold() -> None:
    cache = ResultCache(settings=CacheSettings(relevance_threshold=0.5), now=Clock())
    await cache.store("m-1", "statute limitations fraud claim", _result(), agent_type="research")

    at_threshold = await cache.find_related("m-1", "statute limitations breach contract")
    below_threshold = await cache.find_related("m-1", "statute limitations breach contract", threshold=0.49)

    assert at_threshold == []
    assert [item.relevance_score for item in below_threshold] == [pytest.approx(0.5)]


@pytest.mark.asyncio
async def test_zero_expiration_is_not_replaced_by_the_default() -> None:
    clock = Clock()
    cache = ResultCache(now=clock)

    entry = await cache.store("m-1", "question", _result(expiration_hours=0), agent_type="research")

    assert entry is not None
    assert entry.expires_at == START
    assert await cache.lookup("question", "m-1") is None

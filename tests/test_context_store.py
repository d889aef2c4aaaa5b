"""Tests for the indexed context store."""

import asyncio
import threading
from datetime import timedelta

import pytest

from aoi_bridge.storage.context_store import (
    ContextEntry,
    ContextEntryType,
    ContextQuery,
    ContextStore,
)
from aoi_bridge.utils.errors import EntryExpiredError, EntryNotFoundError


def make_entry(**kwargs) -> ContextEntry:
    kwargs.setdefault("type", ContextEntryType.FILE)
    kwargs.setdefault("source", "test")
    kwargs.setdefault("content", "content")
    return ContextEntry(**kwargs)


def store_timeline(store: ContextStore, clock, count: int, **kwargs) -> list[ContextEntry]:
    """Store ``count`` entries one second apart."""
    stored = []
    for i in range(count):
        stored.append(store.store(make_entry(content=f"entry {i}", **kwargs)))
        clock.advance(1)
    return stored


class TestStore:
    """Tests for storing entries."""

    def test_store_assigns_id_timestamp_and_expiry(self, context_store, clock):
        """Test that missing fields are filled in."""
        entry = context_store.store(make_entry())

        assert entry.id
        assert entry.timestamp == clock.now
        assert entry.expires_at == clock.now + timedelta(seconds=3600)

    def test_store_keeps_explicit_fields(self, context_store, clock):
        """Test that provided id, timestamp and expiry are kept."""
        ts = clock.now - timedelta(minutes=5)
        expires = clock.now + timedelta(minutes=5)

        entry = context_store.store(make_entry(id="fixed", timestamp=ts, expires_at=expires))

        assert entry.id == "fixed"
        assert entry.timestamp == ts
        assert entry.expires_at == expires

    def test_entries_are_immutable(self, context_store):
        """Test that stored entries cannot be modified."""
        entry = context_store.store(make_entry())

        with pytest.raises(ValueError):
            entry.content = "changed"

    def test_non_positive_ttl_uses_default(self):
        """Test that a non-positive default TTL falls back to 24 hours."""
        store = ContextStore(default_ttl=0)
        assert store.default_ttl == timedelta(hours=24)

    def test_restoring_same_id_replaces_index_membership(self, context_store):
        """Test that re-storing an id moves it between buckets."""
        context_store.store(make_entry(id="e1", project="old"))
        context_store.store(make_entry(id="e1", project="new"))

        assert context_store.count() == 1
        assert context_store.get_by_project("old") == []
        assert [e.id for e in context_store.get_by_project("new")] == ["e1"]
        assert context_store.index_keys()["project"] == ["new"]


class TestGet:
    """Tests for fetching entries by id."""

    def test_get_returns_entry(self, context_store):
        """Test retrieving a stored entry."""
        entry = context_store.store(make_entry(content="hello"))
        assert context_store.get(entry.id).content == "hello"

    def test_get_unknown_raises_not_found(self, context_store):
        """Test that unknown ids raise EntryNotFoundError."""
        with pytest.raises(EntryNotFoundError):
            context_store.get("missing")

    def test_expiry_lifecycle(self, context_store, clock):
        """Test get until expiry, Expired after it, and removal by sweep."""
        entry = context_store.store(make_entry())
        context_store.store(make_entry(expires_at=clock.now + timedelta(days=7)))

        clock.advance(3600)
        assert context_store.get(entry.id).id == entry.id

        clock.advance(1)
        with pytest.raises(EntryExpiredError):
            context_store.get(entry.id)

        before = context_store.count()
        assert context_store.expire_old_entries() == 1
        assert context_store.count() == before - 1

        with pytest.raises(EntryNotFoundError):
            context_store.get(entry.id)


class TestQuery:
    """Tests for querying entries."""

    def test_unfiltered_query_returns_newest_first(self, context_store, clock):
        """Test that results are ordered by timestamp descending."""
        stored = store_timeline(context_store, clock, 5)

        history = context_store.query()

        assert [e.id for e in history.entries] == [e.id for e in reversed(stored)]
        assert history.total_count == 5
        assert history.has_more is False
        assert history.limit == 100

    def test_projects_are_disjoint(self, context_store, clock):
        """Test that per-project queries partition the entries."""
        p1 = store_timeline(context_store, clock, 3, project="P1")
        p2 = store_timeline(context_store, clock, 4, project="P2")
        store_timeline(context_store, clock, 2, project="P3")

        ids1 = {e.id for e in context_store.query(ContextQuery(project="P1")).entries}
        ids2 = {e.id for e in context_store.query(ContextQuery(project="P2")).entries}
        everything = context_store.query().entries

        assert ids1 == {e.id for e in p1}
        assert ids2 == {e.id for e in p2}
        assert ids1.isdisjoint(ids2)
        assert ids1 | ids2 == {e.id for e in everything if e.project in ("P1", "P2")}

    def test_filters_intersect(self, context_store):
        """Test that several dimensions are combined with AND."""
        match = context_store.store(
            make_entry(project="aoi", file="main.go", topics=["mcp", "go"])
        )
        context_store.store(make_entry(project="aoi", file="other.go", topics=["mcp"]))
        context_store.store(make_entry(project="other", file="main.go", topics=["mcp"]))
        context_store.store(
            make_entry(project="aoi", file="main.go", topics=["go"], type=ContextEntryType.TOPIC)
        )

        history = context_store.query(
            ContextQuery(project="aoi", file="main.go", topic="mcp", type=ContextEntryType.FILE)
        )

        assert [e.id for e in history.entries] == [match.id]

    def test_filter_on_unknown_key_is_empty(self, context_store):
        """Test that an unknown index key matches nothing."""
        context_store.store(make_entry(project="aoi"))

        history = context_store.query(ContextQuery(project="nope"))

        assert history.entries == []
        assert history.total_count == 0

    def test_time_range(self, context_store, clock):
        """Test since/until bounds are inclusive."""
        stored = store_timeline(context_store, clock, 5)

        history = context_store.query(
            ContextQuery(since=stored[1].timestamp, until=stored[3].timestamp)
        )

        assert [e.id for e in history.entries] == [stored[3].id, stored[2].id, stored[1].id]

    def test_naive_time_bounds_are_utc(self, context_store, clock):
        """Test that naive since/until values are treated as UTC."""
        stored = store_timeline(context_store, clock, 3)

        history = context_store.query(
            ContextQuery(since=stored[1].timestamp.replace(tzinfo=None))
        )

        assert {e.id for e in history.entries} == {stored[1].id, stored[2].id}

    def test_expired_entries_are_hidden(self, context_store, clock):
        """Test that queries skip expired entries before a sweep."""
        short = context_store.store(make_entry(expires_at=clock.now + timedelta(seconds=10)))
        keep = context_store.store(make_entry())

        clock.advance(11)
        history = context_store.query()

        assert [e.id for e in history.entries] == [keep.id]
        assert short.id not in {e.id for e in history.entries}
        assert context_store.count() == 2

    def test_pagination(self, context_store, clock):
        """Test that consecutive pages are disjoint and ordered."""
        store_timeline(context_store, clock, 25)
        limit = 10

        page1 = context_store.query(ContextQuery(limit=limit, offset=0))
        page2 = context_store.query(ContextQuery(limit=limit, offset=limit))
        full = context_store.query(ContextQuery(limit=1000))

        ids1 = [e.id for e in page1.entries]
        ids2 = [e.id for e in page2.entries]
        assert set(ids1).isdisjoint(ids2)
        assert ids1 + ids2 == [e.id for e in full.entries[: 2 * limit]]
        for page in (page1, page2):
            stamps = [e.timestamp for e in page.entries]
            assert stamps == sorted(stamps, reverse=True)
        assert page1.has_more is True
        assert page1.total_count == 25

    def test_last_page(self, context_store, clock):
        """Test the final partial page and offsets past the end."""
        store_timeline(context_store, clock, 5)

        last = context_store.query(ContextQuery(limit=3, offset=3))
        beyond = context_store.query(ContextQuery(limit=3, offset=10))

        assert len(last.entries) == 2
        assert last.has_more is False
        assert beyond.entries == []
        assert beyond.offset == 10

    def test_non_positive_limit_uses_default(self, context_store, clock):
        """Test that limit <= 0 falls back to 100."""
        store_timeline(context_store, clock, 3)

        history = context_store.query(ContextQuery(limit=0))

        assert history.limit == 100
        assert len(history.entries) == 3

    def test_convenience_reads(self, context_store):
        """Test get_by_project, get_by_file and get_by_topic."""
        entry = context_store.store(make_entry(project="aoi", file="a.go", topics=["mcp"]))
        context_store.store(make_entry(project="other"))

        assert [e.id for e in context_store.get_by_project("aoi")] == [entry.id]
        assert [e.id for e in context_store.get_by_file("a.go")] == [entry.id]
        assert [e.id for e in context_store.get_by_topic("mcp")] == [entry.id]


class TestDeleteAndStats:
    """Tests for deletion and index bookkeeping."""

    def test_delete_removes_entry_and_buckets(self, context_store):
        """Test that deleting the last member of a bucket removes the bucket."""
        entry = context_store.store(
            make_entry(project="solo", file="solo.txt", topics=["t1", "t2"])
        )
        context_store.store(make_entry(project="shared", topics=["t1"]))

        context_store.delete(entry.id)

        stats = context_store.get_stats()
        keys = context_store.index_keys()
        assert stats["total_entries"] == 1
        assert stats["projects_count"] == 1
        assert stats["files_count"] == 0
        assert stats["topics_count"] == 1
        assert keys["project"] == ["shared"]
        assert keys["file"] == []
        assert keys["topic"] == ["t1"]

    def test_returned_entries_cannot_change_index_keys(self, context_store):
        """Test that topics handed out by the store are immutable."""
        entry = context_store.store(make_entry(topics=["alpha"]))
        fetched = context_store.get(entry.id)

        assert fetched.topics == ("alpha",)
        with pytest.raises(AttributeError):
            fetched.topics.clear()

        context_store.delete(entry.id)

        assert context_store.get_stats()["topics_count"] == 0
        assert context_store.index_keys()["topic"] == []

    def test_delete_unknown_raises(self, context_store):
        """Test deleting a missing entry."""
        with pytest.raises(EntryNotFoundError):
            context_store.delete("missing")

    def test_sweep_prunes_buckets(self, context_store, clock):
        """Test that expiry cleans indexes the same way delete does."""
        context_store.store(
            make_entry(
                project="old",
                type=ContextEntryType.ACTIVITY,
                expires_at=clock.now + timedelta(seconds=1),
            )
        )
        context_store.store(make_entry(project="new"))

        clock.advance(2)
        context_store.expire_old_entries()

        stats = context_store.get_stats()
        assert stats["projects_count"] == 1
        assert stats["entries_by_type"] == {"file": 1}

    def test_stats(self, context_store):
        """Test the statistics breakdown."""
        context_store.store(make_entry(project="a", file="x", topics=["t"]))
        context_store.store(make_entry(project="b", type=ContextEntryType.PROJECT))
        context_store.store(make_entry(project="a", type=ContextEntryType.PROJECT))

        stats = context_store.get_stats()

        assert stats == {
            "total_entries": 3,
            "projects_count": 2,
            "files_count": 1,
            "topics_count": 1,
            "entries_by_type": {"file": 1, "project": 2},
        }


class TestConcurrency:
    """Tests for concurrent access."""

    def test_concurrent_store_and_query(self):
        """Test that writers and readers on threads never see partial state."""
        store = ContextStore()
        errors: list[Exception] = []

        def writer(n: int):
            for i in range(200):
                entry = store.store(make_entry(project=f"p{n}", topics=[f"t{i % 5}"]))
                if i % 3 == 0:
                    store.delete(entry.id)

        def reader():
            try:
                for _ in range(200):
                    for entry in store.query(ContextQuery(topic="t1", limit=1000)).entries:
                        assert "t1" in entry.topics
                    store.get_stats()
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        threads += [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert store.count() == 4 * (200 - 67)


class TestCleanupLoop:
    """Tests for the background expiry task."""

    @pytest.mark.asyncio
    async def test_cleanup_loop_expires_and_stops(self, clock):
        """Test that the loop sweeps periodically and stops on request."""
        store = ContextStore(default_ttl=1, cleanup_interval=0.01, clock=clock)
        store.store(make_entry())
        clock.advance(5)

        store.start_cleanup_loop()
        assert store.cleanup_running

        for _ in range(100):
            if store.count() == 0:
                break
            await asyncio.sleep(0.01)

        assert store.count() == 0
        await store.stop()
        assert not store.cleanup_running

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        """Test that stop() is safe when the loop never ran."""
        store = ContextStore()
        await store.stop()
        assert not store.cleanup_running

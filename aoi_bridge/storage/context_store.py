"""Indexed, expiring in-memory context storage.

Context entries are immutable records of derived knowledge (file changes,
project notes, fetched MCP resources) that expire after a time-to-live.
The store keeps four secondary indexes (project, file, topic, type) next to
the primary id -> entry map so queries can narrow candidates without
scanning every entry.
"""

import asyncio
import logging
import threading
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from aoi_bridge.utils.errors import EntryExpiredError, EntryNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TTL = 24 * 3600.0
DEFAULT_CLEANUP_INTERVAL = 300.0
DEFAULT_QUERY_LIMIT = 100
# Limit used by the get_by_* convenience reads
BULK_READ_LIMIT = 1000


def utcnow() -> datetime:
    return datetime.now(UTC)


class ContextEntryType(str, Enum):
    """Kind of context captured by an entry."""

    FILE = "file"
    PROJECT = "project"
    ACTIVITY = "activity"
    TOPIC = "topic"


class ContextEntry(BaseModel):
    """A single context entry. Entries are never modified once stored."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default="", description="Assigned by the store when empty")
    type: ContextEntryType
    source: str = Field(default="", description="Origin, e.g. 'mcp:filesystem'")
    content: str = ""
    summary: str = ""
    project: str | None = None
    file: str | None = None
    topics: tuple[str, ...] = ()
    timestamp: datetime | None = Field(default=None, description="Assigned by the store when unset")
    expires_at: datetime | None = Field(
        default=None, description="Assigned from the store's default TTL when unset"
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp", "expires_at")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at


class ContextQuery(BaseModel):
    """Filter for ContextStore.query(). Empty dimensions are not filtered on."""

    project: str | None = None
    file: str | None = None
    topic: str | None = None
    type: ContextEntryType | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int = DEFAULT_QUERY_LIMIT
    offset: int = Field(default=0, ge=0)

    @field_validator("since", "until")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        """Naive datetimes are taken to be UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


class ContextHistory(BaseModel):
    """One page of query results, newest first."""

    entries: list[ContextEntry] = Field(default_factory=list)
    total_count: int = 0
    offset: int = 0
    limit: int = DEFAULT_QUERY_LIMIT
    has_more: bool = False


class ContextStore:
    """
    Thread-safe, multi-indexed, TTL-bound repository of context entries.

    All reads and writes take the same lock, so a query never observes an
    entry that is only partially inserted or removed. Expired entries are
    hidden from reads immediately and physically removed by delete(),
    expire_old_entries() or the background cleanup loop.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize context store.

        Args:
            default_ttl: Time-to-live in seconds for entries stored without an
                expiry. Non-positive values fall back to 24 hours.
            cleanup_interval: Seconds between background expiry sweeps
            clock: Returns the current time (timezone-aware)
        """
        self.default_ttl = timedelta(seconds=default_ttl if default_ttl > 0 else DEFAULT_TTL)
        self.cleanup_interval = cleanup_interval
        self._clock = clock

        self._lock = threading.RLock()
        self._entries: dict[str, ContextEntry] = {}
        self._project_index: dict[str, set[str]] = {}
        self._file_index: dict[str, set[str]] = {}
        self._topic_index: dict[str, set[str]] = {}
        self._type_index: dict[ContextEntryType, set[str]] = {}

        self._cleanup_task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

    # Background expiry

    def start_cleanup_loop(self) -> None:
        """Start the background task that evicts expired entries."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._stop_event = asyncio.Event()
            self._cleanup_task = asyncio.create_task(
                self._cleanup_loop(self._stop_event), name="context-store-cleanup"
            )

    async def _cleanup_loop(self, stop_event: asyncio.Event) -> None:
        """Periodically remove entries past their expiry until stopped."""
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), self.cleanup_interval)
            except TimeoutError:
                removed = self.expire_old_entries()
                if removed:
                    logger.info(f"Evicted {removed} expired context entries")

    async def stop(self) -> None:
        """Stop the background cleanup loop and wait for it to finish."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._cleanup_task is not None:
            await self._cleanup_task
            self._cleanup_task = None
        self._stop_event = None

    @property
    def cleanup_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    # Writes

    def store(self, entry: ContextEntry) -> ContextEntry:
        """
        Add an entry, assigning id, timestamp and expiry where unset.

        Storing an id that already exists replaces the previous entry.

        Returns:
            The entry as stored
        """
        now = self._clock()
        updates: dict[str, Any] = {}
        if not entry.id:
            updates["id"] = str(uuid.uuid4())
        if entry.timestamp is None:
            updates["timestamp"] = now
        if entry.expires_at is None:
            updates["expires_at"] = now + self.default_ttl
        if updates:
            entry = entry.model_copy(update=updates)

        with self._lock:
            previous = self._entries.get(entry.id)
            if previous is not None:
                self._unindex(previous)
            self._entries[entry.id] = entry
            self._index(entry)

        logger.debug(f"Stored context entry {entry.id} ({entry.type.value}) from {entry.source}")
        return entry

    def delete(self, entry_id: str) -> None:
        """
        Remove an entry and its index references.

        Raises:
            EntryNotFoundError: If no entry has this id
        """
        with self._lock:
            entry = self._entries.pop(entry_id, None)
            if entry is None:
                raise EntryNotFoundError(entry_id)
            self._unindex(entry)

    def expire_old_entries(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [entry for entry in self._entries.values() if entry.is_expired(now)]
            for entry in expired:
                del self._entries[entry.id]
                self._unindex(entry)
        return len(expired)

    def _index(self, entry: ContextEntry) -> None:
        if entry.project:
            self._project_index.setdefault(entry.project, set()).add(entry.id)
        if entry.file:
            self._file_index.setdefault(entry.file, set()).add(entry.id)
        for topic in entry.topics:
            self._topic_index.setdefault(topic, set()).add(entry.id)
        self._type_index.setdefault(entry.type, set()).add(entry.id)

    def _unindex(self, entry: ContextEntry) -> None:
        if entry.project:
            _discard(self._project_index, entry.project, entry.id)
        if entry.file:
            _discard(self._file_index, entry.file, entry.id)
        for topic in entry.topics:
            _discard(self._topic_index, topic, entry.id)
        _discard(self._type_index, entry.type, entry.id)

    # Reads

    def get(self, entry_id: str) -> ContextEntry:
        """
        Fetch an entry by id.

        Raises:
            EntryNotFoundError: If the entry was never stored or has been removed
            EntryExpiredError: If the entry is present but past its expiry
        """
        with self._lock:
            entry = self._entries.get(entry_id)
        if entry is None:
            raise EntryNotFoundError(entry_id)
        if entry.is_expired(self._clock()):
            raise EntryExpiredError(entry_id)
        return entry

    def query(self, query: ContextQuery | None = None) -> ContextHistory:
        """
        Find live entries matching every non-empty filter dimension.

        Results are ordered newest first and paginated by offset/limit.
        A non-positive limit uses the default of 100.
        """
        query = query or ContextQuery()
        limit = query.limit if query.limit > 0 else DEFAULT_QUERY_LIMIT
        now = self._clock()

        with self._lock:
            id_sets: list[set[str]] = []
            if query.project:
                id_sets.append(self._project_index.get(query.project, set()))
            if query.file:
                id_sets.append(self._file_index.get(query.file, set()))
            if query.topic:
                id_sets.append(self._topic_index.get(query.topic, set()))
            if query.type:
                id_sets.append(self._type_index.get(query.type, set()))

            candidates = _intersect(id_sets) if id_sets else self._entries.keys()

            matches = []
            for entry_id in candidates:
                entry = self._entries.get(entry_id)
                if entry is None or entry.is_expired(now):
                    continue
                if query.since and entry.timestamp and entry.timestamp < query.since:
                    continue
                if query.until and entry.timestamp and entry.timestamp > query.until:
                    continue
                matches.append(entry)

        # Newest first; id breaks ties so pages are stable
        matches.sort(key=lambda e: (e.timestamp or now, e.id), reverse=True)

        total = len(matches)
        start = min(query.offset, total)
        end = min(start + limit, total)
        return ContextHistory(
            entries=matches[start:end],
            total_count=total,
            offset=query.offset,
            limit=limit,
            has_more=end < total,
        )

    def get_by_project(self, project: str) -> list[ContextEntry]:
        return self.query(ContextQuery(project=project, limit=BULK_READ_LIMIT)).entries

    def get_by_file(self, file: str) -> list[ContextEntry]:
        return self.query(ContextQuery(file=file, limit=BULK_READ_LIMIT)).entries

    def get_by_topic(self, topic: str) -> list[ContextEntry]:
        return self.query(ContextQuery(topic=topic, limit=BULK_READ_LIMIT)).entries

    def count(self) -> int:
        """Number of stored entries, including expired ones not yet swept."""
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        """
        Get store statistics.

        Returns:
            Dictionary with total_entries, projects_count, files_count,
            topics_count and entries_by_type
        """
        with self._lock:
            return {
                "total_entries": len(self._entries),
                "projects_count": len(self._project_index),
                "files_count": len(self._file_index),
                "topics_count": len(self._topic_index),
                "entries_by_type": {
                    entry_type.value: len(ids) for entry_type, ids in self._type_index.items()
                },
            }

    def index_keys(self) -> dict[str, list[str]]:
        """Current keys of every index, for inspection."""
        with self._lock:
            return {
                "project": sorted(self._project_index),
                "file": sorted(self._file_index),
                "topic": sorted(self._topic_index),
                "type": sorted(t.value for t in self._type_index),
            }


def _discard(index: dict[Any, set[str]], key: Any, entry_id: str) -> None:
    """Remove an id from an index bucket, dropping the bucket once empty."""
    bucket = index.get(key)
    if bucket is None:
        return
    bucket.discard(entry_id)
    if not bucket:
        del index[key]


def _intersect(id_sets: list[set[str]]) -> set[str]:
    """Intersect id sets, iterating over the smallest one."""
    smallest = min(id_sets, key=len)
    others = [s for s in id_sets if s is not smallest]
    return {entry_id for entry_id in smallest if all(entry_id in s for s in others)}

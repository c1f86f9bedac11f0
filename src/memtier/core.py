"""Memory lifecycle orchestrator — wires the tiers together from configuration.

Responsibilities:
1. Build the live store, scanner, archive store and eviction engine
2. Record writing — persist a live record, then run Check-and-archive
3. Scope lanes — serialize async writers per scope
4. Pass-through entry points for schedulers, CLIs and search features
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime

from memtier.config import MemtierConfig
from memtier.memory.archive import ArchiveStore, SearchResult
from memtier.memory.eviction import ArchiveCheckResult, ArchiveResult, EvictionEngine
from memtier.memory.restore import Restorer, RestoreResult
from memtier.memory.scanner import CacheScanner, CacheSize
from memtier.memory.store import LiveStore, RecordRef

logger = logging.getLogger(__name__)


class MemoryLifecycle:
    """Entry point for callers that write, size, evict and read memories."""

    def __init__(self, config: MemtierConfig) -> None:
        self.config = config
        root = config.sessions_dir
        self.store = LiveStore(root)
        self.scanner = CacheScanner(self.store)
        self.archive = ArchiveStore(root, lock_timeout=config.archive.lock_timeout)
        self.engine = EvictionEngine(
            self.store,
            self.scanner,
            self.archive,
            retention_days=config.archive.retention_days,
            cache_size_threshold_mb=config.archive.cache_size_threshold_mb,
        )
        self.restorer = Restorer(self.store, self.archive)
        self._lane_locks: dict[str, asyncio.Lock] = {}  # per-scope serialization

    # ── Scope lanes ──────────────────────────────────────────

    def _get_lane_lock(self, scope: str) -> asyncio.Lock:
        if scope not in self._lane_locks:
            self._lane_locks[scope] = asyncio.Lock()
        return self._lane_locks[scope]

    # ── Record writing ───────────────────────────────────────

    def record(
        self,
        scope: str,
        session_id: str,
        content: str,
        *,
        title: str | None = None,
        summary: str | None = None,
        tags: list[str] | None = None,
        created: date | None = None,
        last_used: datetime | None = None,
    ) -> tuple[RecordRef, ArchiveCheckResult | None]:
        """Persist a new live record, then enforce the scope's size threshold.

        An archived copy of the same session is dropped: the new live record
        supersedes it.
        """
        ref = self.store.save(
            scope,
            session_id,
            content,
            title=title,
            summary=summary,
            tags=tags,
            created=created,
            last_used=last_used,
        )
        if self.archive.discard(scope, session_id):
            logger.info("Dropped archived copy of %s/%s superseded by a new write", scope, session_id)
        check = None
        if self.config.archive.auto_archive:
            check = self.engine.check_and_archive(scope=scope)
            if check.triggered:
                logger.info(
                    "Auto-archive in %s: %d archived, now %.2f MB",
                    scope,
                    check.archived,
                    check.final_size_mb,
                )
        return ref, check

    async def arecord(
        self, scope: str, session_id: str, content: str, **kwargs
    ) -> tuple[RecordRef, ArchiveCheckResult | None]:
        """Async ``record``; writers to the same scope run one at a time."""
        async with self._get_lane_lock(scope):
            return await asyncio.to_thread(self.record, scope, session_id, content, **kwargs)

    # ── Sizing & eviction ────────────────────────────────────

    def scan(self, scope: str | None = None) -> CacheSize:
        return self.scanner.scan(scope)

    def archive_by_age(
        self,
        retention_days: int | None = None,
        scope: str | None = None,
        *,
        limit: int | None = None,
        dry_run: bool = False,
    ) -> ArchiveResult:
        return self.engine.archive_by_age(retention_days, scope, limit=limit, dry_run=dry_run)

    def archive_to_threshold(
        self, target_mb: float | None = None, scope: str | None = None
    ) -> ArchiveCheckResult:
        return self.engine.archive_to_threshold(target_mb, scope)

    def check_and_archive(
        self, target_mb: float | None = None, scope: str | None = None
    ) -> ArchiveCheckResult:
        return self.engine.check_and_archive(target_mb, scope)

    async def acheck_and_archive(
        self, target_mb: float | None = None, scope: str | None = None
    ) -> ArchiveCheckResult:
        if scope is None:
            return await asyncio.to_thread(self.engine.check_and_archive, target_mb, None)
        async with self._get_lane_lock(scope):
            return await asyncio.to_thread(self.engine.check_and_archive, target_mb, scope)

    # ── Cold reads ───────────────────────────────────────────

    def search(self, query: str, scope: str | None = None) -> SearchResult:
        return self.archive.search(scope, query)

    def load_archived(self, scope: str, session_id: str) -> str | None:
        return self.archive.load_one(scope, session_id)

    async def asearch(self, query: str, scope: str | None = None) -> SearchResult:
        return await asyncio.to_thread(self.archive.search, scope, query)

    def restore(self, scope: str, **kwargs) -> RestoreResult:
        return self.restorer.restore(scope, **kwargs)

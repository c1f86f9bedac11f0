"""Eviction engine — move cold live records into the archive store.

Two policies share one primitive, candidate discovery:

- Age: archive every record whose days since ``lastUsed`` reach the
  retention threshold. Creation date plays no part in eligibility.
- Size: while a scope (or the whole store) measures above a target, archive
  the least recently used record, larger first on ties. No minimum age.

Every record is archived as one step: append to the bundle for its creation
month, then delete the live directory. A failure on one record is reported in
the result and the batch carries on.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime

from memtier.config import DEFAULT_CACHE_SIZE_THRESHOLD_MB, DEFAULT_RETENTION_DAYS
from memtier.memory.archive import ArchivedEntry, ArchiveStore
from memtier.memory.scanner import CacheScanner
from memtier.memory.store import BYTES_PER_MB, LiveRecord, LiveStore, utcnow

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 24 * 60 * 60

# Errors that fail one record's eviction without aborting the batch
_RECORD_ERRORS = (OSError, ValueError, TimeoutError)


@dataclass
class EvictionCandidate:
    """A live record eligible for archival. Never persisted."""

    record: LiveRecord
    days_since_last_use: int

    @property
    def scope(self) -> str:
        return self.record.ref.scope

    @property
    def session_id(self) -> str:
        return self.record.ref.session_id

    @property
    def size_bytes(self) -> int:
        return self.record.size_bytes

    @property
    def metadata(self) -> dict:
        return self.record.metadata

    def lru_key(self) -> tuple:
        """Oldest use first; larger first on ties; then a stable name order."""
        return (self.record.last_used, -self.size_bytes, self.scope, self.session_id)


@dataclass
class EvictionFailure:
    """One record whose archival did not complete."""

    scope: str
    session_id: str
    error: str


@dataclass
class ArchiveResult:
    """Outcome of an age-based (or explicit-list) archival batch."""

    archived: int = 0
    freed_bytes: int = 0
    by_scope: dict[str, int] = field(default_factory=dict)
    freed_by_scope: dict[str, int] = field(default_factory=dict)
    failures: list[EvictionFailure] = field(default_factory=list)
    dry_run: bool = False

    @property
    def freed_mb(self) -> float:
        return self.freed_bytes / BYTES_PER_MB

    def _add(self, candidate: EvictionCandidate) -> None:
        self.archived += 1
        self.freed_bytes += candidate.size_bytes
        self.by_scope[candidate.scope] = self.by_scope.get(candidate.scope, 0) + 1
        self.freed_by_scope[candidate.scope] = (
            self.freed_by_scope.get(candidate.scope, 0) + candidate.size_bytes
        )

    def to_dict(self) -> dict:
        return {
            "archived": self.archived,
            "freedMB": round(self.freed_mb, 4),
            "byScope": dict(self.by_scope),
            "dryRun": self.dry_run,
            "failures": [f.__dict__ for f in self.failures],
        }


@dataclass
class ArchiveCheckResult:
    """Outcome of size-pressure archival."""

    triggered: bool
    target_mb: float
    archived: int = 0
    initial_size_bytes: int = 0
    final_size_bytes: int = 0
    freed_bytes: int = 0
    by_scope: dict[str, int] = field(default_factory=dict)
    failures: list[EvictionFailure] = field(default_factory=list)

    @property
    def final_size_mb(self) -> float:
        return self.final_size_bytes / BYTES_PER_MB

    @property
    def target_reached(self) -> bool:
        return self.final_size_bytes <= self.target_mb * BYTES_PER_MB

    def to_dict(self) -> dict:
        return {
            "triggered": self.triggered,
            "archived": self.archived,
            "finalCacheSizeMB": round(self.final_size_mb, 4),
            "targetMB": self.target_mb,
            "targetReached": self.target_reached,
            "freedMB": round(self.freed_bytes / BYTES_PER_MB, 4),
            "byScope": dict(self.by_scope),
            "failures": [f.__dict__ for f in self.failures],
        }


class EvictionEngine:
    """Age- and size-driven archival of live memory records."""

    def __init__(
        self,
        store: LiveStore,
        scanner: CacheScanner,
        archive: ArchiveStore,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        cache_size_threshold_mb: float = DEFAULT_CACHE_SIZE_THRESHOLD_MB,
    ) -> None:
        self.store = store
        self.scanner = scanner
        self.archive = archive
        self.retention_days = retention_days
        self.cache_size_threshold_mb = cache_size_threshold_mb

    # ── Candidate discovery ──────────────────────────────────

    def _load_pool(self, scope: str | None, now: datetime) -> list[EvictionCandidate]:
        """Every live record with readable metadata, as a candidate."""
        pool = []
        for ref in self.store.iter_records(scope):
            try:
                record = self.store.load(ref)
            except (ValueError, OSError) as e:
                logger.warning("Excluding %s/%s from eviction: %s", ref.scope, ref.session_id, e)
                continue
            elapsed = (now - record.last_used).total_seconds()
            days = math.floor(elapsed / _SECONDS_PER_DAY)
            pool.append(EvictionCandidate(record=record, days_since_last_use=days))
        pool.sort(key=EvictionCandidate.lru_key)
        return pool

    def find_candidates(
        self,
        scope: str | None = None,
        retention_days: int | None = None,
        *,
        now: datetime | None = None,
    ) -> list[EvictionCandidate]:
        """Records unused for at least ``retention_days`` whole days, LRU first."""
        days = self.retention_days if retention_days is None else retention_days
        if days < 0:
            raise ValueError(f"retention_days must be >= 0, got {days}")
        pool = self._load_pool(scope, now or utcnow())
        return [c for c in pool if c.days_since_last_use >= days]

    # ── Archival ─────────────────────────────────────────────

    def _archive_one(self, candidate: EvictionCandidate, now: datetime) -> None:
        ref = candidate.record.ref
        entry = ArchivedEntry.from_record(candidate.record, archived_at=now)
        self.archive.append(ref.scope, ref.year_month, entry)
        self.store.delete(ref)
        logger.info(
            "Archived %s/%s to %s (%d bytes, unused %d days)",
            ref.scope,
            ref.session_id,
            ref.year_month,
            candidate.size_bytes,
            candidate.days_since_last_use,
        )

    def archive_candidates(
        self,
        candidates: list[EvictionCandidate],
        *,
        now: datetime | None = None,
    ) -> ArchiveResult:
        """Archive an explicit candidate list. Callers cap the list to bound the work."""
        now = now or utcnow()
        result = ArchiveResult()
        for candidate in candidates:
            try:
                self._archive_one(candidate, now)
            except _RECORD_ERRORS as e:
                logger.error(
                    "Failed to archive %s/%s: %s", candidate.scope, candidate.session_id, e
                )
                result.failures.append(
                    EvictionFailure(candidate.scope, candidate.session_id, str(e))
                )
                continue
            result._add(candidate)
        return result

    def archive_by_age(
        self,
        retention_days: int | None = None,
        scope: str | None = None,
        *,
        limit: int | None = None,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> ArchiveResult:
        """Archive every record unused for ``retention_days`` or more."""
        now = now or utcnow()
        candidates = self.find_candidates(scope, retention_days, now=now)
        if limit is not None:
            if limit < 0:
                raise ValueError(f"limit must be >= 0, got {limit}")
            candidates = candidates[:limit]

        if dry_run:
            result = ArchiveResult(dry_run=True)
            for candidate in candidates:
                result._add(candidate)
            return result

        result = self.archive_candidates(candidates, now=now)
        logger.info(
            "Age archival: %d archived, %.2f MB freed, %d failed",
            result.archived,
            result.freed_mb,
            len(result.failures),
        )
        return result

    def archive_to_threshold(
        self,
        target_mb: float | None = None,
        scope: str | None = None,
        *,
        now: datetime | None = None,
    ) -> ArchiveCheckResult:
        """Archive LRU records one at a time until measured size <= ``target_mb``.

        With no scope, the whole store is one pool: the globally least recently
        used record goes first, whichever scope holds it. Running out of
        candidates ends the loop and is reported through ``target_reached``.
        """
        target = self._validate_target(target_mb)
        target_bytes = target * BYTES_PER_MB
        now = now or utcnow()

        current = self.scanner.size_bytes(scope)
        result = ArchiveCheckResult(
            triggered=current > target_bytes,
            target_mb=target,
            initial_size_bytes=current,
            final_size_bytes=current,
        )
        if not result.triggered:
            return result

        pool = self._load_pool(scope, now)
        while current > target_bytes and pool:
            candidate = pool.pop(0)
            try:
                self._archive_one(candidate, now)
            except _RECORD_ERRORS as e:
                logger.error(
                    "Failed to archive %s/%s: %s", candidate.scope, candidate.session_id, e
                )
                result.failures.append(
                    EvictionFailure(candidate.scope, candidate.session_id, str(e))
                )
                continue
            result.archived += 1
            result.freed_bytes += candidate.size_bytes
            result.by_scope[candidate.scope] = result.by_scope.get(candidate.scope, 0) + 1
            current = self.scanner.size_bytes(scope)

        result.final_size_bytes = current
        if current > target_bytes:
            logger.warning(
                "Candidates exhausted at %.2f MB (target %.2f MB)", current / BYTES_PER_MB, target
            )
        else:
            logger.info(
                "Size archival: %d archived, now %.2f MB (target %.2f MB)",
                result.archived,
                current / BYTES_PER_MB,
                target,
            )
        return result

    def check_and_archive(
        self,
        target_mb: float | None = None,
        scope: str | None = None,
        *,
        now: datetime | None = None,
    ) -> ArchiveCheckResult:
        """Archive down to ``target_mb`` only if the store is currently above it."""
        target = self._validate_target(target_mb)
        size = self.scanner.size_bytes(scope)
        if size <= target * BYTES_PER_MB:
            return ArchiveCheckResult(
                triggered=False,
                target_mb=target,
                initial_size_bytes=size,
                final_size_bytes=size,
            )
        return self.archive_to_threshold(target, scope, now=now)

    def _validate_target(self, target_mb: float | None) -> float:
        target = self.cache_size_threshold_mb if target_mb is None else target_mb
        if not target > 0:
            raise ValueError(f"target_mb must be positive, got {target}")
        return float(target)

"""Shared fixtures for memory lifecycle tests."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

from memtier.memory.archive import ArchiveStore
from memtier.memory.eviction import EvictionEngine
from memtier.memory.scanner import CacheScanner
from memtier.memory.store import BYTES_PER_MB, LiveStore

NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def root(tmp_path: Path) -> Path:
    return tmp_path / "sessions"


@pytest.fixture
def store(root: Path) -> LiveStore:
    return LiveStore(root)


@pytest.fixture
def scanner(store: LiveStore) -> CacheScanner:
    return CacheScanner(store)


@pytest.fixture
def archive(root: Path) -> ArchiveStore:
    return ArchiveStore(root, lock_timeout=2.0)


@pytest.fixture
def engine(store: LiveStore, scanner: CacheScanner, archive: ArchiveStore) -> EvictionEngine:
    return EvictionEngine(store, scanner, archive)


def days_ago(days: float, now: datetime = NOW) -> datetime:
    return now - timedelta(days=days)


def save(
    store: LiveStore,
    scope: str,
    session_id: str,
    *,
    unused_days: float = 0,
    created_days_ago: float | None = None,
    size_mb: float = 0,
    content: str | None = None,
    **kwargs,
):
    """Write a live record relative to NOW."""
    created_days_ago = unused_days if created_days_ago is None else created_days_ago
    created: date = days_ago(created_days_ago).date()
    if content is None:
        content = "x" * int(size_mb * BYTES_PER_MB) if size_mb else f"memory of {session_id}"
    return store.save(
        scope,
        session_id,
        content,
        created=created,
        last_used=days_ago(unused_days),
        **kwargs,
    )

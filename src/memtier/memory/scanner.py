"""Cache scanner — size and record-count facts about the live store.

Pure read. A missing scope root counts as zero, and unreadable entries are
skipped rather than failing the scan.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from memtier.memory.store import BYTES_PER_MB, LiveStore, measure

logger = logging.getLogger(__name__)


@dataclass
class ScopeUsage:
    """Live-store footprint of one scope."""

    size_bytes: int = 0
    record_count: int = 0
    file_count: int = 0

    @property
    def size_mb(self) -> float:
        return self.size_bytes / BYTES_PER_MB


@dataclass
class CacheSize:
    """Aggregate of per-scope usage. Totals are sums; scopes are never merged."""

    by_scope: dict[str, ScopeUsage] = field(default_factory=dict)

    @property
    def size_bytes(self) -> int:
        return sum(u.size_bytes for u in self.by_scope.values())

    @property
    def total_size_mb(self) -> float:
        return self.size_bytes / BYTES_PER_MB

    @property
    def record_count(self) -> int:
        return sum(u.record_count for u in self.by_scope.values())

    @property
    def file_count(self) -> int:
        return sum(u.file_count for u in self.by_scope.values())

    def to_dict(self) -> dict:
        return {
            "totalSizeMB": round(self.total_size_mb, 4),
            "recordCount": self.record_count,
            "fileCount": self.file_count,
            "byScope": {
                scope: {
                    "sizeMB": round(u.size_mb, 4),
                    "records": u.record_count,
                    "files": u.file_count,
                }
                for scope, u in self.by_scope.items()
            },
        }


class CacheScanner:
    """Walk the live layout and report how much space it occupies."""

    def __init__(self, store: LiveStore) -> None:
        self.store = store

    def scan(self, scope: str | None = None) -> CacheSize:
        """Measure one scope, or every scope when ``scope`` is None."""
        result = CacheSize()
        scopes = [scope] if scope is not None else self.store.scopes()
        for name in scopes:
            result.by_scope[name] = self.scan_scope(name)
        logger.debug(
            "Scanned %d scope(s): %d records, %d bytes",
            len(scopes),
            result.record_count,
            result.size_bytes,
        )
        return result

    def scan_scope(self, scope: str) -> ScopeUsage:
        usage = ScopeUsage()
        for ref in self.store.iter_records(scope):
            size_bytes, file_count = measure(ref.path)
            usage.size_bytes += size_bytes
            usage.file_count += file_count
            usage.record_count += 1
        return usage

    def size_bytes(self, scope: str | None = None) -> int:
        return self.scan(scope).size_bytes

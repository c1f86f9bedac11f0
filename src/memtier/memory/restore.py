"""Restore archived memories back into the live store.

Selection is by session id, bundle month, search query, or everything in a
scope. A restored record gets ``lastUsed = now`` so the next age-based run
does not send it straight back to the archive.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime

from memtier.memory.archive import ArchivedEntry, ArchiveStore, BundleFailure, validate_year_month
from memtier.memory.eviction import EvictionFailure
from memtier.memory.store import LiveStore, utcnow, validate_name

logger = logging.getLogger(__name__)


def parse_restore_month(value: str) -> str:
    """Accept YYYY-MM or YYYY-MM-DD and return the YYYY-MM bundle key."""
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", value):
        date.fromisoformat(value)
        return value[:7]
    return validate_year_month(value)


@dataclass
class RestoreItem:
    """One archived entry selected for restore."""

    session_id: str
    summary: str | None
    source: str

    def to_dict(self) -> dict:
        return {"sessionId": self.session_id, "summary": self.summary, "source": self.source}


@dataclass
class RestoreResult:
    selected: list[RestoreItem] = field(default_factory=list)
    restored: int = 0
    preview: bool = False
    failures: list[EvictionFailure] = field(default_factory=list)
    bundle_failures: list[BundleFailure] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "selected": [i.to_dict() for i in self.selected],
            "restored": self.restored,
            "preview": self.preview,
            "failures": [f.__dict__ for f in self.failures],
            "bundleFailures": [
                {"path": str(f.path), "error": f.error} for f in self.bundle_failures
            ],
        }


class Restorer:
    """Move archived entries back to their live record paths."""

    def __init__(self, store: LiveStore, archive: ArchiveStore) -> None:
        self.store = store
        self.archive = archive

    def select(
        self,
        scope: str,
        *,
        session_id: str | None = None,
        month: str | None = None,
        query: str | None = None,
        restore_all: bool = False,
    ) -> tuple[list[tuple[str, ArchivedEntry]], list[BundleFailure]]:
        """(bundle month, entry) pairs matching every given filter."""
        if not (session_id or month or query or restore_all):
            raise ValueError("Specify a session id, month, query, or restore_all")
        validate_name(scope)
        month_key = parse_restore_month(month) if month else None

        selected: list[tuple[str, ArchivedEntry]] = []
        failures: list[BundleFailure] = []
        for year_month, path in self.archive.list_bundles(scope):
            if month_key and year_month != month_key:
                continue
            try:
                entries = self.archive.read_bundle(scope, year_month)
            except (ValueError, OSError) as e:
                logger.warning("Skipped corrupted archive: %s (%s)", path.name, e)
                failures.append(BundleFailure(path, str(e)))
                continue
            for entry in entries:
                if session_id and entry.session_id != session_id:
                    continue
                if query and not entry.matches(query):
                    continue
                selected.append((year_month, entry))
        return selected, failures

    def restore(
        self,
        scope: str,
        *,
        session_id: str | None = None,
        month: str | None = None,
        query: str | None = None,
        restore_all: bool = False,
        preview: bool = False,
        now: datetime | None = None,
    ) -> RestoreResult:
        selected, bundle_failures = self.select(
            scope, session_id=session_id, month=month, query=query, restore_all=restore_all
        )
        result = RestoreResult(
            selected=[RestoreItem(e.session_id, e.summary, ym) for ym, e in selected],
            preview=preview,
            bundle_failures=bundle_failures,
        )
        if preview:
            return result

        now = now or utcnow()
        for year_month, entry in selected:
            try:
                self._restore_one(scope, year_month, entry, now)
            except (OSError, ValueError, TimeoutError) as e:
                logger.error("Failed to restore %s/%s: %s", scope, entry.session_id, e)
                result.failures.append(EvictionFailure(scope, entry.session_id, str(e)))
                continue
            result.restored += 1
        logger.info("Restored %d of %d archived memories in %s", result.restored, len(selected), scope)
        return result

    def _restore_one(self, scope: str, year_month: str, entry: ArchivedEntry, now: datetime) -> None:
        # A live copy left behind by an interrupted eviction wins over the archive
        if self.store.find(scope, entry.session_id) is None:
            metadata = {k: v for k, v in entry.metadata.items() if k != "usage"}
            usage = entry.metadata.get("usage")
            times_used = usage.get("timesUsed", 0) if isinstance(usage, dict) else 0
            self.store.save(
                scope,
                entry.session_id,
                entry.content,
                title=entry.title,
                summary=entry.summary,
                tags=entry.tags,
                created=self._created_on(entry, year_month),
                last_used=now,
                times_used=int(times_used or 0),
                metadata=metadata,
            )
        self.archive.remove(scope, year_month, entry.session_id)
        logger.info("Restored %s/%s from %s", scope, entry.session_id, year_month)

    def _created_on(self, entry: ArchivedEntry, year_month: str) -> date:
        if entry.created_on:
            try:
                return date.fromisoformat(entry.created_on)
            except ValueError:
                pass
        year, month = year_month.split("-")
        return date(int(year), int(month), 1)

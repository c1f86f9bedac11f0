"""Archive store — month-partitioned cold storage for evicted memory records.

One bundle per (scope, YYYY-MM) at ``{scope}/.archives/memories-archive-YYYY-MM.json``.
The month is the record's creation month, not the month it was archived in.
Bundles are never held in memory between calls: search and load re-read disk.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from memtier.memory.locking import bundle_lock, write_json_atomic
from memtier.memory.store import (
    ARCHIVES_DIR,
    format_timestamp,
    list_scopes,
    utcnow,
    validate_name,
)

if TYPE_CHECKING:
    from memtier.memory.store import LiveRecord

logger = logging.getLogger(__name__)

BUNDLE_PREFIX = "memories-archive-"
_BUNDLE_RE = re.compile(r"^memories-archive-(\d{4}-\d{2})\.json$")
_YEAR_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def validate_year_month(value: str) -> str:
    if not isinstance(value, str) or not _YEAR_MONTH_RE.match(value):
        raise ValueError(f"Invalid archive month {value!r}: expected YYYY-MM")
    return value


@dataclass
class ArchivedEntry:
    """Frozen copy of a live record at the moment it was archived."""

    session_id: str
    scope: str
    content: str
    archived_at: str
    original_last_used: str
    title: str | None = None
    summary: str | None = None
    tags: list[str] | None = None
    created_on: str | None = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: LiveRecord, archived_at: datetime | None = None) -> ArchivedEntry:
        tags = record.tags
        return cls(
            session_id=record.ref.session_id,
            scope=record.ref.scope,
            content=record.content,
            archived_at=format_timestamp(archived_at or utcnow()),
            original_last_used=format_timestamp(record.last_used),
            title=record.title,
            summary=record.summary,
            tags=tags or None,
            created_on=record.ref.created.isoformat(),
            metadata=dict(record.metadata),
        )

    @classmethod
    def from_dict(cls, data: object) -> ArchivedEntry:
        if not isinstance(data, dict) or not isinstance(data.get("sessionId"), str):
            raise ValueError("archive entry without a sessionId")
        tags = data.get("tags")
        metadata = data.get("metadata")
        return cls(
            session_id=data["sessionId"],
            scope=str(data.get("nodeId", "")),
            content=str(data.get("content", "")),
            archived_at=str(data.get("archivedAt", "")),
            original_last_used=str(data.get("originalLastUsed", "")),
            title=data.get("title"),
            summary=data.get("summary"),
            tags=[str(t) for t in tags] if isinstance(tags, list) else None,
            created_on=data.get("createdOn"),
            metadata=metadata if isinstance(metadata, dict) else {},
        )

    def to_dict(self) -> dict:
        data: dict = {"sessionId": self.session_id, "nodeId": self.scope}
        if self.title is not None:
            data["title"] = self.title
        if self.summary is not None:
            data["summary"] = self.summary
        if self.tags is not None:
            data["tags"] = list(self.tags)
        data["content"] = self.content
        data["originalLastUsed"] = self.original_last_used
        data["archivedAt"] = self.archived_at
        if self.created_on is not None:
            data["createdOn"] = self.created_on
        data["metadata"] = self.metadata
        return data

    def matches(self, query: str) -> bool:
        """Case-insensitive substring match on title, summary or any tag."""
        q = query.lower()
        fields = [self.title or "", self.summary or "", *(self.tags or [])]
        return any(q in str(f).lower() for f in fields)


@dataclass
class BundleFailure:
    """A bundle that could not be read."""

    path: Path
    error: str


@dataclass
class SearchResult:
    """Matches from every readable bundle plus the bundles that failed."""

    entries: list[ArchivedEntry] = field(default_factory=list)
    failures: list[BundleFailure] = field(default_factory=list)
    bundles_read: int = 0

    @property
    def partial(self) -> bool:
        return bool(self.failures)

    def to_dict(self) -> dict:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "bundlesRead": self.bundles_read,
            "failures": [{"path": str(f.path), "error": f.error} for f in self.failures],
        }


class ArchiveStore:
    """Append, search and load archived memory entries."""

    def __init__(self, root: Path, lock_timeout: float = 10.0) -> None:
        self.root = root
        self.lock_timeout = lock_timeout

    # ── Paths ────────────────────────────────────────────────

    def archives_dir(self, scope: str) -> Path:
        return self.root / validate_name(scope) / ARCHIVES_DIR

    def bundle_path(self, scope: str, year_month: str) -> Path:
        validate_year_month(year_month)
        return self.archives_dir(scope) / f"{BUNDLE_PREFIX}{year_month}.json"

    def list_bundles(self, scope: str) -> list[tuple[str, Path]]:
        """(YYYY-MM, path) for each bundle of a scope, oldest month first."""
        archives = self.archives_dir(scope)
        if not archives.is_dir():
            return []
        bundles = []
        for path in archives.iterdir():
            match = _BUNDLE_RE.match(path.name)
            if match and path.is_file():
                bundles.append((match.group(1), path))
        return sorted(bundles)

    # ── Read ─────────────────────────────────────────────────

    def _read_document(self, path: Path) -> dict:
        """Parse a bundle file. Raises ValueError if it is not a valid bundle."""
        try:
            doc = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"Corrupt archive bundle {path}: {e}") from e
        if not isinstance(doc, dict) or not isinstance(doc.get("entries"), list):
            raise ValueError(f"Corrupt archive bundle {path}: no entries list")
        return doc

    def _parse_entries(self, path: Path) -> list[ArchivedEntry]:
        doc = self._read_document(path)
        try:
            return [ArchivedEntry.from_dict(e) for e in doc["entries"]]
        except ValueError as e:
            raise ValueError(f"Corrupt archive bundle {path}: {e}") from e

    def read_bundle(self, scope: str, year_month: str) -> list[ArchivedEntry]:
        """Entries of one bundle; empty when the bundle does not exist."""
        path = self.bundle_path(scope, year_month)
        if not path.exists():
            return []
        return self._parse_entries(path)

    # ── Write ────────────────────────────────────────────────

    def append(self, scope: str, year_month: str, entry: ArchivedEntry) -> None:
        """Add an entry to a bundle under the bundle lock.

        An entry with the same sessionId is replaced in place, so a retried
        archival never duplicates a record.
        """
        path = self.bundle_path(scope, year_month)
        with bundle_lock(path, timeout=self.lock_timeout):
            now = format_timestamp(utcnow())
            if path.exists():
                doc = self._read_document(path)
            else:
                doc = {"entries": [], "createdAt": now}

            entries = doc["entries"]
            for i, existing in enumerate(entries):
                if isinstance(existing, dict) and existing.get("sessionId") == entry.session_id:
                    logger.debug("Replacing earlier archive of %s in %s", entry.session_id, path.name)
                    entries[i] = entry.to_dict()
                    break
            else:
                entries.append(entry.to_dict())

            doc["lastUpdated"] = now
            write_json_atomic(path, doc)

    def remove(self, scope: str, year_month: str, session_id: str) -> bool:
        """Drop an entry from a bundle. Deletes the bundle once it is empty."""
        path = self.bundle_path(scope, year_month)
        with bundle_lock(path, timeout=self.lock_timeout):
            if not path.exists():
                return False
            doc = self._read_document(path)
            kept = [
                e
                for e in doc["entries"]
                if not (isinstance(e, dict) and e.get("sessionId") == session_id)
            ]
            if len(kept) == len(doc["entries"]):
                return False
            if kept:
                doc["entries"] = kept
                doc["lastUpdated"] = format_timestamp(utcnow())
                write_json_atomic(path, doc)
            else:
                path.unlink()
            return True

    # ── Search & load ────────────────────────────────────────

    def search(self, scope: str | None, query: str) -> SearchResult:
        """Search archived title/summary/tags across one scope (or all scopes).

        A bundle that fails to parse is reported in ``failures``; matches from
        the remaining bundles are still returned.
        """
        result = SearchResult()
        scopes = [scope] if scope is not None else list_scopes(self.root)
        for name in scopes:
            for _, path in self.list_bundles(name):
                try:
                    entries = self._parse_entries(path)
                except (ValueError, OSError) as e:
                    logger.warning("Skipping unreadable archive %s: %s", path, e)
                    result.failures.append(BundleFailure(path, str(e)))
                    continue
                result.bundles_read += 1
                result.entries.extend(e for e in entries if e.matches(query))
        return result

    def find(self, scope: str, session_id: str) -> tuple[str, ArchivedEntry] | None:
        """Locate an archived entry: (bundle month, entry), or None.

        None means no bundle holds the session. When the session is not in any
        readable bundle but some bundle could not be read, the answer is unknown
        and ValueError is raised instead.
        """
        validate_name(session_id, "session id")
        failures: list[BundleFailure] = []
        for year_month, path in self.list_bundles(scope):
            try:
                entries = self._parse_entries(path)
            except (ValueError, OSError) as e:
                logger.warning("Skipping unreadable archive %s: %s", path, e)
                failures.append(BundleFailure(path, str(e)))
                continue
            for entry in entries:
                if entry.session_id == session_id:
                    return year_month, entry
        if failures:
            names = ", ".join(f.path.name for f in failures)
            raise ValueError(
                f"{scope}/{session_id} not found in readable archives; unreadable: {names}"
            )
        return None

    def load_one(self, scope: str, session_id: str) -> str | None:
        """Content of an archived record, or None when it is not archived.

        Raises ValueError when an unreadable bundle may hold the record.
        """
        found = self.find(scope, session_id)
        return found[1].content if found else None

    def discard(self, scope: str, session_id: str) -> int:
        """Drop every archived copy of a session. Returns the number of bundles changed."""
        validate_name(session_id, "session id")
        removed = 0
        for year_month, path in self.list_bundles(scope):
            try:
                if self.remove(scope, year_month, session_id):
                    removed += 1
            except ValueError as e:
                logger.warning("Cannot check unreadable archive %s: %s", path, e)
        return removed

"""Live store — the hot tier of session memory records.

Each record is a directory ``{scope}/{YYYY}/{MM}/{DD}/{sessionId}/`` holding the
memory content (``memory.md``) and its metadata document (``metadata.json``).
The path encodes the creation date; usage (``lastUsed``/``timesUsed``) lives in
the metadata and is the only input to eviction eligibility.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path

import frontmatter
import yaml

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"
CONTENT_FILE = "memory.md"
METADATA_FILE = "metadata.json"
ARCHIVES_DIR = ".archives"

BYTES_PER_MB = 1024 * 1024

_NAME_FORBIDDEN = re.compile(r'[/\\<>:"|?*\x00-\x1f]')


def is_valid_name(value: object) -> bool:
    return (
        isinstance(value, str)
        and bool(value.strip())
        and not value.startswith(".")
        and not _NAME_FORBIDDEN.search(value)
    )


def validate_name(value: str, kind: str = "scope") -> str:
    """Reject names that cannot be a single path component of the layout."""
    if not is_valid_name(value):
        raise ValueError(f"Invalid {kind}: {value!r}")
    return value


def list_scopes(root: Path) -> list[str]:
    """Scope directories present under a sessions root, sorted."""
    if not root.is_dir():
        return []
    try:
        return sorted(p.name for p in root.iterdir() if p.is_dir() and is_valid_name(p.name))
    except OSError as e:
        logger.warning("Cannot list scopes under %s: %s", root, e)
        return []


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a ``Z`` suffix."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    ts = ts.astimezone(timezone.utc)
    return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: object) -> datetime:
    """Parse an ISO-8601 timestamp. Naive values are taken as UTC."""
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Not a timestamp: {value!r}")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def measure(path: Path) -> tuple[int, int]:
    """Return (bytes, file count) for every regular file under path.

    Unreadable entries are skipped so one bad file cannot block sizing the rest.
    """
    total = 0
    count = 0
    try:
        entries = list(path.iterdir())
    except OSError as e:
        logger.debug("Cannot list %s: %s", path, e)
        return 0, 0
    for entry in entries:
        try:
            if entry.is_dir():
                sub_bytes, sub_count = measure(entry)
                total += sub_bytes
                count += sub_count
            elif entry.is_file():
                total += entry.stat().st_size
                count += 1
        except OSError as e:
            logger.debug("Skipping unreadable %s: %s", entry, e)
    return total, count


@dataclass(frozen=True)
class RecordRef:
    """Location of one live record."""

    scope: str
    session_id: str
    path: Path
    created: date

    @property
    def year_month(self) -> str:
        return f"{self.created.year:04d}-{self.created.month:02d}"


@dataclass
class LiveRecord:
    """A loaded live record: content, metadata and resolved usage."""

    ref: RecordRef
    content: str
    metadata: dict
    last_used: datetime
    size_bytes: int
    header: dict = field(default_factory=dict)

    @property
    def title(self) -> str | None:
        return self.metadata.get("title") or self.header.get("title")

    @property
    def summary(self) -> str | None:
        return self.metadata.get("summary") or self.header.get("summary")

    @property
    def tags(self) -> list[str]:
        tags = self.metadata.get("tags") or self.header.get("tags") or []
        return [str(t) for t in tags] if isinstance(tags, list) else []


class LiveStore:
    """Read/write access to live memory records under a sessions root."""

    def __init__(self, root: Path) -> None:
        self.root = root

    # ── Scopes & paths ───────────────────────────────────────

    def scope_root(self, scope: str) -> Path:
        return self.root / validate_name(scope)

    def scopes(self) -> list[str]:
        return list_scopes(self.root)

    def record_path(self, scope: str, session_id: str, created: date) -> Path:
        validate_name(session_id, "session id")
        return (
            self.scope_root(scope)
            / f"{created.year:04d}"
            / f"{created.month:02d}"
            / f"{created.day:02d}"
            / session_id
        )

    # ── Enumeration ──────────────────────────────────────────

    def iter_records(self, scope: str | None = None) -> Iterator[RecordRef]:
        """Yield every live record, in scope then path order.

        A missing scope root yields nothing. Directories that do not fit the
        ``YYYY/MM/DD/sessionId`` layout are ignored.
        """
        scopes = [scope] if scope is not None else self.scopes()
        for name in scopes:
            scope_dir = self.scope_root(name)
            if not scope_dir.is_dir():
                continue
            for year_dir in self._subdirs(scope_dir):
                if year_dir.name == ARCHIVES_DIR:
                    continue
                for month_dir in self._subdirs(year_dir):
                    for day_dir in self._subdirs(month_dir):
                        try:
                            created = date(
                                int(year_dir.name), int(month_dir.name), int(day_dir.name)
                            )
                        except ValueError:
                            logger.debug("Ignoring non-date directory %s", day_dir)
                            continue
                        for session_dir in self._subdirs(day_dir):
                            yield RecordRef(name, session_dir.name, session_dir, created)

    def _subdirs(self, path: Path) -> list[Path]:
        try:
            return sorted(p for p in path.iterdir() if p.is_dir())
        except OSError as e:
            logger.warning("Cannot list %s: %s", path, e)
            return []

    def find(self, scope: str, session_id: str) -> RecordRef | None:
        """Locate a live record by session id within one scope."""
        validate_name(session_id, "session id")
        for ref in self.iter_records(scope):
            if ref.session_id == session_id:
                return ref
        return None

    # ── Read ─────────────────────────────────────────────────

    def load(self, ref: RecordRef) -> LiveRecord:
        """Load a record. Raises ValueError when its metadata is corrupt."""
        metadata_path = ref.path / METADATA_FILE
        content_path = ref.path / CONTENT_FILE
        try:
            metadata = json.loads(metadata_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"Corrupt metadata in {metadata_path}: {e}") from e
        if not isinstance(metadata, dict):
            raise ValueError(f"Corrupt metadata in {metadata_path}: not an object")
        if not content_path.is_file():
            raise ValueError(f"Missing {CONTENT_FILE} in {ref.path}")
        content = content_path.read_text(encoding="utf-8")

        usage = metadata.get("usage")
        raw = usage.get("lastUsed") if isinstance(usage, dict) else None
        raw = raw or metadata.get("timestamp")
        if raw is not None:
            try:
                last_used = parse_timestamp(raw)
            except ValueError as e:
                raise ValueError(f"Corrupt lastUsed in {metadata_path}: {e}") from e
        else:
            mtime = metadata_path.stat().st_mtime
            last_used = datetime.fromtimestamp(mtime, tz=timezone.utc)

        size_bytes, _ = measure(ref.path)
        return LiveRecord(
            ref=ref,
            content=content,
            metadata=metadata,
            last_used=last_used,
            size_bytes=size_bytes,
            header=self._parse_header(content),
        )

    def _parse_header(self, content: str) -> dict:
        """YAML front-matter of the content file, if any."""
        try:
            return dict(frontmatter.loads(content).metadata)
        except (yaml.YAMLError, ValueError, TypeError) as e:
            logger.debug("Ignoring unreadable front-matter: %s", e)
            return {}

    # ── Write ────────────────────────────────────────────────

    def save(
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
        times_used: int = 0,
        metadata: dict | None = None,
    ) -> RecordRef:
        """Write a live record. ``metadata`` carries extra fields to persist.

        Rewriting a record in place is allowed. Raises ValueError when the
        session is already live under another creation date.
        """
        created = created or utcnow().date()
        path = self.record_path(scope, session_id, created)
        existing = self.find(scope, session_id)
        if existing is not None and existing.path != path:
            raise ValueError(f"{scope}/{session_id} is already live at {existing.path}")
        path.mkdir(parents=True, exist_ok=True)

        doc: dict = dict(metadata or {})
        doc.update({"sessionId": session_id, "nodeId": scope})
        if title is not None:
            doc["title"] = title
        if summary is not None:
            doc["summary"] = summary
        if tags is not None:
            doc["tags"] = list(tags)
        doc["usage"] = {
            "lastUsed": format_timestamp(last_used or utcnow()),
            "timesUsed": times_used,
        }

        (path / CONTENT_FILE).write_text(content, encoding="utf-8")
        (path / METADATA_FILE).write_text(
            json.dumps(doc, indent=2, ensure_ascii=False), encoding="utf-8"
        )
        logger.debug("Saved live record %s/%s", scope, session_id)
        return RecordRef(scope, session_id, path, created)

    def touch(self, scope: str, session_id: str, when: datetime | None = None) -> bool:
        """Record a use of a live record. Returns False if it is not live."""
        ref = self.find(scope, session_id)
        if ref is None:
            return False
        metadata_path = ref.path / METADATA_FILE
        try:
            doc = json.loads(metadata_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"Corrupt metadata in {metadata_path}: {e}") from e
        if not isinstance(doc, dict):
            raise ValueError(f"Corrupt metadata in {metadata_path}: not an object")
        usage = doc.get("usage") if isinstance(doc.get("usage"), dict) else {}
        usage["lastUsed"] = format_timestamp(when or utcnow())
        usage["timesUsed"] = int(usage.get("timesUsed") or 0) + 1
        doc["usage"] = usage
        metadata_path.write_text(json.dumps(doc, indent=2, ensure_ascii=False), encoding="utf-8")
        return True

    def delete(self, ref: RecordRef) -> bool:
        """Remove a live record directory. Idempotent: False if already gone."""
        if not ref.path.exists():
            return False
        shutil.rmtree(ref.path)
        # Prune now-empty day/month/year directories
        parent = ref.path.parent
        scope_dir = self.scope_root(ref.scope)
        while parent != scope_dir:
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent
        return True

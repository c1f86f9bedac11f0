"""Tests for the month-partitioned archive store."""

from __future__ import annotations

import gc
import json
import threading
from pathlib import Path

import pytest

from memtier.memory import locking
from memtier.memory.archive import ArchivedEntry, ArchiveStore, validate_year_month
from memtier.memory.locking import bundle_lock


def _entry(session_id: str, scope: str = "music", **kwargs) -> ArchivedEntry:
    defaults = {
        "content": f"content of {session_id}",
        "archived_at": "2026-06-15T12:00:00.000Z",
        "original_last_used": "2026-01-01T00:00:00.000Z",
    }
    defaults.update(kwargs)
    return ArchivedEntry(session_id=session_id, scope=scope, **defaults)


class TestYearMonth:
    @pytest.mark.parametrize("value", ["2026-01", "1999-12"])
    def test_valid(self, value: str):
        assert validate_year_month(value) == value

    @pytest.mark.parametrize("value", ["2026-13", "2026-1", "26-01", "2026/01", ""])
    def test_invalid(self, value: str):
        with pytest.raises(ValueError):
            validate_year_month(value)


class TestAppend:
    def test_creates_bundle_with_expected_shape(self, archive: ArchiveStore, root: Path):
        archive.append("music", "2026-02", _entry("s1", title="Riffs", tags=["guitar"]))
        path = root / "music" / ".archives" / "memories-archive-2026-02.json"
        doc = json.loads(path.read_text(encoding="utf-8"))
        assert len(doc["entries"]) == 1
        entry = doc["entries"][0]
        assert entry["sessionId"] == "s1"
        assert entry["nodeId"] == "music"
        assert entry["title"] == "Riffs"
        assert entry["tags"] == ["guitar"]
        assert entry["content"] == "content of s1"
        assert entry["originalLastUsed"] == "2026-01-01T00:00:00.000Z"
        assert entry["archivedAt"] == "2026-06-15T12:00:00.000Z"
        assert "summary" not in entry

    def test_appends_in_order(self, archive: ArchiveStore):
        archive.append("music", "2026-02", _entry("s1"))
        archive.append("music", "2026-02", _entry("s2"))
        assert [e.session_id for e in archive.read_bundle("music", "2026-02")] == ["s1", "s2"]

    def test_rearchive_replaces(self, archive: ArchiveStore):
        archive.append("music", "2026-02", _entry("s1", content="old"))
        archive.append("music", "2026-02", _entry("s2"))
        archive.append("music", "2026-02", _entry("s1", content="new"))
        entries = archive.read_bundle("music", "2026-02")
        assert [e.session_id for e in entries] == ["s1", "s2"]
        assert entries[0].content == "new"

    def test_refuses_to_overwrite_corrupt_bundle(self, archive: ArchiveStore, root: Path):
        path = archive.bundle_path("music", "2026-02")
        path.parent.mkdir(parents=True)
        path.write_text("{broken", encoding="utf-8")
        with pytest.raises(ValueError):
            archive.append("music", "2026-02", _entry("s1"))
        assert path.read_text(encoding="utf-8") == "{broken"

    def test_concurrent_writers_keep_every_entry(self, archive: ArchiveStore):
        errors: list[Exception] = []

        def writer(i: int) -> None:
            try:
                archive.append("music", "2026-03", _entry(f"s{i}"))
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        assert len(archive.read_bundle("music", "2026-03")) == 20

    def test_no_temp_files_left(self, archive: ArchiveStore):
        archive.append("music", "2026-02", _entry("s1"))
        names = {p.name for p in archive.archives_dir("music").iterdir()}
        assert not any(".tmp." in n for n in names)


class TestSearch:
    @pytest.fixture
    def populated(self, archive: ArchiveStore) -> ArchiveStore:
        archive.append("music", "2026-01", _entry("s1", title="Jazz Voicings"))
        archive.append("music", "2026-02", _entry("s2", summary="Practiced SCALES daily"))
        archive.append("music", "2026-02", _entry("s3", tags=["Improv", "bebop"]))
        archive.append("global", "2026-02", _entry("g1", scope="global", title="jazz history"))
        return archive

    def test_title_case_insensitive(self, populated: ArchiveStore):
        result = populated.search("music", "jazz")
        assert [e.session_id for e in result.entries] == ["s1"]
        assert not result.partial

    def test_summary(self, populated: ArchiveStore):
        assert [e.session_id for e in populated.search("music", "scales").entries] == ["s2"]

    def test_tags(self, populated: ArchiveStore):
        assert [e.session_id for e in populated.search("music", "improv").entries] == ["s3"]

    def test_content_not_searched(self, populated: ArchiveStore):
        assert populated.search("music", "content of").entries == []

    def test_no_match_is_empty(self, populated: ArchiveStore):
        result = populated.search("music", "nothing-like-this")
        assert result.entries == []
        assert result.failures == []

    def test_missing_scope(self, archive: ArchiveStore):
        result = archive.search("nobody", "x")
        assert result.entries == []
        assert result.bundles_read == 0

    def test_all_scopes(self, populated: ArchiveStore):
        ids = {e.session_id for e in populated.search(None, "jazz").entries}
        assert ids == {"s1", "g1"}

    def test_corrupt_bundle_is_partial_not_empty(self, populated: ArchiveStore):
        bad = populated.archives_dir("music") / "memories-archive-2025-12.json"
        bad.write_text("not json at all", encoding="utf-8")
        result = populated.search("music", "jazz")
        assert [e.session_id for e in result.entries] == ["s1"]
        assert result.partial
        assert result.failures[0].path == bad
        assert result.bundles_read == 2

    def test_bundle_without_entries_list_is_failure(self, populated: ArchiveStore):
        bad = populated.archives_dir("music") / "memories-archive-2025-11.json"
        bad.write_text(json.dumps({"entries": "nope"}), encoding="utf-8")
        assert populated.search("music", "jazz").partial

    def test_ignores_non_bundle_files(self, populated: ArchiveStore):
        (populated.archives_dir("music") / "notes.txt").write_text("jazz", encoding="utf-8")
        result = populated.search("music", "jazz")
        assert not result.partial


class TestLoadOne:
    def test_found(self, archive: ArchiveStore):
        archive.append("music", "2026-01", _entry("s1"))
        archive.append("music", "2026-02", _entry("s2"))
        assert archive.load_one("music", "s2") == "content of s2"

    def test_not_found(self, archive: ArchiveStore):
        archive.append("music", "2026-01", _entry("s1"))
        assert archive.load_one("music", "zzz") is None

    def test_no_archives(self, archive: ArchiveStore):
        assert archive.load_one("music", "s1") is None

    def test_corrupt_bundle_is_not_plain_not_found(self, archive: ArchiveStore):
        archive.append("music", "2026-02", _entry("s1"))
        archive.bundle_path("music", "2026-02").write_text('{"entries": [', encoding="utf-8")
        with pytest.raises(ValueError, match="unreadable"):
            archive.load_one("music", "s1")
        with pytest.raises(ValueError):
            archive.load_one("music", "never-existed")

    def test_found_despite_other_corrupt_bundle(self, archive: ArchiveStore):
        archive.append("music", "2026-02", _entry("s1"))
        (archive.archives_dir("music") / "memories-archive-2026-01.json").write_text(
            "[", encoding="utf-8"
        )
        assert archive.load_one("music", "s1") == "content of s1"


class TestRemove:
    def test_remove_entry(self, archive: ArchiveStore):
        archive.append("music", "2026-01", _entry("s1"))
        archive.append("music", "2026-01", _entry("s2"))
        assert archive.remove("music", "2026-01", "s1") is True
        assert [e.session_id for e in archive.read_bundle("music", "2026-01")] == ["s2"]

    def test_remove_last_entry_deletes_bundle(self, archive: ArchiveStore):
        archive.append("music", "2026-01", _entry("s1"))
        archive.remove("music", "2026-01", "s1")
        assert not archive.bundle_path("music", "2026-01").exists()

    def test_remove_missing(self, archive: ArchiveStore):
        assert archive.remove("music", "2026-01", "s1") is False

    def test_discard_every_copy(self, archive: ArchiveStore):
        archive.append("music", "2026-01", _entry("s1"))
        archive.append("music", "2026-02", _entry("s1"))
        archive.append("music", "2026-02", _entry("s2"))
        assert archive.discard("music", "s1") == 2
        assert archive.load_one("music", "s1") is None
        assert archive.load_one("music", "s2") == "content of s2"

    def test_discard_skips_corrupt_bundle(self, archive: ArchiveStore):
        archive.append("music", "2026-02", _entry("s1"))
        (archive.archives_dir("music") / "memories-archive-2026-01.json").write_text(
            "[", encoding="utf-8"
        )
        assert archive.discard("music", "s1") == 1
        assert archive.read_bundle("music", "2026-02") == []


class TestBundleLock:
    def test_registry_drops_released_locks(self, archive: ArchiveStore):
        path = archive.bundle_path("music", "2026-01")
        key = str(path.resolve())
        with bundle_lock(path, timeout=1.0):
            assert key in locking._thread_locks
        gc.collect()
        assert key not in locking._thread_locks

    def test_lock_is_reused_while_held(self, archive: ArchiveStore):
        path = archive.bundle_path("music", "2026-01")
        with bundle_lock(path, timeout=1.0):
            with pytest.raises(TimeoutError):
                with bundle_lock(path, timeout=0.1):
                    pass

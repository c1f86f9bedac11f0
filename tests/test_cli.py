"""Tests for the command-line entry point."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from memtier.__main__ import main
from memtier.memory.store import LiveStore


@pytest.fixture
def sessions(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MEMTIER_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("MEMTIER_SESSIONS_DIR", str(tmp_path / "sessions"))
    monkeypatch.setenv("MEMTIER_LOG_LEVEL", "WARNING")
    return tmp_path / "sessions"


def _seed(sessions: Path) -> None:
    store = LiveStore(sessions)
    old = datetime.now(timezone.utc) - timedelta(days=120)
    store.save("music", "old", "old body", title="Swing", created=old.date(), last_used=old)
    store.save("music", "fresh", "fresh body")


class TestCLI:
    def test_scan(self, sessions: Path, capsys):
        _seed(sessions)
        assert main(["scan"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["recordCount"] == 2

    def test_archive_search_load(self, sessions: Path, capsys):
        _seed(sessions)
        assert main(["archive", "--days", "90"]) == 0
        assert json.loads(capsys.readouterr().out)["archived"] == 1

        assert main(["search", "swing", "--scope", "music"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert [e["sessionId"] for e in data["entries"]] == ["old"]

        assert main(["load", "music", "old"]) == 0
        assert capsys.readouterr().out.strip() == "old body"

    def test_load_missing(self, sessions: Path, capsys):
        assert main(["load", "music", "nope"]) == 1

    def test_invalid_target(self, sessions: Path, capsys):
        assert main(["enforce", "--target-mb", "0"]) == 1
        assert "Error" in capsys.readouterr().err

    def test_check(self, sessions: Path, capsys):
        _seed(sessions)
        assert main(["check", "--target-mb", "5"]) == 0
        assert json.loads(capsys.readouterr().out)["triggered"] is False

    def test_restore_preview(self, sessions: Path, capsys):
        _seed(sessions)
        main(["archive"])
        capsys.readouterr()
        assert main(["restore", "music", "--all", "--preview"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["preview"] is True
        assert data["selected"][0]["sessionId"] == "old"

    def test_load_with_unreadable_archive(self, sessions: Path, capsys):
        _seed(sessions)
        main(["archive", "--days", "90"])
        capsys.readouterr()
        for bundle in (sessions / "music" / ".archives").glob("memories-archive-*.json"):
            bundle.write_text("{", encoding="utf-8")
        assert main(["load", "music", "old"]) == 1
        err = capsys.readouterr().err
        assert "unreadable" in err
        assert "No archived memory" not in err

"""
Unit tests for reader module.
"""

import os
import sys
import time
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from logbridge.reader import (
    NO_LOGS_MESSAGE,
    LogAggregator,
    classify_line,
    detect_errors,
    tail_lines,
)
from logbridge.session_registry import SessionRegistry


@pytest.fixture
def registry(tmp_path):
    return SessionRegistry(base_dir=tmp_path)


@pytest.fixture
def aggregator(registry):
    return LogAggregator(registry)


def make_session(registry, project, name, lines, age_seconds, archive=False):
    """Open a session, fill its log and backdate its mtime."""
    session = registry.open_session(project)
    session.log_path.write_text("".join(f"{name}-{n}\n" for n in range(1, lines + 1)))
    path = session.log_path
    if archive:
        path = registry.mark_completed(session.id, archive=True)
    stamp = time.time() - age_seconds
    os.utime(path, (stamp, stamp))
    return session.id


class TestTailLines:
    """Tests for tail_lines."""

    def test_trailing_non_blank(self, tmp_path):
        path = tmp_path / "log"
        path.write_text("a\n\nb\n   \nc\n\n")
        assert tail_lines(path, 2) == ["b", "c"]
        assert tail_lines(path, 10) == ["a", "b", "c"]
        assert tail_lines(path, 0) == []


class TestReadRecent:
    """Tests for LogAggregator.read_recent."""

    def test_newest_session_exhausted_first(self, aggregator, registry):
        oldest = make_session(registry, "/work/a", "old", 5, age_seconds=300)
        middle = make_session(registry, "/work/a", "mid", 5, age_seconds=200)
        newest = make_session(registry, "/work/a", "new", 5, age_seconds=100)

        result = aggregator.read_recent(line_budget=7, max_files=5, project_dir="/work/a")

        assert result == (
            f"[Session: session-{newest}]\nnew-1\nnew-2\nnew-3\nnew-4\nnew-5\n\n"
            f"[Session: session-{middle}]\nmid-4\nmid-5"
        )
        assert "old-" not in result
        assert oldest not in result

    def test_max_files(self, aggregator, registry):
        make_session(registry, "/work/a", "old", 2, age_seconds=300)
        newest = make_session(registry, "/work/a", "new", 2, age_seconds=100)
        result = aggregator.read_recent(line_budget=100, max_files=1, project_dir="/work/a")
        assert result == f"[Session: session-{newest}]\nnew-1\nnew-2"

    def test_project_filter(self, aggregator, registry):
        make_session(registry, "/work/a", "a", 2, age_seconds=100)
        make_session(registry, "/work/b", "b", 2, age_seconds=50)
        result = aggregator.read_recent(project_dir="/work/a")
        assert "a-1" in result
        assert "b-1" not in result

    def test_default_project_is_most_recent(self, aggregator, registry):
        make_session(registry, "/work/a", "a", 2, age_seconds=100)
        make_session(registry, "/work/b", "b", 2, age_seconds=50)
        result = aggregator.read_recent()
        assert "b-1" in result
        assert "a-1" not in result

    def test_archived_only(self, aggregator, registry):
        make_session(registry, "/work/a", "live", 2, age_seconds=100)
        make_session(registry, "/work/a", "done", 2, age_seconds=200, archive=True)

        live = aggregator.read_recent(project_dir="/work/a", live_only=True)
        archived = aggregator.read_recent(project_dir="/work/a", live_only=False)
        assert "live-1" in live and "done-1" not in live
        assert "done-1" in archived and "live-1" not in archived

    def test_placeholder_when_nothing(self, aggregator):
        assert aggregator.read_recent() == NO_LOGS_MESSAGE
        assert "/work/none" in aggregator.read_recent(project_dir="/work/none")

    def test_legacy_fallback(self, aggregator, registry):
        registry.legacy_log_path.write_text("legacy-1\nlegacy-2\nlegacy-3\n")
        assert aggregator.read_recent(line_budget=2) == "legacy-2\nlegacy-3"

    def test_session_files_preferred_over_legacy(self, aggregator, registry):
        registry.legacy_log_path.write_text("legacy-1\n")
        make_session(registry, "/work/a", "a", 1, age_seconds=10)
        assert "legacy" not in aggregator.read_recent(project_dir="/work/a")

    def test_get_session_log_files(self, aggregator, registry):
        first = make_session(registry, "/work/a", "a", 1, age_seconds=100)
        second = make_session(registry, "/work/a", "a", 1, age_seconds=10)
        files = aggregator.get_session_log_files("/work/a")
        assert [p.name for p in files] == [f"session-{second}.log", f"session-{first}.log"]

    def test_list_active_sessions(self, aggregator, registry):
        session_id = make_session(registry, "/work/a", "a", 1, age_seconds=10)
        assert aggregator.list_active_sessions() == [session_id]
        assert aggregator.list_active_sessions("/work/b") == []


class TestDetectErrors:
    """Tests for error detection."""

    def test_classification(self):
        assert classify_line("TypeError: undefined is not a function") == "TypeError"
        assert classify_line("SyntaxError: Unexpected token") == "SyntaxError"
        assert classify_line("Build failed in 2s") == "Failed"
        assert classify_line("[2026-03-01T12:00:00.000Z] Process exited with code: 1") == "Exit Code Error"
        assert classify_line("    at main (app.js:10:5)") == "Stack Trace"
        assert classify_line("all good") is None
        assert classify_line("Process exited with code: 0") is None

    def test_stack_runs_collapsed(self):
        text = "\n".join(
            [
                "starting",
                "Error: boom",
                "    at a (x.js:1)",
                "    at b (x.js:2)",
                "    at c (x.js:3)",
                "done",
                "    at d (y.js:1)",
            ]
        )
        found = detect_errors(text)
        assert [(e.index, e.kind) for e in found] == [
            (1, "Error"),
            (2, "Stack Trace"),
            (6, "Stack Trace"),
        ]

    def test_python_traceback_frames(self):
        found = detect_errors('Traceback\n  File "app.py", line 3, in <module>\nException: bad')
        assert [e.kind for e in found] == ["Stack Trace", "Exception"]

    def test_clean_text(self):
        assert detect_errors("ready on :3000\nGET / 200") == []

"""
Log reader and aggregator.

Answers consumer queries over session logs: the most recent lines of a
project's sessions within a line budget, newest session first, plus a list of
live session ids.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import dataclass
from pathlib import Path

from .config import BridgeConfig
from .session_registry import SessionRegistry
from .session_schema import SessionKind

logger = logging.getLogger(__name__)

DEFAULT_LINE_BUDGET = 100
DEFAULT_MAX_FILES = 5

NO_LOGS_MESSAGE = "No logs found. Run a command through logbridge first."


def tail_lines(path: Path, count: int) -> list[str]:
    """The last count non-blank lines of a file, in file order."""
    if count <= 0:
        return []
    kept: deque[str] = deque(maxlen=count)
    with open(path, encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.rstrip("\r\n")
            if line.strip():
                kept.append(line)
    return list(kept)


class LogAggregator:
    """
    Read-only view over one registry namespace.

    Example:
        aggregator = LogAggregator(SessionRegistry("~/.mcp-logs"))
        print(aggregator.read_recent(line_budget=200, project_dir="/work/app"))
    """

    def __init__(self, registry: SessionRegistry):
        self.registry = registry

    @classmethod
    def from_config(cls, config: BridgeConfig, kind: SessionKind = SessionKind.PROCESS_OUTPUT) -> "LogAggregator":
        return cls(SessionRegistry.from_config(config, kind))

    def resolve_project(self, project_dir: str | None) -> str | None:
        """Explicit project, else the project of the most recently registered session."""
        return project_dir or self.registry.most_recent_project_dir()

    def get_session_log_files(
        self,
        project_dir: str | None = None,
        live_only: bool = True,
        max_files: int | None = None,
    ) -> list[Path]:
        """
        Log files of a project's sessions, most recently modified first.

        Args:
            project_dir: Project to select (default: most recent project)
            live_only: Live sessions in the active directory (True) or
                archived sessions (False)
            max_files: Cap on the number of files returned
        """
        project = self.resolve_project(project_dir)
        if project is None:
            return []

        dated: list[tuple[float, Path]] = []
        for session_id in self.registry.get_session_ids_for_project(project, live_only=live_only):
            path = self.registry.log_path(session_id, active=live_only)
            try:
                dated.append((path.stat().st_mtime, path))
            except FileNotFoundError:
                continue

        dated.sort(key=lambda item: item[0], reverse=True)
        files = [path for _, path in dated]
        if max_files is not None:
            files = files[: max(0, max_files)]
        return files

    def read_recent(
        self,
        line_budget: int = DEFAULT_LINE_BUDGET,
        max_files: int = DEFAULT_MAX_FILES,
        project_dir: str | None = None,
        live_only: bool = True,
    ) -> str:
        """
        Recent lines across a project's sessions.

        The newest session is exhausted before any line of an older one is
        taken. Within a session lines keep file order. Each session's block
        starts with a [Session: session-<id>] separator.

        Returns:
            The aggregated text, a legacy log tail, or a placeholder message
        """
        files = self.get_session_log_files(project_dir, live_only=live_only, max_files=max_files)
        if not files:
            return self._fallback(line_budget, project_dir)

        remaining = line_budget
        blocks: list[str] = []
        for path in files:
            if remaining <= 0:
                break
            try:
                lines = tail_lines(path, remaining)
            except FileNotFoundError:
                # Finalized between selection and read.
                continue
            except OSError as e:
                logger.warning(f"Could not read {path.name}: {e}")
                continue
            if not lines:
                continue
            remaining -= len(lines)
            blocks.append(f"[Session: {path.stem}]\n" + "\n".join(lines))

        if not blocks:
            return self._fallback(line_budget, project_dir)
        return "\n\n".join(blocks)

    def _fallback(self, line_budget: int, project_dir: str | None) -> str:
        legacy = self.registry.legacy_log_path
        if legacy.exists():
            try:
                lines = tail_lines(legacy, line_budget)
            except OSError as e:
                logger.warning(f"Could not read legacy log {legacy}: {e}")
            else:
                if lines:
                    return "\n".join(lines)

        project = self.resolve_project(project_dir)
        if project is None:
            return NO_LOGS_MESSAGE
        return f"No session logs found for project {project}."

    def list_active_sessions(self, project_dir: str | None = None) -> list[str]:
        """Ids of live sessions, optionally filtered by project."""
        return self.registry.get_active_sessions(project_dir)


# =============================================================================
# Error detection
# =============================================================================

STACK_FRAME = "Stack Trace"

# Checked in order; the last matching label wins, so more specific labels come later.
_ERROR_LABELS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\berror:", re.IGNORECASE), "Error"),
    (re.compile(r"\bError\b"), "Error"),
    (re.compile(r"\bexception:", re.IGNORECASE), "Exception"),
    (re.compile(r"\bException\b"), "Exception"),
    (re.compile(r"\bReferenceError\b"), "ReferenceError"),
    (re.compile(r"\bTypeError\b"), "TypeError"),
    (re.compile(r"\bSyntaxError\b"), "SyntaxError"),
    (re.compile(r"\bfailed\b", re.IGNORECASE), "Failed"),
    (re.compile(r"Process exited with code: -?[1-9]\d*"), "Exit Code Error"),
    (re.compile(r"^\s+at\s+"), STACK_FRAME),
    (re.compile(r'^\s+File "[^"]+", line \d+'), STACK_FRAME),
)


@dataclass(frozen=True)
class ErrorLine:
    """An error-looking line found in aggregated log text."""

    index: int
    kind: str
    line: str


def classify_line(line: str) -> str | None:
    kind = None
    for pattern, label in _ERROR_LABELS:
        if pattern.search(line):
            kind = label
    return kind


def detect_errors(text: str) -> list[ErrorLine]:
    """
    Find error-looking lines.

    Runs of consecutive stack-frame lines are collapsed to their first frame.

    Args:
        text: Log text, e.g. the output of read_recent()

    Returns:
        Matches in text order
    """
    found: list[ErrorLine] = []
    previous_kind = None
    for index, line in enumerate(text.splitlines()):
        kind = classify_line(line)
        if kind == STACK_FRAME and previous_kind == STACK_FRAME:
            continue
        previous_kind = kind
        if kind is not None:
            found.append(ErrorLine(index=index, kind=kind, line=line))
    return found


__all__ = [
    "DEFAULT_LINE_BUDGET",
    "DEFAULT_MAX_FILES",
    "ErrorLine",
    "LogAggregator",
    "NO_LOGS_MESSAGE",
    "classify_line",
    "detect_errors",
    "tail_lines",
]

"""
Session registry for logbridge.

Manages session bookkeeping under a storage root:

    <root>/master-index.log       append-only ledger, one line per session
    <root>/active-sessions.json   live sessions keyed by id
    <root>/active/                log files of live sessions
    <root>/archive/               log files of finalized sessions
    <root>/.locks/                FileMutex sentinels

Every process that produces logs owns its own registry instance; the index
and the table are the only files shared between processes and every write to
them happens under a FileMutex.
"""

from __future__ import annotations

import itertools
import json
import logging
import os
import re
import secrets
import tempfile
import threading
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from .config import DEFAULT_ROOT, BridgeConfig, ensure_storage
from .errors import LockTimeoutError
from .mutex import DEFAULT_POLL_INTERVAL, DEFAULT_STALE_AFTER, DEFAULT_TIMEOUT, FileMutex
from .redaction import redact
from .session_schema import (
    ActiveEntry,
    MasterIndexEntry,
    Session,
    SessionKind,
    SessionState,
    isoformat,
    utc_now,
)

logger = logging.getLogger(__name__)

MASTER_INDEX_NAME = "master-index.log"
ACTIVE_TABLE_NAME = "active-sessions.json"
LOG_PREFIX = "session-"
LOG_SUFFIX = ".log"

# Lines longer than this in the master index are treated as corrupt.
MAX_INDEX_LINE = 10_000

SESSION_ID_PATTERN = re.compile(r"^(?:[a-z]+-)?\d{14}(?:\d{3}-[0-9a-f]{4})?-[0-9a-f]{4}$")
_INDEX_LINE_PATTERN = re.compile(r"^\[([^\]]+)\]\s+\[([^\]]+)\]\s+\[(.*?)\](?:\s(.*))?$")


def is_valid_session_id(session_id: str) -> bool:
    """Check the id format (with a length cap against hostile input)."""
    if not session_id or len(session_id) > 100:
        return False
    return SESSION_ID_PATTERN.match(session_id) is not None


def session_id_from_path(path: Path) -> str | None:
    """Recover the session id from a session log file name."""
    name = Path(path).name
    if not (name.startswith(LOG_PREFIX) and name.endswith(LOG_SUFFIX)):
        return None
    return name[len(LOG_PREFIX) : -len(LOG_SUFFIX)]


class SessionRegistry:
    """
    Issues session ids and keeps the master index and active table.

    Lock timeouts on writes are not fatal: the write is skipped and logged,
    and the caller carries on.
    """

    _id_counter = itertools.count()
    _id_lock = threading.Lock()

    def __init__(
        self,
        base_dir: Path | str | None = None,
        kind: SessionKind = SessionKind.PROCESS_OUTPUT,
        id_prefix: str = "",
        lock_timeout: float = DEFAULT_TIMEOUT,
        lock_poll_interval: float = DEFAULT_POLL_INTERVAL,
        lock_stale_after: float = DEFAULT_STALE_AFTER,
        clock: Callable = utc_now,
    ):
        """
        Initialize the registry and create its directory tree.

        Args:
            base_dir: Storage root (default: ~/.mcp-logs)
            kind: Producer kind recorded on sessions opened here
            id_prefix: Prefix for generated ids, e.g. "browser-"
            lock_timeout: Seconds to wait for a registry lock

        Raises:
            StorageUnavailableError: If the root cannot be created or written
        """
        self.base_dir = ensure_storage(Path(base_dir) if base_dir else DEFAULT_ROOT)
        self.kind = kind
        self.id_prefix = id_prefix
        self.lock_timeout = lock_timeout
        self.lock_poll_interval = lock_poll_interval
        self.lock_stale_after = lock_stale_after
        self._clock = clock

    @classmethod
    def from_config(cls, config: BridgeConfig, kind: SessionKind = SessionKind.PROCESS_OUTPUT) -> "SessionRegistry":
        """Build the registry for one producer kind from configuration."""
        if kind == SessionKind.PAGE_CONNECTION:
            base_dir, prefix = config.page_root_path, "browser-"
        else:
            base_dir, prefix = config.root_path, ""
        return cls(
            base_dir=base_dir,
            kind=kind,
            id_prefix=prefix,
            lock_timeout=config.lock_timeout_seconds,
            lock_poll_interval=config.lock_poll_seconds,
            lock_stale_after=config.lock_stale_seconds,
        )

    # =========================================================================
    # Paths
    # =========================================================================

    @property
    def active_dir(self) -> Path:
        return self.base_dir / "active"

    @property
    def archive_dir(self) -> Path:
        return self.base_dir / "archive"

    @property
    def lock_dir(self) -> Path:
        return self.base_dir / ".locks"

    @property
    def master_index_path(self) -> Path:
        return self.base_dir / MASTER_INDEX_NAME

    @property
    def active_table_path(self) -> Path:
        return self.base_dir / ACTIVE_TABLE_NAME

    @property
    def legacy_log_path(self) -> Path:
        """Single-file log written by older versions."""
        return self.base_dir / "session.log"

    def log_path(self, session_id: str, active: bool = True) -> Path:
        """Get the log file path for a session in the active or archive directory."""
        directory = self.active_dir if active else self.archive_dir
        return directory / f"{LOG_PREFIX}{session_id}{LOG_SUFFIX}"

    def list_log_files(self, active: bool = True) -> list[Path]:
        """All session log files currently in the active or archive directory."""
        directory = self.active_dir if active else self.archive_dir
        if not directory.exists():
            return []
        return sorted(
            p for p in directory.iterdir() if p.is_file() and session_id_from_path(p) is not None
        )

    def _mutex(self, name: str) -> FileMutex:
        return FileMutex(
            self.lock_dir,
            name,
            timeout=self.lock_timeout,
            poll_interval=self.lock_poll_interval,
            stale_after=self.lock_stale_after,
        )

    # =========================================================================
    # Session ids
    # =========================================================================

    def generate_session_id(self) -> str:
        """
        Generate a time-ordered session id.

        Format: [prefix]YYYYMMDDHHMMSSmmm-CCCC-RRRR where CCCC is a per-process
        counter (no two ids from one process collide within a millisecond) and
        RRRR is random (separates processes).
        """
        now = self._clock()
        stamp = now.strftime("%Y%m%d%H%M%S") + f"{now.microsecond // 1000:03d}"
        with SessionRegistry._id_lock:
            sequence = next(SessionRegistry._id_counter) & 0xFFFF
        return f"{self.id_prefix}{stamp}-{sequence:04x}-{secrets.token_hex(2)}"

    # =========================================================================
    # Master index
    # =========================================================================

    def register_session(self, session_id: str, project_dir: str, descriptor: str | None = None) -> bool:
        """
        Append one line for a new session to the master index.

        Returns:
            True if the line was written, False if the write was skipped
        """
        entry = MasterIndexEntry(
            timestamp=isoformat(self._clock()),
            session_id=session_id,
            project_dir=project_dir,
            descriptor=descriptor,
        )
        try:
            with self._mutex("master-index").hold():
                with open(self.master_index_path, "a", encoding="utf-8") as f:
                    f.write(entry.to_line())
        except LockTimeoutError as e:
            logger.warning(f"Session {session_id} not registered in master index: {e}")
            return False
        except OSError as e:
            logger.warning(f"Session {session_id} not registered in master index: {e}")
            return False
        return True

    def read_master_index(self) -> list[MasterIndexEntry]:
        """Parse the master index in chronological order, skipping malformed lines."""
        if not self.master_index_path.exists():
            return []

        entries: list[MasterIndexEntry] = []
        with open(self.master_index_path, encoding="utf-8", errors="replace") as f:
            for lineno, raw in enumerate(f, start=1):
                line = raw.rstrip("\n")
                if not line.strip():
                    continue
                if len(line) > MAX_INDEX_LINE:
                    logger.warning(f"Skipping over-long master index line {lineno}")
                    continue
                match = _INDEX_LINE_PATTERN.match(line)
                if not match:
                    logger.warning(f"Skipping malformed master index line {lineno}")
                    continue
                timestamp, session_id, project_dir, descriptor = match.groups()
                if not is_valid_session_id(session_id):
                    logger.warning(f"Skipping invalid session id on master index line {lineno}: {session_id[:40]}")
                    continue
                entries.append(
                    MasterIndexEntry(
                        timestamp=timestamp,
                        session_id=session_id,
                        project_dir=project_dir,
                        descriptor=descriptor or None,
                    )
                )
        return entries

    def get_all_session_ids(self) -> list[str]:
        """All registered session ids in chronological order."""
        return [entry.session_id for entry in self.read_master_index()]

    def get_recent_session_ids(self, count: int) -> list[str]:
        """The most recent count session ids, most recent first."""
        if count <= 0:
            return []
        return list(reversed(self.get_all_session_ids()[-count:]))

    def most_recent_project_dir(self) -> str | None:
        """Project directory of the most recently registered session."""
        entries = self.read_master_index()
        return entries[-1].project_dir if entries else None

    # =========================================================================
    # Active table
    # =========================================================================

    def get_active_table(self) -> dict[str, ActiveEntry]:
        """Read the active table; unreadable content reads as empty."""
        path = self.active_table_path
        if not path.exists():
            return {}

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Active session table unreadable, treating as empty: {e}")
            return {}

        if not isinstance(data, dict):
            logger.warning("Active session table is not a JSON object, treating as empty")
            return {}

        table: dict[str, ActiveEntry] = {}
        for session_id, value in data.items():
            try:
                table[session_id] = ActiveEntry.model_validate(value)
            except ValidationError:
                logger.warning(f"Dropping malformed active table entry {session_id!r}")
        return table

    def _write_active_table(self, table: dict[str, ActiveEntry]) -> None:
        """
        Atomically write the active table.

        Uses write-to-temp-then-rename so a killed writer never leaves a
        truncated file behind.
        """
        payload = {sid: entry.to_json() for sid, entry in table.items()}
        fd, temp_path = tempfile.mkstemp(
            suffix=".tmp",
            prefix="active-sessions_",
            dir=self.base_dir,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(temp_path, self.active_table_path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def _update_active_table(self, action: str, mutate: Callable[[dict[str, ActiveEntry]], None]) -> bool:
        try:
            with self._mutex("active-sessions").hold():
                table = self.get_active_table()
                mutate(table)
                self._write_active_table(table)
        except LockTimeoutError as e:
            logger.warning(f"Skipped active table update ({action}): {e}")
            return False
        except OSError as e:
            logger.warning(f"Failed active table update ({action}): {e}")
            return False
        return True

    def mark_active(self, session_id: str, project_dir: str, descriptor: str | None = None) -> bool:
        """Add a session to the active table."""
        entry = ActiveEntry(
            project_dir=project_dir,
            start_time=isoformat(self._clock()),
            descriptor=descriptor,
        )

        def _add(table: dict[str, ActiveEntry]) -> None:
            table[session_id] = entry

        return self._update_active_table(f"activate {session_id}", _add)

    def remove_active_entry(self, session_id: str) -> bool:
        """Drop a session from the active table without touching its file."""

        def _remove(table: dict[str, ActiveEntry]) -> None:
            table.pop(session_id, None)

        return self._update_active_table(f"remove {session_id}", _remove)

    def mark_completed(self, session_id: str, archive: bool = True) -> Path | None:
        """
        Finalize a session: drop it from the active table, then archive or delete its log.

        The table update and the file move are separate steps. If the process
        dies between them, or the lock times out, the sweeper repairs the
        leftover table entry or orphaned file.

        Args:
            session_id: Session to finalize
            archive: Move the log to the archive directory (True) or delete it

        Returns:
            Path of the archived log, or None if deleted or missing
        """
        self.remove_active_entry(session_id)

        active_path = self.log_path(session_id, active=True)
        if not active_path.exists():
            logger.debug(f"No active log file for {session_id}")
            return None

        if archive:
            archived_path = self.log_path(session_id, active=False)
            try:
                self.archive_dir.mkdir(parents=True, exist_ok=True)
                os.replace(active_path, archived_path)
            except OSError as e:
                logger.warning(f"Could not archive log for {session_id}: {e}")
                return None
            return archived_path

        try:
            active_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not delete log for {session_id}: {e}")
        return None

    def get_active_sessions(self, project_dir: str | None = None) -> list[str]:
        """
        Ids of live sessions, optionally only those of one project.

        Ordering is left to the caller; start times are in get_active_table().
        """
        table = self.get_active_table()
        if project_dir is None:
            return list(table)
        return [sid for sid, entry in table.items() if entry.project_dir == project_dir]

    def most_recent_active_project_dir(self) -> str | None:
        """Project directory of the live session that started last."""
        table = self.get_active_table()
        dated = [(entry.start_time, entry.project_dir) for entry in table.values()]
        if not dated:
            return None
        return max(dated)[1]

    def get_session_ids_for_project(self, project_dir: str, live_only: bool = True) -> list[str]:
        """
        Session ids for a project, most recent first.

        Args:
            project_dir: Project directory to match exactly
            live_only: Read the active table (True) or the whole master index (False)
        """
        if live_only:
            table = self.get_active_table()
            matching = [(entry.start_time, sid) for sid, entry in table.items() if entry.project_dir == project_dir]
            return [sid for _, sid in sorted(matching, reverse=True)]

        ids = [entry.session_id for entry in self.read_master_index() if entry.project_dir == project_dir]
        return list(reversed(ids))

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    def open_session(self, project_dir: str, descriptor: str | None = None) -> Session:
        """
        Allocate an id, register it and mark it active.

        Registry write failures are logged by the callees; the session is
        returned regardless so the producer can keep logging. The descriptor
        is redacted before it reaches the shared index and table.
        """
        if descriptor:
            descriptor = redact(descriptor)
        session_id = self.generate_session_id()
        self.register_session(session_id, project_dir, descriptor)
        self.mark_active(session_id, project_dir, descriptor)
        logger.info(f"Opened session {session_id} for {project_dir}")
        return Session(
            id=session_id,
            kind=self.kind,
            project_dir=project_dir,
            start_time=self._clock(),
            descriptor=descriptor,
            log_path=self.log_path(session_id, active=True),
        )

    def finalize(self, session: Session, archive: bool = True) -> Session:
        """Finalize a session object and return its updated record."""
        archived_path = self.mark_completed(session.id, archive=archive)
        logger.info(f"Closed session {session.id} ({'archived' if archived_path else 'removed'})")
        return session.model_copy(
            update={
                "state": SessionState.ARCHIVED,
                "log_path": archived_path or self.log_path(session.id, active=False),
            }
        )


__all__ = [
    "ACTIVE_TABLE_NAME",
    "MASTER_INDEX_NAME",
    "SESSION_ID_PATTERN",
    "SessionRegistry",
    "is_valid_session_id",
    "session_id_from_path",
]

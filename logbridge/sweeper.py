"""
Retention sweeper.

Reclaims sessions that were never finalized (crashed or killed producers) and
deletes archived logs past the retention window. Each pass runs on its own;
a failure in one is logged and the next still runs.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .config import BridgeConfig
from .session_registry import SessionRegistry, session_id_from_path
from .session_schema import SessionKind

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

# A table entry may briefly exist before its file does.
REPAIR_GRACE_SECONDS = 60.0


@dataclass
class SweepReport:
    """What one sweep did."""

    stale_finalized: list[str] = field(default_factory=list)
    entries_repaired: list[str] = field(default_factory=list)
    orphans_finalized: list[str] = field(default_factory=list)
    archives_deleted: list[str] = field(default_factory=list)
    errors: int = 0

    @property
    def total(self) -> int:
        return (
            len(self.stale_finalized)
            + len(self.entries_repaired)
            + len(self.orphans_finalized)
            + len(self.archives_deleted)
        )

    def summary(self) -> str:
        return (
            f"{len(self.stale_finalized)} stale, {len(self.entries_repaired)} repaired, "
            f"{len(self.orphans_finalized)} orphaned, {len(self.archives_deleted)} expired"
            + (f", {self.errors} error(s)" if self.errors else "")
        )


def _mtime(path: Path) -> float | None:
    try:
        return path.stat().st_mtime
    except FileNotFoundError:
        return None


class RetentionSweeper:
    """
    Sweeps one registry namespace.

    A live session is stale when it started before the staleness window and
    its log has not been written within it. Stale sessions are archived when
    retention_days > 0 and deleted otherwise.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        retention_days: int = 1,
        stale_minutes: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.retention_days = retention_days
        self.stale_minutes = stale_minutes
        self._clock = clock
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @classmethod
    def from_config(
        cls,
        config: BridgeConfig,
        registry: SessionRegistry | None = None,
        kind: SessionKind = SessionKind.PROCESS_OUTPUT,
    ) -> "RetentionSweeper":
        if registry is None:
            registry = SessionRegistry.from_config(config, kind)
        return cls(registry, retention_days=config.retention_days, stale_minutes=config.stale_minutes)

    @property
    def archive(self) -> bool:
        return self.retention_days > 0

    @property
    def stale_seconds(self) -> float:
        return self.stale_minutes * 60.0

    # =========================================================================
    # Passes
    # =========================================================================

    def run(self) -> SweepReport:
        """Run every pass once."""
        report = SweepReport()
        for sweep in (self._sweep_stale, self._repair_table, self._sweep_orphans, self._sweep_archives):
            try:
                sweep(report)
            except OSError as e:
                report.errors += 1
                logger.warning(f"Sweep pass {sweep.__name__} failed: {e}")

        if report.total or report.errors:
            logger.info(f"Sweep of {self.registry.base_dir}: {report.summary()}")
        else:
            logger.debug(f"Sweep of {self.registry.base_dir}: nothing to do")
        return report

    def _sweep_stale(self, report: SweepReport) -> None:
        cutoff = self._clock() - self.stale_seconds
        for session_id, entry in self.registry.get_active_table().items():
            started = entry.started_at
            if started is not None and started.timestamp() > cutoff:
                continue
            modified = _mtime(self.registry.log_path(session_id, active=True))
            if modified is not None and modified > cutoff:
                continue
            logger.info(f"Reclaiming stale session {session_id} (started {entry.start_time})")
            self.registry.mark_completed(session_id, archive=self.archive)
            report.stale_finalized.append(session_id)

    def _repair_table(self, report: SweepReport) -> None:
        cutoff = self._clock() - REPAIR_GRACE_SECONDS
        for session_id, entry in self.registry.get_active_table().items():
            if self.registry.log_path(session_id, active=True).exists():
                continue
            started = entry.started_at
            if started is not None and started.timestamp() > cutoff:
                continue
            logger.info(f"Removing active entry {session_id} with no log file")
            if self.registry.remove_active_entry(session_id):
                report.entries_repaired.append(session_id)

    def _sweep_orphans(self, report: SweepReport) -> None:
        cutoff = self._clock() - self.stale_seconds
        live = set(self.registry.get_active_table())
        for path in self.registry.list_log_files(active=True):
            session_id = session_id_from_path(path)
            if session_id is None or session_id in live:
                continue
            modified = _mtime(path)
            if modified is None or modified > cutoff:
                continue
            logger.info(f"Reclaiming orphaned log {path.name}")
            self.registry.mark_completed(session_id, archive=self.archive)
            report.orphans_finalized.append(session_id)

    def _sweep_archives(self, report: SweepReport) -> None:
        cutoff = self._clock() - self.retention_days * SECONDS_PER_DAY
        for path in self.registry.list_log_files(active=False):
            modified = _mtime(path)
            if modified is None or modified > cutoff:
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                report.errors += 1
                logger.warning(f"Could not delete expired archive {path.name}: {e}")
                continue
            report.archives_deleted.append(path.name)

    # =========================================================================
    # Background thread
    # =========================================================================

    def start_periodic(self, interval: float) -> None:
        """Sweep every interval seconds on a daemon thread until stop()."""
        if self._thread and self._thread.is_alive():
            return
        if interval <= 0:
            raise ValueError(f"Sweep interval must be positive, got {interval}")
        self._stop_event = threading.Event()
        stop_event = self._stop_event

        def _sweep_loop() -> None:
            while not stop_event.wait(interval):
                try:
                    self.run()
                except Exception:
                    logger.warning("Periodic sweep failed", exc_info=True)

        self._thread = threading.Thread(target=_sweep_loop, name="logbridge-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        """Stop the background thread (best effort)."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None
        self._stop_event = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


__all__ = [
    "REPAIR_GRACE_SECONDS",
    "RetentionSweeper",
    "SweepReport",
]

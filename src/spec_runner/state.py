"""Durable execution state for one run.

Files inside the run directory:

- ``execution-state.json``: the live :class:`ExecutionState`, rewritten whole
  on every save.
- ``progress.log``: append-only human log, ``[timestamp] message`` lines.
  Trimmed to the most recent lines by :meth:`cleanup_on_complete`.
- ``archive/``: finished sessions, pruned by count and age.

Single-writer model: ``update()`` is load-merge-save with no locking.
Concurrent writers from several processes are not supported.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any

from spec_runner.errors import PersistenceError, SourceMissingError
from spec_runner.fileio import atomic_write_json, atomic_write_text
from spec_runner.models import (
    ExecutionState,
    FailedItem,
    IterationLimit,
    RunStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

STATE_FILENAME = "execution-state.json"
PROGRESS_FILENAME = "progress.log"
ARCHIVE_DIRNAME = "archive"

MAX_PROGRESS_LINES = 1000
MAX_ARCHIVED_STATES = 5
ARCHIVE_MAX_AGE_HOURS = 24.0


class ExecutionStateStore:
    """Persists the live state of a run inside ``run_dir``.

    Args:
        run_dir: Directory holding the state file, progress log and archive.
        max_progress_lines: Lines kept by the progress-log trim.
        max_archived_states: Archived sessions kept by the prune.
        archive_max_age_hours: Archived sessions older than this are deleted.
    """

    def __init__(
        self,
        run_dir: Path,
        *,
        max_progress_lines: int = MAX_PROGRESS_LINES,
        max_archived_states: int = MAX_ARCHIVED_STATES,
        archive_max_age_hours: float = ARCHIVE_MAX_AGE_HOURS,
    ) -> None:
        self.run_dir = run_dir
        self.state_path = run_dir / STATE_FILENAME
        self.progress_path = run_dir / PROGRESS_FILENAME
        self.archive_dir = run_dir / ARCHIVE_DIRNAME
        self.max_progress_lines = max_progress_lines
        self.max_archived_states = max_archived_states
        self.archive_max_age_hours = archive_max_age_hours

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(
        self,
        max_iterations: IterationLimit,
        source_ref: Path | str,
    ) -> ExecutionState:
        """Start a new session for ``source_ref``.

        Raises:
            SourceMissingError: If the source file does not exist.
        """
        source_path = Path(source_ref)
        if not source_path.is_file():
            raise SourceMissingError(source_path)

        now = utc_now()
        state = ExecutionState(
            session_id=str(uuid.uuid4()),
            start_time=now,
            max_iterations=max_iterations,
            source_ref=str(source_path),
            last_activity=now,
            source_hash=hashlib.sha256(source_path.read_bytes()).hexdigest(),
        )
        self.save(state)
        self.log_progress(
            f"Session started: {state.session_id}",
            f"Source: {state.source_ref}",
            f"Max iterations: {max_iterations}",
        )
        logger.info("Initialized session %s for %s", state.session_id, source_path)
        return state

    def load(self) -> ExecutionState | None:
        """Return the persisted state, or None if absent or unreadable."""
        if not self.state_path.exists():
            return None
        try:
            data = json.loads(self.state_path.read_text(encoding="utf-8"))
            return ExecutionState.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring unreadable state file %s: %s", self.state_path, exc)
            return None

    def save(self, state: ExecutionState) -> None:
        atomic_write_json(self.state_path, state.to_dict())

    def update(self, **changes: Any) -> ExecutionState | None:
        """Load, apply ``changes``, refresh ``last_activity`` and save."""
        state = self.load()
        if state is None:
            return None
        updated = replace(state, **changes)
        updated.touch()
        self.save(updated)
        return updated

    # ------------------------------------------------------------------
    # Item bookkeeping
    # ------------------------------------------------------------------

    def mark_item_result(
        self,
        item_id: str,
        success: bool,
        reason: str | None = None,
    ) -> ExecutionState | None:
        """Record one item outcome.

        The id is added to the completed (or failed) set at most once and a
        log line is written only on that first insertion. ``current_iteration``
        is incremented on every call. A repeated failure bumps ``retry_count``.
        """
        state = self.load()
        if state is None:
            return None

        if apply_item_result(state, item_id, success, reason):
            outcome = "PASSED" if success else f"FAILED: {reason or 'Unknown error'}"
            self.log_progress(f"{item_id} - {outcome}")
        self.save(state)
        return state

    def set_in_progress(self, item_id: str | None) -> ExecutionState | None:
        return self.update(in_progress_id=item_id)

    def set_status(self, status: RunStatus) -> ExecutionState | None:
        state = self.update(status=status)
        if state is not None:
            self.log_progress(f"Status changed to: {status}")
        return state

    # ------------------------------------------------------------------
    # Progress log
    # ------------------------------------------------------------------

    def log_progress(self, *messages: str) -> None:
        """Append timestamped lines to the progress log."""
        timestamp = utc_now().isoformat()
        content = "".join(f"[{timestamp}] {message}\n" for message in messages)
        self.progress_path.parent.mkdir(parents=True, exist_ok=True)
        with self.progress_path.open("a", encoding="utf-8") as fh:
            fh.write(content)

    def read_progress(self) -> str:
        try:
            return self.progress_path.read_text(encoding="utf-8")
        except OSError:
            return ""

    def clear(self) -> None:
        """Delete the state file and the progress log (best effort)."""
        for path in (self.state_path, self.progress_path):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Could not delete %s: %s", path, exc)

    # ------------------------------------------------------------------
    # Source tracking
    # ------------------------------------------------------------------

    def validate_source_exists(self) -> bool:
        state = self.load()
        if state is None:
            return False
        if Path(state.source_ref).is_file():
            return True
        self.log_progress(f"WARNING: work-item source missing: {state.source_ref}")
        return False

    def has_source_changed(self) -> bool:
        """True when the tracked source's content differs from session start."""
        state = self.load()
        if state is None or state.source_hash is None:
            return False
        try:
            current = hashlib.sha256(Path(state.source_ref).read_bytes()).hexdigest()
        except OSError:
            return False
        return current != state.source_hash

    @staticmethod
    def get_duration(state: ExecutionState) -> str:
        seconds = int((utc_now() - state.start_time).total_seconds())
        return f"{seconds // 60}m {seconds % 60}s"

    # ------------------------------------------------------------------
    # Bounded growth
    # ------------------------------------------------------------------

    def cleanup_on_complete(self) -> None:
        """Trim the log, archive a finished state and prune the archive.

        Every step is best effort: I/O errors are logged and swallowed.
        """
        self.trim_progress_log()
        self.archive_current_state()
        self.prune_archive()

    def trim_progress_log(self) -> None:
        try:
            lines = self.progress_path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("Could not read progress log for trimming: %s", exc)
            return

        if len(lines) <= self.max_progress_lines:
            return
        kept = lines[-self.max_progress_lines:]
        try:
            atomic_write_text(self.progress_path, "\n".join(kept) + "\n")
        except PersistenceError as exc:
            logger.warning("Could not trim progress log: %s", exc)

    def archive_current_state(self) -> Path | None:
        """Move a non-running state file into the archive directory."""
        state = self.load()
        if state is None or state.status == RunStatus.RUNNING:
            return None

        archive_name = (
            f"state-{state.session_id}-{state.status}-{int(time.time() * 1000)}.json"
        )
        archive_path = self.archive_dir / archive_name
        try:
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            self.state_path.replace(archive_path)
        except OSError as exc:
            logger.warning("Could not archive state %s: %s", state.session_id, exc)
            return None
        logger.info("Archived session %s to %s", state.session_id, archive_path)
        return archive_path

    def latest_archived(self) -> ExecutionState | None:
        """Most recently archived state, or None."""
        if not self.archive_dir.is_dir():
            return None
        candidates = sorted(
            self.archive_dir.glob("state-*.json"),
            key=lambda path: path.stat().st_mtime,
            reverse=True,
        )
        for path in candidates:
            try:
                return ExecutionState.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError):
                logger.debug("Skipping unreadable archive %s", path)
        return None

    def prune_archive(self) -> list[Path]:
        """Keep the newest archived states; delete overflow and stale files.

        Returns:
            Paths that were deleted.
        """
        if not self.archive_dir.is_dir():
            return []

        try:
            entries = [
                (path, path.stat().st_mtime)
                for path in self.archive_dir.iterdir()
                if path.suffix == ".json" and path.is_file()
            ]
        except OSError as exc:
            logger.warning("Could not list archive %s: %s", self.archive_dir, exc)
            return []

        entries.sort(key=lambda entry: entry[1], reverse=True)
        cutoff = time.time() - self.archive_max_age_hours * 3600
        deleted: list[Path] = []
        for index, (path, mtime) in enumerate(entries):
            if index < self.max_archived_states and mtime >= cutoff:
                continue
            try:
                path.unlink()
                deleted.append(path)
            except OSError as exc:
                logger.warning("Could not delete archived state %s: %s", path, exc)
        return deleted


def apply_item_result(
    state: ExecutionState,
    item_id: str,
    success: bool,
    reason: str | None = None,
) -> bool:
    """Apply one outcome to ``state`` in memory.

    Returns:
        True if the id was newly inserted into its target set.
    """
    inserted = False
    if success:
        if item_id not in state.completed_ids:
            state.completed_ids.append(item_id)
            inserted = True
    else:
        failed = state.failed_ids.get(item_id)
        if failed is None:
            state.failed_ids[item_id] = FailedItem(reason=reason or "Unknown error")
            inserted = True
        else:
            failed.retry_count += 1
            if reason:
                failed.reason = reason
    state.current_iteration += 1
    state.touch()
    return inserted


__all__ = [
    "STATE_FILENAME",
    "PROGRESS_FILENAME",
    "ARCHIVE_DIRNAME",
    "MAX_PROGRESS_LINES",
    "MAX_ARCHIVED_STATES",
    "ARCHIVE_MAX_AGE_HOURS",
    "ExecutionStateStore",
    "apply_item_result",
]

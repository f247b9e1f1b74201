"""Checkpoint/resume store.

A checkpoint is a size-bounded snapshot of run progress written to
``<run_dir>/checkpoints/checkpoint.json``. It is independent of the live
execution state: it is written after each batch, read only when resuming,
and deleted once a run completes successfully.

Architecture:
- RunContext: in-memory progress of a run (completed set, failed map,
  free-form context map)
- Checkpoint / CheckpointMetadata: the persisted snapshot
- CheckpointStore: save / load / resume / exists / clear
- serialize_context(): bounded serialization of the context map
"""

from __future__ import annotations

import json
import logging
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from spec_runner.errors import PersistenceError, StaleCheckpointError
from spec_runner.fileio import atomic_write_json
from spec_runner.models import FailedItem, utc_now

logger = logging.getLogger(__name__)

CHECKPOINT_DIRNAME = "checkpoints"
CHECKPOINT_FILENAME = "checkpoint.json"
TRUNCATED = "[truncated]"
DEFAULT_MAX_CONTEXT_SIZE = 10000
VERSION_TAG = "1"


@dataclass
class RunContext:
    """Progress of a run as reconstructed from (or saved to) a checkpoint."""

    run_id: str
    current_batch: int = 0
    completed_ids: set[str] = field(default_factory=set)
    failed_items: dict[str, FailedItem] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    retry_counters: dict[str, int] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class CheckpointMetadata:
    total_items: int
    source_ref: str
    version_tag: str = VERSION_TAG
    branch: str | None = None
    commit_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "total_items": self.total_items,
            "source_ref": self.source_ref,
            "version_tag": self.version_tag,
        }
        if self.branch:
            d["branch"] = self.branch
        if self.commit_hash:
            d["commit_hash"] = self.commit_hash
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckpointMetadata:
        return cls(
            total_items=data.get("total_items", 0),
            source_ref=data.get("source_ref", ""),
            version_tag=data.get("version_tag", VERSION_TAG),
            branch=data.get("branch"),
            commit_hash=data.get("commit_hash"),
        )


@dataclass(frozen=True)
class SaveOptions:
    include_context: bool = True
    max_context_size: int = DEFAULT_MAX_CONTEXT_SIZE


@dataclass(frozen=True)
class ResumeOptions:
    validate: bool = True
    restore_context: bool = True


@dataclass
class Checkpoint:
    """Persisted snapshot. Field names mirror the JSON keys."""

    run_id: str | None
    timestamp: str | None
    current_batch: int
    completed_ids: list[str]
    failed_items: list[dict[str, Any]]
    context: dict[str, Any]
    metadata: CheckpointMetadata

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "current_batch": self.current_batch,
            "completed_ids": list(self.completed_ids),
            "failed_items": [dict(entry) for entry in self.failed_items],
            "context": dict(self.context),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        """Rebuild a checkpoint from its JSON form.

        Raises:
            TypeError: If a field has the wrong JSON shape.
        """
        for key, expected in (
            ("completed_ids", list),
            ("failed_items", list),
            ("context", dict),
            ("metadata", dict),
        ):
            if key in data and not isinstance(data[key], expected):
                raise TypeError(f"{key} must be a {expected.__name__}")
        failed_items = list(data.get("failed_items", []))
        if not all(isinstance(entry, dict) for entry in failed_items):
            raise TypeError("failed_items entries must be objects")
        return cls(
            run_id=data.get("run_id"),
            timestamp=data.get("timestamp"),
            current_batch=data.get("current_batch", 0),
            completed_ids=list(data.get("completed_ids", [])),
            failed_items=failed_items,
            context=dict(data.get("context", {})),
            metadata=CheckpointMetadata.from_dict(data.get("metadata", {})),
        )


def serialize_context(context: dict[str, Any], max_size: int) -> dict[str, Any]:
    """Serialize ``context`` in map order within ``max_size`` characters.

    Sizes are measured on each value's JSON encoding. The first entry that
    would push the running total past ``max_size``, and every entry after
    it, is stored as ``"[truncated]"``. Earlier entries are kept verbatim.
    """
    serialized: dict[str, Any] = {}
    total = 0
    overflowed = False
    for key, value in context.items():
        if overflowed:
            serialized[key] = TRUNCATED
            continue
        size = len(json.dumps(value, default=str))
        if total + size > max_size:
            overflowed = True
            serialized[key] = TRUNCATED
            continue
        serialized[key] = value
        total += size
    return serialized


def create_run_context(run_id: str | None = None) -> RunContext:
    """Start a fresh run context with a generated id when none is given."""
    if run_id is None:
        stamp = utc_now().isoformat().replace(":", "-").replace(".", "-")
        alphabet = string.ascii_lowercase + string.digits
        suffix = "".join(secrets.choice(alphabet) for _ in range(6))
        run_id = f"run-{stamp}-{suffix}"
    return RunContext(run_id=run_id)


class CheckpointStore:
    """Reads and writes the single checkpoint file of a run directory.

    Args:
        checkpoint_dir: Directory that holds ``checkpoint.json``.
    """

    def __init__(self, checkpoint_dir: Path) -> None:
        self.checkpoint_dir = checkpoint_dir
        self.path = checkpoint_dir / CHECKPOINT_FILENAME

    def save(
        self,
        run: RunContext,
        metadata: CheckpointMetadata,
        options: SaveOptions | None = None,
    ) -> bool:
        """Write a checkpoint for ``run``.

        Returns:
            True on success. Write failures are logged and reported as False;
            a failed checkpoint never aborts a run.
        """
        options = options or SaveOptions()
        failed_items = [
            {"id": item_id, "reason": failed.reason, "retry_count": failed.retry_count}
            for item_id, failed in run.failed_items.items()
        ]
        checkpoint = Checkpoint(
            run_id=run.run_id,
            timestamp=utc_now().isoformat(),
            current_batch=run.current_batch,
            completed_ids=sorted(run.completed_ids),
            failed_items=failed_items,
            context=(
                serialize_context(run.context, options.max_context_size)
                if options.include_context
                else {}
            ),
            metadata=metadata,
        )
        try:
            atomic_write_json(self.path, checkpoint.to_dict())
        except (PersistenceError, TypeError, ValueError) as exc:
            logger.warning("Checkpoint save failed for %s: %s", run.run_id, exc)
            return False
        logger.debug("Saved checkpoint for %s at batch %d", run.run_id, run.current_batch)
        return True

    def load(self, run_id: str | None = None) -> Checkpoint | None:
        """Return the stored checkpoint, optionally only if it matches ``run_id``."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable checkpoint %s: %s", self.path, exc)
            return None
        if not isinstance(data, dict):
            return None

        try:
            checkpoint = Checkpoint.from_dict(data)
        except TypeError as exc:
            logger.warning("Ignoring malformed checkpoint %s: %s", self.path, exc)
            return None
        if run_id is not None and checkpoint.run_id != run_id:
            return None
        return checkpoint

    def resume(
        self,
        checkpoint: Checkpoint,
        options: ResumeOptions | None = None,
    ) -> RunContext:
        """Rebuild a :class:`RunContext` from ``checkpoint``.

        Raises:
            StaleCheckpointError: If ``run_id`` or ``timestamp`` is missing
                and validation is enabled, or if a failed item has no id or the
                timestamp cannot be parsed.
        """
        options = options or ResumeOptions()
        if options.validate and (not checkpoint.run_id or not checkpoint.timestamp):
            raise StaleCheckpointError("Invalid checkpoint: missing required fields")

        failed: dict[str, FailedItem] = {}
        for entry in checkpoint.failed_items:
            if not entry.get("id"):
                raise StaleCheckpointError("Invalid checkpoint: failed item without an id")
            failed[entry["id"]] = FailedItem(
                reason=entry.get("reason", ""),
                retry_count=entry.get("retry_count", 0),
            )

        try:
            started_at = (
                datetime.fromisoformat(checkpoint.timestamp) if checkpoint.timestamp else utc_now()
            )
        except (TypeError, ValueError) as exc:
            raise StaleCheckpointError(
                f"Invalid checkpoint timestamp: {checkpoint.timestamp!r}"
            ) from exc
        return RunContext(
            run_id=checkpoint.run_id or "",
            current_batch=checkpoint.current_batch,
            completed_ids=set(checkpoint.completed_ids),
            failed_items=failed,
            context=dict(checkpoint.context) if options.restore_context else {},
            retry_counters={item_id: f.retry_count for item_id, f in failed.items()},
            started_at=started_at,
        )

    def exists(self) -> bool:
        try:
            return self.path.is_file()
        except OSError:
            return False

    def clear(self) -> None:
        try:
            self.path.unlink()
        except OSError:
            pass


__all__ = [
    "TRUNCATED",
    "DEFAULT_MAX_CONTEXT_SIZE",
    "RunContext",
    "CheckpointMetadata",
    "SaveOptions",
    "ResumeOptions",
    "Checkpoint",
    "CheckpointStore",
    "serialize_context",
    "create_run_context",
]

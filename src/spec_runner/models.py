"""Core data types for spec-runner.

Defines the run lifecycle types: RunStatus enum, IterationLimit, WorkItem,
Batch, ExecutionSummary, FailedItem and ExecutionState. Every persisted type
round-trips through ``to_dict()`` / ``from_dict()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from spec_runner.capabilities import AgentCapability

UNBOUNDED = "unbounded"


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class RunStatus(StrEnum):
    """Lifecycle states of a single run."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class IterationLimit:
    """Maximum number of item executions for a run.

    ``limit is None`` means unbounded. The unbounded case is an explicit tag,
    never a float infinity, so it cannot leak into arithmetic.
    """

    limit: int | None = None

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit < 1:
            raise ValueError(f"Iteration limit must be >= 1, got {self.limit}")

    @classmethod
    def unbounded(cls) -> IterationLimit:
        return cls(None)

    @classmethod
    def of(cls, limit: int) -> IterationLimit:
        return cls(limit)

    @classmethod
    def parse(cls, value: int | str | None) -> IterationLimit:
        """Parse ``"unbounded"``, ``None`` or a positive integer (or digit string)."""
        if value is None:
            return cls.unbounded()
        if isinstance(value, bool):
            raise ValueError(f"Invalid iteration limit: {value!r}")
        if isinstance(value, int):
            return cls(value)
        text = str(value).strip().lower()
        if text in (UNBOUNDED, "none", ""):
            return cls.unbounded()
        if not text.isdigit():
            raise ValueError(f"Invalid iteration limit: {value!r}")
        return cls(int(text))

    @property
    def is_unbounded(self) -> bool:
        return self.limit is None

    def reached(self, iterations: int) -> bool:
        """True when a bounded limit has been reached; never for unbounded."""
        return self.limit is not None and iterations >= self.limit

    def to_json(self) -> int | str:
        return UNBOUNDED if self.limit is None else self.limit

    def __str__(self) -> str:
        return str(self.to_json())


@dataclass
class WorkItem:
    """A unit of work with acceptance criteria, priority and dependencies.

    ``passes`` and ``notes`` are written back by the orchestrator after
    each execution; everything else is owned by the work-item source.
    """

    id: str
    title: str
    description: str
    acceptance_criteria: tuple[str, ...]
    priority: int
    agent_ref: str
    dependencies: tuple[str, ...] = ()
    passes: bool = False
    notes: str = ""
    tech: str = ""
    capability: AgentCapability = field(init=False)

    def __post_init__(self) -> None:
        self.acceptance_criteria = tuple(self.acceptance_criteria)
        self.dependencies = tuple(self.dependencies)
        self.capability = AgentCapability.from_ref(self.agent_ref)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "acceptance_criteria": list(self.acceptance_criteria),
            "priority": self.priority,
            "agent": self.agent_ref,
            "dependencies": list(self.dependencies),
            "passes": self.passes,
            "notes": self.notes,
        }
        if self.tech:
            d["tech"] = self.tech
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkItem:
        criteria = data.get("acceptance_criteria", data.get("acceptanceCriteria", []))
        return cls(
            id=data["id"],
            title=data["title"],
            description=data.get("description", ""),
            acceptance_criteria=tuple(criteria),
            priority=data["priority"],
            agent_ref=data.get("agent", ""),
            dependencies=tuple(data.get("dependencies", [])),
            passes=data.get("passes", False),
            notes=data.get("notes", ""),
            tech=data.get("tech", ""),
        )


@dataclass(frozen=True)
class Batch:
    """Items whose dependencies are all satisfied by earlier batches."""

    batch_number: int
    items: tuple[WorkItem, ...]
    dependencies_met: bool = True

    @property
    def can_run_in_parallel(self) -> bool:
        return len(self.items) > 1

    @property
    def item_ids(self) -> list[str]:
        return [item.id for item in self.items]


@dataclass(frozen=True)
class ExecutionSummary:
    """Plan metrics reported before a run."""

    total_items: int
    max_parallel_items: int
    estimated_batches: int
    critical_path: tuple[str, ...]


@dataclass
class FailedItem:
    """Failure record for one item."""

    reason: str
    retry_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.reason, "retry_count": self.retry_count}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailedItem:
        if not isinstance(data, dict):
            raise TypeError(f"failure record must be an object, got {type(data).__name__}")
        return cls(reason=data.get("reason", ""), retry_count=data.get("retry_count", 0))


@dataclass
class ExecutionState:
    """Live progress record of one run (``execution-state.json``)."""

    session_id: str
    start_time: datetime
    max_iterations: IterationLimit
    source_ref: str
    current_iteration: int = 0
    current_batch: int = 0
    total_batches: int = 0
    completed_ids: list[str] = field(default_factory=list)
    failed_ids: dict[str, FailedItem] = field(default_factory=dict)
    in_progress_id: str | None = None
    status: RunStatus = RunStatus.RUNNING
    last_activity: datetime = field(default_factory=utc_now)
    source_hash: str | None = None

    def touch(self) -> None:
        self.last_activity = utc_now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "start_time": self.start_time.isoformat(),
            "current_iteration": self.current_iteration,
            "max_iterations": self.max_iterations.to_json(),
            "current_batch": self.current_batch,
            "total_batches": self.total_batches,
            "completed_ids": list(self.completed_ids),
            "failed_ids": {
                item_id: failed.to_dict() for item_id, failed in self.failed_ids.items()
            },
            "in_progress_id": self.in_progress_id,
            "status": str(self.status),
            "last_activity": self.last_activity.isoformat(),
            "source_ref": self.source_ref,
            "source_hash": self.source_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionState:
        """Rebuild a state from its JSON form.

        Raises:
            KeyError: If a required field is missing.
            TypeError: If a field has the wrong JSON shape.
            ValueError: If a timestamp, status or limit cannot be parsed.
        """
        if not isinstance(data, dict):
            raise TypeError(f"state must be an object, got {type(data).__name__}")
        if not isinstance(data.get("failed_ids", {}), dict):
            raise TypeError("failed_ids must be an object")
        if not isinstance(data.get("completed_ids", []), list):
            raise TypeError("completed_ids must be a list")
        return cls(
            session_id=data["session_id"],
            start_time=datetime.fromisoformat(data["start_time"]),
            max_iterations=IterationLimit.parse(data.get("max_iterations")),
            source_ref=data["source_ref"],
            current_iteration=data.get("current_iteration", 0),
            current_batch=data.get("current_batch", 0),
            total_batches=data.get("total_batches", 0),
            completed_ids=list(data.get("completed_ids", [])),
            failed_ids={
                item_id: FailedItem.from_dict(failed)
                for item_id, failed in data.get("failed_ids", {}).items()
            },
            in_progress_id=data.get("in_progress_id"),
            status=RunStatus(data.get("status", RunStatus.RUNNING)),
            last_activity=datetime.fromisoformat(data["last_activity"]),
            source_hash=data.get("source_hash"),
        )


__all__ = [
    "UNBOUNDED",
    "utc_now",
    "RunStatus",
    "IterationLimit",
    "WorkItem",
    "Batch",
    "ExecutionSummary",
    "FailedItem",
    "ExecutionState",
]

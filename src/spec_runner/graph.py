"""Dependency graph planning for work items.

Turns an immutable list of work items into ordered batches where every
item's dependencies were placed in a strictly earlier batch. Items inside a
batch are independent of each other and may run concurrently.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable, Sequence

from spec_runner.errors import CircularDependencyError
from spec_runner.models import Batch, ExecutionSummary, WorkItem

logger = logging.getLogger(__name__)


def plan_signature(items: Iterable[WorkItem]) -> str:
    """Return a SHA-256 digest over everything that affects planning.

    Covers ids, priorities, dependencies and ``passes`` in source order, so
    any content edit invalidates a cached plan.
    """
    canonical = json.dumps(
        [
            [item.id, item.priority, sorted(item.dependencies), item.passes]
            for item in items
        ],
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class WorkItemGraph:
    """Batch planner and plan metrics over a fixed set of work items.

    Args:
        items: Work items in source order. Dependencies that are not part of
            this set are treated as already satisfied (``satisfied``), which
            lets a resumed run plan only the remaining items.
        satisfied: Ids that count as placed before the first batch.
    """

    def __init__(
        self,
        items: Sequence[WorkItem],
        satisfied: Iterable[str] = (),
    ) -> None:
        self._items: tuple[WorkItem, ...] = tuple(items)
        self._by_id: dict[str, WorkItem] = {item.id: item for item in self._items}
        self._satisfied: frozenset[str] = frozenset(satisfied)
        self._cached_batches: list[Batch] | None = None
        self._cached_signature: str | None = None

    @property
    def items(self) -> tuple[WorkItem, ...]:
        return self._items

    def generate_batches(self) -> list[Batch]:
        """Plan the items into dependency-respecting batches.

        Each batch holds every unplaced item whose dependencies are already
        placed, sorted by descending priority (source order breaks ties).

        Raises:
            CircularDependencyError: If some items can never become ready.
                No partial plan is returned.
        """
        signature = plan_signature(self._items)
        if self._cached_batches is not None and signature == self._cached_signature:
            return list(self._cached_batches)

        placed: set[str] = set(self._satisfied)
        remaining = [item for item in self._items if item.id not in placed]
        batches: list[Batch] = []

        while remaining:
            ready = [
                item for item in remaining
                if all(dep in placed for dep in item.dependencies)
            ]
            if not ready:
                raise CircularDependencyError([item.id for item in remaining])

            ready.sort(key=lambda item: -item.priority)
            batches.append(Batch(batch_number=len(batches) + 1, items=tuple(ready)))

            placed.update(item.id for item in ready)
            ready_ids = {item.id for item in ready}
            remaining = [item for item in remaining if item.id not in ready_ids]

        logger.debug("Planned %d items into %d batches", len(self._items), len(batches))
        self._cached_batches = batches
        self._cached_signature = signature
        return list(batches)

    def get_execution_summary(self) -> ExecutionSummary:
        """Compute plan metrics: size, peak parallelism, batches, critical path."""
        batches = self.generate_batches()
        max_parallel = max((len(batch.items) for batch in batches), default=0)
        return ExecutionSummary(
            total_items=len(self._items),
            max_parallel_items=max_parallel,
            estimated_batches=len(batches),
            critical_path=tuple(self.find_critical_path()),
        )

    def find_critical_path(self) -> list[str]:
        """Return the longest dependency chain, deepest item first.

        Walks from the deepest item back through its deepest dependency until
        an item with no (in-set) dependencies is reached.
        """
        if not self._items:
            return []

        depths = self._compute_depths()
        current: str | None = max(self._items, key=lambda item: depths[item.id]).id
        path: list[str] = []

        while current is not None:
            path.append(current)
            deps = self._in_set_deps(self._by_id[current])
            if not deps:
                break
            current = max(deps, key=lambda dep: depths[dep])

        return path

    def visualize(self) -> str:
        """Render the graph and its summary as plain text."""
        summary = self.get_execution_summary()
        lines = ["Dependency Graph:", ""]
        for item in self._items:
            line = f"  {item.id}: {item.title} (priority: {item.priority})"
            if item.dependencies:
                line += f" <- [{', '.join(item.dependencies)}]"
            lines.append(line)
        lines.extend([
            "",
            "Summary:",
            f"  Total items: {summary.total_items}",
            f"  Max parallel: {summary.max_parallel_items}",
            f"  Estimated batches: {summary.estimated_batches}",
            f"  Critical path: [{' -> '.join(summary.critical_path)}]",
        ])
        return "\n".join(lines)

    def _in_set_deps(self, item: WorkItem) -> list[str]:
        return [dep for dep in item.dependencies if dep in self._by_id]

    def _compute_depths(self) -> dict[str, int]:
        # Iterative post-order; planning has already proven the graph acyclic.
        self.generate_batches()
        memo: dict[str, int] = {}
        for root in self._items:
            stack: list[str] = [root.id]
            while stack:
                item_id = stack[-1]
                if item_id in memo:
                    stack.pop()
                    continue
                deps = self._in_set_deps(self._by_id[item_id])
                pending = [dep for dep in deps if dep not in memo]
                if pending:
                    stack.extend(pending)
                    continue
                memo[item_id] = 1 + max((memo[dep] for dep in deps), default=0)
                stack.pop()
        return memo


__all__ = ["WorkItemGraph", "plan_signature"]

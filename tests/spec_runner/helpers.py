"""Factories shared by the spec_runner tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from spec_runner.models import WorkItem


def make_item(
    item_id: str,
    *,
    priority: int = 5,
    dependencies: tuple[str, ...] = (),
    passes: bool = False,
    agent: str = "builder",
    title: str | None = None,
) -> WorkItem:
    """Factory for work items with sensible defaults."""
    return WorkItem(
        id=item_id,
        title=title or f"Item {item_id}",
        description=f"Do the work for {item_id}",
        acceptance_criteria=(f"{item_id} works",),
        priority=priority,
        agent_ref=agent,
        dependencies=dependencies,
        passes=passes,
    )


def source_document(items: list[WorkItem], **extra: Any) -> dict[str, Any]:
    doc: dict[str, Any] = {
        "project": "demo",
        "branch_name": "feature/demo",
        "description": "Demo project",
        "items": [item.to_dict() for item in items],
    }
    doc.update(extra)
    return doc


def write_source(path: Path, items: list[WorkItem]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(source_document(items), indent=2), encoding="utf-8")
    return path



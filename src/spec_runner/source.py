"""Work-item source: the JSON file that owns the work items.

Provides:
- WORK_ITEMS_SCHEMA: JSON Schema for the source document
- SourceDocument: parsed document (project metadata + items)
- validate_document(data): schema + referential validation
- WorkItemSource: load / save / update-by-id / merge over one JSON file

The document looks like::

    {
      "project": "demo",
      "branch_name": "feature/demo",
      "description": "...",
      "items": [
        {"id": "WI-1", "title": "...", "description": "...",
         "acceptance_criteria": ["..."], "priority": 5, "agent": "builder",
         "dependencies": [], "passes": false, "notes": ""}
      ]
    }

camelCase spellings (``userStories``, ``branchName``, ``acceptanceCriteria``)
are accepted on read and normalized.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema

from spec_runner.errors import SourceMissingError, ValidationError
from spec_runner.fileio import atomic_write_json
from spec_runner.models import WorkItem

logger = logging.getLogger(__name__)

SOURCE_FILENAME = "items.json"

_ITEM_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": [
        "id",
        "title",
        "description",
        "acceptance_criteria",
        "priority",
        "agent",
        "dependencies",
        "passes",
    ],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "title": {"type": "string", "minLength": 1},
        "description": {"type": "string", "minLength": 1},
        "acceptance_criteria": {
            "type": "array",
            "minItems": 1,
            "items": {"type": "string"},
        },
        "priority": {"type": "integer", "minimum": 1, "maximum": 10},
        "agent": {"type": "string", "minLength": 1},
        "tech": {"type": "string"},
        "dependencies": {"type": "array", "items": {"type": "string"}},
        "passes": {"type": "boolean"},
        "notes": {"type": "string"},
    },
}

WORK_ITEMS_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["project", "items"],
    "properties": {
        "project": {"type": "string", "minLength": 1},
        "branch_name": {"type": "string"},
        "description": {"type": "string"},
        "items": {"type": "array", "minItems": 1, "items": _ITEM_SCHEMA},
    },
}

_DOCUMENT_ALIASES = {"userStories": "items", "branchName": "branch_name"}
_ITEM_ALIASES = {"acceptanceCriteria": "acceptance_criteria"}


@dataclass
class SourceDocument:
    """Parsed work-item source."""

    project: str
    items: list[WorkItem]
    branch_name: str = ""
    description: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = dict(self.extra)
        d.update({
            "project": self.project,
            "branch_name": self.branch_name,
            "description": self.description,
            "items": [item.to_dict() for item in self.items],
        })
        return d


def _normalize(data: dict[str, Any]) -> dict[str, Any]:
    doc = {_DOCUMENT_ALIASES.get(k, k): v for k, v in data.items()}
    items = doc.get("items")
    if isinstance(items, list):
        doc["items"] = [
            {_ITEM_ALIASES.get(k, k): v for k, v in item.items()}
            if isinstance(item, dict) else item
            for item in items
        ]
    return doc


def validate_document(data: Any) -> SourceDocument:
    """Validate a raw source document and build a :class:`SourceDocument`.

    Raises:
        ValidationError: On schema violations, duplicate ids or dependencies
            that do not resolve within the item set. ``errors`` lists every
            problem found.
    """
    if not isinstance(data, dict):
        raise ValidationError("Work-item source must be a JSON object")

    doc = _normalize(data)
    validator = jsonschema.Draft202012Validator(WORK_ITEMS_SCHEMA)
    raw_errors = sorted(validator.iter_errors(doc), key=lambda e: list(e.path))
    if raw_errors:
        messages = []
        for err in raw_errors:
            path = ".".join(str(p) for p in err.absolute_path) if err.absolute_path else "(root)"
            messages.append(f"{path}: {err.message}")
        raise ValidationError(
            f"Work-item source validation failed with {len(messages)} error(s)",
            errors=messages,
        )

    items = [WorkItem.from_dict(raw) for raw in doc["items"]]

    errors: list[str] = []
    seen: set[str] = set()
    for item in items:
        if item.id in seen:
            errors.append(f"duplicate item id: {item.id}")
        seen.add(item.id)
    for item in items:
        for dep in item.dependencies:
            if dep not in seen:
                errors.append(f"item {item.id} depends on non-existent item {dep}")
            elif dep == item.id:
                errors.append(f"item {item.id} depends on itself")
    if errors:
        raise ValidationError(
            f"Work-item source has {len(errors)} invalid reference(s)",
            errors=errors,
        )

    known = {"project", "branch_name", "description", "items"}
    return SourceDocument(
        project=doc["project"],
        branch_name=doc.get("branch_name", ""),
        description=doc.get("description", ""),
        items=items,
        extra={k: v for k, v in doc.items() if k not in known},
    )


class WorkItemSource:
    """File-backed collection of work items.

    Args:
        path: Path to the JSON source document.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def assert_exists(self) -> None:
        if not self.exists():
            raise SourceMissingError(self._path)

    def load_document(self) -> SourceDocument:
        """Read and validate the source document.

        Raises:
            SourceMissingError: If the file does not exist.
            ValidationError: If the file is not valid JSON or fails validation.
        """
        self.assert_exists()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValidationError(
                f"Invalid JSON in {self._path}: {exc}",
                errors=[f"line {exc.lineno}: {exc.msg}"],
            ) from exc
        return validate_document(data)

    def load(self) -> list[WorkItem]:
        return self.load_document().items

    def save(self, document: SourceDocument) -> Path:
        """Overwrite the source with ``document``. Prefer :meth:`merge`."""
        validate_document(document.to_dict())
        atomic_write_json(self._path, document.to_dict())
        return self._path

    def update_item(self, item_id: str, *, passes: bool, notes: str) -> bool:
        """Write back the outcome of one item.

        Returns:
            False if the source or the item does not exist.
        """
        if not self.exists():
            logger.warning("Cannot update %s: source missing at %s", item_id, self._path)
            return False

        document = self.load_document()
        for item in document.items:
            if item.id == item_id:
                item.passes = passes
                item.notes = notes
                atomic_write_json(self._path, document.to_dict())
                return True

        logger.warning("Cannot update %s: no such item in %s", item_id, self._path)
        return False

    def merge(self, incoming: SourceDocument) -> Path:
        """Merge ``incoming`` into the stored document.

        Existing items keep their ``passes`` and ``notes``; their definitions
        are replaced by the incoming version. New items are appended. The
        result is sorted by priority, then id.
        """
        if not self.exists():
            logger.info("Creating new work-item source at %s", self._path)
            return self.save(incoming)

        existing = self.load_document()
        by_id: dict[str, WorkItem] = {item.id: item for item in existing.items}

        for item in incoming.items:
            current = by_id.get(item.id)
            if current is None:
                logger.info("Adding new item: %s", item.id)
                by_id[item.id] = item
                continue
            logger.info("Updating existing item: %s", item.id)
            item.passes = current.passes
            item.notes = current.notes
            by_id[item.id] = item

        merged = SourceDocument(
            project=existing.project,
            branch_name=existing.branch_name,
            description=_merge_descriptions(existing.description, incoming.description),
            items=sorted(by_id.values(), key=lambda i: (i.priority, i.id)),
            extra=existing.extra,
        )
        logger.info(
            "Merged sources: %d existing, %d incoming, %d total",
            len(existing.items), len(incoming.items), len(merged.items),
        )
        return self.save(merged)

    def content_hash(self) -> str | None:
        """SHA-256 of the raw file, or None when it is missing."""
        if not self.exists():
            return None
        return hashlib.sha256(self._path.read_bytes()).hexdigest()


def _merge_descriptions(existing: str, incoming: str) -> str:
    if not incoming or incoming.lower() in existing.lower():
        return existing
    if not existing:
        return incoming
    return f"{existing}\n\n{incoming}"


__all__ = [
    "SOURCE_FILENAME",
    "WORK_ITEMS_SCHEMA",
    "SourceDocument",
    "validate_document",
    "WorkItemSource",
]

"""Tests for the JSON work-item source: validation, write-back and merge."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from spec_runner.capabilities import AgentCapability
from spec_runner.errors import SourceMissingError, ValidationError
from spec_runner.source import SourceDocument, WorkItemSource, validate_document

from tests.spec_runner.helpers import make_item, source_document, write_source


def raw_item(item_id: str, **overrides: object) -> dict:
    data = make_item(item_id).to_dict()
    data.update(overrides)
    return data


class TestValidateDocument:
    def test_valid_document(self) -> None:
        doc = validate_document(source_document([make_item("A"), make_item("B", dependencies=("A",))]))
        assert doc.project == "demo"
        assert doc.branch_name == "feature/demo"
        assert [item.id for item in doc.items] == ["A", "B"]
        assert doc.items[1].dependencies == ("A",)

    def test_camel_case_aliases(self) -> None:
        item = raw_item("A")
        item["acceptanceCriteria"] = item.pop("acceptance_criteria")
        doc = validate_document({"project": "demo", "branchName": "main", "userStories": [item]})

        assert doc.branch_name == "main"
        assert doc.items[0].acceptance_criteria == ("A works",)

    def test_agent_resolved_to_capability(self) -> None:
        doc = validate_document(
            source_document([make_item("A", agent="architect:strategist"), make_item("B", agent="??")])
        )
        assert doc.items[0].capability == AgentCapability.DESIGN
        assert doc.items[1].capability == AgentCapability.GENERIC

    @pytest.mark.parametrize(
        "overrides",
        [
            {"priority": 0},
            {"priority": 11},
            {"acceptance_criteria": []},
            {"title": ""},
        ],
    )
    def test_schema_violations(self, overrides: dict) -> None:
        doc = {"project": "demo", "items": [raw_item("A", **overrides)]}
        with pytest.raises(ValidationError) as exc_info:
            validate_document(doc)
        assert exc_info.value.errors
        assert all(": " in message for message in exc_info.value.errors)

    def test_missing_required_field(self) -> None:
        item = raw_item("A")
        del item["priority"]
        with pytest.raises(ValidationError) as exc_info:
            validate_document({"project": "demo", "items": [item]})
        assert any("priority" in message for message in exc_info.value.errors)

    def test_empty_item_list_rejected(self) -> None:
        with pytest.raises(ValidationError):
            validate_document({"project": "demo", "items": []})

    def test_unresolved_dependency(self) -> None:
        doc = source_document([make_item("A", dependencies=("ghost",))])
        with pytest.raises(ValidationError) as exc_info:
            validate_document(doc)
        assert exc_info.value.errors == ["item A depends on non-existent item ghost"]

    def test_duplicate_ids(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_document(source_document([make_item("A"), make_item("A")]))
        assert "duplicate item id: A" in exc_info.value.errors

    def test_non_object_rejected(self) -> None:
        with pytest.raises(ValidationError):
            validate_document([1, 2, 3])


class TestWorkItemSource:
    def test_missing_file(self, source_path: Path) -> None:
        source = WorkItemSource(source_path)
        assert source.exists() is False
        assert source.content_hash() is None
        with pytest.raises(SourceMissingError):
            source.load()

    def test_invalid_json(self, source_path: Path) -> None:
        source_path.write_text("{oops", encoding="utf-8")
        with pytest.raises(ValidationError, match="Invalid JSON"):
            WorkItemSource(source_path).load()

    def test_update_item_writes_back(self, source_path: Path) -> None:
        write_source(source_path, [make_item("A"), make_item("B")])
        source = WorkItemSource(source_path)

        assert source.update_item("B", passes=True, notes="done") is True

        data = json.loads(source_path.read_text(encoding="utf-8"))
        assert data["items"][1]["passes"] is True
        assert data["items"][1]["notes"] == "done"
        assert data["items"][0]["passes"] is False

    def test_update_unknown_item(self, source_path: Path) -> None:
        write_source(source_path, [make_item("A")])
        assert WorkItemSource(source_path).update_item("Z", passes=True, notes="") is False

    def test_update_missing_source(self, source_path: Path) -> None:
        assert WorkItemSource(source_path).update_item("A", passes=True, notes="") is False

    def test_content_hash_changes_with_content(self, source_path: Path) -> None:
        write_source(source_path, [make_item("A")])
        source = WorkItemSource(source_path)
        before = source.content_hash()
        source.update_item("A", passes=True, notes="ok")
        assert source.content_hash() != before


class TestMerge:
    def test_merge_preserves_passes_and_notes(self, source_path: Path) -> None:
        write_source(source_path, [make_item("A", priority=5), make_item("B", priority=5)])
        source = WorkItemSource(source_path)
        source.update_item("A", passes=True, notes="shipped")

        incoming = SourceDocument(
            project="demo",
            description="More work",
            items=[make_item("A", priority=5, title="Renamed"), make_item("C", priority=1)],
        )
        source.merge(incoming)

        doc = source.load_document()
        by_id = {item.id: item for item in doc.items}
        assert by_id["A"].passes is True
        assert by_id["A"].notes == "shipped"
        assert by_id["A"].title == "Renamed"
        assert set(by_id) == {"A", "B", "C"}
        assert [item.id for item in doc.items] == ["C", "A", "B"]
        assert "More work" in doc.description

    def test_merge_into_missing_source_creates_it(self, source_path: Path) -> None:
        source = WorkItemSource(source_path)
        source.merge(SourceDocument(project="demo", items=[make_item("A")]))
        assert [item.id for item in source.load()] == ["A"]

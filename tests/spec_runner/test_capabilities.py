from __future__ import annotations

import pytest

from spec_runner.capabilities import AgentCapability
from spec_runner.models import IterationLimit

from tests.spec_runner.helpers import make_item


class TestAgentCapability:
    @pytest.mark.parametrize(
        ("ref", "expected"),
        [
            ("builder", AgentCapability.BUILD),
            ("builder:task", AgentCapability.BUILD),
            (" Builder:Constructor ", AgentCapability.BUILD),
            ("architect:strategist", AgentCapability.DESIGN),
            ("explorer", AgentCapability.EXPLORE),
            ("simplifier:surgeon", AgentCapability.SIMPLIFY),
            ("builder:build", AgentCapability.BUILD),
            ("mystery", AgentCapability.GENERIC),
            ("", AgentCapability.GENERIC),
        ],
    )
    def test_from_ref(self, ref: str, expected: AgentCapability) -> None:
        assert AgentCapability.from_ref(ref) == expected

    def test_resolved_once_on_work_item(self) -> None:
        item = make_item("A", agent="explorer:task")
        assert item.capability == AgentCapability.EXPLORE
        assert item.to_dict()["agent"] == "explorer:task"

    def test_every_capability_has_an_approach(self) -> None:
        for capability in AgentCapability:
            assert capability.approach


class TestIterationLimit:
    @pytest.mark.parametrize("value", ["unbounded", None, "UNBOUNDED"])
    def test_parse_unbounded(self, value: object) -> None:
        limit = IterationLimit.parse(value)
        assert limit.is_unbounded
        assert limit.to_json() == "unbounded"
        assert not limit.reached(10**9)

    def test_parse_bounded(self) -> None:
        assert IterationLimit.parse("5") == IterationLimit.of(5)
        assert IterationLimit.parse(5).reached(5)
        assert not IterationLimit.parse(5).reached(4)

    @pytest.mark.parametrize("value", ["abc", "-1", 0, True, "1.5"])
    def test_parse_invalid(self, value: object) -> None:
        with pytest.raises(ValueError):
            IterationLimit.parse(value)

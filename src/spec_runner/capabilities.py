"""Agent capability mapping.

Work items carry an opaque ``agent`` selector (e.g. ``"builder"``,
``"builder:task"``, ``"architect:strategist"``). It is resolved once, when the
work-item source is loaded, into an :class:`AgentCapability` so that nothing
downstream needs to know about legacy spellings.
"""

from __future__ import annotations

import logging
from enum import StrEnum

logger = logging.getLogger(__name__)


class AgentCapability(StrEnum):
    """Capabilities a work item can request from the executing agent."""

    BUILD = "builder:build"
    DESIGN = "architect:design"
    EXPLORE = "explorer:explore"
    SIMPLIFY = "simplifier:simplify"
    GENERIC = "generic"

    @classmethod
    def from_ref(cls, agent_ref: str) -> AgentCapability:
        """Resolve an agent selector to a capability.

        Unknown selectors resolve to :attr:`GENERIC` with a debug log line;
        the raw selector stays on the work item for invokers that need it.
        """
        cleaned = agent_ref.strip().lower()
        for capability in cls:
            if cleaned == capability.value:
                return capability

        capability = _SYNONYMS.get(cleaned)
        if capability is None:
            logger.debug("Unknown agent selector %r, using generic", agent_ref)
            return cls.GENERIC
        return capability

    @property
    def approach(self) -> str:
        """Default technical approach used when drafting a spec."""
        return _APPROACHES[self]


_SYNONYMS: dict[str, AgentCapability] = {
    "builder": AgentCapability.BUILD,
    "builder:task": AgentCapability.BUILD,
    "builder:builder": AgentCapability.BUILD,
    "builder:constructor": AgentCapability.BUILD,
    "architect": AgentCapability.DESIGN,
    "architect:task": AgentCapability.DESIGN,
    "architect:architect": AgentCapability.DESIGN,
    "architect:strategist": AgentCapability.DESIGN,
    "explorer": AgentCapability.EXPLORE,
    "explorer:task": AgentCapability.EXPLORE,
    "explorer:explorer": AgentCapability.EXPLORE,
    "simplifier": AgentCapability.SIMPLIFY,
    "simplifier:task": AgentCapability.SIMPLIFY,
    "simplifier:simplifier": AgentCapability.SIMPLIFY,
    "simplifier:surgeon": AgentCapability.SIMPLIFY,
}

_APPROACHES: dict[AgentCapability, str] = {
    AgentCapability.BUILD: "Implementation using {tech} stack following project conventions",
    AgentCapability.DESIGN: "Architecture design with technical specifications and interfaces",
    AgentCapability.EXPLORE: "Codebase analysis using grep and file search patterns",
    AgentCapability.SIMPLIFY: "Code refactoring while preserving existing functionality",
    AgentCapability.GENERIC: "Standard implementation approach following project conventions",
}


__all__ = ["AgentCapability"]

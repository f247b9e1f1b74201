"""Technical specification drafting and validation for work items.

Before an agent is invoked for an item, a short technical spec is drafted
(objective, approach, ordered steps, validation criteria), validated, and
written to ``current_spec.md`` with a per-item copy under ``specs/``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from spec_runner.fileio import atomic_write_text
from spec_runner.models import WorkItem, utc_now

logger = logging.getLogger(__name__)

CURRENT_SPEC_FILENAME = "current_spec.md"
SPECS_DIRNAME = "specs"


@dataclass(frozen=True)
class SpecStep:
    """One implementation step.

    ``depends_on`` holds zero-based indices of earlier steps.
    """

    description: str
    files: tuple[str, ...] = ()
    signatures: tuple[str, ...] = ()
    depends_on: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        for index in self.depends_on:
            if isinstance(index, bool) or not isinstance(index, int) or index < 0:
                raise ValueError(f"Invalid step reference: {index!r}")


@dataclass(frozen=True)
class Risk:
    risk: str
    mitigation: str


@dataclass
class TechnicalSpec:
    item_id: str
    objective: str
    approach: str
    steps: list[SpecStep]
    validation_criteria: list[str]
    risks: list[Risk] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class SpecValidation:
    valid: bool
    gaps: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class SpecGenerator:
    """Drafts, validates and writes technical specs.

    Args:
        run_dir: Run directory; specs are written inside it.
    """

    def __init__(self, run_dir: Path) -> None:
        self.run_dir = run_dir
        self.specs_dir = run_dir / SPECS_DIRNAME
        self.current_spec_path = run_dir / CURRENT_SPEC_FILENAME

    def generate(self, item: WorkItem) -> TechnicalSpec:
        return TechnicalSpec(
            item_id=item.id,
            objective=f"{item.title}\n\n{item.description}".strip(),
            approach=item.capability.approach.format(tech=item.tech or "the project"),
            steps=self._breakdown_steps(item),
            validation_criteria=list(item.acceptance_criteria),
            risks=self._identify_risks(item),
        )

    def validate(self, spec: TechnicalSpec) -> SpecValidation:
        """Check a spec for completeness and step ordering.

        A spec is valid when objective, approach, steps and validation
        criteria are all non-empty, every step has a description, and no step
        depends on itself or a later step.
        """
        gaps: list[str] = []
        warnings: list[str] = []

        if not spec.objective.strip():
            gaps.append("Objective is missing")
        if not spec.approach.strip():
            gaps.append("Technical approach is not defined")
        if not spec.steps:
            gaps.append("No implementation steps defined")
        if not spec.validation_criteria:
            gaps.append("No validation criteria defined")

        for index, step in enumerate(spec.steps):
            number = index + 1
            if not step.description.strip():
                gaps.append(f"Step {number}: Missing description")
            if not step.files:
                warnings.append(f"Step {number}: No files specified")
            for dep in step.depends_on:
                if dep >= index:
                    gaps.append(
                        f"Step {number}: Invalid dependency on step {dep + 1} "
                        "(must reference an earlier step)"
                    )

        return SpecValidation(valid=not gaps, gaps=gaps, warnings=warnings)

    def write(self, spec: TechnicalSpec) -> Path:
        """Write ``spec`` as markdown; returns the ``current_spec.md`` path."""
        content = format_spec(spec)
        atomic_write_text(self.current_spec_path, content)
        atomic_write_text(self.specs_dir / f"{spec.item_id}-spec.md", content)
        logger.debug("Spec for %s written to %s", spec.item_id, self.current_spec_path)
        return self.current_spec_path

    def _breakdown_steps(self, item: WorkItem) -> list[SpecStep]:
        return [
            SpecStep(description="Analyze existing codebase patterns"),
            SpecStep(description=f"Implement: {item.title}", depends_on=(0,)),
            SpecStep(description="Validate against acceptance criteria", depends_on=(1,)),
        ]

    def _identify_risks(self, item: WorkItem) -> list[Risk]:
        risks: list[Risk] = []
        if item.dependencies:
            risks.append(
                Risk(
                    risk="Dependency items may not be complete",
                    mitigation="Verify all dependency items have passes=true",
                )
            )
        return risks


def format_spec(spec: TechnicalSpec) -> str:
    """Render a spec as markdown."""
    lines = [
        f"# Technical Specification: {spec.item_id}",
        "",
        f"**Created:** {spec.created_at.isoformat()}",
        "",
        "## Objective",
        spec.objective,
        "",
        "## Approach",
        spec.approach,
        "",
        "## Implementation Steps",
        "",
    ]
    for index, step in enumerate(spec.steps):
        lines.append(f"### Step {index + 1}: {step.description}")
        lines.append("")
        if step.files:
            lines.append("- **Files:**")
            lines.extend(f"  - {path}" for path in step.files)
            lines.append("")
        if step.signatures:
            lines.append("- **Signatures:**")
            lines.extend(f"  - `{signature}`" for signature in step.signatures)
            lines.append("")
        if step.depends_on:
            refs = ", ".join(str(dep + 1) for dep in step.depends_on)
            lines.append(f"- **Depends on:** Step {refs}")
            lines.append("")

    lines.append("## Validation Criteria")
    lines.extend(f"- [ ] {criterion}" for criterion in spec.validation_criteria)
    lines.append("")

    if spec.risks:
        lines.append("## Known Risks")
        lines.extend(f"- **{r.risk}**: {r.mitigation}" for r in spec.risks)
        lines.append("")

    return "\n".join(lines)


__all__ = [
    "SpecStep",
    "Risk",
    "TechnicalSpec",
    "SpecValidation",
    "SpecGenerator",
    "format_spec",
]

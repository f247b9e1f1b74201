"""Agent invocation for work items.

This module defines:
    - InvocationResult: outcome of one agent call
    - AgentInvoker: the protocol the orchestrator depends on
    - SimulatedInvoker: succeeds without doing work (dry runs, tests)
    - CommandInvoker: runs an external agent CLI with the prompt on stdin

Timeouts are the invoker's responsibility; the orchestrator enforces none.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from spec_runner.models import WorkItem
from spec_runner.specgen import TechnicalSpec

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 600.0


@dataclass(frozen=True)
class InvocationResult:
    success: bool
    output: str = ""
    error: str | None = None
    duration_seconds: float = 0.0


@runtime_checkable
class AgentInvoker(Protocol):
    """Executes one work item, optionally guided by a validated spec."""

    async def invoke(
        self,
        item: WorkItem,
        spec: TechnicalSpec | None = None,
    ) -> InvocationResult: ...


def build_prompt(item: WorkItem, spec_path: Path | None = None) -> str:
    """Render the instructions sent to an agent for ``item``."""
    lines = [
        f"Work item {item.id}: {item.title}",
        "",
        item.description,
        "",
        "Acceptance criteria:",
    ]
    lines.extend(f"- {criterion}" for criterion in item.acceptance_criteria)
    lines.extend(["", f"Capability: {item.capability}"])
    if item.tech:
        lines.append(f"Tech: {item.tech}")
    if spec_path is not None:
        lines.extend(["", f"Follow the technical specification in {spec_path}."])
    return "\n".join(lines) + "\n"


class SimulatedInvoker:
    """Invoker that reports success without running anything."""

    async def invoke(
        self,
        item: WorkItem,
        spec: TechnicalSpec | None = None,
    ) -> InvocationResult:
        suffix = " with spec" if spec is not None else ""
        return InvocationResult(
            success=True,
            output=f"Executed: {item.title} with capability: {item.capability}{suffix}",
        )


class CommandInvoker:
    """Runs an agent CLI as a subprocess.

    The prompt is piped via stdin. Exit code 0 is success; stdout becomes
    the output and stderr (or a timeout message) the error.

    Args:
        command: Argument vector, e.g. ``["claude", "-p"]``.
        working_dir: Directory the agent runs in.
        spec_path: Spec file referenced in the prompt when a spec is given.
        timeout_seconds: Hard limit per invocation; the process is killed
            when it is exceeded.
    """

    def __init__(
        self,
        command: list[str],
        working_dir: Path,
        spec_path: Path | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        if not command:
            raise ValueError("CommandInvoker requires a non-empty command")
        self.command = list(command)
        self.working_dir = working_dir
        self.spec_path = spec_path
        self.timeout_seconds = timeout_seconds

    async def invoke(
        self,
        item: WorkItem,
        spec: TechnicalSpec | None = None,
    ) -> InvocationResult:
        prompt = build_prompt(item, self.spec_path if spec is not None else None)
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.working_dir,
            )
        except OSError as exc:
            return InvocationResult(success=False, error=f"Failed to start agent: {exc}")

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(prompt.encode("utf-8")),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("Agent timed out on %s after %ss", item.id, self.timeout_seconds)
            return InvocationResult(
                success=False,
                error=f"Timed out after {self.timeout_seconds:g}s",
                duration_seconds=time.monotonic() - started,
            )

        duration = time.monotonic() - started
        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")
        if process.returncode == 0:
            return InvocationResult(success=True, output=out.strip(), duration_seconds=duration)
        return InvocationResult(
            success=False,
            output=out.strip(),
            error=err.strip() or f"Agent exited with code {process.returncode}",
            duration_seconds=duration,
        )


__all__ = [
    "DEFAULT_TIMEOUT_SECONDS",
    "InvocationResult",
    "AgentInvoker",
    "build_prompt",
    "SimulatedInvoker",
    "CommandInvoker",
]

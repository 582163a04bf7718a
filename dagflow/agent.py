"""
DAG Flow — Workflow Agent

Wraps a workflow behind a single `run(input)` call so a multi-step
workflow can stand in wherever one agent is expected. The input is
seeded into the context under INPUT_KEY; steps read it with
`ctx.get(INPUT_KEY)`.
"""

from __future__ import annotations

import logging
from typing import Any

from dagflow.context import CancellationToken
from dagflow.executor import WorkflowResult

logger = logging.getLogger("dagflow.agent")

INPUT_KEY = "__input"


class WorkflowAgent:
    """A named agent backed by a workflow."""

    def __init__(self, name: str, workflow: Any):
        self.name = name
        self.workflow = workflow

    async def run(
        self,
        input: Any,
        cancellation: CancellationToken | None = None,
    ) -> WorkflowResult:
        logger.debug("Agent %s running workflow %s", self.name, self.workflow.name)
        return await self.workflow.execute(
            initial_state={INPUT_KEY: input},
            cancellation=cancellation,
        )

    def __repr__(self) -> str:
        return f"WorkflowAgent(name={self.name!r}, workflow={self.workflow.name!r})"

"""
DAG Flow — Scheduler

Drives one run of a workflow definition, batch by batch:

    loop:
      cancelled?                → failed (AbortError)
      everything resolved?      → completed
      ready = get_ready(completed ∪ skipped)
      nothing ready?            → failed (InvariantError)
      evaluate `when`           → false: skipped
      collect human gates
      launch normal steps       → asyncio.gather (batch barrier)
      after barrier:
        cancelled / aborted     → failed (AbortError)
        a step failed           → failed (first StepFailedError)
        a gate was collected    → pending (Checkpoint saved)

Sibling steps in a batch always run to completion before the run fails
or pauses, so a checkpoint reflects every step that started and a
resume never re-runs or loses work.

The Scheduler owns no definition. It reads steps and edges from the
Workflow it was created for and writes only to the run it was handed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from dagflow.context import ExecutionContext
from dagflow.errors import AbortError, InvariantError, StepFailedError
from dagflow.human import Checkpoint, HumanInputRequest, PendingWorkflow
from dagflow.logging import StructuredLogger
from dagflow.retry import RetryResult, run_with_retry
from dagflow.states import RunStateMachine, RunStatus, StepStatus
from dagflow.step import call_maybe_async

logger = logging.getLogger("dagflow.executor")


# ─── Result ─────────────────────────────────────────────────────────

@dataclass
class WorkflowResult:
    """
    Outcome of execute() or resume().

    `status` plus `error` is the whole story for expected failures:
    nothing is raised out of a run for a failed step, a cancellation or
    a bad resume.
    """
    run_id: str
    status: RunStatus
    state: dict[str, Any] = field(default_factory=dict)
    error: BaseException | None = None
    pending: PendingWorkflow | None = None
    checkpoint: Checkpoint | None = None
    step_status: dict[str, StepStatus] = field(default_factory=dict)
    attempts: dict[str, int] = field(default_factory=dict)
    elapsed_s: float = 0.0

    @property
    def completed(self) -> bool:
        return self.status == RunStatus.COMPLETED

    @property
    def failed(self) -> bool:
        return self.status == RunStatus.FAILED

    @property
    def is_pending(self) -> bool:
        return self.status == RunStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "state": dict(self.state),
            "error": _error_dict(self.error) if self.error is not None else None,
            "pending": self.pending.to_dict() if self.pending else None,
            "step_status": {k: v.value for k, v in self.step_status.items()},
            "attempts": dict(self.attempts),
            "elapsed_s": round(self.elapsed_s, 3),
        }


def _error_dict(error: BaseException) -> dict[str, Any]:
    """Type, message, and the structured fields a WorkflowError carries."""
    data: dict[str, Any] = {"type": type(error).__name__, "message": str(error)}
    data.update(getattr(error, "detail", None) or {})
    return data


def default_prompt(step_name: str) -> str:
    return f"Approval required for step '{step_name}'"


# ─── Scheduler ──────────────────────────────────────────────────────

class Scheduler:
    """
    Runs the main loop for one run.

    `completed` and `skipped` seed the resolved set; they are non-empty
    when a run is re-entered from a checkpoint.
    """

    def __init__(
        self,
        workflow: Any,
        context: ExecutionContext,
        machine: RunStateMachine,
        log: StructuredLogger,
        completed: set[str] | None = None,
        skipped: set[str] | None = None,
        started_at: float | None = None,
    ):
        self.workflow = workflow
        self.graph = workflow.graph
        self.settings = workflow.settings
        self.context = context
        self.machine = machine
        self.log = log
        self.completed: set[str] = set(completed or ())
        self.skipped: set[str] = set(skipped or ())
        self.attempts: dict[str, int] = {}
        self.started_at = started_at if started_at is not None else time.monotonic()

    @property
    def run_id(self) -> str:
        return self.context.run_id

    # ── Main Loop ────────────────────────────────────────────

    async def run(self) -> WorkflowResult:
        iteration = 0
        cancellation = self.context.cancellation

        while True:
            if cancellation.cancelled:
                return self._fail(AbortError(cancellation.reason))

            resolved = self.completed | self.skipped
            if len(resolved) >= self.graph.node_count:
                return self._complete()

            ready = [n for n in self.graph.get_ready(resolved) if n not in self.skipped]
            if not ready:
                unresolved = [n for n in self.graph.nodes if n not in resolved]
                return self._fail(InvariantError(
                    f"Run {self.run_id!r} is stuck: no step is ready, "
                    f"unresolved={unresolved}"
                ))

            iteration += 1
            for name in ready:
                if self.machine.get(name) == StepStatus.NOT_READY:
                    self.machine.transition(name, StepStatus.READY)

            to_run: list[str] = []
            gates: list[str] = []
            for name in ready:
                edge = self.workflow.get_edge(name)
                if edge.when is not None:
                    try:
                        should_run = await call_maybe_async(edge.when, self.context)
                    except Exception as e:
                        self.machine.transition(name, StepStatus.FAILED, "condition raised")
                        return self._fail(StepFailedError(name, 0, e))
                    if not should_run:
                        self.machine.transition(name, StepStatus.SKIPPED, "condition false")
                        self.skipped.add(name)
                        self.log.on_step_skipped(name, "condition false")
                        continue
                if edge.is_human:
                    gates.append(name)
                else:
                    to_run.append(name)

            if to_run:
                self.log.on_batch_start(iteration, to_run)
                results = await asyncio.gather(*(self._run_step(n) for n in to_run))
            else:
                results = []

            if cancellation.cancelled:
                return self._fail(AbortError(cancellation.reason))
            for result in results:
                if isinstance(result.error, AbortError):
                    return self._fail(result.error)
            for result in results:
                if result.error is not None:
                    return self._fail(result.error)

            if gates:
                return await self._pause(gates)

    # ── One Step ─────────────────────────────────────────────

    async def _run_step(self, name: str) -> RetryResult:
        step = self.workflow.get_step(name)
        edge = self.workflow.get_edge(name)
        policy = step.retry_policy or self.settings.retry_policy_for(name)
        timeout = edge.timeout if edge.timeout is not None else self.settings.default_timeout
        step_input = self.context.get(name)

        def on_attempt(attempt: int) -> None:
            self.machine.transition(name, StepStatus.RUNNING, f"attempt {attempt + 1}")
            self.attempts[name] = attempt + 1
            self.log.on_step_start(name, attempt)

        def on_retry(next_attempt: int, error: BaseException, delay: float) -> None:
            self.machine.transition(name, StepStatus.RETRYING, str(error)[:200])
            self.log.on_step_retry(name, next_attempt, str(error), delay)

        result = await run_with_retry(
            lambda: step.run(step_input, self.context),
            policy,
            step_name=name,
            timeout=timeout,
            cancellation=self.context.cancellation,
            on_attempt=on_attempt,
            on_retry=on_retry,
        )

        latency_ms = result.total_latency * 1000
        if result.succeeded:
            self.context.commit(name, result.value)
            self.machine.transition(name, StepStatus.COMPLETED)
            self.completed.add(name)
            self.log.on_step_end(name, "completed", result.attempts, latency_ms)
        else:
            self.machine.transition(name, StepStatus.FAILED, str(result.error)[:200])
            self.log.on_step_end(
                name, "failed", result.attempts, latency_ms, error=str(result.error))
        return result

    # ── Human Gate ───────────────────────────────────────────

    async def _pause(self, gates: list[str]) -> WorkflowResult:
        """Suspend at the first gate; the rest go back to not_ready."""
        gate = gates[0]
        for other in gates[1:]:
            self.machine.transition(other, StepStatus.NOT_READY, f"queued behind {gate}")

        edge = self.workflow.get_edge(gate)
        if edge.prompt is not None:
            try:
                prompt = await call_maybe_async(edge.prompt, self.context)
            except Exception as e:
                self.machine.transition(gate, StepStatus.FAILED, "prompt raised")
                return self._fail(StepFailedError(gate, 0, e))
        else:
            prompt = default_prompt(gate)

        request = HumanInputRequest.create(
            prompt=str(prompt),
            request_type=edge.request_type,
            options=list(edge.options) if edge.options is not None else None,
            metadata=edge.metadata,
        )
        timeout = edge.timeout if edge.timeout is not None else self.settings.human_gate_timeout
        checkpoint = Checkpoint.create(
            run_id=self.run_id,
            workflow=self.workflow.name,
            step_name=gate,
            request=request,
            state=self.context.snapshot(),
            completed=self.machine.names_in(StepStatus.COMPLETED),
            skipped=self.machine.names_in(StepStatus.SKIPPED),
            timeout=timeout,
            trace_id=self.log.trace_id,
        )
        self.machine.transition(gate, StepStatus.WAITING, request.id)
        self.workflow.checkpoints.save(checkpoint)
        self.machine.transition_run(RunStatus.PENDING, f"human gate {gate}")
        self.log.on_human_gate(gate, request.id, request.type.value)
        self.log.on_workflow_end(
            "pending", self._elapsed(), steps_completed=len(self.completed))
        return self._result(RunStatus.PENDING, pending=checkpoint.pending(), checkpoint=checkpoint)

    # ── Terminal ─────────────────────────────────────────────

    def _complete(self) -> WorkflowResult:
        self.machine.transition_run(RunStatus.COMPLETED)
        self.log.on_workflow_end(
            "completed", self._elapsed(), steps_completed=len(self.completed))
        return self._result(RunStatus.COMPLETED)

    def _fail(self, error: BaseException) -> WorkflowResult:
        self.machine.transition_run(RunStatus.FAILED, str(error)[:200])
        self.log.on_workflow_end(
            "failed", self._elapsed(),
            steps_completed=len(self.completed),
            error=f"{type(error).__name__}: {error}",
        )
        return self._result(RunStatus.FAILED, error=error)

    def _result(self, status: RunStatus, **kwargs) -> WorkflowResult:
        return WorkflowResult(
            run_id=self.run_id,
            status=status,
            state=self.context.snapshot(),
            step_status=self.machine.snapshot(),
            attempts=dict(self.attempts),
            elapsed_s=self._elapsed(),
            **kwargs,
        )

    def _elapsed(self) -> float:
        return time.monotonic() - self.started_at

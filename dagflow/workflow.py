"""
DAG Flow — Workflow Builder

A Workflow is the definition: named steps plus the edges between them.
It is built once and reused across many runs; each execute() call gets
its own ExecutionContext and state machine.

Usage:
    from dagflow import Workflow, create_step, human_step

    wf = (
        Workflow("invoice_approval")
        .step(create_step("extract", extract_fields))
        .step(create_step("score", score_risk), after="extract")
        .step(human_step("approve"), after="score", type="human",
              prompt=lambda ctx: f"Risk score {ctx.get('score')}. Approve?")
        .step(create_step("post", post_to_ledger), after="approve")
    )

    result = await wf.execute({"extract": raw_invoice})
    if result.is_pending:
        result = await wf.resume(result.run_id, HumanInputResponse(
            request_id=result.pending.request_id, approved=True))

Registration order matters: it is the tie-break order for every batch.
An `after` may name a step registered later; the edge is wired when that
step arrives. A dependency that never arrives fails validation.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Mapping

from dagflow.config import EngineSettings
from dagflow.context import CancellationToken, ExecutionContext
from dagflow.errors import (
    ResumeError,
    StepDefinitionError,
    StepTimeoutError,
    UnknownNodeError,
    UnknownRunError,
    ValidationError,
)
from dagflow.executor import Scheduler, WorkflowResult
from dagflow.graph import Graph
from dagflow.human import (
    Checkpoint,
    CheckpointStore,
    HumanInputResponse,
    InMemoryCheckpointStore,
)
from dagflow.logging import StructuredLogger
from dagflow.states import RunStateMachine, RunStatus, StepStatus
from dagflow.step import RequestType, Step, StepEdgeConfig

logger = logging.getLogger("dagflow.workflow")


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:12]}"


class Workflow:
    """A reusable DAG of steps."""

    def __init__(
        self,
        name: str,
        settings: EngineSettings | None = None,
        checkpoints: CheckpointStore | None = None,
    ):
        self.name = name
        self.settings = settings or EngineSettings()
        self.checkpoints = checkpoints if checkpoints is not None else InMemoryCheckpointStore()
        self._graph = Graph()
        self._steps: dict[str, Step] = {}
        self._edges: dict[str, StepEdgeConfig] = {}
        self._unresolved: dict[str, list[str]] = {}   # missing dep → dependents waiting on it

    # ═══════════════════════════════════════════════════════════
    # Registration
    # ═══════════════════════════════════════════════════════════

    def step(
        self,
        step: Step,
        edge: StepEdgeConfig | Mapping[str, Any] | None = None,
        **edge_kwargs: Any,
    ) -> Workflow:
        """
        Register a step. Returns the workflow so calls can be chained.

        The edge is either a StepEdgeConfig, a mapping of its fields, or
        keyword arguments (after=, when=, type=, prompt=, timeout=, ...).

        Raises:
            DuplicateNodeError: a step with this name is already registered
            StepDefinitionError: malformed step or edge
        """
        if not isinstance(step, Step):
            raise StepDefinitionError(f"Expected a Step, got {type(step).__name__}")
        if edge is not None and edge_kwargs:
            raise StepDefinitionError(
                f"Step {step.name!r}: pass an edge config or keyword arguments, not both")
        if edge is None:
            edge = StepEdgeConfig(**edge_kwargs)
        elif not isinstance(edge, StepEdgeConfig):
            try:
                edge = StepEdgeConfig(**dict(edge))
            except TypeError as e:
                raise StepDefinitionError(f"Step {step.name!r}: {e}") from e

        if not edge.is_human and step.execute is None:
            raise StepDefinitionError(f"Step {step.name!r} has no execute function")
        if edge.request_type == RequestType.SELECTION and not edge.options:
            raise StepDefinitionError(f"Selection gate {step.name!r} needs options")

        self._graph.add_node(step.name)
        self._steps[step.name] = step
        self._edges[step.name] = edge

        for dep in edge.dependencies:
            if dep in self._graph:
                self._graph.add_edge(dep, step.name)
            else:
                self._unresolved.setdefault(dep, []).append(step.name)
        for dependent in self._unresolved.pop(step.name, []):
            self._graph.add_edge(step.name, dependent)

        logger.debug("Registered step %s in workflow %s (after=%s)",
                     step.name, self.name, edge.dependencies)
        return self

    add_step = step

    # ═══════════════════════════════════════════════════════════
    # Introspection
    # ═══════════════════════════════════════════════════════════

    @property
    def graph(self) -> Graph:
        return self._graph

    @property
    def step_names(self) -> list[str]:
        return self._graph.nodes

    def get_step(self, name: str) -> Step:
        if name not in self._steps:
            raise UnknownNodeError(name)
        return self._steps[name]

    def get_edge(self, name: str) -> StepEdgeConfig:
        if name not in self._edges:
            raise UnknownNodeError(name)
        return self._edges[name]

    def pending_runs(self) -> list[Checkpoint]:
        return self.checkpoints.list_pending()

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, name: object) -> bool:
        return name in self._steps

    def __repr__(self) -> str:
        return f"Workflow(name={self.name!r}, steps={len(self)})"

    def validate(self) -> list[str]:
        """
        Check the definition and return its topological order.

        Raises:
            UnknownNodeError: an `after` names a step that was never registered
            CycleError: the dependencies form a cycle
        """
        if self._unresolved:
            missing, dependents = next(iter(self._unresolved.items()))
            raise UnknownNodeError(missing, f"dependency of {', '.join(dependents)}")
        return self._graph.topological_sort()

    # ═══════════════════════════════════════════════════════════
    # Execution
    # ═══════════════════════════════════════════════════════════

    async def execute(
        self,
        initial_state: Mapping[str, Any] | None = None,
        cancellation: CancellationToken | None = None,
        run_id: str | None = None,
    ) -> WorkflowResult:
        """
        Run the workflow from the start.

        `initial_state` seeds the context; a key equal to a step name is
        that step's input. Never raises for step failures, cancellation or
        an invalid graph: check result.status and result.error.
        """
        t0 = time.monotonic()
        run_id = run_id or new_run_id()
        context = ExecutionContext(initial_state, cancellation, run_id)
        machine = RunStateMachine(run_id, self._graph.nodes)
        log = StructuredLogger(workflow=self.name, run_id=run_id)

        try:
            self.validate()
        except ValidationError as e:
            machine.transition_run(RunStatus.FAILED, str(e))
            log.on_workflow_end("failed", time.monotonic() - t0, error=f"{type(e).__name__}: {e}")
            return WorkflowResult(
                run_id=run_id,
                status=RunStatus.FAILED,
                state=context.snapshot(),
                error=e,
                step_status=machine.snapshot(),
                elapsed_s=time.monotonic() - t0,
            )

        machine.transition_run(RunStatus.RUNNING)
        log.on_workflow_start(steps_total=len(self))
        scheduler = Scheduler(self, context, machine, log, started_at=t0)
        return await scheduler.run()

    async def resume(
        self,
        run: str | Checkpoint | Mapping[str, Any],
        response: HumanInputResponse,
        cancellation: CancellationToken | None = None,
    ) -> WorkflowResult:
        """
        Continue a pending run with the person's answer.

        `run` is a run id held by this workflow's checkpoint store, a
        Checkpoint, or a Checkpoint.to_dict() payload.

        The gate's resolution is recorded under the gate's name and the
        scheduler picks up where it paused. A rejection (approved=False)
        marks the gate skipped instead, so its key stays absent.

        A wrong run id, wrong request id or invalid selection returns a
        failed result and leaves the checkpoint in place for a retry. An
        expired gate fails the run with StepTimeoutError.
        """
        t0 = time.monotonic()

        if isinstance(run, Checkpoint):
            checkpoint = run
        elif isinstance(run, str):
            checkpoint = self.checkpoints.load(run)
            if checkpoint is None:
                return self._rejected(run, UnknownRunError(run), t0)
        else:
            try:
                checkpoint = Checkpoint.from_dict(dict(run))
            except (KeyError, TypeError, ValueError) as e:
                return self._rejected("", ResumeError(f"Malformed checkpoint: {e}"), t0)

        try:
            self.validate()
        except ValidationError as e:
            return self._rejected(checkpoint.run_id, e, t0, checkpoint)

        problem = self._check_response(checkpoint, response)
        if problem is not None:
            return self._rejected(checkpoint.run_id, problem, t0, checkpoint)

        gate = checkpoint.step_name
        if checkpoint.is_expired:
            self.checkpoints.delete(checkpoint.run_id)
            timeout = (checkpoint.deadline or 0.0) - checkpoint.created_at
            return self._rejected(
                checkpoint.run_id, StepTimeoutError(gate, round(timeout, 3)), t0, checkpoint)

        # The checkpoint is consumed; a later gate re-saves under the same run id
        self.checkpoints.delete(checkpoint.run_id)

        completed = set(checkpoint.completed)
        skipped = set(checkpoint.skipped)
        initial = {name: StepStatus.COMPLETED for name in completed}
        initial.update({name: StepStatus.SKIPPED for name in skipped})
        initial[gate] = StepStatus.WAITING

        context = ExecutionContext(
            checkpoint.state, cancellation, checkpoint.run_id, written=completed)
        machine = RunStateMachine(
            checkpoint.run_id, self._graph.nodes, initial=initial, status=RunStatus.PENDING)
        log = StructuredLogger(
            workflow=self.name, run_id=checkpoint.run_id, trace_id=checkpoint.trace_id or None)

        machine.transition_run(RunStatus.RUNNING, f"resumed at {gate}")
        if response.rejected:
            machine.transition(gate, StepStatus.SKIPPED, "rejected")
            skipped.add(gate)
            log.on_workflow_resume(gate, "rejected")
        else:
            context.commit(gate, response.resolution())
            machine.transition(gate, StepStatus.COMPLETED, "approved")
            completed.add(gate)
            log.on_workflow_resume(gate, "approved")

        scheduler = Scheduler(
            self, context, machine, log,
            completed=completed, skipped=skipped, started_at=t0,
        )
        return await scheduler.run()

    # ── Resume Helpers ───────────────────────────────────────

    def _check_response(
        self,
        checkpoint: Checkpoint,
        response: HumanInputResponse,
    ) -> ResumeError | None:
        if checkpoint.workflow and checkpoint.workflow != self.name:
            return ResumeError(
                f"Run {checkpoint.run_id!r} belongs to workflow {checkpoint.workflow!r}, "
                f"not {self.name!r}")

        gate = checkpoint.step_name
        if gate not in self._edges or not self._edges[gate].is_human:
            return ResumeError(f"Run {checkpoint.run_id!r} is paused at {gate!r}, "
                               f"which is not a human step of {self.name!r}")
        unknown = [n for n in (*checkpoint.completed, *checkpoint.skipped) if n not in self._steps]
        if unknown:
            return ResumeError(f"Checkpoint references unknown steps: {unknown}")

        if response.request_id != checkpoint.request.id:
            return ResumeError(
                f"Response is for request {response.request_id!r}, "
                f"run {checkpoint.run_id!r} is waiting on {checkpoint.request.id!r}")

        request = checkpoint.request
        if (
            request.type == RequestType.SELECTION
            and not response.rejected
            and request.options is not None
            and response.selected_option not in request.options
        ):
            return ResumeError(
                f"Option {response.selected_option!r} is not one of {request.options}")
        return None

    def _rejected(
        self,
        run_id: str,
        error: BaseException,
        started_at: float,
        checkpoint: Checkpoint | None = None,
    ) -> WorkflowResult:
        logger.warning("Resume rejected (workflow=%s, run=%s): %s", self.name, run_id, error)
        return WorkflowResult(
            run_id=run_id,
            status=RunStatus.FAILED,
            state=dict(checkpoint.state) if checkpoint else {},
            error=error,
            checkpoint=checkpoint,
            elapsed_s=time.monotonic() - started_at,
        )

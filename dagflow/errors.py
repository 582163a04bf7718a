"""
DAG Flow — Error Hierarchy

Typed errors so callers can tell apart:
- Definition failures (duplicate node, unknown node, cycle) → fix the workflow
- Step failures (body raised, bad output, timeout) → retried per RetryPolicy
- Cancellation → terminal, wins over every other outcome
- Resume failures → caller handed back the wrong run or response

Only definition failures are raised out of the builder API. Everything
that happens while a run executes is reported through
WorkflowResult.status / WorkflowResult.error.
"""

from __future__ import annotations


class WorkflowError(Exception):
    """
    Base exception for all DAG Flow errors.

    `retryable` says whether a step body raising this error may be
    re-invoked. `detail` holds the structured fields that
    WorkflowResult.to_dict() reports next to the message.
    """
    retryable: bool = False

    def __init__(self, message: str = "", **kwargs):
        self.detail = kwargs
        super().__init__(message)


# ═══════════════════════════════════════════════════════════════
# Validation Errors — raised before any step executes
# ═══════════════════════════════════════════════════════════════

class ValidationError(WorkflowError):
    """Workflow definition is invalid."""
    pass


class DuplicateNodeError(ValidationError):
    """A node with the same name is already registered."""

    def __init__(self, node: str):
        self.node = node
        super().__init__(f"Node {node!r} is already registered", node=node)


class UnknownNodeError(ValidationError):
    """An edge or query referenced a node that was never registered."""

    def __init__(self, node: str, context: str = ""):
        self.node = node
        msg = f"Unknown node {node!r}"
        if context:
            msg += f" ({context})"
        super().__init__(msg, node=node)


class CycleError(ValidationError):
    """The dependency graph contains a cycle."""

    def __init__(self, node: str, cycle: list[str] | None = None):
        self.node = node
        self.cycle = list(cycle or [node])
        path = " -> ".join(self.cycle)
        super().__init__(
            f"Circular dependency detected involving {node!r}: {path}",
            node=node,
            cycle=self.cycle,
        )


class StepDefinitionError(ValidationError):
    """A step or its edge configuration is malformed."""
    pass


# ═══════════════════════════════════════════════════════════════
# Execution Errors — step-level failures, subject to retry
# ═══════════════════════════════════════════════════════════════

class ExecutionError(WorkflowError):
    """A step's body raised."""
    retryable = True

    def __init__(self, step_name: str, message: str = "", **kwargs):
        self.step_name = step_name
        super().__init__(message or f"Step {step_name!r} failed", step_name=step_name, **kwargs)


class OutputValidationError(ExecutionError):
    """A step's return value did not match its output schema."""

    def __init__(self, step_name: str, reason: str = ""):
        self.reason = reason
        super().__init__(
            step_name,
            f"Output of step {step_name!r} failed schema validation: {reason}",
        )


class StepTimeoutError(ExecutionError, TimeoutError):
    """A single attempt, or a human gate, exceeded its time budget."""

    def __init__(self, step_name: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            step_name,
            f"Step {step_name!r} timed out after {timeout_seconds}s",
            timeout_seconds=timeout_seconds,
        )


class StepFailedError(WorkflowError):
    """A step exhausted its retry budget. Terminal for the run."""

    def __init__(self, step_name: str, attempts: int, cause: BaseException | None = None):
        self.step_name = step_name
        self.attempts = attempts
        self.cause = cause
        reason = f": {cause}" if cause is not None else ""
        super().__init__(
            f"Step {step_name!r} failed after {attempts} attempt(s){reason}",
            step_name=step_name,
            attempts=attempts,
        )
        self.__cause__ = cause


# ═══════════════════════════════════════════════════════════════
# Run-level Errors
# ═══════════════════════════════════════════════════════════════

class AbortError(WorkflowError):
    """Cancellation was observed."""

    def __init__(self, reason: str = ""):
        self.reason = reason
        super().__init__("Aborted" + (f": {reason}" if reason else ""), reason=reason)


class InvariantError(WorkflowError):
    """The scheduler reached a state that a valid graph cannot produce."""
    pass


class ResumeError(WorkflowError):
    """A resume call does not match the suspended run."""
    pass


class UnknownRunError(ResumeError):
    """No suspended run is registered under the given id."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"No suspended run with id {run_id!r}", run_id=run_id)


class IllegalStateTransition(WorkflowError):
    """Raised when an invalid run or step state transition is attempted."""
    pass

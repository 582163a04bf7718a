"""
DAG Flow — Step Definitions

A Step is a named unit of work: an execute function, an optional output
schema, an optional retry policy. A StepEdgeConfig says when the step
becomes ready (`after`, `when`) and what kind of step it is (`normal`, or
`human` for a gate that suspends the run).

Both are immutable once registered with a Workflow.
"""

from __future__ import annotations

import enum
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import TypeAdapter
from pydantic import ValidationError as SchemaError

from dagflow.errors import OutputValidationError, StepDefinitionError
from dagflow.retry import RetryPolicy


class StepType(str, enum.Enum):
    NORMAL = "normal"
    HUMAN = "human"


class RequestType(str, enum.Enum):
    """What a human gate asks the person for."""
    APPROVAL = "approval"
    INPUT = "input"
    SELECTION = "selection"


@dataclass(frozen=True)
class Step:
    """
    A named unit of work.

    `execute(input, context)` may be a coroutine function or a plain
    function. `input` is whatever the context held under the step's own
    name when it started (usually seeded by the caller's initial state),
    or None.
    """
    name: str
    execute: Callable[..., Any] | None = None
    output_schema: Any = None
    retry_policy: RetryPolicy | None = None

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name:
            raise StepDefinitionError(f"Step name must be a non-empty string, got {self.name!r}")
        if self.execute is not None and not callable(self.execute):
            raise StepDefinitionError(f"Step {self.name!r}: execute must be callable")
        if self.output_schema is not None and not isinstance(self.output_schema, TypeAdapter):
            try:
                adapter = TypeAdapter(self.output_schema)
            except Exception as e:
                raise StepDefinitionError(
                    f"Step {self.name!r}: unusable output_schema {self.output_schema!r}: {e}"
                ) from e
            object.__setattr__(self, "output_schema", adapter)

    async def run(self, input: Any, context: Any) -> Any:
        """One attempt: call execute, await if needed, validate the output."""
        if self.execute is None:
            raise StepDefinitionError(f"Step {self.name!r} has no execute function")
        output = self.execute(input, context)
        if inspect.isawaitable(output):
            output = await output
        return self.validate_output(output)

    def validate_output(self, output: Any) -> Any:
        if self.output_schema is None:
            return output
        try:
            return self.output_schema.validate_python(output)
        except SchemaError as e:
            raise OutputValidationError(self.name, str(e).splitlines()[0]) from e


@dataclass(frozen=True)
class StepEdgeConfig:
    """
    How a step becomes ready, and for human steps what the approver sees.

    after:        dependency name or names
    when:         predicate over the context; false → step skipped
    type:         normal | human
    prompt:       (context) → str shown to the approver
    timeout:      seconds per attempt (normal) or review deadline (human)
    request_type: approval | input | selection (human only)
    options:      choices for a selection gate
    metadata:     extra fields copied into the pending descriptor
    """
    after: str | list[str] | tuple[str, ...] | None = None
    when: Callable[[Any], Any] | None = None
    type: StepType = StepType.NORMAL
    prompt: Callable[[Any], Any] | None = None
    timeout: float | None = None
    request_type: RequestType = RequestType.APPROVAL
    options: tuple[str, ...] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        try:
            object.__setattr__(self, "type", StepType(self.type))
            object.__setattr__(self, "request_type", RequestType(self.request_type))
        except ValueError as e:
            raise StepDefinitionError(str(e)) from e
        if self.options is not None:
            object.__setattr__(self, "options", tuple(self.options))
        if self.timeout is not None and self.timeout <= 0:
            raise StepDefinitionError(f"timeout must be > 0, got {self.timeout}")
        if self.when is not None and not callable(self.when):
            raise StepDefinitionError("when must be callable")
        if self.prompt is not None and not callable(self.prompt):
            raise StepDefinitionError("prompt must be callable")

    @property
    def dependencies(self) -> list[str]:
        if self.after is None:
            return []
        if isinstance(self.after, str):
            return [self.after]
        return list(self.after)

    @property
    def is_human(self) -> bool:
        return self.type == StepType.HUMAN


def create_step(
    name: str,
    execute: Callable[..., Any],
    output_schema: Any = None,
    retry_policy: RetryPolicy | None = None,
) -> Step:
    """Build a normal Step."""
    return Step(name=name, execute=execute, output_schema=output_schema,
                retry_policy=retry_policy)


def human_step(name: str) -> Step:
    """Build the Step half of a human gate. Gates have nothing to execute."""
    return Step(name=name)


async def call_maybe_async(fn: Callable[..., Any], *args: Any) -> Any:
    """Call a sync-or-async callable and return its value."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result

"""
DAG Flow — Human Gate Types and Checkpoints

A human gate is a step that, instead of executing, suspends the run and
hands the caller a description of what a person must decide. The caller
persists the Checkpoint however it likes (the engine has no durable
storage) and later calls Workflow.resume() with the person's answer.

Checkpoint.to_dict() is always JSON-safe. Pydantic models, dataclasses,
dates and the like are dumped to plain JSON values, so after a round trip
a step reads them back with context.get_as(). Any other object is stored
as its str().
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic_core import to_jsonable_python

from dagflow.step import RequestType

logger = logging.getLogger("dagflow.human")


# ─── Request / Response ─────────────────────────────────────────────

@dataclass
class HumanInputRequest:
    """What the person is being asked."""
    id: str
    type: RequestType
    prompt: str
    options: list[str] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def create(
        prompt: str,
        request_type: RequestType = RequestType.APPROVAL,
        options: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> HumanInputRequest:
        return HumanInputRequest(
            id=f"hr_{uuid.uuid4().hex[:12]}",
            type=RequestType(request_type),
            prompt=prompt,
            options=list(options) if options is not None else None,
            metadata=dict(metadata or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "prompt": self.prompt,
            "options": self.options,
            "metadata": self.metadata,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> HumanInputRequest:
        return HumanInputRequest(
            id=data["id"],
            type=RequestType(data.get("type", RequestType.APPROVAL.value)),
            prompt=data.get("prompt", ""),
            options=data.get("options"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class HumanInputResponse:
    """The person's answer, fed into Workflow.resume()."""
    request_id: str
    approved: bool | None = None
    value: Any = None
    selected_option: str | None = None

    def resolution(self) -> Any:
        """The value recorded under the gate's name: value, else option, else approval."""
        if self.value is not None:
            return self.value
        if self.selected_option is not None:
            return self.selected_option
        return self.approved if self.approved is not None else True

    @property
    def rejected(self) -> bool:
        return self.approved is False


# ─── Pending Descriptor ─────────────────────────────────────────────

@dataclass
class PendingWorkflow:
    """The serializable "waiting" marker handed to the caller."""
    run_id: str
    step_name: str
    prompt: str
    metadata: dict[str, Any] = field(default_factory=dict)
    request: HumanInputRequest | None = None

    @property
    def request_id(self) -> str:
        return self.request.id if self.request else ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "step_name": self.step_name,
            "prompt": self.prompt,
            "metadata": self.metadata,
            "request": self.request.to_dict() if self.request else None,
        }


# ─── Checkpoint ─────────────────────────────────────────────────────

@dataclass
class Checkpoint:
    """
    Everything needed to resume a suspended run.
    Created when the scheduler reaches a human gate.
    """
    run_id: str
    workflow: str
    step_name: str
    request: HumanInputRequest
    state: dict[str, Any]
    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    created_at: float = 0.0
    deadline: float | None = None
    trace_id: str = ""

    @staticmethod
    def create(
        run_id: str,
        workflow: str,
        step_name: str,
        request: HumanInputRequest,
        state: dict[str, Any],
        completed: list[str],
        skipped: list[str],
        timeout: float | None = None,
        trace_id: str = "",
    ) -> Checkpoint:
        now = time.time()
        return Checkpoint(
            run_id=run_id,
            workflow=workflow,
            step_name=step_name,
            request=request,
            state=dict(state),
            completed=list(completed),
            skipped=list(skipped),
            created_at=now,
            deadline=now + timeout if timeout is not None else None,
            trace_id=trace_id,
        )

    @property
    def is_expired(self) -> bool:
        return self.deadline is not None and time.time() > self.deadline

    @property
    def remaining_seconds(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.time())

    def pending(self) -> PendingWorkflow:
        """The caller-facing descriptor for this checkpoint."""
        metadata = {
            "workflow": self.workflow,
            "request_id": self.request.id,
            "request_type": self.request.type.value,
            **self.request.metadata,
        }
        if self.request.options is not None:
            metadata["options"] = list(self.request.options)
        if self.deadline is not None:
            metadata["deadline"] = self.deadline
        return PendingWorkflow(
            run_id=self.run_id,
            step_name=self.step_name,
            prompt=self.request.prompt,
            metadata=metadata,
            request=self.request,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "step_name": self.step_name,
            "request": self.request.to_dict(),
            "state": to_jsonable_python(self.state, fallback=str),
            "completed": list(self.completed),
            "skipped": list(self.skipped),
            "created_at": self.created_at,
            "deadline": self.deadline,
            "trace_id": self.trace_id,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Checkpoint:
        return Checkpoint(
            run_id=data["run_id"],
            workflow=data.get("workflow", ""),
            step_name=data["step_name"],
            request=HumanInputRequest.from_dict(data["request"]),
            state=dict(data.get("state") or {}),
            completed=list(data.get("completed") or []),
            skipped=list(data.get("skipped") or []),
            created_at=data.get("created_at", 0.0),
            deadline=data.get("deadline"),
            trace_id=data.get("trace_id", ""),
        )


# ─── Checkpoint Registry ────────────────────────────────────────────

class CheckpointStore(Protocol):
    """Where a workflow keeps suspended runs between execute() and resume()."""

    def save(self, checkpoint: Checkpoint) -> None: ...

    def load(self, run_id: str) -> Checkpoint | None: ...

    def delete(self, run_id: str) -> None: ...

    def list_pending(self) -> list[Checkpoint]: ...


class InMemoryCheckpointStore:
    """
    Thread-safe, process-local registry of suspended runs.

    Not durable: a process restart loses it. Callers that need to survive
    restarts persist Checkpoint.to_dict() themselves and resume with the
    checkpoint object instead of the run id.
    """

    def __init__(self):
        self._checkpoints: dict[str, Checkpoint] = {}
        self._lock = threading.Lock()

    def save(self, checkpoint: Checkpoint) -> None:
        with self._lock:
            self._checkpoints[checkpoint.run_id] = checkpoint
        logger.debug("Checkpoint saved: run=%s step=%s", checkpoint.run_id, checkpoint.step_name)

    def load(self, run_id: str) -> Checkpoint | None:
        with self._lock:
            return self._checkpoints.get(run_id)

    def delete(self, run_id: str) -> None:
        with self._lock:
            self._checkpoints.pop(run_id, None)

    def list_pending(self) -> list[Checkpoint]:
        with self._lock:
            return list(self._checkpoints.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._checkpoints)

"""
DAG Flow — Run and Step State Machines

Explicit state machines for one workflow run and for each step inside
it. Every transition is validated against a table and recorded, so a
run's history can be inspected after the fact.

Run:   idle → running → pending | completed | failed
       pending → running (resume)

Step:  not_ready → ready → running → completed | retrying | failed
       retrying → running | failed
       ready → skipped (condition false)
       ready → waiting → completed | skipped (human gate)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from dagflow.errors import IllegalStateTransition

logger = logging.getLogger("dagflow.states")


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    NOT_READY = "not_ready"
    READY = "ready"
    RUNNING = "running"
    RETRYING = "retrying"
    WAITING = "waiting"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


# Valid transitions: {from_state: [valid_to_states]}
RUN_TRANSITIONS = {
    RunStatus.IDLE: [RunStatus.RUNNING, RunStatus.FAILED],
    RunStatus.RUNNING: [RunStatus.PENDING, RunStatus.COMPLETED, RunStatus.FAILED],
    RunStatus.PENDING: [RunStatus.RUNNING, RunStatus.FAILED],
    RunStatus.COMPLETED: [],  # Terminal
    RunStatus.FAILED: [],  # Terminal
}

STEP_TRANSITIONS = {
    StepStatus.NOT_READY: [StepStatus.READY],
    StepStatus.READY: [StepStatus.RUNNING, StepStatus.SKIPPED, StepStatus.WAITING,
                       StepStatus.FAILED, StepStatus.NOT_READY],
    StepStatus.RUNNING: [StepStatus.COMPLETED, StepStatus.RETRYING, StepStatus.FAILED],
    StepStatus.RETRYING: [StepStatus.RUNNING, StepStatus.FAILED],
    StepStatus.WAITING: [StepStatus.COMPLETED, StepStatus.SKIPPED],
    StepStatus.COMPLETED: [],  # Terminal
    StepStatus.SKIPPED: [],  # Terminal
    StepStatus.FAILED: [],  # Terminal
}

TERMINAL_STEP_STATES = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED, StepStatus.FAILED})


@dataclass
class TransitionRecord:
    """Immutable record of a state transition."""
    subject: str                     # "run" or a step name
    from_state: str
    to_state: str
    reason: str = ""
    timestamp: float = field(default_factory=time.time)


class RunStateMachine:
    """
    Tracks the run status and the status of every step in one run.

    Step statuses start at not_ready (or at the value given in `initial`,
    used when a run is restored from a checkpoint).
    """

    def __init__(
        self,
        run_id: str,
        step_names: Iterable[str],
        initial: dict[str, StepStatus] | None = None,
        status: RunStatus = RunStatus.IDLE,
    ):
        self.run_id = run_id
        self.status = status
        self._steps: dict[str, StepStatus] = {
            name: StepStatus.NOT_READY for name in step_names
        }
        for name, state in (initial or {}).items():
            self._steps[name] = StepStatus(state)
        self.history: list[TransitionRecord] = []

    # ── Run ──────────────────────────────────────────────────

    def transition_run(self, to_state: RunStatus, reason: str = "") -> TransitionRecord:
        """
        Move the run to `to_state`.

        Raises:
            IllegalStateTransition: If the transition is not allowed
        """
        current = self.status
        if to_state not in RUN_TRANSITIONS[current]:
            raise IllegalStateTransition(
                f"Run {self.run_id}: cannot transition {current.value} → {to_state.value}"
            )
        self.status = to_state
        record = TransitionRecord("run", current.value, to_state.value, reason)
        self.history.append(record)
        logger.debug("Run %s: %s → %s %s", self.run_id, current.value, to_state.value, reason)
        return record

    # ── Steps ────────────────────────────────────────────────

    def get(self, step_name: str) -> StepStatus:
        return self._steps[step_name]

    def transition(self, step_name: str, to_state: StepStatus, reason: str = "") -> TransitionRecord:
        """
        Move one step to `to_state`.

        Raises:
            IllegalStateTransition: If the transition is not allowed
            KeyError: If the step is unknown
        """
        current = self._steps[step_name]
        if to_state not in STEP_TRANSITIONS[current]:
            raise IllegalStateTransition(
                f"Step {step_name!r}: cannot transition {current.value} → {to_state.value}"
            )
        self._steps[step_name] = to_state
        record = TransitionRecord(step_name, current.value, to_state.value, reason)
        self.history.append(record)
        return record

    def names_in(self, *states: StepStatus) -> list[str]:
        return [name for name, s in self._steps.items() if s in states]

    def snapshot(self) -> dict[str, StepStatus]:
        return dict(self._steps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "steps": {name: s.value for name, s in self._steps.items()},
        }

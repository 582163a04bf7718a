"""
DAG Flow — Execution Context

The mutable state shared by the steps of one run, plus its cancellation
signal.

Steps see the state through a read-only view. The scheduler is the only
writer: it commits each step's output under the step's own name, once.
That single-writer rule is why no lock is needed around the state map.

Usage:
    async def summarize(input, ctx):
        text = ctx.get("fetch")
        if ctx.cancellation.cancelled:
            raise AbortError(ctx.cancellation.reason)
        return text[:200]
"""

from __future__ import annotations

import asyncio
import time
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from pydantic import TypeAdapter

from dagflow.errors import AbortError, InvariantError


# ═══════════════════════════════════════════════════════════════════
# Cancellation
# ═══════════════════════════════════════════════════════════════════

class CancellationToken:
    """
    Cooperative cancellation signal.

    Passed by reference into every step call through the context. The
    scheduler checks it once per batch; step bodies may poll `cancelled`
    or await `wait()` to react sooner.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason = ""
        self.cancelled_at = 0.0

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self.cancelled_at = time.time()
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AbortError(self.reason)

    async def wait(self) -> None:
        """Block until cancellation is signaled."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep up to `seconds`, waking early on cancellation.

        Returns True if cancellation arrived before the time was up.
        """
        if self._event.is_set():
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    def __repr__(self) -> str:
        state = f"cancelled, reason={self.reason!r}" if self.cancelled else "active"
        return f"CancellationToken({state})"


# ═══════════════════════════════════════════════════════════════════
# Execution Context
# ═══════════════════════════════════════════════════════════════════

class ExecutionContext:
    """
    Per-run shared state: a step-name → value map and a cancellation token.

    `state` is a read-only view. Keys present at start come from the
    caller's initial state (or a restored checkpoint); every other key is
    the committed output of a finished step.
    """

    def __init__(
        self,
        state: Mapping[str, Any] | None = None,
        cancellation: CancellationToken | None = None,
        run_id: str = "",
        written: Iterable[str] = (),
    ):
        self._values: dict[str, Any] = dict(state or {})
        self._written: set[str] = set(written)
        self.cancellation = cancellation or CancellationToken()
        self.run_id = run_id

    @property
    def state(self) -> Mapping[str, Any]:
        return MappingProxyType(self._values)

    @property
    def written(self) -> set[str]:
        """Step names whose output has been committed in this run."""
        return set(self._written)

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def get_as(self, key: str, schema: Any) -> Any:
        """
        Read `key` and validate it against a pydantic-compatible type.

        Raises:
            KeyError: if the key is absent (e.g. its step was skipped)
            pydantic.ValidationError: if the value does not match
        """
        if key not in self._values:
            raise KeyError(key)
        adapter = schema if isinstance(schema, TypeAdapter) else TypeAdapter(schema)
        return adapter.validate_python(self._values[key])

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def snapshot(self) -> dict[str, Any]:
        """Shallow copy of the current state."""
        return dict(self._values)

    def commit(self, step_name: str, value: Any) -> None:
        """
        Record a step's output under its own name. Scheduler use only.

        Raises:
            InvariantError: if the step already committed in this run
        """
        if step_name in self._written:
            raise InvariantError(
                f"Step {step_name!r} already wrote its output in run {self.run_id!r}")
        self._written.add(step_name)
        self._values[step_name] = value

    def __repr__(self) -> str:
        return f"ExecutionContext(run_id={self.run_id!r}, keys={sorted(self._values)})"

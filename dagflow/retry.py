"""
DAG Flow — Step Retry with Backoff

Wraps a single step's attempts with:
  - Configurable re-invocation on failure (body raised, bad output, timeout)
  - Exponential backoff between attempts (fixed delay by default)
  - Per-attempt timeout
  - Cooperative cancellation: backoff sleeps wake early, no new attempt
    starts once the run is cancelled
  - Structured attempt log

Retries are local to one step. They never re-run its dependencies.

Config format (dagflow.yaml):
    retry:
      default:
        max_retries: 2
        delay_ms: 250
        backoff_multiplier: 2
      steps:
        fetch_prices:
          max_retries: 5
          delay_ms: 1000

Usage:
    from dagflow.retry import RetryPolicy, run_with_retry

    policy = RetryPolicy(max_retries=3, delay_ms=100, backoff_multiplier=2)
    result = await run_with_retry(lambda: fetch(), policy, step_name="fetch")
    if result.error is None:
        print(result.value, result.attempts)
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from dagflow.errors import AbortError, StepFailedError, StepTimeoutError

logger = logging.getLogger("dagflow.retry")


# ═══════════════════════════════════════════════════════════════════
# Retry Policy
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryPolicy:
    """Re-invocation rules for one step's execute()."""
    max_retries: int = 0              # additional attempts after the first
    delay_ms: float = 0.0             # delay before the first retry
    backoff_multiplier: float = 1.0   # 1 = fixed delay; actual = delay_ms * multiplier^attempt
    max_delay_ms: float | None = None  # cap on delay between attempts
    jitter: float = 0.0               # ±fraction randomization on the delay

    # What counts as retryable
    retry_on: tuple = (Exception,)

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.delay_ms < 0:
            raise ValueError(f"delay_ms must be >= 0, got {self.delay_ms}")
        if self.backoff_multiplier <= 0:
            raise ValueError(
                f"backoff_multiplier must be > 0, got {self.backoff_multiplier}")
        if not 0.0 <= self.jitter < 1.0:
            raise ValueError(f"jitter must be in [0, 1), got {self.jitter}")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    @classmethod
    def from_dict(cls, data: dict[str, Any], base: RetryPolicy | None = None) -> RetryPolicy:
        """Build a policy from a config mapping, filling gaps from `base`."""
        base = base or DEFAULT_POLICY
        return cls(
            max_retries=int(data.get("max_retries", base.max_retries)),
            delay_ms=float(data.get("delay_ms", base.delay_ms)),
            backoff_multiplier=float(data.get("backoff_multiplier", base.backoff_multiplier)),
            max_delay_ms=data.get("max_delay_ms", base.max_delay_ms),
            jitter=float(data.get("jitter", base.jitter)),
            retry_on=base.retry_on,
        )


DEFAULT_POLICY = RetryPolicy()


def get_retry_policy(
    step_name: str | None = None,
    config: dict[str, Any] | None = None,
) -> RetryPolicy:
    """
    Resolve the retry policy for a step from config.

    Lookup order: retry.steps.<step_name>, then retry.default, then
    DEFAULT_POLICY. A step-specific entry is layered over the default
    entry, so it only needs the keys it changes.
    """
    if config is None:
        from dagflow.config import load_config
        config = load_config()

    retry_cfg = config.get("retry") or {}
    default_cfg = retry_cfg.get("default") or {}
    policy = RetryPolicy.from_dict(default_cfg) if default_cfg else DEFAULT_POLICY

    step_cfg = (retry_cfg.get("steps") or {}).get(step_name or "", {})
    if step_cfg:
        policy = RetryPolicy.from_dict(step_cfg, base=policy)
    return policy


# ═══════════════════════════════════════════════════════════════════
# Retry Result
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryResult:
    """Outcome of running one step through its retry policy."""
    value: Any = None                  # committed output on success
    attempts: int = 0                  # attempts actually started
    error: BaseException | None = None  # StepFailedError or AbortError on failure
    total_latency: float = 0.0         # wall time including backoff
    attempt_log: list[dict[str, Any]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.error is None


# ═══════════════════════════════════════════════════════════════════
# Retry Logic
# ═══════════════════════════════════════════════════════════════════

def _is_retryable(error: BaseException, policy: RetryPolicy) -> bool:
    """Determine if an exception is retryable."""
    if not isinstance(error, policy.retry_on):
        return False
    return getattr(error, "retryable", True)


def calculate_backoff(attempt: int, policy: RetryPolicy) -> float:
    """
    Delay in seconds after failed attempt `attempt` (0-based).

    delay_ms * backoff_multiplier^attempt, capped, with optional jitter.
    """
    delay_ms = policy.delay_ms * (policy.backoff_multiplier ** attempt)
    if policy.max_delay_ms is not None:
        delay_ms = min(delay_ms, policy.max_delay_ms)
    if policy.jitter:
        jitter_range = delay_ms * policy.jitter
        delay_ms += random.uniform(-jitter_range, jitter_range)
    return max(0.0, delay_ms) / 1000.0


async def _default_sleep(seconds: float) -> bool:
    await asyncio.sleep(seconds)
    return False


async def run_with_retry(
    attempt_fn: Callable[[], Awaitable[Any]],
    policy: RetryPolicy | None = None,
    step_name: str = "",
    timeout: float | None = None,
    cancellation: Any = None,
    sleep_fn: Callable[[float], Awaitable[Any]] | None = None,
    on_attempt: Callable[[int], None] | None = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> RetryResult:
    """
    Run `attempt_fn` until it succeeds or the policy is exhausted.

    Args:
        attempt_fn:   Zero-arg callable returning an awaitable for one attempt
        policy:       RetryPolicy (or default: no retries)
        step_name:    For logging and error attribution
        timeout:      Seconds allowed per attempt (None = unbounded)
        cancellation: CancellationToken; no attempt starts once it is set
        sleep_fn:     Async backoff sleep (injectable for testing). A truthy
                      return value means the sleep was cut short by
                      cancellation. Defaults to cancellation.sleep.
        on_attempt:   Called with the 0-based attempt index before each attempt
        on_retry:     Called with (next attempt index, error, delay seconds)

    Returns:
        RetryResult. Step failures never raise out of here: a terminal
        failure is reported as result.error (StepFailedError, or
        AbortError when cancellation stopped the step). Cancelling the task
        running this coroutine still raises CancelledError.
    """
    if policy is None:
        policy = DEFAULT_POLICY
    if sleep_fn is None:
        sleep_fn = cancellation.sleep if cancellation is not None else _default_sleep

    result = RetryResult()
    total_t0 = time.monotonic()
    last_error: BaseException | None = None

    for attempt in range(policy.max_attempts):
        if cancellation is not None and cancellation.cancelled:
            result.error = AbortError(cancellation.reason)
            break

        entry: dict[str, Any] = {"attempt": attempt + 1, "step": step_name}
        result.attempts = attempt + 1
        if on_attempt is not None:
            on_attempt(attempt)

        t0 = time.monotonic()
        try:
            if timeout is not None:
                try:
                    value = await asyncio.wait_for(attempt_fn(), timeout=timeout)
                except asyncio.TimeoutError:
                    raise StepTimeoutError(step_name, timeout) from None
            else:
                value = await attempt_fn()

            entry["latency_s"] = round(time.monotonic() - t0, 3)
            entry["status"] = "success"
            result.attempt_log.append(entry)
            result.value = value
            result.total_latency = time.monotonic() - total_t0
            logger.debug(
                "Step succeeded (attempt %d, step=%s, %.3fs)",
                attempt + 1, step_name, entry["latency_s"],
            )
            return result

        except asyncio.CancelledError as e:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            # Raised inside the body, not a cancel of this task
            entry["latency_s"] = round(time.monotonic() - t0, 3)
            entry["error"] = str(e)[:200] or "CancelledError"
            entry["status"] = "non_retryable"
            result.attempt_log.append(entry)
            last_error = e
            logger.error("Step body raised CancelledError (step=%s)", step_name)
            break

        except Exception as e:
            entry["latency_s"] = round(time.monotonic() - t0, 3)
            entry["error"] = str(e)[:200]
            last_error = e

            if isinstance(e, AbortError):
                entry["status"] = "aborted"
                result.attempt_log.append(entry)
                result.error = e
                break

            if not _is_retryable(e, policy):
                entry["status"] = "non_retryable"
                result.attempt_log.append(entry)
                logger.error(
                    "Step non-retryable error (step=%s): %s", step_name, str(e)[:100],
                )
                break

            entry["status"] = "retryable_error"
            result.attempt_log.append(entry)

            if attempt < policy.max_attempts - 1:
                logger.warning(
                    "Step retryable error (attempt %d/%d, step=%s): %s",
                    attempt + 1, policy.max_attempts, step_name, str(e)[:100],
                )
                delay = calculate_backoff(attempt, policy)
                entry["backoff_s"] = round(delay, 3)
                if on_retry is not None:
                    on_retry(attempt + 1, e, delay)
                interrupted = await sleep_fn(delay)
                if interrupted or (cancellation is not None and cancellation.cancelled):
                    result.error = AbortError(
                        cancellation.reason if cancellation is not None else "")
                    break

    result.total_latency = time.monotonic() - total_t0
    if result.error is None:
        logger.error(
            "All retry attempts exhausted (step=%s, attempts=%d)",
            step_name, result.attempts,
        )
        result.error = StepFailedError(step_name, result.attempts, last_error)
    return result

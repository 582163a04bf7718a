"""
DAG Flow — Structured Logging with Correlation IDs

Emits one JSON log line per workflow event. Field names follow
OpenTelemetry semantic conventions (trace_id, span_id, service.name) so
the output can be shipped to an OTel collector unchanged.

Design decisions:
  - Transport: Python logging with a JSON formatter
  - One trace_id per run; one span_id per step execution
  - Configurable log level: DEBUG (attempt detail, outputs), INFO (lifecycle),
    WARNING (retries and failures only)

Usage:
    from dagflow.logging import StructuredLogger, configure_logging

    configure_logging(level="INFO")
    log = StructuredLogger(workflow="invoice_approval", run_id="run_1a2b")
    log.on_workflow_start()

    # A nested workflow keeps the link to its parent
    child = log.child(workflow="vendor_check")
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter (OTel-compatible)
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    OTel semantic conventions used:
      - trace_id: maps to OTel trace ID
      - span_id: maps to OTel span ID
      - service.name: "dagflow"
      - service.version: from env
    """

    def __init__(self, service_name: str = "dagflow"):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("DAGFLOW_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = "dagflow",
) -> logging.Logger:
    """
    Configure the dagflow logger tree with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries

    Returns:
        The configured "dagflow" logger
    """
    logger = logging.getLogger("dagflow")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith("dagflow."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the dagflow namespace."""
    if name:
        return logging.getLogger(f"dagflow.{name}")
    return logging.getLogger("dagflow")


# ═══════════════════════════════════════════════════════════════════
# Trace ID Generation
# ═══════════════════════════════════════════════════════════════════

def generate_trace_id() -> str:
    """Generate an OTel-compatible trace ID (32 hex chars)."""
    return uuid.uuid4().hex


def generate_span_id() -> str:
    """Generate an OTel-compatible span ID (16 hex chars)."""
    return uuid.uuid4().hex[:16]


# ═══════════════════════════════════════════════════════════════════
# Structured Logger
# ═══════════════════════════════════════════════════════════════════

class StructuredLogger:
    """
    Per-run structured event logger.

    Every entry carries trace_id, workflow and run_id; step events also
    carry the span_id opened by on_step_start.
    """

    def __init__(
        self,
        workflow: str = "",
        run_id: str = "",
        trace_id: str | None = None,
        parent_trace_id: str | None = None,
    ):
        self.workflow = workflow
        self.run_id = run_id
        self.trace_id = trace_id or generate_trace_id()
        self.parent_trace_id = parent_trace_id
        self._logger = get_logger("trace")
        self._step_spans: dict[str, str] = {}  # step_name → span_id

    def child(self, workflow: str = "", run_id: str = "") -> StructuredLogger:
        """Create a logger for a nested workflow run."""
        return StructuredLogger(
            workflow=workflow or self.workflow,
            run_id=run_id,
            trace_id=generate_trace_id(),
            parent_trace_id=self.trace_id,
        )

    def _base_fields(self) -> dict[str, Any]:
        fields = {
            "trace_id": self.trace_id,
            "workflow": self.workflow,
            "run_id": self.run_id,
        }
        if self.parent_trace_id:
            fields["parent_trace_id"] = self.parent_trace_id
        return fields

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {**self._base_fields(), "action": action, **fields}
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    def _step_fields(self, step_name: str, **fields) -> dict[str, Any]:
        fields["step_name"] = step_name
        if step_name in self._step_spans:
            fields["span_id"] = self._step_spans[step_name]
        return fields

    # ── Run Events ──────────────────────────────────────────────

    def on_workflow_start(self, steps_total: int = 0) -> None:
        self._emit(logging.INFO, "workflow_start", steps_total=steps_total)

    def on_workflow_resume(self, step_name: str, decision: str) -> None:
        self._emit(
            logging.INFO, "workflow_resume",
            step_name=step_name,
            decision=decision,
        )

    def on_workflow_end(
        self,
        status: str,
        elapsed_s: float,
        steps_completed: int = 0,
        error: str | None = None,
    ) -> None:
        fields: dict[str, Any] = {
            "status": status,
            "elapsed_s": round(elapsed_s, 3),
            "steps_completed": steps_completed,
        }
        if error:
            fields["error"] = error[:500]
        level = logging.WARNING if status == "failed" else logging.INFO
        self._emit(level, "workflow_end", **fields)

    def on_batch_start(self, iteration: int, steps: list[str]) -> None:
        self._emit(logging.DEBUG, "batch_start", iteration=iteration, steps=steps)

    # ── Step Events ─────────────────────────────────────────────

    def on_step_start(self, step_name: str, attempt: int) -> None:
        if attempt == 0 or step_name not in self._step_spans:
            self._step_spans[step_name] = generate_span_id()
        self._emit(
            logging.INFO if attempt == 0 else logging.DEBUG, "step_start",
            **self._step_fields(step_name, attempt=attempt + 1),
        )

    def on_step_retry(self, step_name: str, attempt: int, error: str, delay_s: float) -> None:
        self._emit(
            logging.WARNING, "step_retry",
            **self._step_fields(
                step_name,
                next_attempt=attempt + 1,
                error=error[:500],
                backoff_ms=round(delay_s * 1000, 1),
            ),
        )

    def on_step_end(
        self,
        step_name: str,
        status: str,
        attempts: int,
        latency_ms: float,
        error: str | None = None,
    ) -> None:
        fields = self._step_fields(
            step_name,
            status=status,
            attempts=attempts,
            latency_ms=round(latency_ms, 1),
        )
        if error:
            fields["error"] = error[:500]
        self._emit(logging.ERROR if status == "failed" else logging.INFO, "step_end", **fields)

    def on_step_skipped(self, step_name: str, reason: str) -> None:
        self._emit(logging.INFO, "step_skipped", step_name=step_name, reason=reason[:500])

    def on_human_gate(self, step_name: str, request_id: str, request_type: str) -> None:
        self._emit(
            logging.INFO, "human_gate",
            step_name=step_name,
            request_id=request_id,
            request_type=request_type,
        )

# ABOUTME: Structured logging with correlation IDs for the mesh GitOps operator
# ABOUTME: Implements per-pass correlation and an audit trail of cluster and mesh writes

"""
Structured logging with correlation IDs and audit trails.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

1. STRUCTURED LOGGING: every log line is an event name plus key/value pairs,
   rendered as colored text for a terminal or JSON for a log aggregator.

2. CORRELATION IDs: the operator runs several loops at once (repository
   watch, reconciliation dispatch, snapshot persistence, command consumers).
   Each sync pass and each reconciliation pass starts a fresh correlation ID,
   so every line from one pass can be pulled out of an interleaved stream:

       {"correlation_id": "a1b2c3d4", "event": "Sync pass started"}
       {"correlation_id": "9f8e7d6c", "event": "Reconciliation pass started"}
       {"correlation_id": "a1b2c3d4", "event": "Applying manifest", "name": "control"}

3. AUDIT LOGGING: every write the operator makes (or is prevented from
   making) against the cluster or the mesh control plane is recorded.

=============================================================================
CONTEXT VARIABLES (contextvars)
=============================================================================

asyncio copies the current context into each Task it creates, so a
correlation ID set at the top of a pass follows every coroutine and
``asyncio.to_thread`` call made on behalf of that pass, without leaking into
the other loops.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path


# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate new one.

    Code running outside any pass (startup, shutdown) still gets an ID so
    its lines are correlatable.

    Returns:
        8-character correlation ID string.
    """
    cid = correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())[:8]
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """Set correlation ID for current context."""
    correlation_id.set(cid)


def new_correlation_id() -> str:
    """
    Start a new correlation scope for the current context.

    Called at the beginning of every sync pass and reconciliation pass.

    Returns:
        The freshly generated ID.
    """
    cid = str(uuid.uuid4())[:8]
    correlation_id.set(cid)
    return cid


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """
    Structlog processor adding the correlation ID to each event.

    Args:
        logger: The structlog wrapped logger (unused but required by API)
        method_name: The logging method name (unused but required by API)
        event_dict: Dictionary containing log event data to enrich

    Returns:
        The event_dict with "correlation_id" field added.
    """
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structured logging. Call it once at startup.

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: Adds any context bound via structlog.contextvars
    2. add_log_level: Adds "level" field
    3. TimeStamper: Adds ISO-format timestamp
    4. add_correlation_id: Adds the pass correlation ID
    5. Renderer: JSON or colored console text

    Args:
        level: One of DEBUG, INFO, WARNING, ERROR, CRITICAL.
        json_output: If True, output JSON lines (in-cluster deployments).
                     If False, output colored text (local development).
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        # Exceptions logged with exc_info are flattened into the JSON line
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        # Container orchestrators capture stdout
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Audit logger recording every write the operator performs.

    WHAT WE LOG:
    ------------
    - timestamp: When it happened (UTC ISO 8601)
    - correlation_id: The sync or reconciliation pass that caused it
    - action: "apply_manifest", "delete_manifest", "mesh_apply", "mesh_delete" ...
    - target: What was affected ("apps/control", "cluster/edge")
    - result: "applied", "deleted", "blocked", "error"
    - details: Additional context (error text, blocking reason)

    TWO OUTPUT MODES:
    -----------------
    1. FILE: Append JSON lines to ``log_path``
    2. STDOUT: Emit through structlog alongside the normal log stream

    EXAMPLE AUDIT LOG ENTRIES:
    --------------------------
    {"timestamp": "2026-01-15T10:30:00Z", "correlation_id": "abc12345",
     "action": "mesh_apply", "target": "cluster/edge", "result": "applied"}

    {"timestamp": "2026-01-15T10:30:05Z", "correlation_id": "def45678",
     "action": "delete_manifest", "target": "apps/old-worker", "result": "blocked",
     "details": {"reason": "Destructive operations are disabled"}}
    """

    def __init__(self, log_path: Path | None = None) -> None:
        """
        Initialize audit logger.

        Args:
            log_path: Path to audit log file, or None for stdout. The file is
                      created if missing and always appended to.
        """
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Log an auditable action.

        Args:
            action: Operation performed
            target: Affected object identifier
            result: "applied", "deleted", "blocked" or "error"
            details: Optional extra context
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }

        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    # -------------------------------------------------------------------------
    # CONVENIENCE METHODS
    # -------------------------------------------------------------------------

    def log_applied(self, action: str, target: str) -> None:
        """Log a successful apply."""
        self.log(action, target, "applied")

    def log_deleted(self, action: str, target: str) -> None:
        """Log a successful delete."""
        self.log(action, target, "deleted")

    def log_blocked(self, action: str, target: str, reason: str) -> None:
        """
        Log a write prevented by a safety guard.

        Example:
            audit_logger.log_blocked(
                "delete_manifest",
                "apps/old-worker",
                "Destructive operations are disabled",
            )
        """
        self.log(action, target, "blocked", {"reason": reason})

    def log_error(self, action: str, target: str, error: str) -> None:
        """Log a failed write."""
        self.log(action, target, "error", {"error": error})

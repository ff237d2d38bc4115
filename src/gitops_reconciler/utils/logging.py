# ABOUTME: Structured logging with correlation IDs for the GitOps reconciler
# ABOUTME: Implements audit logging of every cluster mutation and blocked operation

"""
Structured logging with correlation IDs and audit trails.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

1. STRUCTURED LOGGING: every log line is an event name plus key/value pairs,
   rendered as colored text for development or JSON for log aggregators.

2. CORRELATION IDs: each reconciliation cycle gets an id, and every log line
   emitted while that cycle runs carries it. Application loops run as
   separate asyncio tasks, so the id lives in a ContextVar: each task sees
   its own value and concurrent cycles never mix.

       {"correlation_id": "a1b2c3d4", "event": "Cycle started", "application": "shop-dev"}
       {"correlation_id": "a1b2c3d4", "event": "Applied", "resource": "Deployment/shop/web"}
       {"correlation_id": "a1b2c3d4", "event": "Cycle finished", "health": "Healthy"}

3. AUDIT LOGGING: an append-only record of every create/update/delete the
   controller performs, and of every manual operation that was blocked.

Logs go to stderr: stdout carries the MCP protocol when the status surface
runs over stdio.
"""

from __future__ import annotations

import json
import logging
import sys
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


def new_correlation_id() -> str:
    """Generate an 8-character id (first block of a UUID4)."""
    return str(uuid.uuid4())[:8]


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate new one.

    Code running outside a cycle (startup, tool calls) still gets an id so its
    logs can be correlated.
    """
    cid = correlation_id.get()
    if not cid:
        cid = new_correlation_id()
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """Set correlation ID for the current task. An empty string means "generate on next use"."""
    correlation_id.set(cid)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Structlog processor adding the correlation ID to every event."""
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
    Configure structured logging. Call once at startup.

    Processor pipeline:
        merge_contextvars -> add_log_level -> TimeStamper(iso)
        -> add_correlation_id -> JSONRenderer | ConsoleRenderer

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_output: JSON lines (production) instead of colored text (development).
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Audit logger for cluster mutations and manual operations.

    Every entry records:
    - timestamp: When it happened (UTC ISO 8601)
    - correlation_id: Cycle or request identifier
    - action: "create", "update", "delete", "sync_application", ...
    - target: Resource key or application name
    - result: "success", "failed", "blocked", "error", ...
    - details: Additional context (application, attempts, error)

    Example entries:

        {"timestamp": "...", "correlation_id": "abc12345", "action": "update",
         "target": "Deployment/shop/web", "result": "success",
         "details": {"application": "shop-dev", "attempts": 1}}

        {"timestamp": "...", "correlation_id": "def45678",
         "action": "sync_application", "target": "shop-prod", "result": "blocked",
         "details": {"reason": "Controller is running in read-only mode"}}
    """

    def __init__(self, log_path: Path | None = None) -> None:
        """
        Args:
            log_path: Append JSON lines to this file, or None to log via structlog.
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
        """Log an auditable action."""
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
                f.write(json.dumps(entry, default=str) + "\n")
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

    def log_read(self, action: str, target: str) -> None:
        """Log a read operation (status queries)."""
        self.log(action, target, "success")

    def log_write(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log a write: a cluster mutation or a manually triggered sync."""
        self.log(action, target, result, details)

    def log_blocked(
        self,
        action: str,
        target: str,
        reason: str,
    ) -> None:
        """Log an operation a safety check refused."""
        self.log(action, target, "blocked", {"reason": reason})

    def log_error(
        self,
        action: str,
        target: str,
        error: str,
    ) -> None:
        """Log an operation that failed with an error."""
        self.log(action, target, "error", {"error": error})

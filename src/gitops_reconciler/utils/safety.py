# ABOUTME: Safety guards for the reconciler's status surface
# ABOUTME: Implements read-only mode, prune confirmation, rate limiting and Secret masking

"""
Guards for operations a client of the status surface can trigger by hand.

The reconcile loops never pass through these checks: their behaviour is set
per application (auto_sync, prune). The guards only decide whether a manual
sync, promotion or auto-sync toggle may run, and what a diff preview may
reveal.
"""

from __future__ import annotations

import copy
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from gitops_reconciler.config import SecuritySettings

logger = structlog.get_logger(__name__)

MASK = "********"


@dataclass
class ConfirmationRequired:
    """Response asking the caller to confirm a pruning operation."""

    operation: str
    target: str
    impact: str
    confirmation_instructions: str
    details: dict[str, Any] = field(default_factory=dict)

    def format_message(self) -> str:
        lines = [
            f"CONFIRMATION REQUIRED: {self.operation}",
            "",
            f"Target: {self.target}",
            f"Impact: {self.impact}",
        ]

        if self.details:
            lines.append("")
            lines.append("Details:")
            for key, value in self.details.items():
                lines.append(f"  {key}: {value}")

        lines.extend(["", self.confirmation_instructions])
        return "\n".join(lines)


@dataclass
class OperationBlocked:
    """Response for an operation refused by the security settings."""

    operation: str
    reason: str
    setting: str

    def format_message(self) -> str:
        return (
            f"OPERATION BLOCKED: {self.operation}\n"
            f"Reason: {self.reason}\n"
            f"Setting: {self.setting}\n"
            f"To enable: Set {self.setting}=false in the controller environment"
        )


class RateLimiter:
    """Sliding-window call counter keyed by operation."""

    def __init__(self, max_calls: int = 100, window_seconds: int = 60) -> None:
        self._max_calls = max_calls
        self._window = window_seconds
        self._calls: dict[str, list[float]] = defaultdict(list)

    def check(self, key: str) -> bool:
        """Record a call for ``key``; False when the window is already full."""
        now = time.time()
        self._calls[key] = [t for t in self._calls[key] if now - t < self._window]

        if len(self._calls[key]) >= self._max_calls:
            logger.warning("Rate limit exceeded", key=key, calls=len(self._calls[key]))
            return False

        self._calls[key].append(now)
        return True

    def reset(self, key: str | None = None) -> None:
        if key:
            self._calls.pop(key, None)
        else:
            self._calls.clear()


class SafetyGuard:
    """
    Layered checks for manual operations:

        read_only            -> every write tool is blocked
        disable_destructive  -> syncs that prune are blocked
        confirmation         -> pruning syncs need confirm=true and the app name
        rate limits          -> per operation, reads and writes counted separately
    """

    def __init__(self, settings: SecuritySettings) -> None:
        self._settings = settings
        self._rate_limiter = RateLimiter(
            max_calls=settings.rate_limit_calls,
            window_seconds=settings.rate_limit_window,
        )

    @property
    def mask_secrets(self) -> bool:
        return self._settings.mask_secrets

    def check_read_operation(self, operation: str) -> OperationBlocked | None:
        if not self._rate_limiter.check(f"read:{operation}"):
            return OperationBlocked(
                operation=operation,
                reason="Rate limit exceeded",
                setting="GITOPS_MCP_RATE_LIMIT_CALLS",
            )
        return None

    def check_write_operation(self, operation: str) -> OperationBlocked | None:
        if self._settings.read_only:
            return OperationBlocked(
                operation=operation,
                reason="Controller is running in read-only mode",
                setting="GITOPS_MCP_READ_ONLY",
            )

        if not self._rate_limiter.check(f"write:{operation}"):
            return OperationBlocked(
                operation=operation,
                reason="Rate limit exceeded",
                setting="GITOPS_MCP_RATE_LIMIT_CALLS",
            )

        return None

    def check_destructive_operation(
        self,
        operation: str,
        target: str,
        confirmed: bool = False,
        confirm_name: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> OperationBlocked | ConfirmationRequired | None:
        """
        Check an operation that may delete resources.

        Returns:
            OperationBlocked if blocked, ConfirmationRequired if the caller has
            not confirmed with the target's name, None if allowed.
        """
        write_check = self.check_write_operation(operation)
        if write_check:
            return write_check

        if self._settings.disable_destructive:
            return OperationBlocked(
                operation=operation,
                reason="Pruning from manual operations is disabled",
                setting="GITOPS_MCP_DISABLE_DESTRUCTIVE",
            )

        if not confirmed or confirm_name != target:
            return ConfirmationRequired(
                operation=operation,
                target=target,
                impact="Owned resources no longer in git will be DELETED from the cluster",
                confirmation_instructions=(
                    f"To proceed, set confirm=true AND confirm_name='{target}'"
                ),
                details=details or {},
            )

        return None


def mask_secret_values(manifest: dict[str, Any], kind: str | None = None) -> dict[str, Any]:
    """
    Copy of a manifest or patch with Secret payload values replaced.

    Only Secrets are touched. Pass ``kind`` for patches, which carry no kind
    of their own. Keys stay visible so a diff still shows which entries change.
    """
    if (kind or manifest.get("kind")) != "Secret":
        return manifest
    masked = copy.deepcopy(manifest)
    for section in ("data", "stringData"):
        values = masked.get(section)
        if isinstance(values, dict):
            masked[section] = {key: MASK for key in values}
    return masked

# ABOUTME: Error taxonomy for the GitOps reconciler
# ABOUTME: Separates resource-level failures from cycle-level aborts

"""
Exceptions raised while reconciling an application.

Two families exist and they propagate differently:

RESOURCE-LEVEL (one resource fails, the rest of the cycle continues):
    MalformedManifest, ApplyRejected, ApplyTransientError, ConvergenceTimeout

CYCLE-LEVEL (the whole cycle aborts and is recorded as Error):
    DuplicateResource, ClusterUnreachable, ManifestSourceUnavailable, CycleTimeout
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gitops_reconciler.models import ResourceKey


class ReconcileError(Exception):
    """Base class for every reconciler error."""


# =============================================================================
# RESOURCE-LEVEL ERRORS
# =============================================================================


class MalformedManifest(ReconcileError):
    """A manifest document violates the required schema."""

    def __init__(self, source: str, reason: str, key: ResourceKey | None = None) -> None:
        self.source = source
        self.reason = reason
        self.key = key
        super().__init__(str(self))

    def __str__(self) -> str:
        target = f" ({self.key})" if self.key else ""
        return f"Malformed manifest {self.source}{target}: {self.reason}"


class ApplyRejected(ReconcileError):
    """The cluster permanently rejected an operation. Never retried."""

    def __init__(self, key: ResourceKey, code: int, message: str) -> None:
        self.key = key
        self.code = code
        self.message = message
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"Apply of {self.key} rejected ({self.code}): {self.message}"


class ApplyTransientError(ReconcileError):
    """A retryable apply failure (timeout, conflict, throttling, 5xx)."""

    def __init__(self, key: ResourceKey, code: int, message: str) -> None:
        self.key = key
        self.code = code
        self.message = message
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"Transient error applying {self.key} ({self.code}): {self.message}"


class ConvergenceTimeout(ReconcileError):
    """Resource applied but not converged within the bounded wait."""

    def __init__(self, key: ResourceKey, waited: float) -> None:
        self.key = key
        self.waited = waited
        super().__init__(f"{key} not converged after {waited:.0f}s")


# =============================================================================
# CYCLE-LEVEL ERRORS
# =============================================================================


class DuplicateResource(ReconcileError):
    """The same resource identity is declared more than once."""

    def __init__(self, key: ResourceKey, sources: list[str]) -> None:
        self.key = key
        self.sources = sources
        super().__init__(f"Duplicate resource {key} declared in: {', '.join(sources)}")


class ClusterUnreachable(ReconcileError):
    """The cluster API could not be reached."""


class ManifestSourceUnavailable(ReconcileError):
    """The manifest repository could not be read."""


class CycleTimeout(ReconcileError):
    """The cycle deadline passed; raised at the next cooperative checkpoint."""


class CycleCancelled(ReconcileError):
    """The cycle was cancelled at a cooperative checkpoint."""

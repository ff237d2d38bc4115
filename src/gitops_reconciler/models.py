# ABOUTME: Data model for desired state, live state, sync operations and results
# ABOUTME: Holds the per-application sync status that persists across cycles

"""
Data model shared by the parser, reader, diff engine, reconciler and scheduler.

Within one cycle the data flows like this:

    DesiredState (from git) ─┐
                             ├─> [SyncOperation, ...] ─> [SyncResult, ...]
    LiveState (from cluster) ┘

Only ApplicationSyncStatus outlives a cycle. Everything else is rebuilt from
the manifest source and the cluster every time.

Cycle-scoped values are plain (frozen) dataclasses. Values that are reported
through the status surface or written to the status file are pydantic models.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator
    from pathlib import Path

    from gitops_reconciler.errors import MalformedManifest

# =============================================================================
# OWNERSHIP MARKERS
# =============================================================================
#
# Written on every object the controller creates. Only objects whose tracking
# annotation names this application are ever pruned.

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "gitops-reconciler"
INSTANCE_LABEL = "gitops-reconciler/instance"
TRACKING_ANNOTATION = "gitops-reconciler/tracking-id"


def tracking_id(application: str, key: ResourceKey) -> str:
    """Value of the tracking annotation for a resource owned by an application."""
    return f"{application}:{key}"


def ownership_markers(application: str, key: ResourceKey) -> dict[str, dict[str, str]]:
    """Labels and annotations stamped onto a resource at Create time."""
    return {
        "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE, INSTANCE_LABEL: application},
        "annotations": {TRACKING_ANNOTATION: tracking_id(application, key)},
    }


def spec_hash(manifest: dict[str, Any]) -> str:
    """Stable short hash of a manifest payload."""
    encoded = json.dumps(manifest, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode()).hexdigest()[:16]


# =============================================================================
# IDENTITIES AND STATE
# =============================================================================


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Identity of one managed unit: kind + namespace + name."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, text: str) -> ResourceKey:
        """Parse the ``Kind/namespace/name`` form produced by ``str()``."""
        parts = text.split("/")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Invalid resource key '{text}', expected Kind/namespace/name")
        return cls(kind=parts[0], namespace=parts[1], name=parts[2])


@dataclass(frozen=True)
class ResourceDescriptor:
    """
    A resource as declared in the manifest source.

    ``manifest`` is the normalized document (server-populated fields removed).
    Treat it as read-only: the diff engine and reconciler copy before mutating.
    """

    key: ResourceKey
    manifest: dict[str, Any]
    source: str = ""

    @property
    def kind(self) -> str:
        return self.key.kind

    @property
    def namespace(self) -> str:
        return self.key.namespace

    @property
    def name(self) -> str:
        return self.key.name

    @property
    def spec_hash(self) -> str:
        return spec_hash(self.manifest)


class _Absent:
    """Marker for a resource the cluster reported as not found."""

    _instance: _Absent | None = None

    def __new__(cls) -> _Absent:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = _Absent()


@dataclass(frozen=True)
class LiveResource:
    """A resource as currently stored in the cluster, status included."""

    key: ResourceKey
    obj: dict[str, Any]

    @property
    def metadata(self) -> dict[str, Any]:
        return self.obj.get("metadata") or {}

    @property
    def labels(self) -> dict[str, str]:
        return self.metadata.get("labels") or {}

    @property
    def annotations(self) -> dict[str, str]:
        return self.metadata.get("annotations") or {}

    @property
    def status(self) -> dict[str, Any]:
        return self.obj.get("status") or {}

    def owned_by(self, application: str) -> bool:
        """True if this controller created the resource for ``application``."""
        return self.annotations.get(TRACKING_ANNOTATION) == tracking_id(application, self.key)


@dataclass
class DesiredState:
    """Ordered desired resources parsed from one manifest revision."""

    revision: str
    resources: dict[ResourceKey, ResourceDescriptor] = field(default_factory=dict)
    malformed: list[MalformedManifest] = field(default_factory=list)

    def __contains__(self, key: object) -> bool:
        return key in self.resources

    def __len__(self) -> int:
        return len(self.resources)

    def keys(self) -> list[ResourceKey]:
        return list(self.resources)

    @property
    def protected_keys(self) -> set[ResourceKey]:
        """Identities declared by malformed documents. Never pruned."""
        return {m.key for m in self.malformed if m.key is not None}

    @property
    def prune_safe(self) -> bool:
        """False when a malformed document hides which identity it declares."""
        return all(m.key is not None for m in self.malformed)


@dataclass
class LiveState:
    """Live resources keyed like DesiredState; missing ones map to ABSENT."""

    resources: dict[ResourceKey, LiveResource | _Absent] = field(default_factory=dict)

    def get(self, key: ResourceKey) -> LiveResource | _Absent:
        return self.resources.get(key, ABSENT)

    def present(self) -> Iterator[LiveResource]:
        for value in self.resources.values():
            if isinstance(value, LiveResource):
                yield value

    def keys(self) -> Iterable[ResourceKey]:
        return self.resources.keys()


# =============================================================================
# OPERATIONS
# =============================================================================


class SyncAction(str, Enum):
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    NOOP = "NoOp"


@dataclass(frozen=True)
class SyncOperation:
    """One planned change, consumed by the reconciler then discarded."""

    action: SyncAction
    key: ResourceKey
    patch: dict[str, Any] | None = None
    desired: ResourceDescriptor | None = None
    live: LiveResource | None = None

    @property
    def pending(self) -> bool:
        return self.action is not SyncAction.NOOP

    def describe(self) -> str:
        symbol = {
            SyncAction.CREATE: "+",
            SyncAction.UPDATE: "~",
            SyncAction.DELETE: "-",
            SyncAction.NOOP: "=",
        }[self.action]
        return f"{symbol} {self.key}"


# =============================================================================
# RESULTS AND PERSISTED STATUS
# =============================================================================


def utcnow() -> datetime:
    return datetime.now(UTC)


class ResultStatus(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    PROGRESSING = "Progressing"


class HealthStatus(str, Enum):
    UNKNOWN = "Unknown"
    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    ERROR = "Error"


class LifecyclePhase(str, Enum):
    IDLE = "Idle"
    SYNCING = "Syncing"


class SyncStatusCode(str, Enum):
    UNKNOWN = "Unknown"
    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"


class SyncResult(BaseModel):
    """Outcome for one resource in one cycle."""

    resource: str
    action: SyncAction
    status: ResultStatus
    message: str = ""
    attempts: int = 0
    spec_hash: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class FailureMark(BaseModel):
    """Last real failure of a resource, used for the retry cooldown."""

    action: SyncAction
    spec_hash: str | None = None
    failed_at: datetime
    message: str = ""


class CycleRecord(BaseModel):
    """Summary of one completed (or aborted) reconciliation cycle."""

    cycle_id: str
    trigger: str
    revision: str | None = None
    applied: bool = True
    started_at: datetime
    finished_at: datetime | None = None
    health: HealthStatus = HealthStatus.UNKNOWN
    message: str = ""
    results: list[SyncResult] = Field(default_factory=list)

    @property
    def duration_seconds(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


def summarize_health(results: Iterable[SyncResult]) -> HealthStatus:
    """Failed anywhere → Degraded, else Progressing anywhere → Progressing."""
    statuses = {r.status for r in results}
    if ResultStatus.FAILED in statuses:
        return HealthStatus.DEGRADED
    if ResultStatus.PROGRESSING in statuses:
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


class ApplicationSyncStatus(BaseModel):
    """Everything the controller remembers about an application between cycles."""

    application: str
    environment: str = "default"
    auto_sync: bool = True
    phase: LifecyclePhase = LifecyclePhase.IDLE
    health: HealthStatus = HealthStatus.UNKNOWN
    sync_status: SyncStatusCode = SyncStatusCode.UNKNOWN
    revision: str | None = None
    synced_revision: str | None = None
    healthy_revision: str | None = None
    resources: dict[str, SyncResult] = Field(default_factory=dict)
    tracked: list[str] = Field(default_factory=list)
    failures: dict[str, FailureMark] = Field(default_factory=dict)
    history: list[CycleRecord] = Field(default_factory=list)
    consecutive_errors: int = 0
    last_error: str | None = None

    @property
    def last_cycle(self) -> CycleRecord | None:
        return self.history[-1] if self.history else None

    def tracked_keys(self) -> set[ResourceKey]:
        return {ResourceKey.parse(k) for k in self.tracked}

    def set_tracked(self, keys: Iterable[ResourceKey]) -> None:
        self.tracked = sorted(str(k) for k in keys)

    def record_cycle(self, record: CycleRecord, max_history: int = 20) -> None:
        """Append a cycle to the history and update the headline health."""
        self.history.append(record)
        if len(self.history) > max_history:
            del self.history[: len(self.history) - max_history]
        self.health = record.health
        if record.health is HealthStatus.ERROR:
            self.consecutive_errors += 1
            self.last_error = record.message
        else:
            self.consecutive_errors = 0
            self.last_error = None

    def mark_failure(self, result: SyncResult) -> None:
        self.failures[result.resource] = FailureMark(
            action=result.action,
            spec_hash=result.spec_hash,
            failed_at=result.timestamp,
            message=result.message,
        )

    def clear_failure(self, resource: str) -> None:
        self.failures.pop(resource, None)

    def in_cooldown(
        self,
        resource: str,
        action: SyncAction,
        current_hash: str | None,
        now: datetime,
        window_seconds: float,
    ) -> FailureMark | None:
        """Return the failure mark if the same change failed within the window."""
        mark = self.failures.get(resource)
        if mark is None or window_seconds <= 0:
            return None
        if mark.action is not action or mark.spec_hash != current_hash:
            return None
        if (now - mark.failed_at).total_seconds() >= window_seconds:
            return None
        return mark


class StatusSnapshot(BaseModel):
    """On-disk form of every application's sync status."""

    applications: dict[str, ApplicationSyncStatus] = Field(default_factory=dict)

    @classmethod
    def load(cls, path: Path) -> StatusSnapshot:
        if not path.exists():
            return cls()
        return cls.model_validate_json(path.read_text())

    def save(self, path: Path) -> None:
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(self.model_dump_json(indent=2))
        tmp.replace(path)

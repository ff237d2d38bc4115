# ABOUTME: Diff engine comparing desired manifests with live cluster objects
# ABOUTME: Emits ordered Create/Update/Delete/NoOp operations with minimal merge patches

"""
Diff engine.

=============================================================================
ONE-WAY COMPARISON
=============================================================================

Only fields that appear in the manifest are compared. The API server enriches
every object after apply (status, uid, timestamps, defaulted fields, cluster
IPs, node ports, our own ownership labels); none of those appear in git, so
none of them can cause an Update. Without this rule the controller would
"fix" server-populated fields on every cycle forever.

    desired: {"spec": {"replicas": 3}}
    live:    {"spec": {"replicas": 2, "revisionHistoryLimit": 10}, "status": {...}}
    patch:   {"spec": {"replicas": 3}}

Dicts are compared key by key, recursively. Lists are compared element-wise
when their lengths match (so a container list can carry defaulted fields);
if any element differs, or the lengths differ, the whole desired list is the
patch value, because a merge patch replaces lists wholesale.

=============================================================================
OWNERSHIP
=============================================================================

A live object missing from git is deleted only when its tracking annotation
says this application created it. Everything else in the namespace is
invisible to the controller.
"""

from __future__ import annotations

import base64
import copy
from typing import TYPE_CHECKING, Any

import structlog

from gitops_reconciler.models import (
    LiveResource,
    ResourceDescriptor,
    SyncAction,
    SyncOperation,
)

if TYPE_CHECKING:
    from gitops_reconciler.models import DesiredState, LiveState

logger = structlog.get_logger(__name__)


class _NoDiff:
    def __repr__(self) -> str:
        return "NO_DIFF"


NO_DIFF = _NoDiff()
_MISSING = object()


def _is_empty(value: Any) -> bool:
    return value is None or value is _MISSING or value == {} or value == []


def _scalar_equal(desired: Any, live: Any) -> bool:
    if isinstance(desired, bool) or isinstance(live, bool):
        return type(desired) is type(live) and desired == live
    return desired == live


def compute_patch(desired: Any, live: Any) -> Any:
    """
    Minimal merge patch turning ``live`` into something that contains ``desired``.

    Returns NO_DIFF when every field of ``desired`` already matches.
    """
    if _is_empty(desired) and _is_empty(live):
        return NO_DIFF

    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return copy.deepcopy(desired)
        patch = {}
        for key, value in desired.items():
            sub = compute_patch(value, live.get(key, _MISSING))
            if sub is not NO_DIFF:
                patch[key] = sub
        return patch if patch else NO_DIFF

    if isinstance(desired, list):
        if not isinstance(live, list) or len(live) != len(desired):
            return copy.deepcopy(desired)
        for d_item, l_item in zip(desired, live, strict=True):
            if compute_patch(d_item, l_item) is not NO_DIFF:
                return copy.deepcopy(desired)
        return NO_DIFF

    if _scalar_equal(desired, live):
        return NO_DIFF
    return desired


def comparable_manifest(descriptor: ResourceDescriptor) -> dict[str, Any]:
    """
    The manifest in the shape the API server stores it.

    Secrets are the one write-only case: ``stringData`` is folded into
    base64 ``data`` by the server and never read back.
    """
    manifest = descriptor.manifest
    if descriptor.kind != "Secret" or not manifest.get("stringData"):
        return manifest

    manifest = copy.deepcopy(manifest)
    data = manifest.setdefault("data", {}) or {}
    for key, value in manifest.pop("stringData").items():
        data[key] = base64.b64encode(str(value).encode()).decode()
    manifest["data"] = data
    return manifest


class DiffEngine:
    """Classifies every identity in desired ∪ live into one SyncOperation."""

    def __init__(self, application: str) -> None:
        self._application = application

    def diff(self, desired: DesiredState, live: LiveState) -> list[SyncOperation]:
        """
        Compute the operations for one cycle.

        Order: Create/Update/NoOp in manifest order, then Delete sorted by key.
        NoOp operations are included so callers can report per-resource state.
        """
        operations: list[SyncOperation] = []

        for key, descriptor in desired.resources.items():
            current = live.get(key)
            if not isinstance(current, LiveResource):
                operations.append(SyncOperation(SyncAction.CREATE, key, desired=descriptor))
                continue

            patch = compute_patch(comparable_manifest(descriptor), current.obj)
            if patch is NO_DIFF:
                operations.append(
                    SyncOperation(SyncAction.NOOP, key, desired=descriptor, live=current)
                )
            else:
                operations.append(
                    SyncOperation(
                        SyncAction.UPDATE, key, patch=patch, desired=descriptor, live=current
                    )
                )

        protected = desired.protected_keys
        for resource in sorted(live.present(), key=lambda r: r.key):
            if resource.key in desired or resource.key in protected:
                continue
            if not resource.owned_by(self._application):
                logger.debug(
                    "Ignoring unowned resource",
                    application=self._application,
                    resource=str(resource.key),
                )
                continue
            operations.append(SyncOperation(SyncAction.DELETE, resource.key, live=resource))

        return operations


def pending(operations: list[SyncOperation]) -> list[SyncOperation]:
    """Operations that would change the cluster."""
    return [op for op in operations if op.pending]

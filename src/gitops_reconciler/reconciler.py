# ABOUTME: Reconciler applying sync operations to the cluster one at a time
# ABOUTME: Handles per-operation retries, ownership markers, convergence and failure cooldown

"""
Reconciler: executes the operations produced by the diff engine.

=============================================================================
EXECUTION ORDER
=============================================================================

Operations run strictly one after another. Every Create/Update (and NoOp
readiness check) runs before any Delete, so replacement objects exist before
the objects they replace are pruned.

Between two operations the cycle passes a checkpoint: a cancelled cycle or
one past its deadline stops there. An operation that already started is
never interrupted, so it keeps its full retry budget.

=============================================================================
PER-OPERATION OUTCOME
=============================================================================

    transient error (timeout, 409, 429, 5xx)  -> retried with backoff,
                                                 Failed once the budget is spent
    permanent rejection (400, 403, 422, ...)  -> Failed, never retried
    applied, converged                        -> Succeeded
    applied, not converged within the wait    -> Progressing
    failed recently with the same manifest    -> Failed, not attempted again
                                                 until the cooldown passes

A failed resource never stops the others. Only ClusterUnreachable that
outlives the retry budget escapes apply() and aborts the cycle.
"""

from __future__ import annotations

import asyncio
import copy
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gitops_reconciler.errors import (
    ApplyRejected,
    ApplyTransientError,
    ClusterUnreachable,
    ConvergenceTimeout,
    CycleCancelled,
    CycleTimeout,
)
from gitops_reconciler.models import (
    ResultStatus,
    SyncAction,
    SyncResult,
    ownership_markers,
    utcnow,
)
from gitops_reconciler.utils.client import KubernetesError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from gitops_reconciler.config import ApplicationConfig
    from gitops_reconciler.models import ApplicationSyncStatus, SyncOperation
    from gitops_reconciler.utils.client import KubernetesClient
    from gitops_reconciler.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

# Kinds whose readiness is read from replica counts in .status.
REPLICATED_KINDS = frozenset({"Deployment", "StatefulSet", "ReplicaSet"})


# =============================================================================
# CYCLE CONTEXT
# =============================================================================


@dataclass
class CycleContext:
    """Deadline and cancellation flag shared by everything one cycle does."""

    cycle_id: str
    deadline: float | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @classmethod
    def start(cls, cycle_id: str, timeout: float | None) -> CycleContext:
        deadline = time.monotonic() + timeout if timeout else None
        return cls(cycle_id=cycle_id, deadline=deadline)

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None without a deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def cancel(self) -> None:
        self.cancel_event.set()

    def checkpoint(self) -> None:
        """
        Raises:
            CycleCancelled: If cancel() was called.
            CycleTimeout: If the deadline has passed.
        """
        if self.cancel_event.is_set():
            raise CycleCancelled(f"Cycle {self.cycle_id} cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise CycleTimeout(f"Cycle {self.cycle_id} exceeded its deadline")


# =============================================================================
# READINESS
# =============================================================================


def resource_ready(kind: str, obj: dict[str, Any]) -> tuple[bool, str]:
    """
    Whether a live object has converged, plus a short reason when it has not.

    Workloads are ready when their controller has observed the latest
    generation and enough replicas are ready. Every other kind is ready as
    soon as it exists.
    """
    metadata = obj.get("metadata") or {}
    status = obj.get("status") or {}

    if kind in REPLICATED_KINDS or kind == "DaemonSet":
        generation = metadata.get("generation")
        observed = status.get("observedGeneration")
        if generation is not None and (observed is None or observed < generation):
            return False, f"generation {generation} not yet observed"

    if kind in REPLICATED_KINDS:
        wanted = (obj.get("spec") or {}).get("replicas", 1)
        ready = status.get("readyReplicas") or 0
        if ready < wanted:
            return False, f"{ready}/{wanted} replicas ready"
        if kind == "Deployment":
            updated = status.get("updatedReplicas") or 0
            if updated < wanted:
                return False, f"{updated}/{wanted} replicas updated"
        return True, ""

    if kind == "DaemonSet":
        wanted = status.get("desiredNumberScheduled") or 0
        ready = status.get("numberReady") or 0
        if ready < wanted:
            return False, f"{ready}/{wanted} pods ready"
        return True, ""

    return True, ""


def _merge_markers(manifest: dict[str, Any], application: str, op: SyncOperation) -> None:
    metadata = manifest.setdefault("metadata", {})
    for section, values in ownership_markers(application, op.key).items():
        metadata[section] = {**(metadata.get(section) or {}), **values}


# =============================================================================
# RECONCILER
# =============================================================================


class Reconciler:
    """Applies one application's operations against the cluster."""

    def __init__(
        self,
        client: KubernetesClient,
        application: ApplicationConfig,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._client = client
        self._app = application
        self._audit = audit_logger
        self._log = logger.bind(application=application.name)

    async def apply(
        self,
        operations: Iterable[SyncOperation],
        status: ApplicationSyncStatus,
        context: CycleContext,
        allow_prune: bool = True,
        prune_block_reason: str = "",
    ) -> list[SyncResult]:
        """
        Apply operations in order and return one result per operation.

        Args:
            operations: Output of DiffEngine.diff().
            status: Status of the application, consulted for the failure cooldown.
            context: Cycle context; checked before every operation.
            allow_prune: When False, Delete operations are reported Skipped.
            prune_block_reason: Message attached to skipped deletes.

        Raises:
            CycleCancelled, CycleTimeout: At a checkpoint.
            ClusterUnreachable: When the cluster stays unreachable for a whole
                operation's retry budget.
        """
        operations = list(operations)
        ordered = [op for op in operations if op.action is not SyncAction.DELETE] + [
            op for op in operations if op.action is SyncAction.DELETE
        ]

        results = []
        for op in ordered:
            context.checkpoint()
            result = await self._reconcile_one(op, status, context, allow_prune, prune_block_reason)
            results.append(result)
        return results

    def preview(self, operations: Iterable[SyncOperation], reason: str) -> list[SyncResult]:
        """
        Results for a refresh-only cycle: nothing is changed.

        In-sync resources get their readiness reported, pending ones are Skipped.
        """
        results = []
        for op in operations:
            if op.action is SyncAction.NOOP:
                results.append(self._noop_result(op))
            else:
                results.append(
                    SyncResult(
                        resource=str(op.key),
                        action=op.action,
                        status=ResultStatus.SKIPPED,
                        message=reason,
                        spec_hash=op.desired.spec_hash if op.desired else None,
                    )
                )
        return results

    # -------------------------------------------------------------------------
    # ONE OPERATION
    # -------------------------------------------------------------------------

    def _noop_result(self, op: SyncOperation) -> SyncResult:
        ready, detail = resource_ready(op.key.kind, op.live.obj if op.live else {})
        return SyncResult(
            resource=str(op.key),
            action=op.action,
            status=ResultStatus.SUCCEEDED if ready else ResultStatus.PROGRESSING,
            message="In sync" if ready else detail,
            spec_hash=op.desired.spec_hash if op.desired else None,
        )

    async def _reconcile_one(
        self,
        op: SyncOperation,
        status: ApplicationSyncStatus,
        context: CycleContext,
        allow_prune: bool,
        prune_block_reason: str,
    ) -> SyncResult:
        resource = str(op.key)
        current_hash = op.desired.spec_hash if op.desired else None

        if op.action is SyncAction.NOOP:
            return self._noop_result(op)

        if op.action is SyncAction.DELETE and not allow_prune:
            return SyncResult(
                resource=resource,
                action=op.action,
                status=ResultStatus.SKIPPED,
                message=prune_block_reason or "Pruning disabled",
            )

        mark = status.in_cooldown(
            resource, op.action, current_hash, utcnow(), self._app.failure_cooldown_seconds
        )
        if mark is not None:
            age = (utcnow() - mark.failed_at).total_seconds()
            self._log.info("Skipping resource in failure cooldown", resource=resource, age=age)
            return SyncResult(
                resource=resource,
                action=op.action,
                status=ResultStatus.FAILED,
                message=f"Failed {age:.0f}s ago, not retried until cooldown ends: {mark.message}",
                spec_hash=current_hash,
            )

        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((ApplyTransientError, ClusterUnreachable)),
                stop=stop_after_attempt(self._app.retry_limit),
                wait=wait_exponential(
                    multiplier=self._app.retry_backoff_seconds,
                    max=self._app.retry_backoff_max_seconds,
                ),
                before_sleep=self._log_retry(op),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    await self._execute(op)
        except (ApplyRejected, ApplyTransientError) as e:
            result = SyncResult(
                resource=resource,
                action=op.action,
                status=ResultStatus.FAILED,
                message=str(e),
                attempts=attempts,
                spec_hash=current_hash,
            )
            self._record(op, result)
            return result

        outcome, message = await self._await_convergence(op, context)
        result = SyncResult(
            resource=resource,
            action=op.action,
            status=outcome,
            message=message,
            attempts=attempts,
            spec_hash=current_hash,
        )
        self._record(op, result)
        return result

    def _log_retry(self, op: SyncOperation) -> Any:
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            self._log.warning(
                "Retrying operation",
                resource=str(op.key),
                action=op.action.value,
                attempt=retry_state.attempt_number,
                error=str(error),
            )

        return before_sleep

    async def _execute(self, op: SyncOperation) -> None:
        """
        Issue the API call for one operation.

        Raises:
            ApplyTransientError: For retryable API answers.
            ApplyRejected: For every other API error, and for requests that
                could not be built or sent.
            ClusterUnreachable: Passed through from the client.
        """
        key = op.key
        try:
            if op.action is SyncAction.CREATE:
                body = copy.deepcopy(op.desired.manifest)
                _merge_markers(body, self._app.name, op)
                await self._client.create(key.kind, key.namespace, body)
            elif op.action is SyncAction.UPDATE:
                patch = copy.deepcopy(op.patch or {})
                # Objects that predate the controller are adopted on first update.
                if op.live is not None and not op.live.owned_by(self._app.name):
                    _merge_markers(patch, self._app.name, op)
                await self._client.patch(key.kind, key.namespace, key.name, patch)
            elif op.action is SyncAction.DELETE:
                await self._client.delete(key.kind, key.namespace, key.name)
        except KubernetesError as e:
            if e.transient and e.reason != "AlreadyExists":
                raise ApplyTransientError(key, e.code, e.message) from e
            raise ApplyRejected(key, e.code, e.message) from e
        except ClusterUnreachable:
            raise
        except Exception as e:
            # The request never reached the API server, e.g. a body that is not JSON.
            raise ApplyRejected(key, 0, f"{type(e).__name__}: {e}") from e

    async def _await_convergence(
        self, op: SyncOperation, context: CycleContext
    ) -> tuple[ResultStatus, str]:
        """
        Re-read the resource until it has converged or the wait runs out.

        The wait is bounded by convergence_timeout_seconds and by what is left
        of the cycle. Running out is not an error: the resource is reported
        Progressing and looked at again next cycle.
        """
        budget = self._app.convergence_timeout_seconds
        remaining = context.remaining()
        if remaining is not None:
            budget = min(budget, remaining)

        started = time.monotonic()
        deadline = started + budget
        key = op.key
        while True:
            try:
                obj = await self._client.get(key.kind, key.namespace, key.name)
            except KubernetesError as e:
                obj, detail = None, str(e)
            else:
                detail = ""

            if op.action is SyncAction.DELETE:
                if obj is None and not detail:
                    return ResultStatus.SUCCEEDED, "Deleted"
                detail = detail or "deletion in progress"
            elif obj is not None:
                ready, detail = resource_ready(key.kind, obj)
                if ready:
                    return ResultStatus.SUCCEEDED, f"{op.action.value}d and ready"
            else:
                detail = detail or "not found after apply"

            now = time.monotonic()
            if now >= deadline:
                timeout = ConvergenceTimeout(key, now - started)
                self._log.info("Resource not converged", resource=str(key), detail=detail)
                return ResultStatus.PROGRESSING, f"{timeout}: {detail}"
            await asyncio.sleep(min(self._app.convergence_poll_seconds, deadline - now))

    def _record(self, op: SyncOperation, result: SyncResult) -> None:
        self._log.info(
            "Applied" if result.status is not ResultStatus.FAILED else "Apply failed",
            resource=result.resource,
            action=op.action.value,
            status=result.status.value,
            attempts=result.attempts,
            message=result.message,
        )
        if self._audit:
            self._audit.log_write(
                op.action.value.lower(),
                result.resource,
                result.status.value.lower(),
                {
                    "application": self._app.name,
                    "attempts": result.attempts,
                    "message": result.message,
                },
            )

# ABOUTME: Sync scheduler running one single-flight reconcile loop per application
# ABOUTME: Triggers cycles on revision change, drift, polling and notifications; persists status

"""
Sync scheduler.

=============================================================================
ONE LOOP PER APPLICATION
=============================================================================

Every application gets an ApplicationController running as its own asyncio
task. The loops share nothing but the cluster client's connection pool, so a
slow or failing application never holds up the others.

A cycle is:

    load manifests at a revision  ->  parse (DesiredState)
    read live objects             ->  LiveState
    diff                          ->  [SyncOperation, ...]
    apply (auto-sync) or preview  ->  [SyncResult, ...]  ->  ApplicationSyncStatus

=============================================================================
TRIGGERS
=============================================================================

    revision   the target revision now points at a new commit
    drift      live objects no longer match the last applied DesiredState
    poll       fallback interval, covers anything the other checks missed
    notify     refresh_application / set_auto_sync from the status surface
    manual     sync_application / promote_application (applies even when
               auto-sync is off)

=============================================================================
SINGLE FLIGHT
=============================================================================

At most one cycle per application runs at any time. A trigger that arrives
while a cycle is running is queued; several queued triggers are coalesced
into one run that starts as soon as the current cycle ends.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from gitops_reconciler.diff import DiffEngine, pending
from gitops_reconciler.errors import ClusterUnreachable, ReconcileError
from gitops_reconciler.manifests import GitManifestSource, parse_manifests
from gitops_reconciler.models import (
    ApplicationSyncStatus,
    CycleRecord,
    HealthStatus,
    LifecyclePhase,
    ResultStatus,
    StatusSnapshot,
    SyncAction,
    SyncResult,
    SyncStatusCode,
    summarize_health,
    utcnow,
)
from gitops_reconciler.reconciler import CycleContext, Reconciler
from gitops_reconciler.state import ClusterStateReader
from gitops_reconciler.utils.logging import new_correlation_id, set_correlation_id

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from gitops_reconciler.config import ApplicationConfig, ControllerSettings
    from gitops_reconciler.models import DesiredState, LiveState, ResourceKey, SyncOperation
    from gitops_reconciler.utils.client import KubernetesClient
    from gitops_reconciler.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

# Results that mean "the cluster holds what git says".
IN_SYNC_RESULTS = frozenset({ResultStatus.SUCCEEDED, ResultStatus.PROGRESSING})


class UnknownApplication(ValueError):
    """No application with that name is configured."""


@dataclass
class CycleRequest:
    """What a trigger asks for. Queued requests are merged into one."""

    trigger: str
    revision: str | None = None
    force_apply: bool = False
    prune: bool | None = None

    def merge(self, newer: CycleRequest) -> CycleRequest:
        """
        Fold a later trigger into this queued request.

        A manual sync or promotion decides the revision, and None then means
        the current target. An automatic trigger keeps the queued revision.
        """
        return CycleRequest(
            trigger=newer.trigger,
            revision=newer.revision if newer.force_apply else self.revision,
            force_apply=self.force_apply or newer.force_apply,
            prune=newer.prune if newer.prune is not None else self.prune,
        )


# =============================================================================
# APPLICATION CONTROLLER
# =============================================================================


class ApplicationController:
    """Reconcile loop and status for one application."""

    def __init__(
        self,
        app: ApplicationConfig,
        client: KubernetesClient,
        source: GitManifestSource,
        status: ApplicationSyncStatus | None = None,
        audit_logger: AuditLogger | None = None,
        read_concurrency: int = 8,
        max_history: int = 20,
        backoff_seconds: float = 5.0,
        backoff_max_seconds: float = 300.0,
        on_cycle: Callable[[ApplicationController], None] | None = None,
    ) -> None:
        self.app = app
        self.source = source
        self.status = status or ApplicationSyncStatus(application=app.name)
        self.status.environment = app.environment
        self.status.phase = LifecyclePhase.IDLE

        self._reader = ClusterStateReader(client, app.name, concurrency=read_concurrency)
        self._diff = DiffEngine(app.name)
        self._reconciler = Reconciler(client, app, audit_logger=audit_logger)
        self._max_history = max_history
        self._on_cycle = on_cycle

        self._lock = asyncio.Lock()
        self._queued: CycleRequest | None = None
        self._context: CycleContext | None = None
        self._last_applied: DesiredState | None = None
        self._observed_revision: str | None = None

        self._backoff_base = backoff_seconds
        self._backoff_max = backoff_max_seconds
        self._backoff = 0.0
        self._retry_at = 0.0

        self._notify = asyncio.Event()
        self._notify_reason = "notify"
        self._log = logger.bind(application=app.name)

    @property
    def name(self) -> str:
        return self.app.name

    @property
    def auto_sync(self) -> bool:
        return self.status.auto_sync

    @property
    def syncing(self) -> bool:
        return self._lock.locked()

    @property
    def backoff(self) -> float:
        """Current delay after ClusterUnreachable (0 when healthy)."""
        return self._backoff

    # -------------------------------------------------------------------------
    # TRIGGERS
    # -------------------------------------------------------------------------

    async def trigger(
        self,
        trigger: str,
        revision: str | None = None,
        force_apply: bool = False,
        prune: bool | None = None,
    ) -> CycleRecord | None:
        """
        Run a cycle now, or queue it if one is already running.

        Returns:
            The record of the cycle run for this trigger, or None if it was queued.
        """
        request = CycleRequest(trigger, revision, force_apply, prune)
        if self._lock.locked():
            self._queued = self._queued.merge(request) if self._queued else request
            self._log.info("Cycle in progress, trigger queued", trigger=trigger)
            return None

        async with self._lock:
            record = await self._run_cycle(request)
            while self._queued is not None:
                queued, self._queued = self._queued, None
                await self._run_cycle(queued)
        return record

    def notify(self, reason: str = "notify") -> None:
        """Wake the loop for an immediate cycle."""
        self._notify_reason = reason
        self._notify.set()

    def cancel(self) -> None:
        """Stop the running cycle at its next checkpoint."""
        if self._context is not None:
            self._context.cancel()

    def set_auto_sync(self, enabled: bool) -> None:
        self.status.auto_sync = enabled
        self._log.info("Auto-sync toggled", auto_sync=enabled)
        if enabled:
            self.notify("auto-sync-enabled")

    # -------------------------------------------------------------------------
    # CYCLE
    # -------------------------------------------------------------------------

    async def _run_cycle(self, request: CycleRequest) -> CycleRecord:
        cycle_id = new_correlation_id()
        set_correlation_id(cycle_id)
        context = CycleContext.start(cycle_id, self.app.cycle_timeout_seconds)
        self._context = context

        apply = self.status.auto_sync or request.force_apply
        record = CycleRecord(
            cycle_id=cycle_id,
            trigger=request.trigger,
            applied=apply,
            started_at=utcnow(),
        )
        self.status.phase = LifecyclePhase.SYNCING
        self._log.info("Cycle started", trigger=request.trigger, apply=apply)

        try:
            revision, files = await self.source.load(request.revision)
            record.revision = revision
            if request.revision is None:
                self._observed_revision = revision
            context.checkpoint()

            desired = parse_manifests(files, revision, self.app.namespace)
            live = await self._reader.read(self._keys_to_read(desired))
            context.checkpoint()

            operations = self._diff.diff(desired, live)
            if apply:
                allow_prune, reason = self._prune_policy(desired, request)
                results = await self._reconciler.apply(
                    operations, self.status, context, allow_prune, reason
                )
            else:
                results = self._reconciler.preview(
                    operations, "Auto-sync disabled, waiting for a manual sync"
                )
            results = self._malformed_results(desired, live) + results
        except Exception as e:
            record.health = HealthStatus.ERROR
            if isinstance(e, ReconcileError):
                record.message = str(e)
            else:
                record.message = f"Unexpected error: {type(e).__name__}: {e}"
            record.finished_at = utcnow()
            self._finish_error(record, e)
            return record
        finally:
            self.status.phase = LifecyclePhase.IDLE
            self._context = None

        record.results = results
        record.health = summarize_health(results)
        record.finished_at = utcnow()
        self._finish(record, desired, operations, apply)
        return record

    def _keys_to_read(self, desired: DesiredState) -> list[ResourceKey]:
        """Desired, protected and previously tracked identities, each once."""
        return [
            *desired.keys(),
            *sorted(desired.protected_keys),
            *sorted(self.status.tracked_keys()),
        ]

    def _prune_policy(self, desired: DesiredState, request: CycleRequest) -> tuple[bool, str]:
        prune = self.app.prune if request.prune is None else request.prune
        if not prune:
            return False, "Pruning disabled"
        if not desired.prune_safe:
            return False, "Pruning suspended: a malformed manifest hides its identity"
        return True, ""

    @staticmethod
    def _malformed_results(desired: DesiredState, live: LiveState) -> list[SyncResult]:
        results = []
        for error in desired.malformed:
            exists = error.key is not None and bool(live.get(error.key))
            results.append(
                SyncResult(
                    resource=str(error.key) if error.key else error.source,
                    action=SyncAction.UPDATE if exists else SyncAction.CREATE,
                    status=ResultStatus.FAILED,
                    message=str(error),
                )
            )
        return results

    def _finish(
        self,
        record: CycleRecord,
        desired: DesiredState,
        operations: list[SyncOperation],
        applied: bool,
    ) -> None:
        status = self.status
        outcomes = {r.resource: r for r in record.results}

        # Results of this cycle replace the previous ones wholesale.
        status.resources = outcomes
        for resource in list(status.failures):
            if resource not in outcomes:
                status.clear_failure(resource)
        for result in record.results:
            if result.status is ResultStatus.FAILED and result.attempts > 0:
                status.mark_failure(result)
            elif result.status in IN_SYNC_RESULTS:
                status.clear_failure(result.resource)

        # Keep reading every identity that may still exist and be ours.
        tracked = set(desired.keys()) | desired.protected_keys
        for op in operations:
            if op.action is SyncAction.DELETE:
                result = outcomes.get(str(op.key))
                if result is None or result.status is not ResultStatus.SUCCEEDED:
                    tracked.add(op.key)
        status.set_tracked(tracked)

        synced = all(r.status in IN_SYNC_RESULTS for r in record.results)
        status.sync_status = SyncStatusCode.SYNCED if synced else SyncStatusCode.OUT_OF_SYNC
        status.revision = record.revision
        if applied and synced:
            status.synced_revision = record.revision
            self._last_applied = desired
            if record.health is HealthStatus.HEALTHY:
                status.healthy_revision = record.revision

        self._backoff = 0.0
        self._retry_at = 0.0
        status.record_cycle(record, self._max_history)
        self._log.info(
            "Cycle finished",
            revision=(record.revision or "")[:12],
            health=record.health.value,
            sync_status=status.sync_status.value,
            changed=sum(1 for op in operations if op.pending),
            duration=record.duration_seconds,
        )
        self._persist()

    def _finish_error(self, record: CycleRecord, error: Exception) -> None:
        # Per-resource results of the last completed cycle stay as they were.
        self.status.record_cycle(record, self._max_history)
        if isinstance(error, ClusterUnreachable):
            self._backoff = min(
                self._backoff * 2 if self._backoff else self._backoff_base, self._backoff_max
            )
            self._retry_at = asyncio.get_running_loop().time() + self._backoff
        if isinstance(error, ReconcileError):
            self._log.error(
                "Cycle failed",
                error=str(error),
                error_type=type(error).__name__,
                backoff=self._backoff,
            )
        else:
            self._log.exception("Cycle failed with an unexpected error")
        self._persist()

    def _persist(self) -> None:
        if self._on_cycle is not None:
            self._on_cycle(self)

    # -------------------------------------------------------------------------
    # CHECKS
    # -------------------------------------------------------------------------

    async def revision_changed(self) -> bool:
        """True if the target revision resolves to a commit not yet reconciled."""
        revision = await self.source.current_revision()
        return revision != self._observed_revision

    async def detect_drift(self) -> bool:
        """
        Compare the cluster with the last DesiredState that was fully applied.

        Deletes only count as drift when pruning is enabled, otherwise an
        unpruned leftover would retrigger forever.
        """
        desired = self._last_applied
        if desired is None:
            return False
        live = await self._reader.read([*desired.keys(), *sorted(self.status.tracked_keys())])
        drifted = [
            op
            for op in pending(self._diff.diff(desired, live))
            if op.action is not SyncAction.DELETE or self.app.prune
        ]
        if drifted:
            self._log.info("Drift detected", resources=[str(op.key) for op in drifted])
        return bool(drifted)

    async def preview(
        self, revision: str | None = None
    ) -> tuple[DesiredState, list[SyncOperation]]:
        """Dry run: what a cycle at ``revision`` would do, without changing anything."""
        sha, files = await self.source.load(revision)
        desired = parse_manifests(files, sha, self.app.namespace)
        live = await self._reader.read(self._keys_to_read(desired))
        return desired, self._diff.diff(desired, live)

    # -------------------------------------------------------------------------
    # LOOP
    # -------------------------------------------------------------------------

    async def _sleep(self, stop: asyncio.Event, timeout: float, wake_on_notify: bool) -> None:
        waiters = [asyncio.ensure_future(stop.wait())]
        if wake_on_notify:
            waiters.append(asyncio.ensure_future(self._notify.wait()))
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _check(self, name: str, check: Callable[[], Awaitable[bool]]) -> bool:
        try:
            return await check()
        except ReconcileError as e:
            self._log.warning(f"{name.capitalize()} check failed", error=str(e))
            if isinstance(e, ClusterUnreachable):
                self._backoff = min(
                    self._backoff * 2 if self._backoff else self._backoff_base, self._backoff_max
                )
                self._retry_at = asyncio.get_running_loop().time() + self._backoff
            return False

    async def _trigger_safely(self, trigger: str) -> None:
        try:
            await self.trigger(trigger)
        except Exception:
            self._log.exception("Unexpected error in reconcile loop", trigger=trigger)

    async def run(self, stop: asyncio.Event) -> None:
        """Reconcile until ``stop`` is set."""
        loop = asyncio.get_running_loop()
        self._log.info(
            "Application loop started",
            auto_sync=self.auto_sync,
            source=repr(self.source),
        )
        await self._trigger_safely("startup")

        now = loop.time()
        next_revision = now + self.app.revision_poll_seconds
        next_drift = now + self.app.drift_check_seconds
        next_poll = now + self.app.poll_interval_seconds

        while not stop.is_set():
            now = loop.time()
            in_backoff = now < self._retry_at
            due = now if self._notify.is_set() else min(next_revision, next_drift, next_poll)
            due = max(due, self._retry_at)
            if due > now:
                await self._sleep(stop, due - now, wake_on_notify=not in_backoff)
                continue

            trigger = None
            if self._notify.is_set():
                self._notify.clear()
                trigger = self._notify_reason
            elif now >= next_revision:
                next_revision = now + self.app.revision_poll_seconds
                if await self._check("revision", self.revision_changed):
                    trigger = "revision"
            elif now >= next_drift:
                next_drift = now + self.app.drift_check_seconds
                if self.auto_sync and await self._check("drift", self.detect_drift):
                    trigger = "drift"
            else:
                trigger = "poll"

            if trigger is None:
                continue
            await self._trigger_safely(trigger)
            now = loop.time()
            next_drift = now + self.app.drift_check_seconds
            next_poll = now + self.app.poll_interval_seconds

        self._log.info("Application loop stopped")


# =============================================================================
# SCHEDULER
# =============================================================================


class SyncScheduler:
    """
    Owns every ApplicationController and the persisted status snapshot.

    USAGE:
    ------
        async with KubernetesClient(settings.cluster.resolved()) as client:
            scheduler = SyncScheduler(settings, client)
            await scheduler.run(stop_event)
    """

    def __init__(
        self,
        settings: ControllerSettings,
        client: KubernetesClient,
        audit_logger: AuditLogger | None = None,
        sources: dict[str, GitManifestSource] | None = None,
    ) -> None:
        self._settings = settings
        self._status_file = settings.status_file
        snapshot = StatusSnapshot.load(self._status_file) if self._status_file else StatusSnapshot()

        self.controllers: dict[str, ApplicationController] = {}
        for app in settings.applications:
            status = snapshot.applications.get(app.name) or ApplicationSyncStatus(
                application=app.name
            )
            # Configuration decides the auto-sync mode at startup.
            status.auto_sync = app.auto_sync
            source = (sources or {}).get(app.name) or GitManifestSource(
                repo_path=app.repo_path,
                path=app.path,
                target_revision=app.target_revision,
                fetch=app.fetch,
            )
            self.controllers[app.name] = ApplicationController(
                app,
                client,
                source,
                status=status,
                audit_logger=audit_logger,
                read_concurrency=settings.read_concurrency,
                max_history=settings.max_history,
                backoff_seconds=settings.unreachable_backoff_seconds,
                backoff_max_seconds=settings.unreachable_backoff_max_seconds,
                on_cycle=lambda _controller: self.save(),
            )

    def get(self, name: str) -> ApplicationController:
        try:
            return self.controllers[name]
        except KeyError:
            raise UnknownApplication(f"Application '{name}' is not configured") from None

    def statuses(self) -> list[ApplicationSyncStatus]:
        return [c.status for c in self.controllers.values()]

    def save(self) -> None:
        """Write every application's status to the status file, if one is configured."""
        if self._status_file is None:
            return
        snapshot = StatusSnapshot(
            applications={c.name: c.status for c in self.controllers.values()}
        )
        try:
            snapshot.save(self._status_file)
        except OSError as e:
            logger.error("Failed to persist status", path=str(self._status_file), error=str(e))

    async def run(self, stop: asyncio.Event) -> None:
        """Run every application loop until ``stop`` is set."""
        tasks = [
            asyncio.create_task(controller.run(stop), name=f"reconcile-{name}")
            for name, controller in self.controllers.items()
        ]
        logger.info("Scheduler started", applications=list(self.controllers))
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self.save()

    # -------------------------------------------------------------------------
    # EXPLICIT OPERATIONS
    # -------------------------------------------------------------------------

    async def sync(
        self,
        name: str,
        revision: str | None = None,
        prune: bool | None = None,
    ) -> CycleRecord | None:
        """Manual sync: applies even when auto-sync is off."""
        return await self.get(name).trigger("manual", revision, force_apply=True, prune=prune)

    async def promote(
        self,
        target: str,
        source: str | None = None,
        prune: bool | None = None,
    ) -> CycleRecord | None:
        """
        Sync ``target`` at the last healthy revision of ``source``.

        ``source`` defaults to the target's ``promote_from`` application.

        Raises:
            UnknownApplication: If either application is not configured.
            ValueError: If there is no source or it has no healthy revision yet.
        """
        target_controller = self.get(target)
        source_name = source or target_controller.app.promote_from
        if source_name is None:
            raise ValueError(f"Application '{target}' has no promote_from source")
        if source_name == target:
            raise ValueError(f"Application '{target}' cannot be promoted from itself")

        revision = self.get(source_name).status.healthy_revision
        if revision is None:
            raise ValueError(f"Application '{source_name}' has no healthy synced revision yet")

        logger.info("Promoting", source=source_name, target=target, revision=revision[:12])
        return await target_controller.trigger(
            "promotion", revision, force_apply=True, prune=prune
        )

    def set_auto_sync(self, name: str, enabled: bool) -> ApplicationSyncStatus:
        controller = self.get(name)
        controller.set_auto_sync(enabled)
        self.save()
        return controller.status

    def cancel_cycles(self) -> None:
        """Stop every running cycle at its next checkpoint."""
        for controller in self.controllers.values():
            controller.cancel()

    def refresh(self, name: str) -> None:
        """Ask the application loop for an immediate cycle."""
        self.get(name).notify("refresh")

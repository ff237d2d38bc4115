# ABOUTME: FastMCP status surface and main entry point for the GitOps reconciler
# ABOUTME: Runs the reconcile loops and exposes status, history, diff and manual sync tools

"""GitOps reconciler - pull-based sync of git manifests to a Kubernetes cluster."""

from __future__ import annotations

import asyncio
import sys
from typing import TYPE_CHECKING, Any

import structlog
import yaml
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from gitops_reconciler.config import ControllerSettings, load_settings
from gitops_reconciler.errors import ReconcileError
from gitops_reconciler.models import HealthStatus, SyncAction, SyncStatusCode
from gitops_reconciler.scheduler import SyncScheduler
from gitops_reconciler.utils.client import KubernetesClient, KubernetesError
from gitops_reconciler.utils.logging import AuditLogger, configure_logging, set_correlation_id
from gitops_reconciler.utils.safety import ConfirmationRequired, SafetyGuard, mask_secret_values

if TYPE_CHECKING:
    from gitops_reconciler.models import ApplicationSyncStatus, CycleRecord

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized in serve)
_settings: ControllerSettings | None = None
_scheduler: SyncScheduler | None = None
_safety_guard: SafetyGuard | None = None
_audit_logger: AuditLogger | None = None

# Errors a tool reports back as text instead of raising.
TOOL_ERRORS = (ReconcileError, KubernetesError, ValueError)

mcp = FastMCP("gitops-reconciler")


def get_settings() -> ControllerSettings:
    """Get controller settings."""
    if not _settings:
        raise RuntimeError("Controller not initialized")
    return _settings


def get_scheduler() -> SyncScheduler:
    """Get the scheduler owning every application loop."""
    if not _scheduler:
        raise RuntimeError("Controller not initialized")
    return _scheduler


def get_safety_guard() -> SafetyGuard:
    """Get safety guard for permission checking."""
    if not _safety_guard:
        raise RuntimeError("Controller not initialized")
    return _safety_guard


def get_audit_logger() -> AuditLogger:
    """Get audit logger for recording operations."""
    if not _audit_logger:
        raise RuntimeError("Controller not initialized")
    return _audit_logger


def _marker(ok: bool) -> str:
    return "[OK]" if ok else "[!]"


def _short(revision: str | None) -> str:
    return revision[:12] if revision else "none"


def _format_record(record: CycleRecord) -> str:
    duration = record.duration_seconds
    took = f" in {duration:.1f}s" if duration is not None else ""
    mode = "" if record.applied else " (refresh only)"
    line = (
        f"[{record.cycle_id}] {record.started_at.isoformat(timespec='seconds')} "
        f"trigger={record.trigger} revision={_short(record.revision)} "
        f"health={record.health.value}{mode}{took}"
    )
    if record.message:
        line += f"\n    {record.message}"
    return line


def _check_sync_guard(
    operation: str,
    name: str,
    prune: bool,
    confirm: bool,
    confirm_name: str | None,
) -> str | None:
    """Run the write (or prune) checks for a manual sync; return a message if refused."""
    guard = get_safety_guard()
    if prune:
        blocked = guard.check_destructive_operation(
            f"{operation}_with_prune",
            name,
            confirmed=confirm,
            confirm_name=confirm_name,
            details={"preview": f"get_application_diff(name='{name}')"},
        )
        if blocked:
            reason = (
                "prune requires confirmation"
                if isinstance(blocked, ConfirmationRequired)
                else blocked.reason
            )
            get_audit_logger().log_blocked(operation, name, reason)
            return blocked.format_message()
        return None

    blocked = guard.check_write_operation(operation)
    if blocked:
        get_audit_logger().log_blocked(operation, name, blocked.reason)
        return blocked.format_message()
    return None


# =============================================================================
# READ OPERATIONS (Always Available)
# =============================================================================


class ListApplicationsParams(BaseModel):
    """Parameters for list_applications tool."""

    environment: str | None = Field(default=None, description="Filter by environment")
    health_status: str | None = Field(
        default=None,
        description="Filter by health (Healthy, Progressing, Degraded, Error, Unknown)",
    )
    sync_status: str | None = Field(
        default=None, description="Filter by sync status (Synced, OutOfSync, Unknown)"
    )


@mcp.tool()
async def list_applications(params: ListApplicationsParams, ctx: MCPContext) -> str:
    """
    List managed applications with their health and sync status.

    Use this for an overview, or filter to find degraded / out-of-sync applications.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("list_applications")
    if blocked:
        get_audit_logger().log_blocked("list_applications", "all", blocked.reason)
        return blocked.format_message()

    statuses = get_scheduler().statuses()
    if params.environment:
        statuses = [s for s in statuses if s.environment == params.environment]
    if params.health_status:
        statuses = [s for s in statuses if s.health.value == params.health_status]
    if params.sync_status:
        statuses = [s for s in statuses if s.sync_status.value == params.sync_status]

    get_audit_logger().log_read("list_applications", f"environment={params.environment}")

    if not statuses:
        return "No applications found matching the specified filters."

    lines = [f"Found {len(statuses)} application(s):", ""]
    for status in statuses:
        lines.append(
            f"- {status.application} [{status.environment}] "
            f"health={status.health.value} {_marker(status.health is HealthStatus.HEALTHY)} "
            f"sync={status.sync_status.value} "
            f"{_marker(status.sync_status is SyncStatusCode.SYNCED)} "
            f"phase={status.phase.value} auto-sync={'on' if status.auto_sync else 'off'} "
            f"revision={_short(status.synced_revision)}"
        )
    return "\n".join(lines)


class GetApplicationStatusParams(BaseModel):
    """Parameters for get_application_status tool."""

    name: str = Field(description="Application name")


def _format_status(status: ApplicationSyncStatus) -> str:
    lines = [
        f"Application: {status.application}",
        f"Environment: {status.environment}",
        f"Phase: {status.phase.value}",
        f"Health: {status.health.value} {_marker(status.health is HealthStatus.HEALTHY)}",
        f"Sync: {status.sync_status.value} {_marker(status.sync_status is SyncStatusCode.SYNCED)}",
        f"Auto-sync: {'on' if status.auto_sync else 'off'}",
        "",
        "Revisions:",
        f"  Latest seen: {_short(status.revision)}",
        f"  Synced: {_short(status.synced_revision)}",
        f"  Last healthy: {_short(status.healthy_revision)}",
    ]

    if status.last_error:
        lines.extend(
            ["", f"Last error ({status.consecutive_errors} in a row): {status.last_error}"]
        )

    if status.resources:
        lines.extend(["", f"Resources ({len(status.resources)}):"])
        for resource, result in sorted(status.resources.items()):
            line = f"  {result.status.value:<11} {result.action.value:<6} {resource}"
            if result.attempts > 1:
                line += f" (attempts={result.attempts})"
            if result.message and result.status.value != "Succeeded":
                line += f" - {result.message}"
            lines.append(line)
    return "\n".join(lines)


@mcp.tool()
async def get_application_status(params: GetApplicationStatusParams, ctx: MCPContext) -> str:
    """
    Get the status of one application as of its last completed cycle.

    Shows health, sync status, revisions and the outcome for every resource.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("get_application_status")
    if blocked:
        get_audit_logger().log_blocked("get_application_status", params.name, blocked.reason)
        return blocked.format_message()

    try:
        controller = get_scheduler().get(params.name)
    except TOOL_ERRORS as e:
        get_audit_logger().log_error("get_application_status", params.name, str(e))
        return str(e)

    get_audit_logger().log_read("get_application_status", params.name)
    return _format_status(controller.status)


class GetSyncHistoryParams(BaseModel):
    """Parameters for get_sync_history tool."""

    name: str = Field(description="Application name")
    limit: int = Field(default=10, description="Maximum number of cycles", ge=1, le=50)


@mcp.tool()
async def get_sync_history(params: GetSyncHistoryParams, ctx: MCPContext) -> str:
    """
    View recent reconciliation cycles, newest first.

    Each entry shows what triggered the cycle, the revision and the outcome.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("get_sync_history")
    if blocked:
        get_audit_logger().log_blocked("get_sync_history", params.name, blocked.reason)
        return blocked.format_message()

    try:
        history = get_scheduler().get(params.name).status.history
    except TOOL_ERRORS as e:
        get_audit_logger().log_error("get_sync_history", params.name, str(e))
        return str(e)

    get_audit_logger().log_read("get_sync_history", params.name)

    if not history:
        return f"No sync history for application '{params.name}'"

    entries = list(reversed(history))[: params.limit]
    lines = [f"Sync history for '{params.name}' (last {len(entries)} cycles):", ""]
    for i, record in enumerate(entries, 1):
        lines.append(f"{i}. {_format_record(record)}")
    return "\n".join(lines)


class GetApplicationDiffParams(BaseModel):
    """Parameters for get_application_diff tool."""

    name: str = Field(description="Application name")
    revision: str | None = Field(default=None, description="Revision to diff (default: target)")


@mcp.tool()
async def get_application_diff(params: GetApplicationDiffParams, ctx: MCPContext) -> str:
    """
    Preview what a sync would change (dry-run diff).

    Reads git and the cluster now and lists resources that would be created,
    updated (with the patch) or pruned. Nothing is applied.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("get_application_diff")
    if blocked:
        get_audit_logger().log_blocked("get_application_diff", params.name, blocked.reason)
        return blocked.format_message()

    await ctx.report_progress(0, 2, "Reading manifests and live state")

    try:
        controller = get_scheduler().get(params.name)
        desired, operations = await controller.preview(params.revision)
    except TOOL_ERRORS as e:
        get_audit_logger().log_error("get_application_diff", params.name, str(e))
        return str(e)

    get_audit_logger().log_read("get_application_diff", params.name)
    await ctx.report_progress(1, 2, "Formatting differences")

    mask = get_safety_guard().mask_secrets
    by_action: dict[SyncAction, list[Any]] = {action: [] for action in SyncAction}
    for op in operations:
        by_action[op.action].append(op)

    lines = [f"Diff for application '{params.name}' at {_short(desired.revision)}:", ""]

    if by_action[SyncAction.CREATE]:
        lines.append(f"Resources to CREATE ({len(by_action[SyncAction.CREATE])}):")
        lines.extend(f"  {op.describe()}" for op in by_action[SyncAction.CREATE])
        lines.append("")

    if by_action[SyncAction.UPDATE]:
        lines.append(f"Resources to UPDATE ({len(by_action[SyncAction.UPDATE])}):")
        for op in by_action[SyncAction.UPDATE]:
            patch = op.patch or {}
            if mask:
                patch = mask_secret_values(patch, kind=op.key.kind)
            rendered = yaml.safe_dump(patch, default_flow_style=True, sort_keys=True).strip()
            lines.append(f"  {op.describe()}")
            lines.append(f"      patch: {rendered}")
        lines.append("")

    if by_action[SyncAction.DELETE]:
        prune = "prune enabled" if controller.app.prune else "prune disabled, kept"
        lines.append(f"Resources to DELETE ({len(by_action[SyncAction.DELETE])}, {prune}):")
        lines.extend(f"  {op.describe()}" for op in by_action[SyncAction.DELETE])
        lines.append("")

    if desired.malformed:
        lines.append(f"Malformed manifests, skipped ({len(desired.malformed)}):")
        lines.extend(f"  ! {error}" for error in desired.malformed)
        lines.append("")

    lines.append(f"Resources in sync: {len(by_action[SyncAction.NOOP])}")
    if not any(op.pending for op in operations):
        lines.append("\nApplication is fully synced. No changes needed.")

    await ctx.report_progress(2, 2, "Complete")
    return "\n".join(lines)


# =============================================================================
# WRITE OPERATIONS (Require GITOPS_MCP_READ_ONLY=false)
# =============================================================================


class SyncApplicationParams(BaseModel):
    """Parameters for sync_application tool."""

    name: str = Field(description="Application name")
    revision: str | None = Field(default=None, description="Git revision to sync to")
    prune: bool = Field(default=False, description="Delete owned resources not in git")
    confirm: bool = Field(default=False, description="Confirm a pruning sync")
    confirm_name: str | None = Field(
        default=None, description="Application name, repeated to confirm pruning"
    )


@mcp.tool()
async def sync_application(params: SyncApplicationParams, ctx: MCPContext) -> str:
    """
    Run a reconciliation cycle now and apply the result.

    Applies even when auto-sync is off for the application. Pruning is off
    unless prune=true is given together with confirm=true and confirm_name.
    Use get_application_diff first to preview the changes.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    refused = _check_sync_guard(
        "sync_application", params.name, params.prune, params.confirm, params.confirm_name
    )
    if refused:
        return refused

    await ctx.report_progress(0, 1, f"Syncing {params.name}")
    try:
        record = await get_scheduler().sync(params.name, params.revision, prune=params.prune)
    except TOOL_ERRORS as e:
        get_audit_logger().log_error("sync_application", params.name, str(e))
        return str(e)
    await ctx.report_progress(1, 1, "Sync finished")

    if record is None:
        get_audit_logger().log_write("sync_application", params.name, "queued")
        return (
            f"A cycle is already running for '{params.name}'.\n"
            f"The sync was queued and runs as soon as it finishes.\n\n"
            f"Use get_application_status to monitor progress."
        )

    get_audit_logger().log_write(
        "sync_application",
        params.name,
        record.health.value.lower(),
        {"revision": record.revision, "prune": params.prune, "cycle_id": record.cycle_id},
    )
    return f"Sync of '{params.name}' finished\n{_format_record(record)}"


class PromoteApplicationParams(BaseModel):
    """Parameters for promote_application tool."""

    target: str = Field(description="Application to promote into (e.g. shop-prod)")
    source: str | None = Field(
        default=None, description="Application to promote from (default: target's promote_from)"
    )
    prune: bool = Field(default=False, description="Delete owned resources not in git")
    confirm: bool = Field(default=False, description="Confirm a pruning promotion")
    confirm_name: str | None = Field(
        default=None, description="Target name, repeated to confirm pruning"
    )


@mcp.tool()
async def promote_application(params: PromoteApplicationParams, ctx: MCPContext) -> str:
    """
    Promote the last healthy revision of one application into another.

    The target is synced at exactly the commit the source last synced
    healthily. Promotion only ever happens through this tool.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    refused = _check_sync_guard(
        "promote_application", params.target, params.prune, params.confirm, params.confirm_name
    )
    if refused:
        return refused

    await ctx.report_progress(0, 1, f"Promoting into {params.target}")
    try:
        record = await get_scheduler().promote(params.target, params.source, prune=params.prune)
    except TOOL_ERRORS as e:
        get_audit_logger().log_error("promote_application", params.target, str(e))
        return str(e)
    await ctx.report_progress(1, 1, "Promotion finished")

    if record is None:
        get_audit_logger().log_write("promote_application", params.target, "queued")
        return f"A cycle is already running for '{params.target}'. The promotion was queued."

    get_audit_logger().log_write(
        "promote_application",
        params.target,
        record.health.value.lower(),
        {"source": params.source, "revision": record.revision},
    )
    return f"Promotion into '{params.target}' finished\n{_format_record(record)}"


class SetAutoSyncParams(BaseModel):
    """Parameters for set_auto_sync tool."""

    name: str = Field(description="Application name")
    enabled: bool = Field(description="Turn auto-sync on (true) or off (false)")


@mcp.tool()
async def set_auto_sync(params: SetAutoSyncParams, ctx: MCPContext) -> str:
    """
    Turn automatic sync on or off for one application (one environment).

    With auto-sync off the application is still refreshed and reported
    OutOfSync, but nothing is applied until a manual sync or promotion.
    Configuration decides the mode again after a restart.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_write_operation("set_auto_sync")
    if blocked:
        get_audit_logger().log_blocked("set_auto_sync", params.name, blocked.reason)
        return blocked.format_message()

    try:
        status = get_scheduler().set_auto_sync(params.name, params.enabled)
    except TOOL_ERRORS as e:
        get_audit_logger().log_error("set_auto_sync", params.name, str(e))
        return str(e)

    get_audit_logger().log_write(
        "set_auto_sync", params.name, "success", {"enabled": params.enabled}
    )
    return f"Auto-sync for '{status.application}' is now {'on' if status.auto_sync else 'off'}"


class RefreshApplicationParams(BaseModel):
    """Parameters for refresh_application tool."""

    name: str = Field(description="Application name")


@mcp.tool()
async def refresh_application(params: RefreshApplicationParams, ctx: MCPContext) -> str:
    """
    Ask the application's loop for an immediate cycle.

    Use after pushing to git to skip the polling delay. The cycle applies
    only if auto-sync is on.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_write_operation("refresh_application")
    if blocked:
        get_audit_logger().log_blocked("refresh_application", params.name, blocked.reason)
        return blocked.format_message()

    try:
        get_scheduler().refresh(params.name)
    except TOOL_ERRORS as e:
        get_audit_logger().log_error("refresh_application", params.name, str(e))
        return str(e)

    get_audit_logger().log_write("refresh_application", params.name, "success")
    return f"Refresh requested for '{params.name}'"


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("gitops://applications")
async def get_applications_resource() -> str:
    """Get the configured applications and where their manifests come from."""
    settings = get_settings()

    if not settings.applications:
        return "No applications configured"

    lines = ["Configured Applications:", ""]
    for app in settings.applications:
        promote = f", promotes from {app.promote_from}" if app.promote_from else ""
        lines.append(
            f"- {app.name} [{app.environment}]: {app.repo_path}/{app.path}@{app.target_revision} "
            f"-> {app.namespace or '(manifest namespaces)'} "
            f"(auto-sync={app.auto_sync}, prune={app.prune}{promote})"
        )
    return "\n".join(lines)


@mcp.resource("gitops://security")
async def get_security_resource() -> str:
    """Get current security settings."""
    sec = get_settings().security

    return (
        "Security Settings:\n"
        f"  Read-only mode: {sec.read_only}\n"
        f"  Pruning from manual syncs disabled: {sec.disable_destructive}\n"
        f"  Secret masking: {sec.mask_secrets}\n"
        f"  Rate limit: {sec.rate_limit_calls} calls per {sec.rate_limit_window}s"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


async def _run_transport(transport: str) -> None:
    if transport == "sse":
        await mcp.run_sse_async()
    elif transport == "streamable-http":
        await mcp.run_streamable_http_async()
    else:
        await mcp.run_stdio_async()


async def serve(settings: ControllerSettings) -> None:
    """
    Run the reconcile loops and the status surface until the transport closes.

    The loops are started here, once, rather than per MCP session: they keep
    reconciling whether or not a client is connected.
    """
    global _settings, _scheduler, _safety_guard, _audit_logger

    _settings = settings
    _safety_guard = SafetyGuard(settings.security)
    _audit_logger = AuditLogger(settings.security.audit_log)

    cluster = settings.cluster.resolved()
    if not cluster.api_url:
        raise RuntimeError("No Kubernetes API configured: set KUBE_API_URL or run in-cluster")

    stop = asyncio.Event()
    async with KubernetesClient(cluster) as client:
        _scheduler = SyncScheduler(settings, client, audit_logger=_audit_logger)
        logger.info(
            "Connected to cluster",
            cluster=cluster.name,
            url=cluster.api_url,
            applications=[app.name for app in settings.applications],
        )
        loops = asyncio.create_task(_scheduler.run(stop), name="sync-scheduler")
        try:
            await _run_transport(settings.transport)
        finally:
            stop.set()
            _scheduler.cancel_cycles()
            await loops
            _scheduler = None
            logger.info("GitOps reconciler stopped")


def main() -> None:
    """Run the GitOps reconciler."""
    try:
        settings = load_settings()
    except (ValueError, OSError) as e:
        configure_logging(level="INFO")
        logger.error("Invalid configuration", error=str(e))
        sys.exit(1)

    configure_logging(level=settings.log_level, json_output=settings.json_logs)
    logger.info("GitOps reconciler starting", transport=settings.transport)

    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        logger.info("Controller interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Controller error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()

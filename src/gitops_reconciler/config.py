# ABOUTME: Configuration management for the GitOps reconciler
# ABOUTME: Handles environment variables, cluster access, security and per-application settings

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module handles all configuration for the controller. It:

1. READS environment variables (like KUBE_API_URL, GITOPS_LOG_LEVEL)
2. READS the optional applications file (YAML list of applications)
3. VALIDATES everything at startup, not halfway through a sync
4. PROVIDES typed access to settings throughout the application

=============================================================================
ARCHITECTURE: FOUR CONFIGURATION CLASSES
=============================================================================

1. ApplicationConfig: ONE managed application (one target environment)
   - Manifest repository, path and revision
   - Target namespace, polling intervals, auto-sync, prune, retry limits

2. ClusterSettings: how to reach the Kubernetes API (KUBE_* variables)

3. SecuritySettings: guards for the status surface's write tools
   (GITOPS_MCP_* variables)

4. ControllerSettings: top-level container (GITOPS_* variables)
   - Applications, logging, status file, backoff
   - Nested ClusterSettings and SecuritySettings

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Cluster access:
    KUBE_API_URL        -> Kubernetes API server URL (empty = in-cluster)
    KUBE_TOKEN          -> Bearer token (empty = service account token)
    KUBE_INSECURE       -> Skip TLS certificate verification
    KUBE_TIMEOUT        -> Per-call timeout in seconds

Controller (GITOPS_ prefix):
    GITOPS_APPLICATIONS       -> JSON array of applications
    GITOPS_APPLICATIONS_FILE  -> YAML file with a list of applications
    GITOPS_LOG_LEVEL          -> DEBUG, INFO, WARNING, ERROR, CRITICAL
    GITOPS_JSON_LOGS          -> Emit JSON log lines
    GITOPS_STATUS_FILE        -> Where sync status is persisted between runs
    GITOPS_TRANSPORT          -> MCP transport: stdio, sse or streamable-http

Security settings (GITOPS_MCP_ prefix):
    GITOPS_MCP_READ_ONLY           -> Block manual sync/promote/toggle (default: true)
    GITOPS_MCP_DISABLE_DESTRUCTIVE -> Block pruning manual syncs (default: true)
    GITOPS_MCP_AUDIT_LOG           -> Path to audit log file
    GITOPS_MCP_MASK_SECRETS        -> Mask Secret values in diffs (default: true)
    GITOPS_MCP_RATE_LIMIT_CALLS    -> Max tool calls per window (default: 100)
    GITOPS_MCP_RATE_LIMIT_WINDOW   -> Rate limit window in seconds (default: 60)
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated, Any

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# In-cluster discovery follows the standard service account mount.
SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"

# Application names end up in label values, so they follow the DNS-1123 label rules.
APP_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$"


# =============================================================================
# APPLICATION CONFIGURATION
# =============================================================================


class ApplicationConfig(BaseModel):
    """
    Configuration for a single managed application.

    One application is one (manifest path, target namespace) pair. Promotion
    between environments is modelled with two applications, e.g. ``shop-dev``
    with auto-sync and ``shop-prod`` with ``auto_sync: false`` and
    ``promote_from: shop-dev``.

    USAGE EXAMPLE:
    --------------
        app = ApplicationConfig(
            name="shop-dev",
            repo_path=Path("/srv/manifests"),
            path="apps/shop/dev",
            namespace="shop-dev",
        )
    """

    model_config = {"extra": "ignore"}

    # -------------------------------------------------------------------------
    # IDENTITY AND SOURCE
    # -------------------------------------------------------------------------

    name: Annotated[str, Field(pattern=APP_NAME_PATTERN)] = Field(description="Application name")

    environment: str = Field(default="default", description="Environment label (dev, prod, ...)")

    repo_path: Path = Field(description="Local clone of the manifest repository")
    # The controller reads commits from this clone. It never commits or pushes.

    path: str = Field(default=".", description="Manifest directory inside the repository")

    target_revision: str = Field(default="HEAD", description="Branch, tag or commit to track")
    # With fetch=true use a remote-tracking ref such as "origin/main".

    fetch: bool = Field(default=False, description="Run 'git fetch' before resolving revisions")

    # -------------------------------------------------------------------------
    # DESTINATION
    # -------------------------------------------------------------------------

    namespace: str | None = Field(
        default=None,
        description="Target namespace, used for manifests that omit metadata.namespace",
    )

    # -------------------------------------------------------------------------
    # SYNC POLICY
    # -------------------------------------------------------------------------

    auto_sync: bool = Field(default=True, description="Apply changes automatically")
    # When false the controller only refreshes: it computes and reports the
    # diff but waits for an explicit sync_application / promote_application.

    prune: bool = Field(default=True, description="Delete owned resources removed from git")

    promote_from: str | None = Field(
        default=None, description="Application whose healthy revision this one is promoted from"
    )

    # -------------------------------------------------------------------------
    # TIMING
    # -------------------------------------------------------------------------

    poll_interval_seconds: float = Field(default=180.0, gt=0)
    # Fallback full cycle, covers missed change notifications.

    revision_poll_seconds: float = Field(default=15.0, gt=0)
    # How often the manifest source revision is checked.

    drift_check_seconds: float = Field(default=60.0, gt=0)
    # How often live state is compared against the last-known-good desired state.

    cycle_timeout_seconds: float = Field(default=300.0, gt=0)

    # -------------------------------------------------------------------------
    # RETRIES AND CONVERGENCE
    # -------------------------------------------------------------------------

    retry_limit: int = Field(default=5, ge=1, description="Attempts per operation")
    retry_backoff_seconds: float = Field(default=1.0, ge=0)
    retry_backoff_max_seconds: float = Field(default=30.0, ge=0)

    convergence_timeout_seconds: float = Field(default=120.0, ge=0)
    convergence_poll_seconds: float = Field(default=2.0, gt=0)

    failure_cooldown_seconds: float = Field(default=300.0, ge=0)
    # A resource that failed for a given manifest is not retried again until
    # the cooldown passes or the manifest changes.

    @field_validator("path")
    @classmethod
    def normalize_path(cls, v: str) -> str:
        """Strip leading/trailing slashes so the path is relative to the repo root."""
        v = v.strip().strip("/")
        return v or "."


# =============================================================================
# CLUSTER SETTINGS
# =============================================================================


class ClusterSettings(BaseSettings):
    """
    How to reach the Kubernetes API.

    When KUBE_API_URL is empty the in-cluster service account is used, the
    same way kubectl and client-go behave inside a pod.
    """

    model_config = SettingsConfigDict(env_prefix="KUBE_", extra="ignore")

    name: str = Field(default="in-cluster", description="Cluster name used in logs")

    api_url: str = Field(default="", description="Kubernetes API server URL")

    token: SecretStr = Field(default=SecretStr(""), description="Bearer token")
    # SecretStr keeps the token out of logs and reprs.

    insecure: bool = Field(default=False, description="Skip TLS verification")

    ca_file: Path | None = Field(default=None, description="CA bundle for the API server")

    timeout: float = Field(default=30.0, gt=0, description="Per-call timeout in seconds")

    @field_validator("api_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Ensure URL has a scheme and no trailing slash."""
        if not v:
            return v
        if not v.startswith(("http://", "https://")):
            v = f"https://{v}"
        return v.rstrip("/")

    def resolved(self) -> ClusterSettings:
        """
        Fill in URL, token and CA from the in-cluster environment if missing.

        Returns a new instance; the original is left untouched.
        """
        updates: dict[str, Any] = {}
        if not self.api_url:
            host = os.environ.get("KUBERNETES_SERVICE_HOST")
            port = os.environ.get("KUBERNETES_SERVICE_PORT", "443")
            if host:
                updates["api_url"] = f"https://{host}:{port}"
        sa_dir = Path(SERVICE_ACCOUNT_DIR)
        if not self.token.get_secret_value() and (sa_dir / "token").exists():
            updates["token"] = SecretStr((sa_dir / "token").read_text().strip())
        if self.ca_file is None and (sa_dir / "ca.crt").exists():
            updates["ca_file"] = sa_dir / "ca.crt"
        return self.model_copy(update=updates) if updates else self


# =============================================================================
# SECURITY SETTINGS
# =============================================================================


class SecuritySettings(BaseSettings):
    """
    Guards for the status surface.

    The reconcile loop itself is governed by each application's auto_sync and
    prune settings. These settings only decide what a client of the status
    surface may trigger by hand:

    Layer 1: GITOPS_MCP_READ_ONLY=true (default)
        - Status queries only, no manual sync/promote/auto-sync toggles

    Layer 2: GITOPS_MCP_DISABLE_DESTRUCTIVE=true (default)
        - Manual syncs that prune are blocked even when writes are enabled

    Layer 3: Rate limiting (GITOPS_MCP_RATE_LIMIT_*)
    """

    model_config = SettingsConfigDict(env_prefix="GITOPS_MCP_")

    read_only: bool = Field(default=True, description="Block all write operations when true")

    disable_destructive: bool = Field(
        default=True, description="Block manual syncs that prune resources"
    )

    audit_log: Path | None = Field(default=None, description="Path to audit log file")
    # JSON lines, one per cluster mutation or blocked/failed operation.
    # When None, audit entries go to the structured log.

    mask_secrets: bool = Field(default=True, description="Mask Secret values in diff output")

    rate_limit_calls: int = Field(default=100, description="Maximum tool calls per window")

    rate_limit_window: int = Field(default=60, description="Rate limit window in seconds")


# =============================================================================
# CONTROLLER SETTINGS
# =============================================================================


class ControllerSettings(BaseSettings):
    """
    Top-level configuration.

    USAGE:
    ------
        settings = load_settings()  # Reads environment + applications file
        for app in settings.applications:
            print(app.name, app.auto_sync)
    """

    model_config = SettingsConfigDict(
        env_prefix="GITOPS_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # APPLICATIONS
    # -------------------------------------------------------------------------

    applications: list[ApplicationConfig] = Field(default_factory=list)
    # GITOPS_APPLICATIONS='[{"name": "shop-dev", "repo_path": "/srv/manifests"}]'

    applications_file: Path | None = Field(
        default=None, description="YAML file with a list of applications"
    )

    # -------------------------------------------------------------------------
    # RUNTIME
    # -------------------------------------------------------------------------

    transport: Annotated[str, Field(pattern=r"^(stdio|sse|streamable-http)$")] = Field(
        default="stdio", description="MCP transport for the status surface"
    )

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    json_logs: bool = Field(default=False, description="Emit JSON log lines")

    status_file: Path | None = Field(
        default=None, description="JSON file where sync status is persisted"
    )

    max_history: int = Field(default=20, ge=1, description="Cycle records kept per application")

    read_concurrency: int = Field(default=8, ge=1, description="Concurrent live-state reads")

    unreachable_backoff_seconds: float = Field(default=5.0, gt=0)
    unreachable_backoff_max_seconds: float = Field(default=300.0, gt=0)
    # Backoff applied between cycles after ClusterUnreachable, doubling each time.

    # -------------------------------------------------------------------------
    # NESTED SETTINGS
    # -------------------------------------------------------------------------

    cluster: ClusterSettings = Field(default_factory=ClusterSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)

    @model_validator(mode="after")
    def validate_applications(self) -> ControllerSettings:
        """Application names are unique and promote_from points at a known application."""
        names = [app.name for app in self.applications]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate application names: {duplicates}")
        for app in self.applications:
            if app.promote_from is None:
                continue
            if app.promote_from not in names:
                raise ValueError(
                    f"Application '{app.name}' promotes from unknown application "
                    f"'{app.promote_from}'"
                )
            if app.promote_from == app.name:
                raise ValueError(f"Application '{app.name}' cannot promote from itself")
        return self

    def get_application(self, name: str) -> ApplicationConfig | None:
        """Get application configuration by name."""
        for app in self.applications:
            if app.name == name:
                return app
        return None


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def read_applications_file(path: Path) -> list[dict[str, Any]]:
    """
    Read a YAML applications file.

    Accepts either a bare list or a mapping with an ``applications`` key:

        applications:
          - name: shop-dev
            repo_path: /srv/manifests
            path: apps/shop/dev
            namespace: shop-dev
    """
    data = yaml.safe_load(path.read_text()) or []
    if isinstance(data, dict):
        data = data.get("applications") or []
    if not isinstance(data, list):
        raise ValueError(f"Applications file {path} must contain a list of applications")
    return data


def load_settings() -> ControllerSettings:
    """
    Load settings from environment (and optional files) with validation.

    If GITOPS_ENV_FILE is set, variables are also read from that .env file.
    Applications from GITOPS_APPLICATIONS_FILE are appended to those given in
    GITOPS_APPLICATIONS, then the combined list is validated again.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    env_file = os.environ.get("GITOPS_ENV_FILE")
    settings = ControllerSettings(_env_file=env_file)
    if settings.applications_file is None:
        return settings

    extra = read_applications_file(settings.applications_file)
    merged = [app.model_dump() for app in settings.applications] + extra
    # Init arguments take priority over environment values.
    return ControllerSettings(_env_file=env_file, applications=merged)

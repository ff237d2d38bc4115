# ABOUTME: Pytest fixtures and configuration for GitOps reconciler tests
# ABOUTME: Provides an in-memory cluster, an in-memory manifest source and manifest builders

import asyncio
import copy
import hashlib
import os
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import yaml
from pydantic import SecretStr

from gitops_reconciler.config import (
    ApplicationConfig,
    ClusterSettings,
    ControllerSettings,
    SecuritySettings,
)
from gitops_reconciler.errors import ClusterUnreachable, ManifestSourceUnavailable
from gitops_reconciler.manifests import ManifestFile
from gitops_reconciler.models import ApplicationSyncStatus, ResourceKey, ownership_markers
from gitops_reconciler.utils.client import SUPPORTED_KINDS, KubernetesError
from gitops_reconciler.utils.safety import SafetyGuard

WORKLOAD_KINDS = {"Deployment", "StatefulSet", "ReplicaSet"}


# =============================================================================
# MANIFEST BUILDERS
# =============================================================================


def deployment(
    name: str,
    replicas: int = 1,
    image: str = "nginx:1.25",
    namespace: str | None = "shop",
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name, "labels": {"app": name}}
    if namespace:
        metadata["namespace"] = namespace
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": metadata,
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": {"app": name}},
                "spec": {"containers": [{"name": name, "image": image}]},
            },
        },
    }


def configmap(name: str, data: dict[str, str] | None = None, namespace: str = "shop") -> dict:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": namespace},
        "data": data if data is not None else {"key": "value"},
    }


def service(name: str, port: int = 80, namespace: str = "shop") -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"selector": {"app": name}, "ports": [{"port": port, "targetPort": port}]},
    }


def manifest_file(path: str, *documents: dict[str, Any]) -> ManifestFile:
    content = yaml.safe_dump_all(documents, sort_keys=False)
    return ManifestFile(path=path, content=content.encode())


# =============================================================================
# IN-MEMORY CLUSTER
# =============================================================================


def _merge_patch(target: Any, patch: Any) -> Any:
    """RFC 7386 JSON merge patch."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = _merge_patch(result.get(key), value)
    return result


class FakeCluster:
    """
    Stands in for KubernetesClient.

    Behaves like an API server where it matters for reconciliation: server
    fields are added on write, workloads report status, 404/409 are answered
    with KubernetesError. Failures can be scripted per (method, key).
    """

    name = "fake"

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], list[Exception]] = {}
        self.stuck: set[str] = set()
        self.unreachable = False
        self.write_gate: asyncio.Event | None = None
        self._version = 0

    # -- helpers used by tests -------------------------------------------------

    def fail(self, method: str, key: str, *errors: Exception) -> None:
        """Raise ``errors`` (one per call) for the next calls of ``method`` on ``key``."""
        self.failures.setdefault((method, key), []).extend(errors)

    def seed(self, manifest: dict[str, Any], **metadata: Any) -> dict[str, Any]:
        """Put an object straight into the cluster, bypassing the call log."""
        obj = self._stored(copy.deepcopy(manifest))
        obj["metadata"].update(metadata)
        kind, meta = obj["kind"], obj["metadata"]
        self.objects[(kind, meta["namespace"], meta["name"])] = obj
        return obj

    def lookup(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        return self.objects.get((kind, namespace, name))

    def writes(self) -> list[tuple[str, str]]:
        return [c for c in self.calls if c[0] in ("create", "patch", "delete")]

    # -- client interface --------------------------------------------------------

    async def _enter(self, method: str, key: str) -> None:
        if self.unreachable:
            raise ClusterUnreachable("Cannot reach Kubernetes API at https://fake")
        self.calls.append((method, key))
        queued = self.failures.get((method, key))
        if queued:
            raise queued.pop(0)

    def _stored(self, obj: dict[str, Any], previous: dict[str, Any] | None = None) -> dict:
        self._version += 1
        metadata = obj.setdefault("metadata", {})
        generation = 1
        if previous is not None:
            generation = previous["metadata"]["generation"]
            if obj.get("spec") != previous.get("spec"):
                generation += 1
            metadata["uid"] = previous["metadata"]["uid"]
            metadata["creationTimestamp"] = previous["metadata"]["creationTimestamp"]
        else:
            metadata["uid"] = hashlib.sha1(str(self._version).encode()).hexdigest()
            metadata["creationTimestamp"] = "2024-01-01T00:00:00Z"
        metadata["generation"] = generation
        metadata["resourceVersion"] = str(self._version)
        metadata["managedFields"] = [{"manager": "fake"}]

        kind = obj.get("kind")
        key = f"{kind}/{metadata.get('namespace')}/{metadata.get('name')}"
        if kind in WORKLOAD_KINDS:
            spec = obj.setdefault("spec", {})
            spec.setdefault("revisionHistoryLimit", 10)
            replicas = spec.get("replicas", 1)
            ready = 0 if key in self.stuck else replicas
            obj["status"] = {
                "observedGeneration": generation,
                "replicas": replicas,
                "readyReplicas": ready,
                "updatedReplicas": ready,
                "availableReplicas": ready,
            }
        elif kind == "Service":
            spec = obj.setdefault("spec", {})
            spec.setdefault("clusterIP", "10.0.0.10")
            spec.setdefault("type", "ClusterIP")
            for port in spec.get("ports") or []:
                port.setdefault("protocol", "TCP")
        return obj

    async def get(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        await self._enter("get", f"{kind}/{namespace}/{name}")
        obj = self.objects.get((kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    async def list(
        self, kind: str, namespace: str, label_selector: str | None = None
    ) -> list[dict[str, Any]]:
        await self._enter("list", f"{kind}/{namespace}")
        wanted = {}
        if label_selector:
            wanted = dict(part.split("=", 1) for part in label_selector.split(","))
        items = []
        for (k, ns, _), obj in self.objects.items():
            if k != kind or ns != namespace:
                continue
            labels = obj["metadata"].get("labels") or {}
            if all(labels.get(lk) == lv for lk, lv in wanted.items()):
                items.append(copy.deepcopy(obj))
        return items

    async def create(self, kind: str, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        name = body["metadata"]["name"]
        await self._enter("create", f"{kind}/{namespace}/{name}")
        if self.write_gate is not None:
            await self.write_gate.wait()
        if kind not in SUPPORTED_KINDS:
            raise KubernetesError(400, f"Unsupported kind '{kind}'")
        if (kind, namespace, name) in self.objects:
            raise KubernetesError(409, f'{kind} "{name}" already exists', reason="AlreadyExists")
        obj = self._stored(copy.deepcopy(body))
        self.objects[(kind, namespace, name)] = obj
        return copy.deepcopy(obj)

    async def patch(
        self, kind: str, namespace: str, name: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        await self._enter("patch", f"{kind}/{namespace}/{name}")
        if self.write_gate is not None:
            await self.write_gate.wait()
        previous = self.objects.get((kind, namespace, name))
        if previous is None:
            raise KubernetesError(404, f'{kind} "{name}" not found', reason="NotFound")
        obj = self._stored(_merge_patch(previous, patch), previous)
        self.objects[(kind, namespace, name)] = obj
        return copy.deepcopy(obj)

    async def delete(self, kind: str, namespace: str, name: str) -> bool:
        await self._enter("delete", f"{kind}/{namespace}/{name}")
        return self.objects.pop((kind, namespace, name), None) is not None

    async def version(self) -> dict[str, Any]:
        await self._enter("version", "")
        return {"major": "1", "minor": "30", "gitVersion": "v1.30.0"}


def seed_owned(
    cluster: FakeCluster,
    manifest: dict[str, Any],
    app: str = "shop-dev",
    key: ResourceKey | None = None,
) -> dict[str, Any]:
    """Seed an object carrying the ownership markers of ``app``."""
    meta = manifest["metadata"]
    key = key or ResourceKey(manifest["kind"], meta["namespace"], meta["name"])
    markers = ownership_markers(app, key)
    labels = {**(meta.get("labels") or {}), **markers["labels"]}
    return cluster.seed(manifest, labels=labels, annotations=markers["annotations"])


# =============================================================================
# IN-MEMORY MANIFEST SOURCE
# =============================================================================


class FakeManifestSource:
    """Stands in for GitManifestSource: a list of commits held in memory."""

    def __init__(self, *files: ManifestFile) -> None:
        self.commits: dict[str, list[ManifestFile]] = {}
        self.current = ""
        self.unavailable = False
        self.loads: list[str | None] = []
        if files:
            self.commit(*files)

    def __repr__(self) -> str:
        return "FakeManifestSource()"

    def commit(self, *files: ManifestFile) -> str:
        sha = hashlib.sha1(f"commit-{len(self.commits)}".encode()).hexdigest()
        self.commits[sha] = list(files)
        self.current = sha
        return sha

    async def current_revision(self) -> str:
        if self.unavailable:
            raise ManifestSourceUnavailable("git fetch failed: repository not found")
        return self.current

    async def load(self, revision: str | None = None) -> tuple[str, list[ManifestFile]]:
        self.loads.append(revision)
        sha = revision or await self.current_revision()
        if self.unavailable or sha not in self.commits:
            raise ManifestSourceUnavailable(f"Unknown revision {sha}")
        return sha, list(self.commits[sha])


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def cluster() -> FakeCluster:
    """An empty in-memory cluster."""
    return FakeCluster()


@pytest.fixture
def app_config(tmp_path: Path) -> ApplicationConfig:
    """An application tuned for tests: no backoff sleeps, no convergence wait."""
    return ApplicationConfig(
        name="shop-dev",
        environment="dev",
        repo_path=tmp_path,
        namespace="shop",
        retry_limit=3,
        retry_backoff_seconds=0,
        retry_backoff_max_seconds=0,
        convergence_timeout_seconds=0,
        convergence_poll_seconds=0.01,
        failure_cooldown_seconds=300,
    )


@pytest.fixture
def sync_status() -> ApplicationSyncStatus:
    """Fresh status for the test application."""
    return ApplicationSyncStatus(application="shop-dev", environment="dev")


@pytest.fixture
def mock_security_settings() -> SecuritySettings:
    """Security settings with writes and pruning allowed."""
    return SecuritySettings(
        read_only=False,
        disable_destructive=False,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def read_only_security_settings() -> SecuritySettings:
    """Default, locked-down security settings."""
    return SecuritySettings(
        read_only=True,
        disable_destructive=True,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def controller_settings(
    tmp_path: Path, mock_security_settings: SecuritySettings
) -> ControllerSettings:
    """Two applications: shop-dev (auto-sync) and shop-prod (manual, promotes from dev)."""
    common = {
        "repo_path": tmp_path,
        "retry_limit": 2,
        "retry_backoff_seconds": 0,
        "retry_backoff_max_seconds": 0,
        "convergence_timeout_seconds": 0,
    }
    return ControllerSettings(
        applications=[
            ApplicationConfig(name="shop-dev", environment="dev", namespace="shop", **common),
            ApplicationConfig(
                name="shop-prod",
                environment="prod",
                namespace="shop-prod",
                auto_sync=False,
                promote_from="shop-dev",
                **common,
            ),
        ],
        cluster=ClusterSettings(api_url="https://k8s.example.com", token=SecretStr("t")),
        security=mock_security_settings,
        unreachable_backoff_seconds=1,
        unreachable_backoff_max_seconds=8,
    )


@pytest.fixture
def safety_guard(mock_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a safety guard for testing."""
    return SafetyGuard(mock_security_settings)


@pytest.fixture
def read_only_safety_guard(read_only_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a read-only safety guard for testing."""
    return SafetyGuard(read_only_security_settings)


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx


# Integration test fixtures


@pytest.fixture
def kube_api_url() -> str | None:
    """Get the Kubernetes API URL from environment."""
    return os.environ.get("KUBE_API_URL")


@pytest.fixture
def kube_test_namespace() -> str:
    """Namespace the integration tests may write to."""
    return os.environ.get("KUBE_TEST_NAMESPACE", "gitops-reconciler-test")

# ABOUTME: Kubernetes API client wrapper with retry logic and error classification
# ABOUTME: Provides the get/list/create/patch/delete primitives the reconciler is built on

"""
Kubernetes API client with retry logic and structured error handling.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module provides the HTTP client for the Kubernetes REST API. It is the
controller's only view of the cluster and exposes exactly five primitives:

    get     GET    /apis/{group}/{version}/namespaces/{ns}/{plural}/{name}
    list    GET    /apis/{group}/{version}/namespaces/{ns}/{plural}?labelSelector=...
    create  POST   /apis/{group}/{version}/namespaces/{ns}/{plural}
    patch   PATCH  .../{name}   (application/merge-patch+json)
    delete  DELETE .../{name}

Core kinds (Service, ConfigMap, ...) live under /api/v1 instead of /apis.

It handles:

1. AUTHENTICATION: Bearer token from settings or the pod's service account
2. ERROR CLASSIFICATION: HTTP errors become KubernetesError with a
   ``transient`` flag the reconciler uses to decide whether to retry
3. CONNECTIVITY: transport failures become ClusterUnreachable
4. READ RETRIES: idempotent GETs are retried on timeout with backoff

=============================================================================
WHY MERGE PATCH?
=============================================================================

The diff engine produces the minimal set of fields that differ. A JSON merge
patch (RFC 7386) applies exactly those fields and leaves everything else
alone, so defaults and fields set by other controllers survive an update.
Lists are replaced wholesale, which is why the diff engine always sends the
complete desired list when any element differs.

=============================================================================
CONNECTION POOL
=============================================================================

One client (one httpx.AsyncClient pool) is shared by every application loop.
It holds no per-application state, so the loops can use it concurrently:

    async with KubernetesClient(settings.cluster) as client:
        obj = await client.get("Deployment", "shop", "web")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gitops_reconciler.errors import ClusterUnreachable

if TYPE_CHECKING:
    from gitops_reconciler.config import ClusterSettings

logger = structlog.get_logger(__name__)

MERGE_PATCH = "application/merge-patch+json"

# Retrying these can succeed: timeouts, optimistic-lock conflicts, throttling
# and server-side failures. Everything else is a permanent rejection.
TRANSIENT_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})


# =============================================================================
# API RESOURCE REGISTRY
# =============================================================================


@dataclass(frozen=True)
class ApiResource:
    """Where a kind lives in the REST API."""

    group_version: str
    plural: str

    def collection_path(self, namespace: str) -> str:
        if "/" in self.group_version:
            prefix = f"/apis/{self.group_version}"
        else:
            prefix = f"/api/{self.group_version}"
        return f"{prefix}/namespaces/{namespace}/{self.plural}"

    def item_path(self, namespace: str, name: str) -> str:
        return f"{self.collection_path(namespace)}/{name}"


API_RESOURCES: dict[str, ApiResource] = {
    "ConfigMap": ApiResource("v1", "configmaps"),
    "Secret": ApiResource("v1", "secrets"),
    "Service": ApiResource("v1", "services"),
    "ServiceAccount": ApiResource("v1", "serviceaccounts"),
    "PersistentVolumeClaim": ApiResource("v1", "persistentvolumeclaims"),
    "Deployment": ApiResource("apps/v1", "deployments"),
    "StatefulSet": ApiResource("apps/v1", "statefulsets"),
    "DaemonSet": ApiResource("apps/v1", "daemonsets"),
    "ReplicaSet": ApiResource("apps/v1", "replicasets"),
    "Job": ApiResource("batch/v1", "jobs"),
    "CronJob": ApiResource("batch/v1", "cronjobs"),
    "Ingress": ApiResource("networking.k8s.io/v1", "ingresses"),
    "NetworkPolicy": ApiResource("networking.k8s.io/v1", "networkpolicies"),
    "HorizontalPodAutoscaler": ApiResource("autoscaling/v2", "horizontalpodautoscalers"),
    "Role": ApiResource("rbac.authorization.k8s.io/v1", "roles"),
    "RoleBinding": ApiResource("rbac.authorization.k8s.io/v1", "rolebindings"),
}

SUPPORTED_KINDS = frozenset(API_RESOURCES)


def api_resource(kind: str) -> ApiResource:
    """Look up a kind, raising KubernetesError(400) for unsupported kinds."""
    try:
        return API_RESOURCES[kind]
    except KeyError:
        raise KubernetesError(
            code=400,
            message=f"Unsupported kind '{kind}'",
            details=f"Supported kinds: {', '.join(sorted(SUPPORTED_KINDS))}",
        ) from None


# =============================================================================
# ERRORS
# =============================================================================


class KubernetesError(Exception):
    """
    Structured Kubernetes API error.

    The API server answers failures with a ``Status`` object:

        {"kind": "Status", "status": "Failure", "message": "...",
         "reason": "Invalid", "code": 422}

    ``code``, ``message`` and ``reason`` are kept so the reconciler can tell
    a validation rejection (422, permanent) from a conflict (409, transient).
    """

    def __init__(
        self,
        code: int,
        message: str,
        details: str | None = None,
        reason: str | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details
        self.reason = reason
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"Kubernetes API error ({self.code}): {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base

    @property
    def transient(self) -> bool:
        return self.code in TRANSIENT_STATUS_CODES

    @property
    def not_found(self) -> bool:
        return self.code == 404


# =============================================================================
# CLIENT
# =============================================================================


class KubernetesClient:
    """
    Async Kubernetes API client.

    LIFECYCLE:
    ----------
        async with KubernetesClient(cluster) as client:
            await client.get("Service", "shop", "web")

    RETRY LOGIC:
    ------------
    Reads (get/list/version) are retried on timeout: 3 attempts with
    exponential backoff. Writes are never retried here; the reconciler owns the
    per-operation retry budget so attempts can be counted and reported.
    """

    def __init__(
        self,
        cluster: ClusterSettings,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize client. The HTTP pool is created in __aenter__.

        Args:
            cluster: Cluster settings (URL, token, TLS).
            timeout: Per-call timeout; defaults to cluster.timeout.
            transport: Optional httpx transport (used by tests).
        """
        self._cluster = cluster
        self._timeout = timeout if timeout is not None else cluster.timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return self._cluster.name

    async def __aenter__(self) -> KubernetesClient:
        headers = {"Accept": "application/json"}
        token = self._cluster.token.get_secret_value()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        verify: bool | str = not self._cluster.insecure
        if verify and self._cluster.ca_file is not None:
            verify = str(self._cluster.ca_file)

        self._client = httpx.AsyncClient(
            base_url=self._cluster.api_url,
            headers=headers,
            timeout=self._timeout,
            verify=verify,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # LOW-LEVEL REQUESTS
    # -------------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        content_type: str | None = None,
    ) -> httpx.Response:
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        headers = {"Content-Type": content_type} if content_type else None
        return await self._client.request(
            method, path, params=params, json=json_data, headers=headers
        )

    @retry(
        retry=retry_if_exception_type(httpx.TimeoutException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _send_read(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        return await self._send("GET", path, params=params)

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        content_type: str | None = None,
    ) -> dict[str, Any]:
        """
        Make a request and decode the JSON body.

        Raises:
            KubernetesError: On any 4xx/5xx answer, and on timeouts (code 408).
            ClusterUnreachable: When the API server cannot be reached at all.
        """
        log = logger.bind(method=method, path=path, cluster=self._cluster.name)
        log.debug("Making Kubernetes API request")

        try:
            if method == "GET":
                response = await self._send_read(path, params=params)
            else:
                response = await self._send(
                    method, path, params=params, json_data=json_data, content_type=content_type
                )
        except httpx.TimeoutException as e:
            log.warning("Kubernetes API request timed out")
            raise KubernetesError(code=408, message="Request timed out", details=str(e)) from e
        except httpx.TransportError as e:
            log.warning("Kubernetes API unreachable", error=str(e))
            raise ClusterUnreachable(
                f"Cannot reach Kubernetes API at {self._cluster.api_url}: {e}"
            ) from e

        if response.status_code >= 400:
            self._raise_for_status(response, log)

        return response.json() if response.content else {}

    @staticmethod
    def _raise_for_status(response: httpx.Response, log: Any) -> None:
        error_body = response.text
        if response.status_code != 404:
            log.warning("Kubernetes API error", status=response.status_code, body=error_body[:200])

        message = f"HTTP {response.status_code}"
        details = None
        reason = None
        try:
            error_json = response.json()
            message = error_json.get("message", message)
            reason = error_json.get("reason")
            causes = (error_json.get("details") or {}).get("causes") or []
            if causes:
                details = "; ".join(
                    f"{c.get('field', '?')}: {c.get('message', '')}" for c in causes
                )
        except ValueError:
            details = error_body[:200] if error_body else None

        raise KubernetesError(
            code=response.status_code,
            message=message,
            details=details,
            reason=reason,
        )

    # -------------------------------------------------------------------------
    # RESOURCE PRIMITIVES
    # -------------------------------------------------------------------------

    async def get(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        """Get one object. Returns None when it does not exist."""
        path = api_resource(kind).item_path(namespace, name)
        try:
            return await self._request("GET", path)
        except KubernetesError as e:
            if e.not_found:
                return None
            raise

    async def list(
        self,
        kind: str,
        namespace: str,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        List objects of a kind in a namespace.

        Items of a list response carry no kind/apiVersion, so they are filled
        in here to keep every object self-describing.
        """
        resource = api_resource(kind)
        params = {"labelSelector": label_selector} if label_selector else None
        try:
            data = await self._request("GET", resource.collection_path(namespace), params=params)
        except KubernetesError as e:
            if e.not_found:
                return []
            raise
        items = data.get("items") or []
        for item in items:
            item.setdefault("kind", kind)
            item.setdefault("apiVersion", resource.group_version)
        return items

    async def create(self, kind: str, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        """Create an object from a full manifest."""
        path = api_resource(kind).collection_path(namespace)
        return await self._request("POST", path, json_data=body)

    async def patch(
        self,
        kind: str,
        namespace: str,
        name: str,
        patch: dict[str, Any],
    ) -> dict[str, Any]:
        """Apply a JSON merge patch to an existing object."""
        path = api_resource(kind).item_path(namespace, name)
        return await self._request("PATCH", path, json_data=patch, content_type=MERGE_PATCH)

    async def delete(self, kind: str, namespace: str, name: str) -> bool:
        """
        Delete an object with foreground propagation.

        Returns False if the object was already gone.
        """
        path = api_resource(kind).item_path(namespace, name)
        try:
            await self._request(
                "DELETE",
                path,
                json_data={"kind": "DeleteOptions", "propagationPolicy": "Foreground"},
            )
        except KubernetesError as e:
            if e.not_found:
                return False
            raise
        return True

    async def version(self) -> dict[str, Any]:
        """Server version; a cheap connectivity probe."""
        return await self._request("GET", "/version")

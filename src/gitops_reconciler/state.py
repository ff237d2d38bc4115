# ABOUTME: Cluster state reader for the GitOps reconciler
# ABOUTME: Queries live objects concurrently and marks missing ones as ABSENT

"""Read the live state of an application's resources straight from the cluster."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import structlog

from gitops_reconciler.errors import ClusterUnreachable
from gitops_reconciler.models import ABSENT, INSTANCE_LABEL, LiveResource, LiveState, ResourceKey
from gitops_reconciler.utils.client import SUPPORTED_KINDS, KubernetesError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Iterable

    from gitops_reconciler.utils.client import KubernetesClient

logger = structlog.get_logger(__name__)


class ClusterStateReader:
    """
    Builds a LiveState for one application.

    Besides the identities it is asked for, it lists every (kind, namespace)
    involved by the application's instance label. That finds owned objects a
    previous, interrupted cycle created but never recorded, so they can still
    be pruned.

    Reads run concurrently (bounded by ``concurrency``) and all of them finish
    before read() returns. Any failure other than "not found" aborts the read
    with ClusterUnreachable: a partial live state cannot be diffed safely.
    """

    def __init__(self, client: KubernetesClient, application: str, concurrency: int = 8) -> None:
        self._client = client
        self._application = application
        self._semaphore = asyncio.Semaphore(concurrency)

    async def read(self, keys: Iterable[ResourceKey]) -> LiveState:
        wanted = [k for k in dict.fromkeys(keys) if k.kind in SUPPORTED_KINDS]
        scopes = sorted({(k.kind, k.namespace) for k in wanted})

        results = await self._gather(
            [self._fetch(key) for key in wanted]
            + [self._discover(kind, namespace) for kind, namespace in scopes]
        )
        fetched, discovered = results[: len(wanted)], results[len(wanted) :]

        live = LiveState()
        for key, value in fetched:
            live.resources[key] = value
        for batch in discovered:
            for resource in batch:
                live.resources.setdefault(resource.key, resource)

        logger.debug(
            "Read live state",
            application=self._application,
            requested=len(wanted),
            present=sum(1 for _ in live.present()),
        )
        return live

    async def _gather(self, coros: list[Awaitable[Any]]) -> list[Any]:
        tasks = [asyncio.ensure_future(c) for c in coros]
        try:
            return await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _fetch(self, key: ResourceKey) -> tuple[ResourceKey, LiveResource | Any]:
        async with self._semaphore:
            try:
                obj = await self._client.get(key.kind, key.namespace, key.name)
            except KubernetesError as e:
                raise ClusterUnreachable(f"Failed to read {key}: {e}") from e
        if obj is None:
            return key, ABSENT
        return key, LiveResource(key=key, obj=obj)

    async def _discover(self, kind: str, namespace: str) -> list[LiveResource]:
        selector = f"{INSTANCE_LABEL}={self._application}"
        async with self._semaphore:
            try:
                items = await self._client.list(kind, namespace, label_selector=selector)
            except KubernetesError as e:
                raise ClusterUnreachable(f"Failed to list {kind} in {namespace}: {e}") from e

        resources = []
        for item in items:
            name = (item.get("metadata") or {}).get("name")
            if name:
                key = ResourceKey(kind=kind, namespace=namespace, name=name)
                resources.append(LiveResource(key=key, obj=item))
        return resources

# ABOUTME: Unit tests for the cluster state reader
# ABOUTME: Tests present/absent classification, owned-object discovery and read failures

import pytest
from conftest import FakeCluster, configmap, deployment

from gitops_reconciler.errors import ClusterUnreachable
from gitops_reconciler.models import ABSENT, INSTANCE_LABEL, LiveResource, ResourceKey
from gitops_reconciler.state import ClusterStateReader
from gitops_reconciler.utils.client import KubernetesError

WEB = ResourceKey("Deployment", "shop", "web")
CFG = ResourceKey("ConfigMap", "shop", "cfg")


@pytest.mark.unit
class TestClusterStateReader:
    """Tests for ClusterStateReader.read."""

    async def test_present_and_absent(self, cluster: FakeCluster):
        """Test existing objects are returned with status, missing ones as ABSENT."""
        cluster.seed(deployment("web"))

        live = await ClusterStateReader(cluster, "shop-dev").read([WEB, CFG])

        web = live.get(WEB)
        assert isinstance(web, LiveResource)
        assert web.status["readyReplicas"] == 1
        assert live.get(CFG) is ABSENT
        assert [r.key for r in live.present()] == [WEB]

    async def test_discovers_labelled_objects(self, cluster: FakeCluster):
        """Test objects carrying the instance label are found even if not asked for."""
        cluster.seed(configmap("cfg"))
        cluster.seed(configmap("leftover"), labels={INSTANCE_LABEL: "shop-dev"})
        cluster.seed(configmap("manual"))
        cluster.seed(configmap("other-app"), labels={INSTANCE_LABEL: "shop-prod"})

        live = await ClusterStateReader(cluster, "shop-dev").read([CFG])

        assert {k.name for k in live.keys()} == {"cfg", "leftover"}

    async def test_one_list_per_kind_and_namespace(self, cluster: FakeCluster):
        """Test discovery lists each (kind, namespace) scope once."""
        keys = [CFG, ResourceKey("ConfigMap", "shop", "b"), WEB]

        await ClusterStateReader(cluster, "shop-dev").read(keys)

        lists = sorted(key for method, key in cluster.calls if method == "list")
        assert lists == ["ConfigMap/shop", "Deployment/shop"]

    async def test_duplicate_keys_read_once(self, cluster: FakeCluster):
        await ClusterStateReader(cluster, "shop-dev").read([CFG, CFG])

        assert cluster.calls.count(("get", "ConfigMap/shop/cfg")) == 1

    async def test_unsupported_kinds_skipped(self, cluster: FakeCluster):
        """Test identities of unsupported kinds are not queried."""
        widget = ResourceKey("Widget", "shop", "w")

        live = await ClusterStateReader(cluster, "shop-dev").read([widget])

        assert cluster.calls == []
        assert live.get(widget) is ABSENT

    async def test_api_error_aborts_read(self, cluster: FakeCluster):
        """Test any failure other than not-found makes the whole read fail."""
        cluster.seed(deployment("web"))
        cluster.fail("get", "ConfigMap/shop/cfg", KubernetesError(403, "forbidden"))

        with pytest.raises(ClusterUnreachable, match="Failed to read ConfigMap/shop/cfg"):
            await ClusterStateReader(cluster, "shop-dev").read([WEB, CFG])

    async def test_list_error_aborts_read(self, cluster: FakeCluster):
        cluster.fail("list", "ConfigMap/shop", KubernetesError(500, "etcd unavailable"))

        with pytest.raises(ClusterUnreachable, match="Failed to list ConfigMap in shop"):
            await ClusterStateReader(cluster, "shop-dev").read([CFG])

    async def test_unreachable_cluster(self, cluster: FakeCluster):
        cluster.unreachable = True

        with pytest.raises(ClusterUnreachable):
            await ClusterStateReader(cluster, "shop-dev").read([WEB])

    async def test_concurrency_of_one_still_reads_everything(self, cluster: FakeCluster):
        """Test a semaphore of one serializes reads without deadlocking."""
        for name in ("a", "b", "c"):
            cluster.seed(configmap(name))
        keys = [ResourceKey("ConfigMap", "shop", n) for n in ("a", "b", "c")]

        live = await ClusterStateReader(cluster, "shop-dev", concurrency=1).read(keys)

        assert len(list(live.present())) == 3

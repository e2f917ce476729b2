"""Tests for the Deployment and DaemonSet deployers against an in-memory API."""
import json
from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException

from src.rollout.core.errors import ConfigurationError, DeployerError
from src.rollout.models.schemas import Phase, RolloutStatus, WorkloadKind
from src.rollout.services.deployers.kubernetes import (
    REVISION_ANNOTATION,
    SCALE_TO_ZERO,
    STATUS_ANNOTATION,
    DaemonSetDeployer,
    DeploymentDeployer,
    primary_template,
    referenced_configs,
)


def _not_found():
    return ApiException(status=404, reason="Not Found")


class FakeCluster:
    """Dict-backed stand-in for the apps and core API groups."""

    def __init__(self, resource):
        self.workloads = {}
        self.configs = {}
        self.services = {}
        self.kube = MagicMock()
        self.kube.to_dict = lambda obj: obj

        apps, core = self.kube.apps, self.kube.core
        getattr(apps, f"read_namespaced_{resource}").side_effect = self._read_workload
        getattr(apps, f"create_namespaced_{resource}").side_effect = self._create_workload
        getattr(apps, f"patch_namespaced_{resource}").side_effect = self._patch_workload
        core.read_namespaced_config_map.side_effect = self._read_config
        core.create_namespaced_config_map.side_effect = self._create_config
        core.replace_namespaced_config_map.side_effect = self._replace_config
        core.read_namespaced_service.side_effect = self._read_service
        core.create_namespaced_service.side_effect = self._create_service

    def _read_workload(self, name, namespace):
        if name not in self.workloads:
            raise _not_found()
        return self.workloads[name]

    def _create_workload(self, namespace, body):
        self.workloads[body["metadata"]["name"]] = body

    def _patch_workload(self, name, namespace, body):
        _merge(self.workloads[name], body)

    def _read_config(self, name, namespace):
        if name not in self.configs:
            raise _not_found()
        return self.configs[name]

    def _create_config(self, namespace, body):
        name = body["metadata"]["name"]
        if name in self.configs:
            raise ApiException(status=409, reason="Conflict")
        self.configs[name] = body

    def _replace_config(self, name, namespace, body):
        self.configs[name] = body

    def _read_service(self, name, namespace):
        if name not in self.services:
            raise _not_found()
        return self.services[name]

    def _create_service(self, namespace, body):
        self.services[body["metadata"]["name"]] = body


def _merge(target, patch):
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = value


def _template(image="podinfo:6.0.0"):
    return {
        "metadata": {"labels": {"app": "podinfo"}},
        "spec": {
            "containers": [{
                "name": "podinfo",
                "image": image,
                "envFrom": [{"configMapRef": {"name": "podinfo-env"}}],
            }],
            "volumes": [{"name": "config", "configMap": {"name": "podinfo-files"}}],
        },
    }


def _deployment(name="podinfo", app="podinfo", replicas=2):
    return {
        "metadata": {"name": name, "labels": {"team": "web"}, "annotations": {}, "generation": 1},
        "spec": {"replicas": replicas, "selector": {"matchLabels": {"app": app}}, "template": _template()},
        "status": {"observedGeneration": 1, "updatedReplicas": replicas, "availableReplicas": replicas},
    }


@pytest.fixture
def cluster():
    cluster = FakeCluster("deployment")
    cluster.workloads["podinfo"] = _deployment()
    cluster.configs["podinfo-env"] = {"metadata": {"name": "podinfo-env"}, "data": {"LOG_LEVEL": "info"}}
    cluster.configs["podinfo-files"] = {"metadata": {"name": "podinfo-files"}, "data": {"app.yaml": "a: 1"}}
    return cluster


@pytest.fixture
def spec(spec_factory):
    return spec_factory()


class TestPrimaryTemplate:
    def test_relabels_and_rewires_configs(self, spec):
        template = _template()
        template["spec"]["nodeSelector"] = {SCALE_TO_ZERO: "true", "disk": "ssd"}

        result = primary_template(spec, template)

        assert result["metadata"]["labels"]["app"] == "podinfo-primary"
        assert result["spec"]["containers"][0]["envFrom"][0]["configMapRef"]["name"] == "podinfo-env-primary"
        assert result["spec"]["volumes"][0]["configMap"]["name"] == "podinfo-files-primary"
        assert result["spec"]["nodeSelector"] == {"disk": "ssd"}
        assert template["metadata"]["labels"]["app"] == "podinfo"

    def test_referenced_configs(self):
        template = _template()
        template["spec"]["containers"][0]["env"] = [
            {"name": "TOKEN", "valueFrom": {"secretKeyRef": {"name": "api-token", "key": "token"}}},
        ]
        assert referenced_configs(template) == {
            ("ConfigMap", "podinfo-env"),
            ("ConfigMap", "podinfo-files"),
            ("Secret", "api-token"),
        }


class TestDeploymentDeployer:
    @pytest.mark.asyncio
    async def test_initialize_creates_primary_configs_and_services(self, cluster, spec):
        deployer = DeploymentDeployer(cluster.kube)

        await deployer.initialize(spec)

        primary = cluster.workloads["podinfo-primary"]
        assert primary["spec"]["selector"] == {"matchLabels": {"app": "podinfo-primary"}}
        assert primary["metadata"]["labels"] == {"team": "web", "app": "podinfo-primary"}
        assert cluster.configs["podinfo-env-primary"]["data"] == {"LOG_LEVEL": "info"}
        assert set(cluster.services) == {"podinfo", "podinfo-primary", "podinfo-canary"}
        assert cluster.services["podinfo"]["spec"]["selector"] == {"app": "podinfo-primary"}
        assert cluster.services["podinfo-canary"]["spec"]["selector"] == {"app": "podinfo"}
        assert await deployer.is_promoted(spec)

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, cluster, spec):
        deployer = DeploymentDeployer(cluster.kube)
        await deployer.initialize(spec)
        await deployer.initialize(spec)

        assert cluster.kube.apps.create_namespaced_deployment.call_count == 1
        assert cluster.kube.core.create_namespaced_service.call_count == 3

    @pytest.mark.asyncio
    async def test_wrong_selector_is_a_configuration_error(self, cluster, spec):
        cluster.workloads["podinfo"] = _deployment(app="something-else")
        with pytest.raises(ConfigurationError, match="app=podinfo"):
            await DeploymentDeployer(cluster.kube).initialize(spec)

    @pytest.mark.asyncio
    async def test_missing_canary(self, cluster, spec):
        del cluster.workloads["podinfo"]
        with pytest.raises(DeployerError, match="not found"):
            await DeploymentDeployer(cluster.kube).initialize(spec)

    @pytest.mark.asyncio
    async def test_config_change_is_a_new_revision(self, cluster, spec):
        deployer = DeploymentDeployer(cluster.kube)
        await deployer.initialize(spec)
        before = await deployer.get_revision(spec)

        cluster.configs["podinfo-env"]["data"] = {"LOG_LEVEL": "debug"}
        after = await deployer.get_revision(spec)

        assert after.spec_hash == before.spec_hash
        assert after.config_hash != before.config_hash
        assert not await deployer.is_promoted(spec)

    @pytest.mark.asyncio
    async def test_promote_copies_template_and_config(self, cluster, spec):
        deployer = DeploymentDeployer(cluster.kube)
        await deployer.initialize(spec)

        cluster.workloads["podinfo"]["spec"]["template"] = _template(image="podinfo:6.1.0")
        cluster.configs["podinfo-env"]["data"] = {"LOG_LEVEL": "debug"}
        assert not await deployer.is_promoted(spec)

        await deployer.promote(spec)

        primary = cluster.workloads["podinfo-primary"]
        assert primary["spec"]["template"]["spec"]["containers"][0]["image"] == "podinfo:6.1.0"
        assert cluster.configs["podinfo-env-primary"]["data"] == {"LOG_LEVEL": "debug"}
        assert REVISION_ANNOTATION in primary["metadata"]["annotations"]
        assert await deployer.is_promoted(spec)

    @pytest.mark.asyncio
    async def test_readiness(self, cluster, spec):
        deployer = DeploymentDeployer(cluster.kube)
        assert await deployer.is_canary_ready(spec)

        cluster.workloads["podinfo"]["status"]["availableReplicas"] = 1
        assert not await deployer.is_canary_ready(spec)

        cluster.workloads["podinfo"]["metadata"]["generation"] = 2
        cluster.workloads["podinfo"]["status"]["availableReplicas"] = 2
        assert not await deployer.is_canary_ready(spec)

    @pytest.mark.asyncio
    async def test_scaled_down_canary_is_not_ready(self, cluster, spec):
        deployer = DeploymentDeployer(cluster.kube)
        await deployer.scale_canary(spec, 0)

        assert cluster.workloads["podinfo"]["spec"]["replicas"] == 0
        assert not await deployer.is_canary_ready(spec)

    @pytest.mark.asyncio
    async def test_status_annotation(self, cluster, spec):
        deployer = DeploymentDeployer(cluster.kube)
        assert (await deployer.get_status(spec)).phase is Phase.INITIALIZING

        await deployer.sync_status(spec, RolloutStatus(phase=Phase.PROGRESSING, canary_weight=20))

        raw = cluster.workloads["podinfo"]["metadata"]["annotations"][STATUS_ANNOTATION]
        assert json.loads(raw)["canaryWeight"] == 20
        status = await deployer.get_status(spec)
        assert status.phase is Phase.PROGRESSING
        assert status.canary_weight == 20

    @pytest.mark.asyncio
    async def test_unreadable_status_starts_over(self, cluster, spec):
        cluster.workloads["podinfo"]["metadata"]["annotations"][STATUS_ANNOTATION] = "{not json"
        status = await DeploymentDeployer(cluster.kube).get_status(spec)
        assert status == RolloutStatus()

    @pytest.mark.asyncio
    async def test_api_error_is_a_deployer_error(self, cluster, spec):
        cluster.kube.apps.read_namespaced_deployment.side_effect = ApiException(status=500, reason="Internal")
        with pytest.raises(DeployerError, match="Internal"):
            await DeploymentDeployer(cluster.kube).get_status(spec)


class TestDaemonSetDeployer:
    @pytest.fixture
    def daemonset_cluster(self):
        cluster = FakeCluster("daemon_set")
        cluster.workloads["podinfo"] = {
            "metadata": {"name": "podinfo", "annotations": {}, "generation": 1},
            "spec": {"selector": {"matchLabels": {"app": "podinfo"}}, "template": {
                "metadata": {"labels": {"app": "podinfo"}},
                "spec": {"containers": [{"name": "podinfo", "image": "podinfo:6.0.0"}]},
            }},
            "status": {
                "observedGeneration": 1,
                "desiredNumberScheduled": 3,
                "updatedNumberScheduled": 3,
                "numberUnavailable": 0,
            },
        }
        return cluster

    @pytest.mark.asyncio
    async def test_scale_to_zero_keeps_revision(self, daemonset_cluster, spec_factory):
        spec = spec_factory().model_copy(update={"kind": WorkloadKind.DAEMONSET})
        deployer = DaemonSetDeployer(daemonset_cluster.kube)
        before = await deployer.get_revision(spec)

        await deployer.scale_canary(spec, 0)

        template = daemonset_cluster.workloads["podinfo"]["spec"]["template"]
        assert template["spec"]["nodeSelector"] == {SCALE_TO_ZERO: "true"}
        assert await deployer.get_revision(spec) == before

        await deployer.scale_canary(spec, 1)
        assert SCALE_TO_ZERO not in template["spec"]["nodeSelector"]

    @pytest.mark.asyncio
    async def test_readiness(self, daemonset_cluster, spec_factory):
        spec = spec_factory()
        deployer = DaemonSetDeployer(daemonset_cluster.kube)
        assert await deployer.is_canary_ready(spec)

        daemonset_cluster.workloads["podinfo"]["status"]["numberUnavailable"] = 1
        assert not await deployer.is_canary_ready(spec)

        daemonset_cluster.workloads["podinfo"]["status"]["desiredNumberScheduled"] = 0
        assert not await deployer.is_canary_ready(spec)

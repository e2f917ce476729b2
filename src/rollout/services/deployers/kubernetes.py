"""Kubernetes workload deployers.

The user-managed workload (``<target>``) is the canary. The controller owns a
``<target>-primary`` copy that serves production traffic, plus
``<target>-primary`` copies of every ConfigMap and Secret the pod template
references. Promotion copies the canary template and config into the primary.

Rollout status is persisted as a JSON annotation on the canary workload.
"""
import asyncio
import copy
import hashlib
import json
from typing import Any, Dict, Iterator, Optional, Set, Tuple

from kubernetes.client.rest import ApiException
from loguru import logger
from pydantic import ValidationError

from src.rollout.core.errors import ConfigurationError, DeployerError
from src.rollout.models.schemas import RolloutSpec, RolloutStatus
from src.rollout.services.base import Deployer, Revision

SELECTOR_LABEL = "app"
STATUS_ANNOTATION = "rollout.io/status"
REVISION_ANNOTATION = "rollout.io/revision"
SCALE_TO_ZERO = "rollout.io/scale-to-zero"

CONFIG_MAP = "ConfigMap"
SECRET = "Secret"


def _hash(obj: Any) -> str:
    text = json.dumps(obj, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def config_refs(template: Dict[str, Any]) -> Iterator[Tuple[str, Dict[str, Any], str]]:
    """Yield ``(kind, holder, key)`` for every config reference of a pod template.

    ``holder[key]`` is the referenced object's name, so callers can both read
    and rewrite it.
    """
    pod = template.get("spec") or {}
    for volume in pod.get("volumes") or []:
        if volume.get("configMap"):
            yield CONFIG_MAP, volume["configMap"], "name"
        if volume.get("secret"):
            yield SECRET, volume["secret"], "secretName"

    containers = (pod.get("containers") or []) + (pod.get("initContainers") or [])
    for container in containers:
        for source in container.get("envFrom") or []:
            if source.get("configMapRef"):
                yield CONFIG_MAP, source["configMapRef"], "name"
            if source.get("secretRef"):
                yield SECRET, source["secretRef"], "name"
        for env in container.get("env") or []:
            value_from = env.get("valueFrom") or {}
            if value_from.get("configMapKeyRef"):
                yield CONFIG_MAP, value_from["configMapKeyRef"], "name"
            if value_from.get("secretKeyRef"):
                yield SECRET, value_from["secretKeyRef"], "name"


def referenced_configs(template: Dict[str, Any]) -> Set[Tuple[str, str]]:
    return {(kind, holder[key]) for kind, holder, key in config_refs(template) if holder.get(key)}


def primary_template(spec: RolloutSpec, canary_template: Dict[str, Any]) -> Dict[str, Any]:
    """The canary pod template relabelled and rewired to the primary config copies."""
    template = copy.deepcopy(canary_template)
    metadata = template.setdefault("metadata", {})
    labels = metadata.setdefault("labels", {})
    labels[SELECTOR_LABEL] = spec.primary_name

    node_selector = (template.get("spec") or {}).get("nodeSelector")
    if node_selector:
        node_selector.pop(SCALE_TO_ZERO, None)

    for _, holder, key in config_refs(template):
        if holder.get(key):
            holder[key] = f"{holder[key]}-primary"
    return template


class KubernetesDeployer(Deployer):
    """Shared behaviour of the Deployment and DaemonSet deployers."""

    kind = ""
    resource = ""  # suffix of the AppsV1Api method names

    def __init__(self, kube):
        """
        Args:
            kube: KubeClients (``apps``/``core`` APIs and ``to_dict``)
        """
        self.kube = kube

    # -- API plumbing ------------------------------------------------------

    async def _api(self, api, method: str, **kwargs) -> Any:
        return await asyncio.to_thread(getattr(api, method), **kwargs)

    async def _read(self, name: str, namespace: str) -> Optional[Dict[str, Any]]:
        try:
            obj = await self._api(self.kube.apps, f"read_namespaced_{self.resource}",
                                  name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise DeployerError(f"reading {self.kind} {namespace}/{name} failed: {e.reason}") from e
        return self.kube.to_dict(obj)

    async def _require(self, name: str, namespace: str) -> Dict[str, Any]:
        obj = await self._read(name, namespace)
        if obj is None:
            raise DeployerError(f"{self.kind} {namespace}/{name} not found")
        return obj

    async def _patch(self, name: str, namespace: str, body: Dict[str, Any]) -> None:
        try:
            await self._api(self.kube.apps, f"patch_namespaced_{self.resource}",
                            name=name, namespace=namespace, body=body)
        except ApiException as e:
            raise DeployerError(f"patching {self.kind} {namespace}/{name} failed: {e.reason}") from e

    async def _canary(self, spec: RolloutSpec) -> Dict[str, Any]:
        return await self._require(spec.target_name, spec.namespace)

    async def _primary(self, spec: RolloutSpec) -> Dict[str, Any]:
        return await self._require(spec.primary_name, spec.namespace)

    # -- config copies -----------------------------------------------------

    async def _read_config(self, kind: str, name: str, namespace: str) -> Dict[str, Any]:
        method = "read_namespaced_config_map" if kind == CONFIG_MAP else "read_namespaced_secret"
        try:
            obj = await self._api(self.kube.core, method, name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                raise DeployerError(f"{kind} {namespace}/{name} referenced by the canary not found") from e
            raise DeployerError(f"reading {kind} {namespace}/{name} failed: {e.reason}") from e
        return self.kube.to_dict(obj)

    async def _config_data(self, template: Dict[str, Any], namespace: str) -> Dict[str, Any]:
        data = {}
        for kind, name in sorted(referenced_configs(template)):
            obj = await self._read_config(kind, name, namespace)
            data[f"{kind}/{name}"] = {"data": obj.get("data") or {}, "binaryData": obj.get("binaryData") or {}}
        return data

    async def _copy_configs(self, spec: RolloutSpec, template: Dict[str, Any]) -> None:
        """Create or replace the ``-primary`` copy of every referenced config."""
        for kind, name in sorted(referenced_configs(template)):
            source = await self._read_config(kind, name, spec.namespace)
            body = {
                "metadata": {
                    "name": f"{name}-primary",
                    "namespace": spec.namespace,
                    "labels": (source.get("metadata") or {}).get("labels") or {},
                },
                "data": source.get("data") or {},
            }
            if source.get("binaryData"):
                body["binaryData"] = source["binaryData"]
            if kind == SECRET:
                body["type"] = source.get("type", "Opaque")

            suffix = "config_map" if kind == CONFIG_MAP else "secret"
            try:
                await self._api(self.kube.core, f"create_namespaced_{suffix}",
                                namespace=spec.namespace, body=body)
            except ApiException as e:
                if e.status != 409:
                    raise DeployerError(f"copying {kind} {spec.namespace}/{name} failed: {e.reason}") from e
                try:
                    await self._api(self.kube.core, f"replace_namespaced_{suffix}",
                                    name=f"{name}-primary", namespace=spec.namespace, body=body)
                except ApiException as e2:
                    raise DeployerError(
                        f"updating {kind} {spec.namespace}/{name}-primary failed: {e2.reason}"
                    ) from e2

    # -- services ----------------------------------------------------------

    async def _ensure_service(self, spec: RolloutSpec, name: str, selector: str) -> None:
        try:
            await self._api(self.kube.core, "read_namespaced_service", name=name, namespace=spec.namespace)
            return
        except ApiException as e:
            if e.status != 404:
                raise DeployerError(f"reading Service {spec.namespace}/{name} failed: {e.reason}") from e

        body = {
            "metadata": {"name": name, "namespace": spec.namespace, "labels": {SELECTOR_LABEL: name}},
            "spec": {
                "type": "ClusterIP",
                "selector": {SELECTOR_LABEL: selector},
                "ports": [{"name": "http", "port": spec.service.port,
                           "targetPort": spec.service.port, "protocol": "TCP"}],
            },
        }
        try:
            await self._api(self.kube.core, "create_namespaced_service", namespace=spec.namespace, body=body)
        except ApiException as e:
            raise DeployerError(f"creating Service {spec.namespace}/{name} failed: {e.reason}") from e
        logger.info(f"Service {spec.namespace}/{name} created")

    # -- Deployer ----------------------------------------------------------

    def _check_selector(self, spec: RolloutSpec, canary: Dict[str, Any]) -> None:
        labels = ((canary.get("spec") or {}).get("selector") or {}).get("matchLabels") or {}
        if labels.get(SELECTOR_LABEL) != spec.target_name:
            raise ConfigurationError(
                f"{self.kind} {spec.namespace}/{spec.target_name} must select pods with "
                f"label {SELECTOR_LABEL}={spec.target_name}"
            )

    def _primary_spec(self, spec: RolloutSpec, canary: Dict[str, Any]) -> Dict[str, Any]:
        body_spec = copy.deepcopy(canary.get("spec") or {})
        body_spec["selector"] = {"matchLabels": {SELECTOR_LABEL: spec.primary_name}}
        body_spec["template"] = primary_template(spec, body_spec.get("template") or {})
        return body_spec

    async def initialize(self, spec: RolloutSpec) -> None:
        canary = await self._canary(spec)
        self._check_selector(spec, canary)

        if await self._read(spec.primary_name, spec.namespace) is None:
            template = (canary.get("spec") or {}).get("template") or {}
            await self._copy_configs(spec, template)
            revision = await self._revision_of(canary, spec.namespace)

            labels = dict((canary.get("metadata") or {}).get("labels") or {})
            labels[SELECTOR_LABEL] = spec.primary_name
            body = {
                "apiVersion": "apps/v1",
                "kind": self.kind,
                "metadata": {
                    "name": spec.primary_name,
                    "namespace": spec.namespace,
                    "labels": labels,
                    "annotations": {REVISION_ANNOTATION: self._revision_value(revision)},
                },
                "spec": self._primary_spec(spec, canary),
            }
            self._prepare_primary(body["spec"], canary)
            try:
                await self._api(self.kube.apps, f"create_namespaced_{self.resource}",
                                namespace=spec.namespace, body=body)
            except ApiException as e:
                raise DeployerError(
                    f"creating {self.kind} {spec.namespace}/{spec.primary_name} failed: {e.reason}"
                ) from e
            logger.info(f"{self.kind} {spec.namespace}/{spec.primary_name} created")

        await self._ensure_service(spec, f"{spec.target_name}-primary", spec.primary_name)
        await self._ensure_service(spec, f"{spec.target_name}-canary", spec.target_name)
        await self._ensure_service(spec, spec.target_name, spec.primary_name)

    def _prepare_primary(self, body_spec: Dict[str, Any], canary: Dict[str, Any]) -> None:
        """Kind specific adjustments of a new primary spec."""

    def _template_for_hash(self, template: Dict[str, Any]) -> Dict[str, Any]:
        return template

    async def _revision_of(self, canary: Dict[str, Any], namespace: str) -> Revision:
        template = (canary.get("spec") or {}).get("template") or {}
        return Revision(
            spec_hash=_hash(self._template_for_hash(template)),
            config_hash=_hash(await self._config_data(template, namespace)),
        )

    @staticmethod
    def _revision_value(revision: Revision) -> str:
        return f"{revision.spec_hash}.{revision.config_hash}"

    async def get_revision(self, spec: RolloutSpec) -> Revision:
        return await self._revision_of(await self._canary(spec), spec.namespace)

    async def is_promoted(self, spec: RolloutSpec) -> bool:
        revision = await self.get_revision(spec)
        primary = await self._primary(spec)
        annotations = (primary.get("metadata") or {}).get("annotations") or {}
        return annotations.get(REVISION_ANNOTATION) == self._revision_value(revision)

    async def promote(self, spec: RolloutSpec) -> None:
        canary = await self._canary(spec)
        await self._primary(spec)
        template = (canary.get("spec") or {}).get("template") or {}

        await self._copy_configs(spec, template)
        revision = await self._revision_of(canary, spec.namespace)

        body = {
            "metadata": {"annotations": {REVISION_ANNOTATION: self._revision_value(revision)}},
            "spec": {"template": primary_template(spec, template)},
        }
        await self._patch(spec.primary_name, spec.namespace, body)
        logger.info(f"{self.kind} {spec.namespace}/{spec.primary_name} promoted to revision {revision.spec_hash}")

    async def is_primary_ready(self, spec: RolloutSpec) -> bool:
        return self._is_ready(await self._primary(spec), allow_empty=True)

    async def is_canary_ready(self, spec: RolloutSpec) -> bool:
        return self._is_ready(await self._canary(spec), allow_empty=False)

    def _is_ready(self, obj: Dict[str, Any], allow_empty: bool) -> bool:
        raise NotImplementedError

    async def get_status(self, spec: RolloutSpec) -> RolloutStatus:
        canary = await self._canary(spec)
        raw = ((canary.get("metadata") or {}).get("annotations") or {}).get(STATUS_ANNOTATION)
        if not raw:
            return RolloutStatus()
        try:
            return RolloutStatus.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable status of {spec.key}: {e}")
            return RolloutStatus()

    async def sync_status(self, spec: RolloutSpec, status: RolloutStatus) -> None:
        value = json.dumps(status.to_dict(), separators=(",", ":"))
        await self._patch(spec.target_name, spec.namespace,
                          {"metadata": {"annotations": {STATUS_ANNOTATION: value}}})


def _generation_observed(obj: Dict[str, Any]) -> bool:
    generation = (obj.get("metadata") or {}).get("generation") or 0
    observed = (obj.get("status") or {}).get("observedGeneration") or 0
    return observed >= generation


class DeploymentDeployer(KubernetesDeployer):
    kind = "Deployment"
    resource = "deployment"

    def _prepare_primary(self, body_spec: Dict[str, Any], canary: Dict[str, Any]) -> None:
        body_spec["replicas"] = body_spec.get("replicas") or 1

    def _is_ready(self, obj: Dict[str, Any], allow_empty: bool) -> bool:
        if not _generation_observed(obj):
            return False
        desired = (obj.get("spec") or {}).get("replicas")
        desired = 1 if desired is None else desired
        status = obj.get("status") or {}
        if desired == 0:
            return allow_empty
        updated = status.get("updatedReplicas") or 0
        available = status.get("availableReplicas") or 0
        return updated >= desired and available >= desired

    async def scale_canary(self, spec: RolloutSpec, replicas: int) -> None:
        await self._patch(spec.target_name, spec.namespace, {"spec": {"replicas": replicas}})
        logger.debug(f"Deployment {spec.namespace}/{spec.target_name} scaled to {replicas}")


class DaemonSetDeployer(KubernetesDeployer):
    """DaemonSets cannot scale; the canary is emptied with an unsatisfiable node selector."""

    kind = "DaemonSet"
    resource = "daemon_set"

    def _template_for_hash(self, template: Dict[str, Any]) -> Dict[str, Any]:
        node_selector = (template.get("spec") or {}).get("nodeSelector") or {}
        if SCALE_TO_ZERO not in node_selector:
            return template
        template = copy.deepcopy(template)
        template["spec"]["nodeSelector"].pop(SCALE_TO_ZERO)
        if not template["spec"]["nodeSelector"]:
            del template["spec"]["nodeSelector"]
        return template

    def _is_ready(self, obj: Dict[str, Any], allow_empty: bool) -> bool:
        if not _generation_observed(obj):
            return False
        status = obj.get("status") or {}
        desired = status.get("desiredNumberScheduled") or 0
        if desired == 0:
            return allow_empty
        updated = status.get("updatedNumberScheduled") or 0
        unavailable = status.get("numberUnavailable") or 0
        return updated >= desired and unavailable == 0

    async def scale_canary(self, spec: RolloutSpec, replicas: int) -> None:
        value = "true" if replicas == 0 else None
        body = {"spec": {"template": {"spec": {"nodeSelector": {SCALE_TO_ZERO: value}}}}}
        await self._patch(spec.target_name, spec.namespace, body)
        logger.debug(f"DaemonSet {spec.namespace}/{spec.target_name} "
                     f"{'scaled to zero' if replicas == 0 else 'scaled up'}")


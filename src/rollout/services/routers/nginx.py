"""NGINX ingress traffic router.

The router clones the rollout's ingress into ``<ingress>-canary`` pointing at
the canary service and steers traffic with the ingress-nginx canary
annotations: ``canary-weight`` for weighted rollouts, ``canary-by-header`` /
``canary-by-cookie`` for iteration (A/B) rollouts.
"""
import asyncio
import copy
from typing import Any, Dict, Optional

from kubernetes.client.rest import ApiException
from loguru import logger

from src.rollout.core.errors import ConfigurationError, RouterError
from src.rollout.models.schemas import HeaderMatch, RolloutSpec
from src.rollout.models.traffic import Route
from src.rollout.services.base import TrafficRouter

ANNOTATION_PREFIX = "nginx.ingress.kubernetes.io"
CANARY = f"{ANNOTATION_PREFIX}/canary"
CANARY_WEIGHT = f"{ANNOTATION_PREFIX}/canary-weight"
CANARY_BY_HEADER = f"{ANNOTATION_PREFIX}/canary-by-header"
CANARY_BY_HEADER_VALUE = f"{ANNOTATION_PREFIX}/canary-by-header-value"
CANARY_BY_HEADER_PATTERN = f"{ANNOTATION_PREFIX}/canary-by-header-pattern"
CANARY_BY_COOKIE = f"{ANNOTATION_PREFIX}/canary-by-cookie"

MATCH_ANNOTATIONS = (CANARY_BY_HEADER, CANARY_BY_HEADER_VALUE, CANARY_BY_HEADER_PATTERN, CANARY_BY_COOKIE)


def canary_ingress_name(spec: RolloutSpec) -> str:
    return f"{spec.ingress_name}-canary"


def match_annotations(match: Optional[HeaderMatch]) -> Dict[str, Optional[str]]:
    """Annotations routing requests that satisfy ``match`` to the canary.

    Keys mapped to None are removed by the merge patch.
    """
    annotations: Dict[str, Optional[str]] = {key: None for key in MATCH_ANNOTATIONS}
    if match is None:
        return annotations
    if match.cookie:
        annotations[CANARY_BY_COOKIE] = match.cookie
    if match.header:
        annotations[CANARY_BY_HEADER] = match.header
        if match.exact:
            annotations[CANARY_BY_HEADER_VALUE] = match.exact
        elif match.regex:
            annotations[CANARY_BY_HEADER_PATTERN] = match.regex
    return annotations


class NginxRouter(TrafficRouter):
    """Traffic split through ingress-nginx canary annotations."""

    def __init__(self, kube, ingress_class: str = "nginx"):
        """
        Args:
            kube: KubeClients (``networking`` API and ``to_dict``)
            ingress_class: Ingress class set on the canary ingress
        """
        self.kube = kube
        self.ingress_class = ingress_class

    async def _read(self, name: str, namespace: str) -> Optional[Dict[str, Any]]:
        try:
            obj = await asyncio.to_thread(
                self.kube.networking.read_namespaced_ingress, name=name, namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise RouterError(f"reading ingress {namespace}/{name} failed: {e.reason}") from e
        return self.kube.to_dict(obj)

    def _canary_body(self, spec: RolloutSpec, apex: Dict[str, Any]) -> Dict[str, Any]:
        canary_service = f"{spec.target_name}-canary"
        body_spec = copy.deepcopy(apex.get("spec") or {})
        body_spec["ingressClassName"] = self.ingress_class

        default_backend = body_spec.get("defaultBackend")
        if default_backend and default_backend.get("service"):
            default_backend["service"]["name"] = canary_service

        for rule in body_spec.get("rules") or []:
            for path in (rule.get("http") or {}).get("paths") or []:
                service = (path.get("backend") or {}).get("service")
                if service:
                    service["name"] = canary_service

        return {
            "apiVersion": "networking.k8s.io/v1",
            "kind": "Ingress",
            "metadata": {
                "name": canary_ingress_name(spec),
                "namespace": spec.namespace,
                "labels": (apex.get("metadata") or {}).get("labels") or {},
                "annotations": {CANARY: "true", CANARY_WEIGHT: "0"},
            },
            "spec": body_spec,
        }

    async def reconcile(self, spec: RolloutSpec) -> None:
        """Create or update the canary ingress from the rollout's ingress.

        Raises:
            ConfigurationError: Mirroring requested, or the ingress does not exist
            RouterError: The Kubernetes API call failed
        """
        if spec.analysis.mirror:
            raise ConfigurationError("the nginx router does not support traffic mirroring")

        apex = await self._read(spec.ingress_name, spec.namespace)
        if apex is None:
            raise ConfigurationError(f"ingress {spec.namespace}/{spec.ingress_name} not found")

        body = self._canary_body(spec, apex)
        name = canary_ingress_name(spec)
        current = await self._read(name, spec.namespace)

        try:
            if current is None:
                await asyncio.to_thread(
                    self.kube.networking.create_namespaced_ingress,
                    namespace=spec.namespace,
                    body=body,
                )
                logger.info(f"Ingress {spec.namespace}/{name} created")
            elif current.get("spec") != body["spec"]:
                # Keep the live canary annotations, only the routing spec is reconciled
                await asyncio.to_thread(
                    self.kube.networking.patch_namespaced_ingress,
                    name=name,
                    namespace=spec.namespace,
                    body={"spec": body["spec"]},
                )
                logger.info(f"Ingress {spec.namespace}/{name} updated")
        except ApiException as e:
            raise RouterError(f"reconciling ingress {spec.namespace}/{name} failed: {e.reason}") from e

    async def get_routes(self, spec: RolloutSpec) -> Route:
        name = canary_ingress_name(spec)
        ingress = await self._read(name, spec.namespace)
        if ingress is None:
            raise RouterError(f"ingress {spec.namespace}/{name} not found")

        annotations = (ingress.get("metadata") or {}).get("annotations") or {}
        if annotations.get(CANARY_BY_HEADER) or annotations.get(CANARY_BY_COOKIE):
            return Route.with_canary(100)

        raw = annotations.get(CANARY_WEIGHT, "0")
        try:
            weight = int(raw)
        except ValueError:
            raise RouterError(f"ingress {spec.namespace}/{name} has invalid canary weight {raw!r}") from None
        return Route.with_canary(max(0, min(100, weight)))

    async def set_routes(self, spec: RolloutSpec, route: Route) -> None:
        if route.mirrored:
            raise ConfigurationError("the nginx router does not support traffic mirroring")

        if spec.analysis.match and route.canary > 0:
            annotations = match_annotations(spec.analysis.match[0])
            annotations[CANARY_WEIGHT] = None
        else:
            annotations = match_annotations(None)
            annotations[CANARY_WEIGHT] = str(route.canary)
        annotations[CANARY] = "true"

        name = canary_ingress_name(spec)
        try:
            await asyncio.to_thread(
                self.kube.networking.patch_namespaced_ingress,
                name=name,
                namespace=spec.namespace,
                body={"metadata": {"annotations": annotations}},
            )
        except ApiException as e:
            raise RouterError(f"updating routes of {spec.namespace}/{name} failed: {e.reason}") from e
        logger.debug(f"Ingress {spec.namespace}/{name} routes set to {route}")

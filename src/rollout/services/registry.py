"""Wiring of collaborators from settings."""
from typing import Dict, Optional

from loguru import logger

from src.rollout.core.config import Settings
from src.rollout.deployment.analysis import MetricAnalyzer
from src.rollout.deployment.controller import Controller
from src.rollout.deployment.scheduler import Scheduler
from src.rollout.models.schemas import WorkloadKind
from src.rollout.services.base import MetricProvider, Notifier
from src.rollout.services.deployers.kubernetes import DaemonSetDeployer, DeploymentDeployer
from src.rollout.services.kube import KubeClients
from src.rollout.services.notifiers.dispatcher import AlertDispatcher
from src.rollout.services.notifiers.webhook import SlackNotifier, WebhookNotifier
from src.rollout.services.providers.cloudwatch import CloudWatchProvider
from src.rollout.services.providers.prometheus import PrometheusProvider
from src.rollout.services.routers.nginx import NginxRouter


def build_providers(settings: Settings) -> Dict[str, MetricProvider]:
    providers: Dict[str, MetricProvider] = {
        "prometheus": PrometheusProvider(settings.PROMETHEUS_URL, timeout=settings.COLLABORATOR_TIMEOUT_SECONDS),
    }
    if settings.CLOUDWATCH_ADDRESS:
        providers["cloudwatch"] = CloudWatchProvider(
            settings.CLOUDWATCH_ADDRESS, metric_interval=settings.CLOUDWATCH_METRIC_INTERVAL
        )
    return providers


def build_notifiers(settings: Settings) -> Dict[str, Notifier]:
    notifiers: Dict[str, Notifier] = {}
    if settings.SLACK_WEBHOOK_URL:
        notifiers["slack"] = SlackNotifier(
            "slack",
            settings.SLACK_WEBHOOK_URL,
            channel=settings.SLACK_CHANNEL,
            username=settings.SLACK_USERNAME,
            timeout=settings.COLLABORATOR_TIMEOUT_SECONDS,
        )
    if settings.WEBHOOK_URL:
        notifiers["webhook"] = WebhookNotifier(
            "webhook", settings.WEBHOOK_URL, timeout=settings.COLLABORATOR_TIMEOUT_SECONDS
        )
    return notifiers


def build_scheduler(settings: Settings, kube: Optional[KubeClients] = None) -> Scheduler:
    """Build the scheduler and every collaborator it drives."""
    kube = kube or KubeClients(in_cluster=settings.K8S_IN_CLUSTER, context=settings.K8S_CONTEXT)
    timeout = settings.COLLABORATOR_TIMEOUT_SECONDS

    providers = build_providers(settings)
    notifiers = build_notifiers(settings)
    controller = Controller(
        deployers={
            WorkloadKind.DEPLOYMENT: DeploymentDeployer(kube),
            WorkloadKind.DAEMONSET: DaemonSetDeployer(kube),
        },
        routers={"nginx": NginxRouter(kube, ingress_class=settings.INGRESS_CLASS)},
        analyzer=MetricAnalyzer(providers, timeout=timeout),
        dispatcher=AlertDispatcher(notifiers, timeout=timeout),
        timeout=timeout,
    )
    logger.info(
        f"Controller wired: providers={sorted(providers)} notifiers={sorted(notifiers)}"
    )
    return Scheduler(controller, max_concurrency=settings.MAX_CONCURRENT_TICKS)

"""
kopf wiring for the PolicyGuard controller.

Watch events only feed the policy index and enqueue keys; all convergence
work happens in the reconcilers, driven by one WorkQueue per primary kind.
"""

import asyncio
from typing import Any, Dict, List, Mapping, Optional

import kopf
from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from prometheus_client import start_http_server

from policyguard.constants import (API_GROUP, API_VERSION,
                                   PLURAL_ADMISSION_POLICIES,
                                   PLURAL_CLUSTER_ADMISSION_POLICIES,
                                   PLURAL_POLICY_SERVERS, POLICY_SERVER_LABEL,
                                   WEBHOOK_MARKER_LABEL)
from policyguard.controllers import (EventRouter, PolicyReconciler,
                                     PolicyServerReconciler, StatusWriter,
                                     policy_server_requests_for_policy)
from policyguard.core.config import Settings, get_settings
from policyguard.core.logging import get_logger, setup_logging
from policyguard.models.resources import (CONFIG_MAP, POD,
                                          MUTATING_WEBHOOK_CONFIGURATION,
                                          VALIDATING_WEBHOOK_CONFIGURATION,
                                          Policy, PolicyScope,
                                          ReconcileRequest)
from policyguard.repositories.index import PolicyIndex
from policyguard.repositories.store import ResourceStore
from policyguard.services.admission import AdmissionReconciler
from policyguard.workqueue import WorkQueue

logger = get_logger(__name__)


class Manager:
    """Owns the index, reconcilers, routers and work queues"""

    def __init__(self, store: ResourceStore, settings: Settings):
        self.index = PolicyIndex()
        admission = AdmissionReconciler(
            store, settings.namespace, settings.policy_server_image
        )
        status_writer = StatusWriter(store)

        policy_server_reconciler = PolicyServerReconciler(
            store, self.index, admission, status_writer
        )
        self.policy_server_queue = self._queue(
            policy_server_reconciler.controller_name,
            policy_server_reconciler.reconcile,
            settings,
        )

        self.routers: Dict[PolicyScope, EventRouter] = {}
        self.policy_queues: Dict[PolicyScope, WorkQueue] = {}
        for scope in PolicyScope:
            reconciler = PolicyReconciler(scope, store, admission, status_writer)
            self.routers[scope] = EventRouter(scope, store, settings.namespace)
            self.policy_queues[scope] = self._queue(
                reconciler.controller_name, reconciler.reconcile, settings
            )

        self._tasks: List[asyncio.Task] = []

    @staticmethod
    def _queue(name, reconcile, settings: Settings) -> WorkQueue:
        return WorkQueue(
            name,
            reconcile,
            workers=settings.worker_count,
            base_delay=settings.requeue_base_delay,
            max_delay=settings.requeue_max_delay,
        )

    def queues(self) -> List[WorkQueue]:
        return [self.policy_server_queue, *self.policy_queues.values()]

    def start(self) -> None:
        self._tasks = [asyncio.create_task(queue.run()) for queue in self.queues()]

    async def stop(self) -> None:
        for queue in self.queues():
            await queue.shutdown()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    def policy_changed(self, event_type: Optional[str], body: Mapping[str, Any]):
        self.index.update(event_type, body)
        policy = Policy.from_body(body)
        identity = policy.identity
        self.policy_queues[policy.scope].add(
            ReconcileRequest(name=identity.name, namespace=identity.namespace)
        )
        for request in policy_server_requests_for_policy(body):
            self.policy_server_queue.add(request)

    async def route(self, body: Mapping[str, Any], kind: str = None) -> None:
        for scope, router in self.routers.items():
            # The pod route reads the correlation payload from the API
            requests = await asyncio.to_thread(router.route, body, kind)
            for request in requests:
                self.policy_queues[scope].add(request)


manager: Optional[Manager] = None


def load_kubernetes_config() -> None:
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes config")


# ============================================================================
# STARTUP AND SHUTDOWN
# ============================================================================


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_):
    """Configure kopf settings"""
    app_settings = get_settings()
    setup_logging(app_settings)

    settings.posting.enabled = False
    settings.watching.server_timeout = 300
    settings.watching.client_timeout = 310
    settings.watching.connect_timeout = 10
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix="policyguard.io"
    )
    settings.execution.max_workers = app_settings.worker_count
    settings.batching.idle_timeout = 1.0
    settings.batching.batch_window = 0.5

    logger.info("Kopf configured")


@kopf.on.startup()
async def startup_handler(**kwargs):
    """Build the manager and start the reconcile workers"""
    global manager

    app_settings = get_settings()
    load_kubernetes_config()
    store = ResourceStore(DynamicClient(client.ApiClient()))

    manager = Manager(store, app_settings)
    manager.start()

    if app_settings.metrics_enabled:
        start_http_server(app_settings.metrics_port)
        logger.info(f"Serving metrics on port {app_settings.metrics_port}")

    logger.info(
        f"{app_settings.app_name} v{app_settings.app_version} ready",
        extra={"namespace": app_settings.namespace},
    )


@kopf.on.cleanup()
async def cleanup_handler(**kwargs):
    """Stop the reconcile workers"""
    logger.info("Policy controller shutting down")
    if manager is not None:
        await manager.stop()


@kopf.on.probe(id="queues")
def queue_probe(**kwargs):
    """Report pending reconcile requests per controller"""
    if manager is None:
        return {}
    return {queue.name: len(queue) for queue in manager.queues()}


# ============================================================================
# PRIMARY RESOURCES
# ============================================================================


@kopf.on.event(API_GROUP, API_VERSION, PLURAL_POLICY_SERVERS)
async def policy_server_event(event: Dict[str, Any], **kwargs):
    body = event["object"]
    manager.policy_server_queue.add(ReconcileRequest(name=body["metadata"]["name"]))
    await manager.route(body, kind="PolicyServer")


@kopf.on.event(API_GROUP, API_VERSION, PLURAL_CLUSTER_ADMISSION_POLICIES)
async def cluster_admission_policy_event(event: Dict[str, Any], **kwargs):
    body = {**event["object"], "kind": PolicyScope.CLUSTER.policy_kind.value}
    manager.policy_changed(event.get("type"), body)


@kopf.on.event(API_GROUP, API_VERSION, PLURAL_ADMISSION_POLICIES)
async def admission_policy_event(event: Dict[str, Any], **kwargs):
    body = {**event["object"], "kind": PolicyScope.NAMESPACE.policy_kind.value}
    manager.policy_changed(event.get("type"), body)


# ============================================================================
# AUXILIARY RESOURCES
# ============================================================================


@kopf.on.event("pods", labels={POLICY_SERVER_LABEL: kopf.PRESENT})
async def pod_event(event: Dict[str, Any], **kwargs):
    await manager.route(event["object"], kind=POD.kind)


@kopf.on.event("configmaps", labels={POLICY_SERVER_LABEL: kopf.PRESENT})
async def config_map_event(event: Dict[str, Any], **kwargs):
    await manager.route(event["object"], kind=CONFIG_MAP.kind)


@kopf.on.event(
    "validatingwebhookconfigurations", labels={WEBHOOK_MARKER_LABEL: kopf.PRESENT}
)
async def validating_webhook_configuration_event(event: Dict[str, Any], **kwargs):
    await manager.route(event["object"], kind=VALIDATING_WEBHOOK_CONFIGURATION.kind)


@kopf.on.event(
    "mutatingwebhookconfigurations", labels={WEBHOOK_MARKER_LABEL: kopf.PRESENT}
)
async def mutating_webhook_configuration_event(event: Dict[str, Any], **kwargs):
    await manager.route(event["object"], kind=MUTATING_WEBHOOK_CONFIGURATION.kind)

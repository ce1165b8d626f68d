"""
Maps changes of auxiliary objects onto policy reconcile requests.

Generated infrastructure lives in the deployments namespace and webhook
registrations are cluster-scoped, so neither can carry an owner reference to
the policies they serve. Associations are rebuilt from naming conventions,
labels, annotations and the correlation payload instead.
"""

from typing import Any, Callable, Dict, List, Mapping

from policyguard.constants import (POLICY_NAME_ANNOTATION,
                                   POLICY_NAMESPACE_ANNOTATION,
                                   POLICY_SCOPE_LABEL, POLICY_SERVER_LABEL,
                                   WEBHOOK_MARKER_LABEL)
from policyguard.core.exceptions import PolicyGuardError
from policyguard.core.logging import get_logger
from policyguard.models.resources import (CONFIG_MAP, POD, POLICY_SERVER,
                                          MUTATING_WEBHOOK_CONFIGURATION,
                                          VALIDATING_WEBHOOK_CONFIGURATION,
                                          Policy, PolicyScope,
                                          ReconcileRequest)
from policyguard.naming import (policy_server_deployment_name,
                                policy_server_name_for_deployment)
from policyguard.repositories.store import ResourceStore
from policyguard.services.correlation import PolicyMap

logger = get_logger(__name__)

Body = Mapping[str, Any]


def _metadata(body: Body) -> Mapping[str, Any]:
    return body.get("metadata") or {}


def policy_server_requests_for_policy(body: Body) -> List[ReconcileRequest]:
    """A policy change re-converges the policy server it names."""
    policy = Policy.from_body(body)
    if not policy.policy_server:
        return []
    return [ReconcileRequest(name=policy.policy_server)]


class EventRouter:
    """Routes auxiliary events to the policy reconciler of one scope"""

    def __init__(
        self, scope: PolicyScope, reader: ResourceStore, deployments_namespace: str
    ):
        self.scope = scope
        self.reader = reader
        self.namespace = deployments_namespace
        self._routes: Dict[str, Callable[[Body], List[ReconcileRequest]]] = {
            POD.kind: self.requests_for_pod,
            CONFIG_MAP.kind: self.requests_for_config_map,
            POLICY_SERVER.kind: self.requests_for_policy_server,
            VALIDATING_WEBHOOK_CONFIGURATION.kind: self.requests_for_webhook_configuration,
            MUTATING_WEBHOOK_CONFIGURATION.kind: self.requests_for_webhook_configuration,
        }

    def route(self, body: Body, kind: str = None) -> List[ReconcileRequest]:
        """Dispatch on the object's kind; unknown kinds yield no requests.

        ``kind`` overrides ``body["kind"]`` for list results, which omit it.
        """
        route = self._routes.get(kind or body.get("kind", ""))
        if route is None:
            return []
        return route(body)

    def requests_for_pod(self, pod: Body) -> List[ReconcileRequest]:
        server_name = (_metadata(pod).get("labels") or {}).get(POLICY_SERVER_LABEL)
        if not server_name:
            return []
        return self._requests_for_policy_server_name(server_name)

    def requests_for_policy_server(self, server: Body) -> List[ReconcileRequest]:
        # Covers the window before the policy server has any pod
        server_name = _metadata(server).get("name")
        if not server_name:
            return []
        return self._requests_for_policy_server_name(server_name)

    def requests_for_config_map(self, config_map: Body) -> List[ReconcileRequest]:
        try:
            server_name = policy_server_name_for_deployment(
                _metadata(config_map).get("name") or ""
            )
        except ValueError:
            return []
        try:
            policy_map = PolicyMap.from_config_map(config_map)
        except PolicyGuardError as e:
            logger.debug(f"Ignoring payload of policy server {server_name}: {e}")
            return []
        return policy_map.to_reconcile_requests(self.scope)

    def requests_for_webhook_configuration(
        self, webhook_configuration: Body
    ) -> List[ReconcileRequest]:
        metadata = _metadata(webhook_configuration)
        labels = metadata.get("labels") or {}
        annotations = metadata.get("annotations") or {}
        name = metadata.get("name")

        if WEBHOOK_MARKER_LABEL not in labels:
            return []

        scope = labels.get(POLICY_SCOPE_LABEL)
        if scope is None:
            logger.info(
                f"Found a webhook configuration without a scope label: {name}"
            )
            return []

        if scope != self.scope.value:
            return []

        policy_name = annotations.get(POLICY_NAME_ANNOTATION)
        if policy_name is None:
            logger.info(
                f"Found a webhook configuration without a policy name annotation: {name}"
            )
            return []

        if self.scope is PolicyScope.CLUSTER:
            return [ReconcileRequest(name=policy_name)]

        policy_namespace = annotations.get(POLICY_NAMESPACE_ANNOTATION)
        if not policy_namespace:
            logger.info(
                f"Found a webhook configuration without a policy namespace annotation: {name}"
            )
            return []
        return [ReconcileRequest(name=policy_name, namespace=policy_namespace)]

    def _requests_for_policy_server_name(
        self, server_name: str
    ) -> List[ReconcileRequest]:
        # The ConfigMap shares the deployment name; read it uncached
        config_map_name = policy_server_deployment_name(server_name)
        try:
            config_map = self.reader.get(CONFIG_MAP, config_map_name, self.namespace)
        except PolicyGuardError as e:
            logger.debug(f"Cannot read correlation payload {config_map_name}: {e}")
            return []
        return self.requests_for_config_map(config_map)

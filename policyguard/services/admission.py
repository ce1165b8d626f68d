"""
Domain routines behind the reconcilers.

AdmissionReconciler applies the infrastructure generated for a PolicyServer
(correlation ConfigMap, Service, Deployment) and the webhook registration of
each policy. It decides readiness but never requeues: NotReady is signalled
with PolicyServerNotReadyError and the reconcilers turn it into a delay.
"""

import copy
import hashlib
import json
from typing import Any, Dict, List, Optional

from policyguard.constants import (API_GROUP_VERSION,
                                   CONFIG_VERSION_ANNOTATION,
                                   KIND_POLICY_SERVER, POLICY_NAME_ANNOTATION,
                                   POLICY_NAMESPACE_ANNOTATION,
                                   POLICY_SCOPE_LABEL, POLICY_SERVER_LABEL,
                                   POLICY_SERVER_PORT,
                                   POLICY_SERVER_SERVICE_PORT,
                                   SPEC_HASH_ANNOTATION,
                                   WEBHOOK_MARKER_LABEL,
                                   WEBHOOK_TIMEOUT_SECONDS)
from policyguard.core.exceptions import (CorrelationPayloadError,
                                         PolicyServerNotFoundError,
                                         PolicyServerNotReadyError,
                                         ResourceNotFoundError)
from policyguard.core.logging import get_logger
from policyguard.models.resources import (CONFIG_MAP, DEPLOYMENT,
                                          MUTATING_WEBHOOK_CONFIGURATION,
                                          POLICY_SERVER, SERVICE,
                                          VALIDATING_WEBHOOK_CONFIGURATION,
                                          Policy, PolicyScope, PolicyServer,
                                          ResourceKind)
from policyguard.naming import (policy_server_deployment_name,
                                policy_unique_name, webhook_path)
from policyguard.repositories.store import ResourceStore
from policyguard.services.correlation import PolicyMap

logger = get_logger(__name__)

NAMESPACE_NAME_LABEL = "kubernetes.io/metadata.name"


def spec_hash(desired: Dict[str, Any]) -> str:
    """Hash of a desired object, ignoring the hash annotation itself"""
    payload = copy.deepcopy(desired)
    payload.get("metadata", {}).get("annotations", {}).pop(SPEC_HASH_ANNOTATION, None)
    return hashlib.sha256(
        json.dumps(payload, sort_keys=True).encode()
    ).hexdigest()[:16]


def contains(live: Any, desired: Any) -> bool:
    """True when every field set in ``desired`` holds the same value in ``live``.

    Fields the API server defaults on top of the desired object are not drift.
    Unset and empty desired fields match a missing live field.
    """
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        for key, value in desired.items():
            if value is None or value == [] or value == {}:
                if live.get(key):
                    return False
            elif key not in live or not contains(live[key], value):
                return False
        return True
    if isinstance(desired, list):
        return (
            isinstance(live, list)
            and len(live) == len(desired)
            and all(contains(l, d) for l, d in zip(live, desired))
        )
    return live == desired


def drifted(current: Dict[str, Any], desired: Dict[str, Any]) -> bool:
    """Compare the live object's own fields with the desired ones."""
    metadata = desired.get("metadata") or {}
    projected = {key: value for key, value in desired.items() if key != "metadata"}
    projected["metadata"] = {
        key: metadata[key]
        for key in ("labels", "annotations", "ownerReferences")
        if key in metadata
    }
    return not contains(current, projected)


def deployment_rolled_out(deployment: Dict[str, Any]) -> bool:
    """True once the latest generation is fully rolled out and available."""
    metadata = deployment.get("metadata") or {}
    spec = deployment.get("spec") or {}
    status = deployment.get("status") or {}

    if (status.get("observedGeneration") or 0) < (metadata.get("generation") or 0):
        return False

    replicas = spec.get("replicas", 1)
    updated = status.get("updatedReplicas") or 0
    available = status.get("availableReplicas") or 0
    total = status.get("replicas") or 0
    return updated >= replicas and available >= replicas and total == updated


class AdmissionReconciler:
    """Kubernetes-backed domain collaborator of both reconcilers"""

    def __init__(
        self,
        store: ResourceStore,
        deployments_namespace: str,
        policy_server_image: str,
    ):
        self.store = store
        self.namespace = deployments_namespace
        self.policy_server_image = policy_server_image

    # ------------------------------------------------------------------
    # PolicyServer
    # ------------------------------------------------------------------

    def converge(self, server: PolicyServer, policies: List[Policy]) -> None:
        """Apply generated infrastructure; raise NotReady until it has rolled out."""
        config_map = self._apply(CONFIG_MAP, self._config_map(server, policies))
        self._apply(SERVICE, self._service(server))
        deployment = self._apply(DEPLOYMENT, self._deployment(server, config_map))

        if not deployment_rolled_out(deployment):
            raise PolicyServerNotReadyError(
                f"policy server {server.name} deployment is rolling out"
            )

    def tear_down(self, server: PolicyServer) -> None:
        """Remove generated infrastructure and leftover webhook registrations."""
        name = policy_server_deployment_name(server.name)
        for kind in (DEPLOYMENT, SERVICE, CONFIG_MAP):
            self._delete_ignoring_not_found(kind, name, self.namespace)

        for kind in (VALIDATING_WEBHOOK_CONFIGURATION, MUTATING_WEBHOOK_CONFIGURATION):
            leftovers = self.store.list(
                kind, label_selector={POLICY_SERVER_LABEL: server.name}
            )
            for webhook_configuration in leftovers:
                self._delete_ignoring_not_found(
                    kind, webhook_configuration["metadata"]["name"]
                )

        logger.info(f"Tore down infrastructure of policy server {server.name}")

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def converge_policy(self, policy: Policy) -> None:
        """Register the policy's webhook once its policy server serves it."""
        server = self._ready_policy_server(policy)

        kind, stale_kind = VALIDATING_WEBHOOK_CONFIGURATION, MUTATING_WEBHOOK_CONFIGURATION
        if policy.mutating:
            kind, stale_kind = stale_kind, kind

        self._apply(kind, self._webhook_configuration(policy, kind))
        self._delete_ignoring_not_found(
            stale_kind, policy_unique_name(policy.identity)
        )
        logger.debug(
            f"Registered {policy.identity} on policy server {server.name}"
        )

    def retract_policy(self, policy: Policy) -> None:
        """Remove the policy's webhook registration, whichever kind it is."""
        name = policy_unique_name(policy.identity)
        for kind in (VALIDATING_WEBHOOK_CONFIGURATION, MUTATING_WEBHOOK_CONFIGURATION):
            self._delete_ignoring_not_found(kind, name)

    def _ready_policy_server(self, policy: Policy) -> PolicyServer:
        try:
            server = PolicyServer.from_body(
                self.store.get(POLICY_SERVER, policy.policy_server)
            )
        except ResourceNotFoundError as e:
            raise PolicyServerNotFoundError(
                f"policy server {policy.policy_server} does not exist"
            ) from e

        if server.is_terminating:
            raise PolicyServerNotReadyError(
                f"policy server {server.name} is being deleted"
            )

        name = policy_server_deployment_name(server.name)
        try:
            deployment = self.store.get(DEPLOYMENT, name, self.namespace)
            config_map = self.store.get(CONFIG_MAP, name, self.namespace)
        except ResourceNotFoundError as e:
            raise PolicyServerNotReadyError(
                f"policy server {server.name} has no generated infrastructure yet"
            ) from e

        if not deployment_rolled_out(deployment):
            raise PolicyServerNotReadyError(
                f"policy server {server.name} deployment is rolling out"
            )

        config_version = (
            deployment["spec"]["template"]["metadata"]
            .get("annotations", {})
            .get(CONFIG_VERSION_ANNOTATION)
        )
        if config_version != config_map["metadata"].get("resourceVersion"):
            raise PolicyServerNotReadyError(
                f"policy server {server.name} runs an outdated configuration"
            )

        try:
            served = PolicyMap.from_config_map(config_map)
        except CorrelationPayloadError as e:
            raise PolicyServerNotReadyError(
                f"policy server {server.name} payload is unreadable: {e}"
            ) from e
        if policy.identity not in served:
            raise PolicyServerNotReadyError(
                f"policy server {server.name} does not serve {policy.identity} yet"
            )
        return server

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def _owner_reference(self, server: PolicyServer) -> Dict[str, Any]:
        return {
            "apiVersion": API_GROUP_VERSION,
            "kind": KIND_POLICY_SERVER,
            "name": server.name,
            "uid": server.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def _generated_metadata(self, server: PolicyServer) -> Dict[str, Any]:
        return {
            "name": policy_server_deployment_name(server.name),
            "namespace": self.namespace,
            "labels": {POLICY_SERVER_LABEL: server.name},
            "annotations": {},
            "ownerReferences": [self._owner_reference(server)],
        }

    def _config_map(
        self, server: PolicyServer, policies: List[Policy]
    ) -> Dict[str, Any]:
        # Policies on their way out are no longer served
        served = [p.identity for p in policies if not p.is_terminating]
        return {
            "apiVersion": CONFIG_MAP.api_version,
            "kind": CONFIG_MAP.kind,
            "metadata": self._generated_metadata(server),
            "data": PolicyMap.for_policy_server(server.name, served).to_data(),
        }

    def _service(self, server: PolicyServer) -> Dict[str, Any]:
        return {
            "apiVersion": SERVICE.api_version,
            "kind": SERVICE.kind,
            "metadata": self._generated_metadata(server),
            "spec": {
                "selector": {POLICY_SERVER_LABEL: server.name},
                "ports": [
                    {
                        "name": "policy-server",
                        "port": POLICY_SERVER_SERVICE_PORT,
                        "targetPort": POLICY_SERVER_PORT,
                        "protocol": "TCP",
                    }
                ],
            },
        }

    def _deployment(
        self, server: PolicyServer, config_map: Dict[str, Any]
    ) -> Dict[str, Any]:
        name = policy_server_deployment_name(server.name)
        labels = {POLICY_SERVER_LABEL: server.name}
        return {
            "apiVersion": DEPLOYMENT.api_version,
            "kind": DEPLOYMENT.kind,
            "metadata": self._generated_metadata(server),
            "spec": {
                "replicas": server.replicas,
                "selector": {"matchLabels": dict(labels)},
                "template": {
                    "metadata": {
                        "labels": dict(labels),
                        "annotations": {
                            CONFIG_VERSION_ANNOTATION: config_map["metadata"].get(
                                "resourceVersion"
                            )
                        },
                    },
                    "spec": {
                        "serviceAccountName": server.spec.get("serviceAccountName"),
                        "containers": [
                            {
                                "name": "policy-server",
                                "image": server.spec.get(
                                    "image", self.policy_server_image
                                ),
                                "env": server.spec.get("env", []),
                                "ports": [{"containerPort": POLICY_SERVER_PORT}],
                                "volumeMounts": [
                                    {
                                        "name": "policies",
                                        "mountPath": "/config",
                                        "readOnly": True,
                                    }
                                ],
                            }
                        ],
                        "volumes": [
                            {"name": "policies", "configMap": {"name": name}}
                        ],
                    },
                },
            },
        }

    def _namespace_selector(self, policy: Policy) -> Dict[str, Any]:
        if policy.scope is PolicyScope.NAMESPACE:
            return {"matchLabels": {NAMESPACE_NAME_LABEL: policy.namespace}}

        # Cluster-wide policies never gate the operator's own namespace
        selector = copy.deepcopy(policy.spec.get("namespaceSelector") or {})
        selector.setdefault("matchExpressions", []).append(
            {
                "key": NAMESPACE_NAME_LABEL,
                "operator": "NotIn",
                "values": [self.namespace],
            }
        )
        return selector

    def _webhook_configuration(
        self, policy: Policy, kind: ResourceKind
    ) -> Dict[str, Any]:
        identity = policy.identity
        unique_name = policy_unique_name(identity)

        annotations = {POLICY_NAME_ANNOTATION: identity.name}
        if identity.namespace:
            annotations[POLICY_NAMESPACE_ANNOTATION] = identity.namespace

        webhook = {
            "name": f"{unique_name}.policyguard.admission",
            "clientConfig": {
                "service": {
                    "name": policy_server_deployment_name(policy.policy_server),
                    "namespace": self.namespace,
                    "path": webhook_path(identity),
                    "port": POLICY_SERVER_SERVICE_PORT,
                }
            },
            "rules": policy.spec.get("rules", []),
            "failurePolicy": policy.spec.get("failurePolicy", "Fail"),
            "matchPolicy": policy.spec.get("matchPolicy", "Equivalent"),
            "namespaceSelector": self._namespace_selector(policy),
            "objectSelector": policy.spec.get("objectSelector") or {},
            "sideEffects": policy.spec.get("sideEffects", "None"),
            "timeoutSeconds": policy.spec.get(
                "timeoutSeconds", WEBHOOK_TIMEOUT_SECONDS
            ),
            "admissionReviewVersions": ["v1"],
        }

        return {
            "apiVersion": kind.api_version,
            "kind": kind.kind,
            "metadata": {
                "name": unique_name,
                "labels": {
                    WEBHOOK_MARKER_LABEL: "true",
                    POLICY_SCOPE_LABEL: identity.scope.value,
                    POLICY_SERVER_LABEL: policy.policy_server,
                },
                "annotations": annotations,
            },
            "webhooks": [webhook],
        }

    # ------------------------------------------------------------------
    # Store helpers
    # ------------------------------------------------------------------

    def _apply(self, kind: ResourceKind, desired: Dict[str, Any]) -> Dict[str, Any]:
        """Create ``desired`` or replace the live object when it drifted.

        The spec hash annotation only records what was last applied; drift
        is judged on the live fields, so out-of-band edits are reverted.
        """
        desired = copy.deepcopy(desired)
        metadata = desired["metadata"]
        metadata.setdefault("annotations", {})[SPEC_HASH_ANNOTATION] = spec_hash(
            desired
        )

        try:
            current = self.store.get(kind, metadata["name"], metadata.get("namespace"))
        except ResourceNotFoundError:
            return self.store.create(kind, desired)

        if not drifted(current, desired):
            return current

        merged = copy.deepcopy(current)
        for key, value in desired.items():
            if key != "metadata":
                merged[key] = value
        for key in ("labels", "annotations"):
            merged["metadata"][key] = {
                **(current["metadata"].get(key) or {}),
                **metadata.get(key, {}),
            }
        if "ownerReferences" in metadata:
            merged["metadata"]["ownerReferences"] = metadata["ownerReferences"]

        logger.debug(f"Updating drifted {kind.kind} {metadata['name']}")
        return self.store.replace(kind, merged)

    def _delete_ignoring_not_found(
        self, kind: ResourceKind, name: str, namespace: Optional[str] = None
    ) -> None:
        try:
            self.store.delete(kind, name, namespace)
        except ResourceNotFoundError:
            pass

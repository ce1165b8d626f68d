"""Pytest configuration and shared fixtures for PolicyGuard tests."""

import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from policyguard.controllers.policy import PolicyReconciler
from policyguard.controllers.policyserver import PolicyServerReconciler
from policyguard.core.exceptions import (ResourceConflictError,
                                         ResourceNotFoundError)
from policyguard.models.resources import (ADMISSION_POLICY,
                                          CLUSTER_ADMISSION_POLICY,
                                          DEPLOYMENT, POLICY_SERVER,
                                          PolicyKind, PolicyScope,
                                          ReconcileRequest, ResourceKind)
from policyguard.naming import policy_server_deployment_name
from policyguard.repositories.index import PolicyIndex
from policyguard.services.admission import AdmissionReconciler

DEPLOYMENTS_NAMESPACE = "policyguard"

# ============================================================================
# In-memory store
# ============================================================================


class InMemoryStore:
    """Dict-backed stand-in for ResourceStore with API-server semantics.

    Updates are version-checked, deleting an object that carries finalizers
    only stamps ``deletionTimestamp``, and clearing the last finalizer of a
    terminating object removes it.
    """

    def __init__(self):
        self.objects: Dict[Tuple[ResourceKind, str, str], Dict[str, Any]] = {}
        self.deleted: List[Tuple[str, str, str]] = []
        self.delete_errors: Dict[Tuple[str, str], Exception] = {}
        self.failures: Dict[Tuple[str, str], Exception] = {}
        self._version = 0

    def _key(self, kind: ResourceKind, name: str, namespace: Optional[str]):
        return (kind, (namespace or "") if kind.namespaced else "", name)

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _maybe_fail(self, operation: str, kind: ResourceKind) -> None:
        error = self.failures.get((operation, kind.kind))
        if error is not None:
            raise error

    def _lookup(self, kind, name, namespace):
        key = self._key(kind, name, namespace)
        if key not in self.objects:
            raise ResourceNotFoundError(f"{kind.kind} {name} not found")
        return key, self.objects[key]

    def get(self, kind, name, namespace=None):
        self._maybe_fail("get", kind)
        _, obj = self._lookup(kind, name, namespace)
        return copy.deepcopy(obj)

    def list(self, kind, namespace=None, label_selector=None):
        self._maybe_fail("list", kind)
        items = []
        for (k, ns, name), obj in sorted(
            self.objects.items(), key=lambda item: (item[0][1], item[0][2])
        ):
            if k != kind or (namespace and ns != namespace):
                continue
            labels = obj["metadata"].get("labels") or {}
            if label_selector and any(
                key not in labels or (value is not None and labels[key] != value)
                for key, value in label_selector.items()
            ):
                continue
            items.append(copy.deepcopy(obj))
        return items

    def create(self, kind, body):
        self._maybe_fail("create", kind)
        obj = copy.deepcopy(body)
        metadata = obj.setdefault("metadata", {})
        if not kind.namespaced:
            metadata.pop("namespace", None)
        key = self._key(kind, metadata["name"], metadata.get("namespace"))
        if key in self.objects:
            raise ResourceConflictError(f"{kind.kind} {metadata['name']} already exists")
        obj.setdefault("apiVersion", kind.api_version)
        obj.setdefault("kind", kind.kind)
        metadata["uid"] = str(uuid.uuid4())
        metadata["generation"] = 1
        metadata["creationTimestamp"] = datetime.now(timezone.utc).isoformat()
        metadata["resourceVersion"] = self._next_version()
        self.objects[key] = obj
        return copy.deepcopy(obj)

    def replace(self, kind, body):
        self._maybe_fail("replace", kind)
        metadata = body["metadata"]
        key, current = self._lookup(kind, metadata["name"], metadata.get("namespace"))
        if metadata.get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise ResourceConflictError(f"{kind.kind} {metadata['name']} was modified")

        obj = copy.deepcopy(body)
        obj["status"] = copy.deepcopy(current.get("status") or {})
        for field in ("uid", "creationTimestamp", "deletionTimestamp"):
            if field in current["metadata"]:
                obj["metadata"][field] = current["metadata"][field]

        def content(o):
            return {k: v for k, v in o.items() if k not in ("metadata", "status")}

        generation = current["metadata"].get("generation", 1)
        if content(obj) != content(current):
            generation += 1
        obj["metadata"]["generation"] = generation
        obj["metadata"]["resourceVersion"] = self._next_version()

        if obj["metadata"].get("deletionTimestamp") and not obj["metadata"].get(
            "finalizers"
        ):
            del self.objects[key]
        else:
            self.objects[key] = obj
        return copy.deepcopy(obj)

    def replace_status(self, kind, body):
        self._maybe_fail("replace_status", kind)
        metadata = body["metadata"]
        key, current = self._lookup(kind, metadata["name"], metadata.get("namespace"))
        if metadata.get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise ResourceConflictError(f"{kind.kind} {metadata['name']} was modified")
        current["status"] = copy.deepcopy(body.get("status") or {})
        current["metadata"]["resourceVersion"] = self._next_version()
        return copy.deepcopy(current)

    def delete(self, kind, name, namespace=None):
        self.deleted.append((kind.kind, namespace or "", name))
        error = self.delete_errors.get((kind.kind, name))
        if error is not None:
            raise error
        key, current = self._lookup(kind, name, namespace)
        if current["metadata"].get("finalizers"):
            current["metadata"].setdefault(
                "deletionTimestamp", datetime.now(timezone.utc).isoformat()
            )
            current["metadata"]["resourceVersion"] = self._next_version()
        else:
            del self.objects[key]

    # Test helpers

    def exists(self, kind, name, namespace=None) -> bool:
        return self._key(kind, name, namespace) in self.objects

    def deletes_of(self, kind: ResourceKind) -> List[Tuple[str, str]]:
        return [(ns, name) for k, ns, name in self.deleted if k == kind.kind]


# ============================================================================
# Store and collaborator fixtures
# ============================================================================


@pytest.fixture
def store():
    """Fresh in-memory store per test."""
    return InMemoryStore()


@pytest.fixture
def index():
    return PolicyIndex()


@pytest.fixture
def admission(store):
    """Kubernetes-backed domain collaborator running against the fake store."""
    return AdmissionReconciler(store, DEPLOYMENTS_NAMESPACE, "policy-server:test")


@pytest.fixture
def policy_server_reconciler(store, index, admission):
    return PolicyServerReconciler(store, index, admission)


@pytest.fixture
def cluster_policy_reconciler(store, admission):
    return PolicyReconciler(PolicyScope.CLUSTER, store, admission)


@pytest.fixture
def namespaced_policy_reconciler(store, admission):
    return PolicyReconciler(PolicyScope.NAMESPACE, store, admission)


# ============================================================================
# Object factories
# ============================================================================


def policy_server_body(name: str = "default", replicas: int = 1, finalizers=None):
    metadata = {"name": name}
    if finalizers is not None:
        metadata["finalizers"] = list(finalizers)
    return {
        "apiVersion": POLICY_SERVER.api_version,
        "kind": POLICY_SERVER.kind,
        "metadata": metadata,
        "spec": {"image": "policy-server:test", "replicas": replicas},
    }


def policy_body(
    name: str,
    policy_server: str = "default",
    namespace: str = "",
    mutating: bool = False,
    finalizers=None,
):
    kind = PolicyKind.ADMISSION_POLICY if namespace else PolicyKind.CLUSTER_ADMISSION_POLICY
    metadata = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    if finalizers is not None:
        metadata["finalizers"] = list(finalizers)
    return {
        "apiVersion": kind.resource_kind.api_version,
        "kind": kind.value,
        "metadata": metadata,
        "spec": {
            "policyServer": policy_server,
            "module": "registry://ghcr.io/policies/example:v1",
            "mutating": mutating,
            "rules": [
                {
                    "apiGroups": [""],
                    "apiVersions": ["v1"],
                    "resources": ["pods"],
                    "operations": ["CREATE", "UPDATE"],
                }
            ],
        },
    }


@pytest.fixture
def make_policy_server(store):
    """Create a PolicyServer in the store and return its stored body."""

    def _make(name: str = "default", **kwargs):
        return store.create(POLICY_SERVER, policy_server_body(name, **kwargs))

    return _make


@pytest.fixture
def make_policy(store, index):
    """Create a policy in the store, feed it to the index, return its body."""

    def _make(name: str, policy_server: str = "default", namespace: str = "", **kwargs):
        body = policy_body(name, policy_server, namespace, **kwargs)
        kind = ADMISSION_POLICY if namespace else CLUSTER_ADMISSION_POLICY
        created = store.create(kind, body)
        index.update("ADDED", created)
        return created

    return _make


@pytest.fixture
def mark_rolled_out(store):
    """Pretend the policy server deployment finished rolling out."""

    def _mark(server_name: str = "default"):
        name = policy_server_deployment_name(server_name)
        key = store._key(DEPLOYMENT, name, DEPLOYMENTS_NAMESPACE)
        deployment = store.objects[key]
        replicas = deployment["spec"].get("replicas", 1)
        deployment["status"] = {
            "observedGeneration": deployment["metadata"]["generation"],
            "replicas": replicas,
            "updatedReplicas": replicas,
            "availableReplicas": replicas,
            "readyReplicas": replicas,
        }
        deployment["metadata"]["resourceVersion"] = store._next_version()

    return _mark


@pytest.fixture
def converged_policy_server(make_policy_server, policy_server_reconciler, mark_rolled_out):
    """Create a policy server and drive it to a fully rolled-out state."""

    def _converge(name: str = "default"):
        if not policy_server_reconciler.store.exists(POLICY_SERVER, name):
            make_policy_server(name)
        request = ReconcileRequest(name=name)
        policy_server_reconciler.reconcile(request)
        mark_rolled_out(name)
        return policy_server_reconciler.reconcile(request)

    return _converge


@pytest.fixture
def build_policy():
    """Factory for policy bodies that are not stored."""
    return policy_body

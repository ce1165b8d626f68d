"""
Typed views over the Kubernetes objects the operator reconciles.

Primary objects (PolicyServer and both Policy variants) are kept as the raw
body returned by the API server; the dataclasses below only add accessors
and finalizer helpers, and ``to_body()`` hands back a body suitable for a
version-checked update.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from policyguard.constants import (API_GROUP_VERSION, KIND_ADMISSION_POLICY,
                                   KIND_CLUSTER_ADMISSION_POLICY,
                                   KIND_POLICY_SERVER,
                                   PLURAL_ADMISSION_POLICIES,
                                   PLURAL_CLUSTER_ADMISSION_POLICIES,
                                   PLURAL_POLICY_SERVERS)

# ============================================================================
# RESOURCE KINDS
# ============================================================================


@dataclass(frozen=True)
class ResourceKind:
    """API coordinates of a kind the operator reads or writes"""

    api_version: str
    kind: str
    plural: str
    namespaced: bool

    @property
    def group(self) -> str:
        return self.api_version.rpartition("/")[0]

    @property
    def version(self) -> str:
        return self.api_version.rpartition("/")[2]


POLICY_SERVER = ResourceKind(
    API_GROUP_VERSION, KIND_POLICY_SERVER, PLURAL_POLICY_SERVERS, False
)
CLUSTER_ADMISSION_POLICY = ResourceKind(
    API_GROUP_VERSION,
    KIND_CLUSTER_ADMISSION_POLICY,
    PLURAL_CLUSTER_ADMISSION_POLICIES,
    False,
)
ADMISSION_POLICY = ResourceKind(
    API_GROUP_VERSION, KIND_ADMISSION_POLICY, PLURAL_ADMISSION_POLICIES, True
)
POD = ResourceKind("v1", "Pod", "pods", True)
CONFIG_MAP = ResourceKind("v1", "ConfigMap", "configmaps", True)
SERVICE = ResourceKind("v1", "Service", "services", True)
DEPLOYMENT = ResourceKind("apps/v1", "Deployment", "deployments", True)
VALIDATING_WEBHOOK_CONFIGURATION = ResourceKind(
    "admissionregistration.k8s.io/v1",
    "ValidatingWebhookConfiguration",
    "validatingwebhookconfigurations",
    False,
)
MUTATING_WEBHOOK_CONFIGURATION = ResourceKind(
    "admissionregistration.k8s.io/v1",
    "MutatingWebhookConfiguration",
    "mutatingwebhookconfigurations",
    False,
)

# ============================================================================
# ENUMS
# ============================================================================


class PolicyScope(str, Enum):
    CLUSTER = "cluster"
    NAMESPACE = "namespace"

    @property
    def policy_kind(self) -> "PolicyKind":
        if self is PolicyScope.CLUSTER:
            return PolicyKind.CLUSTER_ADMISSION_POLICY
        return PolicyKind.ADMISSION_POLICY


class PolicyKind(str, Enum):
    CLUSTER_ADMISSION_POLICY = KIND_CLUSTER_ADMISSION_POLICY
    ADMISSION_POLICY = KIND_ADMISSION_POLICY

    @property
    def scope(self) -> PolicyScope:
        if self is PolicyKind.CLUSTER_ADMISSION_POLICY:
            return PolicyScope.CLUSTER
        return PolicyScope.NAMESPACE

    @property
    def resource_kind(self) -> ResourceKind:
        if self is PolicyKind.CLUSTER_ADMISSION_POLICY:
            return CLUSTER_ADMISSION_POLICY
        return ADMISSION_POLICY


class PolicyPhase(str, Enum):
    UNSCHEDULED = "Unscheduled"
    SCHEDULED = "Scheduled"
    PENDING = "Pending"
    ACTIVE = "Active"


# ============================================================================
# IDENTITIES AND REQUESTS
# ============================================================================


@dataclass(frozen=True, order=True)
class PolicyIdentity:
    """(kind, namespace, name) of a policy; namespace is empty for cluster scope"""

    kind: PolicyKind
    namespace: str
    name: str

    @property
    def scope(self) -> PolicyScope:
        return self.kind.scope

    def to_dict(self) -> Dict[str, str]:
        return {
            "kind": self.kind.value,
            "namespace": self.namespace,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PolicyIdentity":
        """Reconstruct from dictionary"""
        kind = PolicyKind(data["kind"])
        namespace = data.get("namespace") or ""
        if kind.scope is PolicyScope.CLUSTER:
            namespace = ""
        elif not namespace:
            raise ValueError(f"{kind.value} {data.get('name')} has no namespace")
        name = data["name"]
        if not isinstance(name, str) or not name:
            raise ValueError("policy identity needs a name")
        return cls(kind=kind, namespace=namespace, name=name)

    def __str__(self):
        if self.namespace:
            return f"{self.kind.value}/{self.namespace}/{self.name}"
        return f"{self.kind.value}/{self.name}"


@dataclass(frozen=True)
class ReconcileRequest:
    """Primary key handed to a reconciler"""

    name: str
    namespace: str = ""

    def __str__(self):
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


@dataclass(frozen=True)
class ReconcileResult:
    """Requeue instruction returned to the scheduler"""

    requeue: bool = False
    requeue_after: float = 0.0

    @classmethod
    def after(cls, seconds: float) -> "ReconcileResult":
        return cls(requeue=True, requeue_after=seconds)


# ============================================================================
# PRIMARY OBJECTS
# ============================================================================


@dataclass
class Resource:
    """Common metadata handling for primary objects"""

    metadata: Dict[str, Any] = field(default_factory=dict)
    spec: Dict[str, Any] = field(default_factory=dict)
    status: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace") or ""

    @property
    def uid(self) -> Optional[str]:
        return self.metadata.get("uid")

    @property
    def resource_version(self) -> Optional[str]:
        return self.metadata.get("resourceVersion")

    @resource_version.setter
    def resource_version(self, value: Optional[str]):
        self.metadata["resourceVersion"] = value

    @property
    def finalizers(self) -> List[str]:
        return list(self.metadata.get("finalizers") or [])

    @property
    def deletion_timestamp(self) -> Optional[str]:
        return self.metadata.get("deletionTimestamp")

    @property
    def is_terminating(self) -> bool:
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """Add a finalizer, returning True when the object changed."""
        if self.has_finalizer(finalizer):
            return False
        self.metadata["finalizers"] = self.finalizers + [finalizer]
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        """Remove a finalizer, returning True when the object changed."""
        if not self.has_finalizer(finalizer):
            return False
        self.metadata["finalizers"] = [f for f in self.finalizers if f != finalizer]
        return True

    def _base_body(self, kind: ResourceKind) -> Dict[str, Any]:
        return {
            "apiVersion": kind.api_version,
            "kind": kind.kind,
            "metadata": copy.deepcopy(self.metadata),
            "spec": copy.deepcopy(self.spec),
            "status": copy.deepcopy(self.status),
        }


@dataclass
class PolicyServer(Resource):
    """Declared grouping of policies served by one generated deployment"""

    resource_kind = POLICY_SERVER

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> "PolicyServer":
        return cls(
            metadata=copy.deepcopy(dict(body.get("metadata") or {})),
            spec=copy.deepcopy(dict(body.get("spec") or {})),
            status=copy.deepcopy(dict(body.get("status") or {})),
        )

    @property
    def replicas(self) -> int:
        return int(self.spec.get("replicas", 1))

    def to_body(self) -> Dict[str, Any]:
        return self._base_body(POLICY_SERVER)


@dataclass
class Policy(Resource):
    """A ClusterAdmissionPolicy or AdmissionPolicy"""

    kind: PolicyKind = PolicyKind.CLUSTER_ADMISSION_POLICY

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> "Policy":
        return cls(
            kind=PolicyKind(body.get("kind", KIND_CLUSTER_ADMISSION_POLICY)),
            metadata=copy.deepcopy(dict(body.get("metadata") or {})),
            spec=copy.deepcopy(dict(body.get("spec") or {})),
            status=copy.deepcopy(dict(body.get("status") or {})),
        )

    @property
    def resource_kind(self) -> ResourceKind:
        return self.kind.resource_kind

    @property
    def scope(self) -> PolicyScope:
        return self.kind.scope

    @property
    def identity(self) -> PolicyIdentity:
        namespace = self.namespace if self.scope is PolicyScope.NAMESPACE else ""
        return PolicyIdentity(kind=self.kind, namespace=namespace, name=self.name)

    @property
    def policy_server(self) -> str:
        return self.spec.get("policyServer") or ""

    @property
    def mutating(self) -> bool:
        return bool(self.spec.get("mutating", False))

    @property
    def phase(self) -> Optional[str]:
        return self.status.get("phase")

    def to_body(self) -> Dict[str, Any]:
        return self._base_body(self.kind.resource_kind)

"""Stable identifiers shared between the operator and the objects it manages."""

# ============================================================================
# API
# ============================================================================

API_GROUP = "policies.policyguard.io"
API_VERSION = "v1"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"

KIND_POLICY_SERVER = "PolicyServer"
KIND_CLUSTER_ADMISSION_POLICY = "ClusterAdmissionPolicy"
KIND_ADMISSION_POLICY = "AdmissionPolicy"

PLURAL_POLICY_SERVERS = "policyservers"
PLURAL_CLUSTER_ADMISSION_POLICIES = "clusteradmissionpolicies"
PLURAL_ADMISSION_POLICIES = "admissionpolicies"

# ============================================================================
# FINALIZERS, LABELS AND ANNOTATIONS
# ============================================================================

FINALIZER = "policyguard.io/finalizer"

POLICY_SERVER_LABEL = "policyguard.io/policy-server"
WEBHOOK_MARKER_LABEL = "policyguard"
POLICY_SCOPE_LABEL = "policyguard.io/policy-scope"
POLICY_NAME_ANNOTATION = "policyguard.io/policy-name"
POLICY_NAMESPACE_ANNOTATION = "policyguard.io/policy-namespace"
CONFIG_VERSION_ANNOTATION = "policyguard.io/config-version"
SPEC_HASH_ANNOTATION = "policyguard.io/spec-hash"

# Correlation payload data key inside the generated ConfigMap
POLICIES_DATA_KEY = "policies"

# ============================================================================
# RECONCILIATION
# ============================================================================

NOT_READY_REQUEUE_SECONDS = 5.0

CONDITION_READY = "Ready"
REASON_RECONCILED = "ReconciliationSucceeded"
REASON_NOT_READY = "PolicyServerNotReady"
REASON_FAILED = "ReconciliationFailed"

# ============================================================================
# GENERATED INFRASTRUCTURE
# ============================================================================

POLICY_SERVER_PORT = 8443
POLICY_SERVER_SERVICE_PORT = 443
WEBHOOK_TIMEOUT_SECONDS = 10

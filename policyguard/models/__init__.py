"""Resource models package."""

from .resources import (ADMISSION_POLICY, CLUSTER_ADMISSION_POLICY,
                        CONFIG_MAP, DEPLOYMENT,
                        MUTATING_WEBHOOK_CONFIGURATION, POD, POLICY_SERVER,
                        SERVICE, VALIDATING_WEBHOOK_CONFIGURATION, Policy,
                        PolicyIdentity, PolicyKind, PolicyPhase, PolicyScope,
                        PolicyServer, ReconcileRequest, ReconcileResult,
                        Resource, ResourceKind)

__all__ = [
    "ResourceKind",
    "POLICY_SERVER",
    "CLUSTER_ADMISSION_POLICY",
    "ADMISSION_POLICY",
    "POD",
    "CONFIG_MAP",
    "SERVICE",
    "DEPLOYMENT",
    "VALIDATING_WEBHOOK_CONFIGURATION",
    "MUTATING_WEBHOOK_CONFIGURATION",
    "PolicyScope",
    "PolicyKind",
    "PolicyPhase",
    "PolicyIdentity",
    "ReconcileRequest",
    "ReconcileResult",
    "Resource",
    "PolicyServer",
    "Policy",
]

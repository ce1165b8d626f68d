"""Reconcilers and event routing."""

from .policy import PolicyReconciler, start_reconciling
from .policyserver import PolicyServerReconciler
from .router import EventRouter, policy_server_requests_for_policy
from .status import StatusWriter, set_condition

__all__ = [
    "PolicyReconciler",
    "PolicyServerReconciler",
    "start_reconciling",
    "EventRouter",
    "policy_server_requests_for_policy",
    "StatusWriter",
    "set_condition",
]

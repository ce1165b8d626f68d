"""Domain services package."""

from .admission import AdmissionReconciler, deployment_rolled_out
from .correlation import PolicyMap

__all__ = [
    "AdmissionReconciler",
    "deployment_rolled_out",
    "PolicyMap",
]

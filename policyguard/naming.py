"""Deterministic names for generated infrastructure.

The names are a pure function of the PolicyServer (or policy) name, so
infrastructure can be mapped back to its owner without any lookup table.
"""

from policyguard.models.resources import PolicyIdentity, PolicyScope

POLICY_SERVER_PREFIX = "policy-server-"


def policy_server_deployment_name(policy_server_name: str) -> str:
    """Name of the Deployment, ConfigMap and Service of a policy server."""
    return f"{POLICY_SERVER_PREFIX}{policy_server_name}"


def policy_server_name_for_deployment(deployment_name: str) -> str:
    """Inverse of policy_server_deployment_name."""
    if not deployment_name.startswith(POLICY_SERVER_PREFIX) or len(
        deployment_name
    ) == len(POLICY_SERVER_PREFIX):
        raise ValueError(
            f"{deployment_name!r} is not a generated policy server name"
        )
    return deployment_name[len(POLICY_SERVER_PREFIX):]


def policy_unique_name(identity: PolicyIdentity) -> str:
    """Name of the webhook configuration registering a policy."""
    if identity.scope is PolicyScope.CLUSTER:
        return f"clusterwide-{identity.name}"
    # Namespaces cannot contain a dot, so the split point is unambiguous
    return f"namespaced.{identity.namespace}.{identity.name}"


def webhook_path(identity: PolicyIdentity) -> str:
    return f"/validate/{policy_unique_name(identity)}"

"""Status persistence and condition helpers shared by the reconcilers."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Union

from policyguard.core.logging import get_logger
from policyguard.models.resources import Policy, PolicyServer
from policyguard.repositories.store import ResourceStore

logger = get_logger(__name__)


def set_condition(
    status: Dict[str, Any],
    condition_type: str,
    ok: bool,
    reason: str,
    message: str = "",
) -> List[Dict[str, Any]]:
    """Upsert a Kubernetes-style condition into ``status["conditions"]``.

    ``lastTransitionTime`` only moves when the condition status flips.
    """
    conditions = list(status.get("conditions") or [])
    value = "True" if ok else "False"
    now = datetime.now(timezone.utc).isoformat()

    for i, condition in enumerate(conditions):
        if condition.get("type") != condition_type:
            continue
        transition = condition.get("lastTransitionTime", now)
        if condition.get("status") != value:
            transition = now
        conditions[i] = {
            "type": condition_type,
            "status": value,
            "reason": reason,
            "message": message,
            "lastTransitionTime": transition,
        }
        break
    else:
        conditions.append(
            {
                "type": condition_type,
                "status": value,
                "reason": reason,
                "message": message,
                "lastTransitionTime": now,
            }
        )

    status["conditions"] = conditions
    return conditions


class StatusWriter:
    """Writes the status subresource of primary objects"""

    def __init__(self, store: ResourceStore):
        self.store = store

    def persist(self, resource: Union[PolicyServer, Policy]) -> None:
        """Persist ``resource.status``; refreshes its resourceVersion on success.

        Raises ResourceConflictError when the object moved on since it was read.
        """
        updated = self.store.replace_status(resource.resource_kind, resource.to_body())
        resource.resource_version = (updated.get("metadata") or {}).get(
            "resourceVersion"
        )
        logger.debug(f"Persisted status of {resource.resource_kind.kind} {resource.name}")

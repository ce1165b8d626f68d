"""
Correlation payload stored in each policy server's generated ConfigMap.

The payload maps the policy server name to the identities of the policies it
serves. Pods and ConfigMaps cannot carry owner references to cluster-scoped
or foreign-namespace policies, so the event router decodes this payload to
find out which policies an infrastructure change concerns.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping

from policyguard.constants import POLICIES_DATA_KEY
from policyguard.core.exceptions import CorrelationPayloadError
from policyguard.models.resources import (PolicyIdentity, PolicyScope,
                                          ReconcileRequest)


@dataclass
class PolicyMap:
    """policy server name -> identities of the policies it serves"""

    entries: Dict[str, List[PolicyIdentity]] = field(default_factory=dict)

    @classmethod
    def for_policy_server(
        cls, server_name: str, identities: Iterable[PolicyIdentity]
    ) -> "PolicyMap":
        return cls(entries={server_name: sorted(set(identities))})

    @classmethod
    def decode(cls, raw: str) -> "PolicyMap":
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise CorrelationPayloadError(f"payload is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise CorrelationPayloadError("payload must be a JSON object")

        entries = {}
        for server_name, items in data.items():
            if not isinstance(items, list):
                raise CorrelationPayloadError(
                    f"policies of {server_name!r} must be a list"
                )
            try:
                entries[server_name] = [PolicyIdentity.from_dict(i) for i in items]
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise CorrelationPayloadError(
                    f"invalid policy entry for {server_name!r}: {e}"
                ) from e
        return cls(entries=entries)

    @classmethod
    def from_config_map(cls, config_map: Mapping[str, Any]) -> "PolicyMap":
        data = config_map.get("data") or {}
        if POLICIES_DATA_KEY not in data:
            name = (config_map.get("metadata") or {}).get("name")
            raise CorrelationPayloadError(
                f"ConfigMap {name} has no {POLICIES_DATA_KEY!r} key"
            )
        return cls.decode(data[POLICIES_DATA_KEY])

    def encode(self) -> str:
        return json.dumps(
            {
                server: [identity.to_dict() for identity in identities]
                for server, identities in sorted(self.entries.items())
            },
            sort_keys=True,
        )

    def to_data(self) -> Dict[str, str]:
        return {POLICIES_DATA_KEY: self.encode()}

    def identities(self) -> List[PolicyIdentity]:
        seen = set()
        for identities in self.entries.values():
            seen.update(identities)
        return sorted(seen)

    def __contains__(self, identity: PolicyIdentity) -> bool:
        return any(identity in ids for ids in self.entries.values())

    def to_reconcile_requests(self, scope: PolicyScope) -> List[ReconcileRequest]:
        """One request per listed policy of the given scope."""
        return [
            ReconcileRequest(name=identity.name, namespace=identity.namespace)
            for identity in self.identities()
            if identity.scope is scope
        ]

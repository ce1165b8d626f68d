"""Reverse index from a policy server name to the policies bound to it."""

import copy
import threading
from typing import Any, Dict, List, Mapping, Optional

from policyguard.core import metrics
from policyguard.core.logging import get_logger
from policyguard.models.resources import Policy, PolicyIdentity

logger = get_logger(__name__)

DELETED = "DELETED"


class PolicyIndex:
    """In-memory index fed by the policy watch streams.

    Both policy kinds land in the same buckets, keyed by ``spec.policyServer``.
    The view can lag the cluster; callers absorb that through requeues.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._by_server: Dict[str, Dict[PolicyIdentity, Policy]] = {}
        self._server_of: Dict[PolicyIdentity, str] = {}

    def update(self, event_type: Optional[str], body: Mapping[str, Any]) -> None:
        """Apply a watch event to the index."""
        policy = Policy.from_body(body)
        if event_type == DELETED:
            self.discard(policy.identity)
        else:
            self.upsert(policy)

    def upsert(self, policy: Policy) -> None:
        identity = policy.identity
        server = policy.policy_server
        with self._lock:
            previous = self._server_of.get(identity)
            if previous is not None and previous != server:
                self._remove(identity, previous)
            self._by_server.setdefault(server, {})[identity] = copy.deepcopy(policy)
            self._server_of[identity] = server
            metrics.indexed_policies.set(len(self._server_of))

    def discard(self, identity: PolicyIdentity) -> None:
        with self._lock:
            server = self._server_of.pop(identity, None)
            if server is not None:
                self._remove(identity, server)
            metrics.indexed_policies.set(len(self._server_of))

    def _remove(self, identity: PolicyIdentity, server: str) -> None:
        bucket = self._by_server.get(server)
        if bucket is None:
            return
        bucket.pop(identity, None)
        if not bucket:
            del self._by_server[server]

    def policies_referencing(self, server_name: str) -> List[Policy]:
        """Snapshot of the policies naming ``server_name``, ordered by identity."""
        with self._lock:
            bucket = self._by_server.get(server_name, {})
            return [copy.deepcopy(bucket[identity]) for identity in sorted(bucket)]

    def __len__(self):
        with self._lock:
            return len(self._server_of)

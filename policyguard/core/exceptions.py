"""Exception taxonomy shared by the store adapter, services and reconcilers."""

from typing import List, Sequence


class PolicyGuardError(Exception):
    """Base exception for operator errors"""


# ============================================================================
# STORE
# ============================================================================


class StoreError(PolicyGuardError):
    """Error talking to the resource store"""


class ResourceNotFoundError(StoreError):
    """The object vanished between trigger and read"""


class ResourceConflictError(StoreError):
    """Optimistic-concurrency violation on update"""


# ============================================================================
# DOMAIN
# ============================================================================


class PolicyServerNotReadyError(PolicyGuardError):
    """Dependent infrastructure is not usable yet.

    This is an expected state during rollout, not a failure: reconcilers turn
    it into a fixed-delay requeue without surfacing an error.
    """


class PolicyServerNotFoundError(PolicyServerNotReadyError):
    """The PolicyServer a policy is bound to does not exist (yet)"""


class CorrelationPayloadError(PolicyGuardError):
    """The correlation payload could not be decoded"""


# ============================================================================
# RECONCILIATION
# ============================================================================


class ReconcileError(PolicyGuardError):
    """Reconciliation failed and must be retried with backoff"""


class AggregateDeletionError(ReconcileError):
    """One or more dependent deletions failed"""

    def __init__(self, message: str, errors: Sequence[Exception]):
        super().__init__(message)
        self.errors: List[Exception] = list(errors)

    def __str__(self):
        details = "; ".join(str(e) for e in self.errors)
        return f"{self.args[0]}: {details}" if details else self.args[0]

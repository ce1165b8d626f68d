"""
Reconciler for ClusterAdmissionPolicy and AdmissionPolicy objects.

Both kinds share ``start_reconciling``; a PolicyReconciler instance is bound
to one PolicyScope and only differs in which kind it reads.
"""

import time
from typing import Optional, Tuple

from policyguard.constants import (CONDITION_READY, FINALIZER,
                                   NOT_READY_REQUEUE_SECONDS, REASON_FAILED,
                                   REASON_NOT_READY, REASON_RECONCILED)
from policyguard.controllers.status import StatusWriter, set_condition
from policyguard.core import metrics
from policyguard.core.exceptions import (PolicyServerNotFoundError,
                                         PolicyServerNotReadyError,
                                         ReconcileError,
                                         ResourceConflictError,
                                         ResourceNotFoundError, StoreError)
from policyguard.core.logging import get_logger_with_context
from policyguard.models.resources import (Policy, PolicyPhase, PolicyScope,
                                          ReconcileRequest, ReconcileResult)
from policyguard.repositories.store import ResourceStore
from policyguard.services.admission import AdmissionReconciler


def start_reconciling(
    store: ResourceStore,
    admission: AdmissionReconciler,
    status_writer: StatusWriter,
    policy: Policy,
    log,
) -> ReconcileResult:
    """Shared reconcile routine of both policy kinds."""
    if policy.is_terminating:
        return reconcile_policy_deletion(store, admission, policy, log)

    if policy.add_finalizer(FINALIZER):
        try:
            _update(store, policy)
        except ResourceNotFoundError:
            return ReconcileResult()
        except ResourceConflictError:
            log.debug("Policy changed while adding the finalizer")
            return ReconcileResult(requeue=True)
        except StoreError as e:
            raise ReconcileError(f"cannot add finalizer: {e}") from e

    previous_phase = policy.phase
    result, error = reconcile_policy(admission, policy, log)
    if policy.phase != previous_phase:
        log.info(f"Policy phase changed from {previous_phase} to {policy.phase}")

    try:
        status_writer.persist(policy)
    except ResourceNotFoundError:
        log.debug("Policy vanished before its status was written")
    except ResourceConflictError:
        log.debug("Policy changed before its status was written")
        if error is None:
            return ReconcileResult(requeue=True)
    except StoreError as e:
        raise ReconcileError(f"update admission policy status error: {e}") from e

    if error is not None:
        raise error
    return result


def reconcile_policy(
    admission: AdmissionReconciler, policy: Policy, log
) -> Tuple[ReconcileResult, Optional[ReconcileError]]:
    policy.status["observedGeneration"] = policy.metadata.get("generation")

    if not policy.policy_server:
        policy.status["phase"] = PolicyPhase.UNSCHEDULED.value
        set_condition(
            policy.status,
            CONDITION_READY,
            False,
            REASON_NOT_READY,
            "No policy server assigned",
        )
        return ReconcileResult(), None

    try:
        admission.converge_policy(policy)
    except PolicyServerNotReadyError as e:
        phase = PolicyPhase.PENDING
        if isinstance(e, PolicyServerNotFoundError):
            phase = PolicyPhase.SCHEDULED
        log.info(
            "Delaying policy registration since policy server is not yet ready",
            extra={"reason": str(e)},
        )
        policy.status["phase"] = phase.value
        set_condition(policy.status, CONDITION_READY, False, REASON_NOT_READY, str(e))
        return ReconcileResult.after(NOT_READY_REQUEUE_SECONDS), None
    except ResourceConflictError as e:
        log.debug(f"Conflict while registering the policy, retrying: {e}")
        return ReconcileResult(requeue=True), None
    except Exception as e:
        log.error(f"Reconciliation error: {e}", exc_info=True)
        set_condition(policy.status, CONDITION_READY, False, REASON_FAILED, str(e))
        error = ReconcileError(f"reconciliation error: {e}")
        error.__cause__ = e
        return ReconcileResult(), error

    policy.status["phase"] = PolicyPhase.ACTIVE.value
    set_condition(
        policy.status,
        CONDITION_READY,
        True,
        REASON_RECONCILED,
        f"Registered on policy server {policy.policy_server}",
    )
    return ReconcileResult(), None


def reconcile_policy_deletion(
    store: ResourceStore, admission: AdmissionReconciler, policy: Policy, log
) -> ReconcileResult:
    try:
        admission.retract_policy(policy)
    except Exception as e:
        raise ReconcileError(f"cannot remove webhook registration: {e}") from e

    if policy.remove_finalizer(FINALIZER):
        try:
            _update(store, policy)
        except (ResourceConflictError, ResourceNotFoundError):
            # The policy was already removed
            log.debug("Policy already gone while clearing the finalizer")
            return ReconcileResult()
        except StoreError as e:
            raise ReconcileError(f"cannot update admission policy: {e}") from e

    log.info("Policy finalized")
    return ReconcileResult()


def _update(store: ResourceStore, policy: Policy) -> None:
    updated = store.replace(policy.resource_kind, policy.to_body())
    policy.resource_version = updated["metadata"].get("resourceVersion")


class PolicyReconciler:
    """Reconciles the policies of one scope"""

    def __init__(
        self,
        scope: PolicyScope,
        store: ResourceStore,
        admission: AdmissionReconciler,
        status_writer: StatusWriter = None,
    ):
        self.scope = scope
        self.kind = scope.policy_kind
        self.store = store
        self.admission = admission
        self.status_writer = status_writer or StatusWriter(store)

    @property
    def controller_name(self) -> str:
        return self.kind.value.lower()

    def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        log = get_logger_with_context(
            __name__,
            controller=self.controller_name,
            policy=request.name,
            namespace=request.namespace,
        )
        start = time.monotonic()
        try:
            # Direct read: ownership decisions must not rely on a stale cache
            try:
                body = self.store.get(
                    self.kind.resource_kind, request.name, request.namespace
                )
            except ResourceNotFoundError:
                log.debug("Policy is gone, nothing to do")
                return ReconcileResult()
            except StoreError as e:
                raise ReconcileError(f"cannot retrieve admission policy: {e}") from e

            policy = Policy.from_body({**body, "kind": self.kind.value})
            return start_reconciling(
                self.store, self.admission, self.status_writer, policy, log
            )
        finally:
            metrics.reconcile_duration.labels(controller=self.controller_name).observe(
                time.monotonic() - start
            )

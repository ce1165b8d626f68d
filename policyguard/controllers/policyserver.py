"""Reconciler for PolicyServer objects."""

import time
from typing import List, Tuple

from policyguard.constants import (CONDITION_READY, FINALIZER,
                                   NOT_READY_REQUEUE_SECONDS, REASON_FAILED,
                                   REASON_NOT_READY, REASON_RECONCILED)
from policyguard.controllers.status import StatusWriter, set_condition
from policyguard.core import metrics
from policyguard.core.exceptions import (AggregateDeletionError,
                                         PolicyServerNotReadyError,
                                         ReconcileError,
                                         ResourceConflictError,
                                         ResourceNotFoundError, StoreError)
from policyguard.core.logging import get_logger_with_context
from policyguard.models.resources import (POLICY_SERVER, Policy, PolicyServer,
                                          ReconcileRequest, ReconcileResult)
from policyguard.repositories.index import PolicyIndex
from policyguard.repositories.store import ResourceStore
from policyguard.services.admission import AdmissionReconciler


class PolicyServerReconciler:
    """Converges a PolicyServer and gates its deletion on its policies.

    The finalizer is removed only once no policy references the server any
    more and the infrastructure teardown succeeded.
    """

    controller_name = "policyserver"

    def __init__(
        self,
        store: ResourceStore,
        index: PolicyIndex,
        admission: AdmissionReconciler,
        status_writer: StatusWriter = None,
    ):
        self.store = store
        self.index = index
        self.admission = admission
        self.status_writer = status_writer or StatusWriter(store)

    def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        log = get_logger_with_context(
            __name__, controller=self.controller_name, policy_server=request.name
        )
        start = time.monotonic()
        try:
            return self._reconcile_request(request, log)
        finally:
            metrics.reconcile_duration.labels(controller=self.controller_name).observe(
                time.monotonic() - start
            )

    def _reconcile_request(self, request: ReconcileRequest, log) -> ReconcileResult:
        try:
            server = PolicyServer.from_body(self.store.get(POLICY_SERVER, request.name))
        except ResourceNotFoundError:
            log.debug("Policy server is gone, nothing to do")
            return ReconcileResult()
        except StoreError as e:
            raise ReconcileError(f"cannot retrieve policy server: {e}") from e

        policies = self.index.policies_referencing(server.name)

        if server.is_terminating:
            return self._reconcile_deletion(server, policies, log)

        if server.add_finalizer(FINALIZER):
            try:
                self._update(server)
            except ResourceNotFoundError:
                return ReconcileResult()
            except ResourceConflictError:
                log.debug("Policy server changed while adding the finalizer")
                return ReconcileResult(requeue=True)
            except StoreError as e:
                raise ReconcileError(f"cannot add finalizer: {e}") from e

        result, error = self._reconcile(server, policies, log)

        # Status is written whatever the outcome of the attempt
        try:
            self.status_writer.persist(server)
        except ResourceNotFoundError:
            log.debug("Policy server vanished before its status was written")
        except ResourceConflictError:
            log.debug("Policy server changed before its status was written")
            if error is None:
                return ReconcileResult(requeue=True)
        except StoreError as e:
            raise ReconcileError(f"update policy server status error: {e}") from e

        if error is not None:
            raise error
        return result

    def _reconcile(
        self, server: PolicyServer, policies: List[Policy], log
    ) -> Tuple[ReconcileResult, ReconcileError]:
        server.status["observedGeneration"] = server.metadata.get("generation")
        try:
            self.admission.converge(server, policies)
        except PolicyServerNotReadyError as e:
            log.info(
                "Delaying policy registration since policy server is not yet ready",
                extra={"reason": str(e)},
            )
            set_condition(
                server.status, CONDITION_READY, False, REASON_NOT_READY, str(e)
            )
            return ReconcileResult.after(NOT_READY_REQUEUE_SECONDS), None
        except ResourceConflictError as e:
            log.debug(f"Conflict while converging, retrying: {e}")
            return ReconcileResult(requeue=True), None
        except Exception as e:
            log.error(f"Reconciliation error: {e}", exc_info=True)
            set_condition(server.status, CONDITION_READY, False, REASON_FAILED, str(e))
            error = ReconcileError(f"reconciliation error: {e}")
            error.__cause__ = e
            return ReconcileResult(), error

        set_condition(
            server.status,
            CONDITION_READY,
            True,
            REASON_RECONCILED,
            f"Serving {len(policies)} policies",
        )
        return ReconcileResult(), None

    def _reconcile_deletion(
        self, server: PolicyServer, policies: List[Policy], log
    ) -> ReconcileResult:
        if policies:
            # Wait for every bound policy to be completely removed first
            return self._delete_policies_and_requeue(server, policies, log)

        try:
            self.admission.tear_down(server)
        except Exception as e:
            raise ReconcileError(
                f"could not reconcile policy server deletion: {e}"
            ) from e

        if server.remove_finalizer(FINALIZER):
            try:
                self._update(server)
            except (ResourceConflictError, ResourceNotFoundError):
                # The policy server was already removed
                log.debug("Policy server already gone while clearing the finalizer")
                return ReconcileResult()
            except StoreError as e:
                raise ReconcileError(f"cannot update policy server: {e}") from e

        log.info("Policy server finalized")
        return ReconcileResult()

    def _delete_policies_and_requeue(
        self, server: PolicyServer, policies: List[Policy], log
    ) -> ReconcileResult:
        errors = []
        for policy in policies:
            if policy.is_terminating:
                continue
            try:
                self.store.delete(policy.resource_kind, policy.name, policy.namespace)
            except ResourceNotFoundError:
                continue
            except StoreError as e:
                errors.append(e)

        if errors:
            error = AggregateDeletionError(
                f"could not remove all policies bound to policy server {server.name}",
                errors,
            )
            log.error(str(error))
            raise error

        log.info(f"Waiting for {len(policies)} policies to be removed")
        return ReconcileResult(requeue=True)

    def _update(self, server: PolicyServer) -> None:
        updated = self.store.replace(POLICY_SERVER, server.to_body())
        server.resource_version = updated["metadata"].get("resourceVersion")

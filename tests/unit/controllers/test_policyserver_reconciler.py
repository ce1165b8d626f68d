"""Unit tests for the PolicyServer reconciler."""

from unittest.mock import MagicMock

import pytest

from policyguard.constants import FINALIZER
from policyguard.controllers.policyserver import PolicyServerReconciler
from policyguard.core.exceptions import (AggregateDeletionError,
                                         PolicyServerNotReadyError,
                                         ReconcileError,
                                         ResourceConflictError,
                                         ResourceNotFoundError, StoreError)
from policyguard.models.resources import (ADMISSION_POLICY,
                                          CLUSTER_ADMISSION_POLICY,
                                          POLICY_SERVER, ReconcileRequest,
                                          ReconcileResult)
from policyguard.services.admission import AdmissionReconciler

REQUEST = ReconcileRequest(name="default")


@pytest.fixture
def admission_mock():
    return MagicMock(spec=AdmissionReconciler)


@pytest.fixture
def reconciler(store, index, admission_mock):
    return PolicyServerReconciler(store, index, admission_mock)


@pytest.fixture
def terminating_server(store, make_policy_server):
    """A policy server marked for deletion, still held by the finalizer."""
    make_policy_server("default", finalizers=[FINALIZER])
    store.delete(POLICY_SERVER, "default")
    store.deleted.clear()
    return store.get(POLICY_SERVER, "default")


def _ready_condition(store):
    status = store.get(POLICY_SERVER, "default").get("status") or {}
    return next(c for c in status.get("conditions", []) if c["type"] == "Ready")


def _policy_deletes(store):
    return store.deletes_of(CLUSTER_ADMISSION_POLICY) + store.deletes_of(ADMISSION_POLICY)


@pytest.mark.unit
class TestPolicyServerReconcile:
    """Test convergence of live policy servers."""

    def test_missing_policy_server(self, reconciler, admission_mock):
        assert reconciler.reconcile(REQUEST) == ReconcileResult()
        admission_mock.converge.assert_not_called()

    def test_read_failure(self, reconciler, store):
        store.failures[("get", "PolicyServer")] = StoreError("apiserver down")

        with pytest.raises(ReconcileError):
            reconciler.reconcile(REQUEST)

    def test_adds_finalizer_and_reports_ready(
        self, reconciler, store, make_policy_server, make_policy, admission_mock
    ):
        make_policy_server("default")
        make_policy("p1")
        make_policy("p2", namespace="team-a")

        result = reconciler.reconcile(REQUEST)

        assert result == ReconcileResult()
        stored = store.get(POLICY_SERVER, "default")
        assert stored["metadata"]["finalizers"] == [FINALIZER]
        assert stored["status"]["observedGeneration"] == 1
        condition = _ready_condition(store)
        assert condition["status"] == "True"
        assert condition["message"] == "Serving 2 policies"

        server, policies = admission_mock.converge.call_args.args
        assert server.name == "default"
        assert sorted(p.name for p in policies) == ["p1", "p2"]

    def test_finalizer_is_added_once(self, reconciler, store, make_policy_server):
        make_policy_server("default")

        reconciler.reconcile(REQUEST)
        reconciler.reconcile(REQUEST)

        assert store.get(POLICY_SERVER, "default")["metadata"]["finalizers"] == [FINALIZER]

    def test_not_ready_requeues_after_fixed_delay(
        self, reconciler, store, make_policy_server, admission_mock
    ):
        make_policy_server("default")
        admission_mock.converge.side_effect = PolicyServerNotReadyError("rolling out")

        result = reconciler.reconcile(REQUEST)

        assert result == ReconcileResult(requeue=True, requeue_after=5.0)
        condition = _ready_condition(store)
        assert condition["status"] == "False"
        assert condition["message"] == "rolling out"

    def test_converge_failure_still_writes_status(
        self, reconciler, store, make_policy_server, admission_mock
    ):
        make_policy_server("default")
        cause = RuntimeError("invalid deployment")
        admission_mock.converge.side_effect = cause

        with pytest.raises(ReconcileError) as exc_info:
            reconciler.reconcile(REQUEST)

        assert exc_info.value.__cause__ is cause
        condition = _ready_condition(store)
        assert condition["status"] == "False"
        assert condition["reason"] == "ReconciliationFailed"

    def test_conflict_while_converging_requeues(
        self, reconciler, make_policy_server, admission_mock
    ):
        make_policy_server("default")
        admission_mock.converge.side_effect = ResourceConflictError("moved on")

        assert reconciler.reconcile(REQUEST) == ReconcileResult(requeue=True)

    def test_conflict_while_adding_finalizer_requeues(
        self, reconciler, store, make_policy_server, admission_mock
    ):
        make_policy_server("default")
        store.failures[("replace", "PolicyServer")] = ResourceConflictError("moved on")

        assert reconciler.reconcile(REQUEST) == ReconcileResult(requeue=True)
        admission_mock.converge.assert_not_called()

    def test_conflict_while_writing_status_requeues(
        self, reconciler, store, make_policy_server
    ):
        make_policy_server("default")
        store.failures[("replace_status", "PolicyServer")] = ResourceConflictError("moved on")

        assert reconciler.reconcile(REQUEST) == ReconcileResult(requeue=True)


@pytest.mark.unit
class TestPolicyServerDeletion:
    """Test the deletion protocol of policy servers."""

    def test_dependents_block_teardown(
        self, reconciler, store, terminating_server, make_policy, admission_mock
    ):
        make_policy("p1")
        make_policy("p2", namespace="team-a")

        for _ in range(3):
            assert reconciler.reconcile(REQUEST) == ReconcileResult(requeue=True)

        admission_mock.tear_down.assert_not_called()
        assert store.get(POLICY_SERVER, "default")["metadata"]["finalizers"] == [FINALIZER]

    def test_only_active_dependents_are_deleted(
        self, reconciler, store, index, terminating_server, make_policy, admission_mock
    ):
        make_policy("a")
        make_policy("b", namespace="team-a")
        make_policy("c", finalizers=[FINALIZER])
        store.delete(CLUSTER_ADMISSION_POLICY, "c")
        index.update("MODIFIED", store.get(CLUSTER_ADMISSION_POLICY, "c"))
        store.deleted.clear()

        result = reconciler.reconcile(REQUEST)

        assert result == ReconcileResult(requeue=True)
        assert sorted(_policy_deletes(store)) == [("", "a"), ("team-a", "b")]
        admission_mock.tear_down.assert_not_called()

    def test_vanished_dependent_is_skipped(
        self, reconciler, store, index, terminating_server, make_policy, build_policy
    ):
        make_policy("present")
        index.update("ADDED", build_policy("gone"))

        result = reconciler.reconcile(REQUEST)

        assert result == ReconcileResult(requeue=True)
        assert sorted(_policy_deletes(store)) == [("", "gone"), ("", "present")]
        assert not store.exists(CLUSTER_ADMISSION_POLICY, "present")

    def test_failed_dependent_deletions_are_aggregated(
        self, reconciler, store, terminating_server, make_policy, admission_mock
    ):
        make_policy("a")
        make_policy("b")
        store.delete_errors[("ClusterAdmissionPolicy", "a")] = StoreError("forbidden")

        with pytest.raises(AggregateDeletionError) as exc_info:
            reconciler.reconcile(REQUEST)

        assert len(exc_info.value.errors) == 1
        assert "forbidden" in str(exc_info.value)
        assert not store.exists(CLUSTER_ADMISSION_POLICY, "b")
        admission_mock.tear_down.assert_not_called()
        assert store.get(POLICY_SERVER, "default")["metadata"]["finalizers"] == [FINALIZER]

    def test_no_dependents_tears_down_and_releases(
        self, reconciler, store, terminating_server, admission_mock
    ):
        result = reconciler.reconcile(REQUEST)

        assert result == ReconcileResult()
        admission_mock.tear_down.assert_called_once()
        assert not store.exists(POLICY_SERVER, "default")

    def test_teardown_failure_keeps_finalizer(
        self, reconciler, store, terminating_server, admission_mock
    ):
        admission_mock.tear_down.side_effect = StoreError("cannot delete deployment")

        with pytest.raises(ReconcileError):
            reconciler.reconcile(REQUEST)

        assert store.get(POLICY_SERVER, "default")["metadata"]["finalizers"] == [FINALIZER]

    @pytest.mark.parametrize(
        "error", [ResourceConflictError("moved on"), ResourceNotFoundError("gone")]
    )
    def test_releasing_an_already_removed_server_succeeds(
        self, reconciler, store, terminating_server, error
    ):
        store.failures[("replace", "PolicyServer")] = error

        assert reconciler.reconcile(REQUEST) == ReconcileResult()

    def test_release_failure_is_reported(self, reconciler, store, terminating_server):
        store.failures[("replace", "PolicyServer")] = StoreError("apiserver down")

        with pytest.raises(ReconcileError):
            reconciler.reconcile(REQUEST)

    def test_deletion_does_not_write_status(
        self, reconciler, store, terminating_server, make_policy
    ):
        make_policy("p1")
        store.failures[("replace_status", "PolicyServer")] = StoreError("unexpected")

        assert reconciler.reconcile(REQUEST) == ReconcileResult(requeue=True)

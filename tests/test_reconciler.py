"""Tests for the Reconciler pass and the ReconcilerLoop driver."""

import asyncio
from datetime import datetime, timedelta, timezone

from designate_core.cluster.store import BackendError, ClusterStore
from designate_core.history.store import ReconcileHistory
from designate_core.models import (
    ConditionStatus,
    ConditionType,
    DatabaseAccount,
    ManagedEntity,
    Phase,
    ReconcilerConfig,
    RequeueKind,
    Secret,
    Severity,
    Topology,
    TopologyRef,
    Workload,
)
from designate_core.reconciler.loop import Reconciler, ReconcilerLoop
from designate_core.rendering.renderer import ServiceConfigRenderer
from tests.conftest import NAMESPACE, ClusterBuilder

FINALIZER = "openstack.org/designateservice"


class FailingStore(ClusterStore):
    """Raises a backend error on reads of the given kinds while enabled."""

    def __init__(self):
        super().__init__()
        self.failing = set()

    def get(self, cls, namespace, name):
        if cls in self.failing:
            raise BackendError("connection refused")
        return super().get(cls, namespace, name)


class MeddlingRenderer(ServiceConfigRenderer):
    """Touches the entity mid-pass, as a concurrent writer would."""

    def __init__(self, store):
        self.store = store

    def render(self, entity, inputs):
        current = self.store.get(ManagedEntity, entity.namespace, entity.name)
        current.metadata.labels = {"touched": "yes"}
        self.store.update(current)
        return super().render(entity, inputs)


class FlippingRenderer(ServiceConfigRenderer):
    """Points the entity back at another topology once, mid-pass."""

    def __init__(self, store, topology_name):
        self.store = store
        self.topology_name = topology_name
        self.flipped = False

    def render(self, entity, inputs):
        if not self.flipped:
            self.flipped = True
            current = self.store.get(ManagedEntity, entity.namespace, entity.name)
            current.spec.topology_ref = TopologyRef(name=self.topology_name)
            self.store.update(current)
        return super().render(entity, inputs)


def _conditions(entity):
    return entity.status.conditions


class TestReconcilePass:
    def setup_method(self):
        self.store = ClusterStore()
        self.cluster = ClusterBuilder(self.store)
        self.reconciler = Reconciler(self.store)

    def _reconcile(self, name="designate", **kw):
        return self.reconciler.reconcile(NAMESPACE, name, **kw)

    def test_missing_entity_is_not_requeued(self):
        result = self._reconcile("ghost")
        assert result.requeue.kind == RequeueKind.NONE
        assert result.committed is False

    def test_first_pass_adds_finalizer(self):
        self.cluster.entity()
        self._reconcile()
        assert FINALIZER in self.cluster.get_entity().metadata.finalizers

    def test_short_circuit_on_missing_input(self):
        """Later steps do not run and leave no condition behind."""
        self.cluster.entity()
        result = self._reconcile()

        assert result.requeue.kind == RequeueKind.AFTER
        assert result.requeue.after_seconds == 10
        assert result.steps == ["input"]
        assert result.blocked_by == ConditionType.INPUT_READY

        entity = self.cluster.get_entity()
        conditions = _conditions(entity)
        assert conditions.get(ConditionType.INPUT_READY).status == ConditionStatus.FALSE
        assert ConditionType.SERVICE_CONFIG_READY not in conditions
        assert ConditionType.DEPLOYMENT_READY not in conditions
        ready = conditions.get(ConditionType.READY)
        assert ready.status == ConditionStatus.FALSE
        assert ready.reason == "InputNotReady"
        assert entity.status.ready_count == 0
        assert entity.status.phase == Phase.PENDING
        assert self.store.find(Workload, NAMESPACE, "designate") is None

    def test_transport_not_ready(self):
        self.cluster.entity()
        self.cluster.input_secret()
        self.cluster.transport(ready=False)
        result = self._reconcile()
        assert result.requeue.after_seconds == 10
        ready = _conditions(self.cluster.get_entity()).get(ConditionType.READY)
        assert ready.reason == "TransportURLNotReady"

    def test_missing_database_account_requeues_later(self):
        self.cluster.entity()
        self.cluster.input_secret()
        self.cluster.transport()
        result = self._reconcile()
        assert result.requeue.after_seconds == 60
        assert result.blocked_by == ConditionType.DB_READY

    def test_transport_condition_removed_when_unreferenced(self):
        self.cluster.entity(transport_ref=None)
        self.cluster.input_secret()
        self.cluster.database()
        self.cluster.nad()
        self._reconcile()
        conditions = _conditions(self.cluster.get_entity())
        assert ConditionType.TRANSPORT_URL_READY not in conditions
        assert ConditionType.TOPOLOGY_READY not in conditions
        assert conditions.is_true(ConditionType.SERVICE_CONFIG_READY)

    def test_missing_network_attachment(self):
        self.cluster.entity(network_attachments=["designate", "internalapi"])
        self.cluster.all_dependencies()
        result = self._reconcile()
        ready = result.ready
        assert ready.reason == "NetworkAttachmentsNotFound"
        assert ready.severity == Severity.WARNING
        assert result.requeue.after_seconds == 10

    def test_convergence_to_ready(self):
        self.cluster.entity()
        self.cluster.all_dependencies()

        result = self._reconcile()
        assert result.phase == Phase.DEPLOYING
        assert result.requeue.after_seconds == 10
        workload = self.store.get(Workload, NAMESPACE, "designate")
        assert workload.network_attachments == ["openstack/designate"]
        config = self.store.get(Secret, NAMESPACE, "designate-config-data")
        assert "transport_url=rabbit://" in config.data["designate.conf"]
        assert workload.config_hash == self.cluster.get_entity().status.hash["config"]

        self.cluster.set_workload_ready()
        result = self._reconcile()
        entity = self.cluster.get_entity()
        assert result.requeue.kind == RequeueKind.NONE
        assert entity.status.phase == Phase.READY
        assert entity.status.ready_count == 1
        assert entity.status.network_attachments == ["openstack/designate"]
        assert _conditions(entity).is_true(ConditionType.READY)

    def test_pass_is_idempotent(self):
        """A converged entity produces the same status and no writes."""
        self.cluster.entity()
        self.cluster.all_dependencies()
        self._reconcile()
        self.cluster.set_workload_ready()
        self._reconcile()

        before = self.cluster.get_entity()
        workload_rv = self.store.get(Workload, NAMESPACE, "designate").metadata.resource_version
        result = self._reconcile()
        after = self.cluster.get_entity()

        assert result.committed is True
        assert after.status == before.status
        assert after.metadata.resource_version == before.metadata.resource_version
        assert self.store.get(Workload, NAMESPACE, "designate").metadata.resource_version == workload_rv

    def test_transition_time_kept_across_passes(self):
        self.cluster.entity()
        self._reconcile()
        first = _conditions(self.cluster.get_entity()).get(ConditionType.INPUT_READY)
        self._reconcile()
        second = _conditions(self.cluster.get_entity()).get(ConditionType.INPUT_READY)
        assert first.last_transition_time == second.last_transition_time

    def test_regression_returns_to_pending(self):
        self.cluster.entity()
        self.cluster.all_dependencies()
        self._reconcile()
        self.cluster.set_workload_ready()
        self._reconcile()

        self.store.delete(Secret, NAMESPACE, "osp-secret")
        result = self._reconcile()
        assert result.phase == Phase.PENDING
        assert result.ready.reason == "InputNotReady"

    def test_replica_scale_updates_workload(self):
        self.cluster.entity()
        self.cluster.all_dependencies()
        self._reconcile()
        self.cluster.set_workload_ready()
        self._reconcile()

        entity = self.cluster.get_entity()
        entity.spec.replicas = 3
        self.store.update(entity)
        result = self._reconcile()
        assert self.store.get(Workload, NAMESPACE, "designate").replicas == 3
        assert result.phase == Phase.DEPLOYING
        assert self.cluster.get_entity().status.observed_generation == 2

    def test_conflict_requeues_immediately_without_conditions(self):
        self.cluster.entity()
        self.cluster.all_dependencies()
        reconciler = Reconciler(self.store, renderer=MeddlingRenderer(self.store))
        result = reconciler.reconcile(NAMESPACE, "designate")

        assert result.requeue.kind == RequeueKind.IMMEDIATELY
        assert result.committed is False
        assert len(_conditions(self.cluster.get_entity())) == 0

    def test_deadline_marks_next_step_unknown(self):
        self.cluster.entity()
        self.cluster.all_dependencies()
        past = datetime(2000, 1, 1, tzinfo=timezone.utc)
        result = self._reconcile(deadline=past)

        assert result.steps == []
        assert result.requeue.after_seconds == 5
        cond = _conditions(self.cluster.get_entity()).get(ConditionType.INPUT_READY)
        assert cond.status == ConditionStatus.UNKNOWN
        assert cond.reason == "DeadlineExceeded"

    def test_topology_missing_requeues_later(self):
        self.cluster.entity(topology_ref=TopologyRef(name="zone-a"))
        self.cluster.all_dependencies()
        result = self._reconcile()
        assert result.requeue.after_seconds == 60
        assert result.ready.reason == "TopologyNotFound"

    def test_topology_bound_into_workload(self):
        self.cluster.topology("zone-a")
        self.cluster.entity(topology_ref=TopologyRef(name="zone-a"))
        self.cluster.all_dependencies()
        self._reconcile()
        assert self.cluster.topology_finalizers("zone-a") == [f"{FINALIZER}-designate"]
        assert self.store.get(Workload, NAMESPACE, "designate").topology == "zone-a"
        entity = self.cluster.get_entity()
        assert entity.status.last_applied_topology.name == "zone-a"

    def test_deletion_releases_everything(self):
        self.cluster.topology("zone-a")
        self.cluster.entity(topology_ref=TopologyRef(name="zone-a"))
        self.cluster.all_dependencies()
        self._reconcile()

        assert self.store.delete(ManagedEntity, NAMESPACE, "designate") is False
        result = self._reconcile()
        assert result.requeue.kind == RequeueKind.NONE
        assert self.store.find(ManagedEntity, NAMESPACE, "designate") is None
        assert self.store.find(Workload, NAMESPACE, "designate") is None
        assert self.store.find(Secret, NAMESPACE, "designate-config-data") is None
        assert self.cluster.topology_finalizers("zone-a") == []

    def test_topology_blocker_outranks_stale_conditions(self):
        """Conditions the topology step pre-empted no longer name the cause."""
        self.cluster.entity()
        self.cluster.input_secret()
        self.cluster.transport(ready=False)
        self._reconcile()

        self.cluster.transport()
        entity = self.cluster.get_entity()
        entity.spec.topology_ref = TopologyRef(name="missing")
        self.store.update(entity)
        result = self._reconcile()

        assert result.blocked_by == ConditionType.TOPOLOGY_READY
        assert result.ready.reason == "TopologyNotFound"
        transport = _conditions(self.cluster.get_entity()).get(
            ConditionType.TRANSPORT_URL_READY
        )
        assert transport.status == ConditionStatus.UNKNOWN
        assert transport.reason == "Init"

    def test_lost_rebind_status_leaves_single_binding(self):
        """A rebind whose status write conflicts is repaired on the next pass."""
        self.cluster.topology("zone-a")
        self.cluster.topology("zone-b")
        self.cluster.entity(topology_ref=TopologyRef(name="zone-a"))
        self.cluster.all_dependencies()
        self._reconcile()

        entity = self.cluster.get_entity()
        entity.spec.topology_ref = TopologyRef(name="zone-b")
        self.store.update(entity)
        reconciler = Reconciler(
            self.store, renderer=FlippingRenderer(self.store, "zone-a")
        )
        result = reconciler.reconcile(NAMESPACE, "designate")
        assert result.requeue.kind == RequeueKind.IMMEDIATELY

        for _ in range(3):
            reconciler.reconcile(NAMESPACE, "designate")

        finalizer = f"{FINALIZER}-designate"
        assert self.cluster.topology_finalizers("zone-a") == [finalizer]
        assert self.cluster.topology_finalizers("zone-b") == []
        assert self.cluster.get_entity().status.last_applied_topology.name == "zone-a"

    def test_history_recorded(self):
        history = ReconcileHistory()
        reconciler = Reconciler(self.store, history=history)
        self.cluster.entity()
        reconciler.reconcile(NAMESPACE, "designate")
        record = history.latest("openstack/designate")
        assert record.ready_reason == "InputNotReady"
        assert record.requeue == "after"
        assert record.requeue_after_seconds == 10


class TestErrorBackoff:
    def setup_method(self):
        self.store = FailingStore()
        self.cluster = ClusterBuilder(self.store)
        self.reconciler = Reconciler(self.store)
        self.cluster.entity()
        self.cluster.all_dependencies()

    def test_backoff_grows_and_resets(self):
        self.store.failing.add(DatabaseAccount)
        delays = [
            self.reconciler.reconcile(NAMESPACE, "designate").requeue.after_seconds
            for _ in range(4)
        ]
        assert delays == [5, 10, 20, 40]

        ready = _conditions(self.cluster.get_entity()).get(ConditionType.READY)
        assert ready.reason == "Error"
        assert ready.severity == Severity.ERROR
        assert self.reconciler.backoff_state("openstack/designate").consecutive_errors == 4

        self.store.failing.clear()
        result = self.reconciler.reconcile(NAMESPACE, "designate")
        assert result.ready.reason == "DeploymentNotReady"
        assert self.reconciler.backoff_state("openstack/designate") is None

    def test_topology_read_failure_is_an_error(self):
        self.cluster.entity("placed", topology_ref=TopologyRef(name="zone-a"))
        self.store.failing.add(Topology)
        result = self.reconciler.reconcile(NAMESPACE, "placed")

        assert result.requeue.after_seconds == 5
        assert result.ready.reason == "Error"
        assert result.ready.severity == Severity.ERROR
        cond = _conditions(self.cluster.get_entity("placed")).get(
            ConditionType.TOPOLOGY_READY
        )
        assert cond.severity == Severity.ERROR

    def test_backoff_is_capped(self):
        self.store.failing.add(DatabaseAccount)
        reconciler = Reconciler(
            self.store,
            config=ReconcilerConfig(error_backoff_max_seconds=30),
        )
        delays = [
            reconciler.reconcile(NAMESPACE, "designate").requeue.after_seconds
            for _ in range(6)
        ]
        assert max(delays) == 30
        assert delays[-1] == 30


class TestReconcilerLoop:
    NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def setup_method(self):
        self.store = ClusterStore()
        self.cluster = ClusterBuilder(self.store)
        self.loop = ReconcilerLoop(Reconciler(self.store))

    def test_sync_picks_up_all_entities(self):
        self.cluster.entity("a")
        self.cluster.entity("b")
        results = self.loop.reconcile_once(now=self.NOW)
        assert [r.entity_key for r in results] == ["openstack/a", "openstack/b"]

    def test_unready_entity_rescheduled(self):
        self.cluster.entity()
        self.loop.reconcile_once(now=self.NOW)
        assert self.loop.scheduled()["openstack/designate"] == self.NOW + timedelta(seconds=10)
        assert self.loop.reconcile_once(now=self.NOW + timedelta(seconds=5)) == []

    def test_ready_entity_resynced_on_heartbeat(self):
        self.cluster.entity()
        self.cluster.all_dependencies()
        self.loop.reconcile_once(now=self.NOW)
        self.cluster.set_workload_ready()
        self.loop.reconcile_once(now=self.NOW + timedelta(seconds=10))
        assert self.loop.scheduled()["openstack/designate"] == (
            self.NOW + timedelta(seconds=70)
        )

    def test_enqueue_keeps_earliest(self):
        later = self.NOW + timedelta(minutes=5)
        self.loop.enqueue("openstack/designate", later)
        self.loop.enqueue("openstack/designate", self.NOW)
        self.loop.enqueue("openstack/designate", later)
        assert self.loop.scheduled()["openstack/designate"] == self.NOW

    def test_deleted_entity_dropped(self):
        self.loop.enqueue("openstack/ghost", self.NOW)
        self.loop.reconcile_once(now=self.NOW)
        assert "openstack/ghost" not in self.loop.scheduled()

    def test_run_async_until_stopped(self):
        self.cluster.entity()

        async def run():
            stop = asyncio.Event()
            task = asyncio.create_task(self.loop.run_async(stop))
            await asyncio.sleep(0.05)
            assert self.loop.status == "running"
            stop.set()
            await task

        asyncio.run(run())
        assert self.loop.status == "stopped"
        assert FINALIZER in self.cluster.get_entity().metadata.finalizers

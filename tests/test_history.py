"""Tests for the Reconcile History store."""

from datetime import datetime, timedelta, timezone

from designate_core.history.store import PassRecord, ReconcileHistory
from designate_core.models import (
    Condition,
    ConditionStatus,
    ConditionType,
    Phase,
    ReconcileResult,
    Requeue,
)

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _result(key="openstack/designate", reason="InputNotReady", requeue=None):
    status = ConditionStatus.TRUE if reason == "Ready" else ConditionStatus.FALSE
    return ReconcileResult(
        entity_key=key,
        requeue=requeue or Requeue.after(10),
        phase=Phase.READY if reason == "Ready" else Phase.PENDING,
        ready=Condition(
            type=ConditionType.READY,
            status=status,
            reason=reason,
            message="msg",
            last_transition_time=T0,
        ),
        committed=True,
        steps=["input"],
        blocked_by=None if reason == "Ready" else ConditionType.INPUT_READY,
        started_at=T0,
        finished_at=T0 + timedelta(milliseconds=1500),
    )


class TestReconcileHistory:
    def setup_method(self):
        self.history = ReconcileHistory(db_path=":memory:")

    def teardown_method(self):
        self.history.close()

    def test_record_from_result(self):
        record = self.history.record(_result())
        assert record.phase == "Pending"
        assert record.blocked_by == "InputReady"
        assert record.requeue == "after"
        assert record.duration_seconds == 1.5
        assert self.history.count() == 1

    def test_query_by_entity_oldest_first(self):
        self.history.record(_result(reason="InputNotReady"))
        self.history.record(_result(key="openstack/other"))
        self.history.record(_result(reason="Ready", requeue=Requeue.none()))
        records = self.history.query_by_entity("openstack/designate")
        assert [r.ready_reason for r in records] == ["InputNotReady", "Ready"]

    def test_query_limit_keeps_newest(self):
        for reason in ("InputNotReady", "DBNotReady", "Ready"):
            self.history.record(_result(reason=reason))
        records = self.history.query_by_entity("openstack/designate", limit=2)
        assert [r.ready_reason for r in records] == ["DBNotReady", "Ready"]
        assert self.history.latest("openstack/designate").ready_reason == "Ready"

    def test_query_by_reason(self):
        self.history.record(_result(reason="DBNotReady"))
        self.history.record(_result(key="openstack/other", reason="DBNotReady"))
        self.history.record(_result(reason="Ready"))
        records = self.history.query_by_reason("DBNotReady")
        assert {r.entity_key for r in records} == {"openstack/designate", "openstack/other"}

    def test_query_recent(self):
        for i in range(5):
            self.history.record(_result(key=f"openstack/e{i}"))
        recent = self.history.query_recent(limit=2)
        assert [r.entity_key for r in recent] == ["openstack/e3", "openstack/e4"]

    def test_latest_unknown_entity(self):
        assert self.history.latest("openstack/ghost") is None

    def test_round_trip_keeps_steps(self):
        self.history.append(PassRecord.from_result(_result()))
        assert self.history.query_recent()[0].steps == ["input"]

    def test_file_backed_history_persists(self, tmp_path):
        path = str(tmp_path / "history.db")
        first = ReconcileHistory(db_path=path)
        first.record(_result())
        first.close()
        second = ReconcileHistory(db_path=path)
        assert second.count() == 1
        second.close()

"""
Condition aggregation — reduces a ConditionSet to one Ready condition.

Conditions are walked in a fixed priority order, most fundamental
dependency first, so the aggregate always names the root-cause blocker
rather than a downstream symptom.
"""

from datetime import datetime, timezone
from typing import FrozenSet, Optional, Protocol, Tuple

from designate_core.models.condition import (
    READY_MESSAGES,
    Condition,
    ConditionSet,
    ConditionStatus,
    ConditionType,
    Reason,
    Severity,
)
from designate_core.models.entity import TopologyRef


PRIORITY_ORDER: Tuple[ConditionType, ...] = (
    ConditionType.INPUT_READY,
    ConditionType.TRANSPORT_URL_READY,
    ConditionType.DB_READY,
    ConditionType.NETWORK_ATTACHMENTS_READY,
    ConditionType.TOPOLOGY_READY,
    ConditionType.SERVICE_CONFIG_READY,
    ConditionType.DEPLOYMENT_READY,
)

# Removed from the set when the dependency does not apply.
OPTIONAL_CONDITIONS: FrozenSet[ConditionType] = frozenset({
    ConditionType.TRANSPORT_URL_READY,
    ConditionType.TOPOLOGY_READY,
})


class ConditionUpdater(Protocol):
    """Condition mutation capability."""

    def set(self, condition: Condition) -> Condition: ...

    def mark_true(
        self,
        condition_type: ConditionType,
        message_format: Optional[str] = None,
        *message_args,
        now: Optional[datetime] = None,
    ) -> Condition: ...

    def mark_false(
        self,
        condition_type: ConditionType,
        reason: str,
        severity: Severity,
        message_format: str,
        *message_args,
        now: Optional[datetime] = None,
    ) -> Condition: ...

    def remove(self, condition_type: ConditionType) -> bool: ...


class TopologyHandler(Protocol):
    """Topology-reference access capability."""

    def get_spec_topology_ref(self) -> Optional[TopologyRef]: ...

    def get_last_applied_topology(self) -> Optional[TopologyRef]: ...

    def set_last_applied_topology(self, ref: Optional[TopologyRef]) -> None: ...


def pending_evaluation(condition: Optional[Condition]) -> bool:
    """Absent, or reset to Unknown/Init because its step has not run yet."""
    return condition is None or (
        condition.status == ConditionStatus.UNKNOWN
        and condition.reason == Reason.INIT.value
    )


def first_blocking(conditions: ConditionSet) -> Optional[Condition]:
    """The highest-priority evaluated condition that is not True."""
    for condition_type in PRIORITY_ORDER:
        cond = conditions.get(condition_type)
        if not pending_evaluation(cond) and not cond.is_true():
            return cond
    return None


def aggregate(
    conditions: ConditionSet,
    now: Optional[datetime] = None,
) -> Condition:
    """
    Produce the summary Ready condition.

    The first present condition in priority order that is not True decides
    the result. Conditions still pending evaluation (absent, or Unknown/Init)
    do not block; a pending required condition with nothing failing means
    the entity has not been fully evaluated yet and yields Unknown/Init.
    """
    now = now or datetime.now(timezone.utc)

    blocking = first_blocking(conditions)
    if blocking is not None:
        return Condition(
            type=ConditionType.READY,
            status=ConditionStatus.FALSE,
            severity=blocking.severity,
            reason=blocking.reason,
            message=blocking.message,
            last_transition_time=now,
        )

    for condition_type in PRIORITY_ORDER:
        if condition_type in OPTIONAL_CONDITIONS:
            continue
        if not pending_evaluation(conditions.get(condition_type)):
            continue
        return Condition(
            type=ConditionType.READY,
            status=ConditionStatus.UNKNOWN,
            severity=Severity.NONE,
            reason=Reason.INIT.value,
            message=f"{condition_type.value} not yet evaluated",
            last_transition_time=now,
        )

    return Condition(
        type=ConditionType.READY,
        status=ConditionStatus.TRUE,
        severity=Severity.NONE,
        reason=Reason.READY.value,
        message=READY_MESSAGES[ConditionType.READY],
        last_transition_time=now,
    )


def apply_aggregate(
    conditions: ConditionSet, now: Optional[datetime] = None
) -> Condition:
    """Compute the aggregate and store it in the set."""
    return conditions.set(aggregate(conditions, now))

"""Designate reconcile core data models."""

from designate_core.models.condition import (
    Condition,
    ConditionSet,
    ConditionStatus,
    ConditionType,
    Reason,
    Severity,
)
from designate_core.models.entity import (
    DesignateServiceSpec,
    DesignateServiceStatus,
    ManagedEntity,
    ObjectMeta,
    PasswordSelectors,
    Phase,
    TopologyRef,
)
from designate_core.models.reconciler import (
    BackoffState,
    DependencyOutcome,
    OutcomeCategory,
    ReconcileResult,
    ReconcilerConfig,
    Requeue,
    RequeueKind,
)
from designate_core.models.resources import (
    DatabaseAccount,
    NetworkAttachmentDefinition,
    Secret,
    Topology,
    TopologySpreadConstraint,
    TransportURL,
    Workload,
    WorkloadStatus,
)

__all__ = [
    "BackoffState",
    "Condition",
    "ConditionSet",
    "ConditionStatus",
    "ConditionType",
    "DatabaseAccount",
    "DependencyOutcome",
    "DesignateServiceSpec",
    "DesignateServiceStatus",
    "ManagedEntity",
    "NetworkAttachmentDefinition",
    "ObjectMeta",
    "OutcomeCategory",
    "PasswordSelectors",
    "Phase",
    "Reason",
    "ReconcileResult",
    "ReconcilerConfig",
    "Requeue",
    "RequeueKind",
    "Secret",
    "Severity",
    "Topology",
    "TopologyRef",
    "TopologySpreadConstraint",
    "TransportURL",
    "Workload",
    "WorkloadStatus",
]

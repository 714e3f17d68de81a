"""Reconciler configuration, requeue directives and per-pass value objects."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from designate_core.models.condition import Condition, ConditionType, Severity
from designate_core.models.entity import Phase


class ReconcilerConfig(BaseModel):
    """Configuration for the Reconciler."""

    unready_requeue_seconds: float = 10
    misconfigured_requeue_seconds: float = 60
    error_backoff_base_seconds: float = 5
    error_backoff_max_seconds: float = 300
    pass_timeout_seconds: float = 30
    conflict_retry_attempts: int = 5
    heartbeat_interval_seconds: int = 60
    default_topology_selector: Dict[str, str] = {"service": "designate"}
    entity_finalizer: str = "openstack.org/designateservice"

    def topology_finalizer(self, entity_name: str) -> str:
        return f"{self.entity_finalizer}-{entity_name}"


class RequeueKind(str, Enum):
    NONE = "none"
    IMMEDIATELY = "immediately"
    AFTER = "after"


class Requeue(BaseModel):
    """Tells the event loop when to invoke reconcile again."""

    kind: RequeueKind
    after_seconds: Optional[float] = None

    @classmethod
    def none(cls) -> "Requeue":
        return cls(kind=RequeueKind.NONE)

    @classmethod
    def immediately(cls) -> "Requeue":
        return cls(kind=RequeueKind.IMMEDIATELY)

    @classmethod
    def after(cls, seconds: float) -> "Requeue":
        return cls(kind=RequeueKind.AFTER, after_seconds=seconds)

    @property
    def delay(self) -> Optional[timedelta]:
        if self.kind == RequeueKind.NONE:
            return None
        if self.kind == RequeueKind.IMMEDIATELY:
            return timedelta(0)
        return timedelta(seconds=self.after_seconds or 0)


class OutcomeCategory(str, Enum):
    SATISFIED = "satisfied"
    NOT_APPLICABLE = "not_applicable"
    UNREADY = "unready"                     # Expected to resolve itself
    MISCONFIGURED = "misconfigured"         # Reference points nowhere
    BACKEND_ERROR = "backend_error"         # Read/write failure against a store


class DependencyOutcome(BaseModel):
    """
    Result of a single dependency check. Never persisted; the reconciler
    turns it into a condition immediately.
    """

    condition_type: ConditionType
    category: OutcomeCategory
    reason: str = ""
    severity: Severity = Severity.NONE
    message: str = ""
    error: Optional[str] = None
    data: Dict[str, Any] = {}               # Values resolved for later steps

    @property
    def satisfied(self) -> bool:
        return self.category in (
            OutcomeCategory.SATISFIED, OutcomeCategory.NOT_APPLICABLE
        )

    @property
    def retryable(self) -> bool:
        """False means still requeued, but on the error backoff schedule."""
        return self.category != OutcomeCategory.BACKEND_ERROR

    @property
    def applicable(self) -> bool:
        return self.category != OutcomeCategory.NOT_APPLICABLE


class ReconcileResult(BaseModel):
    """What one reconcile pass decided."""

    entity_key: str
    requeue: Requeue
    phase: Optional[Phase] = None
    ready: Optional[Condition] = None
    committed: bool = False
    steps: List[str] = []                   # Steps attempted, in order
    blocked_by: Optional[ConditionType] = None
    started_at: datetime
    finished_at: datetime


class BackoffState(BaseModel):
    """Consecutive backend failures for one entity."""

    entity_key: str
    consecutive_errors: int = 0
    last_error_at: Optional[datetime] = None

"""Condition — a single named readiness signal on a managed entity."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ConditionType(str, Enum):
    READY = "Ready"
    INPUT_READY = "InputReady"
    TRANSPORT_URL_READY = "TransportURLReady"
    DB_READY = "DBReady"
    NETWORK_ATTACHMENTS_READY = "NetworkAttachmentsReady"
    TOPOLOGY_READY = "TopologyReady"
    SERVICE_CONFIG_READY = "ServiceConfigReady"
    DEPLOYMENT_READY = "DeploymentReady"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Severity(str, Enum):
    NONE = ""           # Only used with status=True
    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"


class Reason(str, Enum):
    READY = "Ready"
    INIT = "Init"
    ERROR = "Error"
    DEADLINE_EXCEEDED = "DeadlineExceeded"

    INPUT_NOT_READY = "InputNotReady"
    TRANSPORT_URL_NOT_READY = "TransportURLNotReady"
    DB_NOT_READY = "DBNotReady"
    DB_ACCOUNT_NOT_FOUND = "DBAccountNotFound"
    NETWORK_ATTACHMENTS_NOT_READY = "NetworkAttachmentsNotReady"
    NETWORK_ATTACHMENTS_NOT_FOUND = "NetworkAttachmentsNotFound"
    TOPOLOGY_NOT_FOUND = "TopologyNotFound"
    TOPOLOGY_AMBIGUOUS = "TopologyAmbiguous"
    SERVICE_CONFIG_NOT_READY = "ServiceConfigNotReady"
    DEPLOYMENT_NOT_READY = "DeploymentNotReady"


# Messages used when a condition is marked True.
READY_MESSAGES = {
    ConditionType.READY: "Setup complete",
    ConditionType.INPUT_READY: "Input data complete",
    ConditionType.TRANSPORT_URL_READY: "TransportURL successfully created",
    ConditionType.DB_READY: "DB create completed",
    ConditionType.NETWORK_ATTACHMENTS_READY: "NetworkAttachments completed",
    ConditionType.TOPOLOGY_READY: "Topology config create completed",
    ConditionType.SERVICE_CONFIG_READY: "Service config create completed",
    ConditionType.DEPLOYMENT_READY: "Deployment completed",
}


class Condition(BaseModel):
    """A readiness signal. Unique per type within a ConditionSet."""

    type: ConditionType
    status: ConditionStatus
    severity: Severity = Severity.NONE
    reason: str
    message: str = ""
    last_transition_time: datetime

    def is_true(self) -> bool:
        return self.status == ConditionStatus.TRUE

    def same_state(self, other: "Condition") -> bool:
        """True when everything but the transition time matches."""
        return (
            self.status == other.status
            and self.severity == other.severity
            and self.reason == other.reason
            and self.message == other.message
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConditionSet(BaseModel):
    """
    The full collection of Conditions for one entity, keyed by type.

    Created empty when an entity is first observed. Entries are overwritten
    by each reconcile step and removed only when a dependency stops applying.
    """

    conditions: Dict[ConditionType, Condition] = Field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.conditions)

    def __contains__(self, condition_type: ConditionType) -> bool:
        return condition_type in self.conditions

    def get(self, condition_type: ConditionType) -> Optional[Condition]:
        return self.conditions.get(condition_type)

    def types(self) -> List[ConditionType]:
        return list(self.conditions.keys())

    def is_true(self, condition_type: ConditionType) -> bool:
        cond = self.conditions.get(condition_type)
        return cond is not None and cond.is_true()

    def set(self, condition: Condition) -> Condition:
        """
        Overwrite the condition of the same type.

        The transition time moves only when the status changes; a
        message-only update keeps the previous timestamp.
        """
        existing = self.conditions.get(condition.type)
        if existing is not None and existing.status == condition.status:
            condition = condition.model_copy(
                update={"last_transition_time": existing.last_transition_time}
            )
        self.conditions[condition.type] = condition
        return condition

    def mark_true(
        self,
        condition_type: ConditionType,
        message_format: Optional[str] = None,
        *message_args,
        now: Optional[datetime] = None,
    ) -> Condition:
        if message_format is None:
            message_format = READY_MESSAGES.get(condition_type, "")
        message = message_format % message_args if message_args else message_format
        return self.set(Condition(
            type=condition_type,
            status=ConditionStatus.TRUE,
            severity=Severity.NONE,
            reason=Reason.READY.value,
            message=message,
            last_transition_time=now or _utcnow(),
        ))

    def mark_false(
        self,
        condition_type: ConditionType,
        reason: str,
        severity: Severity,
        message_format: str,
        *message_args,
        now: Optional[datetime] = None,
    ) -> Condition:
        message = message_format % message_args if message_args else message_format
        return self.set(Condition(
            type=condition_type,
            status=ConditionStatus.FALSE,
            severity=severity,
            reason=str(reason.value if isinstance(reason, Reason) else reason),
            message=message,
            last_transition_time=now or _utcnow(),
        ))

    def mark_unknown(
        self,
        condition_type: ConditionType,
        reason: str,
        message: str,
        now: Optional[datetime] = None,
    ) -> Condition:
        return self.set(Condition(
            type=condition_type,
            status=ConditionStatus.UNKNOWN,
            severity=Severity.NONE,
            reason=str(reason.value if isinstance(reason, Reason) else reason),
            message=message,
            last_transition_time=now or _utcnow(),
        ))

    def remove(self, condition_type: ConditionType) -> bool:
        """Drop a condition whose dependency no longer applies."""
        return self.conditions.pop(condition_type, None) is not None

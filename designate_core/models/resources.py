"""Collaborator resources the reconcile core reads or writes."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from designate_core.models.entity import ObjectMeta


class Secret(BaseModel):
    metadata: ObjectMeta
    data: Dict[str, str] = {}


class TransportURL(BaseModel):
    """Messaging endpoint. Its credentials land in ``secret_name`` once ready."""

    metadata: ObjectMeta
    rabbitmq_cluster_name: str = "rabbitmq"
    ready: bool = False
    secret_name: Optional[str] = None


class DatabaseAccount(BaseModel):
    """A database account; the password is materialized into ``secret``."""

    metadata: ObjectMeta
    username: str = "designate"
    secret: str = ""
    ready: bool = False


class NetworkAttachmentDefinition(BaseModel):
    metadata: ObjectMeta
    config: str = "{}"


class TopologySpreadConstraint(BaseModel):
    max_skew: int = 1
    topology_key: str = "kubernetes.io/hostname"
    when_unsatisfiable: str = "ScheduleAnyway"
    label_selector: Optional[Dict[str, str]] = None


class Topology(BaseModel):
    """A placement definition. Entities pin it with a finalizer while bound."""

    metadata: ObjectMeta
    topology_spread_constraints: List[TopologySpreadConstraint] = []
    affinity: dict = {}


class WorkloadStatus(BaseModel):
    ready_replicas: int = 0
    observed_generation: int = 0


class Workload(BaseModel):
    """Statefulset equivalent running the service pods."""

    metadata: ObjectMeta
    replicas: int = Field(ge=0, default=1)
    container_image: str = ""
    config_hash: str = ""
    topology: Optional[str] = None
    topology_spread_constraints: List[TopologySpreadConstraint] = []
    network_attachments: List[str] = []
    status: WorkloadStatus = Field(default_factory=WorkloadStatus)

"""Managed Entity — the reconciled Designate service unit."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from designate_core.models.condition import ConditionSet


DEFAULT_CONTAINER_IMAGE = "quay.io/podified-antelope-centos9/openstack-designate-api:current-podified"


class ObjectMeta(BaseModel):
    """Identity and bookkeeping shared by every stored object."""

    name: str
    namespace: str = "default"
    uid: str = ""
    labels: Dict[str, str] = {}
    finalizers: List[str] = []
    resource_version: int = 0               # Bumped by the store on every write
    generation: int = 1                     # Bumped by the store on spec change
    deletion_requested: bool = False

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


class TopologyRef(BaseModel):
    """Pointer to a placement definition. An empty name is unqualified."""

    name: str = ""
    namespace: Optional[str] = None

    def qualified(self) -> bool:
        return bool(self.name)


class PasswordSelectors(BaseModel):
    """Keys looked up in the input secret."""

    service: str = "DesignatePassword"


class DesignateServiceSpec(BaseModel):
    """Desired state of one Designate service unit."""

    service_user: str = "designate"
    database_account: str = "designate"
    database_hostname: str = "openstack"
    secret: str = "osp-secret"
    password_selectors: PasswordSelectors = PasswordSelectors()
    transport_ref: Optional[str] = None     # TransportURL name; None = not applicable
    topology_ref: Optional[TopologyRef] = None
    network_attachments: List[str] = []
    custom_service_config: str = ""
    container_image: str = DEFAULT_CONTAINER_IMAGE
    replicas: int = Field(ge=0, default=1)


class Phase(str, Enum):
    PENDING = "Pending"
    CONFIG_READY = "ConfigReady"
    DEPLOYING = "Deploying"
    READY = "Ready"


class DesignateServiceStatus(BaseModel):
    """Observed state, written once per reconcile pass."""

    ready_count: int = 0
    conditions: ConditionSet = Field(default_factory=ConditionSet)
    last_applied_topology: Optional[TopologyRef] = None
    phase: Phase = Phase.PENDING
    observed_generation: int = 0
    hash: Dict[str, str] = {}
    network_attachments: List[str] = []


class ManagedEntity(BaseModel):
    """
    A DesignateService custom resource instance.

    Exposes the two capability surfaces the reconcile core needs: condition
    mutation (via ``status.conditions``) and topology-reference access.
    """

    metadata: ObjectMeta
    spec: DesignateServiceSpec = DesignateServiceSpec()
    status: DesignateServiceStatus = Field(default_factory=DesignateServiceStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        return self.metadata.key

    # --- topology capability ---

    def get_spec_topology_ref(self) -> Optional[TopologyRef]:
        return self.spec.topology_ref

    def get_last_applied_topology(self) -> Optional[TopologyRef]:
        return self.status.last_applied_topology

    def set_last_applied_topology(self, ref: Optional[TopologyRef]) -> None:
        self.status.last_applied_topology = (
            ref.model_copy() if ref is not None else None
        )

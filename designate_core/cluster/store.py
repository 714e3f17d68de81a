"""
Cluster Store — the live state the reconcile core reads and writes.

Updated by: the reconciler (status, finalizers, workloads, config secrets)
            and by external actors (API, tests) creating collaborator resources.
Queried by: dependency resolvers, the topology binder, the reconciler.

Every write bumps the object's resource version. Writes carrying a stale
resource version fail with ConflictError, so callers can never blindly
overwrite a concurrent change.
"""

import logging
import threading
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel

from designate_core.models.entity import DesignateServiceStatus, ManagedEntity
from designate_core.models.resources import (
    DatabaseAccount,
    NetworkAttachmentDefinition,
    Secret,
    Topology,
    TransportURL,
    Workload,
)

log = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

KINDS: Dict[str, Type[BaseModel]] = {
    "DesignateService": ManagedEntity,
    "Secret": Secret,
    "TransportURL": TransportURL,
    "DatabaseAccount": DatabaseAccount,
    "NetworkAttachmentDefinition": NetworkAttachmentDefinition,
    "Topology": Topology,
    "Workload": Workload,
}


def kind_of(cls: Type[BaseModel]) -> str:
    for kind, model in KINDS.items():
        if model is cls:
            return kind
    raise ValueError(f"Unregistered kind: {cls.__name__}")


class StoreError(Exception):
    """Base class for cluster store failures."""
    pass


class NotFoundError(StoreError):
    """The requested object does not exist."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} {key} not found")
        self.kind = kind
        self.key = key


class AlreadyExistsError(StoreError):
    """Create raced with another writer."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} {key} already exists")
        self.kind = kind
        self.key = key


class ConflictError(StoreError):
    """The stored resource version advanced since the object was read."""

    def __init__(self, kind: str, key: str, expected: int, actual: int):
        super().__init__(
            f"Conflict writing {kind} {key}: "
            f"resource version {expected} is stale (current {actual})"
        )
        self.kind = kind
        self.key = key


class BackendError(StoreError):
    """A read or write against the backing store failed."""
    pass


class ResourceState(str, Enum):
    NOT_FOUND = "not_found"
    NOT_READY = "not_ready"
    READY = "ready"


class Lookup(BaseModel):
    """Three-state read result: never existed / initializing / ready."""

    state: ResourceState
    resource: Optional[Any] = None

    @property
    def found(self) -> bool:
        return self.state != ResourceState.NOT_FOUND


def _selector_matches(labels: Dict[str, str], selector: Dict[str, str]) -> bool:
    return all(labels.get(k) == v for k, v in selector.items())


class ClusterStore:
    """
    In-memory cluster store.
    Reads hand out deep copies; nothing outside the store shares its objects.
    """

    def __init__(self):
        self._objects: Dict[str, Dict[str, BaseModel]] = {kind: {} for kind in KINDS}
        self._lock = threading.RLock()
        self._uid_counter = 0

    # --- reads ---

    def get(self, cls: Type[T], namespace: str, name: str) -> T:
        kind = kind_of(cls)
        key = f"{namespace}/{name}"
        with self._lock:
            obj = self._objects[kind].get(key)
            if obj is None:
                raise NotFoundError(kind, key)
            return obj.model_copy(deep=True)

    def find(self, cls: Type[T], namespace: str, name: str) -> Optional[T]:
        try:
            return self.get(cls, namespace, name)
        except NotFoundError:
            return None

    def lookup(self, cls: Type[BaseModel], namespace: str, name: str) -> Lookup:
        """Resolve an object keeping not-found, not-ready and ready distinct."""
        obj = self.find(cls, namespace, name)
        if obj is None:
            return Lookup(state=ResourceState.NOT_FOUND)
        ready = getattr(obj, "ready", True)
        return Lookup(
            state=ResourceState.READY if ready else ResourceState.NOT_READY,
            resource=obj,
        )

    def list(
        self,
        cls: Type[T],
        namespace: Optional[str] = None,
        selector: Optional[Dict[str, str]] = None,
    ) -> List[T]:
        """List objects, ordered by namespace/name."""
        kind = kind_of(cls)
        with self._lock:
            items = [
                obj for key, obj in sorted(self._objects[kind].items())
                if namespace is None or obj.metadata.namespace == namespace
            ]
            if selector:
                items = [
                    obj for obj in items
                    if _selector_matches(obj.metadata.labels, selector)
                ]
            return [obj.model_copy(deep=True) for obj in items]

    # --- writes ---

    def create(self, obj: T) -> T:
        kind = kind_of(type(obj))
        key = obj.metadata.key
        with self._lock:
            if key in self._objects[kind]:
                raise AlreadyExistsError(kind, key)
            stored = obj.model_copy(deep=True)
            self._uid_counter += 1
            stored.metadata.uid = stored.metadata.uid or f"uid-{self._uid_counter}"
            stored.metadata.resource_version = 1
            stored.metadata.generation = 1
            stored.metadata.deletion_requested = False
            self._objects[kind][key] = stored
            log.debug("Created %s %s", kind, key)
            return stored.model_copy(deep=True)

    def update(self, obj: T) -> T:
        """
        Replace an object if its resource version is current.

        For DesignateService objects the stored status is kept; use
        update_status to write status.
        """
        kind = kind_of(type(obj))
        key = obj.metadata.key
        with self._lock:
            current = self._check_version(kind, key, obj.metadata.resource_version)
            stored = obj.model_copy(deep=True)
            stored.metadata.uid = current.metadata.uid
            stored.metadata.deletion_requested = current.metadata.deletion_requested
            stored.metadata.resource_version = current.metadata.resource_version + 1
            stored.metadata.generation = current.metadata.generation
            if isinstance(current, ManagedEntity):
                stored.status = current.status.model_copy(deep=True)
                if stored.spec != current.spec:
                    stored.metadata.generation += 1
            if stored.metadata.deletion_requested and not stored.metadata.finalizers:
                del self._objects[kind][key]
                log.debug("Finalizers cleared, removed %s %s", kind, key)
                return stored.model_copy(deep=True)
            self._objects[kind][key] = stored
            return stored.model_copy(deep=True)

    def update_status(
        self,
        namespace: str,
        name: str,
        status: DesignateServiceStatus,
        resource_version: int,
    ) -> ManagedEntity:
        """Replace the whole status of an entity atomically."""
        kind = kind_of(ManagedEntity)
        key = f"{namespace}/{name}"
        with self._lock:
            current = self._check_version(kind, key, resource_version)
            current.status = status.model_copy(deep=True)
            current.metadata.resource_version += 1
            return current.model_copy(deep=True)

    def upsert(self, obj: T) -> T:
        """Create, or overwrite regardless of resource version."""
        kind = kind_of(type(obj))
        with self._lock:
            current = self._objects[kind].get(obj.metadata.key)
            if current is None:
                return self.create(obj)
            obj = obj.model_copy(deep=True)
            obj.metadata.resource_version = current.metadata.resource_version
            return self.update(obj)

    def delete(self, cls: Type[BaseModel], namespace: str, name: str) -> bool:
        """
        Delete an object. Objects holding finalizers are only marked; they
        disappear once the last finalizer is removed.
        Returns True if the object is gone.
        """
        kind = kind_of(cls)
        key = f"{namespace}/{name}"
        with self._lock:
            current = self._objects[kind].get(key)
            if current is None:
                return True
            if current.metadata.finalizers:
                if not current.metadata.deletion_requested:
                    current.metadata.deletion_requested = True
                    current.metadata.resource_version += 1
                return False
            del self._objects[kind][key]
            log.debug("Deleted %s %s", kind, key)
            return True

    def _check_version(self, kind: str, key: str, resource_version: int) -> BaseModel:
        current = self._objects[kind].get(key)
        if current is None:
            raise NotFoundError(kind, key)
        if current.metadata.resource_version != resource_version:
            raise ConflictError(
                kind, key, resource_version, current.metadata.resource_version
            )
        return current

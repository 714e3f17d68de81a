"""
Workload Manager — keeps the service's workload in line with the entity's desired state.

Creates the workload on first use and updates it only when replicas,
image, config hash, placement or attachments drift. Reports the ready
replica count observed on the workload's status.
"""

import logging
from typing import List, Optional

from designate_core.cluster.store import ClusterStore
from designate_core.models.entity import ManagedEntity, ObjectMeta
from designate_core.models.resources import Topology, Workload

log = logging.getLogger(__name__)


class WorkloadManager:
    """Applies the desired workload for an entity."""

    def __init__(self, store: ClusterStore):
        self.store = store

    def desired(
        self,
        entity: ManagedEntity,
        config_hash: str,
        topology: Optional[Topology],
        network_attachments: List[str],
    ) -> Workload:
        return Workload(
            metadata=ObjectMeta(
                name=entity.name,
                namespace=entity.namespace,
                labels={"service": "designate", "owner": entity.name},
            ),
            replicas=entity.spec.replicas,
            container_image=entity.spec.container_image,
            config_hash=config_hash,
            topology=topology.metadata.name if topology else None,
            topology_spread_constraints=(
                topology.topology_spread_constraints if topology else []
            ),
            network_attachments=list(network_attachments),
        )

    def ensure(
        self,
        entity: ManagedEntity,
        config_hash: str,
        topology: Optional[Topology] = None,
        network_attachments: Optional[List[str]] = None,
    ) -> Workload:
        """
        Create or update the workload. Raises ConflictError if the workload
        changed underneath us.
        """
        want = self.desired(entity, config_hash, topology, network_attachments or [])
        current = self.store.find(Workload, entity.namespace, entity.name)
        if current is None:
            log.info("Creating workload %s", want.metadata.key)
            return self.store.create(want)

        if _spec_matches(current, want):
            return current

        log.info(
            "Updating workload %s (replicas=%d, hash=%s)",
            want.metadata.key, want.replicas, want.config_hash[:12],
        )
        current.replicas = want.replicas
        current.container_image = want.container_image
        current.config_hash = want.config_hash
        current.topology = want.topology
        current.topology_spread_constraints = want.topology_spread_constraints
        current.network_attachments = want.network_attachments
        current.metadata.labels = want.metadata.labels
        return self.store.update(current)

    def delete(self, entity: ManagedEntity) -> None:
        self.store.delete(Workload, entity.namespace, entity.name)


def _spec_matches(current: Workload, want: Workload) -> bool:
    return (
        current.replicas == want.replicas
        and current.container_image == want.container_image
        and current.config_hash == want.config_hash
        and current.topology == want.topology
        and current.topology_spread_constraints == want.topology_spread_constraints
        and current.network_attachments == want.network_attachments
        and current.metadata.labels == want.metadata.labels
    )

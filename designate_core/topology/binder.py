"""
Topology Binder — binds an entity to a placement definition.

Behavioral Contract:
- A nil desired reference unbinds: the finalizer leaves the previously
  bound topology and no topology is returned. This is a steady state.
- Resolution is deterministic for a stable set of topologies.
- On rebind the finalizer is added to the new topology before it is
  removed from the old one, so a topology is never released while an
  entity still depends on it.
- After a bind or unbind no other topology in the namespace keeps this
  entity's finalizer, even if the last applied reference was never saved.
- A consistent binding performs no writes.
- Finalizer mutations retry on conflict against a fresh read.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from designate_core.cluster.store import (
    ClusterStore,
    ConflictError,
    NotFoundError,
    StoreError,
)
from designate_core.conditions.aggregate import ConditionUpdater, TopologyHandler
from designate_core.models.condition import ConditionType, Reason, Severity
from designate_core.models.entity import TopologyRef
from designate_core.models.resources import Topology

log = logging.getLogger(__name__)


class TopologyError(Exception):
    """Raised when a topology reference cannot be resolved or bound."""

    def __init__(self, reason: Reason, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message


class TopologyBinder:
    """Resolves topology references and keeps finalizers consistent."""

    def __init__(self, store: ClusterStore, conflict_retry_attempts: int = 5):
        self.store = store
        self.conflict_retry_attempts = conflict_retry_attempts

    def resolve(
        self,
        desired: TopologyRef,
        namespace: str,
        default_selector: Dict[str, str],
    ) -> Topology:
        """
        Find the topology a reference points at.

        A named reference is looked up directly. An unqualified one selects
        among the namespace's topologies with the default selector, and
        must match exactly one.
        """
        ns = desired.namespace or namespace
        try:
            if desired.qualified():
                topology = self.store.find(Topology, ns, desired.name)
                if topology is None:
                    raise TopologyError(
                        Reason.TOPOLOGY_NOT_FOUND,
                        f"Topology {ns}/{desired.name} not found",
                    )
                return topology

            if not default_selector:
                raise TopologyError(
                    Reason.TOPOLOGY_NOT_FOUND,
                    "Unqualified topology reference and no default selector",
                )
            candidates = self.store.list(Topology, ns, selector=default_selector)
        except StoreError as e:
            raise TopologyError(Reason.ERROR, f"Error retrieving topology: {e}") from e

        if not candidates:
            raise TopologyError(
                Reason.TOPOLOGY_NOT_FOUND,
                f"No topology in {ns} matches selector {_fmt_selector(default_selector)}",
            )
        if len(candidates) > 1:
            names = ", ".join(t.metadata.name for t in candidates)
            raise TopologyError(
                Reason.TOPOLOGY_AMBIGUOUS,
                f"Selector {_fmt_selector(default_selector)} matches "
                f"multiple topologies: {names}",
            )
        return candidates[0]

    def ensure_topology(
        self,
        desired: Optional[TopologyRef],
        last_applied: Optional[TopologyRef],
        finalizer: str,
        namespace: str,
        default_selector: Dict[str, str],
    ) -> Optional[Topology]:
        """Bind to the desired topology, releasing any previous one."""
        if desired is None:
            if last_applied is not None:
                self._release(last_applied, finalizer, namespace)
            self._release_others(None, finalizer, namespace)
            return None

        topology = self.resolve(desired, namespace, default_selector)
        resolved_ref = TopologyRef(
            name=topology.metadata.name, namespace=topology.metadata.namespace
        )

        try:
            topology = self._mutate_finalizers(
                resolved_ref, lambda f: f if finalizer in f else f + [finalizer]
            )
        except StoreError as e:
            raise TopologyError(Reason.ERROR, f"Error binding topology: {e}") from e

        if last_applied is not None and not _same_target(
            last_applied, resolved_ref, namespace
        ):
            log.info(
                "Rebinding topology %s -> %s",
                _fmt_ref(last_applied, namespace),
                _fmt_ref(resolved_ref, namespace),
            )
            self._release(last_applied, finalizer, namespace)
        self._release_others(resolved_ref, finalizer, namespace)

        return _with_default_selector(topology, default_selector)

    def _release(
        self, ref: TopologyRef, finalizer: str, namespace: str
    ) -> None:
        target = TopologyRef(name=ref.name, namespace=ref.namespace or namespace)
        if not target.name:
            return
        try:
            self._mutate_finalizers(
                target, lambda f: [x for x in f if x != finalizer]
            )
        except NotFoundError:
            log.debug("Topology %s already gone", _fmt_ref(target, namespace))
        except StoreError as e:
            raise TopologyError(
                Reason.ERROR, f"Error releasing topology {target.name}: {e}"
            ) from e

    def _release_others(
        self, keep: Optional[TopologyRef], finalizer: str, namespace: str
    ) -> None:
        """
        Drop the finalizer from every topology in the namespace except the
        bound one. Catches holders the last applied reference no longer
        names, e.g. after a rebind whose status write was lost.
        """
        try:
            holders = [
                t for t in self.store.list(Topology, namespace)
                if finalizer in t.metadata.finalizers
            ]
        except StoreError as e:
            raise TopologyError(Reason.ERROR, f"Error listing topologies: {e}") from e
        for topology in holders:
            ref = TopologyRef(
                name=topology.metadata.name, namespace=topology.metadata.namespace
            )
            if keep is not None and _same_target(keep, ref, namespace):
                continue
            log.info("Releasing stale topology binding %s", _fmt_ref(ref, namespace))
            self._release(ref, finalizer, namespace)

    def _mutate_finalizers(
        self, ref: TopologyRef, mutate: Callable[[List[str]], List[str]]
    ) -> Topology:
        """Apply a finalizer change, retrying on conflict. No-op changes skip the write."""
        last_conflict: Optional[ConflictError] = None
        for _ in range(max(1, self.conflict_retry_attempts)):
            topology = self.store.get(Topology, ref.namespace, ref.name)
            updated = mutate(list(topology.metadata.finalizers))
            if updated == topology.metadata.finalizers:
                return topology
            topology.metadata.finalizers = updated
            try:
                return self.store.update(topology)
            except ConflictError as e:
                last_conflict = e
                log.debug("Conflict updating topology %s, retrying", ref.name)
        raise last_conflict


def ensure_topology(
    binder: TopologyBinder,
    instance: TopologyHandler,
    namespace: str,
    finalizer: str,
    conditions: ConditionUpdater,
    default_selector: Dict[str, str],
    now: Optional[datetime] = None,
) -> Optional[Topology]:
    """
    Bind the instance's topology and record the outcome.

    On failure TopologyReady goes False and the last applied reference is
    left untouched, so drift keeps being detected once the reference
    resolves again. On success the last applied reference records the
    topology actually bound, and TopologyReady is marked True on every pass
    while a topology is referenced.
    """
    desired = instance.get_spec_topology_ref()
    try:
        topology = binder.ensure_topology(
            desired,
            instance.get_last_applied_topology(),
            finalizer,
            namespace,
            default_selector,
        )
    except TopologyError as e:
        conditions.mark_false(
            ConditionType.TOPOLOGY_READY,
            e.reason,
            Severity.ERROR if e.reason == Reason.ERROR else Severity.WARNING,
            "Topology config create error occurred %s",
            e.message,
            now=now,
        )
        raise TopologyError(
            e.reason, f"waiting for Topology requirements: {e.message}"
        ) from e

    instance.set_last_applied_topology(
        TopologyRef(
            name=topology.metadata.name,
            namespace=topology.metadata.namespace,
        )
        if topology is not None
        else None
    )
    if desired is not None:
        conditions.mark_true(ConditionType.TOPOLOGY_READY, now=now)
    else:
        conditions.remove(ConditionType.TOPOLOGY_READY)
    return topology


def _same_target(a: TopologyRef, b: TopologyRef, namespace: str) -> bool:
    return a.name == b.name and (a.namespace or namespace) == (b.namespace or namespace)


def _fmt_ref(ref: TopologyRef, namespace: str) -> str:
    return f"{ref.namespace or namespace}/{ref.name}"


def _fmt_selector(selector: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(selector.items()))


def _with_default_selector(
    topology: Topology, default_selector: Dict[str, str]
) -> Topology:
    """Fill the default selector into spread constraints lacking one."""
    topology = topology.model_copy(deep=True)
    for constraint in topology.topology_spread_constraints:
        if constraint.label_selector is None:
            constraint.label_selector = dict(default_selector)
    return topology

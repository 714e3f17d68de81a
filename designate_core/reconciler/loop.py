"""
Reconciler — brings one DesignateService into convergence per pass.

A pass runs the dependency checks in a fixed order, short-circuiting on
the first blocking dependency:

  input secret → topology → transport → database → network attachments
    → service config → workload

Every outcome lands in the entity's ConditionSet, the aggregate Ready
condition is computed from the whole set, and the status is committed in
one optimistic write at the end of the pass. Nothing raised by a resolver,
the binder or the renderer escapes a pass: each failure becomes a
condition plus a requeue directive. Write conflicts are never surfaced as
conditions; they abort the pass and requeue immediately.

Phases:
  Pending → ConfigReady → Deploying → Ready → (Pending on regression)
"""

import asyncio
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from designate_core.cluster.store import (
    AlreadyExistsError,
    ClusterStore,
    ConflictError,
    NotFoundError,
    StoreError,
)
from designate_core.conditions.aggregate import (
    PRIORITY_ORDER,
    apply_aggregate,
    first_blocking,
)
from designate_core.dependencies.resolver import DependencyResolver
from designate_core.history.store import ReconcileHistory
from designate_core.models.condition import (
    Condition,
    ConditionSet,
    ConditionType,
    Reason,
    Severity,
)
from designate_core.models.entity import ManagedEntity, ObjectMeta, Phase
from designate_core.models.reconciler import (
    BackoffState,
    DependencyOutcome,
    OutcomeCategory,
    ReconcileResult,
    ReconcilerConfig,
    Requeue,
    RequeueKind,
)
from designate_core.models.resources import Secret, Topology
from designate_core.rendering.renderer import (
    ConfigRenderer,
    RenderError,
    ServiceConfigRenderer,
    config_data_secret_name,
    config_hash,
)
from designate_core.topology.binder import TopologyBinder, TopologyError, ensure_topology
from designate_core.workload.manager import WorkloadManager

log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _PassContext:
    """Values carried between the steps of one pass. Discarded afterwards."""

    def __init__(self, entity: ManagedEntity, now: datetime):
        self.entity = entity
        self.now = now
        self.inputs: Dict[str, Any] = {}
        self.topology: Optional[Topology] = None
        self.network_attachments: List[str] = []
        self.config_hash = ""
        self.blocked_by: Optional[ConditionType] = None
        self.had_error = False
        self.evaluated: Set[ConditionType] = set()

    @property
    def conditions(self) -> ConditionSet:
        return self.entity.status.conditions


class Reconciler:
    """
    Runs reconcile passes.

    Passes for different entities may run concurrently; passes for the
    same entity are serialized.
    """

    def __init__(
        self,
        store: ClusterStore,
        config: Optional[ReconcilerConfig] = None,
        renderer: Optional[ConfigRenderer] = None,
        history: Optional[ReconcileHistory] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.resolver = DependencyResolver(store)
        self.binder = TopologyBinder(store)
        self.config = config or ReconcilerConfig()
        self.workloads = WorkloadManager(store)
        self.renderer = renderer or ServiceConfigRenderer()
        self.history = history
        self._clock = clock or _utcnow

        self._backoff: Dict[str, BackoffState] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

        self._steps: List[Tuple[str, ConditionType, Callable[[_PassContext], Optional[Requeue]]]] = [
            ("input", ConditionType.INPUT_READY, self._step_input),
            ("topology", ConditionType.TOPOLOGY_READY, self._step_topology),
            ("transport", ConditionType.TRANSPORT_URL_READY, self._step_transport),
            ("database", ConditionType.DB_READY, self._step_database),
            ("network_attachments", ConditionType.NETWORK_ATTACHMENTS_READY, self._step_network_attachments),
            ("service_config", ConditionType.SERVICE_CONFIG_READY, self._step_service_config),
            ("deployment", ConditionType.DEPLOYMENT_READY, self._step_deployment),
        ]

    @property
    def config(self) -> ReconcilerConfig:
        return self._config

    @config.setter
    def config(self, config: ReconcilerConfig) -> None:
        self._config = config
        self.binder.conflict_retry_attempts = config.conflict_retry_attempts

    def backoff_state(self, entity_key: str) -> Optional[BackoffState]:
        return self._backoff.get(entity_key)

    def reconcile(
        self,
        namespace: str,
        name: str,
        deadline: Optional[datetime] = None,
    ) -> ReconcileResult:
        """Run one pass for an entity and return the requeue decision."""
        key = f"{namespace}/{name}"
        with self._lock_for(key):
            result = self._reconcile(namespace, name, key, deadline)
        if self.history is not None:
            self.history.record(result)
        return result

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _reconcile(
        self,
        namespace: str,
        name: str,
        key: str,
        deadline: Optional[datetime],
    ) -> ReconcileResult:
        started = self._clock()
        if deadline is None:
            deadline = started + timedelta(seconds=self.config.pass_timeout_seconds)
        steps: List[str] = []

        def finish(requeue: Requeue, entity: Optional[ManagedEntity] = None,
                   committed: bool = False, blocked_by: Optional[ConditionType] = None,
                   ) -> ReconcileResult:
            ready = None
            phase = None
            if entity is not None:
                ready = entity.status.conditions.get(ConditionType.READY)
                phase = entity.status.phase
            return ReconcileResult(
                entity_key=key,
                requeue=requeue,
                phase=phase,
                ready=ready,
                committed=committed,
                steps=steps,
                blocked_by=blocked_by,
                started_at=started,
                finished_at=self._clock(),
            )

        try:
            entity = self.store.get(ManagedEntity, namespace, name)
        except NotFoundError:
            log.debug("%s is gone, nothing to reconcile", key)
            self._backoff.pop(key, None)
            return finish(Requeue.none())
        except StoreError as e:
            log.warning("Error retrieving %s: %s", key, e)
            return finish(self._error_requeue(key, started))

        if entity.metadata.deletion_requested:
            return finish(self._reconcile_delete(entity, started))

        finalizer = self.config.entity_finalizer
        if finalizer not in entity.metadata.finalizers:
            entity.metadata.finalizers.append(finalizer)
            try:
                entity = self.store.update(entity)
            except (ConflictError, NotFoundError):
                return finish(Requeue.immediately())
            except StoreError as e:
                log.warning("Error adding finalizer to %s: %s", key, e)
                return finish(self._error_requeue(key, started))

        stored_status = entity.status.model_copy(deep=True)
        ctx = _PassContext(entity, started)
        requeue: Optional[Requeue] = None

        try:
            for step_name, condition_type, step in self._steps:
                if self._clock() >= deadline:
                    log.info("%s: deadline reached before step %s", key, step_name)
                    ctx.conditions.mark_unknown(
                        condition_type,
                        Reason.DEADLINE_EXCEEDED,
                        f"Reconcile deadline reached before {step_name} step",
                        now=ctx.now,
                    )
                    ctx.blocked_by = condition_type
                    ctx.had_error = True
                    requeue = self._error_requeue(key, ctx.now)
                    break
                steps.append(step_name)
                log.debug("%s: running step %s", key, step_name)
                requeue = step(ctx)
                ctx.evaluated.add(condition_type)
                if requeue is not None:
                    break
        except (ConflictError, AlreadyExistsError) as e:
            log.debug("%s: conflict during pass, requeueing: %s", key, e)
            return finish(Requeue.immediately())

        if ctx.blocked_by is not None:
            _reset_unevaluated(ctx)

        if ctx.blocked_by is not None and ctx.blocked_by != ConditionType.DEPLOYMENT_READY:
            log.info(
                "%s: blocked by %s (%s)",
                key,
                ctx.blocked_by.value,
                ctx.conditions.get(ctx.blocked_by).reason,
            )
        if not ctx.had_error:
            self._backoff.pop(key, None)

        status = entity.status
        status.observed_generation = entity.metadata.generation
        ready = apply_aggregate(status.conditions, ctx.now)
        status.phase = _phase(status.conditions, ready)
        if requeue is None:
            requeue = Requeue.none()

        if status == stored_status:
            return finish(requeue, entity, committed=True, blocked_by=ctx.blocked_by)

        try:
            self.store.update_status(
                namespace, name, status, entity.metadata.resource_version
            )
        except ConflictError:
            log.debug("%s: status write conflict, requeueing", key)
            return finish(Requeue.immediately(), entity, blocked_by=ctx.blocked_by)
        except NotFoundError:
            return finish(Requeue.none(), entity, blocked_by=ctx.blocked_by)
        except StoreError as e:
            log.warning("Error writing status for %s: %s", key, e)
            return finish(
                self._error_requeue(key, ctx.now), entity, blocked_by=ctx.blocked_by
            )

        return finish(requeue, entity, committed=True, blocked_by=ctx.blocked_by)

    # --- steps ---

    def _step_input(self, ctx: _PassContext) -> Optional[Requeue]:
        return self._apply_outcome(ctx, self.resolver.check_input_secret(ctx.entity))

    def _step_topology(self, ctx: _PassContext) -> Optional[Requeue]:
        entity = ctx.entity
        try:
            ctx.topology = ensure_topology(
                self.binder,
                entity,
                entity.namespace,
                self.config.topology_finalizer(entity.name),
                ctx.conditions,
                self.config.default_topology_selector,
                now=ctx.now,
            )
        except TopologyError as e:
            log.info("%s: %s", entity.key, e.message)
            ctx.blocked_by = ConditionType.TOPOLOGY_READY
            if e.reason == Reason.ERROR:
                ctx.had_error = True
                return self._error_requeue(entity.key, ctx.now)
            return Requeue.after(self.config.misconfigured_requeue_seconds)
        return None

    def _step_transport(self, ctx: _PassContext) -> Optional[Requeue]:
        return self._apply_outcome(ctx, self.resolver.check_transport(ctx.entity))

    def _step_database(self, ctx: _PassContext) -> Optional[Requeue]:
        return self._apply_outcome(ctx, self.resolver.check_database(ctx.entity))

    def _step_network_attachments(self, ctx: _PassContext) -> Optional[Requeue]:
        outcome = self.resolver.check_network_attachments(ctx.entity)
        requeue = self._apply_outcome(ctx, outcome)
        if requeue is None:
            ctx.network_attachments = list(outcome.data.get("network_attachments", []))
            ctx.entity.status.network_attachments = list(ctx.network_attachments)
        return requeue

    def _step_service_config(self, ctx: _PassContext) -> Optional[Requeue]:
        entity = ctx.entity
        ctype = ConditionType.SERVICE_CONFIG_READY
        try:
            files = self.renderer.render(entity, ctx.inputs)
        except RenderError as e:
            ctx.conditions.mark_false(
                ctype, Reason.SERVICE_CONFIG_NOT_READY, Severity.WARNING,
                "Service config create error occurred %s", str(e), now=ctx.now,
            )
            ctx.blocked_by = ctype
            return Requeue.after(self.config.misconfigured_requeue_seconds)

        try:
            self._write_config_secret(entity, files)
        except (ConflictError, AlreadyExistsError):
            raise
        except StoreError as e:
            log.warning("Error writing config for %s: %s", entity.key, e)
            ctx.conditions.mark_false(
                ctype, Reason.ERROR, Severity.ERROR,
                "Service config create error occurred %s", str(e), now=ctx.now,
            )
            ctx.blocked_by = ctype
            ctx.had_error = True
            return self._error_requeue(entity.key, ctx.now)

        ctx.config_hash = config_hash(files)
        entity.status.hash["config"] = ctx.config_hash
        ctx.conditions.mark_true(ctype, now=ctx.now)
        return None

    def _step_deployment(self, ctx: _PassContext) -> Optional[Requeue]:
        entity = ctx.entity
        ctype = ConditionType.DEPLOYMENT_READY
        try:
            workload = self.workloads.ensure(
                entity, ctx.config_hash, ctx.topology, ctx.network_attachments
            )
        except (ConflictError, AlreadyExistsError):
            raise
        except StoreError as e:
            log.warning("Error applying workload for %s: %s", entity.key, e)
            ctx.conditions.mark_false(
                ctype, Reason.ERROR, Severity.ERROR,
                "Deployment error occurred %s", str(e), now=ctx.now,
            )
            ctx.blocked_by = ctype
            ctx.had_error = True
            return self._error_requeue(entity.key, ctx.now)

        entity.status.ready_count = workload.status.ready_replicas
        if workload.status.ready_replicas >= workload.replicas:
            ctx.conditions.mark_true(ctype, now=ctx.now)
            return Requeue.none()

        ctx.conditions.mark_false(
            ctype, Reason.DEPLOYMENT_NOT_READY, Severity.INFO,
            "Deployment in progress: %d/%d replicas ready",
            workload.status.ready_replicas, workload.replicas, now=ctx.now,
        )
        ctx.blocked_by = ctype
        return Requeue.after(self.config.unready_requeue_seconds)

    # --- helpers ---

    def _apply_outcome(
        self, ctx: _PassContext, outcome: DependencyOutcome
    ) -> Optional[Requeue]:
        """Write a dependency outcome into the conditions; None to continue."""
        ctype = outcome.condition_type
        if not outcome.applicable:
            ctx.conditions.remove(ctype)
            return None
        if outcome.satisfied:
            ctx.conditions.mark_true(ctype, now=ctx.now)
            ctx.inputs.update(outcome.data)
            return None

        ctx.conditions.mark_false(
            ctype, outcome.reason, outcome.severity, outcome.message, now=ctx.now
        )
        ctx.blocked_by = ctype
        if outcome.category == OutcomeCategory.MISCONFIGURED:
            return Requeue.after(self.config.misconfigured_requeue_seconds)
        if outcome.category == OutcomeCategory.BACKEND_ERROR:
            ctx.had_error = True
            return self._error_requeue(ctx.entity.key, ctx.now)
        return Requeue.after(self.config.unready_requeue_seconds)

    def _error_requeue(self, key: str, now: datetime) -> Requeue:
        """Exponential backoff over consecutive failing passes."""
        state = self._backoff.get(key)
        if state is None:
            state = self._backoff[key] = BackoffState(entity_key=key)
        state.consecutive_errors += 1
        state.last_error_at = now
        delay = self.config.error_backoff_base_seconds * (
            2 ** (state.consecutive_errors - 1)
        )
        return Requeue.after(min(delay, self.config.error_backoff_max_seconds))

    def _write_config_secret(self, entity: ManagedEntity, files: Dict[str, str]) -> None:
        name = config_data_secret_name(entity)
        existing = self.store.find(Secret, entity.namespace, name)
        if existing is None:
            self.store.create(Secret(
                metadata=ObjectMeta(
                    name=name,
                    namespace=entity.namespace,
                    labels={"service": "designate", "owner": entity.name},
                ),
                data=files,
            ))
        elif existing.data != files:
            existing.data = files
            self.store.update(existing)

    def _reconcile_delete(self, entity: ManagedEntity, now: datetime) -> Requeue:
        """Release everything the entity holds, then drop its finalizer."""
        key = entity.key
        log.info("%s: deletion requested, cleaning up", key)
        try:
            self.binder.ensure_topology(
                None,
                entity.get_last_applied_topology(),
                self.config.topology_finalizer(entity.name),
                entity.namespace,
                self.config.default_topology_selector,
            )
            self.workloads.delete(entity)
            self.store.delete(Secret, entity.namespace, config_data_secret_name(entity))
        except TopologyError as e:
            log.warning("%s: topology release failed: %s", key, e.message)
            return self._error_requeue(key, now)
        except StoreError as e:
            log.warning("%s: cleanup failed: %s", key, e)
            return self._error_requeue(key, now)

        finalizer = self.config.entity_finalizer
        if finalizer in entity.metadata.finalizers:
            entity.metadata.finalizers.remove(finalizer)
            try:
                self.store.update(entity)
            except ConflictError:
                return Requeue.immediately()
            except NotFoundError:
                pass
            except StoreError as e:
                log.warning("%s: finalizer removal failed: %s", key, e)
                return self._error_requeue(key, now)
        self._backoff.pop(key, None)
        return Requeue.none()


def _reset_unevaluated(ctx: _PassContext) -> None:
    """
    Reset conditions that outrank the blocker but were not evaluated in this
    pass. The topology step runs before transport, database and network
    attachments yet ranks after them, so their outcomes from an earlier pass
    must not decide the aggregate.
    """
    for condition_type in PRIORITY_ORDER[:PRIORITY_ORDER.index(ctx.blocked_by)]:
        if condition_type in ctx.evaluated or condition_type not in ctx.conditions:
            continue
        ctx.conditions.mark_unknown(
            condition_type,
            Reason.INIT,
            f"{condition_type.value} not evaluated: blocked by {ctx.blocked_by.value}",
            now=ctx.now,
        )


def _phase(conditions: ConditionSet, ready: Condition) -> Phase:
    if ready.is_true():
        return Phase.READY
    blocking = first_blocking(conditions)
    if blocking is None:
        if conditions.is_true(ConditionType.SERVICE_CONFIG_READY):
            return Phase.CONFIG_READY
        return Phase.PENDING
    if blocking.type == ConditionType.DEPLOYMENT_READY:
        if blocking.reason == Reason.DEPLOYMENT_NOT_READY.value:
            return Phase.DEPLOYING
        return Phase.CONFIG_READY
    return Phase.PENDING


class ReconcilerLoop:
    """
    Level-triggered driver around the Reconciler.

    Honors requeue directives, takes change notifications through
    ``enqueue``, and resyncs every entity once per heartbeat.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        config: Optional[ReconcilerConfig] = None,
    ):
        self.reconciler = reconciler
        self.store = reconciler.store
        self.config = config or reconciler.config
        self._due: Dict[str, datetime] = {}
        self._running = False

    @property
    def status(self) -> str:
        """Current loop status."""
        return "running" if self._running else "stopped"

    def scheduled(self) -> Dict[str, datetime]:
        return dict(self._due)

    def enqueue(self, key: str, at: Optional[datetime] = None) -> None:
        """Schedule a pass; an earlier existing schedule wins."""
        at = at or _utcnow()
        current = self._due.get(key)
        if current is None or at < current:
            self._due[key] = at

    def sync(self, now: Optional[datetime] = None) -> None:
        """Schedule any entity the loop has not seen yet."""
        now = now or _utcnow()
        for entity in self.store.list(ManagedEntity):
            if entity.key not in self._due:
                self._due[entity.key] = now

    def reconcile_once(self, now: Optional[datetime] = None) -> List[ReconcileResult]:
        """Run every due pass once. Returns the results in execution order."""
        now = now or _utcnow()
        self.sync(now)
        due = sorted(
            (at, key) for key, at in self._due.items() if at <= now
        )
        results = []
        for _, key in due:
            del self._due[key]
            namespace, name = key.split("/", 1)
            result = self.reconciler.reconcile(namespace, name)
            results.append(result)
            self._schedule(key, result.requeue, now)
        return results

    def _schedule(self, key: str, requeue: Requeue, now: datetime) -> None:
        if requeue.kind == RequeueKind.NONE:
            if self.store.find(ManagedEntity, *key.split("/", 1)) is not None:
                self._due[key] = now + timedelta(
                    seconds=self.config.heartbeat_interval_seconds
                )
            return
        self.enqueue(key, now + requeue.delay)

    def _next_wait(self, now: datetime) -> float:
        if not self._due:
            return float(self.config.heartbeat_interval_seconds)
        soonest = min(self._due.values())
        return max(0.0, min(
            (soonest - now).total_seconds(),
            float(self.config.heartbeat_interval_seconds),
        ))

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run the loop until the stop event is set."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                self.reconcile_once()
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self._next_wait(_utcnow()),
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False

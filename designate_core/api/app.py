"""
Designate Reconcile API — FastAPI endpoints.

Exposes the reconcile core for:
- DesignateService management
- Collaborator resources (secrets, transport URLs, database accounts,
  network attachments, topologies, workloads)
- Reconcile triggers and reconciler configuration
- Reconcile history queries
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ValidationError

from designate_core.cluster.store import (
    KINDS,
    AlreadyExistsError,
    ClusterStore,
    ConflictError,
)
from designate_core.common.logging import configure_logging
from designate_core.history.store import ReconcileHistory
from designate_core.models.entity import DesignateServiceSpec, ManagedEntity, ObjectMeta
from designate_core.models.reconciler import ReconcilerConfig
from designate_core.reconciler.loop import Reconciler, ReconcilerLoop


# --- Request/Response Models ---

class EntityCreateRequest(BaseModel):
    name: str
    namespace: str = "default"
    spec: DesignateServiceSpec = DesignateServiceSpec()


class ReconcilerTriggerResponse(BaseModel):
    results: list
    pass_count: int


# --- Application Factory ---

def create_app(
    store: Optional[ClusterStore] = None,
    history: Optional[ReconcileHistory] = None,
    reconciler_config: Optional[ReconcilerConfig] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Designate Reconcile API",
        description="Dependency-aware reconcile core for Designate services",
        version="0.1.0",
    )

    cs = store or ClusterStore()
    hs = history or ReconcileHistory()
    config = reconciler_config or ReconcilerConfig()
    reconciler = Reconciler(cs, config=config, history=hs)
    loop = ReconcilerLoop(reconciler)

    app.state.store = cs
    app.state.history = hs
    app.state.reconciler = reconciler
    app.state.loop = loop

    def _enqueue_namespace(namespace: str) -> None:
        for entity in cs.list(ManagedEntity, namespace):
            loop.enqueue(entity.key)

    # === DESIGNATE SERVICES ===

    @app.post("/entities")
    def create_entity(req: EntityCreateRequest):
        """Declare a new DesignateService."""
        entity = ManagedEntity(
            metadata=ObjectMeta(name=req.name, namespace=req.namespace),
            spec=req.spec,
        )
        try:
            created = cs.create(entity)
        except AlreadyExistsError:
            raise HTTPException(409, "DesignateService already exists")
        loop.enqueue(created.key)
        return created.model_dump(mode="json")

    @app.get("/entities")
    def list_entities(namespace: Optional[str] = None):
        return [e.model_dump(mode="json") for e in cs.list(ManagedEntity, namespace)]

    @app.get("/entities/{namespace}/{name}")
    def get_entity(namespace: str, name: str):
        entity = cs.find(ManagedEntity, namespace, name)
        if entity is None:
            raise HTTPException(404, "DesignateService not found")
        return entity.model_dump(mode="json")

    @app.put("/entities/{namespace}/{name}/spec")
    def update_entity_spec(namespace: str, name: str, spec: DesignateServiceSpec):
        """Replace the desired spec."""
        entity = cs.find(ManagedEntity, namespace, name)
        if entity is None:
            raise HTTPException(404, "DesignateService not found")
        entity.spec = spec
        try:
            updated = cs.update(entity)
        except ConflictError:
            raise HTTPException(409, "DesignateService was modified concurrently")
        loop.enqueue(updated.key)
        return updated.model_dump(mode="json")

    @app.delete("/entities/{namespace}/{name}")
    def delete_entity(namespace: str, name: str):
        gone = cs.delete(ManagedEntity, namespace, name)
        if not gone:
            loop.enqueue(f"{namespace}/{name}")
        return {"status": "deleted" if gone else "deletion_requested"}

    # === COLLABORATOR RESOURCES ===

    @app.put("/resources/{kind}/{namespace}/{name}")
    def put_resource(kind: str, namespace: str, name: str, body: dict):
        """Create or replace a collaborator resource."""
        cls = KINDS.get(kind)
        if cls is None or cls is ManagedEntity:
            raise HTTPException(404, f"Unknown resource kind: {kind}")
        metadata = dict(body.get("metadata", {}))
        metadata.update(name=name, namespace=namespace)
        try:
            obj = cls.model_validate({**body, "metadata": metadata})
        except ValidationError as e:
            raise HTTPException(422, str(e))
        stored = cs.upsert(obj)
        _enqueue_namespace(namespace)
        return stored.model_dump(mode="json")

    @app.get("/resources/{kind}")
    def list_resources(kind: str, namespace: Optional[str] = None):
        cls = KINDS.get(kind)
        if cls is None:
            raise HTTPException(404, f"Unknown resource kind: {kind}")
        return [o.model_dump(mode="json") for o in cs.list(cls, namespace)]

    @app.delete("/resources/{kind}/{namespace}/{name}")
    def delete_resource(kind: str, namespace: str, name: str):
        cls = KINDS.get(kind)
        if cls is None or cls is ManagedEntity:
            raise HTTPException(404, f"Unknown resource kind: {kind}")
        gone = cs.delete(cls, namespace, name)
        _enqueue_namespace(namespace)
        return {"status": "deleted" if gone else "deletion_requested"}

    # === RECONCILER ===

    @app.post("/reconcile/{namespace}/{name}")
    def reconcile_entity(namespace: str, name: str):
        """Run one reconcile pass for a single entity."""
        result = reconciler.reconcile(namespace, name)
        return result.model_dump(mode="json")

    @app.post("/reconciler/trigger")
    def trigger_reconciliation():
        """Run every due pass once."""
        results = loop.reconcile_once()
        return ReconcilerTriggerResponse(
            results=[r.model_dump(mode="json") for r in results],
            pass_count=len(results),
        )

    @app.get("/reconciler/status")
    def reconciler_status():
        return {
            "status": loop.status,
            "config": reconciler.config.model_dump(),
            "tracked_entities": len(cs.list(ManagedEntity)),
            "scheduled": {k: v.isoformat() for k, v in loop.scheduled().items()},
        }

    @app.get("/reconciler/config")
    def get_reconciler_config():
        return reconciler.config.model_dump()

    @app.put("/reconciler/config")
    def update_reconciler_config(new_config: ReconcilerConfig):
        reconciler.config = new_config
        loop.config = new_config
        return new_config.model_dump()

    # === HISTORY ===

    @app.get("/history")
    def get_recent_history(limit: int = 50):
        return [r.model_dump(mode="json") for r in hs.query_recent(limit=limit)]

    @app.get("/history/{namespace}/{name}")
    def get_entity_history(namespace: str, name: str, limit: Optional[int] = None):
        records = hs.query_by_entity(f"{namespace}/{name}", limit=limit)
        return [r.model_dump(mode="json") for r in records]

    return app


# Default application instance
app = create_app()


def main() -> None:
    """Serve the default application."""
    configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()

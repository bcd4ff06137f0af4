from __future__ import annotations

from concurrent.futures import Executor
from contextlib import asynccontextmanager
from dataclasses import asdict, replace
from typing import Any

from fastapi import FastAPI, HTTPException, Query

from . import db
from .api_models import DeploymentDescriptor, LabelsRequest, ScaleRequest, ServiceDescriptor
from .models import Deployment, Pod, PodStatus, Service
from .pod_ops import PodBackend
from .proxy import ProxyManager
from .reconciler import Reconciler, owned_pods
from .routing import RouteTable
from .settings import settings


def pod_view(p: Pod) -> dict[str, Any]:
    out = asdict(p)
    out["status"] = p.status.value
    return out


def deployment_view(d: Deployment) -> dict[str, Any]:
    pods = owned_pods(d, db.list_pods(owner=d.name))
    return {
        "name": d.name,
        "replicas": d.desired_replicas,
        "selector": d.selector,
        "template": {
            "labels": d.template.labels,
            "image": str(d.template.image),
            "container_port": d.template.container_port,
        },
        "live": sum(1 for p in pods if p.is_live),
        "ready": sum(1 for p in pods if p.status is PodStatus.RUNNING),
        "pods": [pod_view(p) for p in pods],
        "created_at": d.created_at,
    }


def service_view(s: Service) -> dict[str, Any]:
    return {
        "name": s.name,
        "type": s.type.value,
        "selector": s.selector,
        "ports": [
            {"protocol": p.protocol.value, "port": p.port, "targetPort": p.target_port, "nodePort": p.node_port}
            for p in s.ports
        ],
        "created_at": s.created_at,
    }


def create_app(
    backend: PodBackend | None = None,
    executor: Executor | None = None,
    run_background: bool = True,
) -> FastAPI:
    """Build the control-plane app.

    With ``run_background`` the reconcile loop and the node-port proxy start
    with the app; tests turn it off and drive ``POST /reconcile`` instead.
    """
    routes = RouteTable()
    reconciler = Reconciler(routes, backend=backend, executor=executor)
    proxy = ProxyManager(routes) if run_background and settings.enable_proxy else None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db.init_db()
        if run_background:
            reconciler.start()
            if proxy:
                proxy.start()
        yield
        if proxy:
            proxy.stop()
        reconciler.shutdown()

    app = FastAPI(title="hellokube control plane", lifespan=lifespan)
    app.state.routes = routes
    app.state.reconciler = reconciler
    app.state.proxy = proxy

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    # --- Deployments ---

    @app.post("/deployments")
    def apply_deployment(req: DeploymentDescriptor) -> dict[str, Any]:
        d = req.to_deployment()
        existing = db.get_deployment(d.name)
        if existing:
            d = replace(d, created_at=existing.created_at)
        d = db.upsert_deployment(d)
        db.log_event("INFO", f"Applied deployment (replicas={d.desired_replicas}, image={d.template.image})", deployment=d.name)
        reconciler.reconcile_deployment(d)
        reconciler.start_due_pods()
        reconciler.refresh_routes()
        return deployment_view(d)

    @app.get("/deployments")
    def list_deployments() -> list[dict[str, Any]]:
        return [deployment_view(d) for d in db.list_deployments()]

    @app.get("/deployments/{name}")
    def get_deployment(name: str) -> dict[str, Any]:
        d = db.get_deployment(name)
        if not d:
            raise HTTPException(status_code=404, detail="unknown deployment")
        return deployment_view(d)

    @app.post("/deployments/{name}/scale")
    def scale_deployment(name: str, req: ScaleRequest) -> dict[str, Any]:
        if not db.set_deployment_replicas(name, req.replicas):
            raise HTTPException(status_code=404, detail="unknown deployment")
        d = db.get_deployment(name)
        db.log_event("INFO", f"Scaled to {req.replicas} replicas", deployment=name)
        reconciler.reconcile_deployment(d)
        reconciler.start_due_pods()
        reconciler.refresh_routes()
        return deployment_view(d)

    @app.delete("/deployments/{name}")
    def delete_deployment(name: str) -> dict[str, str]:
        if not db.delete_deployment(name):
            raise HTTPException(status_code=404, detail="unknown deployment")
        db.log_event("INFO", "Deleted deployment", deployment=name)
        reconciler.collect_orphans()
        reconciler.refresh_routes()
        return {"deleted": name}

    # --- Services ---

    @app.post("/services")
    def apply_service(req: ServiceDescriptor) -> dict[str, Any]:
        svc = req.to_service()
        existing = db.get_service(svc.name)
        if existing:
            svc = replace(svc, created_at=existing.created_at)
        try:
            svc = db.upsert_service(svc)
        except db.PortConflict as e:
            raise HTTPException(status_code=409, detail=str(e))
        db.log_event("INFO", f"Applied service {svc.name} ({svc.type.value})")
        reconciler.refresh_routes()
        return service_view(svc)

    @app.get("/services")
    def list_services() -> list[dict[str, Any]]:
        return [service_view(s) for s in db.list_services()]

    @app.get("/services/{name}")
    def get_service(name: str) -> dict[str, Any]:
        s = db.get_service(name)
        if not s:
            raise HTTPException(status_code=404, detail="unknown service")
        return service_view(s)

    @app.delete("/services/{name}")
    def delete_service(name: str) -> dict[str, str]:
        if not db.delete_service(name):
            raise HTTPException(status_code=404, detail="unknown service")
        db.log_event("INFO", f"Deleted service {name}")
        reconciler.refresh_routes()
        return {"deleted": name}

    # --- Pods ---

    @app.get("/pods")
    def list_pods(deployment: str | None = None) -> list[dict[str, Any]]:
        return [pod_view(p) for p in db.list_pods(owner=deployment)]

    @app.delete("/pods/{pod_id}")
    def delete_pod(pod_id: str) -> dict[str, str]:
        if not reconciler.terminate_pod(pod_id, "deleted by operator"):
            raise HTTPException(status_code=404, detail="unknown pod")
        reconciler.refresh_routes()
        return {"deleted": pod_id}

    @app.put("/pods/{pod_id}/labels")
    def relabel_pod(pod_id: str, req: LabelsRequest) -> dict[str, Any]:
        if not db.set_pod_labels(pod_id, req.labels):
            raise HTTPException(status_code=404, detail="unknown pod")
        db.log_event("INFO", f"Relabeled pod {pod_id}", pod=pod_id)
        reconciler.refresh_routes()
        return pod_view(db.get_pod(pod_id))

    # --- Routing / ops ---

    @app.get("/routes")
    def get_routes() -> dict[str, Any]:
        out = routes.snapshot.to_dict()
        out["listening"] = [{"kind": k, "port": p} for k, p in proxy.listening] if proxy else []
        return out

    @app.get("/events")
    def events(limit: int = Query(100, ge=1, le=1000), deployment: str | None = None) -> list[dict[str, Any]]:
        return db.latest_events(limit, deployment=deployment)

    @app.post("/reconcile")
    def reconcile_now() -> dict[str, Any]:
        reconciler.reconcile_once()
        return {"version": routes.snapshot.version}

    return app

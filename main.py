import logging
from dataclasses import asdict
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from fleet import __version__
from fleet.api_models import (
    DeployRequest,
    MetricsSampleRequest,
    RegisterServiceRequest,
    ScaleRequest,
    deployment_view,
    service_view,
)
from fleet.db import Store
from fleet.deployments import DeploySpec
from fleet.errors import CircuitOpen, DeploymentConflict, DeploymentFailed, NotFound, ProvisioningFailure
from fleet.metrics import HttpMetricsFeed, StaticMetricsFeed
from fleet.orchestrator import Orchestrator, ServiceSpec
from fleet.provisioning import DockerProvisioner, HttpProber, InMemoryProvisioner
from fleet.settings import Settings, settings


def build_orchestrator(cfg: Settings = settings) -> Orchestrator:
    store = Store(cfg.db_path)
    if cfg.provisioner == "docker":
        provisioner = DockerProvisioner(cfg.docker_network, cfg.docker_image_template, cfg.internal_port)
        prober = HttpProber()
        feed = HttpMetricsFeed()
    elif cfg.provisioner == "memory":
        provisioner = InMemoryProvisioner()
        prober = provisioner
        feed = StaticMetricsFeed()
    else:
        raise ValueError(f"Unknown FLEET_PROVISIONER '{cfg.provisioner}' (expected memory|docker)")
    return Orchestrator(
        store,
        provisioner,
        prober,
        feed,
        workers=cfg.loop_workers,
        trace_queue_size=cfg.trace_queue_size,
        deployment_poll_s=cfg.deployment_poll_s,
    )


def _error(status_code: int, exc: Exception, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc), **extra})


def create_app(orch: Orchestrator | None = None, start_loops: bool = settings.start_loops) -> FastAPI:
    orch = orch or build_orchestrator()
    app = FastAPI(title="Fleet Orchestrator", version=__version__)
    app.state.orchestrator = orch

    @app.exception_handler(NotFound)
    async def _not_found(request: Request, exc: NotFound):
        return _error(404, exc)

    @app.exception_handler(DeploymentConflict)
    async def _conflict(request: Request, exc: DeploymentConflict):
        return _error(409, exc)

    @app.exception_handler(CircuitOpen)
    async def _circuit_open(request: Request, exc: CircuitOpen):
        return _error(503, exc, retry_after_s=exc.retry_after_s)

    @app.exception_handler(ProvisioningFailure)
    async def _provisioning(request: Request, exc: ProvisioningFailure):
        return _error(502, exc)

    @app.exception_handler(DeploymentFailed)
    async def _deployment_failed(request: Request, exc: DeploymentFailed):
        return _error(500, exc)

    @app.exception_handler(ValueError)
    async def _invalid(request: Request, exc: ValueError):
        return _error(422, exc)

    @app.on_event("startup")
    def startup():
        if start_loops:
            orch.start()

    @app.on_event("shutdown")
    def shutdown():
        if start_loops:
            orch.stop()

    # --- services ---

    @app.get("/services")
    def list_services(name: Optional[str] = None):
        services = orch.registry.list_by_name(name) if name else orch.list_services()
        return [service_view(s) for s in services]

    @app.post("/services", status_code=201)
    def register_service(req: RegisterServiceRequest):
        svc = orch.register_service(
            ServiceSpec(
                name=req.name,
                version=req.version,
                category=req.category,
                replicas=req.replicas,
                config=req.config.to_config(),
                endpoints=req.endpoints(),
                required_dependencies=req.required_dependencies,
                optional_dependencies=req.optional_dependencies,
                strategy=req.strategy,
            )
        )
        return service_view(svc)

    @app.get("/services/{service_id}")
    def get_service(service_id: str):
        return service_view(orch.get_service(service_id))

    @app.delete("/services/{service_id}")
    def deregister_service(service_id: str):
        svc = orch.deregister_service(service_id)
        return {"ok": True, "id": svc.id, "status": svc.status}

    @app.post("/services/{service_id}/deployments", status_code=202)
    def deploy(service_id: str, req: DeployRequest):
        dep_id = orch.deploy(
            service_id,
            DeploySpec(
                version=req.version,
                strategy=req.strategy,
                replicas=req.replicas,
                canary_percent=req.canary_percent,
            ),
        )
        return deployment_view(orch.get_deployment(dep_id))

    @app.post("/services/{service_id}/scale")
    def scale(service_id: str, req: ScaleRequest):
        return service_view(orch.scale(service_id, req.replicas))

    @app.get("/services/{service_id}/health")
    def service_health(service_id: str):
        return orch.get_health(service_id)

    @app.get("/services/{service_id}/metrics")
    def service_metrics(service_id: str):
        return orch.get_metrics(service_id)

    @app.post("/instances/{instance_id}/metrics")
    def push_metrics(instance_id: str, req: MetricsSampleRequest):
        orch.record_metrics(instance_id, req.to_sample())
        return {"ok": True}

    # --- deployments ---

    @app.get("/deployments")
    def list_deployments(service_id: Optional[str] = None):
        return [deployment_view(d) for d in orch.list_deployments(service_id)]

    @app.get("/deployments/{deployment_id}")
    def get_deployment(deployment_id: str):
        return deployment_view(orch.get_deployment(deployment_id))

    @app.post("/deployments/{deployment_id}/rollback")
    def rollback(deployment_id: str):
        return deployment_view(orch.rollback(deployment_id))

    @app.post("/deployments/{deployment_id}/cancel")
    def cancel(deployment_id: str):
        return deployment_view(orch.cancel_deployment(deployment_id))

    # --- discovery / observability ---

    @app.get("/resolve/{service_name}")
    def resolve(service_name: str):
        return {"service": service_name, "endpoints": orch.resolve(service_name)}

    @app.get("/metrics")
    def global_metrics():
        return orch.global_metrics()

    @app.get("/events")
    def events(limit: int = 100):
        return orch.store.latest_events(limit=max(1, min(limit, 1000)))

    @app.get("/traces")
    def traces(limit: int = 100):
        return [asdict(s) for s in orch.tracer.recent(limit=max(1, min(limit, 1000)))]

    @app.get("/config")
    def get_config():
        return orch.config.model_dump()

    @app.patch("/config")
    def patch_config(partial: dict[str, Any]):
        return orch.update_configuration(partial).model_dump()

    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)

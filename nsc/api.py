from __future__ import annotations

from fastapi import FastAPI, HTTPException, Query

from . import db
from .api_models import EventModel, HealthResponse, PeerModel, ReloadResponse, ServiceModel, ServiceOptionsModel
from .controller import Controller
from .service import NginxService


def _service_model(service: NginxService) -> ServiceModel:
    peers = [
        PeerModel(server=p.server, port=p.port, stream=p.stream, registered=registered)
        for p, registered in sorted(service.peers.items(), key=lambda kv: (kv[0].port, kv[0].address))
    ]
    return ServiceModel(
        id=service.id,
        name=service.name,
        hostname=service.hostname,
        http_enabled=service.is_http_enabled,
        stream_enabled=service.is_stream_enabled,
        options=ServiceOptionsModel(**service.options.to_dict()),
        peers=peers,
    )


def create_app(controller: Controller) -> FastAPI:
    """Read-mostly control API over a running controller."""
    app = FastAPI(title="Nginx Swarm Controller")

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(
            started=controller.is_started,
            reload_state=controller.reload_state,
            services=len(controller.services),
        )

    @app.get("/services", response_model=list[ServiceModel])
    def list_services() -> list[ServiceModel]:
        services = sorted(controller.services.values(), key=lambda s: s.name)
        return [_service_model(s) for s in services]

    @app.get("/services/{service_id}", response_model=ServiceModel)
    def get_service(service_id: str) -> ServiceModel:
        service = controller.services.get(service_id)
        if service is None:
            raise HTTPException(status_code=404, detail="Unknown service")
        return _service_model(service)

    @app.get("/events", response_model=list[EventModel])
    def events(limit: int = Query(50, ge=1, le=1000), service: str | None = None) -> list[EventModel]:
        return [EventModel(**e) for e in db.latest_events(limit, service_name=service)]

    @app.post("/reload", response_model=ReloadResponse)
    def reload() -> ReloadResponse:
        if not controller.is_started:
            raise HTTPException(status_code=409, detail="Nginx is not running")
        controller.reload()
        return ReloadResponse(requested=True, reload_state=controller.reload_state)

    return app

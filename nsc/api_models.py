from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    started: bool
    reload_state: str = Field(..., description="idle|reloading|reloading-with-pending")
    services: int


class PeerModel(BaseModel):
    server: str
    port: int
    stream: bool
    registered: bool


class ServiceOptionsModel(BaseModel):
    http_server_name: list[str] = Field(default_factory=list)
    http_client_max_body_size: str
    http_cache_enabled: bool
    http_cache_max_size: str
    http_cache_inactive: str
    stream_port: list[int] = Field(default_factory=list)


class ServiceModel(BaseModel):
    id: str
    name: str
    hostname: str | None = None
    http_enabled: bool
    stream_enabled: bool
    options: ServiceOptionsModel
    peers: list[PeerModel] = Field(default_factory=list)


class EventModel(BaseModel):
    id: int
    ts: str
    level: str
    service_name: str | None = None
    field: str | None = None
    value: str | None = None
    message: str


class ReloadResponse(BaseModel):
    requested: bool
    reload_state: str

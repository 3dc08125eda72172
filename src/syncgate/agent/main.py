from __future__ import annotations

from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version as pkg_version

import uvicorn
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from syncgate.observability import configure_logging, install_http_observability
from syncgate.schemas import AgentHealthResponse
from syncgate.settings import Settings, ensure_agent_dirs, get_settings

from .service import NodeService


def _app_version() -> str:
    try:
        return pkg_version("syncgate")
    except PackageNotFoundError:
        return "dev"


def create_app(settings: Settings, service: NodeService | None = None) -> FastAPI:
    service = service or NodeService(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        await service.start()
        try:
            yield
        finally:
            await service.close()

    app = FastAPI(title="Syncgate Node Agent", version=_app_version(), lifespan=lifespan)
    app.state.service = service
    install_http_observability(app, component="agent")

    @app.get("/v1/health", response_model=AgentHealthResponse)
    async def health() -> AgentHealthResponse:
        return service.health()

    if settings.metrics_enabled:

        @app.get("/metrics")
        async def metrics() -> Response:
            return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


settings = get_settings()
configure_logging(settings.log_level)
ensure_agent_dirs(settings)
app = create_app(settings)


def run() -> None:
    uvicorn.run(
        "syncgate.agent.main:app",
        host=settings.agent_host,
        port=settings.agent_port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()

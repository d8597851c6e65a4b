"""FastAPI application for the read-only status surface."""
#
# PURPOSE:
# Serves instance status, logs and health straight from the Status Exporter.
# Every route is side-effect free; state-changing work only enters through
# the job router.
#
# ROUTES:
# - /v1/instances, /v1/instances/{id}/status|logs|health|results
# - /status, /logs, /health for the bring-up rollup
#

from __future__ import annotations

import logging
from typing import Optional

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from raas import __version__
from raas.errors import RaasError
from raas.server.routers import instances, system
from raas.service import RaasService

logger = logging.getLogger(__name__)


def create_app(service: RaasService, bring_up: bool = False) -> FastAPI:
    """
    Build the HTTP app around an already wired service.

    Args:
        service: The service root whose exporter backs every route
        bring_up: Start the bring-up deploy in the background on startup
    """
    app = FastAPI(
        title="Orbit RaaS API",
        description="Status surface for Avail-backed Arbitrum Orbit rollups",
        version=__version__,
    )
    app.state.service = service

    @app.exception_handler(RaasError)
    async def raas_error_handler(request: Request, exc: RaasError):
        logger.warning(f"[API] {exc.code.value}: {exc.message}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.on_event("startup")
    async def startup_event():
        logger.info(f"[API] Orbit RaaS status surface starting (default instance: {service.default_instance_id})")
        if bring_up:
            service.start_bring_up()

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("[API] Shutting down")
        await service.shutdown()

    v1_router = APIRouter(prefix="/v1", responses={404: {"description": "Not found"}})
    v1_router.include_router(instances.router)
    app.include_router(v1_router)
    app.include_router(system.router)
    return app


def serve(service: RaasService, host: Optional[str] = None, port: Optional[int] = None, bring_up: bool = True):
    config = service.config.server
    app = create_app(service, bring_up=bring_up)
    uvicorn.run(app, host=host or config.api_host, port=port or config.api_port, log_level="info")

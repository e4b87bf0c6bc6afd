#!/usr/bin/env python3
"""
buildfarm: static build worker.
Builds uploaded front-end projects, pre-renders their routes and serves the
result as a one-time download.
API key authentication required for all endpoints except /health and /meta;
downloads also accept a signed token.
"""
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse

from buildfarm.api.builds import get_base_url, router as builds_router
from buildfarm.api.metrics import router as metrics_router
from buildfarm.core.config import WorkerConfig, get_worker_config
from buildfarm.core.errors import AuthError
from buildfarm.core.logging import setup_logging
from buildfarm.core.pipeline import create_worker
from buildfarm.core.render_farm import RenderFarm
from buildfarm.core.request_logging import RequestLoggingMiddleware
from buildfarm.core.security import APIKeyMiddleware, PUBLIC_PATHS
from buildfarm.core.source_transformer import SourceTransformer

LISTEN_HOST = os.environ.get("LISTEN_HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))
VERSION = "1.0.0"


def create_app(
    config: Optional[WorkerConfig] = None,
    render_farm: Optional[RenderFarm] = None,
    transformer: Optional[SourceTransformer] = None,
) -> FastAPI:
    """Build the FastAPI application around one build worker."""
    config = config or get_worker_config()
    setup_logging(config.log_level)
    worker = create_worker(config, render_farm=render_farm, transformer=transformer)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Artifacts left over from a previous run
        worker.run_cleanup()
        yield
        await worker.runner.shutdown()

    app = FastAPI(
        title="buildfarm",
        description="Static build worker with route pre-rendering",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.worker = worker

    def custom_openapi():
        """Custom OpenAPI schema with security schemes for Swagger UI."""
        if app.openapi_schema:
            return app.openapi_schema

        openapi_schema = get_openapi(
            title=app.title,
            version=app.version,
            description=app.description,
            routes=app.routes,
        )

        openapi_schema["components"]["securitySchemes"] = {
            "apiKeyHeader": {
                "type": "apiKey",
                "in": "header",
                "name": "X-API-Key",
                "description": "API key authentication via X-API-Key header",
            },
            "bearerAuth": {
                "type": "http",
                "scheme": "bearer",
                "description": "Bearer token authentication via Authorization header",
            },
        }

        for path, path_item in openapi_schema["paths"].items():
            if path not in PUBLIC_PATHS:
                for method in path_item.values():
                    if isinstance(method, dict):
                        method["security"] = [
                            {"apiKeyHeader": []},
                            {"bearerAuth": []},
                        ]

        app.openapi_schema = openapi_schema
        return app.openapi_schema

    app.openapi = custom_openapi

    # Added last so it wraps auth and sees every request
    app.add_middleware(APIKeyMiddleware, api_key=config.api_key)
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(builds_router)
    app.include_router(metrics_router)

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "version": VERSION,
            "max_routes": config.max_routes,
            "active_jobs": worker.runner.active_count,
        }

    @app.get("/meta")
    def meta(request: Request):
        """
        Service metadata endpoint.

        Returns configuration info useful for diagnostics and client setup.
        Secrets are never included.
        """
        base_url = get_base_url(request)
        return {
            "public_base_url": config.public_base_url or None,
            "computed_base_url": base_url,
            "listen_host": LISTEN_HOST,
            "port": PORT,
            "version": VERSION,
            "docs_url": f"{base_url}/docs",
            "health_url": f"{base_url}/health",
            "limits": {
                "max_archive_bytes": config.max_archive_bytes,
                "max_files": config.max_files,
                "max_uncompressed_bytes": config.max_uncompressed_bytes,
                "max_routes": config.max_routes,
                "process_timeout_s": config.process_timeout_s,
                "token_ttl_s": config.token_ttl_s,
            },
            "render": {
                "concurrency": config.render_concurrency,
                "page_timeout_ms": config.render_page_timeout_ms,
                "ready_selector": config.render_ready_selector,
            },
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=LISTEN_HOST, port=PORT)

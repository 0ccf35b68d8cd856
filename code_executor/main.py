from __future__ import annotations

import os
from typing import Final

from fastapi import FastAPI

from code_executor.api.routes import router as api_router
from code_executor.core.config import get_settings
from code_executor.core.logging import configure_logging
from code_executor.services.executor import get_engine


def create_app() -> FastAPI:
    configure_logging(get_settings().log_level)

    app = FastAPI(
        title="Code Executor API",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    @app.get("/healthz")
    def healthz() -> dict[str, str | int]:
        admission = get_engine().admission
        return {
            "status": "ok",
            "in_flight": admission.in_flight,
            "max_concurrency": admission.max_concurrency,
        }

    app.include_router(api_router, prefix="/v1")
    return app


app: Final[FastAPI] = create_app()


def run() -> None:
    """Run the API using Uvicorn.

    This is for local/dev usage. Production deployments should use a process manager
    and configure workers according to their environment. Note that the concurrency
    ceiling is enforced per worker process.
    """
    import uvicorn

    host: str = os.environ.get("HOST", "127.0.0.1")
    port_str: str | None = os.environ.get("PORT")
    port: int = int(port_str) if port_str else 8000
    uvicorn.run("code_executor.main:app", host=host, port=port, log_level="info")

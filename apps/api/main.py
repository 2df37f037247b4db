from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import List
from urllib.parse import urlparse

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware


from api.routes import router as api_router
from services.job_runner.runtime import get_orchestrator, reset_runtime


def _parse_origins(raw: str) -> List[str]:
    # Accept comma-separated list. Ignore empties.
    return [o.strip() for o in (raw or "").split(",") if o.strip()]


def _validate_origins(origins: List[str]) -> List[str]:
    """
    Credentials are allowed, so every origin must be an explicit
    http(s)://host[:port] value. "*" is rejected.
    """
    for origin in origins:
        if origin == "*":
            raise ValueError("CORS_ALLOW_ORIGINS must not contain '*'")
        parsed = urlparse(origin)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(f"invalid CORS origin: {origin!r}")
    return origins


def _configure_logging() -> None:
    level = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def _lifespan(app: FastAPI):
    yield
    # Only tear down what was actually built.
    if get_orchestrator.cache_info().currsize:
        await get_orchestrator().aclose()
    reset_runtime()


def create_app() -> FastAPI:
    _configure_logging()
    app = FastAPI(title="DevCommandHub API", version="0.1.0", lifespan=_lifespan)

    origins = _validate_origins(_parse_origins(os.getenv("CORS_ALLOW_ORIGINS", "")))
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(api_router, prefix="/api")

    @app.get("/health")
    def health() -> dict:
        orchestrator = get_orchestrator()
        store_ok = orchestrator.store.ping()
        return {
            "status": "ok" if store_ok else "degraded",
            "executor": orchestrator.executor.kind,
            "store": "ok" if store_ok else "unavailable",
        }

    return app


app = create_app()

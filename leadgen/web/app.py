"""FastAPI application factory for the enrichment API."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ..database import init_db

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        init_db()
    except Exception as exc:
        log.warning("init_db had issues: %s", exc)
    yield


def create_app() -> FastAPI:
    app = FastAPI(title="Leadgen Enrichment", lifespan=lifespan)

    from .middleware import OrgContextMiddleware
    app.add_middleware(OrgContextMiddleware)

    from .routes import api
    app.include_router(api.router, prefix="/api/v1")

    return app

from __future__ import annotations

from fastapi import FastAPI

from newtube import __version__
from newtube.api.routers.health import router as health_router
from newtube.api.routers.jobs import router as jobs_router
from newtube.config import get_settings
from newtube.database import init_db


def create_app() -> FastAPI:
    app = FastAPI(title="NEWTUBE Embeddings", version=__version__)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(jobs_router, prefix="/api/v1")

    @app.on_event("startup")
    def _startup() -> None:  # pragma: no cover
        # Dev convenience: auto-create tables. Production uses migrations.
        settings = get_settings()
        if settings.ENVIRONMENT == "dev":
            init_db(create_tables=True)

    return app


app = create_app()

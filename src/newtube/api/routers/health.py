from __future__ import annotations

from fastapi import APIRouter
from sqlalchemy import text

from newtube import __version__
from newtube.config import get_settings
from newtube.database import get_db_session
from newtube.integrations.inference import HttpInferenceClient

router = APIRouter(tags=["system"])


@router.get("/health")
def health() -> dict:
    settings = get_settings()
    return {
        "ok": True,
        "service": "newtube-embeddings",
        "version": __version__,
        "environment": settings.ENVIRONMENT,
        "schema_mode": settings.SCHEMA_MODE,
        "embedding_model": settings.EMBEDDING_MODEL,
        "embedding_version": settings.EMBEDDING_VERSION,
    }


@router.get("/health/deps")
def health_deps() -> dict:
    deps: dict = {}
    overall_ok = True

    try:
        with get_db_session() as db:
            db.execute(text("SELECT 1"))
        deps["db"] = {"ok": True}
    except Exception as exc:
        deps["db"] = {"ok": False, "error": str(exc)}
        overall_ok = False

    client = HttpInferenceClient()
    try:
        deps["inference"] = {"ok": True, "detail": client.health(), "url": client.base_url}
    except Exception as exc:
        deps["inference"] = {"ok": False, "error": str(exc), "url": client.base_url}
        overall_ok = False
    finally:
        client.close()

    return {"ok": overall_ok, "deps": deps}

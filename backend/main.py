import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from api import applications_router
from appdb import close_application_store, get_application_store
from application_registry import get_application_registry, reset_application_registry

logger = logging.getLogger(__name__)


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application registry starting...")
    try:
        await get_application_registry().initialize()
        logger.info("Applications database initialized.")
    except Exception as e:
        logger.error("Failed to initialize applications database: %s", e)
        raise RuntimeError("Failed to initialize applications database during startup") from e

    yield

    logger.info("Closing database connections...")
    await close_application_store()
    reset_application_registry()


app = FastAPI(
    title="Application Registry API",
    description="Installed application metadata store",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(applications_router)


@app.get("/health")
async def health():
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
    }
    try:
        store = get_application_store()
        payload["store"] = {
            "initialized": store.is_initialized,
            "database_file": str(store.schema.database_file),
            "schema_version": await store.get_schema_version()
            if store.is_initialized
            else None,
        }
        payload["installed_applications"] = len(
            get_application_registry().get_installed_applications()
        )
        if not store.is_initialized:
            payload["status"] = "degraded"
    except Exception as e:
        payload["status"] = "degraded"
        payload["store"] = {"initialized": False, "reason": str(e)}

    return payload


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="127.0.0.1", port=8000)

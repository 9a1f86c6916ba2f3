from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from livemap.core.logging import setup_logging
from livemap.core.config import MAP_BACKEND
from livemap.core.init_db import init_db
from livemap.api.router import api_router
from livemap.services.backend import MapBackend, SqlBackend
from livemap.services.image_prefetch import ImagePrefetcher
from livemap.services.map_session import SessionRegistry

setup_logging()
logger.info("Starting live map backend")


async def build_backend() -> MapBackend:
    if MAP_BACKEND == "supabase":
        from livemap.services.supabase_backend import SupabaseBackend
        return await SupabaseBackend.connect()

    if MAP_BACKEND == "sql":
        init_db()
        return SqlBackend()

    raise RuntimeError(f"Unknown MAP_BACKEND: {MAP_BACKEND}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    backend = await build_backend()
    app.state.registry = SessionRegistry(backend, ImagePrefetcher())
    logger.info(f"Map backend ready ({MAP_BACKEND})")
    try:
        yield
    finally:
        await app.state.registry.aclose()
        await backend.close()
        logger.info("Map backend closed")


app = FastAPI(
    title="Live Map Backend",
    version="0.1.0",
    lifespan=lifespan,
)

# All API routes (includes map via router.py)
app.include_router(api_router)


@app.get("/health")
def health():
    logger.debug("Health check hit")
    return {"status": "ok"}

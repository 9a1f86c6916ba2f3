from fastapi import APIRouter

from livemap.api.routes import map as map_routes

api_router = APIRouter(prefix="/v1")

api_router.include_router(map_routes.router, prefix="/map", tags=["map"])

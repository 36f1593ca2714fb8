from fastapi import APIRouter

from gridrank.api.v1 import health, local_scans


def build_api_router() -> APIRouter:
    router = APIRouter()
    router.include_router(health.router)
    router.include_router(local_scans.router)
    return router


api_router = build_api_router()

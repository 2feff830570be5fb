from fastapi import APIRouter

from .endpoints import address_collection, executions, health, pipeline

router = APIRouter()
router.include_router(health.router, prefix="/health", tags=["Health"])
router.include_router(pipeline.router)
router.include_router(executions.router)
router.include_router(address_collection.router)

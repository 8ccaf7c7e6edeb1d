from fastapi import APIRouter

from .deployments import router as deployments_router

router = APIRouter()
router.include_router(deployments_router)

from fastapi import APIRouter, Depends

from app.api.v1 import experiments, health, promotion
from app.core.auth import require_operator

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(
    experiments.router,
    prefix="/experiments",
    tags=["experiments"],
    dependencies=[Depends(require_operator)],
)
api_router.include_router(
    promotion.router, tags=["promotion"], dependencies=[Depends(require_operator)]
)

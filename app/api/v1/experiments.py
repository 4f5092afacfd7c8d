from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.models.schemas import (
    CreateExperimentRequest,
    ExperimentListResponse,
    ExperimentResponse,
    SubmitMetricsRequest,
    UpdateExperimentRequest,
)
from app.services.experiments.service import ExperimentService

router = APIRouter()


@router.post("", response_model=ExperimentResponse, status_code=201)
async def create_experiment(request: CreateExperimentRequest, db: AsyncSession = Depends(get_db)):
    service = ExperimentService(db)
    experiment = await service.create_experiment(request)
    return service.to_response(experiment)


@router.get("", response_model=ExperimentListResponse)
async def list_experiments(
    active: Optional[bool] = Query(None, description="Filter by active flag"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    service = ExperimentService(db)
    experiments = await service.list_experiments(active=active, limit=limit, offset=offset)

    return ExperimentListResponse(
        experiments=[service.to_response(e) for e in experiments], total=len(experiments)
    )


@router.get("/{experiment_id}", response_model=ExperimentResponse)
async def get_experiment(experiment_id: str, db: AsyncSession = Depends(get_db)):
    service = ExperimentService(db)
    experiment = await service.get_experiment(experiment_id)

    if not experiment:
        raise HTTPException(status_code=404, detail="Experiment not found")

    return service.to_response(experiment)


@router.patch("/{experiment_id}", response_model=ExperimentResponse)
async def update_experiment(
    experiment_id: str, request: UpdateExperimentRequest, db: AsyncSession = Depends(get_db)
):
    service = ExperimentService(db)
    experiment = await service.update_experiment(experiment_id, request)

    if not experiment:
        raise HTTPException(status_code=404, detail="Experiment not found")

    return service.to_response(experiment)


@router.post("/{experiment_id}/metrics", response_model=ExperimentResponse)
async def submit_variant_metrics(
    experiment_id: str, request: SubmitMetricsRequest, db: AsyncSession = Depends(get_db)
):
    service = ExperimentService(db)
    experiment = await service.submit_variant_metrics(experiment_id, request)

    if not experiment:
        raise HTTPException(status_code=404, detail="Experiment not found")

    return service.to_response(experiment)

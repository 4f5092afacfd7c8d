import uuid
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.errors import InvalidRequestError
from app.models.experiment import Experiment, Variant
from app.models.schemas import (
    CreateExperimentRequest,
    ExperimentResponse,
    SubmitMetricsRequest,
    UpdateExperimentRequest,
    VariantResponse,
)

logger = structlog.get_logger(__name__)


class ExperimentService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_experiment(self, request: CreateExperimentRequest) -> Experiment:
        experiment_id = str(uuid.uuid4())
        experiment = Experiment(
            id=experiment_id,
            name=request.name,
            description=request.description,
            is_active=request.is_active,
            start_date=request.start_date or datetime.now(timezone.utc),
            end_date=request.end_date,
            traffic_version=0,
            variants=[
                Variant(
                    id=str(uuid.uuid4()),
                    experiment_id=experiment_id,
                    variant_name=v.variant_name,
                    traffic_percentage=v.traffic_percentage,
                )
                for v in request.variants
            ],
        )

        self.db.add(experiment)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise InvalidRequestError(f"Experiment name already exists: {request.name}") from e

        logger.info("experiment_created", experiment_id=experiment_id, name=request.name)
        return await self.get_experiment(experiment_id)

    async def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        result = await self.db.execute(
            select(Experiment)
            .options(selectinload(Experiment.variants))
            .where(Experiment.id == experiment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_experiments(
        self, active: Optional[bool] = None, limit: int = 50, offset: int = 0
    ) -> List[Experiment]:
        query = (
            select(Experiment)
            .options(selectinload(Experiment.variants))
            .order_by(Experiment.created_at.desc(), Experiment.name)
            .limit(limit)
            .offset(offset)
        )

        if active is not None:
            query = query.where(Experiment.is_active.is_(active))

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def update_experiment(
        self, experiment_id: str, request: UpdateExperimentRequest
    ) -> Optional[Experiment]:
        experiment = await self.get_experiment(experiment_id)
        if not experiment:
            return None

        if request.description is not None:
            experiment.description = request.description
        if request.is_active is not None:
            experiment.is_active = request.is_active
        if request.end_date is not None:
            experiment.end_date = request.end_date

        await self.db.commit()
        return await self.get_experiment(experiment_id)

    async def submit_variant_metrics(
        self, experiment_id: str, request: SubmitMetricsRequest
    ) -> Optional[Experiment]:
        """Overwrite the metric snapshot of the named variants."""
        experiment = await self.get_experiment(experiment_id)
        if not experiment:
            return None

        by_name = {v.variant_name: v for v in experiment.variants}
        unknown = sorted({m.variant_name for m in request.variants} - set(by_name))
        if unknown:
            raise InvalidRequestError(f"Unknown variants for experiment {experiment.name}: {unknown}")

        recorded_at = datetime.now(timezone.utc)
        for snapshot in request.variants:
            variant = by_name[snapshot.variant_name]
            variant.sample_size = snapshot.sample_size
            variant.success_rate = snapshot.success_rate
            variant.error_rate = snapshot.error_rate
            variant.avg_latency_ms = snapshot.avg_latency_ms
            variant.p95_latency_ms = snapshot.p95_latency_ms
            variant.metrics_updated_at = recorded_at

        await self.db.commit()

        logger.info(
            "variant_metrics_recorded",
            experiment_id=experiment_id,
            variants=[m.variant_name for m in request.variants],
        )
        return await self.get_experiment(experiment_id)

    def to_response(self, experiment: Experiment) -> ExperimentResponse:
        return ExperimentResponse(
            id=experiment.id,
            name=experiment.name,
            description=experiment.description,
            is_active=experiment.is_active,
            start_date=experiment.start_date,
            end_date=experiment.end_date,
            traffic_version=experiment.traffic_version,
            created_at=experiment.created_at,
            variants=[VariantResponse.model_validate(v) for v in experiment.variants],
        )

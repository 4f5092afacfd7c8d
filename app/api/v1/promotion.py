from typing import Optional

import structlog
from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import require_operator
from app.core.database import get_db
from app.core.errors import InvalidRequestError
from app.models.schemas import (
    EligibilityCheckResponse,
    ExperimentSummary,
    PromoteRequest,
    PromoteResponse,
    PromotionConfigOverrides,
    RollbackRequest,
    RollbackResponse,
    SweepError,
    SweepResponse,
)
from app.services.promotion.service import PromotionService

router = APIRouter()
logger = structlog.get_logger(__name__)


def rule_overrides(
    min_confidence_level: Optional[float] = Query(None, alias="minConfidenceLevel"),
    min_sample_size: Optional[int] = Query(None, alias="minSampleSize", ge=0),
    min_improvement_percent: Optional[float] = Query(None, alias="minImprovementPercent"),
    max_error_rate: Optional[float] = Query(None, alias="maxErrorRate", ge=0, le=1),
    max_p95_latency_ms: Optional[float] = Query(None, alias="maxP95LatencyMs", ge=0),
    min_test_duration_hours: Optional[float] = Query(None, alias="minTestDurationHours", ge=0),
    max_test_duration_hours: Optional[float] = Query(None, alias="maxTestDurationHours", ge=0),
    require_manual_approval: Optional[bool] = Query(None, alias="requireManualApproval"),
) -> PromotionConfigOverrides:
    try:
        return PromotionConfigOverrides(
            min_confidence_level=min_confidence_level,
            min_sample_size=min_sample_size,
            min_improvement_percent=min_improvement_percent,
            max_error_rate=max_error_rate,
            max_p95_latency_ms=max_p95_latency_ms,
            min_test_duration_hours=min_test_duration_hours,
            max_test_duration_hours=max_test_duration_hours,
            require_manual_approval=require_manual_approval,
        )
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid promotion rules: {e.errors()[0]['msg']}") from e


@router.get("/experiments/{experiment_id}/promote", response_model=EligibilityCheckResponse)
async def check_promotion_eligibility(
    experiment_id: str,
    overrides: PromotionConfigOverrides = Depends(rule_overrides),
    db: AsyncSession = Depends(get_db),
):
    service = PromotionService(db)
    eligibility = await service.check_eligibility(
        experiment_id, overrides.model_dump(exclude_none=True)
    )
    experiment = await service.get_experiment(experiment_id)

    return EligibilityCheckResponse(
        experiment=ExperimentSummary.model_validate(experiment),
        eligibility=service.to_eligibility_response(eligibility),
        current_traffic=service.to_traffic(await service.get_current_traffic(experiment_id)),
        promotion_history=service.to_audit_responses(
            await service.get_promotion_history(experiment_id)
        ),
    )


@router.post("/experiments/{experiment_id}/promote", response_model=PromoteResponse)
async def promote_experiment(
    experiment_id: str,
    request: Optional[PromoteRequest] = Body(None),
    operator: str = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
):
    request = request or PromoteRequest()
    overrides = request.custom_rules.model_dump(exclude_none=True) if request.custom_rules else None

    logger.info(
        "promotion_requested",
        experiment_id=experiment_id,
        force=request.force,
        promotion_type=request.promotion_type,
        operator=operator,
    )

    service = PromotionService(db)
    outcome = await service.promote(
        experiment_id,
        promoted_by=operator,
        promotion_type=request.promotion_type,
        force=request.force,
        overrides=overrides,
    )
    eligibility = service.to_eligibility_response(outcome.eligibility)

    if not outcome.success:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": outcome.message,
                "result": eligibility.model_dump(mode="json", by_alias=True),
            },
        )

    return PromoteResponse(
        message=outcome.message,
        winning_variant=outcome.winning_variant,
        action=outcome.action,
        audit_log_id=outcome.audit_log_id,
        promotion=service.to_promotion_result(outcome.promotion),
        archived_losing_variants=outcome.archived_losing_variants,
        updated_traffic=service.to_traffic(outcome.updated_traffic),
        eligibility=eligibility,
    )


@router.delete("/experiments/{experiment_id}/promote", response_model=RollbackResponse)
async def rollback_promotion(
    experiment_id: str,
    request: Optional[RollbackRequest] = Body(None),
    operator: str = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
):
    request = request or RollbackRequest()

    service = PromotionService(db)
    outcome = await service.rollback(
        experiment_id,
        reason=request.reason,
        rolled_back_by=operator,
        restore=request.restore_traffic,
    )

    return RollbackResponse(
        message=outcome.message,
        rolled_back_to=outcome.rolled_back_to,
        reason=outcome.reason,
        audit_log_id=outcome.audit_log_id,
        updated_traffic=service.to_traffic(outcome.updated_traffic),
    )


@router.post("/promotions/sweep", response_model=SweepResponse)
async def run_auto_promotion_sweep(
    overrides: Optional[PromotionConfigOverrides] = Body(None),
    db: AsyncSession = Depends(get_db),
):
    service = PromotionService(db)
    sweep = await service.check_all_experiments(
        overrides.model_dump(exclude_none=True) if overrides else None
    )
    return SweepResponse(
        checked=sweep.checked,
        eligible=sweep.eligible,
        promoted=sweep.promoted,
        needs_review=sweep.needs_review,
        errors=[SweepError(**e) for e in sweep.errors],
    )

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConcurrentPromotionError, InvalidRequestError, PromotionStoreError
from app.models.experiment import Experiment, Variant
from app.services.promotion.policy import (
    GRADUAL_WINNER_TRAFFIC,
    IMMEDIATE_WINNER_TRAFFIC,
    STRATEGIES,
    STRATEGY_GRADUAL,
    TRAFFIC_TOTAL,
)

logger = structlog.get_logger(__name__)


@dataclass
class PromotionResult:
    success: bool
    experiment_id: str
    winner_variant_id: str
    strategy: str
    traffic_percentage: float
    message: str
    applied_at: datetime


async def load_variants(db: AsyncSession, experiment_id: str) -> List[Variant]:
    result = await db.execute(
        select(Variant)
        .where(Variant.experiment_id == experiment_id)
        .order_by(Variant.variant_name)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def current_traffic(variants: List[Variant]) -> Dict[str, float]:
    return {v.id: v.traffic_percentage for v in variants}


async def claim_traffic_version(db: AsyncSession, experiment_id: str, expected_version: int) -> None:
    """
    Conditionally bump the experiment's traffic version.

    Zero affected rows means another mutation committed after ``expected_version``
    was read, so this one must not proceed.
    """
    result = await db.execute(
        update(Experiment)
        .where(Experiment.id == experiment_id, Experiment.traffic_version == expected_version)
        .values(traffic_version=Experiment.traffic_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentPromotionError(
            f"Traffic for experiment {experiment_id} changed concurrently; retry the request"
        )


def plan_traffic(variants: List[Variant], winner_variant_id: str, strategy: str) -> Dict[str, float]:
    """Target traffic per variant id for promoting ``winner_variant_id``."""
    if strategy not in STRATEGIES:
        raise InvalidRequestError(f"Unsupported promotion strategy: {strategy}")
    if winner_variant_id not in {v.id for v in variants}:
        raise InvalidRequestError(f"Variant {winner_variant_id} does not belong to this experiment")

    others = [v for v in variants if v.id != winner_variant_id]

    if strategy == STRATEGY_GRADUAL:
        if not others:
            raise InvalidRequestError("Gradual promotion needs at least one other variant")
        share = (TRAFFIC_TOTAL - GRADUAL_WINNER_TRAFFIC) / len(others)
        plan = {v.id: share for v in others}
        plan[winner_variant_id] = GRADUAL_WINNER_TRAFFIC
        return plan

    plan = {v.id: 0.0 for v in others}
    plan[winner_variant_id] = IMMEDIATE_WINNER_TRAFFIC
    return plan


async def apply_promotion(
    db: AsyncSession,
    experiment_id: str,
    winner_variant_id: str,
    strategy: str,
    expected_version: int,
) -> PromotionResult:
    """
    Shift traffic to the winner inside the caller's transaction.

    Only variants of ``experiment_id`` are touched. Nothing is committed here;
    the caller commits together with the audit record.
    """
    try:
        variants = await load_variants(db, experiment_id)
        plan = plan_traffic(variants, winner_variant_id, strategy)
        await claim_traffic_version(db, experiment_id, expected_version)

        for variant in variants:
            variant.traffic_percentage = plan[variant.id]
        await db.flush()
    except SQLAlchemyError as e:
        logger.error(
            "promotion_apply_failed",
            experiment_id=experiment_id,
            winner_variant_id=winner_variant_id,
            error=str(e),
        )
        raise PromotionStoreError(f"Failed to apply promotion: {e}") from e

    winner_traffic = plan[winner_variant_id]
    label = "Gradual" if strategy == STRATEGY_GRADUAL else "Immediate"

    logger.info(
        "promotion_applied",
        experiment_id=experiment_id,
        winner_variant_id=winner_variant_id,
        strategy=strategy,
        traffic_percentage=winner_traffic,
    )

    return PromotionResult(
        success=True,
        experiment_id=experiment_id,
        winner_variant_id=winner_variant_id,
        strategy=strategy,
        traffic_percentage=winner_traffic,
        message=f"{label} promotion applied ({winner_traffic:g}% traffic)",
        applied_at=datetime.now(timezone.utc),
    )


async def restore_traffic(
    db: AsyncSession,
    experiment_id: str,
    distribution: Dict[str, float],
    expected_version: int,
) -> None:
    """Apply an explicit ``{variant_id: percentage}`` split and un-archive its variants."""
    try:
        variants = await load_variants(db, experiment_id)
        unknown = set(distribution) - {v.id for v in variants}
        if unknown:
            raise InvalidRequestError(f"Unknown variants for this experiment: {sorted(unknown)}")

        await claim_traffic_version(db, experiment_id, expected_version)

        for variant in variants:
            variant.traffic_percentage = distribution.get(variant.id, 0.0)
            if variant.id in distribution and variant.is_archived:
                variant.is_archived = False
                variant.archived_at = None
        await db.flush()
    except SQLAlchemyError as e:
        logger.error("traffic_restore_failed", experiment_id=experiment_id, error=str(e))
        raise PromotionStoreError(f"Failed to restore traffic: {e}") from e


async def archive_losing_variants(
    db: AsyncSession, experiment_id: str, winner_variant_id: str
) -> bool:
    """
    Flag every non-winning variant as archived.

    Best effort: a failure is logged and reported as ``False`` so the
    promotion that already committed is unaffected.
    """
    try:
        await db.execute(
            update(Variant)
            .where(
                Variant.experiment_id == experiment_id,
                Variant.id != winner_variant_id,
                Variant.is_archived.is_(False),
            )
            .values(is_archived=True, archived_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.warning(
            "archive_losing_variants_failed",
            experiment_id=experiment_id,
            winner_variant_id=winner_variant_id,
            error=str(e),
        )
        return False

    logger.info(
        "losing_variants_archived",
        experiment_id=experiment_id,
        winner_variant_id=winner_variant_id,
    )
    return True

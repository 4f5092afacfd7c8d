import math
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import func

from app.core.errors import InvalidRequestError, PromotionStoreError
from app.models.experiment import PromotionAuditLog
from app.services.promotion.policy import PROMOTION_TYPE_AUTO, PROMOTION_TYPE_MANUAL
from app.services.promotion.winner import SafetyChecks

logger = structlog.get_logger(__name__)


@dataclass
class PromotionMetadata:
    confidence: float
    improvement: float
    sample_size: int
    promotion_type: str
    strategy: str
    safety_checks: SafetyChecks
    promoted_by: Optional[str] = None
    previous_traffic: Optional[Dict[str, float]] = None
    traffic_version: int = 0
    # Resolved thresholds and rules in force, and the caller-supplied overrides
    config: Optional[Dict[str, Any]] = None
    custom_rules: Optional[Dict[str, Any]] = None


def finite_or_none(value: Optional[float]) -> Optional[float]:
    if value is None or not math.isfinite(value):
        return None
    return value


async def record_promotion(
    db: AsyncSession,
    experiment_id: str,
    experiment_name: str,
    winner_variant_id: str,
    winner_variant_name: str,
    control_variant_id: str,
    control_variant_name: str,
    metadata: PromotionMetadata,
) -> PromotionAuditLog:
    """
    Insert the audit row for a promotion inside the caller's transaction.

    ``promoted_at`` comes from the database clock.
    """
    if metadata.promotion_type not in (PROMOTION_TYPE_AUTO, PROMOTION_TYPE_MANUAL):
        raise InvalidRequestError(f"Invalid promotion type: {metadata.promotion_type}")

    entry = PromotionAuditLog(
        id=str(uuid.uuid4()),
        experiment_id=experiment_id,
        experiment_name=experiment_name,
        promoted_variant_id=winner_variant_id,
        promoted_variant_name=winner_variant_name,
        control_variant_id=control_variant_id,
        control_variant_name=control_variant_name,
        confidence=metadata.confidence,
        improvement=finite_or_none(metadata.improvement),
        sample_size=metadata.sample_size,
        promotion_type=metadata.promotion_type,
        promoted_by=metadata.promoted_by,
        strategy=metadata.strategy,
        safety_checks=metadata.safety_checks.to_dict(),
        previous_traffic=metadata.previous_traffic,
        traffic_version=metadata.traffic_version,
        config=metadata.config,
        custom_rules=metadata.custom_rules,
    )

    try:
        db.add(entry)
        await db.flush()
        await db.refresh(entry)
    except SQLAlchemyError as e:
        logger.error(
            "audit_log_write_failed",
            experiment_id=experiment_id,
            winner_variant_id=winner_variant_id,
            error=str(e),
        )
        raise PromotionStoreError(f"Failed to create audit log: {e}") from e

    logger.info(
        "audit_log_created",
        audit_log_id=entry.id,
        experiment_name=experiment_name,
        promotion_type=metadata.promotion_type,
    )
    return entry


async def stamp_rollback(
    db: AsyncSession,
    entry: PromotionAuditLog,
    reason: str,
    rolled_back_by: Optional[str] = None,
) -> PromotionAuditLog:
    if not reason or not reason.strip():
        raise InvalidRequestError("Rollback reason is required")
    if entry.rollback_at is not None:
        raise InvalidRequestError(f"Promotion {entry.id} was already rolled back")

    entry.rollback_at = func.now()
    entry.rollback_reason = reason
    entry.rolled_back_by = rolled_back_by

    try:
        await db.flush()
        await db.refresh(entry)
    except SQLAlchemyError as e:
        logger.error("audit_log_rollback_stamp_failed", audit_log_id=entry.id, error=str(e))
        raise PromotionStoreError(f"Failed to stamp rollback on audit log: {e}") from e

    return entry


async def get_promotion_history(db: AsyncSession, experiment_id: str) -> List[PromotionAuditLog]:
    result = await db.execute(
        select(PromotionAuditLog)
        .where(PromotionAuditLog.experiment_id == experiment_id)
        .order_by(PromotionAuditLog.traffic_version.desc(), PromotionAuditLog.promoted_at.desc())
    )
    return list(result.scalars().all())


async def get_latest_active_promotion(
    db: AsyncSession, experiment_id: str
) -> Optional[PromotionAuditLog]:
    result = await db.execute(
        select(PromotionAuditLog)
        .where(
            PromotionAuditLog.experiment_id == experiment_id,
            PromotionAuditLog.rollback_at.is_(None),
        )
        .order_by(PromotionAuditLog.traffic_version.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()

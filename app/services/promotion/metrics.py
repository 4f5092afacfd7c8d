from typing import List, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.experiment import Variant
from app.services.promotion.stats import VariantMetrics


class MetricsProvider(Protocol):
    async def get_variant_metrics(self, experiment_id: str) -> List[VariantMetrics]:
        ...


class SqlMetricsProvider:
    """Reads the per-variant metric snapshot kept on the variants table, archived arms included."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_variant_metrics(self, experiment_id: str) -> List[VariantMetrics]:
        result = await self.db.execute(
            select(Variant)
            .where(Variant.experiment_id == experiment_id)
            .order_by(Variant.variant_name)
        )
        return [to_variant_metrics(v) for v in result.scalars().all()]


def to_variant_metrics(variant: Variant) -> VariantMetrics:
    return VariantMetrics(
        variant_id=variant.id,
        variant_name=variant.variant_name,
        sample_size=variant.sample_size or 0,
        success_rate=variant.success_rate or 0.0,
        error_rate=variant.error_rate or 0.0,
        traffic_percentage=variant.traffic_percentage,
        avg_latency_ms=variant.avg_latency_ms,
        p95_latency_ms=variant.p95_latency_ms,
    )

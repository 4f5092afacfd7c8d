from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.database import Base


class Experiment(Base):
    """
    An A/B experiment over AI prompt or model configuration.

    ``traffic_version`` is bumped on every traffic mutation so that two
    promotions racing on the same experiment cannot both commit.
    """

    __tablename__ = "experiments"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text)

    is_active = Column(Boolean, nullable=False, default=True)
    start_date = Column(DateTime(timezone=True))
    end_date = Column(DateTime(timezone=True))

    traffic_version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    variants = relationship(
        "Variant",
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="Variant.variant_name",
    )


class Variant(Base):
    """
    One arm of an experiment.

    The metric columns are a snapshot written by the aggregation layer; the
    promotion engine only reads them.
    """

    __tablename__ = "variants"
    __table_args__ = (UniqueConstraint("experiment_id", "variant_name"),)

    id = Column(String, primary_key=True)
    experiment_id = Column(String, ForeignKey("experiments.id"), nullable=False, index=True)

    variant_name = Column(String, nullable=False)  # e.g., "control", "variant_a"
    traffic_percentage = Column(Float, nullable=False, default=0)

    is_archived = Column(Boolean, nullable=False, default=False)
    archived_at = Column(DateTime(timezone=True))

    # Metric snapshot
    sample_size = Column(Integer, nullable=False, default=0)
    success_rate = Column(Float, nullable=False, default=0)
    error_rate = Column(Float, nullable=False, default=0)
    avg_latency_ms = Column(Float)
    p95_latency_ms = Column(Float)
    metrics_updated_at = Column(DateTime(timezone=True))

    experiment = relationship("Experiment", back_populates="variants")


class PromotionAuditLog(Base):
    """
    One row per promotion. Rows are never deleted; a rollback only stamps
    ``rollback_at``/``rollback_reason`` on the row it reverses.
    """

    __tablename__ = "promotion_audit_log"

    id = Column(String, primary_key=True)
    experiment_id = Column(String, ForeignKey("experiments.id"), nullable=False, index=True)
    experiment_name = Column(String, nullable=False)

    promoted_variant_id = Column(String, nullable=False)
    promoted_variant_name = Column(String, nullable=False)
    control_variant_id = Column(String, nullable=False)
    control_variant_name = Column(String, nullable=False)

    # Statistical justification
    confidence = Column(Float, nullable=False)
    improvement = Column(Float)  # NULL when not a finite number (control rate of 0)
    sample_size = Column(Integer, nullable=False)

    promotion_type = Column(String, nullable=False)  # "auto" | "manual"
    promoted_by = Column(String)
    strategy = Column(String, nullable=False)  # "immediate" | "gradual"
    safety_checks = Column(JSON, nullable=False)
    previous_traffic = Column(JSON)  # {variant_id: percentage} before the promotion
    traffic_version = Column(Integer, nullable=False)  # experiment version this promotion produced
    config = Column(JSON)  # resolved thresholds and rules the decision ran under
    custom_rules = Column(JSON)  # caller-supplied overrides, None when defaults were used

    promoted_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    rollback_at = Column(DateTime(timezone=True))
    rollback_reason = Column(Text)
    rolled_back_by = Column(String)

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.services.promotion.policy import SUPPORTED_CONFIDENCE_LEVELS


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# Experiment registry


class VariantCreate(CamelModel):
    variant_name: str = Field(..., min_length=1, max_length=100)
    traffic_percentage: float = Field(0.0, ge=0, le=100)


class CreateExperimentRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    is_active: bool = True
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    variants: List[VariantCreate] = Field(..., min_length=2, description="Variants (min 2)")

    @field_validator("variants")
    @classmethod
    def check_variants(cls, v: List[VariantCreate]) -> List[VariantCreate]:
        names = [variant.variant_name for variant in v]
        if len(names) != len(set(names)):
            raise ValueError("Variant names must be unique within an experiment")
        total = sum(variant.traffic_percentage for variant in v)
        if total > 100.01:
            raise ValueError(f"Traffic percentages must not exceed 100, got {total:.2f}")
        return v


class UpdateExperimentRequest(CamelModel):
    description: Optional[str] = None
    is_active: Optional[bool] = None
    end_date: Optional[datetime] = None


class VariantMetricsSnapshot(CamelModel):
    variant_name: str
    sample_size: int = Field(..., ge=0)
    success_rate: float = Field(..., ge=0, le=1)
    error_rate: float = Field(0.0, ge=0, le=1)
    avg_latency_ms: Optional[float] = Field(None, ge=0)
    p95_latency_ms: Optional[float] = Field(None, ge=0)


class SubmitMetricsRequest(CamelModel):
    variants: List[VariantMetricsSnapshot] = Field(..., min_length=1)


class VariantResponse(CamelModel):
    id: str
    variant_name: str
    traffic_percentage: float
    is_archived: bool
    sample_size: int
    success_rate: float
    error_rate: float
    avg_latency_ms: Optional[float] = None
    p95_latency_ms: Optional[float] = None
    metrics_updated_at: Optional[datetime] = None


class ExperimentResponse(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    is_active: bool
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    traffic_version: int
    created_at: Optional[datetime] = None
    variants: List[VariantResponse] = []


class ExperimentListResponse(CamelModel):
    experiments: List[ExperimentResponse]
    total: int


# Promotion


class PromotionConfigOverrides(CamelModel):
    min_confidence_level: Optional[float] = None
    min_sample_size: Optional[int] = Field(None, ge=0)
    min_improvement_percent: Optional[float] = None
    max_error_rate: Optional[float] = Field(None, ge=0, le=1)
    strategy: Optional[Literal["immediate", "gradual"]] = None
    archive_losing_variants: Optional[bool] = None
    max_p95_latency_ms: Optional[float] = Field(None, ge=0)
    min_test_duration_hours: Optional[float] = Field(None, ge=0)
    max_test_duration_hours: Optional[float] = Field(None, ge=0)
    require_manual_approval: Optional[bool] = None

    @field_validator("min_confidence_level")
    @classmethod
    def check_confidence_level(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v not in SUPPORTED_CONFIDENCE_LEVELS:
            raise ValueError(f"minConfidenceLevel must be one of {list(SUPPORTED_CONFIDENCE_LEVELS)}")
        return v


class PromoteRequest(CamelModel):
    force: bool = False
    custom_rules: Optional[PromotionConfigOverrides] = None
    promotion_type: Literal["auto", "manual"] = "manual"


class RollbackRequest(CamelModel):
    # Optional here so a missing reason is answered with 400, not a schema 422
    reason: Optional[str] = None
    restore_traffic: Optional[Dict[str, float]] = None


class VariantTraffic(CamelModel):
    id: str
    variant_name: str
    traffic_percentage: float
    is_archived: bool


class SignificanceResponse(CamelModel):
    has_significance: bool
    z_score: float
    p_value: float
    confidence: float


class RuleCheckResponse(CamelModel):
    name: str
    passed: bool
    severity: str
    message: str
    value: Optional[float] = None
    threshold: Optional[float] = None


class EligibilityResponse(CamelModel):
    experiment_id: str
    experiment_name: str
    is_eligible: bool
    winner_variant: Optional[str] = None
    winner_variant_id: Optional[str] = None
    candidate_variant: Optional[str] = None
    control_variant: Optional[str] = None
    control_variant_id: Optional[str] = None
    confidence: float
    # None when the lift is undefined or infinite (control success rate of 0)
    improvement: Optional[float] = None
    significance: Optional[SignificanceResponse] = None
    safety_checks: Optional[Dict[str, bool]] = None
    reasons: List[str]
    config: Dict[str, Any]
    # Operational rules layered over the decision; gate automatic promotions only
    recommendation: str
    recommendation_reason: str
    rule_checks: List[RuleCheckResponse] = []
    rules: Dict[str, Any]


class AuditLogResponse(CamelModel):
    id: str
    experiment_id: str
    experiment_name: str
    promoted_variant_id: str
    promoted_variant_name: str
    control_variant_id: str
    control_variant_name: str
    confidence: float
    improvement: Optional[float] = None
    sample_size: int
    promotion_type: str
    promoted_by: Optional[str] = None
    strategy: str
    safety_checks: Dict[str, bool]
    previous_traffic: Optional[Dict[str, float]] = None
    config: Optional[Dict[str, Any]] = None
    custom_rules: Optional[Dict[str, Any]] = None
    promoted_at: datetime
    rollback_at: Optional[datetime] = None
    rollback_reason: Optional[str] = None
    rolled_back_by: Optional[str] = None


class ExperimentSummary(CamelModel):
    id: str
    name: str
    is_active: bool
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class EligibilityCheckResponse(CamelModel):
    success: bool = True
    experiment: ExperimentSummary
    eligibility: EligibilityResponse
    current_traffic: List[VariantTraffic]
    promotion_history: List[AuditLogResponse]


class PromotionResultResponse(CamelModel):
    success: bool
    experiment_id: str
    winner_variant_id: str
    strategy: str
    traffic_percentage: float
    message: str
    applied_at: datetime


class PromoteResponse(CamelModel):
    success: bool = True
    message: str
    winning_variant: str
    action: str
    audit_log_id: Optional[str] = None
    promotion: Optional[PromotionResultResponse] = None
    archived_losing_variants: bool = False
    updated_traffic: List[VariantTraffic]
    eligibility: EligibilityResponse


class RollbackResponse(CamelModel):
    success: bool = True
    message: str
    rolled_back_to: Optional[str] = None
    reason: str
    audit_log_id: str
    updated_traffic: List[VariantTraffic]


class SweepError(CamelModel):
    experiment_name: str
    error: str


class SweepResponse(CamelModel):
    checked: int
    eligible: List[str]
    promoted: List[str]
    needs_review: List[str] = []
    errors: List[SweepError]

import asyncio
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.core.errors import (
    ConcurrentPromotionError,
    ExperimentInactiveError,
    ExperimentNotFoundError,
    InvalidRequestError,
    NoActivePromotionError,
    PromotionError,
    PromotionStoreError,
)
from app.models.experiment import Experiment, PromotionAuditLog, Variant
from app.models.schemas import (
    AuditLogResponse,
    EligibilityResponse,
    PromotionResultResponse,
    RuleCheckResponse,
    SignificanceResponse,
    VariantTraffic,
)
from app.services.promotion.applier import (
    PromotionResult,
    apply_promotion,
    archive_losing_variants,
    current_traffic,
    load_variants,
    plan_traffic,
    restore_traffic,
)
from app.services.promotion.audit import (
    PromotionMetadata,
    finite_or_none,
    get_latest_active_promotion,
    get_promotion_history,
    record_promotion,
    stamp_rollback,
)
from app.services.promotion.metrics import MetricsProvider, SqlMetricsProvider
from app.services.promotion.policy import (
    PROMOTION_TYPE_AUTO,
    PROMOTION_TYPE_MANUAL,
    STRATEGY_IMMEDIATE,
    TRAFFIC_TOLERANCE,
    TRAFFIC_TOTAL,
)
from app.services.promotion.rules import (
    RECOMMEND_MANUAL_REVIEW,
    PromotionRules,
    Recommendation,
    evaluate_rules,
    hours_running,
    rules_for_environment,
)
from app.services.promotion.winner import ClearWinnerResult, PromotionConfig, find_clear_winner
from observability.alerts import AlertManager, get_alert_manager

logger = structlog.get_logger(__name__)


def default_promotion_config(settings: Optional[Settings] = None) -> PromotionConfig:
    settings = settings or get_settings()
    return PromotionConfig(
        min_confidence_level=settings.PROMOTION_MIN_CONFIDENCE_LEVEL,
        min_sample_size=settings.PROMOTION_MIN_SAMPLE_SIZE,
        min_improvement_percent=settings.PROMOTION_MIN_IMPROVEMENT_PERCENT,
        max_error_rate=settings.PROMOTION_MAX_ERROR_RATE,
        strategy=settings.PROMOTION_STRATEGY,
        archive_losing_variants=settings.PROMOTION_ARCHIVE_LOSERS,
    )


def default_promotion_rules(settings: Optional[Settings] = None) -> PromotionRules:
    settings = settings or get_settings()
    return rules_for_environment(settings.ENVIRONMENT, settings.PROMOTION_RULES_PRESET)


RULE_FIELDS = frozenset(f.name for f in dataclasses.fields(PromotionRules))


@dataclass
class Eligibility:
    experiment_id: str
    experiment_name: str
    config: PromotionConfig
    decision: ClearWinnerResult
    rules: PromotionRules
    recommendation: Recommendation

    @property
    def is_eligible(self) -> bool:
        return self.decision.has_winner


@dataclass
class PromotionOutcome:
    success: bool
    action: str  # "promoted" | "already_promoted" | "ineligible"
    message: str
    eligibility: Eligibility
    winning_variant: Optional[str] = None
    audit_log_id: Optional[str] = None
    promotion: Optional[PromotionResult] = None
    archived_losing_variants: bool = False
    updated_traffic: List[Variant] = field(default_factory=list)


@dataclass
class RollbackOutcome:
    message: str
    reason: str
    audit_log_id: str
    rolled_back_to: Optional[str]
    updated_traffic: List[Variant] = field(default_factory=list)


@dataclass
class SweepResult:
    checked: int = 0
    eligible: List[str] = field(default_factory=list)
    promoted: List[str] = field(default_factory=list)
    needs_review: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)


class PromotionService:
    """
    Eligibility check, promotion and rollback for one database session.

    Traffic mutation and the audit row always commit in one transaction, so a
    promotion is either fully recorded or not applied at all.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        metrics_provider: Optional[MetricsProvider] = None,
        alert_manager: Optional[AlertManager] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.metrics_provider = metrics_provider or SqlMetricsProvider(db)
        self.alerts = alert_manager or get_alert_manager()

    async def _bounded(self, awaitable, operation: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.settings.STORE_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            raise PromotionStoreError(
                f"{operation} timed out after {self.settings.STORE_TIMEOUT_SECONDS:g}s"
            ) from None
        except SQLAlchemyError as e:
            raise PromotionStoreError(f"{operation} failed: {e}") from e

    async def get_experiment(self, experiment_id: str) -> Experiment:
        result = await self._bounded(
            self.db.execute(
                select(Experiment)
                .where(Experiment.id == experiment_id)
                .execution_options(populate_existing=True)
            ),
            "Experiment lookup",
        )
        experiment = result.scalar_one_or_none()
        if experiment is None:
            raise ExperimentNotFoundError(experiment_id)
        return experiment

    def resolve_config(self, overrides: Optional[Mapping[str, Any]] = None) -> PromotionConfig:
        config_overrides = {k: v for k, v in (overrides or {}).items() if k not in RULE_FIELDS}
        try:
            return default_promotion_config(self.settings).merged(config_overrides)
        except (TypeError, ValueError) as e:
            raise InvalidRequestError(f"Invalid promotion rules: {e}") from e

    def resolve_rules(self, overrides: Optional[Mapping[str, Any]] = None) -> PromotionRules:
        try:
            return default_promotion_rules(self.settings).merged(overrides)
        except ValueError as e:
            raise InvalidRequestError(f"Invalid promotion rules: {e}") from e

    async def _evaluate(
        self,
        experiment: Experiment,
        config: PromotionConfig,
        rules: PromotionRules,
    ) -> Eligibility:
        metrics = await self._bounded(
            self.metrics_provider.get_variant_metrics(experiment.id), "Metrics fetch"
        )
        decision = find_clear_winner(metrics, config)
        recommendation = evaluate_rules(
            experiment.name,
            decision,
            rules,
            hours_running(experiment.start_date),
            self.settings.PROMOTION_EXCLUDED_EXPERIMENTS,
        )

        logger.info(
            "eligibility_evaluated",
            experiment_id=experiment.id,
            experiment_name=experiment.name,
            has_winner=decision.has_winner,
            confidence=decision.confidence,
            reasons=decision.reasons,
            recommendation=recommendation.recommendation,
        )
        return Eligibility(
            experiment_id=experiment.id,
            experiment_name=experiment.name,
            config=config,
            decision=decision,
            rules=rules,
            recommendation=recommendation,
        )

    async def check_eligibility(
        self,
        experiment_id: str,
        overrides: Optional[Mapping[str, Any]] = None,
        require_active: bool = True,
    ) -> Eligibility:
        """Run the clear-winner policy and promotion rules on current metrics. Never mutates."""
        experiment = await self.get_experiment(experiment_id)
        if require_active and not experiment.is_active:
            raise ExperimentInactiveError(experiment.id, experiment.name)
        return await self._evaluate(
            experiment, self.resolve_config(overrides), self.resolve_rules(overrides)
        )

    async def get_current_traffic(self, experiment_id: str) -> List[Variant]:
        return await self._bounded(load_variants(self.db, experiment_id), "Traffic lookup")

    async def get_promotion_history(self, experiment_id: str) -> List[PromotionAuditLog]:
        return await self._bounded(
            get_promotion_history(self.db, experiment_id), "Promotion history lookup"
        )

    async def promote(
        self,
        experiment_id: str,
        promoted_by: Optional[str] = None,
        promotion_type: str = PROMOTION_TYPE_MANUAL,
        force: bool = False,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> PromotionOutcome:
        if promotion_type not in (PROMOTION_TYPE_AUTO, PROMOTION_TYPE_MANUAL):
            raise InvalidRequestError(f"Invalid promotion type: {promotion_type}")

        experiment = await self.get_experiment(experiment_id)
        if not experiment.is_active:
            raise ExperimentInactiveError(experiment.id, experiment.name)
        # Captured up front: a failed commit expires every loaded row
        experiment_name = experiment.name

        config = self.resolve_config(overrides)
        rules = self.resolve_rules(overrides)
        eligibility = await self._evaluate(experiment, config, rules)
        decision = eligibility.decision
        recommendation = eligibility.recommendation

        winner = decision.winner_variant
        if winner is None and force:
            # Forced: guardrails are bypassed, the best candidate still has to exist
            winner = decision.candidate_variant

        if winner is None or decision.control_variant is None:
            return PromotionOutcome(
                success=False,
                action="ineligible",
                message="Experiment not eligible for promotion",
                eligibility=eligibility,
            )

        # Automatic promotions also need the operational rules to say "promote"
        if promotion_type == PROMOTION_TYPE_AUTO and not force and not recommendation.ready:
            logger.info(
                "auto_promotion_withheld",
                experiment_id=experiment_id,
                recommendation=recommendation.recommendation,
                reason=recommendation.reason,
            )
            return PromotionOutcome(
                success=False,
                action="ineligible",
                message=(
                    "Manual review required"
                    if recommendation.recommendation == RECOMMEND_MANUAL_REVIEW
                    else "Experiment not ready for automatic promotion"
                ),
                eligibility=eligibility,
            )

        control = decision.control_variant
        variants = await self.get_current_traffic(experiment.id)
        winner_row = next((v for v in variants if v.id == winner.variant_id), None)
        if winner_row is None:
            raise InvalidRequestError(f"Winning variant not found: {winner.variant_name}")

        target = plan_traffic(variants, winner_row.id, config.strategy)
        if all(abs(v.traffic_percentage - target[v.id]) <= TRAFFIC_TOLERANCE for v in variants):
            logger.info(
                "promotion_already_applied",
                experiment_id=experiment.id,
                winner_variant=winner.variant_name,
            )
            return PromotionOutcome(
                success=True,
                action="already_promoted",
                message=(
                    f"Variant '{winner.variant_name}' already holds "
                    f"{target[winner_row.id]:g}% traffic"
                ),
                eligibility=eligibility,
                winning_variant=winner.variant_name,
                updated_traffic=variants,
            )

        expected_version = experiment.traffic_version
        metadata = PromotionMetadata(
            confidence=decision.confidence,
            improvement=decision.improvement,
            sample_size=winner.sample_size,
            promotion_type=promotion_type,
            strategy=config.strategy,
            safety_checks=decision.safety_checks,
            promoted_by=promoted_by,
            previous_traffic=current_traffic(variants),
            traffic_version=expected_version + 1,
            config={**config.to_dict(), **rules.to_dict()},
            custom_rules={k: v for k, v in (overrides or {}).items() if v is not None} or None,
        )

        try:
            result, audit_entry = await self._bounded(
                self._apply_and_record(experiment, winner_row.id, control, winner, metadata),
                "Promotion",
            )
        except PromotionError as e:
            await self.db.rollback()
            if isinstance(e, ConcurrentPromotionError):
                self.alerts.emit_concurrent_promotion(experiment_name, experiment_id=experiment_id)
            else:
                self.alerts.emit_promotion_failed(
                    experiment_name, e.message, experiment_id=experiment_id
                )
            raise

        audit_log_id = audit_entry.id

        archived = False
        if config.strategy == STRATEGY_IMMEDIATE and config.archive_losing_variants:
            archived = await archive_losing_variants(self.db, experiment_id, winner.variant_id)
            if not archived:
                self.alerts.emit_archive_failed(experiment_name, winner.variant_name)

        self.alerts.emit_promotion_applied(
            experiment_name=experiment_name,
            winner_variant=winner.variant_name,
            strategy=config.strategy,
            audit_log_id=audit_log_id,
            promotion_type=promotion_type,
            forced=force and not decision.has_winner,
        )

        return PromotionOutcome(
            success=True,
            action="promoted",
            message=(
                f"Successfully promoted '{winner.variant_name}' to "
                f"{result.traffic_percentage:g}% traffic"
            ),
            eligibility=eligibility,
            winning_variant=winner.variant_name,
            audit_log_id=audit_log_id,
            promotion=result,
            archived_losing_variants=archived,
            updated_traffic=await self.get_current_traffic(experiment_id),
        )

    async def _apply_and_record(self, experiment, winner_variant_id, control, winner, metadata):
        result = await apply_promotion(
            self.db,
            experiment.id,
            winner_variant_id,
            metadata.strategy,
            expected_version=metadata.traffic_version - 1,
        )
        audit_entry = await record_promotion(
            self.db,
            experiment_id=experiment.id,
            experiment_name=experiment.name,
            winner_variant_id=winner_variant_id,
            winner_variant_name=winner.variant_name,
            control_variant_id=control.variant_id,
            control_variant_name=control.variant_name,
            metadata=metadata,
        )
        await self.db.commit()
        return result, audit_entry

    def _rollback_distribution(
        self,
        variants: List[Variant],
        promotion: PromotionAuditLog,
        restore: Optional[Mapping[str, float]],
    ) -> Dict[str, float]:
        by_name = {v.variant_name: v for v in variants}
        known_ids = {v.id for v in variants}

        if restore:
            unknown = sorted(set(restore) - set(by_name))
            if unknown:
                raise InvalidRequestError(f"Unknown variants in restoreTraffic: {unknown}")
            distribution = {by_name[name].id: float(pct) for name, pct in restore.items()}
        elif promotion.previous_traffic:
            distribution = {
                variant_id: float(pct)
                for variant_id, pct in promotion.previous_traffic.items()
                if variant_id in known_ids
            }
        else:
            distribution = {}

        if not distribution:
            # No snapshot to restore: split evenly
            share = TRAFFIC_TOTAL / len(variants)
            distribution = {v.id: share for v in variants}

        if any(pct < 0 for pct in distribution.values()):
            raise InvalidRequestError("Traffic percentages must not be negative")

        total = sum(distribution.values())
        if abs(total - TRAFFIC_TOTAL) > TRAFFIC_TOLERANCE:
            raise InvalidRequestError(f"Traffic distribution must sum to 100%, got {total:.2f}%")
        return distribution

    async def rollback(
        self,
        experiment_id: str,
        reason: Optional[str],
        rolled_back_by: Optional[str] = None,
        restore: Optional[Mapping[str, float]] = None,
    ) -> RollbackOutcome:
        """Revert the most recent live promotion and stamp its audit row."""
        if not reason or not reason.strip():
            raise InvalidRequestError("Rollback reason is required")

        experiment = await self.get_experiment(experiment_id)
        experiment_name = experiment.name
        promotion = await self._bounded(
            get_latest_active_promotion(self.db, experiment.id), "Promotion lookup"
        )
        if promotion is None:
            raise NoActivePromotionError(f"No active promotion found for {experiment.name}")

        variants = await self.get_current_traffic(experiment.id)
        if not variants:
            raise InvalidRequestError(f"Experiment {experiment.name} has no variants")
        distribution = self._rollback_distribution(variants, promotion, restore)

        try:
            await self._bounded(
                self._restore_and_stamp(
                    experiment, distribution, promotion, reason, rolled_back_by
                ),
                "Rollback",
            )
        except PromotionError as e:
            await self.db.rollback()
            self.alerts.emit_promotion_failed(
                experiment_name, e.message, experiment_id=experiment_id, operation="rollback"
            )
            raise

        names = {v.id: v.variant_name for v in variants}
        rolled_back_to = names[max(distribution, key=distribution.get)]

        self.alerts.emit_rollback(
            experiment.name,
            reason=reason,
            audit_log_id=promotion.id,
            rolled_back_to=rolled_back_to,
            rolled_back_by=rolled_back_by,
        )

        return RollbackOutcome(
            message=f"Successfully rolled back promotion: {reason}",
            reason=reason,
            audit_log_id=promotion.id,
            rolled_back_to=rolled_back_to,
            updated_traffic=await self.get_current_traffic(experiment.id),
        )

    async def _restore_and_stamp(self, experiment, distribution, promotion, reason, rolled_back_by):
        await restore_traffic(
            self.db, experiment.id, distribution, expected_version=experiment.traffic_version
        )
        await stamp_rollback(self.db, promotion, reason, rolled_back_by)
        await self.db.commit()

    async def check_all_experiments(
        self, overrides: Optional[Mapping[str, Any]] = None
    ) -> SweepResult:
        """Evaluate every running experiment and auto-promote the eligible ones."""
        now = datetime.now(timezone.utc)
        result = await self._bounded(
            self.db.execute(
                select(Experiment.id, Experiment.name)
                .where(
                    Experiment.is_active.is_(True),
                    or_(Experiment.end_date.is_(None), Experiment.end_date > now),
                )
                .order_by(Experiment.start_date, Experiment.name)
            ),
            "Active experiment lookup",
        )
        experiments = result.all()

        sweep = SweepResult(checked=len(experiments))
        for experiment_id, experiment_name in experiments:
            try:
                eligibility = await self.check_eligibility(experiment_id, overrides)
                if not eligibility.is_eligible:
                    continue
                sweep.eligible.append(experiment_name)

                recommendation = eligibility.recommendation
                if recommendation.recommendation == RECOMMEND_MANUAL_REVIEW:
                    sweep.needs_review.append(experiment_name)
                    self.alerts.emit_manual_review_required(
                        experiment_name, recommendation.reason, experiment_id=experiment_id
                    )
                    continue
                if not recommendation.ready:
                    logger.info(
                        "auto_promotion_deferred",
                        experiment_name=experiment_name,
                        recommendation=recommendation.recommendation,
                        reason=recommendation.reason,
                    )
                    continue

                outcome = await self.promote(
                    experiment_id, promotion_type=PROMOTION_TYPE_AUTO, overrides=overrides
                )
                if outcome.action == "promoted":
                    sweep.promoted.append(experiment_name)
            except PromotionError as e:
                logger.error(
                    "auto_promotion_failed", experiment_name=experiment_name, error=e.message
                )
                self.alerts.emit_sweep_failure(experiment_name, e.message)
                sweep.errors.append({"experiment_name": experiment_name, "error": e.message})

        logger.info(
            "auto_promotion_sweep_completed",
            checked=sweep.checked,
            eligible=len(sweep.eligible),
            promoted=len(sweep.promoted),
            needs_review=len(sweep.needs_review),
            errors=len(sweep.errors),
        )
        return sweep

    # Response builders

    def to_eligibility_response(self, eligibility: Eligibility) -> EligibilityResponse:
        decision = eligibility.decision
        significance = decision.significance
        return EligibilityResponse(
            experiment_id=eligibility.experiment_id,
            experiment_name=eligibility.experiment_name,
            is_eligible=eligibility.is_eligible,
            winner_variant=decision.winner_variant.variant_name if decision.winner_variant else None,
            winner_variant_id=decision.winner_variant.variant_id if decision.winner_variant else None,
            candidate_variant=(
                decision.candidate_variant.variant_name if decision.candidate_variant else None
            ),
            control_variant=(
                decision.control_variant.variant_name if decision.control_variant else None
            ),
            control_variant_id=(
                decision.control_variant.variant_id if decision.control_variant else None
            ),
            confidence=decision.confidence,
            improvement=finite_or_none(decision.improvement),
            significance=(
                SignificanceResponse(
                    has_significance=significance.has_significance,
                    z_score=significance.z_score,
                    p_value=significance.p_value,
                    confidence=significance.confidence,
                )
                if significance
                else None
            ),
            safety_checks=decision.safety_checks.to_dict() if decision.safety_checks else None,
            reasons=decision.reasons,
            config=eligibility.config.to_dict(),
            recommendation=eligibility.recommendation.recommendation,
            recommendation_reason=eligibility.recommendation.reason,
            rule_checks=[
                RuleCheckResponse(**check.to_dict())
                for check in eligibility.recommendation.checks
            ],
            rules=eligibility.rules.to_dict(),
        )

    @staticmethod
    def to_traffic(variants: List[Variant]) -> List[VariantTraffic]:
        return [VariantTraffic.model_validate(v) for v in variants]

    @staticmethod
    def to_audit_responses(entries: List[PromotionAuditLog]) -> List[AuditLogResponse]:
        return [AuditLogResponse.model_validate(e) for e in entries]

    @staticmethod
    def to_promotion_result(result: Optional[PromotionResult]) -> Optional[PromotionResultResponse]:
        if result is None:
            return None
        return PromotionResultResponse(
            success=result.success,
            experiment_id=result.experiment_id,
            winner_variant_id=result.winner_variant_id,
            strategy=result.strategy,
            traffic_percentage=result.traffic_percentage,
            message=result.message,
            applied_at=result.applied_at,
        )

from app.models.experiment import Experiment, PromotionAuditLog, Variant  # noqa: F401

"""
Domain errors raised by the promotion engine.

Expected outcomes such as "not enough data yet" or "guardrail failed" are
returned as structured results, never raised. These exceptions cover invalid
input and infrastructure failures only; each carries the HTTP status the API
layer answers with.
"""

from fastapi import Request
from fastapi.responses import JSONResponse


class PromotionError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ExperimentNotFoundError(PromotionError):
    status_code = 404

    def __init__(self, experiment_id: str):
        super().__init__(f"Experiment not found: {experiment_id}")
        self.experiment_id = experiment_id


class ExperimentInactiveError(PromotionError):
    status_code = 400

    def __init__(self, experiment_id: str, experiment_name: str):
        super().__init__(f"Experiment is not active: {experiment_name}")
        self.experiment_id = experiment_id
        self.experiment_name = experiment_name


class InvalidRequestError(PromotionError):
    status_code = 400


class NoActivePromotionError(PromotionError):
    status_code = 404


class ConcurrentPromotionError(PromotionError):
    status_code = 409


class PromotionStoreError(PromotionError):
    status_code = 503


async def promotion_error_handler(request: Request, exc: PromotionError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message},
    )

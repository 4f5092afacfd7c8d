from dataclasses import asdict
from typing import Optional

from prefect import flow, get_run_logger, task


@task(retries=2, retry_delay_seconds=30)
async def sweep_active_experiments(overrides: Optional[dict] = None) -> dict:
    from app.core.database import async_session_maker
    from app.services.promotion.service import PromotionService

    async with async_session_maker() as session:
        sweep = await PromotionService(session).check_all_experiments(overrides)

    return asdict(sweep)


@flow(name="auto_promotion_sweep", log_prints=True)
async def auto_promotion_sweep(overrides: Optional[dict] = None) -> dict:
    logger = get_run_logger()
    logger.info("Checking active experiments for auto-promotion")

    result = await sweep_active_experiments(overrides)

    logger.info(
        f"Checked {result['checked']} experiments: "
        f"{len(result['eligible'])} eligible, {len(result['promoted'])} promoted"
    )
    for name in result["promoted"]:
        logger.info(f"Promoted winner for {name}")
    for name in result["needs_review"]:
        logger.info(f"Winner for {name} awaits manual review")
    for error in result["errors"]:
        logger.warning(f"Failed to process {error['experiment_name']}: {error['error']}")

    return result


if __name__ == "__main__":
    auto_promotion_sweep.serve(
        name="auto-promotion-hourly",
        cron="0 * * * *",
        tags=["production", "experiments"],
    )

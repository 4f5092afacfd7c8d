import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone

_db_dir = tempfile.mkdtemp(prefix="promoter-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_db_dir}/promoter.db")
os.environ.setdefault("ADMIN_API_TOKEN", "test-admin-token")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from app.core.database import Base, get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.models.schemas import (  # noqa: E402
    CreateExperimentRequest,
    SubmitMetricsRequest,
    VariantCreate,
    VariantMetricsSnapshot,
)
from app.services.experiments.service import ExperimentService  # noqa: E402
from observability.alerts import AlertManager  # noqa: E402
from tests.factories import ELIGIBLE_METRICS  # noqa: E402

ADMIN_HEADERS = {"X-Admin-Token": "test-admin-token", "X-User-Id": "operator-1"}

# Old enough to clear the minimum test duration of either rules preset
RUNNING_FOR = timedelta(hours=48)

# Every test runs on its own event loop, so connections must not be pooled across tests
test_engine = create_async_engine(os.environ["DATABASE_URL"], poolclass=NullPool)
session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


async def reset_schema():
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


@pytest_asyncio.fixture
async def db():
    await reset_schema()
    async with session_factory() as session:
        yield session


@pytest.fixture
def alerts():
    return AlertManager(throttle_minutes=0)


@pytest.fixture
def seed_experiment(db):
    """Create an experiment with an even traffic split and a metric snapshot."""

    async def _seed(
        name="prompt_tone_test",
        metrics=None,
        is_active=True,
        traffic=None,
        end_date=None,
        start_date=None,
    ):
        metrics = ELIGIBLE_METRICS if metrics is None else metrics
        names = [m["variant_name"] for m in metrics]
        traffic = traffic or {n: 100 / len(names) for n in names}

        service = ExperimentService(db)
        experiment = await service.create_experiment(
            CreateExperimentRequest(
                name=name,
                is_active=is_active,
                start_date=start_date or datetime.now(timezone.utc) - RUNNING_FOR,
                end_date=end_date,
                variants=[
                    VariantCreate(variant_name=n, traffic_percentage=traffic[n]) for n in names
                ],
            )
        )
        return await service.submit_variant_metrics(
            experiment.id,
            SubmitMetricsRequest(variants=[VariantMetricsSnapshot(**m) for m in metrics]),
        )

    return _seed


@pytest.fixture
def client():
    asyncio.run(reset_schema())

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app, headers=ADMIN_HEADERS)
    app.dependency_overrides.clear()


@pytest.fixture
def create_experiment(client):
    """Register an experiment through the API and post its metric snapshot."""

    def _create(name="prompt_tone_test", metrics=None, is_active=True):
        metrics = ELIGIBLE_METRICS if metrics is None else metrics
        share = 100 / len(metrics)
        response = client.post(
            "/api/v1/experiments",
            json={
                "name": name,
                "isActive": is_active,
                "startDate": (datetime.now(timezone.utc) - RUNNING_FOR).isoformat(),
                "variants": [
                    {"variantName": m["variant_name"], "trafficPercentage": share} for m in metrics
                ],
            },
        )
        assert response.status_code == 201
        experiment_id = response.json()["id"]

        response = client.post(
            f"/api/v1/experiments/{experiment_id}/metrics",
            json={
                "variants": [
                    {
                        "variantName": m["variant_name"],
                        "sampleSize": m["sample_size"],
                        "successRate": m["success_rate"],
                        "errorRate": m["error_rate"],
                    }
                    for m in metrics
                ]
            },
        )
        assert response.status_code == 200
        return experiment_id

    return _create

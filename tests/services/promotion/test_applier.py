import pytest
from sqlalchemy.exc import OperationalError

from app.core.errors import ConcurrentPromotionError, InvalidRequestError
from app.services.promotion.applier import (
    apply_promotion,
    archive_losing_variants,
    load_variants,
    plan_traffic,
    restore_traffic,
)


def by_name(variants):
    return {v.variant_name: v for v in variants}


def metrics_for(*names):
    return [
        {"variant_name": n, "sample_size": 1000, "success_rate": 0.2, "error_rate": 0.01}
        for n in names
    ]


class TestApplyPromotion:
    async def test_immediate_gives_winner_all_traffic(self, db, seed_experiment):
        experiment = await seed_experiment()
        other = await seed_experiment(name="other_experiment")
        winner = by_name(experiment.variants)["variant_a"]

        result = await apply_promotion(db, experiment.id, winner.id, "immediate", expected_version=0)
        await db.commit()

        assert result.success is True
        assert result.traffic_percentage == 100
        assert result.message == "Immediate promotion applied (100% traffic)"

        traffic = {v.variant_name: v.traffic_percentage for v in await load_variants(db, experiment.id)}
        assert traffic == {"control": 0, "variant_a": 100, "variant_b": 0}

        untouched = await load_variants(db, other.id)
        assert all(v.traffic_percentage == pytest.approx(100 / 3) for v in untouched)

    @pytest.mark.parametrize("variant_count", [2, 3, 4, 5])
    async def test_gradual_splits_remainder_evenly(self, db, seed_experiment, variant_count):
        names = ["control"] + [f"variant_{i}" for i in range(1, variant_count)]
        experiment = await seed_experiment(metrics=metrics_for(*names))
        winner = by_name(experiment.variants)[names[-1]]

        result = await apply_promotion(db, experiment.id, winner.id, "gradual", expected_version=0)
        await db.commit()

        assert result.traffic_percentage == 75
        assert result.message == "Gradual promotion applied (75% traffic)"

        variants = await load_variants(db, experiment.id)
        share = 25 / (variant_count - 1)
        for v in variants:
            expected = 75 if v.id == winner.id else share
            assert v.traffic_percentage == pytest.approx(expected)
        assert sum(v.traffic_percentage for v in variants) == pytest.approx(100)

    async def test_bumps_traffic_version(self, db, seed_experiment):
        experiment = await seed_experiment()
        winner = by_name(experiment.variants)["variant_a"]

        await apply_promotion(db, experiment.id, winner.id, "immediate", expected_version=0)
        await db.commit()

        with pytest.raises(ConcurrentPromotionError):
            await apply_promotion(db, experiment.id, winner.id, "gradual", expected_version=0)

    async def test_rejects_variant_of_another_experiment(self, db, seed_experiment):
        experiment = await seed_experiment()
        other = await seed_experiment(name="other_experiment")
        foreign = by_name(other.variants)["variant_a"]

        with pytest.raises(InvalidRequestError):
            await apply_promotion(db, experiment.id, foreign.id, "immediate", expected_version=0)


class TestPlanTraffic:
    async def test_gradual_needs_another_variant(self, db, seed_experiment):
        experiment = await seed_experiment(
            metrics=metrics_for("control", "variant_a"), traffic={"control": 0, "variant_a": 100}
        )
        variants = [v for v in experiment.variants if v.variant_name == "variant_a"]

        with pytest.raises(InvalidRequestError, match="Gradual"):
            plan_traffic(variants, variants[0].id, "gradual")

    async def test_unknown_strategy(self, db, seed_experiment):
        experiment = await seed_experiment()

        with pytest.raises(InvalidRequestError, match="strategy"):
            plan_traffic(experiment.variants, experiment.variants[0].id, "canary")


class TestRestoreTraffic:
    async def test_restores_and_unarchives(self, db, seed_experiment):
        experiment = await seed_experiment()
        variants = by_name(experiment.variants)
        winner = variants["variant_a"]

        await apply_promotion(db, experiment.id, winner.id, "immediate", expected_version=0)
        await db.commit()
        assert await archive_losing_variants(db, experiment.id, winner.id) is True

        distribution = {variants["control"].id: 50.0, variants["variant_a"].id: 50.0}
        await restore_traffic(db, experiment.id, distribution, expected_version=1)
        await db.commit()

        restored = by_name(await load_variants(db, experiment.id))
        assert restored["control"].traffic_percentage == 50
        assert restored["control"].is_archived is False
        assert restored["variant_b"].traffic_percentage == 0
        assert restored["variant_b"].is_archived is True

    async def test_rejects_unknown_variant(self, db, seed_experiment):
        experiment = await seed_experiment()

        with pytest.raises(InvalidRequestError):
            await restore_traffic(db, experiment.id, {"nope": 100.0}, expected_version=0)


class TestArchiveLosingVariants:
    async def test_archives_everyone_but_the_winner(self, db, seed_experiment):
        experiment = await seed_experiment()
        winner = by_name(experiment.variants)["variant_a"]

        assert await archive_losing_variants(db, experiment.id, winner.id) is True

        variants = by_name(await load_variants(db, experiment.id))
        assert variants["variant_a"].is_archived is False
        assert variants["control"].is_archived is True
        assert variants["control"].archived_at is not None
        assert variants["variant_b"].is_archived is True

    async def test_failure_is_reported_not_raised(self, db, seed_experiment, monkeypatch):
        experiment = await seed_experiment()
        winner = by_name(experiment.variants)["variant_a"]

        async def broken_execute(*args, **kwargs):
            raise OperationalError("UPDATE variants", {}, Exception("database is locked"))

        monkeypatch.setattr(db, "execute", broken_execute)

        assert await archive_losing_variants(db, experiment.id, winner.id) is False

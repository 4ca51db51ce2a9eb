"""
Unit tests for plan grants.
"""

from datetime import datetime, timezone

import pytest

from songjobs.config.loader import AppConfig, DatabaseConfig, PlanConfig
from songjobs.core.ledger import try_consume
from songjobs.core.plans import grant_plan


@pytest.fixture
def config(db_path):
    return AppConfig(
        database=DatabaseConfig(path=db_path),
        plans={
            "one_hit_wonder": PlanConfig(name="One Hit Wonder", songs_per_period=1),
            "greatest_hits": PlanConfig(name="Greatest Hits", songs_per_period=5, revisions_per_song=2),
            "platinum_playlist": PlanConfig(
                name="Platinum Playlist", songs_per_period=-1, revisions_per_song=-1, commercial=True
            ),
        },
    )


class TestGrantPlan:
    """Test creating and replacing ledgers from plans."""

    def test_grant_creates_ledger(self, config):
        renews = datetime(2026, 11, 19, tzinfo=timezone.utc)

        ledger = grant_plan("C1", "greatest_hits", config, renews_at=renews)

        assert ledger.plan_id == "greatest_hits"
        assert ledger.plan_name == "Greatest Hits"
        assert ledger.allowance_per_period == 5
        assert ledger.revisions_per_song == 2
        assert ledger.period_renews_at == renews

    def test_unlimited_plan(self, config):
        ledger = grant_plan("C2", "platinum_playlist", config)

        assert ledger.unlimited is True
        assert ledger.commercial is True

    def test_upgrade_keeps_usage(self, config, db_path):
        grant_plan("C1", "one_hit_wonder", config)
        try_consume("C1", db_path=db_path)

        ledger = grant_plan("C1", "greatest_hits", config)

        assert ledger.consumed_count == 1
        assert ledger.remaining == 4

    def test_renewal_resets_usage(self, config, db_path):
        grant_plan("C1", "one_hit_wonder", config)
        try_consume("C1", db_path=db_path)

        ledger = grant_plan("C1", "one_hit_wonder", config, reset_usage=True)

        assert ledger.consumed_count == 0
        assert ledger.remaining == 1

    def test_unknown_plan(self, config):
        with pytest.raises(ValueError, match="Unknown plan"):
            grant_plan("C1", "gold", config)

    def test_empty_customer(self, config):
        with pytest.raises(ValueError, match="customer_id"):
            grant_plan(" ", "greatest_hits", config)

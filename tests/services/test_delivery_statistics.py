"""
Tests for delivery statistics aggregation.
"""

import pytest

from app.models.campaign import Campaign
from app.services.delivery_statistics import aggregate, statistics_for


class TestAggregate:
    """Tests for rate derivation."""

    def test_rates(self):
        stats = aggregate(total_sent=200, delivered=180, opened=90, clicked=18, bounced=20, unsubscribed=2)

        assert stats.delivery_rate == pytest.approx(90.0)
        assert stats.open_rate == pytest.approx(50.0)
        assert stats.click_rate == pytest.approx(20.0)
        assert stats.bounce_rate == pytest.approx(10.0)
        assert stats.unsubscribe_rate == pytest.approx(1.0)

    def test_zero_denominators_give_zero(self):
        stats = aggregate(total_sent=0, delivered=0, opened=0, clicked=0, bounced=0)

        assert stats.delivery_rate == 0.0
        assert stats.open_rate == 0.0
        assert stats.click_rate == 0.0
        assert stats.bounce_rate == 0.0

    def test_open_rate_zero_when_nothing_delivered(self):
        stats = aggregate(total_sent=10, delivered=0, opened=3, clicked=1, bounced=0)

        assert stats.open_rate == 0.0
        assert stats.click_rate == pytest.approx(100 / 3)


class TestStatisticsFor:
    """Tests for statistics read from campaign counters."""

    def test_missing_campaign_gives_zeros(self):
        stats = statistics_for(None)
        assert stats.total_sent == 0
        assert stats.delivery_rate == 0.0

    def test_reads_campaign_counters(self):
        campaign = Campaign(
            tenant_id="t", name="c", sent_count=10, delivered_count=8, opened_count=4,
            clicked_count=1, bounced_count=2, complained_count=0, unsubscribed_count=1,
        )
        stats = statistics_for(campaign)

        assert stats.total_sent == 10
        assert stats.delivered == 8
        assert stats.open_rate == pytest.approx(50.0)
        assert stats.bounce_rate == pytest.approx(20.0)

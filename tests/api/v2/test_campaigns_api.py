"""
Tests for the campaign execution API endpoints (/api/v2/campaigns).
"""

import pytest
from datetime import timedelta

from app.utils.clock import utcnow

PREFIX = "/api/v2/campaigns"


class TestSendCampaign:
    """Tests for POST /campaigns/{id}/send."""

    @pytest.mark.asyncio
    async def test_send_runs_campaign(self, client, executor, seed_campaign):
        campaign_id = await seed_campaign(["a@example.com", "b@example.com", "c@example.com"])

        response = await client.post(
            f"{PREFIX}/{campaign_id}/send",
            json={"batch_size": 2, "rate_limit_per_minute": 0},
        )

        assert response.status_code == 202
        assert response.json()["status"] == "running"

        await executor.join(campaign_id)
        progress = await client.get(f"{PREFIX}/{campaign_id}/progress")
        assert progress.status_code == 200
        data = progress.json()
        assert data["status"] == "completed"
        assert data["emails_sent"] == 3
        assert data["total_batches"] == 2
        assert data["progress_percentage"] == 100.0

    @pytest.mark.asyncio
    async def test_send_without_body_uses_defaults(self, client, executor, seed_campaign):
        campaign_id = await seed_campaign(["a@example.com"])

        response = await client.post(f"{PREFIX}/{campaign_id}/send")
        await executor.join(campaign_id)

        assert response.status_code == 202
        assert response.json()["batch_size"] == 50
        assert response.json()["rate_limit_per_minute"] == 100

    @pytest.mark.asyncio
    async def test_invalid_batch_size(self, client, seed_campaign):
        campaign_id = await seed_campaign(["a@example.com"])

        response = await client.post(f"{PREFIX}/{campaign_id}/send", json={"batch_size": 0})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_tenant_header_required(self, client, seed_campaign):
        campaign_id = await seed_campaign(["a@example.com"])

        response = await client.post(f"{PREFIX}/{campaign_id}/send", headers={"X-Tenant-ID": ""})

        assert response.status_code == 400
        assert response.json()["detail"] == "X-Tenant-ID header is required"

    @pytest.mark.asyncio
    async def test_other_tenant_gets_not_found(self, client, seed_campaign):
        campaign_id = await seed_campaign(["a@example.com"], tenant_id="tenant-2")

        response = await client.post(f"{PREFIX}/{campaign_id}/send")

        assert response.status_code == 404
        assert response.headers["content-type"].startswith("application/problem+json")


class TestControlOperations:
    """Tests for pause, resume, cancel and schedule."""

    @pytest.mark.asyncio
    async def test_pause_draft_is_conflict(self, client, seed_campaign):
        campaign_id = await seed_campaign(["a@example.com"])

        response = await client.post(f"{PREFIX}/{campaign_id}/pause")

        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "BIZ_001"
        assert "draft" in body["detail"]

    @pytest.mark.asyncio
    async def test_unknown_campaign(self, client):
        response = await client.post(f"{PREFIX}/12345/cancel")

        assert response.status_code == 404
        assert response.json()["code"] == "RES_001"

    @pytest.mark.asyncio
    async def test_problem_response_fields(self, client):
        response = await client.post(f"{PREFIX}/12345/cancel")

        body = response.json()
        assert body["type"].endswith("/res-001")
        assert body["title"] == "Not Found"
        assert body["status"] == 404
        assert body["instance"] == f"{PREFIX}/12345/cancel"
        assert len(body["trace_id"]) == 12
        assert body["timestamp"].endswith("Z")

    @pytest.mark.asyncio
    async def test_missing_tenant_is_validation_problem(self, client):
        response = await client.post(f"{PREFIX}/1/send", headers={"X-Tenant-ID": ""})

        assert response.status_code == 400
        assert response.json()["code"] == "VAL_001"

    @pytest.mark.asyncio
    async def test_schedule_and_cancel(self, client, seed_campaign):
        campaign_id = await seed_campaign(["a@example.com"])
        when = (utcnow() + timedelta(hours=3)).isoformat()

        scheduled = await client.post(f"{PREFIX}/{campaign_id}/schedule", json={"scheduled_time": when})
        cancelled = await client.post(f"{PREFIX}/{campaign_id}/cancel")

        assert scheduled.status_code == 200
        assert scheduled.json()["status"] == "scheduled"
        assert scheduled.json()["scheduled_time"] is not None
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_schedule_in_past_rejected(self, client, seed_campaign):
        campaign_id = await seed_campaign(["a@example.com"])
        when = (utcnow() - timedelta(hours=1)).isoformat()

        response = await client.post(f"{PREFIX}/{campaign_id}/schedule", json={"scheduled_time": when})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_retry_failed_without_failures(self, client, seed_campaign):
        campaign_id = await seed_campaign(["a@example.com"])

        response = await client.post(f"{PREFIX}/{campaign_id}/retry-failed")

        assert response.status_code == 200
        assert response.json() == {
            "campaign_id": campaign_id,
            "attempted": 0,
            "succeeded": 0,
            "failed": 0,
            "skipped": 0,
        }


class TestStatistics:
    """Tests for statistics and analytics."""

    @pytest.mark.asyncio
    async def test_statistics_for_new_campaign(self, client, seed_campaign):
        campaign_id = await seed_campaign(["a@example.com"])

        response = await client.get(f"{PREFIX}/{campaign_id}/statistics")

        assert response.status_code == 200
        data = response.json()
        assert data["total_sent"] == 0
        assert data["delivery_rate"] == 0.0
        assert data["open_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_statistics_rates(self, client, seed_campaign):
        campaign_id = await seed_campaign(
            [], sent_count=200, delivered_count=190, opened_count=95, clicked_count=19, bounced_count=10
        )

        data = (await client.get(f"{PREFIX}/{campaign_id}/statistics")).json()

        assert data["delivery_rate"] == pytest.approx(95.0)
        assert data["open_rate"] == pytest.approx(50.0)
        assert data["click_rate"] == pytest.approx(20.0)
        assert data["bounce_rate"] == pytest.approx(5.0)

    @pytest.mark.asyncio
    async def test_analytics_combines_progress_and_statistics(self, client, executor, seed_campaign):
        campaign_id = await seed_campaign(["a@example.com"], name="Spring launch")
        await client.post(f"{PREFIX}/{campaign_id}/send", json={"rate_limit_per_minute": 0})
        await executor.join(campaign_id)

        response = await client.get(f"{PREFIX}/{campaign_id}/analytics")

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Spring launch"
        assert data["progress"]["status"] == "completed"
        assert data["statistics"]["total_sent"] == 1

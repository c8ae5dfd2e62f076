from datetime import datetime, timezone

import httpx
import pytest

from oss_token.api.server import SettlementServer
from oss_token.models import GitHubMetrics
from oss_token.pricing.quality import QualityScoreService

from .fakes import PROJECT_ID, FakeMetricsFetcher, payment_for, seed_project
from .harness import build_harness
from .utils import DONOR, TREASURY


def _client(h) -> httpx.AsyncClient:
    metrics = GitHubMetrics(
        stars=10000,
        weekly_downloads=100000,
        last_commit_days=0,
        open_issues=0,
        fetched_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )
    quality = QualityScoreService(h.store, h.projects, FakeMetricsFetcher(metrics), h.pricing, clock=h.clock)
    server = SettlementServer(
        h.donations, h.trustlines, h.wallet_links, h.webhooks, h.pricing, quality, h.history
    )
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=server.app), base_url="http://test")


@pytest.mark.asyncio
async def test_health() -> None:
    async with _client(build_harness()) as client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_pledge_lifecycle_over_http() -> None:
    h = build_harness()
    await seed_project(h.projects)
    async with _client(h) as client:
        created = await client.post("/pledges", json={"project_id": PROJECT_ID, "amount": "10"})
        assert created.status_code == 201
        body = created.json()
        request_id = body["request"]["id"]
        assert body["signing"]["sign_url"].endswith(body["signing"]["ref"])

        pending = await client.get(f"/pledges/{request_id}")
        assert pending.json()["request"]["status"] == "payload_created"
        assert pending.json()["record"] is None

        request = await h.donations.get_request(request_id)
        h.ledger.transactions["DONATIONTX1"] = payment_for(request, DONOR, TREASURY)
        h.signing.sign(body["signing"]["ref"], DONOR, "DONATIONTX1")

        synced = await client.get(f"/pledges/{request_id}", params={"sync": "true"})
        assert synced.json()["request"]["status"] == "completed"
        assert synced.json()["record"]["ledger_tx_hash"] == "DONATIONTX1"

        stats = await client.get(f"/projects/{PROJECT_ID}/stats")
        assert stats.json()["total_amount"] == "10"
        assert stats.json()["donation_count"] == 1


@pytest.mark.asyncio
async def test_service_errors_map_to_status_codes() -> None:
    h = build_harness()
    await seed_project(h.projects)
    async with _client(h) as client:
        missing = await client.post("/pledges", json={"project_id": "missing", "amount": "10"})
        too_small = await client.post("/pledges", json={"project_id": PROJECT_ID, "amount": "0.5"})
        unknown = await client.get("/pledges/nope")
        forged = await client.post("/webhooks/signing", content=b"{}")

    assert missing.status_code == 404
    assert "error" in missing.json()
    assert too_small.status_code == 400
    assert unknown.status_code == 404
    assert forged.status_code == 401


@pytest.mark.asyncio
async def test_trustline_endpoint() -> None:
    h = build_harness()
    await seed_project(h.projects)
    async with _client(h) as client:
        opened = await client.post("/trustlines", json={"project_id": PROJECT_ID, "donor_address": DONOR})
        assert opened.json()["already_set"] is False
        request_id = opened.json()["request"]["id"]
        duplicate = await client.post("/trustlines", json={"project_id": PROJECT_ID, "donor_address": DONOR})
        status = await client.get(f"/trustlines/{request_id}")

    assert duplicate.status_code == 409
    assert status.json()["status"] == "created"


@pytest.mark.asyncio
async def test_price_quality_and_history_endpoints() -> None:
    h = build_harness()
    await seed_project(h.projects)
    async with _client(h) as client:
        no_quality = await client.get(f"/projects/{PROJECT_ID}/quality")
        assert no_quality.status_code == 404

        refreshed = await client.post(f"/projects/{PROJECT_ID}/quality/refresh")
        assert refreshed.status_code == 202
        assert refreshed.json()["overall"] == pytest.approx(1.0)

        recomputed = await client.post(f"/projects/{PROJECT_ID}/price/recompute", json={"trigger": "donation"})
        assert recomputed.status_code == 202

        price = await client.get(f"/projects/{PROJECT_ID}/price")
        assert price.json()["primary"] == pytest.approx(0.2 + 0.45)
        assert price.json()["secondary"] == pytest.approx((0.2 + 0.45) * 2.0)

        history = await client.get(f"/projects/{PROJECT_ID}/price/history", params={"limit": 5})
        triggers = [entry["trigger"] for entry in history.json()["history"]]
        assert sorted(triggers) == ["manual", "metrics_update"]

        wallet = await client.post("/wallet-links", json={"uid": "user-1"})
        assert wallet.status_code == 201

from datetime import datetime, timezone

import pytest

from oss_token.errors import ConfigurationError, NotFound
from oss_token.models import GitHubMetrics, MetricValue, PriceTrigger
from oss_token.pricing.engine import PricingService
from oss_token.pricing.normalizer import NormalizationPolicy, QualityParameter
from oss_token.pricing.quality import (
    PARAMETERS_DOC,
    QualityScoreEngine,
    QualityScoreService,
    load_parameters,
    overall_score,
)
from oss_token.pricing.rates import ExchangeRateCache
from oss_token.donation.history import HistoryAggregator
from oss_token.store import Collections, InMemoryDocumentStore, ProjectStore

from .fakes import PROJECT_ID, FakeClock, FakeMetricsFetcher, FixedRateSource, seed_project
from .utils import make_settings

FETCHED_AT = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _metrics(**fields) -> GitHubMetrics:
    data = {"stars": 0, "weekly_downloads": 0, "last_commit_days": 999, "open_issues": 0, "fetched_at": FETCHED_AT}
    data.update(fields)
    return GitHubMetrics(**data)


def test_perfect_metrics_score_one() -> None:
    engine = QualityScoreEngine()
    score = engine.score(_metrics(stars=10000, weekly_downloads=100000, last_commit_days=0, open_issues=0))
    assert score.overall == pytest.approx(1.0)
    assert set(score.breakdown) == {"stars", "downloads", "commits", "issues"}


def test_mixed_metrics_are_weighted() -> None:
    engine = QualityScoreEngine()
    score = engine.score(_metrics(stars=100, weekly_downloads=1, last_commit_days=365, open_issues=250))
    assert score.breakdown["stars"].normalized == pytest.approx(0.5)
    assert score.breakdown["downloads"].normalized == 0.0
    assert score.breakdown["issues"].normalized == pytest.approx(0.5)
    assert score.overall == pytest.approx(0.35 * 0.5 + 0.15 * 0.5)
    assert score.updated_at == FETCHED_AT


def test_disabled_parameters_are_excluded_from_the_mean() -> None:
    parameters = [
        QualityParameter(id="stars", weight=0.5, normalization=NormalizationPolicy(type="logarithmic", min=1, max=100)),
        QualityParameter(
            id="issues",
            weight=0.5,
            normalization=NormalizationPolicy(type="inverse", min=0, max=10),
            enabled=False,
        ),
    ]
    breakdown = {"stars": MetricValue(value=100, normalized=1.0), "issues": MetricValue(value=10, normalized=0.0)}
    assert overall_score(breakdown, parameters) == pytest.approx(1.0)


def test_zero_total_weight_scores_zero() -> None:
    parameters = [
        QualityParameter(id="stars", weight=0.0, normalization=NormalizationPolicy(min=0, max=1)),
    ]
    assert overall_score({"stars": MetricValue(value=1, normalized=1.0)}, parameters) == 0.0


def test_load_parameters_rejects_invalid_configuration() -> None:
    with pytest.raises(ConfigurationError):
        load_parameters([{"id": "stars", "weight": 2, "normalization": {"min": 0, "max": 1}}])
    with pytest.raises(ConfigurationError):
        load_parameters([{"id": "stars", "weight": 0.5, "normalization": {"type": "logarithmic", "min": 0, "max": 1}}])


async def _service(fetcher: FakeMetricsFetcher):
    store = InMemoryDocumentStore()
    projects = ProjectStore(store)
    clock = FakeClock()
    settings = make_settings()
    pricing = PricingService(
        store,
        projects,
        HistoryAggregator(store),
        ExchangeRateCache(FixedRateSource(2.0), settings, clock),
        clock,
    )
    service = QualityScoreService(store, projects, fetcher, pricing, clock=clock)
    return store, projects, pricing, service


@pytest.mark.asyncio
async def test_refresh_stores_score_and_reprices_project() -> None:
    fetcher = FakeMetricsFetcher(_metrics(stars=10000, weekly_downloads=100000, last_commit_days=0))
    store, projects, pricing, service = await _service(fetcher)
    await seed_project(projects, github_credential="ghp_test")

    score = await service.refresh(PROJECT_ID)

    assert fetcher.calls == [("octo", "lib", "ghp_test")]
    stored = await service.get(PROJECT_ID)
    assert stored is not None and stored.overall == pytest.approx(score.overall)
    raw = await store.get(Collections.QUALITY_SCORES, PROJECT_ID)
    assert raw["metrics"]["stars"] == 10000

    history = await pricing.price_history(PROJECT_ID)
    assert [record.trigger for record in history] == [PriceTrigger.METRICS_UPDATE]
    assert history[0].quality_score_at_time == pytest.approx(score.overall)


@pytest.mark.asyncio
async def test_refresh_uses_stored_parameters() -> None:
    fetcher = FakeMetricsFetcher(_metrics(stars=100, open_issues=1000))
    store, projects, _, service = await _service(fetcher)
    await seed_project(projects)
    await store.set(
        Collections.SETTINGS,
        PARAMETERS_DOC,
        {
            "parameters": [
                {"id": "stars", "weight": 1.0, "normalization": {"type": "logarithmic", "min": 1, "max": 100}},
            ]
        },
    )

    score = await service.refresh(PROJECT_ID)
    assert score.overall == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_refresh_requires_known_project_with_repository() -> None:
    _, projects, _, service = await _service(FakeMetricsFetcher(_metrics()))
    with pytest.raises(NotFound):
        await service.refresh("missing")

    await seed_project(projects, github_owner=None)
    with pytest.raises(ConfigurationError):
        await service.refresh(PROJECT_ID)

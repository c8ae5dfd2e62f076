"""Weighted quality score from normalized repository metrics."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Mapping, Optional, Sequence

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..errors import ConfigurationError, NotFound
from ..models import Clock, GitHubMetrics, MetricValue, PriceTrigger, QualityScore, utcnow
from ..store import Collections, DocumentStore, ProjectStore
from .engine import PricingService
from .metrics import GitHubMetricsFetcher
from .normalizer import NormalizationPolicy, NormalizationType, QualityParameter, normalize

logger = logging.getLogger(__name__)

WEIGHT_TOLERANCE = 0.01
PARAMETERS_DOC = "quality_parameters"

DEFAULT_PARAMETERS: tuple[QualityParameter, ...] = (
    QualityParameter(
        id="stars",
        weight=0.35,
        normalization=NormalizationPolicy(type=NormalizationType.LOGARITHMIC, min=1, max=10000),
    ),
    QualityParameter(
        id="downloads",
        weight=0.25,
        normalization=NormalizationPolicy(type=NormalizationType.LOGARITHMIC, min=1, max=100000),
    ),
    QualityParameter(
        id="commits",
        weight=0.25,
        normalization=NormalizationPolicy(type=NormalizationType.INVERSE, min=0, max=365),
    ),
    QualityParameter(
        id="issues",
        weight=0.15,
        normalization=NormalizationPolicy(type=NormalizationType.INVERSE, min=0, max=500),
    ),
)

# parameter id -> GitHubMetrics field
METRIC_FIELDS = {
    "stars": "stars",
    "downloads": "weekly_downloads",
    "commits": "last_commit_days",
    "issues": "open_issues",
}

_PARAMETER_LIST = TypeAdapter(list[QualityParameter])


def overall_score(breakdown: Mapping[str, MetricValue], parameters: Sequence[QualityParameter]) -> float:
    """Weighted mean of the enabled metrics; 0 when nothing carries weight."""

    weighted = 0.0
    total_weight = 0.0
    for parameter in parameters:
        if not parameter.enabled:
            continue
        metric = breakdown.get(parameter.id)
        weighted += parameter.weight * (metric.normalized if metric else 0.0)
        total_weight += parameter.weight
    if total_weight <= 0:
        return 0.0
    return max(0.0, min(1.0, weighted / total_weight))


class QualityScoreEngine:
    def __init__(self, parameters: Sequence[QualityParameter] = DEFAULT_PARAMETERS) -> None:
        self._parameters = tuple(parameters)
        enabled_weight = sum(p.weight for p in self._parameters if p.enabled)
        if abs(enabled_weight - 1.0) > WEIGHT_TOLERANCE:
            logger.warning("quality.weights_unbalanced", extra={"total_weight": enabled_weight})

    @property
    def parameters(self) -> tuple[QualityParameter, ...]:
        return self._parameters

    def breakdown(self, metrics: GitHubMetrics) -> dict[str, MetricValue]:
        by_id = {parameter.id: parameter for parameter in self._parameters}
        result: dict[str, MetricValue] = {}
        for metric_id, field in METRIC_FIELDS.items():
            raw = float(getattr(metrics, field))
            parameter = by_id.get(metric_id)
            if parameter is None or not parameter.enabled:
                result[metric_id] = MetricValue(value=raw, normalized=0.0)
            else:
                result[metric_id] = MetricValue(value=raw, normalized=normalize(raw, parameter.normalization))
        return result

    def overall_score(self, breakdown: Mapping[str, MetricValue]) -> float:
        return overall_score(breakdown, self._parameters)

    def score(self, metrics: GitHubMetrics, now: Optional[datetime] = None) -> QualityScore:
        breakdown = self.breakdown(metrics)
        return QualityScore(
            overall=self.overall_score(breakdown),
            breakdown=breakdown,
            updated_at=now or metrics.fetched_at,
        )


def load_parameters(raw: object) -> tuple[QualityParameter, ...]:
    """Validate a stored parameter set; invalid configuration never reaches scoring."""

    try:
        return tuple(_PARAMETER_LIST.validate_python(raw))
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Invalid quality parameters: {exc}") from exc


class QualityScoreService:
    """Refreshes a project's metrics, stores its score and reprices the token."""

    def __init__(
        self,
        store: DocumentStore,
        projects: ProjectStore,
        fetcher: GitHubMetricsFetcher,
        pricing: PricingService,
        engine: Optional[QualityScoreEngine] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._projects = projects
        self._fetcher = fetcher
        self._pricing = pricing
        self._engine = engine
        self._clock = clock

    async def engine(self) -> QualityScoreEngine:
        if self._engine is not None:
            return self._engine
        stored = await self._store.get(Collections.SETTINGS, PARAMETERS_DOC)
        if stored and stored.get("parameters"):
            return QualityScoreEngine(load_parameters(stored["parameters"]))
        return QualityScoreEngine()

    async def refresh(self, project_id: str) -> QualityScore:
        project = await self._projects.get(project_id)
        if project is None:
            raise NotFound(f"Project not found: {project_id}")
        if not project.github_owner or not project.github_repo:
            raise ConfigurationError(f"Project has no repository configured: {project_id}")

        metrics = await self._fetcher.fetch_metrics(
            project.github_owner, project.github_repo, project.github_credential
        )
        engine = await self.engine()
        score = engine.score(metrics, now=self._clock())
        await self._store.set(
            Collections.QUALITY_SCORES,
            project_id,
            {**score.model_dump(mode="json"), "metrics": metrics.model_dump(mode="json")},
        )
        logger.info("quality.refreshed", extra={"project_id": project_id, "overall": score.overall})

        await self._pricing.recompute(project_id, PriceTrigger.METRICS_UPDATE)
        return score

    async def get(self, project_id: str) -> Optional[QualityScore]:
        data = await self._store.get(Collections.QUALITY_SCORES, project_id)
        if data is None:
            return None
        return QualityScore.model_validate(data)

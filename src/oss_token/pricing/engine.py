"""Token price from quality and cumulative funding, with history."""

from __future__ import annotations

import logging
import math
from decimal import Decimal
from typing import NamedTuple, Optional, Sequence
from uuid import uuid4

from ..donation.history import HistoryAggregator
from ..errors import NotFound, ServiceError, ValidationError
from ..models import Clock, PriceHistoryRecord, PriceTrigger, PricingParameters, TokenPrice, utcnow
from ..store import Collections, DocumentStore, ProjectStore
from .rates import ExchangeRateCache

logger = logging.getLogger(__name__)

PARAMETERS_DOC = "pricing_parameters"


class PriceQuote(NamedTuple):
    primary: float
    secondary: float


def price(
    quality_score: float,
    cumulative_donations: float,
    params: PricingParameters,
    rate: float = 1.0,
) -> PriceQuote:
    """``P = max(P0, P0 + a*Q + b*ln(1 + F/F0))`` in native units.

    Non-decreasing in both ``Q`` and ``F``; the log term flattens as funding
    grows and a larger ``F0`` flattens it further. ``secondary`` is ``P`` at
    the given exchange rate.
    """

    quality = float(quality_score)
    donations = float(cumulative_donations)
    if math.isnan(quality) or math.isnan(donations):
        raise ValidationError("Price inputs must be numbers")
    if donations < 0:
        raise ValidationError("Cumulative donations must be non-negative")
    quality = max(0.0, min(1.0, quality))

    primary = (
        params.base_price
        + params.quality_coefficient * quality
        + params.donation_coefficient * math.log1p(donations / params.reference_donation)
    )
    primary = max(params.base_price, primary)
    return PriceQuote(primary=primary, secondary=primary * rate)


class PricingService:
    def __init__(
        self,
        store: DocumentStore,
        projects: ProjectStore,
        history: HistoryAggregator,
        rates: ExchangeRateCache,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._projects = projects
        self._history = history
        self._rates = rates
        self._clock = clock

    async def get_parameters(self) -> PricingParameters:
        data = await self._store.get(Collections.SETTINGS, PARAMETERS_DOC)
        if data is None:
            return PricingParameters()
        return PricingParameters.model_validate(data)

    async def set_parameters(self, params: PricingParameters) -> PricingParameters:
        stamped = params.model_copy(update={"last_updated": self._clock()})
        await self._store.set(Collections.SETTINGS, PARAMETERS_DOC, stamped.model_dump(mode="json"))
        logger.info("pricing.parameters_updated", extra=stamped.model_dump(mode="json"))
        return stamped

    async def quality_score(self, project_id: str) -> float:
        data = await self._store.get(Collections.QUALITY_SCORES, project_id)
        if not data:
            return 0.0
        return float(data.get("overall", 0.0))

    async def quote(self, project_id: str) -> TokenPrice:
        """Compute the current price without persisting anything."""

        if await self._projects.get(project_id) is None:
            raise NotFound(f"Project not found: {project_id}")
        token_price, _, _ = await self._compute(project_id)
        return token_price

    async def current_price(self, project_id: str) -> TokenPrice:
        project = await self._projects.get(project_id)
        if project is None:
            raise NotFound(f"Project not found: {project_id}")
        if project.current_price is not None:
            return project.current_price
        return await self.quote(project_id)

    async def recompute(self, project_id: str, trigger: PriceTrigger) -> PriceHistoryRecord:
        """Reprice ``project_id``, cache it on the project and append to its history atomically."""

        if await self._projects.get(project_id) is None:
            raise NotFound(f"Project not found: {project_id}")
        token_price, quality, donations = await self._compute(project_id)
        record = PriceHistoryRecord(
            id=uuid4().hex,
            project_id=project_id,
            date=token_price.computed_at,
            price_native=token_price.primary,
            price_secondary=token_price.secondary,
            quality_score_at_time=quality,
            total_donations_at_time=donations,
            trigger=trigger,
        )
        async with self._store.transaction() as txn:
            self._projects.set_current_price(txn, project_id, token_price)
            txn.set(Collections.PRICE_HISTORY, record.id, record.model_dump(mode="json"))

        logger.info(
            "pricing.recomputed",
            extra={
                "project_id": project_id,
                "trigger": trigger.value,
                "price": token_price.primary,
                "rate_stale": token_price.rate_stale,
            },
        )
        return record

    async def recompute_many(
        self,
        project_ids: Optional[Sequence[str]] = None,
        trigger: PriceTrigger = PriceTrigger.MANUAL,
    ) -> list[PriceHistoryRecord]:
        """Reprice several projects (all active ones by default); one failure skips only that project."""

        if project_ids is None:
            project_ids = [project.id for project in await self._projects.list_active()]
        records: list[PriceHistoryRecord] = []
        for project_id in project_ids:
            try:
                records.append(await self.recompute(project_id, trigger))
            except ServiceError as exc:
                logger.warning("pricing.recompute_failed", extra={"project_id": project_id, "error": exc.message})
        return records

    async def price_history(self, project_id: str, limit: int = 30) -> list[PriceHistoryRecord]:
        docs = await self._store.query(Collections.PRICE_HISTORY, project_id=project_id)
        records = sorted(
            (PriceHistoryRecord.model_validate(doc) for doc in docs),
            key=lambda record: record.date,
            reverse=True,
        )
        return records[:limit]

    async def _compute(self, project_id: str) -> tuple[TokenPrice, float, Decimal]:
        params = await self.get_parameters()
        quality = await self.quality_score(project_id)
        donations = await self._history.total_donations(project_id)
        rate = await self._rates.get_rate()
        quote = price(quality, float(donations), params, rate.rate)
        token_price = TokenPrice(
            primary=quote.primary,
            secondary=quote.secondary,
            rate=rate.rate,
            rate_stale=rate.stale,
            computed_at=self._clock(),
        )
        return token_price, quality, donations

"""Native-to-secondary exchange rate with a last-known-good fallback."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional, Protocol

from ..config import Settings, get_settings
from ..errors import ServiceError, UpstreamUnavailable
from ..ledger.codec import drops_to_xrp, to_ledger_currency
from ..ledger.gateway import LedgerGateway
from ..models import Clock, ExchangeRate, utcnow

logger = logging.getLogger(__name__)


class RateSource(Protocol):
    name: str

    async def fetch_rate(self) -> float: ...


class OrderBookRateSource:
    """Best ask for the native asset in the secondary currency on the ledger DEX."""

    name = "ledger_order_book"

    def __init__(self, ledger: LedgerGateway, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._ledger = ledger

    async def fetch_rate(self) -> float:
        issuer = self._settings.secondary_currency_issuer
        if not issuer:
            raise UpstreamUnavailable("No secondary currency issuer configured")
        offers = await self._ledger.book_offers(
            taker_gets={"currency": "XRP"},
            taker_pays={"currency": to_ledger_currency(self._settings.secondary_currency), "issuer": issuer},
        )
        for offer in offers:
            rate = _offer_rate(offer)
            if rate is not None:
                return rate
        raise UpstreamUnavailable("Order book has no usable offers")


def _offer_rate(offer: dict) -> Optional[float]:
    """Secondary units paid per native unit received, or ``None`` for malformed offers."""

    gets = offer.get("TakerGets")
    pays = offer.get("TakerPays")
    if not isinstance(gets, str) or not isinstance(pays, dict):
        return None
    try:
        native = drops_to_xrp(gets)
        secondary = Decimal(str(pays["value"]))
    except (KeyError, ValueError, InvalidOperation):
        return None
    if native <= 0 or secondary <= 0:
        return None
    return float(secondary / native)


class ExchangeRateCache:
    """TTL cache in front of a :class:`RateSource`.

    A failed or slow source never blocks pricing: the last good rate is
    served marked ``stale``, or the configured fallback when nothing was
    ever fetched.
    """

    def __init__(self, source: RateSource, settings: Optional[Settings] = None, clock: Clock = utcnow) -> None:
        self._settings = settings or get_settings()
        self._source = source
        self._clock = clock
        self._last_good: Optional[ExchangeRate] = None
        self._lock = asyncio.Lock()

    async def get_rate(self) -> ExchangeRate:
        async with self._lock:
            now = self._clock()
            ttl = timedelta(seconds=self._settings.exchange_rate_ttl_sec)
            if self._last_good and now - self._last_good.timestamp <= ttl:
                return self._last_good

            try:
                value = await self._source.fetch_rate()
                if value <= 0:
                    raise UpstreamUnavailable(f"Rate source returned a non-positive rate: {value}")
            except ServiceError as exc:
                logger.warning("rates.fetch_failed", extra={"source": self._source.name, "error": exc.message})
                return self._fallback(now)

            self._last_good = ExchangeRate(rate=value, timestamp=now, source=self._source.name)
            logger.debug("rates.refreshed", extra={"rate": value})
            return self._last_good

    def _fallback(self, now: datetime) -> ExchangeRate:
        if self._last_good is not None:
            return self._last_good.model_copy(update={"stale": True})
        return ExchangeRate(
            rate=self._settings.fallback_exchange_rate,
            timestamp=now,
            source="fallback",
            stale=True,
        )

"""Quality scoring and token pricing package."""

__all__ = [
    "ExchangeRateCache",
    "GitHubMetricsFetcher",
    "OrderBookRateSource",
    "PricingService",
    "QualityScoreEngine",
    "QualityScoreService",
    "price",
]

from .engine import PricingService, price
from .metrics import GitHubMetricsFetcher
from .quality import QualityScoreEngine, QualityScoreService
from .rates import ExchangeRateCache, OrderBookRateSource

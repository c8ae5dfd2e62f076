"""Donation settlement package."""

__all__ = [
    "DonationManager",
    "HistoryAggregator",
    "IssuanceOutbox",
    "TokenIssuanceManager",
    "TrustLineManager",
    "WalletLinkManager",
]

from .history import HistoryAggregator
from .issuance import TokenIssuanceManager
from .manager import DonationManager
from .outbox import IssuanceOutbox
from .trustline import TrustLineManager
from .wallet_link import WalletLinkManager

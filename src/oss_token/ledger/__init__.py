"""Ledger access package."""

__all__ = [
    "LedgerGateway",
    "LedgerTransaction",
    "SubmitResult",
    "TrustLine",
    "XRPLGateway",
]

from .gateway import LedgerGateway, LedgerTransaction, SubmitResult, TrustLine, XRPLGateway

"""Signing provider integration package."""

__all__ = [
    "SigningProvider",
    "SigningRequest",
    "SigningStatus",
    "SigningStatusWatcher",
    "XamanSigningClient",
    "verify_webhook_signature",
]

from .client import SigningProvider, SigningRequest, SigningStatus, XamanSigningClient
from .watcher import SigningStatusWatcher
from .webhook import verify_webhook_signature

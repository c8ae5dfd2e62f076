"""Error taxonomy shared by the settlement and pricing services."""

from __future__ import annotations


class ServiceError(RuntimeError):
    """Base error carrying the HTTP status the API layer should answer with."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ServiceError):
    """Bad caller input. Never retried automatically."""

    status_code = 400


class ConfigurationError(ServiceError):
    """Project or wallet configuration prevents the operation."""

    status_code = 400


class Unauthorized(ServiceError):
    """Webhook signature or credential rejected."""

    status_code = 401


class NotFound(ServiceError):
    status_code = 404


class Duplicate(ServiceError):
    """A conflicting request already exists."""

    status_code = 409


class Expired(ServiceError):
    """The request outlived its TTL. Terminal."""

    status_code = 410


class VerificationFailed(ServiceError):
    """Ledger data does not match the pledge. Terminal, may indicate tampering."""

    status_code = 422


class UpstreamUnavailable(ServiceError):
    """Signing provider, ledger node or metrics source is unreachable."""

    status_code = 502


class TransientLedgerError(ServiceError):
    """The ledger has not indexed the transaction yet; retry with backoff."""

    status_code = 503

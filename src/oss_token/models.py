"""Shared domain models for pledges, trust lines, issuance and pricing."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, Field

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PledgeStatus(str, Enum):
    PENDING = "pending"
    PAYLOAD_CREATED = "payload_created"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class TrustLineStatus(str, Enum):
    CREATED = "created"
    SIGNED = "signed"
    FAILED = "failed"
    EXPIRED = "expired"


class WalletLinkStatus(str, Enum):
    CREATED = "created"
    LINKED = "linked"
    FAILED = "failed"
    EXPIRED = "expired"


class IssuanceStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    TRUSTLINE_REQUIRED = "trustline_required"


class SigningPurpose(str, Enum):
    """Tag embedded in every signing request so callbacks route without lookups."""

    DONATION = "donation"
    TRUSTLINE = "trustline"
    WALLET_LINK = "wallet_link"


class PriceTrigger(str, Enum):
    DONATION = "donation"
    METRICS_UPDATE = "metrics_update"
    MANUAL = "manual"


class ProjectStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class ProjectConfig(BaseModel):
    """Slice of the external project document this service reads."""

    id: str
    token_code: Optional[str] = None
    issuer_address: Optional[str] = None
    status: ProjectStatus = ProjectStatus.DRAFT
    github_owner: Optional[str] = None
    github_repo: Optional[str] = None
    github_credential: Optional[str] = None
    issuance_ratio: Optional[Decimal] = Field(default=None, gt=0)
    current_price: Optional["TokenPrice"] = None


class PledgeRequest(BaseModel):
    """Donation intent; mutable until it reaches a terminal status."""

    id: str
    project_id: str
    donor_address: Optional[str] = None
    donor_uid: Optional[str] = None
    amount: Decimal
    destination_tag: int = Field(..., ge=0, lt=2**32)
    verification_token: str
    status: PledgeStatus = PledgeStatus.PENDING
    purpose: SigningPurpose = SigningPurpose.DONATION
    signing_ref: Optional[str] = None
    ledger_tx_hash: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    completed_at: Optional[datetime] = None


class IssuanceOutcome(BaseModel):
    issued: bool = False
    amount: Optional[Decimal] = None
    tx_hash: Optional[str] = None
    status: IssuanceStatus = IssuanceStatus.PENDING
    error: Optional[str] = None
    updated_at: Optional[datetime] = None


class PledgeRecord(BaseModel):
    """Audit record of a donation verified on the ledger."""

    id: str
    pledge_request_id: str
    project_id: str
    donor_address: str
    donor_uid: Optional[str] = None
    amount: Decimal
    ledger_tx_hash: str
    destination_tag: int
    verification_token: str
    issuance: IssuanceOutcome = Field(default_factory=IssuanceOutcome)
    created_at: datetime


class TrustLineRequest(BaseModel):
    id: str
    project_id: str
    token_code: str
    issuer_address: str
    donor_address: str
    signing_ref: Optional[str] = None
    status: TrustLineStatus = TrustLineStatus.CREATED
    ledger_tx_hash: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    completed_at: Optional[datetime] = None


class WalletLinkRequest(BaseModel):
    id: str
    uid: str
    signing_ref: Optional[str] = None
    status: WalletLinkStatus = WalletLinkStatus.CREATED
    account: Optional[str] = None
    created_at: datetime
    expires_at: datetime


class IssuanceOutboxEntry(BaseModel):
    """Durable marker that a completed donation still owes reward tokens."""

    record_id: str
    status: str = "pending"
    attempts: int = 0
    failures: int = 0
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class GitHubMetrics(BaseModel):
    stars: int = 0
    weekly_downloads: int = 0
    last_commit_days: int = 999
    open_issues: int = 0
    fetched_at: datetime


class MetricValue(BaseModel):
    value: float
    normalized: float = Field(..., ge=0, le=1)


class QualityScore(BaseModel):
    overall: float = Field(..., ge=0, le=1)
    breakdown: dict[str, MetricValue] = Field(default_factory=dict)
    updated_at: datetime


class PricingParameters(BaseModel):
    """Global price curve coefficients, versioned by ``last_updated``."""

    base_price: float = Field(0.2, ge=0)
    quality_coefficient: float = Field(0.45, ge=0)
    donation_coefficient: float = Field(0.075, ge=0)
    reference_donation: float = Field(3000.0, gt=0)
    last_updated: Optional[datetime] = None


class ExchangeRate(BaseModel):
    rate: float = Field(..., gt=0)
    timestamp: datetime
    source: str
    stale: bool = False


class TokenPrice(BaseModel):
    primary: float
    secondary: float
    rate: float
    rate_stale: bool = False
    computed_at: datetime


class PriceHistoryRecord(BaseModel):
    id: str
    project_id: str
    date: datetime
    price_native: float
    price_secondary: float
    quality_score_at_time: float
    total_donations_at_time: Decimal
    trigger: PriceTrigger


@dataclass(slots=True)
class IssueResult:
    """Outcome of one attempt to send reward tokens."""

    success: bool
    amount: Decimal
    recipient_address: str
    token_code: Optional[str] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    trustline_missing: bool = False
    retryable: bool = False


@dataclass(slots=True)
class IssueRequest:
    project_id: str
    recipient_address: str
    amount: Decimal
    memo: Optional[str] = None


@dataclass(slots=True)
class ProjectDonationStats:
    total_amount: Decimal
    donation_count: int
    donor_count: int
    total_tokens_issued: Decimal
    last_donation_at: Optional[datetime] = None


# TokenPrice is declared after ProjectConfig
ProjectConfig.model_rebuild()

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from oss_token.donation.binding import MEMO_TYPE
from oss_token.errors import NotFound, TransientLedgerError
from oss_token.ledger.codec import encode_memo, xrp_to_drops
from oss_token.ledger.gateway import LedgerTransaction, SubmitResult, TrustLine
from oss_token.models import (
    GitHubMetrics,
    PledgeRequest,
    ProjectConfig,
    ProjectStatus,
    SigningPurpose,
)
from oss_token.signing.client import SigningRequest, SigningStatus
from oss_token.store import ProjectStore
from oss_token.wallets import Wallet

from .utils import ISSUER

PROJECT_ID = "proj-1"


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeLedger:
    def __init__(self) -> None:
        self.transactions: dict[str, LedgerTransaction] = {}
        self.trust_lines: dict[str, list[TrustLine]] = {}
        self.submitted: list[tuple[dict[str, Any], Wallet]] = []
        self.submit_result = SubmitResult(hash="ISSUETX", result_code="tesSUCCESS", validated=True)
        self.submit_error: Optional[Exception] = None
        self.offers: list[dict[str, Any]] = []
        self.lookups = 0

    def add_trust_line(self, address: str, currency: str = "OSS", issuer: str = ISSUER, limit: str = "1000000", balance: str = "0") -> None:
        line = TrustLine(currency=currency, issuer=issuer, limit=Decimal(limit), balance=Decimal(balance))
        self.trust_lines.setdefault(address, []).append(line)

    async def submit(self, tx_template: dict[str, Any], signer: Wallet) -> SubmitResult:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append((tx_template, signer))
        return self.submit_result

    async def get_transaction(self, tx_hash: str) -> LedgerTransaction:
        self.lookups += 1
        tx = self.transactions.get(tx_hash)
        if tx is None:
            raise TransientLedgerError(f"Transaction not found yet: {tx_hash}")
        return tx

    async def get_trust_lines(self, address: str) -> list[TrustLine]:
        return list(self.trust_lines.get(address, []))

    async def get_balance(self, address: str) -> int:
        return 0

    async def book_offers(self, taker_gets, taker_pays, limit: int = 10) -> list[dict[str, Any]]:
        return list(self.offers)


class FakeSigningProvider:
    def __init__(self, delay: float = 0) -> None:
        self.created: list[dict[str, Any]] = []
        self.statuses: dict[str, SigningStatus] = {}
        self.delay = delay

    async def create_signing_request(
        self,
        tx_template: dict[str, Any],
        ttl_seconds: int,
        purpose: SigningPurpose,
        reference: str,
    ) -> SigningRequest:
        if self.delay:
            await asyncio.sleep(self.delay)
        ref = f"ref-{len(self.created) + 1}"
        self.created.append(
            {"ref": ref, "tx": tx_template, "ttl": ttl_seconds, "purpose": purpose, "reference": reference}
        )
        return SigningRequest(
            ref=ref,
            qr_image_url=f"https://xumm.example.com/sign/{ref}_q.png",
            status_channel=None,
            sign_url=f"https://xumm.example.com/sign/{ref}",
        )

    async def get_status(self, ref: str) -> SigningStatus:
        if ref in self.statuses:
            return self.statuses[ref]
        created = self._find(ref)
        return SigningStatus(ref=ref, purpose=created["purpose"], reference=created["reference"])

    async def cancel(self, ref: str) -> bool:
        return True

    def sign(self, ref: str, account: Optional[str], tx_hash: Optional[str]) -> SigningStatus:
        return self._resolve(ref, signed=True, account=account, tx_hash=tx_hash)

    def reject(self, ref: str) -> SigningStatus:
        return self._resolve(ref, rejected=True)

    def expire(self, ref: str) -> SigningStatus:
        return self._resolve(ref, expired=True)

    def _resolve(self, ref: str, **fields: Any) -> SigningStatus:
        created = self._find(ref)
        status = SigningStatus(ref=ref, purpose=created["purpose"], reference=created["reference"], **fields)
        self.statuses[ref] = status
        return status

    def _find(self, ref: str) -> dict[str, Any]:
        for created in self.created:
            if created["ref"] == ref:
                return created
        raise NotFound(f"Signing request not found: {ref}")


class FakeMetricsFetcher:
    def __init__(self, metrics: GitHubMetrics) -> None:
        self.metrics = metrics
        self.calls: list[tuple[str, str, Optional[str]]] = []

    async def fetch_metrics(self, owner: str, repo: str, credential: Optional[str] = None) -> GitHubMetrics:
        self.calls.append((owner, repo, credential))
        return self.metrics


class FixedRateSource:
    name = "fixed"

    def __init__(self, rate: float = 2.0) -> None:
        self.rate = rate
        self.error: Optional[Exception] = None
        self.calls = 0

    async def fetch_rate(self) -> float:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.rate


def payment_for(
    request: PledgeRequest,
    sender: str,
    destination: str,
    tx_hash: str = "DONATIONTX1",
    meta: Optional[dict[str, Any]] = None,
    validated: bool = True,
    **fields: Any,
) -> LedgerTransaction:
    """A validated ledger Payment that settles ``request``, with optional tampering."""

    drops = str(xrp_to_drops(request.amount))
    tx = {
        "TransactionType": "Payment",
        "Account": sender,
        "Destination": destination,
        "Amount": drops,
        "DestinationTag": request.destination_tag,
        "Memos": [encode_memo(MEMO_TYPE, request.verification_token)],
        "hash": tx_hash,
    }
    tx.update(fields)
    tx_meta = {"TransactionResult": "tesSUCCESS", "delivered_amount": tx["Amount"]}
    tx_meta.update(meta or {})
    return LedgerTransaction(hash=tx_hash, tx=tx, meta=tx_meta, validated=validated)


async def seed_project(projects: ProjectStore, project_id: str = PROJECT_ID, **overrides: Any) -> ProjectConfig:
    data: dict[str, Any] = {
        "id": project_id,
        "token_code": "OSS",
        "issuer_address": ISSUER,
        "status": ProjectStatus.ACTIVE,
        "github_owner": "octo",
        "github_repo": "lib",
    }
    data.update(overrides)
    project = ProjectConfig(**data)
    await projects.put(project)
    return project

"""Reward-token issuance to donors, gated on their trust line."""

from __future__ import annotations

import asyncio
import logging
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Awaitable, Callable, Optional, Sequence

from ..config import IssuancePolicyKind, Settings, get_settings
from ..errors import ServiceError, TransientLedgerError, UpstreamUnavailable, ValidationError
from ..ledger.codec import encode_memo, to_ledger_currency, validate_token_code
from ..ledger.gateway import LedgerGateway
from ..models import (
    Clock,
    IssuanceOutcome,
    IssuanceStatus,
    IssueRequest,
    IssueResult,
    PledgeRecord,
    ProjectConfig,
    utcnow,
)
from ..store import Collections, DocumentStore, ProjectStore
from ..wallets import WalletPool
from .binding import format_amount
from .trustline import matches_trust_line

logger = logging.getLogger(__name__)

TOKEN_QUANTUM = Decimal("0.000001")
ISSUANCE_MEMO_TYPE = "token_issuance"
# failures raised before anything reached the ledger
_RETRYABLE = (UpstreamUnavailable, TransientLedgerError)


class IssuancePolicy:
    """Maps a recorded donation to a reward-token amount."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()

    def amount_for(self, record: PledgeRecord, project: ProjectConfig) -> Decimal:
        if self._settings.issuance_policy == IssuancePolicyKind.PRICE:
            if project.current_price is None or project.current_price.primary <= 0:
                raise ValidationError(f"No current token price for project {project.id}")
            raw = record.amount / Decimal(str(project.current_price.primary))
        else:
            ratio = project.issuance_ratio or self._settings.issuance_ratio
            raw = record.amount * ratio
        amount = raw.quantize(TOKEN_QUANTUM, rounding=ROUND_DOWN)
        if amount <= 0:
            policy = self._settings.issuance_policy.value
            raise ValidationError(f"Donation {record.id} earns no tokens under the {policy} policy")
        return amount


class TokenIssuanceManager:
    def __init__(
        self,
        store: DocumentStore,
        projects: ProjectStore,
        ledger: LedgerGateway,
        wallets: WalletPool,
        settings: Optional[Settings] = None,
        policy: Optional[IssuancePolicy] = None,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._projects = projects
        self._ledger = ledger
        self._wallets = wallets
        self._policy = policy or IssuancePolicy(self._settings)
        self._clock = clock
        self._sleep = sleep

    async def issue(
        self,
        project_id: str,
        recipient_address: str,
        amount: Decimal,
        memo: Optional[str] = None,
    ) -> IssueResult:
        """Send ``amount`` of the project's token from its issuer to ``recipient_address``.

        Every precondition is checked before anything is submitted, so a
        failed result here never costs an issuer sequence number.
        """

        result = IssueResult(success=False, amount=amount, recipient_address=recipient_address)
        try:
            project = await self._projects.require_active(project_id)
            issuer = self._wallets.require_issuer(project.issuer_address or "")
            result.token_code = project.token_code
            errors = validate_token_code(project.token_code)
            if errors:
                result.error = "; ".join(errors)
                return result
            try:
                value = Decimal(amount)
            except (InvalidOperation, TypeError, ValueError):
                value = Decimal("NaN")
            if not value.is_finite() or value <= 0:
                result.error = f"Amount must be positive and finite: {amount}"
                return result

            lines = await self._ledger.get_trust_lines(recipient_address)
            if not matches_trust_line(lines, project.token_code, issuer.address, min_amount=value):
                result.error = "Recipient has no trust line with enough limit for this token"
                result.trustline_missing = True
                logger.info(
                    "issuance.trustline_missing",
                    extra={"project_id": project_id, "recipient": recipient_address, "amount": str(value)},
                )
                return result

            tx_template = {
                "TransactionType": "Payment",
                "Destination": recipient_address,
                "Amount": {
                    "currency": to_ledger_currency(project.token_code),
                    "issuer": issuer.address,
                    "value": format_amount(value),
                },
            }
            if memo:
                tx_template["Memos"] = [encode_memo(ISSUANCE_MEMO_TYPE, memo)]

            submitted = await self._ledger.submit(tx_template, issuer)
        except ServiceError as exc:
            result.error = exc.message
            result.retryable = isinstance(exc, _RETRYABLE)
            logger.warning(
                "issuance.rejected",
                extra={"project_id": project_id, "recipient": recipient_address, "error": exc.message},
            )
            return result

        result.tx_hash = submitted.hash
        if submitted.succeeded:
            result.success = True
            logger.info(
                "issuance.completed",
                extra={"project_id": project_id, "recipient": recipient_address, "tx_hash": submitted.hash},
            )
        else:
            result.error = submitted.result_code if submitted.validated else f"{submitted.result_code} (not validated)"
            logger.warning(
                "issuance.ledger_failure",
                extra={"project_id": project_id, "tx_hash": submitted.hash, "result": submitted.result_code},
            )
        return result

    async def process_for_donation(self, record_id: str) -> IssuanceOutcome:
        """Issue the reward for one recorded donation and persist the outcome.

        The donation is already recorded and stays valid whatever happens to
        its reward. Only an upstream outage hit before submission is raised,
        after the outcome is persisted, so the caller can retry later.
        """

        outcome = IssuanceOutcome(status=IssuanceStatus.FAILED)
        retry: Optional[ServiceError] = None
        try:
            data = await self._store.get(Collections.PLEDGE_RECORDS, record_id)
            if data is None:
                logger.warning("issuance.record_missing", extra={"record_id": record_id})
                return IssuanceOutcome(status=IssuanceStatus.FAILED, error="record not found")
            record = PledgeRecord.model_validate(data)
            if record.issuance.status == IssuanceStatus.COMPLETED:
                return record.issuance

            project = await self._projects.get(record.project_id)
            if project is None:
                outcome.error = f"Project not found: {record.project_id}"
            else:
                amount = self._policy.amount_for(record, project)
                outcome.amount = amount
                result = await self.issue(record.project_id, record.donor_address, amount, memo=record.id)
                outcome.tx_hash = result.tx_hash
                outcome.error = result.error
                if result.success:
                    outcome.issued = True
                    outcome.status = IssuanceStatus.COMPLETED
                elif result.trustline_missing:
                    outcome.status = IssuanceStatus.TRUSTLINE_REQUIRED
                elif result.retryable and result.tx_hash is None:
                    retry = UpstreamUnavailable(result.error or "ledger unavailable")
        except _RETRYABLE as exc:
            outcome.error = exc.message
            retry = exc
        except ServiceError as exc:
            outcome.error = exc.message
        except Exception as exc:
            logger.exception("issuance.unexpected_failure", extra={"record_id": record_id}, exc_info=exc)
            outcome.error = f"unexpected error: {exc}"

        outcome.updated_at = self._clock()
        try:
            await self._store.update(
                Collections.PLEDGE_RECORDS,
                record_id,
                {"issuance": outcome.model_dump(mode="json")},
            )
        except ServiceError as exc:
            logger.error("issuance.persist_failure", extra={"record_id": record_id, "error": exc.message})
        logger.info(
            "issuance.outcome",
            extra={"record_id": record_id, "status": outcome.status.value, "error": outcome.error},
        )
        if retry is not None:
            raise retry
        return outcome

    async def batch_issue(self, requests: Sequence[IssueRequest]) -> list[IssueResult]:
        results: list[IssueResult] = []
        for index, request in enumerate(requests):
            if index:
                await self._sleep(self._settings.issuance_batch_delay_sec)
            results.append(
                await self.issue(request.project_id, request.recipient_address, request.amount, request.memo)
            )
        failed = sum(1 for result in results if not result.success)
        logger.info("issuance.batch_finished", extra={"total": len(results), "failed": failed})
        return results

"""Pledge lifecycle: intent, signed payment, ledger verification, record."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from uuid import uuid4

from ..config import Settings, get_settings
from ..errors import (
    Duplicate,
    Expired,
    NotFound,
    TransientLedgerError,
    ValidationError,
    VerificationFailed,
)
from ..ledger.codec import encode_memo, xrp_to_drops
from ..ledger.gateway import LedgerGateway
from ..models import (
    Clock,
    IssuanceStatus,
    PledgeRecord,
    PledgeRequest,
    PledgeStatus,
    SigningPurpose,
    utcnow,
)
from ..signing.client import SigningProvider, SigningRequest
from ..signing.watcher import SigningStatusWatcher
from ..store import Collections, DocumentStore, ProjectStore
from ..wallets import WalletPool
from .binding import MEMO_TYPE, destination_tag, verification_token
from .outbox import IssuanceOutbox, stage_entry
from .verification import verify_on_ledger

logger = logging.getLogger(__name__)

_TERMINAL = {PledgeStatus.COMPLETED, PledgeStatus.FAILED, PledgeStatus.EXPIRED}


@dataclass(slots=True)
class PledgeCreation:
    request: PledgeRequest
    signing: SigningRequest


@dataclass(slots=True)
class PledgeStatusView:
    """What a polling caller needs: latest state plus any actionable flag."""

    request: PledgeRequest
    record: Optional[PledgeRecord] = None
    trustline_required: bool = False


class DonationManager:
    def __init__(
        self,
        store: DocumentStore,
        projects: ProjectStore,
        ledger: LedgerGateway,
        signing: SigningProvider,
        wallets: WalletPool,
        settings: Optional[Settings] = None,
        outbox: Optional[IssuanceOutbox] = None,
        watcher: Optional[SigningStatusWatcher] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._projects = projects
        self._ledger = ledger
        self._signing = signing
        self._wallets = wallets
        self._outbox = outbox
        self._watcher = watcher
        self._clock = clock

    async def create_pledge(
        self,
        project_id: str,
        amount: Any,
        donor_uid: Optional[str] = None,
        donor_address: Optional[str] = None,
    ) -> PledgeCreation:
        """Persist a pledge and open a signing request for its payment."""

        value = self._validate_amount(amount)
        await self._projects.require_active(project_id)
        treasury = self._wallets.treasury()

        now = self._clock()
        request_id = uuid4().hex
        tag = destination_tag(project_id)
        token = await self._reserve_token(project_id, value, request_id, now)

        tx_template: dict[str, Any] = {
            "TransactionType": "Payment",
            "Destination": treasury.address,
            "Amount": str(xrp_to_drops(value)),
            "DestinationTag": tag,
            "Memos": [encode_memo(MEMO_TYPE, token)],
        }
        if donor_address:
            tx_template["Account"] = donor_address

        signing = await self._signing.create_signing_request(
            tx_template,
            self._settings.pledge_ttl_sec,
            SigningPurpose.DONATION,
            request_id,
        )
        request = PledgeRequest(
            id=request_id,
            project_id=project_id,
            donor_address=donor_address,
            donor_uid=donor_uid,
            amount=value,
            destination_tag=tag,
            verification_token=token,
            status=PledgeStatus.PAYLOAD_CREATED,
            signing_ref=signing.ref,
            created_at=now,
            expires_at=now + timedelta(seconds=self._settings.pledge_ttl_sec),
        )
        await self._store.set(Collections.PLEDGE_REQUESTS, request_id, request.model_dump(mode="json"))
        logger.info(
            "pledge.created",
            extra={"id": request_id, "project_id": project_id, "amount": str(value), "signing_ref": signing.ref},
        )

        if self._watcher:
            self._watcher.track(signing, self._settings.pledge_ttl_sec)
        return PledgeCreation(request=request, signing=signing)

    async def complete_pledge(self, request_id: str, signer_account: str, signed_tx_hash: str) -> PledgeRecord:
        """Verify ``signed_tx_hash`` against the pledge and record the donation.

        Safe to call repeatedly: once completed, the existing record is
        returned without another ledger lookup.
        """

        request = await self.get_request(request_id)
        if request.status == PledgeStatus.COMPLETED:
            return await self._existing_record(request)
        if request.status == PledgeStatus.FAILED:
            raise VerificationFailed(request.failure_reason or "Pledge verification failed")
        if request.status == PledgeStatus.EXPIRED:
            raise Expired(f"Pledge expired: {request_id}")
        if self.is_expired(request):
            await self._mark_terminal(request_id, PledgeStatus.EXPIRED, "expired before completion")
            logger.warning("pledge.expired", extra={"id": request_id, "tx_hash": signed_tx_hash})
            raise Expired(f"Pledge expired: {request_id}")

        indexed = await self._store.get(Collections.LEDGER_TX_INDEX, signed_tx_hash)
        if indexed and indexed.get("pledge_request_id") != request_id:
            await self.fail_request(request_id, "transaction already settles another pledge")
            raise VerificationFailed(f"Transaction already recorded: {signed_tx_hash}")

        treasury = self._wallets.treasury()
        verified = await verify_on_ledger(
            self._ledger, signed_tx_hash, request, signer_account, treasury.address
        )
        if not verified:
            await self.fail_request(request_id, "ledger transaction does not match pledge")
            raise VerificationFailed(f"Ledger transaction does not match pledge: {signed_tx_hash}")

        now = self._clock()
        record = PledgeRecord(
            id=request.verification_token,
            pledge_request_id=request_id,
            project_id=request.project_id,
            donor_address=signer_account,
            donor_uid=request.donor_uid,
            amount=request.amount,
            ledger_tx_hash=signed_tx_hash,
            destination_tag=request.destination_tag,
            verification_token=request.verification_token,
            created_at=now,
        )

        async with self._store.transaction() as txn:
            current = await txn.get(Collections.PLEDGE_REQUESTS, request_id)
            if current and current.get("status") == PledgeStatus.COMPLETED.value:
                existing = await txn.get(Collections.PLEDGE_RECORDS, record.id)
                if existing:
                    return PledgeRecord.model_validate(existing)
            if await txn.get(Collections.LEDGER_TX_INDEX, signed_tx_hash):
                raise Duplicate(f"Transaction already recorded: {signed_tx_hash}")
            txn.set(Collections.PLEDGE_RECORDS, record.id, record.model_dump(mode="json"))
            txn.update(
                Collections.PLEDGE_REQUESTS,
                request_id,
                {
                    "status": PledgeStatus.COMPLETED.value,
                    "ledger_tx_hash": signed_tx_hash,
                    "donor_address": signer_account,
                    "completed_at": now.isoformat(),
                },
            )
            txn.set(
                Collections.LEDGER_TX_INDEX,
                signed_tx_hash,
                {"pledge_request_id": request_id, "record_id": record.id},
            )
            stage_entry(txn, record.id, now)

        logger.info(
            "pledge.completed",
            extra={"id": request_id, "record_id": record.id, "tx_hash": signed_tx_hash, "amount": str(record.amount)},
        )
        if self._outbox:
            self._outbox.enqueue(record.id)
        return record

    async def complete_with_retry(self, request_id: str, signer_account: str, signed_tx_hash: str) -> PledgeRecord:
        """``complete_pledge`` with fixed-delay retries while the ledger catches up."""

        attempts = self._settings.ledger_lookup_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await self.complete_pledge(request_id, signer_account, signed_tx_hash)
            except TransientLedgerError:
                if attempt == attempts:
                    logger.warning(
                        "pledge.lookup_exhausted",
                        extra={"id": request_id, "tx_hash": signed_tx_hash, "attempts": attempts},
                    )
                    raise
                logger.info("ledger.tx_not_found", extra={"tx_hash": signed_tx_hash, "attempt": attempt})
                await asyncio.sleep(self._settings.ledger_lookup_delay_sec)
        raise TransientLedgerError(f"Transaction not found: {signed_tx_hash}")  # pragma: no cover

    def is_expired(self, request: PledgeRequest) -> bool:
        return self._clock() > request.expires_at

    async def sync_pledge(self, request_id: str) -> PledgeRequest:
        """Poll path: pull the signing outcome instead of waiting for the webhook."""

        request = await self.get_request(request_id)
        if request.status in _TERMINAL:
            return request
        if not request.signing_ref:
            if self.is_expired(request):
                await self._mark_terminal(request_id, PledgeStatus.EXPIRED, "expired before signing")
            return await self.get_request(request_id)

        status = await self._signing.get_status(request.signing_ref)
        if status.signed and status.account and status.tx_hash:
            try:
                await self.complete_pledge(request_id, status.account, status.tx_hash)
            except TransientLedgerError:
                logger.info("pledge.sync_pending", extra={"id": request_id, "tx_hash": status.tx_hash})
            except (Expired, VerificationFailed) as exc:
                logger.info("pledge.sync_terminal", extra={"id": request_id, "error": exc.message})
        elif status.rejected:
            await self.fail_request(request_id, "signing request rejected")
        elif status.expired or self.is_expired(request):
            await self._mark_terminal(request_id, PledgeStatus.EXPIRED, "signing request expired")
        return await self.get_request(request_id)

    async def pledge_status(self, request_id: str) -> PledgeStatusView:
        request = await self.get_request(request_id)
        if request.status != PledgeStatus.COMPLETED:
            return PledgeStatusView(request=request)
        record = await self._existing_record(request)
        return PledgeStatusView(
            request=request,
            record=record,
            trustline_required=record.issuance.status == IssuanceStatus.TRUSTLINE_REQUIRED,
        )

    async def get_request(self, request_id: str) -> PledgeRequest:
        data = await self._store.get(Collections.PLEDGE_REQUESTS, request_id)
        if data is None:
            raise NotFound(f"Pledge request not found: {request_id}")
        return PledgeRequest.model_validate(data)

    async def fail_request(self, request_id: str, reason: str) -> None:
        await self._mark_terminal(request_id, PledgeStatus.FAILED, reason)
        logger.warning("pledge.failed", extra={"id": request_id, "reason": reason})

    async def expire_request(self, request_id: str, reason: str = "signing request expired") -> None:
        await self._mark_terminal(request_id, PledgeStatus.EXPIRED, reason)

    async def _mark_terminal(self, request_id: str, status: PledgeStatus, reason: str) -> None:
        async with self._store.transaction() as txn:
            current = await txn.get(Collections.PLEDGE_REQUESTS, request_id)
            if current is None:
                raise NotFound(f"Pledge request not found: {request_id}")
            if PledgeStatus(current["status"]) in _TERMINAL:
                return
            txn.update(
                Collections.PLEDGE_REQUESTS,
                request_id,
                {"status": status.value, "failure_reason": reason},
            )

    async def _existing_record(self, request: PledgeRequest) -> PledgeRecord:
        data = await self._store.get(Collections.PLEDGE_RECORDS, request.verification_token)
        if data is None:
            raise NotFound(f"Pledge record missing for completed request: {request.id}")
        return PledgeRecord.model_validate(data)

    async def _reserve_token(self, project_id: str, amount: Decimal, request_id: str, now: datetime) -> str:
        secret = self._settings.verification_secret.get_secret_value()
        epoch_ms = int(now.timestamp() * 1000)
        while True:
            token = verification_token(
                secret,
                project_id,
                amount,
                epoch_ms,
                length=self._settings.verification_token_length,
            )
            async with self._store.transaction() as txn:
                if await txn.get(Collections.PLEDGE_TOKENS, token) is None:
                    txn.set(Collections.PLEDGE_TOKENS, token, {"pledge_request_id": request_id})
                    return token
            # same project, amount and millisecond as an earlier pledge
            epoch_ms += 1

    def _validate_amount(self, amount: Any) -> Decimal:
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError) as exc:
            raise ValidationError(f"Invalid amount: {amount!r}") from exc
        if not value.is_finite():
            raise ValidationError("Amount must be finite")
        low = self._settings.pledge_min_amount
        high = self._settings.pledge_max_amount
        if value < low or value > high:
            raise ValidationError(f"Amount must be between {low} and {high}")
        try:
            xrp_to_drops(value)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        return value


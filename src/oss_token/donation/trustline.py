"""Trust lines: the donor-side capability to hold a project's reward token."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional
from uuid import uuid4

from ..config import Settings, get_settings
from ..errors import ConfigurationError, Duplicate, NotFound, ValidationError
from ..ledger.codec import from_ledger_currency, to_ledger_currency, validate_token_code
from ..ledger.gateway import LedgerGateway, TrustLine
from ..models import Clock, SigningPurpose, TrustLineRequest, TrustLineStatus, utcnow
from ..signing.client import SigningProvider, SigningRequest
from ..signing.watcher import SigningStatusWatcher
from ..store import Collections, DocumentStore, ProjectStore, Transaction
from .outbox import IssuanceOutbox

logger = logging.getLogger(__name__)

TF_SET_NO_RIPPLE = 0x00020000


def matches_trust_line(
    lines: Iterable[TrustLine],
    token_code: str,
    issuer_address: str,
    min_amount: Optional[Decimal] = None,
) -> bool:
    """True when one line holds ``token_code`` from ``issuer_address`` with a positive limit.

    With ``min_amount`` the line must also have room for that many more
    tokens below its limit.
    """

    wire_code = to_ledger_currency(token_code)
    for line in lines:
        if line.issuer != issuer_address:
            continue
        if line.currency != wire_code and from_ledger_currency(line.currency) != token_code:
            continue
        if line.limit <= 0:
            continue
        if min_amount is not None and line.limit - line.balance < min_amount:
            continue
        return True
    return False


@dataclass(slots=True)
class TrustLineCapability:
    already_set: bool
    request: Optional[TrustLineRequest] = None
    signing: Optional[SigningRequest] = None


class TrustLineManager:
    def __init__(
        self,
        store: DocumentStore,
        projects: ProjectStore,
        ledger: LedgerGateway,
        signing: SigningProvider,
        settings: Optional[Settings] = None,
        watcher: Optional[SigningStatusWatcher] = None,
        clock: Clock = utcnow,
        outbox: Optional[IssuanceOutbox] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._projects = projects
        self._ledger = ledger
        self._signing = signing
        self._watcher = watcher
        self._clock = clock
        self._outbox = outbox

    async def ensure_capability(
        self,
        project_id: str,
        donor_address: str,
        token_code: Optional[str] = None,
        issuer_address: Optional[str] = None,
    ) -> TrustLineCapability:
        """Short-circuit when the trust line exists, otherwise open a TrustSet signing request."""

        project = await self._projects.require_active(project_id)
        if token_code is not None and token_code != project.token_code:
            raise ValidationError(f"Token code does not belong to project {project_id}: {token_code}")
        if issuer_address is not None and issuer_address != project.issuer_address:
            raise ValidationError(f"Issuer does not belong to project {project_id}: {issuer_address}")
        token_code = project.token_code
        issuer_address = project.issuer_address
        errors = validate_token_code(token_code)
        if errors:
            raise ConfigurationError(f"Invalid token code for project {project_id}: {'; '.join(errors)}")
        if not donor_address:
            raise ValidationError("Donor address is required")

        if await self.has_trust_line(donor_address, token_code, issuer_address):
            if self._outbox:
                await self._outbox.requeue_trustline_required(donor_address)
            return TrustLineCapability(already_set=True)

        now = self._clock()
        request_id = uuid4().hex
        slot = _slot_key(donor_address, token_code, issuer_address)
        await self._reserve_slot(slot, request_id, now)

        tx_template = {
            "TransactionType": "TrustSet",
            "Account": donor_address,
            "LimitAmount": {
                "currency": to_ledger_currency(token_code),
                "issuer": issuer_address,
                "value": format(self._settings.trustline_limit, "f"),
            },
            "Flags": TF_SET_NO_RIPPLE,
        }
        try:
            signing = await self._signing.create_signing_request(
                tx_template,
                self._settings.trustline_ttl_sec,
                SigningPurpose.TRUSTLINE,
                request_id,
            )
        except Exception:
            await self._release_slot(slot, request_id)
            raise
        request = TrustLineRequest(
            id=request_id,
            project_id=project_id,
            token_code=token_code,
            issuer_address=issuer_address,
            donor_address=donor_address,
            signing_ref=signing.ref,
            created_at=now,
            expires_at=now + timedelta(seconds=self._settings.trustline_ttl_sec),
        )
        await self._store.set(Collections.TRUSTLINE_REQUESTS, request_id, request.model_dump(mode="json"))
        logger.info(
            "trustline.requested",
            extra={"id": request_id, "donor": donor_address, "token_code": token_code, "signing_ref": signing.ref},
        )
        if self._watcher:
            self._watcher.track(signing, self._settings.trustline_ttl_sec)
        return TrustLineCapability(already_set=False, request=request, signing=signing)

    async def complete_trust_line(self, request_id: str, signed_tx_hash: Optional[str] = None) -> TrustLineRequest:
        """Mark the request signed. The ledger is re-checked lazily by ``ensure_capability``.

        A request that only expired in local bookkeeping is still accepted:
        the provider reported the signature, so the TrustSet exists.
        """

        async with self._store.transaction() as txn:
            data = await txn.get(Collections.TRUSTLINE_REQUESTS, request_id)
            if data is None:
                raise NotFound(f"Trust line request not found: {request_id}")
            request = TrustLineRequest.model_validate(data)
            if request.status not in (TrustLineStatus.CREATED, TrustLineStatus.EXPIRED):
                if request.status != TrustLineStatus.SIGNED:
                    logger.info("trustline.late_signature", extra={"id": request_id, "status": request.status.value})
                return request
            now = self._clock()
            fields = {
                "status": TrustLineStatus.SIGNED.value,
                "ledger_tx_hash": signed_tx_hash,
                "completed_at": now.isoformat(),
                "failure_reason": None,
            }
            txn.update(Collections.TRUSTLINE_REQUESTS, request_id, fields)
            _release(txn, await txn.get(Collections.TRUSTLINE_SLOTS, _request_slot(request)), request)

        logger.info("trustline.signed", extra={"id": request_id, "tx_hash": signed_tx_hash})
        return request.model_copy(
            update={
                "status": TrustLineStatus.SIGNED,
                "ledger_tx_hash": signed_tx_hash,
                "completed_at": now,
                "failure_reason": None,
            }
        )

    async def has_trust_line(
        self,
        address: str,
        token_code: str,
        issuer_address: str,
        min_amount: Optional[Decimal] = None,
    ) -> bool:
        lines = await self._ledger.get_trust_lines(address)
        return matches_trust_line(lines, token_code, issuer_address, min_amount)

    async def get_request(self, request_id: str) -> TrustLineRequest:
        data = await self._store.get(Collections.TRUSTLINE_REQUESTS, request_id)
        if data is None:
            raise NotFound(f"Trust line request not found: {request_id}")
        request = TrustLineRequest.model_validate(data)
        if request.status == TrustLineStatus.CREATED and self._is_expired(request.expires_at):
            await self.fail_request(request_id, "expired", TrustLineStatus.EXPIRED)
            request = request.model_copy(update={"status": TrustLineStatus.EXPIRED, "failure_reason": "expired"})
        return request

    async def fail_request(
        self,
        request_id: str,
        reason: str,
        status: TrustLineStatus = TrustLineStatus.FAILED,
    ) -> None:
        async with self._store.transaction() as txn:
            data = await txn.get(Collections.TRUSTLINE_REQUESTS, request_id)
            if data is None:
                raise NotFound(f"Trust line request not found: {request_id}")
            if data.get("status") != TrustLineStatus.CREATED.value:
                return
            txn.update(
                Collections.TRUSTLINE_REQUESTS,
                request_id,
                {"status": status.value, "failure_reason": reason},
            )
            request = TrustLineRequest.model_validate(data)
            _release(txn, await txn.get(Collections.TRUSTLINE_SLOTS, _request_slot(request)), request)
        logger.info("trustline.closed", extra={"id": request_id, "status": status.value, "reason": reason})

    async def _reserve_slot(self, slot: str, request_id: str, now: datetime) -> None:
        """Claim the (donor, token, issuer) slot or raise ``Duplicate`` while another request holds it."""

        async with self._store.transaction() as txn:
            held = await txn.get(Collections.TRUSTLINE_SLOTS, slot)
            holder_id = held.get("request_id") if held else None
            if holder_id:
                holder = await txn.get(Collections.TRUSTLINE_REQUESTS, holder_id)
                if holder is None:
                    # the holder is still waiting on its signing request
                    if now <= datetime.fromisoformat(held["expires_at"]):
                        raise Duplicate(f"Trust line request already pending: {holder_id}")
                elif holder.get("status") == TrustLineStatus.CREATED.value:
                    if not self._is_expired(TrustLineRequest.model_validate(holder).expires_at):
                        raise Duplicate(f"Trust line request already pending: {holder_id}")
                    txn.update(
                        Collections.TRUSTLINE_REQUESTS,
                        holder_id,
                        {"status": TrustLineStatus.EXPIRED.value, "failure_reason": "expired"},
                    )
                    logger.info("trustline.closed", extra={"id": holder_id, "status": "expired", "reason": "expired"})
            expires_at = now + timedelta(seconds=self._settings.trustline_ttl_sec)
            txn.set(
                Collections.TRUSTLINE_SLOTS,
                slot,
                {"request_id": request_id, "expires_at": expires_at.isoformat()},
            )

    async def _release_slot(self, slot: str, request_id: str) -> None:
        async with self._store.transaction() as txn:
            held = await txn.get(Collections.TRUSTLINE_SLOTS, slot)
            if held and held.get("request_id") == request_id:
                txn.update(Collections.TRUSTLINE_SLOTS, slot, {"request_id": None})

    def _is_expired(self, expires_at: datetime) -> bool:
        return self._clock() > expires_at


def _slot_key(donor_address: str, token_code: str, issuer_address: str) -> str:
    return f"{donor_address}:{token_code}:{issuer_address}"


def _request_slot(request: TrustLineRequest) -> str:
    return _slot_key(request.donor_address, request.token_code, request.issuer_address)


def _release(txn: Transaction, held: Optional[dict], request: TrustLineRequest) -> None:
    if held and held.get("request_id") == request.id:
        txn.update(Collections.TRUSTLINE_SLOTS, _request_slot(request), {"request_id": None})

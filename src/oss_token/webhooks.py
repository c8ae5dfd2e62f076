"""Route signing-provider outcomes to the subsystem that opened the request."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

from .config import Settings, get_settings
from .donation.manager import DonationManager
from .donation.outbox import IssuanceOutbox
from .donation.trustline import TrustLineManager
from .donation.wallet_link import WalletLinkManager
from .errors import Expired, NotFound, ValidationError, VerificationFailed
from .models import SigningPurpose, TrustLineStatus, WalletLinkStatus
from .signing.client import SigningProvider, SigningStatus
from .signing.webhook import parse_webhook_body, verify_webhook_signature

logger = logging.getLogger(__name__)

Route = Callable[[str, SigningStatus], Awaitable[dict[str, Any]]]


class WebhookRouter:
    """Dispatch by the purpose tag embedded when the request was created.

    Only the payload reference is read from the callback body. Signer,
    transaction hash, purpose and reference all come from the provider's
    authenticated status endpoint.
    """

    def __init__(
        self,
        signing: SigningProvider,
        donations: DonationManager,
        trustlines: TrustLineManager,
        wallet_links: WalletLinkManager,
        settings: Optional[Settings] = None,
        outbox: Optional[IssuanceOutbox] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._signing = signing
        self._donations = donations
        self._trustlines = trustlines
        self._wallet_links = wallet_links
        self._outbox = outbox
        self._routes: dict[SigningPurpose, Route] = {
            SigningPurpose.DONATION: self._route_donation,
            SigningPurpose.TRUSTLINE: self._route_trustline,
            SigningPurpose.WALLET_LINK: self._route_wallet_link,
        }

    async def handle_callback(self, headers: Mapping[str, str], body: bytes) -> dict[str, Any]:
        verify_webhook_signature(
            self._settings.signing_api_secret.get_secret_value(),
            headers,
            body,
            self._settings.webhook_max_skew_sec,
        )
        event = parse_webhook_body(body)
        status = await self._signing.get_status(event.ref)
        return await self.handle_status(status)

    async def handle_status(self, status: SigningStatus) -> dict[str, Any]:
        route = self._routes.get(status.purpose) if status.purpose else None
        if route is None or not status.reference:
            raise NotFound(f"No handler for signing request: {status.ref}")
        if not status.resolved:
            return {"purpose": status.purpose.value, "reference": status.reference, "status": "pending"}
        result = await route(status.reference, status)
        logger.info("webhook.routed", extra={"ref": status.ref, "purpose": status.purpose.value, **result})
        return {"purpose": status.purpose.value, "reference": status.reference, **result}

    async def _route_donation(self, request_id: str, status: SigningStatus) -> dict[str, Any]:
        request = await self._donations.get_request(request_id)
        _check_ref(request.signing_ref, status.ref)
        if status.rejected:
            await self._donations.fail_request(request_id, "signing request rejected")
            return {"status": "failed"}
        if status.expired:
            await self._donations.expire_request(request_id)
            return {"status": "expired"}
        if not status.account or not status.tx_hash:
            raise ValidationError("Signed donation is missing signer or transaction hash")
        try:
            record = await self._donations.complete_with_retry(request_id, status.account, status.tx_hash)
        except Expired:
            return {"status": "expired"}
        except VerificationFailed:
            return {"status": "failed"}
        return {"status": "completed", "record_id": record.id}

    async def _route_trustline(self, request_id: str, status: SigningStatus) -> dict[str, Any]:
        request = await self._trustlines.get_request(request_id)
        _check_ref(request.signing_ref, status.ref)
        if status.rejected:
            await self._trustlines.fail_request(request_id, "signing request rejected")
            return {"status": "failed"}
        if status.expired:
            await self._trustlines.fail_request(request_id, "signing request expired", TrustLineStatus.EXPIRED)
            return {"status": "expired"}
        updated = await self._trustlines.complete_trust_line(request_id, status.tx_hash)
        if self._outbox and status.signed:
            # the provider saw the signature, whatever the local bookkeeping says
            await self._outbox.requeue_trustline_required(request.donor_address)
        return {"status": updated.status.value}

    async def _route_wallet_link(self, request_id: str, status: SigningStatus) -> dict[str, Any]:
        request = await self._wallet_links.get_request(request_id)
        _check_ref(request.signing_ref, status.ref)
        if status.rejected or status.expired:
            closed = WalletLinkStatus.EXPIRED if status.expired else WalletLinkStatus.FAILED
            await self._wallet_links.fail_link(request_id, closed)
            return {"status": closed.value}
        try:
            linked = await self._wallet_links.complete_link(request_id, status.account or "")
        except Expired:
            return {"status": "expired"}
        return {"status": linked.status.value}


def _check_ref(expected: Optional[str], actual: str) -> None:
    if expected != actual:
        raise NotFound(f"Signing request {actual} does not belong to this reference")

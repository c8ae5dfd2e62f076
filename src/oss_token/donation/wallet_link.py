"""Link a user id to the ledger account that signs a SignIn request."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional
from uuid import uuid4

from ..config import Settings, get_settings
from ..errors import Expired, NotFound, ValidationError
from ..models import Clock, SigningPurpose, WalletLinkRequest, WalletLinkStatus, utcnow
from ..signing.client import SigningProvider, SigningRequest
from ..signing.watcher import SigningStatusWatcher
from ..store import Collections, DocumentStore

logger = logging.getLogger(__name__)


class WalletLinkManager:
    def __init__(
        self,
        store: DocumentStore,
        signing: SigningProvider,
        settings: Optional[Settings] = None,
        watcher: Optional[SigningStatusWatcher] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._signing = signing
        self._watcher = watcher
        self._clock = clock

    async def create_link(self, uid: str) -> tuple[WalletLinkRequest, SigningRequest]:
        if not uid:
            raise ValidationError("uid is required")
        now = self._clock()
        request_id = uuid4().hex
        ttl = self._settings.trustline_ttl_sec
        signing = await self._signing.create_signing_request(
            {"TransactionType": "SignIn"},
            ttl,
            SigningPurpose.WALLET_LINK,
            request_id,
        )
        request = WalletLinkRequest(
            id=request_id,
            uid=uid,
            signing_ref=signing.ref,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl),
        )
        await self._store.set(Collections.WALLET_LINK_REQUESTS, request_id, request.model_dump(mode="json"))
        logger.info("wallet_link.requested", extra={"id": request_id, "uid": uid, "signing_ref": signing.ref})
        if self._watcher:
            self._watcher.track(signing, ttl)
        return request, signing

    async def complete_link(self, request_id: str, account: str) -> WalletLinkRequest:
        """Store ``account`` as the uid's wallet. Repeat calls return the linked request."""

        if not account:
            raise ValidationError("Signer account is required")
        async with self._store.transaction() as txn:
            data = await txn.get(Collections.WALLET_LINK_REQUESTS, request_id)
            if data is None:
                raise NotFound(f"Wallet link request not found: {request_id}")
            request = WalletLinkRequest.model_validate(data)
            if request.status == WalletLinkStatus.LINKED:
                return request
            if request.status != WalletLinkStatus.CREATED or self._clock() > request.expires_at:
                raise Expired(f"Wallet link request is no longer open: {request_id}")
            txn.update(
                Collections.WALLET_LINK_REQUESTS,
                request_id,
                {"status": WalletLinkStatus.LINKED.value, "account": account},
            )
            txn.set(
                Collections.WALLET_LINKS,
                request.uid,
                {"uid": request.uid, "account": account, "linked_at": self._clock().isoformat()},
            )
        logger.info("wallet_link.completed", extra={"id": request_id, "uid": request.uid, "account": account})
        return request.model_copy(update={"status": WalletLinkStatus.LINKED, "account": account})

    async def fail_link(self, request_id: str, status: WalletLinkStatus = WalletLinkStatus.FAILED) -> None:
        async with self._store.transaction() as txn:
            data = await txn.get(Collections.WALLET_LINK_REQUESTS, request_id)
            if data is None:
                raise NotFound(f"Wallet link request not found: {request_id}")
            if data.get("status") != WalletLinkStatus.CREATED.value:
                return
            txn.update(Collections.WALLET_LINK_REQUESTS, request_id, {"status": status.value})

    async def get_request(self, request_id: str) -> WalletLinkRequest:
        data = await self._store.get(Collections.WALLET_LINK_REQUESTS, request_id)
        if data is None:
            raise NotFound(f"Wallet link request not found: {request_id}")
        return WalletLinkRequest.model_validate(data)

    async def linked_account(self, uid: str) -> Optional[str]:
        data = await self._store.get(Collections.WALLET_LINKS, uid)
        return data.get("account") if data else None

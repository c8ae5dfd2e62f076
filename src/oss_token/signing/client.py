"""Hosted signing provider (Xaman) REST client."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx

from ..config import Settings, get_settings
from ..errors import NotFound, UpstreamUnavailable
from ..models import SigningPurpose

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SigningRequest:
    ref: str
    qr_image_url: Optional[str]
    status_channel: Optional[str]
    sign_url: Optional[str] = None


@dataclass(slots=True)
class SigningStatus:
    ref: str
    signed: bool = False
    rejected: bool = False
    expired: bool = False
    account: Optional[str] = None
    tx_hash: Optional[str] = None
    purpose: Optional[SigningPurpose] = None
    reference: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.signed or self.rejected or self.expired


class SigningProvider(Protocol):
    async def create_signing_request(
        self,
        tx_template: dict[str, Any],
        ttl_seconds: int,
        purpose: SigningPurpose,
        reference: str,
    ) -> SigningRequest: ...

    async def get_status(self, ref: str) -> SigningStatus: ...

    async def cancel(self, ref: str) -> bool: ...


class XamanSigningClient:
    """Lightweight wrapper around the Xaman platform payload endpoints."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self._settings = settings or get_settings()
        headers = {
            "X-API-Key": self._settings.signing_api_key.get_secret_value(),
            "X-API-Secret": self._settings.signing_api_secret.get_secret_value(),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self._client = client or httpx.AsyncClient(
            base_url=str(self._settings.signing_api_base),
            headers=headers,
            timeout=self._settings.signing_timeout_sec,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def create_signing_request(
        self,
        tx_template: dict[str, Any],
        ttl_seconds: int,
        purpose: SigningPurpose,
        reference: str,
    ) -> SigningRequest:
        body = {
            "txjson": tx_template,
            "options": {
                "submit": tx_template.get("TransactionType") != "SignIn",
                "multisign": False,
                "expire": max(1, math.ceil(ttl_seconds / 60)),
            },
            "custom_meta": {
                "identifier": f"{purpose.value[:2]}-{reference}"[:40],
                "blob": {"purpose": purpose.value, "reference": reference},
            },
        }
        payload = await self._call("POST", "/platform/payload", json=body)
        refs = payload.get("refs") or {}
        uuid = payload.get("uuid")
        if not uuid:
            raise UpstreamUnavailable("Signing provider returned no payload reference")
        logger.info("signing.request_created", extra={"ref": uuid, "purpose": purpose.value})
        return SigningRequest(
            ref=str(uuid),
            qr_image_url=refs.get("qr_png"),
            status_channel=refs.get("websocket_status"),
            sign_url=(payload.get("next") or {}).get("always"),
        )

    async def get_status(self, ref: str) -> SigningStatus:
        payload = await self._call("GET", f"/platform/payload/{ref}")
        return parse_payload_status(ref, payload)

    async def cancel(self, ref: str) -> bool:
        payload = await self._call("DELETE", f"/platform/payload/{ref}")
        return bool(payload.get("result", {}).get("cancelled"))

    async def _call(self, method: str, path: str, json: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.RequestError as exc:
            raise UpstreamUnavailable(f"Signing provider unreachable: {exc}") from exc
        if response.status_code == 404:
            raise NotFound(f"Signing request not found: {path}")
        try:
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            raise UpstreamUnavailable(
                f"Signing provider error {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except ValueError as exc:
            raise UpstreamUnavailable("Signing provider returned invalid JSON") from exc


def parse_payload_status(ref: str, payload: dict[str, Any]) -> SigningStatus:
    """Map the provider's payload document onto :class:`SigningStatus`."""

    meta = payload.get("meta") or {}
    response = payload.get("response") or {}
    purpose, reference = parse_custom_meta(payload.get("custom_meta"))
    signed = bool(meta.get("signed"))
    rejected = not signed and (bool(meta.get("cancelled")) or bool(meta.get("resolved")))
    return SigningStatus(
        ref=ref,
        signed=signed,
        rejected=rejected,
        expired=not signed and bool(meta.get("expired")),
        account=response.get("account") or response.get("signer") or None,
        tx_hash=response.get("txid") or None,
        purpose=purpose,
        reference=reference,
    )


def parse_custom_meta(custom_meta: Any) -> tuple[Optional[SigningPurpose], Optional[str]]:
    if not isinstance(custom_meta, dict):
        return None, None
    blob = custom_meta.get("blob")
    if not isinstance(blob, dict):
        return None, None
    try:
        purpose = SigningPurpose(blob.get("purpose"))
    except ValueError:
        purpose = None
    reference = blob.get("reference")
    return purpose, str(reference) if reference else None

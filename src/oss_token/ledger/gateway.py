"""Typed client over the ledger node's JSON-RPC interface."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Protocol

import httpx

from ..config import Settings, get_settings
from ..errors import TransientLedgerError, UpstreamUnavailable
from ..wallets import Wallet

logger = logging.getLogger(__name__)

SUCCESS_CODE = "tesSUCCESS"
UNCONFIRMED_CODE = "submit_unconfirmed"
# engine results that may still end up in a validated ledger
_PROVISIONAL_PREFIXES = ("tes", "ter", "tec")
# transport failures that guarantee the request never reached the node
_NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


@dataclass(slots=True)
class LedgerTransaction:
    hash: str
    tx: dict[str, Any]
    meta: dict[str, Any] = field(default_factory=dict)
    validated: bool = False

    @property
    def result_code(self) -> Optional[str]:
        code = self.meta.get("TransactionResult")
        return code if isinstance(code, str) else None


@dataclass(slots=True)
class TrustLine:
    currency: str
    issuer: str
    limit: Decimal
    balance: Decimal


@dataclass(slots=True)
class SubmitResult:
    hash: Optional[str]
    result_code: str
    validated: bool = False

    @property
    def succeeded(self) -> bool:
        return self.validated and self.result_code == SUCCESS_CODE


class LedgerGateway(Protocol):
    async def submit(self, tx_template: dict[str, Any], signer: Wallet) -> SubmitResult: ...

    async def get_transaction(self, tx_hash: str) -> LedgerTransaction: ...

    async def get_trust_lines(self, address: str) -> list[TrustLine]: ...

    async def get_balance(self, address: str) -> int: ...

    async def book_offers(
        self, taker_gets: dict[str, Any], taker_pays: dict[str, Any], limit: int = 10
    ) -> list[dict[str, Any]]: ...


class XRPLGateway:
    """rippled JSON-RPC client.

    ``submit`` uses the node's sign-and-submit mode, so it must point at a
    node the operator runs: the issuer seed is sent to that node only.
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self._settings = settings or get_settings()
        self._client = client or httpx.AsyncClient(
            base_url=str(self._settings.ledger_rpc_url),
            timeout=self._settings.ledger_timeout_sec,
            headers={"Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def submit(self, tx_template: dict[str, Any], signer: Wallet) -> SubmitResult:
        tx_json = {**tx_template, "Account": signer.address}
        try:
            result = await self._request(
                "submit",
                {"tx_json": tx_json, "secret": signer.seed, "fee_mult_max": 1000},
            )
        except UpstreamUnavailable as exc:
            cause = exc.__cause__
            if isinstance(cause, httpx.TransportError) and not isinstance(cause, _NOT_SENT_ERRORS):
                # the node may have applied it; resubmitting could pay twice
                logger.error("ledger.submit_unconfirmed", extra={"account": signer.address, "error": exc.message})
                return SubmitResult(hash=None, result_code=UNCONFIRMED_CODE)
            raise
        engine_result = str(result.get("engine_result", "unknown"))
        tx_hash = (result.get("tx_json") or {}).get("hash")
        logger.info("ledger.submitted", extra={"hash": tx_hash, "engine_result": engine_result})

        if not tx_hash or not engine_result.startswith(_PROVISIONAL_PREFIXES):
            return SubmitResult(hash=tx_hash, result_code=engine_result)
        return await self._await_validation(tx_hash, engine_result)

    async def get_transaction(self, tx_hash: str) -> LedgerTransaction:
        result = await self._request("tx", {"transaction": tx_hash, "binary": False})
        tx = result.get("tx_json")
        if not isinstance(tx, dict):
            # api_version 1 returns the transaction fields at the top level
            tx = {k: v for k, v in result.items() if k not in {"meta", "validated", "status"}}
        meta = result.get("meta") if isinstance(result.get("meta"), dict) else {}
        return LedgerTransaction(
            hash=str(result.get("hash") or tx.get("hash") or tx_hash),
            tx=tx,
            meta=meta,
            validated=bool(result.get("validated")),
        )

    async def get_trust_lines(self, address: str) -> list[TrustLine]:
        lines: list[TrustLine] = []
        marker: Any = None
        while True:
            params: dict[str, Any] = {"account": address, "ledger_index": "validated"}
            if marker is not None:
                params["marker"] = marker
            try:
                result = await self._request("account_lines", params)
            except UpstreamUnavailable as exc:
                if "actNotFound" in str(exc):
                    return []
                raise
            for raw in result.get("lines", []):
                line = _parse_line(raw)
                if line is not None:
                    lines.append(line)
            marker = result.get("marker")
            if marker is None:
                return lines

    async def get_balance(self, address: str) -> int:
        result = await self._request("account_info", {"account": address, "ledger_index": "validated"})
        try:
            return int(result["account_data"]["Balance"])
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamUnavailable(f"Malformed account_info response for {address}") from exc

    async def book_offers(
        self, taker_gets: dict[str, Any], taker_pays: dict[str, Any], limit: int = 10
    ) -> list[dict[str, Any]]:
        result = await self._request(
            "book_offers",
            {"taker_gets": taker_gets, "taker_pays": taker_pays, "limit": limit},
        )
        offers = result.get("offers", [])
        return offers if isinstance(offers, list) else []

    async def _await_validation(self, tx_hash: str, engine_result: str) -> SubmitResult:
        for _ in range(self._settings.ledger_validation_attempts):
            await asyncio.sleep(self._settings.ledger_validation_poll_sec)
            try:
                tx = await self.get_transaction(tx_hash)
            except TransientLedgerError:
                continue
            if tx.validated:
                return SubmitResult(hash=tx_hash, result_code=tx.result_code or engine_result, validated=True)
        logger.warning("ledger.validation_timeout", extra={"hash": tx_hash})
        return SubmitResult(hash=tx_hash, result_code=engine_result)

    async def _request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post("", json={"method": method, "params": [params]})
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"Ledger node request failed ({method}): {exc}") from exc
        except ValueError as exc:
            raise UpstreamUnavailable(f"Ledger node returned invalid JSON ({method})") from exc

        result = payload.get("result") if isinstance(payload, dict) else None
        if not isinstance(result, dict):
            raise UpstreamUnavailable(f"Ledger node returned no result ({method})")
        if result.get("status") == "error" or "error" in result:
            error = result.get("error", "unknown")
            if error == "txnNotFound":
                raise TransientLedgerError(f"Transaction not found yet: {params.get('transaction')}")
            raise UpstreamUnavailable(f"Ledger error ({method}): {error}")
        return result


def _parse_line(raw: Any) -> Optional[TrustLine]:
    try:
        return TrustLine(
            currency=str(raw["currency"]),
            issuer=str(raw["account"]),
            limit=Decimal(str(raw["limit"])),
            balance=Decimal(str(raw.get("balance", "0"))),
        )
    except (KeyError, TypeError, InvalidOperation):
        logger.debug("ledger.line_parse_error", extra={"raw": str(raw)[:100]})
        return None

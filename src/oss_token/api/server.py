"""FastAPI surface the web front end calls."""

from __future__ import annotations

import logging
from dataclasses import asdict
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..donation.history import HistoryAggregator
from ..donation.manager import DonationManager
from ..donation.trustline import TrustLineManager
from ..donation.wallet_link import WalletLinkManager
from ..errors import NotFound, ServiceError
from ..models import PriceTrigger, ProjectDonationStats
from ..pricing.engine import PricingService
from ..pricing.quality import QualityScoreService
from ..signing.client import SigningRequest
from ..webhooks import WebhookRouter

logger = logging.getLogger(__name__)


class PledgeCommand(BaseModel):
    project_id: str = Field(..., min_length=1)
    amount: Decimal
    donor_uid: Optional[str] = Field(default=None, max_length=128)
    donor_address: Optional[str] = Field(default=None, max_length=64)


class TrustLineCommand(BaseModel):
    project_id: str = Field(..., min_length=1)
    donor_address: str = Field(..., min_length=25, max_length=64)


class WalletLinkCommand(BaseModel):
    uid: str = Field(..., min_length=1, max_length=128)


def _signing_to_dict(signing: SigningRequest) -> Dict[str, Any]:
    return {
        "ref": signing.ref,
        "qr_image_url": signing.qr_image_url,
        "status_channel": signing.status_channel,
        "sign_url": signing.sign_url,
    }


def _stats_to_dict(stats: ProjectDonationStats) -> Dict[str, Any]:
    data = asdict(stats)
    for key in ("total_amount", "total_tokens_issued"):
        data[key] = str(data[key])
    if data["last_donation_at"] is not None:
        data["last_donation_at"] = data["last_donation_at"].isoformat()
    return data


class SettlementServer:
    """Wraps the FastAPI application exposing settlement and pricing endpoints."""

    def __init__(
        self,
        donations: DonationManager,
        trustlines: TrustLineManager,
        wallet_links: WalletLinkManager,
        webhooks: WebhookRouter,
        pricing: PricingService,
        quality: QualityScoreService,
        history: HistoryAggregator,
    ) -> None:
        self._donations = donations
        self._trustlines = trustlines
        self._wallet_links = wallet_links
        self._webhooks = webhooks
        self._pricing = pricing
        self._quality = quality
        self._history = history
        self._app = FastAPI(title="OSS Token Settlement", version="1.0.0")

        @self._app.exception_handler(ServiceError)
        async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
            if exc.status_code >= 500:
                logger.warning("api.upstream_error", extra={"path": request.url.path, "error": exc.message})
            return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

        @self._app.get("/health", status_code=status.HTTP_200_OK)
        async def health() -> Dict[str, str]:  # noqa: ANN202 - FastAPI response
            return {"status": "ok"}

        @self._app.post("/pledges", status_code=status.HTTP_201_CREATED)
        async def create_pledge(payload: PledgeCommand) -> Dict[str, Any]:  # noqa: ANN202
            created = await self._donations.create_pledge(
                payload.project_id,
                payload.amount,
                donor_uid=payload.donor_uid,
                donor_address=payload.donor_address,
            )
            return {
                "request": created.request.model_dump(mode="json"),
                "signing": _signing_to_dict(created.signing),
            }

        @self._app.get("/pledges/{request_id}")
        async def pledge_status(request_id: str, sync: bool = False) -> Dict[str, Any]:  # noqa: ANN202
            if sync:
                await self._donations.sync_pledge(request_id)
            view = await self._donations.pledge_status(request_id)
            return {
                "request": view.request.model_dump(mode="json"),
                "record": view.record.model_dump(mode="json") if view.record else None,
                "trustline_required": view.trustline_required,
            }

        @self._app.post("/trustlines")
        async def ensure_trustline(payload: TrustLineCommand) -> Dict[str, Any]:  # noqa: ANN202
            capability = await self._trustlines.ensure_capability(payload.project_id, payload.donor_address)
            if capability.already_set:
                return {"already_set": True}
            return {
                "already_set": False,
                "request": capability.request.model_dump(mode="json") if capability.request else None,
                "signing": _signing_to_dict(capability.signing) if capability.signing else None,
            }

        @self._app.get("/trustlines/{request_id}")
        async def trustline_status(request_id: str) -> Dict[str, Any]:  # noqa: ANN202
            request = await self._trustlines.get_request(request_id)
            return request.model_dump(mode="json")

        @self._app.post("/wallet-links", status_code=status.HTTP_201_CREATED)
        async def create_wallet_link(payload: WalletLinkCommand) -> Dict[str, Any]:  # noqa: ANN202
            request, signing = await self._wallet_links.create_link(payload.uid)
            return {"request": request.model_dump(mode="json"), "signing": _signing_to_dict(signing)}

        @self._app.post("/webhooks/signing")
        async def signing_webhook(request: Request) -> Dict[str, Any]:  # noqa: ANN202
            body = await request.body()
            return await self._webhooks.handle_callback(request.headers, body)

        @self._app.get("/projects/{project_id}/price")
        async def project_price(project_id: str) -> Dict[str, Any]:  # noqa: ANN202
            current = await self._pricing.current_price(project_id)
            return current.model_dump(mode="json")

        @self._app.get("/projects/{project_id}/price/history")
        async def project_price_history(project_id: str, limit: int = 30) -> Dict[str, Any]:  # noqa: ANN202
            records = await self._pricing.price_history(project_id, limit=max(1, min(limit, 365)))
            return {"history": [record.model_dump(mode="json") for record in records]}

        @self._app.post("/projects/{project_id}/price/recompute", status_code=status.HTTP_202_ACCEPTED)
        async def recompute_price(project_id: str) -> Dict[str, Any]:  # noqa: ANN202
            # donation and metrics triggers belong to the flows that cause them
            record = await self._pricing.recompute(project_id, PriceTrigger.MANUAL)
            return record.model_dump(mode="json")

        @self._app.get("/projects/{project_id}/quality")
        async def project_quality(project_id: str) -> Dict[str, Any]:  # noqa: ANN202
            score = await self._quality.get(project_id)
            if score is None:
                raise NotFound(f"No quality score recorded for project: {project_id}")
            return score.model_dump(mode="json")

        @self._app.post("/projects/{project_id}/quality/refresh", status_code=status.HTTP_202_ACCEPTED)
        async def refresh_quality(project_id: str) -> Dict[str, Any]:  # noqa: ANN202
            score = await self._quality.refresh(project_id)
            return score.model_dump(mode="json")

        @self._app.get("/projects/{project_id}/stats")
        async def project_stats(project_id: str) -> Dict[str, Any]:  # noqa: ANN202
            stats = await self._history.project_stats(project_id)
            return _stats_to_dict(stats)

    @property
    def app(self) -> FastAPI:
        return self._app

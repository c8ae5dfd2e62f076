"""Application bootstrap and lifecycle management."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import uvicorn

from .api.server import SettlementServer
from .config import Settings, get_settings
from .donation.history import HistoryAggregator
from .donation.issuance import TokenIssuanceManager
from .donation.manager import DonationManager
from .donation.outbox import IssuanceOutbox
from .donation.trustline import TrustLineManager
from .donation.wallet_link import WalletLinkManager
from .errors import ServiceError
from .ledger.gateway import LedgerGateway, XRPLGateway
from .logging import configure_logging
from .models import PriceTrigger
from .pricing.engine import PricingService
from .pricing.metrics import GitHubMetricsFetcher
from .pricing.quality import QualityScoreService
from .pricing.rates import ExchangeRateCache, OrderBookRateSource
from .signing.client import SigningProvider, SigningStatus, XamanSigningClient
from .signing.watcher import SigningStatusWatcher
from .store import Collections, DocumentStore, InMemoryDocumentStore, ProjectStore
from .wallets import WalletPool
from .webhooks import WebhookRouter

logger = logging.getLogger(__name__)


class SettlementApp:
    """Coordinates settlement, issuance, pricing and API layers."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[DocumentStore] = None,
        ledger: Optional[LedgerGateway] = None,
        signing: Optional[SigningProvider] = None,
        metrics: Optional[GitHubMetricsFetcher] = None,
    ) -> None:
        self._settings = settings or get_settings()
        configure_logging(self._settings.log_level)

        self._store = store or InMemoryDocumentStore()
        self._ledger = ledger or XRPLGateway(self._settings)
        self._signing = signing or XamanSigningClient(self._settings)
        self._metrics = metrics or GitHubMetricsFetcher(self._settings)
        self._wallets = WalletPool.from_settings(self._settings)
        self._projects = ProjectStore(self._store)

        self._watcher: Optional[SigningStatusWatcher] = None
        if self._settings.signing_watch_enabled:
            self._watcher = SigningStatusWatcher(self._signing, self._on_signing_status, self._settings)

        self.history = HistoryAggregator(self._store)
        self._rates = ExchangeRateCache(OrderBookRateSource(self._ledger, self._settings), self._settings)
        self.pricing = PricingService(self._store, self._projects, self.history, self._rates)
        self.quality = QualityScoreService(self._store, self._projects, self._metrics, self.pricing)
        self.issuance = TokenIssuanceManager(
            self._store, self._projects, self._ledger, self._wallets, self._settings
        )
        self.outbox = IssuanceOutbox(self._store, self._settle_record, self._settings)
        self.donations = DonationManager(
            self._store,
            self._projects,
            self._ledger,
            self._signing,
            self._wallets,
            self._settings,
            outbox=self.outbox,
            watcher=self._watcher,
        )
        self.trustlines = TrustLineManager(
            self._store,
            self._projects,
            self._ledger,
            self._signing,
            self._settings,
            watcher=self._watcher,
            outbox=self.outbox,
        )
        self.wallet_links = WalletLinkManager(self._store, self._signing, self._settings, watcher=self._watcher)
        self.webhooks = WebhookRouter(
            self._signing,
            self.donations,
            self.trustlines,
            self.wallet_links,
            self._settings,
            outbox=self.outbox,
        )
        self._server = SettlementServer(
            self.donations,
            self.trustlines,
            self.wallet_links,
            self.webhooks,
            self.pricing,
            self.quality,
            self.history,
        )

        self._api_task: Optional[asyncio.Task[None]] = None
        self._api_server: Optional[uvicorn.Server] = None

    @property
    def projects(self) -> ProjectStore:
        return self._projects

    @property
    def server(self) -> SettlementServer:
        return self._server

    async def start(self) -> None:
        await self.outbox.start()
        self._api_task = asyncio.create_task(self._run_api(), name="settlement-api")
        logger.info(
            "app.started",
            extra={"network": self._settings.ledger_network.value, "issuers": len(self._wallets.active_issuers)},
        )

    async def stop(self) -> None:
        if self._api_server:
            self._api_server.should_exit = True
        if self._api_task:
            try:
                await self._api_task
            except asyncio.CancelledError:
                pass

        if self._watcher:
            await self._watcher.stop()
        await self.outbox.stop()
        for client in (self._ledger, self._signing, self._metrics):
            aclose = getattr(client, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _settle_record(self, record_id: str, first: bool) -> None:
        await settle_record(self.issuance, self.pricing, self._store, record_id, first)

    async def _on_signing_status(self, status: SigningStatus) -> None:
        await self.webhooks.handle_status(status)

    async def _run_api(self) -> None:
        config = uvicorn.Config(
            self._server.app,
            host=self._settings.api_host,
            port=self._settings.api_port,
            log_level=self._settings.log_level.value.lower(),
            loop="asyncio",
            lifespan="off",
        )
        self._api_server = uvicorn.Server(config)
        try:
            await self._api_server.serve()
        except asyncio.CancelledError:
            pass


async def settle_record(
    issuance: TokenIssuanceManager,
    pricing: PricingService,
    store: DocumentStore,
    record_id: str,
    first: bool,
) -> None:
    """Outbox handler: issue the reward, then reprice the project.

    Only the first handling of a record reprices. Later ones are issuance
    retries for a donation that is already counted.
    """

    try:
        await issuance.process_for_donation(record_id)
    finally:
        if first:
            await _reprice_for_donation(pricing, store, record_id)


async def _reprice_for_donation(pricing: PricingService, store: DocumentStore, record_id: str) -> None:
    record = await store.get(Collections.PLEDGE_RECORDS, record_id)
    if record is None:
        return
    try:
        await pricing.recompute(record["project_id"], PriceTrigger.DONATION)
    except ServiceError as exc:
        logger.warning("pricing.donation_recompute_failed", extra={"record_id": record_id, "error": exc.message})

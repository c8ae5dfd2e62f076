"""Operator wallet pool, built once at start-up and injected where needed."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional, Sequence

from .config import Settings, WalletConfig
from .errors import ConfigurationError


@dataclass(frozen=True, slots=True)
class Wallet:
    id: str
    address: str
    seed: str
    active: bool


def stable_hash(value: str) -> int:
    """64-bit hash of ``value`` that is identical across processes and runs."""

    digest = hashlib.sha256(value.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


def assign_issuer(active_issuers: Sequence[Wallet], project_id: str) -> Wallet:
    """Pick the issuer for a new project deterministically from its id."""

    if not active_issuers:
        raise ConfigurationError("No active issuer wallets are configured")
    return active_issuers[stable_hash(project_id) % len(active_issuers)]


@dataclass(frozen=True, slots=True)
class WalletPool:
    issuers: tuple[Wallet, ...]
    treasuries: tuple[Wallet, ...]

    @classmethod
    def from_settings(cls, settings: Settings) -> "WalletPool":
        return cls(
            issuers=tuple(_to_wallet(cfg) for cfg in settings.issuer_wallets),
            treasuries=tuple(_to_wallet(cfg) for cfg in settings.treasury_wallets),
        )

    @property
    def active_issuers(self) -> tuple[Wallet, ...]:
        return tuple(wallet for wallet in self.issuers if wallet.active)

    def treasury(self) -> Wallet:
        """Return the active treasury account that receives donor payments."""

        for wallet in self.treasuries:
            if wallet.active:
                return wallet
        raise ConfigurationError("No active treasury wallet is configured")

    def find_issuer(self, address: str) -> Optional[Wallet]:
        for wallet in self.issuers:
            if wallet.address == address:
                return wallet
        return None

    def require_issuer(self, address: str) -> Wallet:
        """Return the controlled, active issuer wallet for ``address``."""

        wallet = self.find_issuer(address)
        if wallet is None:
            raise ConfigurationError(f"Issuer address is not an operator wallet: {address}")
        if not wallet.active:
            raise ConfigurationError(f"Issuer wallet is inactive: {address}")
        return wallet

    def assign_issuer(self, project_id: str) -> Wallet:
        return assign_issuer(self.active_issuers, project_id)


def _to_wallet(cfg: WalletConfig) -> Wallet:
    return Wallet(id=cfg.id, address=cfg.address, seed=cfg.secret.get_secret_value(), active=cfg.active)

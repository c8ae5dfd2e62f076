from __future__ import annotations

from oss_token.config import Settings

ISSUER = "rIssuerAAAAAAAAAAAAAAAAAAAAAA1"
SPARE_ISSUER = "rIssuerDDDDDDDDDDDDDDDDDDDDDD4"
TREASURY = "rTreasuryBBBBBBBBBBBBBBBBBBBB2"
DONOR = "rDonorCCCCCCCCCCCCCCCCCCCCCCC3"
SIGNING_SECRET = "a1b2c3d4-e5f6-7890-abcd-ef1234567890"


def make_settings(**overrides) -> Settings:
    data = {
        "LEDGER_NETWORK": "testnet",
        "LEDGER_RPC_URL": "http://rippled:5005",
        "LEDGER_LOOKUP_ATTEMPTS": 2,
        "LEDGER_LOOKUP_DELAY_SEC": 0,
        "LEDGER_VALIDATION_POLL_SEC": 0,
        "LEDGER_VALIDATION_ATTEMPTS": 3,
        "ISSUER_WALLETS": [
            {"id": "issuer-1", "address": ISSUER, "secret": "sIssuerSeed", "active": True},
            {"id": "issuer-2", "address": SPARE_ISSUER, "secret": "sSpareSeed", "active": False},
        ],
        "TREASURY_WALLETS": [
            {"id": "treasury-1", "address": TREASURY, "secret": "sTreasurySeed", "active": True},
        ],
        "SIGNING_API_BASE": "https://xumm.example.com/api/v1",
        "SIGNING_API_KEY": "test-key",
        "SIGNING_API_SECRET": SIGNING_SECRET,
        "SIGNING_WATCH_ENABLED": False,
        "VERIFICATION_SECRET": "verification-secret",
        "PLEDGE_MIN_AMOUNT": "1",
        "PLEDGE_MAX_AMOUNT": "10000",
        "PLEDGE_TTL_SEC": 600,
        "TRUSTLINE_TTL_SEC": 300,
        "ISSUANCE_POLICY": "ratio",
        "ISSUANCE_RATIO": "1",
        "ISSUANCE_BATCH_DELAY_SEC": 0,
        "ISSUANCE_QUEUE_SIZE": 16,
        "EXCHANGE_RATE_TTL_SEC": 300,
        "FALLBACK_EXCHANGE_RATE": 2.5,
        "GITHUB_API_BASE": "https://api.github.example.com",
        "API_HOST": "127.0.0.1",
        "API_PORT": 9000,
        "LOG_LEVEL": "INFO",
    }
    data.update(overrides)
    return Settings.model_validate(data)

"""Values that bind an off-ledger pledge to one on-ledger payment."""

from __future__ import annotations

import hashlib
import hmac
from decimal import Decimal

from ..wallets import stable_hash

DESTINATION_TAG_MODULUS = 2**32 - 1
MEMO_TYPE = "donation_verification"


def destination_tag(project_id: str) -> int:
    """Per-project sub-address on the shared treasury account."""

    return stable_hash(project_id) % DESTINATION_TAG_MODULUS


def format_amount(amount: Decimal) -> str:
    """Canonical decimal text, so ``10`` and ``10.00`` bind identically."""

    return format(Decimal(amount).normalize(), "f")


def verification_token(
    secret: str,
    project_id: str,
    amount: Decimal,
    epoch_ms: int,
    kind: str = "donation",
    length: int = 32,
) -> str:
    """Keyed digest of the pledge inputs, short enough for a ledger memo.

    Without ``secret`` an observer of the ledger cannot produce a token for
    a pledge they did not create.
    """

    message = f"{project_id}:{kind}:{format_amount(amount)}:{epoch_ms}"
    digest = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
    return digest[:length]

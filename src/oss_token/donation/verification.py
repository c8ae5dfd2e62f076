"""The one routine that decides whether a ledger payment settles a pledge."""

from __future__ import annotations

import logging
from typing import Any

from ..errors import TransientLedgerError
from ..ledger.codec import iter_memo_data, xrp_to_drops
from ..ledger.gateway import SUCCESS_CODE, LedgerGateway, LedgerTransaction
from ..models import PledgeRequest

logger = logging.getLogger(__name__)


def delivered_amount(tx: LedgerTransaction) -> Any:
    """Amount that actually arrived, preferring the ledger's own record of it."""

    delivered = tx.meta.get("delivered_amount")
    if delivered is None:
        delivered = tx.meta.get("DeliveredAmount")
    if delivered is None:
        delivered = tx.tx.get("DeliverMax", tx.tx.get("Amount"))
    return delivered


def find_mismatches(
    tx: LedgerTransaction,
    request: PledgeRequest,
    expected_signer: str,
    treasury_address: str,
) -> list[str]:
    """Return the names of every check the transaction fails (empty when valid)."""

    body = tx.tx
    mismatches: list[str] = []

    if tx.result_code != SUCCESS_CODE:
        mismatches.append("result")
    if body.get("TransactionType") != "Payment":
        mismatches.append("type")
    if not expected_signer or body.get("Account") != expected_signer:
        mismatches.append("sender")
    if body.get("Destination") != treasury_address:
        mismatches.append("destination")

    tag = body.get("DestinationTag")
    if isinstance(tag, bool) or not isinstance(tag, int) or tag != request.destination_tag:
        mismatches.append("destination_tag")

    # native payments are a drops string; issued-currency objects never match
    amount = delivered_amount(tx)
    try:
        expected_drops = str(xrp_to_drops(request.amount))
    except ValueError:
        expected_drops = None
    if not isinstance(amount, str) or expected_drops is None or amount != expected_drops:
        mismatches.append("amount")

    if request.verification_token not in set(iter_memo_data(body.get("Memos"))):
        mismatches.append("memo")

    return mismatches


async def verify_on_ledger(
    ledger: LedgerGateway,
    tx_hash: str,
    request: PledgeRequest,
    expected_signer: str,
    treasury_address: str,
) -> bool:
    """Fetch ``tx_hash`` and check it against the pledge.

    Returns ``False`` for a transaction that exists but does not match.
    Raises :class:`TransientLedgerError` while the transaction is unknown to
    the node or not yet in a validated ledger; callers retry those.
    """

    tx = await ledger.get_transaction(tx_hash)
    if not tx.validated:
        raise TransientLedgerError(f"Transaction not validated yet: {tx_hash}")

    mismatches = find_mismatches(tx, request, expected_signer, treasury_address)
    if mismatches:
        logger.warning(
            "pledge.verification_mismatch",
            extra={
                "pledge_request_id": request.id,
                "tx_hash": tx_hash,
                "fields": mismatches,
                "expected_signer": expected_signer,
                "actual_sender": tx.tx.get("Account"),
                "actual_destination": tx.tx.get("Destination"),
                "actual_tag": tx.tx.get("DestinationTag"),
                "actual_amount": delivered_amount(tx),
            },
        )
        return False
    return True

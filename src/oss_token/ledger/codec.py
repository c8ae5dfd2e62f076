"""Ledger wire-format helpers: drops, currency codes and memos."""

from __future__ import annotations

import binascii
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

DROPS_PER_XRP = Decimal(1_000_000)
NATIVE_CURRENCY = "XRP"
_TOKEN_CODE_RE = re.compile(r"^[A-Za-z0-9_-]{1,20}$")
_HEX_CURRENCY_RE = re.compile(r"^[0-9A-F]{40}$")


def xrp_to_drops(amount: Decimal) -> int:
    """Convert a native amount to integer drops; fractional drops are rejected."""

    try:
        drops = Decimal(amount) * DROPS_PER_XRP
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"Invalid native amount: {amount!r}") from exc
    if not drops.is_finite() or drops != drops.to_integral_value():
        raise ValueError(f"Amount is not representable in drops: {amount}")
    return int(drops)


def drops_to_xrp(drops: int | str) -> Decimal:
    return Decimal(int(drops)) / DROPS_PER_XRP


def validate_token_code(token_code: Optional[str]) -> list[str]:
    """Return human-readable problems with ``token_code`` (empty when valid)."""

    if not token_code:
        return ["Token code is required"]
    errors: list[str] = []
    if not _TOKEN_CODE_RE.match(token_code):
        errors.append("Token code must be 1-20 characters of letters, digits, '_' or '-'")
    if token_code.upper() == NATIVE_CURRENCY:
        errors.append("XRP is reserved")
    return errors


def to_ledger_currency(token_code: str) -> str:
    """Standard 3-char codes stay as-is; anything else becomes 40-char hex."""

    if (
        len(token_code) == 3
        and all(0x21 <= ord(ch) <= 0x7E for ch in token_code)
        and token_code.upper() != NATIVE_CURRENCY
    ):
        return token_code
    return token_code.encode("utf-8").hex().upper().ljust(40, "0")


def from_ledger_currency(currency: str) -> str:
    if _HEX_CURRENCY_RE.match(currency):
        trimmed = currency.rstrip("0")
        if len(trimmed) % 2:
            trimmed += "0"
        try:
            return bytes.fromhex(trimmed).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            return currency
    return currency


def encode_memo(memo_type: str, data: str) -> dict[str, Any]:
    return {
        "Memo": {
            "MemoType": memo_type.encode("utf-8").hex().upper(),
            "MemoData": data.encode("utf-8").hex().upper(),
        }
    }


def decode_memo_field(raw: Any) -> Optional[str]:
    """Decode one hex memo field, ``None`` on any malformed input."""

    if not isinstance(raw, str) or not raw:
        return None
    try:
        return bytes.fromhex(raw).decode("utf-8")
    except (ValueError, UnicodeDecodeError, binascii.Error):
        return None


def iter_memo_data(memos: Any) -> Iterable[str]:
    """Yield every decodable MemoData payload of a transaction's Memos array."""

    if not isinstance(memos, list):
        return
    for entry in memos:
        if not isinstance(entry, dict):
            continue
        memo = entry.get("Memo")
        if not isinstance(memo, dict):
            continue
        decoded = decode_memo_field(memo.get("MemoData"))
        if decoded is not None:
            yield decoded

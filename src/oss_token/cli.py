"""Command-line client for a running settlement server."""

from __future__ import annotations

import argparse
import json
import os
import sys
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx

DEFAULT_HOST = os.environ.get("OSSTOKEN_HOST", "127.0.0.1")
DEFAULT_PORT = int(os.environ.get("OSSTOKEN_PORT", "8080"))
DEFAULT_TIMEOUT = float(os.environ.get("OSSTOKEN_TIMEOUT", "10.0"))


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    base_url = _resolve_base_url(args.host, args.port)
    timeout = args.timeout

    if args.command == "pledge":
        try:
            amount = _parse_amount(args.amount)
        except ValueError as exc:
            parser.error(str(exc))
        payload: Dict[str, Any] = {"project_id": args.project_id, "amount": str(amount)}
        if args.donor_uid:
            payload["donor_uid"] = args.donor_uid
        if args.donor_address:
            payload["donor_address"] = args.donor_address
        return _request("POST", f"{base_url}/pledges", timeout, payload, _print_pledge)

    if args.command == "status":
        params = {"sync": "true"} if args.sync else None
        return _request("GET", f"{base_url}/pledges/{args.request_id}", timeout, params=params, render=_print_status)

    if args.command == "trustline":
        payload = {"project_id": args.project_id, "donor_address": args.donor_address}
        return _request("POST", f"{base_url}/trustlines", timeout, payload, _print_trustline)

    if args.command == "price":
        if args.history:
            return _request(
                "GET",
                f"{base_url}/projects/{args.project_id}/price/history",
                timeout,
                params={"limit": args.history},
                render=_print_history,
            )
        return _request("GET", f"{base_url}/projects/{args.project_id}/price", timeout, render=_print_price)

    if args.command == "recompute":
        return _request(
            "POST",
            f"{base_url}/projects/{args.project_id}/price/recompute",
            timeout,
            render=_print_history_entry,
        )

    if args.command == "stats":
        return _request("GET", f"{base_url}/projects/{args.project_id}/stats", timeout, render=_print_json)

    parser.error("Unknown command")
    return 2


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="osstoken",
        description="Create pledges and inspect token prices on a running settlement server.",
    )
    parser.add_argument("--host", default=DEFAULT_HOST, help="API host (default: %(default)s)")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="API port (default: %(default)s)")
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help="HTTP timeout in seconds (default: %(default)s)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    pledge_parser = subparsers.add_parser("pledge", help="Create a donation pledge and print its signing link")
    pledge_parser.add_argument("project_id", help="Project to donate to")
    pledge_parser.add_argument("amount", help="Amount in native units")
    pledge_parser.add_argument("--donor-uid", help="Donor user id")
    pledge_parser.add_argument("--donor-address", help="Donor ledger account, if known")

    status_parser = subparsers.add_parser("status", help="Show a pledge's status")
    status_parser.add_argument("request_id", help="Pledge request id")
    status_parser.add_argument("--sync", action="store_true", help="Ask the signing provider before answering")

    trustline_parser = subparsers.add_parser("trustline", help="Check or request a donor trust line")
    trustline_parser.add_argument("project_id", help="Project whose token the donor should hold")
    trustline_parser.add_argument("donor_address", help="Donor ledger account")

    price_parser = subparsers.add_parser("price", help="Show a project's token price")
    price_parser.add_argument("project_id", help="Project id")
    price_parser.add_argument("--history", type=int, metavar="N", help="Show the last N price records instead")

    recompute_parser = subparsers.add_parser("recompute", help="Recompute a project's price now")
    recompute_parser.add_argument("project_id", help="Project id")

    stats_parser = subparsers.add_parser("stats", help="Show a project's donation totals")
    stats_parser.add_argument("project_id", help="Project id")

    return parser


def _resolve_base_url(host: str, port: int) -> str:
    if host.startswith("http://") or host.startswith("https://"):
        return host.rstrip("/")
    return f"http://{host}:{port}"


def _parse_amount(raw: str) -> Decimal:
    try:
        amount = Decimal(raw)
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid amount '{raw}': {exc}") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValueError("Amount must be a positive number")
    return amount


def _request(
    method: str,
    url: str,
    timeout: float,
    payload: Optional[Dict[str, Any]] = None,
    render=None,
    params: Optional[Dict[str, Any]] = None,
) -> int:
    try:
        response = httpx.request(method, url, json=payload, params=params, timeout=timeout)
        response.raise_for_status()
    except httpx.RequestError as exc:
        print(f"Request failed: {exc}", file=sys.stderr)
        return 1
    except httpx.HTTPStatusError as exc:
        print(f"Server responded with error {exc.response.status_code}: {exc.response.text}", file=sys.stderr)
        return 1

    try:
        body = response.json()
    except ValueError:
        print("Unexpected response payload", file=sys.stderr)
        return 1
    (render or _print_json)(body)
    return 0


def _print_json(body: Any) -> None:
    print(json.dumps(body, indent=2, sort_keys=True))


def _print_pledge(body: Dict[str, Any]) -> None:
    request = body.get("request", {})
    signing = body.get("signing", {})
    print(f"Pledge: {request.get('id')}")
    print(f"  Amount: {request.get('amount')}")
    print(f"  Destination tag: {request.get('destination_tag')}")
    print(f"  Expires: {request.get('expires_at')}")
    print(f"Sign: {signing.get('sign_url') or signing.get('qr_image_url')}")


def _print_status(body: Dict[str, Any]) -> None:
    request = body.get("request", {})
    print(f"Pledge {request.get('id')}: {request.get('status')}")
    if request.get("failure_reason"):
        print(f"  Reason: {request['failure_reason']}")
    record = body.get("record")
    if record:
        issuance = record.get("issuance", {})
        print(f"  Ledger tx: {record.get('ledger_tx_hash')}")
        print(f"  Issuance: {issuance.get('status')} {issuance.get('amount') or ''}".rstrip())
    if body.get("trustline_required"):
        print("  Trust line required before tokens can be issued.")


def _print_trustline(body: Dict[str, Any]) -> None:
    if body.get("already_set"):
        print("Trust line already set.")
        return
    signing = body.get("signing") or {}
    request = body.get("request") or {}
    print(f"Trust line request: {request.get('id')}")
    print(f"Sign: {signing.get('sign_url') or signing.get('qr_image_url')}")


def _print_price(body: Dict[str, Any]) -> None:
    stale = " (stale rate)" if body.get("rate_stale") else ""
    print(f"Price: {body.get('primary')} native / {body.get('secondary')} secondary{stale}")


def _print_history_entry(entry: Dict[str, Any]) -> None:
    print(
        f"{entry.get('date')}  {entry.get('price_native')}  {entry.get('price_secondary')}  "
        f"q={entry.get('quality_score_at_time')}  donations={entry.get('total_donations_at_time')}  "
        f"[{entry.get('trigger')}]"
    )


def _print_history(body: Dict[str, Any]) -> None:
    history = body.get("history", [])
    if not history:
        print("No price history.")
        return
    for entry in history:
        _print_history_entry(entry)


if __name__ == "__main__":
    sys.exit(main())

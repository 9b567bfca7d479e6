#!/usr/bin/env python3
"""Operator check for Club DK loyalty ledger consistency ("Sincronizar Dados").

Usage:
    python tooling/scripts/check_ledger_consistency.py \
        --base-url https://staging-api.example.com \
        --api-key "$CHECKOUT_API_KEY"

The script validates:
  * Every cached customer balance equals the sum of its ledger entries.
  * Every coupon instance is used exactly when it is linked to an order.
  * The in-process consistency error counter is within the allowed threshold.

Nothing is repaired; drift is reported and the exit code is non-zero.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, Dict, Optional

import httpx


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Club DK ledger consistency checker")
    parser.add_argument(
        "--base-url",
        default="http://localhost:8000",
        help="Base URL of the Club DK API service.",
    )
    parser.add_argument(
        "--api-key",
        default=None,
        help="Checkout API key sent as X-API-Key (required when the service enforces one).",
    )
    parser.add_argument(
        "--max-consistency-errors",
        type=int,
        default=0,
        help="Maximum consistency errors recorded by the running service before failing (default: 0).",
    )
    parser.add_argument(
        "--show",
        type=int,
        default=20,
        help="Number of mismatching customers to print (default: 20).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="HTTP request timeout in seconds.",
    )
    return parser.parse_args()


async def _get_json(
    client: httpx.AsyncClient,
    path: str,
    *,
    headers: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    response = await client.get(path, headers=headers)
    response.raise_for_status()
    return response.json()


def _log_ok(message: str) -> None:
    print(f"[check-ledger] OK   {message}")


def _log_fail(message: str) -> None:
    print(f"[check-ledger] FAIL {message}")


async def check_reconciliation(client: httpx.AsyncClient, headers: Dict[str, str], show: int) -> bool:
    payload = await _get_json(client, "/api/v1/loyalty/reconciliation", headers=headers)
    checked = int(payload.get("customers_checked", 0))
    mismatches = payload.get("balance_mismatches", [])
    violations = payload.get("coupon_violations", [])

    if not mismatches:
        _log_ok(f"{checked} customer balances match their ledger")
    else:
        _log_fail(f"{len(mismatches)} of {checked} customer balances drift from their ledger")
        for item in mismatches[:show]:
            print(
                "    {email} cached={cached_balance} ledger={ledger_balance} drift={drift}".format(**item)
            )

    if not violations:
        _log_ok("coupon usage flags agree with order links")
    else:
        _log_fail(f"{len(violations)} coupon instances have inconsistent usage links")
        for item in violations[:show]:
            print("    {user_coupon_id} is_used={is_used} order_id={order_id}".format(**item))

    return bool(payload.get("consistent", False))


async def check_counters(client: httpx.AsyncClient, headers: Dict[str, str], max_errors: int) -> bool:
    payload = await _get_json(client, "/api/v1/observability/loyalty", headers=headers)
    total = int(payload.get("consistencyErrors", {}).get("total", 0))
    if total > max_errors:
        _log_fail(f"service recorded {total} consistency errors (threshold {max_errors})")
        return False
    _log_ok(f"service recorded {total} consistency errors")
    return True


async def main_async(args: argparse.Namespace) -> int:
    headers = {"X-API-Key": args.api_key} if args.api_key else {}
    async with httpx.AsyncClient(base_url=args.base_url, timeout=args.timeout) as client:
        try:
            ledger_ok = await check_reconciliation(client, headers, args.show)
            counters_ok = await check_counters(client, headers, args.max_consistency_errors)
        except httpx.HTTPError as exc:
            _log_fail(f"request failed: {exc}")
            return 2
    return 0 if ledger_ok and counters_ok else 1


def main() -> None:
    sys.exit(asyncio.run(main_async(parse_args())))


if __name__ == "__main__":
    main()

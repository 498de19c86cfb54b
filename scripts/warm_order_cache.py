#!/usr/bin/env python3
"""
Warm an order cache node by requesting a list of order ids.

Every id the node misses is fetched from the origin, persisted and published,
so warming one node also warms every peer subscribed to the same bus. Can be
run from a developer workstation or a CI job after a deploy.
"""

import argparse
import asyncio
import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional
import sys
import os

import httpx


async def warm(
    *,
    node_url: str,
    order_ids: Iterable[str],
    concurrency: int,
    timeout: float,
    verify: bool,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, object]:
    """Request every order id and return the summary."""
    semaphore = asyncio.Semaphore(max(1, concurrency))
    summary: Dict[str, object] = {"node_url": node_url, "requested": 0, "ok": 0, "not_found": 0, "failed": 0}
    failures: List[Dict[str, object]] = []

    async with httpx.AsyncClient(
        base_url=node_url.rstrip("/"),
        timeout=timeout,
        verify=verify,
        transport=transport
    ) as client:

        async def warm_one(order_id: str):
            async with semaphore:
                try:
                    response = await client.get(f"/orders/{order_id}")
                except httpx.HTTPError as exc:
                    summary["failed"] += 1
                    failures.append({"order_id": order_id, "error": str(exc)})
                    return

            if response.status_code == 200:
                summary["ok"] += 1
            elif response.status_code == 404:
                summary["not_found"] += 1
            else:
                summary["failed"] += 1
                failures.append({"order_id": order_id, "status_code": response.status_code})

        ids = list(dict.fromkeys(order_ids))
        summary["requested"] = len(ids)
        await asyncio.gather(*(warm_one(order_id) for order_id in ids))

    summary["failures"] = failures
    return summary


def _load_ids(args: argparse.Namespace) -> List[str]:
    ids = list(args.order_ids)
    if args.ids_file:
        ids.extend(
            line.strip()
            for line in args.ids_file.read_text().splitlines()
            if line.strip() and not line.startswith("#")
        )
    return ids


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Warm an order cache node for a list of order ids.")
    parser.add_argument("order_ids", nargs="*", help="Order ids to warm")
    parser.add_argument("--node-url", default=os.getenv("ORDER_CACHE_NODE_URL", "http://localhost:8445"), help="Order cache node URL")
    parser.add_argument("--ids-file", type=Path, default=None, help="File with one order id per line")
    parser.add_argument("--concurrency", type=int, default=int(os.getenv("ORDER_CACHE_WARM_CONCURRENCY", 5)), help="Concurrent requests")
    parser.add_argument("--timeout", type=float, default=10.0, help="Per-request timeout in seconds")
    parser.add_argument("--insecure", action="store_true", help="Skip TLS certificate verification")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    order_ids = _load_ids(args)
    if not order_ids:
        print("[order-cache-warm] no order ids given", file=sys.stderr)
        return 2

    try:
        summary = asyncio.run(
            warm(
                node_url=args.node_url,
                order_ids=order_ids,
                concurrency=args.concurrency,
                timeout=args.timeout,
                verify=not args.insecure,
            )
        )
    except KeyboardInterrupt:
        return 130

    print(json.dumps(summary, indent=2))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2))

    return 0 if not summary["failed"] else 1


if __name__ == "__main__":
    raise SystemExit(main())

#!/usr/bin/env python3
"""
Re-submit orders for video generation.

Sends each order id to POST /api/generate-video of a running service. Use it
to retry failed orders explicitly; the service decides eligibility.

Run:  python scripts/requeue_orders.py ORDER_ID [ORDER_ID ...] [--url URL] [--api-key KEY]
      python scripts/requeue_orders.py --file failed_orders.txt

Exit codes:
  0 - All orders accepted
  1 - Some orders were rejected
  2 - Fatal error (service unreachable, bad arguments)
"""

import argparse
import os
import sys
from pathlib import Path

import httpx


def read_order_ids(args) -> list:
    order_ids = list(args.order_ids)
    if args.file:
        lines = Path(args.file).read_text().splitlines()
        order_ids.extend(line.strip() for line in lines if line.strip() and not line.startswith("#"))
    # Keep first occurrence order
    return list(dict.fromkeys(order_ids))


def requeue(client: httpx.Client, order_id: str, verbose: bool = False) -> bool:
    response = client.post("/api/generate-video", json={"orderId": order_id})
    body = response.json() if response.content else {}

    if response.status_code == 200 and body.get("success"):
        position = body.get("queuePosition")
        print(f"  ✓ {order_id}: {body.get('message')} (position: {position if position is not None else '-'})")
        return True

    print(f"  ✗ {order_id}: HTTP {response.status_code} {body.get('code', '')} {body.get('error', body.get('detail', ''))}")
    if verbose:
        print(f"    {response.text[:500]}")
    return False


def main():
    parser = argparse.ArgumentParser(
        description="Re-submit orders to the video generation queue"
    )
    parser.add_argument("order_ids", nargs="*", help="Order ids to re-submit")
    parser.add_argument("--file", help="File with one order id per line")
    parser.add_argument(
        "--url",
        default=os.getenv("ENGINE_URL", "http://localhost:8000"),
        help="Service base URL (default: $ENGINE_URL or http://localhost:8000)"
    )
    parser.add_argument(
        "--api-key",
        default=os.getenv("API_KEY"),
        help="API key (default: $API_KEY)"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Print response bodies on failure")
    args = parser.parse_args()

    order_ids = read_order_ids(args)
    if not order_ids:
        print("ERROR: No order ids given")
        sys.exit(2)
    if not args.api_key:
        print("ERROR: No API key (use --api-key or set API_KEY)")
        sys.exit(2)

    print(f"Re-submitting {len(order_ids)} order(s) to {args.url}")

    accepted = 0
    try:
        with httpx.Client(
            base_url=args.url,
            headers={"Authorization": f"Bearer {args.api_key}"},
            timeout=30.0
        ) as client:
            for order_id in order_ids:
                if requeue(client, order_id, verbose=args.verbose):
                    accepted += 1
    except httpx.HTTPError as e:
        print(f"ERROR: Service unreachable: {e}")
        sys.exit(2)

    print(f"\n{accepted}/{len(order_ids)} accepted")
    sys.exit(0 if accepted == len(order_ids) else 1)


if __name__ == "__main__":
    main()

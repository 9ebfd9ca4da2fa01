#!/usr/bin/env python3
"""
Probe Transfer Logs

Fetches the chain head, pulls Transfer logs for one token over the last few
blocks, and prints the first decoded transfers.  Verifies the RPC endpoint
and the decoder end to end without touching the database.

Usage:
    python scripts/probe_transfer_logs.py
    python scripts/probe_transfer_logs.py --token 0x... --blocks 50 --show 10
"""

import argparse
import asyncio
import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

from chain.rpc_client import RpcClient, RpcError
from config.loader import get_config
from core.log_decoder import decode_transfer, scale_amount
from shared.constants import DEFAULT_TOKEN_DECIMALS
from shared.serialization_utils import dumps


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Probe recent ERC-20 Transfer logs")
    parser.add_argument("--token", help="Token address (default: first configured token)")
    parser.add_argument("--blocks", type=int, default=10, help="Blocks to scan below head")
    parser.add_argument("--show", type=int, default=5, help="Decoded transfers to print")
    return parser.parse_args(argv)


async def probe(token, blocks, show):
    """Fetch and decode; returns the number of logs seen."""
    client = RpcClient()
    try:
        print(f"RPC: {client.rpc_url}")
        latest = await client.get_latest_block()
        from_block = max(latest - blocks, 0)
        print(f"  ✓ Latest block: {latest}")
        print(f"Fetching Transfer logs for {token['address']} in {from_block} -> {latest}...")

        logs = await client.get_transfer_logs(token["address"], from_block, latest)
        print(f"  ✓ {len(logs)} logs")

        decimals = int(token.get("decimals", DEFAULT_TOKEN_DECIMALS))
        for log in logs[:show]:
            decoded = decode_transfer(log)
            if decoded is None:
                print(f"  ⚠ undecodable log in tx {log.transaction_hash}")
                continue
            print(
                "  "
                + dumps(
                    {
                        "block": decoded.block_number,
                        "tx": decoded.tx_hash,
                        "from": decoded.from_address,
                        "to": decoded.to_address,
                        "amount": scale_amount(decoded.value, decimals),
                    }
                )
            )
        return len(logs)
    finally:
        await client.close()


def main(argv=None):
    load_dotenv()
    args = parse_args(argv)

    tokens = get_config().get_chain_config().get("tokens", [])
    if args.token:
        token = next(
            (t for t in tokens if t["address"].lower() == args.token.lower()),
            {"address": args.token, "decimals": DEFAULT_TOKEN_DECIMALS},
        )
    elif tokens:
        token = tokens[0]
    else:
        print("❌ ERROR: no token configured and --token not given")
        sys.exit(1)

    try:
        asyncio.run(probe(token, args.blocks, args.show))
    except RpcError as e:
        print(f"  ❌ RPC failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Operator CLI for the account-abstraction transaction layer"""

import argparse
import asyncio
import sys
from typing import Optional

from aatl.config import settings
from aatl.core.errors import ChainRpcError, RelayerError
from aatl.core.execution.receipts import ReceiptOutcome, ReceiptPoller, ReceiptStatus
from aatl.core.execution.versions import resolve_entry_point_version
from aatl.logging_config import setup_logging
from aatl.providers.bundler import BundlerProvider
from aatl.providers.chain import ChainStateProvider


def print_outcome(outcome: ReceiptOutcome):
    """Pretty print a receipt outcome"""
    icon = {
        ReceiptStatus.SUCCESS: "✅",
        ReceiptStatus.REVERTED: "❌",
        ReceiptStatus.TIMED_OUT: "⏳",
    }[outcome.status]

    print(f"\n{icon} UserOperation {outcome.status.value}")
    print("=" * 50)
    print(f"Hash: {outcome.user_op_hash}")

    receipt = outcome.receipt
    if receipt is not None:
        print(f"Transaction: {receipt.transaction_hash or '-'}")
        if receipt.block_number is not None:
            print(f"Block: {receipt.block_number}")
        if receipt.actual_gas_cost is not None:
            print(f"Gas cost: {receipt.actual_gas_cost} wei ({receipt.actual_gas_used or 0} gas)")

    if outcome.status is ReceiptStatus.REVERTED:
        print(f"Reason: {outcome.reason or '-'}")
        if outcome.hint:
            print(f"Hint: {outcome.hint}")
    elif outcome.status is ReceiptStatus.TIMED_OUT:
        print(f"No receipt within {outcome.timeout_seconds}s; the operation may still be included")


def cli_version(entry_point: str, delegate: Optional[str] = None):
    """Classify an EntryPoint address"""
    version = resolve_entry_point_version(entry_point, delegate=delegate)
    print(f"{entry_point} -> EntryPoint v{version.value}")


async def cli_receipt(user_op_hash: str, timeout: Optional[float] = None, interval: Optional[float] = None) -> int:
    """Wait for a UserOperation receipt"""
    bundler = BundlerProvider()
    print(f"🔍 Waiting for {user_op_hash}...")
    try:
        outcome = await ReceiptPoller(bundler, timeout, interval).wait(user_op_hash)
    except RelayerError as e:
        print(f"❌ Error: {e}")
        return 1
    finally:
        await bundler.aclose()

    print_outcome(outcome)
    return 0 if outcome.succeeded else 2


async def cli_bundle_now() -> int:
    """Ask the bundler to bundle pending operations now"""
    bundler = BundlerProvider()
    try:
        ok = await bundler.send_bundle_now()
    finally:
        await bundler.aclose()

    print("✅ Bundle requested" if ok else "⚠️  Bundle request not accepted (see logs)")
    return 0 if ok else 1


async def cli_health() -> int:
    """Check bundler and chain RPC connectivity"""
    bundler = BundlerProvider()
    chain = ChainStateProvider()
    try:
        results = {
            "bundler": await bundler.health_check(),
            "chain": await chain.health_check(),
        }
    except (RelayerError, ChainRpcError) as e:
        print(f"❌ Error: {e}")
        return 1
    finally:
        await bundler.aclose()
        await chain.aclose()

    print("\n🩺 Provider health")
    print("-" * 40)
    for name, status in results.items():
        detail = status.get("chainId") or status.get("reason") or ""
        print(f"{name:<8} {status['status']:<9} {detail}")
    print(f"\nEntryPoint: {settings.entry_point_address}")
    return 0 if all(s["status"] == "healthy" for s in results.values()) else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Account-abstraction transaction layer CLI")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command")

    version_parser = subparsers.add_parser("version", help="Classify an EntryPoint address")
    version_parser.add_argument("entry_point", help="EntryPoint address")
    version_parser.add_argument("--delegate", help="EIP-7702 delegate the operation would use")

    receipt_parser = subparsers.add_parser("receipt", help="Wait for a UserOperation receipt")
    receipt_parser.add_argument("user_op_hash", help="UserOperation hash")
    receipt_parser.add_argument("--timeout", type=float, help="Seconds to wait (default: RECEIPT_TIMEOUT_SECONDS)")
    receipt_parser.add_argument("--interval", type=float, help="Seconds between polls")

    subparsers.add_parser("bundle-now", help="Ask the bundler to bundle immediately")
    subparsers.add_parser("health", help="Check bundler and chain RPC")

    return parser


async def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.log_level)

    if not args.command:
        parser.print_help()
        return 0

    command = args.command.lower()

    if command == "version":
        cli_version(args.entry_point, args.delegate)
        return 0

    elif command == "receipt":
        return await cli_receipt(args.user_op_hash, args.timeout, args.interval)

    elif command == "bundle-now":
        return await cli_bundle_now()

    elif command == "health":
        return await cli_health()

    print(f"❌ Unknown command: {command}")
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))

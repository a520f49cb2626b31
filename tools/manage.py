#!/usr/bin/env python3
"""
FarmChain Management CLI

Commands for operating the ledger:
- init-db: Create the event index schema in PostgreSQL
- show-chain: Print a batch's events and derived ownership
- verify-chain: Verify a batch's chain integrity
- audit: Compare a batch's index rows with its stored documents
- export-batch: Export a batch's events and derived state to JSON
- reindex: Index a document that was uploaded but never indexed
- generate-keypair: Generate an Ed25519 signing keypair

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage init-db
    python -m tools.manage verify-chain batch-2024-001
    python -m tools.manage export-batch batch-2024-001 -o batch.json
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


async def _with_ledger(handler, args) -> int:
    """Build services from the environment, run handler, always close them."""
    from app.services import build_ledger_from_env

    resources = await build_ledger_from_env()
    try:
        return await handler(resources, args)
    finally:
        await resources.close()


async def cmd_init_db(args) -> int:
    """Create the event index schema."""
    from app.db import DatabaseConfig, IndexDriver, PostgresEventIndex, get_index_driver

    if get_index_driver() == IndexDriver.MEMORY:
        print("No database configured (set DATABASE_URL). Nothing to do.")
        return 1

    config = DatabaseConfig.from_env()
    print(f"Connecting to {config.to_url(include_password=False)}...")
    index = await PostgresEventIndex.connect(config)
    try:
        await index.create_schema()
    finally:
        await index.close()
    print("[OK] Event index schema ready")
    return 0


async def cmd_show_chain(resources, args) -> int:
    """Print a batch's events and derived ownership."""
    chain = await resources.ledger.build_chain(args.batch_id)

    if chain.is_empty:
        print(f"Batch {args.batch_id}: no events")
        return 0

    print(f"Batch {args.batch_id}: {len(chain.events)} events")
    for event in chain.events:
        print(
            f"  {event.timestamp.isoformat()}  {event.type.value:8}  "
            f"{event.from_owner} -> {event.to_owner}  {event.quantity}kg  "
            f"{event.content_hash[:16]}..."
        )

    print(f"\nTotal: {chain.total_quantity}kg  Available: {chain.available_quantity}kg")
    print("Current owners:")
    for owner, holding in chain.current_owners.items():
        print(f"  {owner}: {holding.quantity}kg")
    return 0


async def cmd_verify_chain(resources, args) -> int:
    """Verify the integrity of a batch's chain."""
    report = await resources.ledger.verify_chain(args.batch_id)

    print(f"Batch {args.batch_id}: {report.event_count} events")
    if report.is_valid:
        print("[OK] Chain integrity verified OK")
        return 0

    print("[FAIL] Chain integrity verification FAILED!")
    for error in report.errors:
        print(f"  - {error}")
    return 1


async def cmd_audit(resources, args) -> int:
    """Compare index rows with stored documents."""
    report = await resources.ledger.audit_documents(
        args.batch_id, require_signatures=args.require_signatures,
    )

    print(f"Batch {args.batch_id}: {report.checked} documents checked, {report.signed} signed")
    if report.is_valid:
        print("[OK] Every document matches the index")
        return 0

    print("[FAIL] Document audit FAILED!")
    for error in report.errors:
        print(f"  - {error}")
    return 1


async def cmd_export_batch(resources, args) -> int:
    """Export a batch's events and derived state to JSON."""
    chain = await resources.ledger.build_chain(args.batch_id)
    report = await resources.ledger.verify_chain(args.batch_id)

    export_data = {
        "chain": chain.model_dump(mode="json", by_alias=True),
        "verification": report.model_dump(mode="json"),
    }

    output_file = args.output or f"{args.batch_id}.json"
    with open(output_file, "w") as f:
        json.dump(export_data, f, indent=2)

    print(f"[OK] Exported {len(chain.events)} events to {output_file}")
    return 0


async def cmd_reindex(resources, args) -> int:
    """Index an orphaned document."""
    event = await resources.ledger.reindex_document(args.content_hash)
    print("[OK] Document indexed")
    print(f"  Transaction: {event.transaction_id}")
    print(f"  Batch: {event.batch_id}")
    print(f"  Type: {event.type.value}")
    return 0


def cmd_generate_keypair(args) -> int:
    """Generate an Ed25519 keypair for event signing."""
    from app.core import Signer

    private_key, public_key = Signer.generate_keypair()
    print("Public key (for verification):")
    print(f"  {public_key}")
    print("\nPrivate key (KEEP SECRET!):")
    print(f"  {private_key}")
    print("\nSet these environment variables:")
    print(f"  FARMCHAIN_SIGNING_PRIVATE_KEY={private_key}")
    print(f"  FARMCHAIN_SIGNING_PUBLIC_KEY={public_key}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="FarmChain Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-db", help="Create the event index schema")

    p_show = subparsers.add_parser("show-chain", help="Print a batch's chain")
    p_show.add_argument("batch_id")

    p_verify = subparsers.add_parser("verify-chain", help="Verify a batch's chain integrity")
    p_verify.add_argument("batch_id")

    p_audit = subparsers.add_parser("audit", help="Audit a batch's stored documents")
    p_audit.add_argument("batch_id")
    p_audit.add_argument(
        "--require-signatures",
        action="store_true",
        help="Treat unsigned documents as errors",
    )

    p_export = subparsers.add_parser("export-batch", help="Export a batch to JSON")
    p_export.add_argument("batch_id")
    p_export.add_argument("--output", "-o", help="Output file (default: <batch_id>.json)")

    p_reindex = subparsers.add_parser("reindex", help="Index an orphaned document")
    p_reindex.add_argument("content_hash")

    subparsers.add_parser("generate-keypair", help="Generate an Ed25519 signing keypair")

    return parser


def main(argv=None) -> int:
    from app.core import LedgerError
    from app.observability import setup_logging

    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging()

    if args.command == "generate-keypair":
        return cmd_generate_keypair(args)
    if args.command == "init-db":
        return asyncio.run(cmd_init_db(args))

    ledger_commands = {
        "show-chain": cmd_show_chain,
        "verify-chain": cmd_verify_chain,
        "audit": cmd_audit,
        "export-batch": cmd_export_batch,
        "reindex": cmd_reindex,
    }

    try:
        return asyncio.run(_with_ledger(ledger_commands[args.command], args))
    except LedgerError as e:
        print(f"[FAIL] {e}")
        orphan = getattr(e, "orphaned_content_hash", None)
        if orphan:
            print(f"  Orphaned document: {orphan}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

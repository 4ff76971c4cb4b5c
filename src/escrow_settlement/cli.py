"""Operator command line for the escrow settlement engine.

Usage:
    escrow-settlement reconcile [--from-block N] [--to-block N]
    escrow-settlement sweep
    escrow-settlement sync TASK_ID
    escrow-settlement verify-deposit EXTERNAL_ID FREELANCER

Each command runs once against the configured database and ledger and
prints a JSON report. Exit status is 1 when the command fails with a
domain error.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from escrow_settlement.config import get_settings
from escrow_settlement.domain.exceptions import EscrowError
from escrow_settlement.infrastructure.database.engine import close_db, init_db, session_scope
from escrow_settlement.infrastructure.ledger.gateway import create_gateway
from escrow_settlement.logging_config import get_logger, setup_logging
from escrow_settlement.schemas.escrow import EscrowRecordResponse
from escrow_settlement.services.deadline_sweeper import DeadlineSweeper
from escrow_settlement.services.escrow_sync import EscrowSyncService
from escrow_settlement.services.reconciler import Reconciler

logger = get_logger("escrow_settlement.cli")


def _print(payload: dict) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def cmd_reconcile(args: argparse.Namespace) -> dict:
    reconciler = Reconciler(create_gateway())
    report = await reconciler.run(from_block=args.from_block, to_block=args.to_block)
    return report.to_dict()


async def cmd_sweep(args: argparse.Namespace) -> dict:
    report = await DeadlineSweeper(create_gateway()).run_once()
    return report.to_dict()


async def cmd_sync(args: argparse.Namespace) -> dict:
    ledger = create_gateway()
    async with session_scope() as session:
        record = await EscrowSyncService(session, ledger).sync_task(args.task_id)
        return EscrowRecordResponse.model_validate(record).model_dump(mode="json")


async def cmd_verify_deposit(args: argparse.Namespace) -> dict:
    result = await create_gateway().verify_deposit(args.external_id, args.freelancer)
    return {
        "valid": result.valid,
        "onchain_task_id": result.onchain_task_id,
        "reason": result.reason,
        "amount": str(result.snapshot.amount) if result.snapshot else None,
        "deadline": result.snapshot.deadline if result.snapshot else None,
    }


COMMANDS = {
    "reconcile": cmd_reconcile,
    "sweep": cmd_sweep,
    "sync": cmd_sync,
    "verify-deposit": cmd_verify_deposit,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="escrow-settlement",
        description="Escrow reconciliation and settlement operator tools",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    reconcile = sub.add_parser("reconcile", help="Re-apply escrow events over a block range.")
    reconcile.add_argument("--from-block", type=int, default=None, help="First block (default: configured start).")
    reconcile.add_argument("--to-block", type=int, default=None, help="Last block (default: chain head).")

    sub.add_parser("sweep", help="Settle expired, unsettled escrows once.")

    sync = sub.add_parser("sync", help="Force-sync one escrow record from the ledger.")
    sync.add_argument("task_id", type=int, help="On-chain task id.")

    verify = sub.add_parser("verify-deposit", help="Check a deposit exists for a freelancer.")
    verify.add_argument("external_id", help="Off-chain task id used for the deposit.")
    verify.add_argument("freelancer", help="Expected freelancer address.")

    return parser


async def run(args: argparse.Namespace) -> int:
    await init_db()
    try:
        _print(await COMMANDS[args.command](args))
        return 0
    except EscrowError as exc:
        logger.error("cli.command_failed", command=args.command, code=exc.code, error=exc.message)
        _print({"error": exc.code, "message": exc.message})
        return 1
    finally:
        await close_db()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(log_level=settings.app_log_level, json_logs=not settings.is_development)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Command line entry point.

    python -m liquidaciones reconcile REPORT.pdf EXPORT.csv --brand visa
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from .config import get_settings
from .errors import LiquidacionesError, PayoutNotAllowedError
from .integrations.order_resolver import build_order_resolver
from .logging_setup import setup_logging
from .reconciliation.payouts import payouts_to_csv
from .reconciliation.service import SettlementService
from .reconciliation.summary import summary_to_dict

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="liquidaciones", description="Settlement reconciliation")
    parser.add_argument("--log-level", default=None, help="Override APP_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    rec = sub.add_parser("reconcile", help="Import a settlement PDF + transaction CSV and reconcile")
    rec.add_argument("pdf", type=Path, help="Settlement PDF (or its extracted text as .txt)")
    rec.add_argument("csv", type=Path, help="Transaction CSV export")
    rec.add_argument("--orders", type=Path, default=None, help="Local orders.json")
    rec.add_argument("--brand", default="visa", help="Card brand of the report")
    rec.add_argument("--operator", default="cli", help="Operator recorded in match evidence")
    rec.add_argument("--payouts-out", type=Path, default=None, help="Write the payout CSV here")
    rec.add_argument("--audit-out", type=Path, default=None, help="Write the audit trail JSON here")
    return parser


async def run_reconcile(args: argparse.Namespace) -> int:
    settings = get_settings()
    service = SettlementService(
        order_resolver=build_order_resolver(settings, args.orders),
        settings=settings,
    )

    try:
        pdf_data = args.pdf.read_bytes()
        pdf_text = pdf_data.decode("utf-8") if args.pdf.suffix.lower() == ".txt" else None
        result = await service.import_settlement(
            pdf_data=pdf_data,
            csv_data=args.csv.read_bytes(),
            card_brand=args.brand,
            created_by=args.operator,
            pdf_filename=args.pdf.name,
            csv_filename=args.csv.name,
            pdf_text=pdf_text,
        )
    finally:
        await service.close()

    output = {
        "settlement_id": result.settlement.id,
        "status": result.settlement.status.value,
        "liquidation_date": result.settlement.liquidation_date,
        "liquidation_number": result.settlement.liquidation_number,
        "duplicate": result.duplicate,
        "dropped_lines": [d.text for d in result.dropped_lines],
        "currency_issues": result.currency_issues,
        "summary": summary_to_dict(result.summary),
    }
    print(json.dumps(output, indent=2, ensure_ascii=False, default=str))

    if args.audit_out:
        service.store.audit_for(result.settlement.id).export_to_file(args.audit_out)

    if args.payouts_out:
        try:
            content = payouts_to_csv(result.summary)
        except PayoutNotAllowedError as e:
            logger.error("Payout file not generated", error=str(e))
            return 2
        args.payouts_out.parent.mkdir(parents=True, exist_ok=True)
        args.payouts_out.write_text(content, encoding="utf-8")
        logger.info("Payout file written", path=str(args.payouts_out))

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level or get_settings().app_log_level)

    try:
        if args.command == "reconcile":
            return asyncio.run(run_reconcile(args))
    except (LiquidacionesError, OSError) as e:
        logger.error("Command failed", command=args.command, error=str(e))
        return 1
    return 1


if __name__ == "__main__":
    sys.exit(main())

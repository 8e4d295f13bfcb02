"""
Monthly Interest Job

Accrues savings interest for every active member over one calendar month.
Meant to be run by a scheduler once a month has closed; re-running a month
skips members whose interest for it was already posted.
"""

import argparse
import json
import sys
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from .config import get_config
from .engine import create_engine
from .errors import LedgerError
from .interest import monthly_period
from .logging_config import log_action, setup_logging


def _rate(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"invalid rate: {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Post monthly savings interest for all active members"
    )
    parser.add_argument("year", type=int, help="Calendar year, e.g. 2024")
    parser.add_argument("month", type=int, help="Calendar month, 1-12")
    parser.add_argument(
        "--rate",
        type=_rate,
        default=None,
        help="Annual interest rate in percent (default from SACCO_DEFAULT_SAVINGS_INTEREST_RATE)",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override SACCO_DATABASE_URL",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Run the job; returns 0 when every member was processed, 1 otherwise"""
    args = build_parser().parse_args(argv)

    config = get_config()
    if args.database_url:
        config = config.model_copy(update={"database_url": args.database_url})
    logger = setup_logging(config.log_level, "sacco", config.log_format, config.log_file)

    try:
        period = monthly_period(args.year, args.month)
        engine = create_engine(config)
    except (LedgerError, ValueError) as e:
        logger.error(f"Interest job not started: {e}")
        return 2

    try:
        log_action(logger, "info", "Monthly interest job started", action="interest_job",
                   extra={"year": period.year, "month": period.month,
                          "rate": str(args.rate) if args.rate is not None else None})
        result = engine.accrue_interest(None, period.start, period.end, args.rate)
    except LedgerError as e:
        logger.error(f"Interest job failed: {e}")
        return 2
    finally:
        engine.close()

    summary = result.summary()
    print(json.dumps(summary, indent=2))
    if result.failed_count:
        logger.warning(f"{result.failed_count} member(s) failed interest accrual")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

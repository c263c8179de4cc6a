"""Medicare market report for one or more tracked competitors.

Resolves every (entity, year) of the company against the CMS APIs,
projecting simulation years from the latest confirmed data, and prints
the report as JSON.

Usage:
    python -m scripts.market_report --company NAME [--company NAME ...]
        [--years 2021 2022 ...] [--no-simulated] [--growth PCT]

    --company       Competitor name (repeat for a side-by-side comparison)
    --years         Explicit years (default: last three confirmed years,
                    potential years and, unless --no-simulated, simulation years)
    --no-simulated  Leave simulation years out of the default window
    --growth        Override the annual growth rate (%) used for projections
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

import structlog

from src.config.settings import get_settings
from src.engine.market_report import build_report_builder
from src.observability.logging import configure_logging


async def _run(args: argparse.Namespace) -> dict:
    builder = build_report_builder(get_settings())
    if len(args.company) > 1:
        comparison = await builder.comparison(
            args.company,
            years=args.years,
            include_simulated=not args.no_simulated,
            growth_override=args.growth,
        )
        return comparison.display()
    report = await builder.company_report(
        args.company[0],
        years=args.years,
        include_simulated=not args.no_simulated,
        growth_override=args.growth,
    )
    return report.display()


def main(argv: list[str] | None = None) -> int:
    """Report entry point."""
    parser = argparse.ArgumentParser(
        description="Medicare reimbursement market report for tracked competitors",
    )
    parser.add_argument(
        "--company",
        action="append",
        required=True,
        help="Competitor name; repeat to compare several companies",
    )
    parser.add_argument("--years", type=int, nargs="+", default=None, help="Years to report")
    parser.add_argument(
        "--no-simulated",
        action="store_true",
        help="Exclude simulation years from the default window",
    )
    parser.add_argument("--growth", type=float, default=None, help="Annual growth rate override (%%)")
    args = parser.parse_args(argv)

    configure_logging(get_settings())
    log = structlog.get_logger()
    log.info("market_report_start", companies=args.company, years=args.years)

    try:
        payload = asyncio.run(_run(args))
    except KeyError as exc:
        log.error("market_report_failed", error=str(exc.args[0]) if exc.args else str(exc))
        return 1
    except ValueError as exc:
        log.error("market_report_failed", error=str(exc))
        return 1

    print(json.dumps(payload, indent=2, default=str))
    log.info("market_report_done", companies=args.company)
    return 0


if __name__ == "__main__":
    sys.exit(main())

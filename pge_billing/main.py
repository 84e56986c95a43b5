#!/usr/bin/env python3
"""Billing orchestrator - download statements if needed, then extract and save.

This module orchestrates the complete workflow:
1. Resolve the look-back window against the local statement cache
2. Log in and download only the missing statements
3. Rasterize and OCR each statement in parallel
4. Aggregate the charges into billing records and write the CSV
5. Print a summary

Usage (from project root):
    python -m pge_billing.main --username me --password secret --url https://...
    python -m pge_billing.main                       # reuse settings saved in .env
    python -m pge_billing.main --last-n-months 6 --skip-download

CLI Flags:
    --username, --password, --url  Portal settings; saved to .env when all three are given
    --last-n-months, -n   Look-back window in months (max 24)
    --account-id          Account digits used to name downloaded statements
    --download-dir        Local statement cache (default ~/Downloads)
    --output, -o          CSV destination
    --skip-download, -s   Use cached statements only, never open a browser
    --headless            Hide the browser window
    --workers             Parallel conversion/OCR tasks
    --quiet               Suppress the summary
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING

from dotenv import load_dotenv

from pge_billing.config import (
    ENV_FILE,
    clamp_months,
    load_settings,
    persist_portal_settings,
    setup_logging,
)
from pge_billing.exceptions import BillingError
from pge_billing.extractor import (
    DocumentConverter,
    FieldExtractor,
    create_ocr_engine,
    extract_documents,
)
from pge_billing.extractor.pipeline import DEFAULT_MAX_WORKERS
from pge_billing.scraper import DownloadCoordinator
from pge_billing.statements import requested_periods
from pge_billing.writer import aggregate, write_billings_csv

if TYPE_CHECKING:
    from collections.abc import Sequence

    from pge_billing.config import Settings
    from pge_billing.writer import BillingRecord

logger = setup_logging(__name__)


# =============================================================================
# Pipeline
# =============================================================================


def run_pipeline(
    settings: Settings,
    skip_download: bool = False,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> list[BillingRecord]:
    """Run download, extraction and aggregation for the configured window.

    Parameters
    ----------
    settings : Settings
        Run configuration.
    skip_download : bool, optional
        Only use statements already in the cache.
    max_workers : int, optional
        Parallel conversion/OCR tasks.

    Returns
    -------
    list[BillingRecord]
        Records written to ``settings.output_path``; empty when no statement
        could be resolved (nothing is written in that case).

    Raises
    ------
    AuthenticationError
        If the portal login fails after all retries.
    OutputWriteError
        If the CSV cannot be written.
    """
    periods = requested_periods(settings.last_n_months)
    logger.info("Processing %d months of statements (%s to %s)", len(periods), periods[-1], periods[0])

    # Step 1: Resolve statements, downloading gaps
    coordinator = DownloadCoordinator.from_settings(settings, allow_download=not skip_download)
    report = coordinator.resolve(periods)
    if not report.documents:
        logger.error("No statements available to parse")
        return []
    if report.unconfirmed:
        logger.warning("Output will be missing %d unconfirmed statements", len(report.unconfirmed))

    # Step 2: Rasterize + OCR each statement
    converter = DocumentConverter.from_settings(settings)
    extractor = FieldExtractor.from_settings(settings, create_ocr_engine(settings))
    batch = extract_documents(report.documents, converter, extractor, max_workers=max_workers)
    for name, error in batch.failures.items():
        logger.warning("  ✗ %s: %s", name, error)

    # Step 3: Aggregate and save
    records = aggregate(report.documents, batch.results)
    write_billings_csv(records, settings.output_path)
    return records


def _format_amount(value: float | None) -> str:
    return f"{value:10.2f}" if value is not None else f"{'-':>10}"


def print_billing_report(records: Sequence[BillingRecord], output_path: Path) -> None:
    """Print records as a fixed-width table followed by the CSV location."""
    print()
    print(f"{'Date':<12}{'Delivery':>10}{'Generation':>12}{'Energy':>10}{'Gas':>10}")
    print("-" * 54)
    for r in records:
        print(
            f"{r.date.isoformat():<12}{_format_amount(r.delivery)}"
            f"  {_format_amount(r.generation)}{_format_amount(r.total)}{_format_amount(r.gas)}",
        )
    print("-" * 54)
    print(f"{len(records)} bills parsed and saved to {output_path}")
    print()


# =============================================================================
# CLI
# =============================================================================


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Download PG&E statements, OCR their charges and export them to CSV.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m pge_billing.main --username me --password s3cret --url https://m.pge.com/#myaccount
  python -m pge_billing.main                     # reuse saved settings
  python -m pge_billing.main -n 6 --skip-download
        """,
    )
    parser.add_argument("--username", help="Portal username (saved base64-encoded)")
    parser.add_argument("--password", help="Portal password (saved base64-encoded)")
    parser.add_argument("--url", help="Billing history URL")
    parser.add_argument("--last-n-months", "-n", type=int, help="Look-back window in months (max 24)")
    parser.add_argument("--account-id", help="Account digits prefixed to statement filenames")
    parser.add_argument("--download-dir", type=Path, help="Local statement cache directory")
    parser.add_argument("--output", "-o", type=Path, help="CSV output path")
    parser.add_argument("--skip-download", "-s", action="store_true", help="Use cached statements only")
    parser.add_argument("--headless", action="store_true", help="Hide the browser window")
    parser.add_argument("--workers", type=int, default=DEFAULT_MAX_WORKERS, help="Parallel OCR tasks")
    parser.add_argument("--quiet", action="store_true", help="Don't print the summary")
    return parser


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    overrides: dict[str, object] = {"headless": args.headless}
    if args.last_n_months is not None:
        overrides["last_n_months"] = clamp_months(args.last_n_months)
    if args.account_id:
        overrides["account_id"] = args.account_id
    if args.download_dir:
        overrides["download_dir"] = args.download_dir.expanduser()
    if args.output:
        overrides["output_path"] = args.output
    return replace(settings, **overrides)


def main(argv: Sequence[str] | None = None) -> int:
    """Parse CLI flags and run the pipeline.

    Returns
    -------
    int
        ``0`` when a CSV was written; ``1`` otherwise.
    """
    args = _build_parser().parse_args(argv)

    if args.username and args.password and args.url:
        persist_portal_settings(args.username, args.password, args.url, args.last_n_months)
        load_dotenv(ENV_FILE, override=True)
        logger.info("Saved portal settings to %s", ENV_FILE)

    try:
        settings = _apply_overrides(load_settings(), args)
        records = run_pipeline(settings, skip_download=args.skip_download, max_workers=args.workers)
    except BillingError as e:
        logger.error("Run aborted: %s", e)
        return 1

    if not records:
        logger.error("Failed to produce billing records")
        return 1

    if not args.quiet:
        print_billing_report(records, settings.output_path)
    return 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Certificate Renewal Agent - Main Entry Point.

Scans the configured certificate stores for certificates that are about
to expire, requests renewed certificates from the configured PKI
providers, and writes them back next to their requests.

Usage:
    # Renew everything due according to config.yaml
    python main.py

    # Use another configuration file and a larger batch size
    python main.py --config /etc/cert-renewer/config.yaml --concurrency 10

    # Dry run (scan and report only)
    python main.py --dry-run
"""

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from certrenew.batch import CompletionCounterError
from certrenew.config_loader import ConfigurationError, load_config
from certrenew.logger import StructuredLogger, setup_logger
from certrenew.orchestrator import MappingSummary, RenewalOrchestrator, RenewalStatus


@dataclass
class ExecutionSummary:
    """Complete execution summary for the entire run."""
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    completed_at: Optional[str] = None
    dry_run: bool = False
    success: bool = True
    exit_code: int = 0

    # Global counts
    total_mappings: int = 0
    skipped_mappings: int = 0
    total_discovered: int = 0
    total_eligible: int = 0
    total_renewed: int = 0
    total_skipped: int = 0
    total_failed: int = 0

    mappings: List[MappingSummary] = field(default_factory=list)

    # Errors that occurred outside mapping processing
    global_errors: List[str] = field(default_factory=list)

    def add_mapping_summary(self, mapping_summary: MappingSummary) -> None:
        """Add a mapping summary and update global counts."""
        self.mappings.append(mapping_summary)
        self.total_mappings += 1
        self.total_discovered += mapping_summary.discovered
        self.total_eligible += mapping_summary.eligible
        self.total_renewed += mapping_summary.renewed
        self.total_skipped += mapping_summary.skipped
        self.total_failed += mapping_summary.failed

        if mapping_summary.has_failures:
            self.success = False
            self.exit_code = 1

    def add_global_error(self, error: str, exit_code: int = 1) -> None:
        """Add a global error (outside mapping processing)."""
        self.global_errors.append(error)
        self.success = False
        self.exit_code = exit_code

    def finalize(self) -> None:
        """Mark execution as complete."""
        self.completed_at = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "dry_run": self.dry_run,
            "success": self.success,
            "exit_code": self.exit_code,
            "summary": {
                "total_mappings": self.total_mappings,
                "skipped_mappings": self.skipped_mappings,
                "total_discovered": self.total_discovered,
                "total_eligible": self.total_eligible,
                "total_renewed": self.total_renewed,
                "total_skipped": self.total_skipped,
                "total_failed": self.total_failed,
            },
            "mappings": [m.to_dict() for m in self.mappings],
            "global_errors": self.global_errors,
        }

    def to_json(self, indent: int = 2) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=indent)


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Args:
        argv: Argument list (defaults to sys.argv)

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="Renew X.509 certificates stored as files through a PKI provider",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                  # Renew everything due
  %(prog)s --dry-run                        # Scan and report, change nothing
  %(prog)s --config prod.yaml --concurrency 10
        """,
    )

    parser.add_argument(
        "--config",
        type=str,
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Maximum certificates renewed at once (overrides config and CERT_RENEWAL_CONCURRENCY)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Test mode: scan and report without signing or writing anything",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Also write log output to this file",
    )
    parser.add_argument(
        "--json-summary",
        action="store_true",
        help="Output machine-readable JSON summary at the end of execution",
    )

    args = parser.parse_args(argv)

    if args.concurrency is not None and args.concurrency < 1:
        parser.error("--concurrency must be at least 1")

    return args


def print_execution_summary(
    summary: ExecutionSummary,
    logger: StructuredLogger,
    output_json: bool = False,
) -> None:
    """
    Print the execution summary.

    Args:
        summary: ExecutionSummary with all results
        logger: Logger to write the summary to
        output_json: If True, also output machine-readable JSON
    """
    separator = "=" * 70

    logger.info("")
    logger.info(separator)
    logger.info("EXECUTION SUMMARY")
    logger.info(separator)

    status_str = "SUCCESS" if summary.success else "FAILED"
    if summary.dry_run:
        status_str += " (DRY RUN)"

    logger.info(f"Status: {status_str}")
    logger.info(f"Started: {summary.started_at}")
    logger.info(f"Completed: {summary.completed_at}")
    logger.info("")
    logger.info(f"  Mappings run:                 {summary.total_mappings}")
    logger.info(f"  Mappings skipped (invalid):   {summary.skipped_mappings}")
    logger.info(f"  Certificates discovered:      {summary.total_discovered}")
    logger.info(f"  Due for renewal:              {summary.total_eligible}")
    logger.info(f"  Renewed successfully:         {summary.total_renewed}")
    logger.info(f"  Skipped:                      {summary.total_skipped}")
    logger.info(f"  Failed:                       {summary.total_failed}")

    for mapping in summary.mappings:
        mapping_status = "ERROR" if mapping.has_failures else "OK"
        logger.info(f"\n  [{mapping_status}] {mapping.label}")

        if mapping.error:
            logger.error(f"      Mapping Error: {mapping.error}")

        for result in mapping.results:
            if result.status == RenewalStatus.FAILED:
                logger.error(f"      [FAILED] {result.record_id}: {result.message}")
            elif result.status == RenewalStatus.RENEWED:
                logger.info(f"      [SUCCESS] {result.record_id}")
            else:
                logger.info(f"      [SKIPPED] {result.record_id}: {result.message}")

    if summary.global_errors:
        logger.info("")
        logger.error("GLOBAL ERRORS")
        for error in summary.global_errors:
            logger.error(f"  - {error}")

    logger.info("")
    logger.info(f"Exit Code: {summary.exit_code}")
    logger.info(separator)

    # Status line for CI/CD pipeline parsing
    if summary.success:
        print("PIPELINE_STATUS=SUCCESS")
    else:
        print("PIPELINE_STATUS=FAILURE")

    if output_json:
        logger.info("--- BEGIN JSON SUMMARY ---")
        print(summary.to_json())
        logger.info("--- END JSON SUMMARY ---")


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Exit Codes:
        0 - Every due certificate was renewed (or nothing was due)
        1 - One or more mappings or certificates failed
        2 - Configuration error

    Returns:
        Exit code
    """
    args = parse_arguments(argv)

    logger = setup_logger(
        verbose=args.verbose,
        use_colors=not args.no_color,
        log_file=args.log_file,
    )

    logger.info("Certificate Renewal Agent")
    logger.info("=" * 50)

    summary = ExecutionSummary(dry_run=args.dry_run)

    try:
        config = load_config(args.config, logger)

        if args.concurrency:
            config.settings.concurrency = args.concurrency
            logger.info(f"Concurrency overridden to {args.concurrency}")
        if args.dry_run:
            config.settings.dry_run = True
        if config.settings.dry_run:
            summary.dry_run = True
            logger.warning("DRY RUN MODE - No certificates will be signed or written")

        orchestrator = RenewalOrchestrator.from_config(config, logger)
        mapping_summaries = asyncio.run(orchestrator.run(config.maps))

        summary.skipped_mappings = len(config.maps) - len(mapping_summaries)
        for mapping_summary in mapping_summaries:
            summary.add_mapping_summary(mapping_summary)

    except ConfigurationError as e:
        error_msg = f"Configuration error: {e}"
        logger.error(error_msg)
        summary.add_global_error(error_msg, exit_code=2)

    except CompletionCounterError as e:
        logger.critical(f"Batch accounting invariant violated: {e}")
        raise

    except Exception as e:
        error_msg = f"Fatal error: {e}"
        logger.error(error_msg)
        summary.add_global_error(error_msg)
        if args.verbose:
            import traceback
            traceback.print_exc()

    summary.finalize()
    print_execution_summary(summary, logger, output_json=args.json_summary)

    return summary.exit_code


if __name__ == "__main__":
    sys.exit(main())

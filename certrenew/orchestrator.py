"""
Renewal orchestration.

Runs every configured mapping through the same pipeline:

    Discover -> Filter -> Renew (batch) -> Report

Discovery asks the mapping's scanner for candidate records, filtering
keeps those expiring within the mapping's threshold, and the renew stage
signs and persists each eligible record through a bounded-concurrency
batch. Failures are contained at the level they occur: a record failure
never stops its batch, and a mapping failure never stops other mappings.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .batch import CompletionCounterError, ListAggregator
from .config_loader import Config, MappingConfig, Settings
from .helpers import filter_expiring, format_expiration_status
from .logger import StructuredLogger, null_logger
from .provider import Provider, SigningError, VaultProvider
from .records import CertificateRecord, RecordError
from .scanner import FileScanner, PushError, Scanner


class RenewalStatus(Enum):
    """Status of a certificate renewal attempt."""
    RENEWED = "renewed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class RenewalResult:
    """Result of a certificate renewal attempt."""
    record_id: str
    status: RenewalStatus
    message: str
    serial: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "record_id": self.record_id,
            "status": self.status.value.upper(),
            "message": self.message,
            "serial": self.serial,
        }


@dataclass
class MappingSummary:
    """Summary of one mapping's run."""
    scanner: Optional[str]
    provider: Optional[str]
    discovered: int = 0
    unreadable: int = 0
    eligible: int = 0
    renewed: int = 0
    skipped: int = 0
    failed: int = 0
    error: Optional[str] = None  # Mapping-level error (e.g., discovery failed)
    results: List[RenewalResult] = field(default_factory=list)

    @property
    def label(self) -> str:
        return f"{self.scanner or '?'} -> {self.provider or '?'}"

    @property
    def has_failures(self) -> bool:
        """Check if the mapping had any failures."""
        return self.failed > 0 or self.error is not None

    def add_result(self, result: RenewalResult) -> None:
        """Record a per-certificate result and update counts."""
        self.results.append(result)
        if result.status == RenewalStatus.RENEWED:
            self.renewed += 1
        elif result.status == RenewalStatus.SKIPPED:
            self.skipped += 1
        elif result.status == RenewalStatus.FAILED:
            self.failed += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "scanner": self.scanner,
            "provider": self.provider,
            "discovered": self.discovered,
            "unreadable": self.unreadable,
            "eligible": self.eligible,
            "renewed": self.renewed,
            "skipped": self.skipped,
            "failed": self.failed,
            "error": self.error,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class ResolvedMapping:
    """A mapping whose scanner and provider exist and whose durations are set."""
    config: MappingConfig
    scanner: Scanner
    provider: Provider

    @property
    def expire(self) -> float:
        return self.config.expire

    @property
    def threshold(self) -> float:
        return self.config.threshold


def build_scanners(config: Config, logger: Optional[StructuredLogger] = None) -> Dict[str, Scanner]:
    """Instantiate every configured scanner by name."""
    return {
        name: FileScanner(scanner_config, logger)
        for name, scanner_config in config.scanners.items()
    }


def build_providers(config: Config, logger: Optional[StructuredLogger] = None) -> Dict[str, Provider]:
    """Instantiate every configured provider by name."""
    return {
        name: VaultProvider(provider_config, logger)
        for name, provider_config in config.providers.items()
    }


def _result_from_error(error: BaseException) -> RenewalResult:
    """Turn a batch error into a FAILED result."""
    if isinstance(error, SigningError):
        return RenewalResult(error.record_id, RenewalStatus.FAILED, f"Signing failed: {error.message}")
    if isinstance(error, PushError):
        return RenewalResult(error.record_id, RenewalStatus.FAILED, f"Persist failed: {error.message}")
    if isinstance(error, RecordError):
        return RenewalResult(error.record_id, RenewalStatus.FAILED, error.message)
    return RenewalResult("unknown", RenewalStatus.FAILED, f"Unexpected error: {error}")


class RenewalOrchestrator:
    """
    Drives scan, sign and persist for every configured mapping.
    """

    def __init__(
        self,
        scanners: Dict[str, Scanner],
        providers: Dict[str, Provider],
        settings: Optional[Settings] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            scanners: Scanners by configured name
            providers: Providers by configured name
            settings: Concurrency, persist attempts and dry-run flag
            logger: Logger to report to
        """
        self.scanners = scanners
        self.providers = providers
        self.settings = settings or Settings()
        self.logger = logger or null_logger()

    @classmethod
    def from_config(cls, config: Config, logger: Optional[StructuredLogger] = None) -> "RenewalOrchestrator":
        """Build an orchestrator with the scanners and providers of a configuration."""
        return cls(
            scanners=build_scanners(config, logger),
            providers=build_providers(config, logger),
            settings=config.settings,
            logger=logger,
        )

    def resolve_mappings(self, maps: List[MappingConfig]) -> List[ResolvedMapping]:
        """
        Pair each mapping with its scanner and provider.

        Mappings referring to unknown names, missing expire/threshold, or
        carrying values the configuration could not use are skipped with
        a warning.
        """
        resolved = []

        for mapping in maps:
            problems = list(mapping.problems)
            if mapping.scanner not in self.scanners:
                problems.append(f"unknown scanner '{mapping.scanner}'")
            if mapping.provider not in self.providers:
                problems.append(f"unknown provider '{mapping.provider}'")
            if mapping.expire is None and not any(p.startswith("expire") for p in mapping.problems):
                problems.append("missing expire")
            if mapping.threshold is None and not any(p.startswith("threshold") for p in mapping.problems):
                problems.append("missing threshold")

            if problems:
                self.logger.warning(f"Skipping mapping {mapping.label}: {', '.join(problems)}")
                continue

            resolved.append(ResolvedMapping(
                config=mapping,
                scanner=self.scanners[mapping.scanner],
                provider=self.providers[mapping.provider],
            ))

        return resolved

    async def run(self, maps: List[MappingConfig]) -> List[MappingSummary]:
        """
        Run every valid mapping, one after the other.

        Args:
            maps: Mapping configurations

        Returns:
            One MappingSummary per mapping that was run

        Raises:
            CompletionCounterError: If batch accounting is broken
        """
        summaries = []

        for mapping in self.resolve_mappings(maps):
            try:
                summary = await self.run_mapping(mapping)
            except CompletionCounterError:
                raise
            except Exception as e:
                self.logger.error(f"Error processing mapping {mapping.config.label}: {e}")
                summary = MappingSummary(
                    scanner=mapping.config.scanner,
                    provider=mapping.config.provider,
                    error=str(e),
                )
            summaries.append(summary)

        return summaries

    async def run_mapping(self, mapping: ResolvedMapping) -> MappingSummary:
        """
        Run the renewal pipeline for one mapping.

        Args:
            mapping: Resolved mapping

        Returns:
            MappingSummary for the run
        """
        summary = MappingSummary(scanner=mapping.config.scanner, provider=mapping.config.provider)
        self.logger.section(f"Mapping: {mapping.config.label}")
        self.logger.info(f"  Threshold: {mapping.threshold}h, requested validity: {mapping.expire}h")

        # Discover
        try:
            records = await mapping.scanner.scan(mapping.threshold)
        except CompletionCounterError:
            raise
        except Exception as e:
            self.logger.warning(f"Discovery failed for {mapping.config.label}: {e}")
            summary.error = f"Discovery failed: {e}"
            return summary

        # Filter
        now = datetime.now(timezone.utc)
        eligible = filter_expiring(records, mapping.threshold, now)
        summary.discovered = len(records)
        summary.unreadable = sum(1 for r in records if r.expiration is None)
        summary.eligible = len(eligible)
        self._log_selection(records, eligible, mapping.threshold, now)

        # Renew
        if self.settings.dry_run:
            for record in eligible:
                self.logger.info(f"  DRY RUN - would renew {record.id}")
                summary.add_result(RenewalResult(record.id, RenewalStatus.SKIPPED, "Dry run - would renew"))
        elif eligible:
            batch = ListAggregator(self.logger)
            results = await batch.pack(
                eligible,
                self.settings.concurrency,
                lambda record: self.renew_record(record, mapping),
            )
            for signed in results.values:
                summary.add_result(RenewalResult(
                    record_id=signed.id,
                    status=RenewalStatus.RENEWED,
                    message=f"Renewed, serial {signed.serial}",
                    serial=signed.serial,
                ))
            for error in results.errors:
                summary.add_result(_result_from_error(error))

        # Report
        self.logger.subsection(f"Result for {mapping.config.label}")
        self.logger.info(f"  Discovered: {summary.discovered} ({summary.unreadable} unreadable)")
        self.logger.info(f"  Eligible: {summary.eligible}")
        self.logger.info(f"  Renewed: {summary.renewed}")
        if summary.skipped:
            self.logger.info(f"  Skipped: {summary.skipped}")
        if summary.failed:
            self.logger.warning(f"  Failed: {summary.failed}")

        return summary

    def _log_selection(
        self,
        records: List[CertificateRecord],
        eligible: List[CertificateRecord],
        threshold: float,
        now: datetime,
    ) -> None:
        eligible_ids = {r.id for r in eligible}
        for record in records:
            status = format_expiration_status(record.expiration, threshold, now)
            if record.expiration is None:
                self.logger.warning(f"  Skipping {record.id}: cannot read request or certificate")
            elif record.id in eligible_ids:
                self.logger.info(f"  {record.id}: {status} - renewing")
            else:
                self.logger.debug(f"  Skipping {record.id} [{status}]")

    async def renew_record(self, record: CertificateRecord, mapping: ResolvedMapping) -> CertificateRecord:
        """
        Sign a record and persist the result.

        A record that fails to sign is never pushed.

        Returns:
            The signed record, carrying serial and certificate material

        Raises:
            SigningError: If the provider did not issue a certificate
            PushError: If the issued certificate could not be stored
        """
        try:
            signed = await mapping.provider.sign(record, mapping.expire)
        except SigningError as e:
            self.logger.warning(f"Error signing cert {record.id}: {e.message}")
            raise
        except CompletionCounterError:
            raise
        except Exception as e:
            self.logger.warning(f"Error signing cert {record.id}: {e}")
            raise SigningError(record.id, str(e)) from e

        await self._persist(signed, mapping.scanner)

        self.logger.success(f"Renewed certificate {record.id} (S/N {signed.serial})")
        return signed

    async def _persist(self, record: CertificateRecord, scanner: Scanner) -> CertificateRecord:
        """
        Push a signed record, retrying up to the configured attempts.

        When every attempt fails the issued certificate stays orphaned at
        the provider; the next run sees the old certificate and reissues.
        """
        attempts = self.settings.persist_attempts
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                return await scanner.push(record)
            except CompletionCounterError:
                raise
            except Exception as e:
                last_error = e
                message = e.message if isinstance(e, RecordError) else str(e)
                self.logger.warning(
                    f"Error pushing cert {record.id} (attempt {attempt}/{attempts}): {message}"
                )

        self.logger.failure(
            f"Certificate S/N {record.serial} for {record.id} was issued but not stored; "
            "it will be reissued on the next run"
        )
        if isinstance(last_error, PushError):
            raise last_error
        raise PushError(record.id, str(last_error)) from last_error

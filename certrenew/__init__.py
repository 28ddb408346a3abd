"""
Certificate renewal agent.

This package contains:
- batch: Bounded-concurrency batch execution and result aggregation
- orchestrator: Scan, sign and persist pipeline per mapping
- scanner: Filesystem certificate request scanner
- provider: Vault PKI certificate provider
- config_loader: Configuration loading and validation
- logger: Logging setup
- helpers: Expiry calculations and path derivation
"""

from .logger import setup_logger, null_logger, StructuredLogger
from .config_loader import (
    load_config,
    Config,
    Settings,
    MappingConfig,
    FileScannerConfig,
    VaultProviderConfig,
    ConfigurationError,
)
from .records import CertificateRecord, RecordError
from .batch import (
    CompletionCounter,
    CompletionCounterError,
    ListAggregator,
    KeyAggregator,
    ListResults,
    KeyResults,
    partition,
)
from .helpers import (
    is_expiring_soon,
    filter_expiring,
    format_expiration_status,
)
from .scanner import Scanner, FileScanner, ScanError, PushError
from .provider import Provider, VaultProvider, SigningError
from .orchestrator import (
    RenewalOrchestrator,
    RenewalResult,
    RenewalStatus,
    MappingSummary,
)

__all__ = [
    # Logger
    "setup_logger",
    "null_logger",
    "StructuredLogger",
    # Config
    "load_config",
    "Config",
    "Settings",
    "MappingConfig",
    "FileScannerConfig",
    "VaultProviderConfig",
    "ConfigurationError",
    # Records
    "CertificateRecord",
    "RecordError",
    # Batch
    "CompletionCounter",
    "CompletionCounterError",
    "ListAggregator",
    "KeyAggregator",
    "ListResults",
    "KeyResults",
    "partition",
    # Helpers
    "is_expiring_soon",
    "filter_expiring",
    "format_expiration_status",
    # Scanner
    "Scanner",
    "FileScanner",
    "ScanError",
    "PushError",
    # Provider
    "Provider",
    "VaultProvider",
    "SigningError",
    # Orchestrator
    "RenewalOrchestrator",
    "RenewalResult",
    "RenewalStatus",
    "MappingSummary",
]

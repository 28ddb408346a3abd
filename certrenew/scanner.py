"""
Filesystem certificate scanner.

Discovers certificate requests stored as files, reads their current
certificates, and writes renewed certificates and keys back.

Naming convention:
- Requests are CFSSL-style JSON files ({"CN": ..., "hosts": [...]})
  matching the scanner's glob pattern.
- Certificates and keys are PEM files whose names are derived from the
  request name by a simple substitution (the scanner's crt/key maps).
"""

import asyncio
import glob
import json
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.backends import default_backend

from .batch import KeyAggregator, ListAggregator
from .config_loader import FileScannerConfig
from .helpers import derive_path, split_hosts
from .logger import StructuredLogger, null_logger
from .records import CertificateRecord, RecordError

KEY_FILE_MODE = 0o600
CERT_FILE_MODE = 0o644


class ScanError(RecordError):
    """Raised when discovery fails for a pattern or a single request file."""
    pass


class PushError(RecordError):
    """Raised when renewed certificate material cannot be written."""

    def __init__(self, record_id: str, message: str, failures: Optional[Dict[str, BaseException]] = None):
        super().__init__(record_id, message)
        self.failures = failures or {}


class Scanner(ABC):
    """Abstract base class for certificate stores."""

    name: str = "scanner"

    @abstractmethod
    async def scan(self, threshold_hours: float) -> List[CertificateRecord]:
        """
        Discover candidate records.

        Args:
            threshold_hours: Renewal lead time of the mapping being run

        Returns:
            Every record found, unreadable ones with expiration None

        Raises:
            Exception: If discovery as a whole fails
        """
        pass

    @abstractmethod
    async def push(self, record: CertificateRecord) -> CertificateRecord:
        """
        Persist a signed record.

        Raises:
            PushError: If the record could not be stored
        """
        pass


def parse_request(content: str) -> Dict[str, Any]:
    """
    Parse a CFSSL certificate request.

    Args:
        content: JSON request document

    Returns:
        Dict with cn, sans and ip_sans
    """
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError("Certificate request must be a JSON object")

    sans, ip_sans = split_hosts(data.get("hosts") or [])
    return {
        "cn": data.get("CN"),
        "sans": sans,
        "ip_sans": ip_sans,
    }


def parse_certificate(content: str) -> Dict[str, Any]:
    """
    Parse a PEM certificate (the first one of a chain).

    Args:
        content: PEM encoded certificate or chain

    Returns:
        Dict with expiration, cn, sans and ip_sans
    """
    cert = x509.load_pem_x509_certificate(content.encode("utf-8"), default_backend())

    cn = None
    for attribute in cert.subject:
        if attribute.oid == x509.oid.NameOID.COMMON_NAME:
            cn = attribute.value
            break

    sans: List[str] = []
    ip_sans: List[str] = []
    try:
        san_ext = cert.extensions.get_extension_for_oid(
            x509.oid.ExtensionOID.SUBJECT_ALTERNATIVE_NAME
        )
        sans = list(san_ext.value.get_values_for_type(x509.DNSName))
        ip_sans = [str(ip) for ip in san_ext.value.get_values_for_type(x509.IPAddress)]
    except x509.ExtensionNotFound:
        pass

    return {
        "expiration": cert.not_valid_after_utc,
        "cn": cn,
        "sans": sans,
        "ip_sans": ip_sans,
    }


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _stage_text(path: str, content: str, mode: int) -> str:
    """
    Write content to a new temporary file next to `path`.

    The file is created with `mode` before any content is written, so a
    private key is never readable by others, even briefly.

    Returns:
        Path of the temporary file
    """
    directory, name = os.path.split(path)
    fd, staged = tempfile.mkstemp(prefix=f".{name}.", suffix=".tmp", dir=directory or ".")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            os.fchmod(f.fileno(), mode)
            f.write(content)
    except Exception:
        os.unlink(staged)
        raise
    return staged


def _discard(paths: Iterable[str]) -> None:
    for path in paths:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass


class FileScanner(Scanner):
    """
    Scanner for certificate requests stored on the local filesystem.
    """

    def __init__(self, config: FileScannerConfig, logger: Optional[StructuredLogger] = None):
        """
        Initialize the scanner.

        Args:
            config: Scanner configuration (glob pattern and name maps)
            logger: Logger to report to
        """
        self.config = config
        self.logger = logger or null_logger()

    @property
    def name(self) -> str:
        return self.config.name

    def derive_paths(self, csr_path: str) -> Tuple[str, str]:
        """
        Derive the certificate and key paths of a request.

        Raises:
            ValueError: If a derived path would collide with the request
                or with the other derived file
        """
        crt_path = derive_path(csr_path, self.config.crt_map)
        key_path = derive_path(csr_path, self.config.key_map)
        if crt_path == key_path:
            raise ValueError(f"Certificate and key of {csr_path} map to the same file {crt_path}")
        return crt_path, key_path

    async def _parse_file(self, path: str, parser: Callable[[str], Dict[str, Any]]) -> Dict[str, Any]:
        self.logger.debug(f"Reading file {path}")
        content = await asyncio.to_thread(_read_text, path)
        return parser(content)

    async def read_record(self, csr_path: str) -> CertificateRecord:
        """
        Read a request and its certificate concurrently.

        Request data takes precedence over certificate data, but the
        expiration always comes from the certificate. A request without a
        readable certificate is due immediately; a record where neither
        file could be read has no expiration.

        Args:
            csr_path: Absolute path of the request file

        Returns:
            CertificateRecord for the request
        """
        crt_path, key_path = self.derive_paths(csr_path)

        files = KeyAggregator()
        files.add("csr", self._parse_file(csr_path, parse_request))
        files.add("crt", self._parse_file(crt_path, parse_certificate))
        outcome = await files.wait()

        csr = outcome.keyset.get("csr")
        crt = outcome.keyset.get("crt")

        for kind, error in outcome.errset.items():
            if kind == "crt" and csr is not None and isinstance(error, FileNotFoundError):
                self.logger.info(f"No certificate yet for {csr_path}, it will be issued")
            else:
                self.logger.warning(f"Error loading {kind} file for {csr_path}: {error}")

        record = CertificateRecord(id=csr_path, cert=crt_path, key=key_path)

        details = csr or crt
        if details:
            record.cn = details["cn"]
            record.sans = details["sans"]
            record.ip_sans = details["ip_sans"]

        if crt is not None:
            record.expiration = crt["expiration"]
        elif csr is not None:
            record.expiration = datetime.now(timezone.utc)

        return record

    async def scan_file(self, fname: str) -> CertificateRecord:
        """
        Resolve a request file to its real path and read its record.

        Raises:
            ScanError: If the file cannot be resolved or read
        """
        try:
            full_name = await asyncio.to_thread(lambda: str(Path(fname).resolve(strict=True)))
        except OSError as e:
            raise ScanError(fname, f"Cannot resolve path: {e}") from e

        try:
            return await self.read_record(full_name)
        except Exception as e:
            raise ScanError(full_name, str(e)) from e

    async def scan(self, threshold_hours: float) -> List[CertificateRecord]:
        """
        Discover every request matching the scanner's pattern.

        Unreadable requests are returned with no expiration; files that
        cannot be resolved at all are logged and left out. Eligibility
        against the threshold is decided by the caller.

        Args:
            threshold_hours: Renewal lead time of the mapping being run

        Returns:
            List of CertificateRecord

        Raises:
            ScanError: If the pattern cannot be expanded
        """
        self.logger.debug(
            f"Scanning {self.config.path} for certificates expiring within {threshold_hours}h"
        )

        try:
            files = await asyncio.to_thread(glob.glob, self.config.path, recursive=True)
        except Exception as e:
            raise ScanError(self.config.path, f"Failed to expand pattern: {e}") from e

        if not files:
            self.logger.warning(f"No matching files found for {self.config.path}")

        scans = ListAggregator(self.logger)
        for fname in sorted(files):
            scans.push(self.scan_file(fname))
        results = await scans.wait()

        for error in results.errors:
            if isinstance(error, RecordError):
                self.logger.warning(f"Failed to load {error.record_id}: {error.message}")
            else:
                self.logger.warning(f"Failed to load request: {error}")

        return results.values

    async def push(self, record: CertificateRecord) -> CertificateRecord:
        """
        Write a renewed certificate chain and key next to the request.

        Both files are first written concurrently to temporary files in
        their target directories, the key file readable by its owner only.
        Once both are staged they are moved into place, key first. Any
        failure before the chain is moved leaves the previous certificate
        on disk, so the record is due again on the next scan.

        Args:
            record: Signed record (cert_pem and key_pem set)

        Returns:
            The same record

        Raises:
            PushError: If either file could not be written
        """
        if not record.is_signed:
            raise PushError(record.id, "Record carries no certificate material")

        try:
            crt_path, key_path = self.derive_paths(record.id)
        except ValueError as e:
            raise PushError(record.id, str(e)) from e
        self.logger.debug(f"Saving certificate data for {record.id}")

        writes = KeyAggregator()
        writes.add("crt", asyncio.to_thread(_stage_text, crt_path, record.cert_pem, CERT_FILE_MODE))
        writes.add("key", asyncio.to_thread(_stage_text, key_path, record.key_pem, KEY_FILE_MODE))
        outcome = await writes.wait()
        staged = outcome.keyset

        if outcome.errset:
            await asyncio.to_thread(_discard, list(staged.values()))
            details = "; ".join(f"{kind}: {error}" for kind, error in sorted(outcome.errset.items()))
            raise PushError(record.id, f"Failed to save {details}", failures=dict(outcome.errset))

        for kind, target in (("key", key_path), ("crt", crt_path)):
            try:
                await asyncio.to_thread(os.replace, staged[kind], target)
            except OSError as e:
                await asyncio.to_thread(_discard, list(staged.values()))
                raise PushError(record.id, f"Failed to save {kind}: {e}", failures={kind: e}) from e

        self.logger.debug(f"Saved {crt_path} and {key_path}")
        return record

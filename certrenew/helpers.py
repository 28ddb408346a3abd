"""
Common utility functions.

Provides helper functions for expiry calculations, renewal eligibility,
and file name derivation.
"""

import ipaddress
from datetime import datetime, timezone, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from .records import CertificateRecord


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_expiring_soon(
    expires_on: Optional[datetime],
    threshold_hours: float,
    now: Optional[datetime] = None,
) -> bool:
    """
    Check if a certificate expires strictly before now + threshold.

    Args:
        expires_on: Certificate expiration datetime
        threshold_hours: Lead time in hours that makes a certificate eligible
        now: Reference time (defaults to current UTC time)

    Returns:
        True if the certificate is expired or expiring within the threshold,
        False if it is valid for longer or its expiration is unknown
    """
    if expires_on is None:
        return False

    now = _as_utc(now) if now is not None else datetime.now(timezone.utc)
    threshold = now + timedelta(hours=threshold_hours)

    return _as_utc(expires_on) < threshold


def filter_expiring(
    records: Iterable[CertificateRecord],
    threshold_hours: float,
    now: Optional[datetime] = None,
) -> List[CertificateRecord]:
    """
    Keep the records that are due for renewal.

    Records with an unknown expiration are never kept.

    Args:
        records: Candidate records from a scanner
        threshold_hours: Lead time in hours that makes a record eligible
        now: Reference time (defaults to current UTC time)

    Returns:
        Eligible records, in input order
    """
    if now is None:
        now = datetime.now(timezone.utc)
    return [r for r in records if is_expiring_soon(r.expiration, threshold_hours, now)]


def format_hours_remaining(
    expires_on: Optional[datetime],
    now: Optional[datetime] = None,
) -> Union[int, str]:
    """
    Calculate whole hours remaining until expiration.

    Returns:
        Hours remaining (negative if expired), or "unknown"
    """
    if expires_on is None:
        return "unknown"

    now = _as_utc(now) if now is not None else datetime.now(timezone.utc)
    delta = _as_utc(expires_on) - now

    return int(delta.total_seconds() // 3600)


def format_expiration_status(
    expires_on: Optional[datetime],
    threshold_hours: float,
    now: Optional[datetime] = None,
) -> str:
    """
    Format a human-readable expiration status.

    Args:
        expires_on: Certificate expiration datetime
        threshold_hours: Hours threshold for the "expiring" status
        now: Reference time (defaults to current UTC time)

    Returns:
        Formatted status string
    """
    hours = format_hours_remaining(expires_on, now)

    if isinstance(hours, str):
        return "Unknown expiration"

    if hours < 0:
        return f"EXPIRED ({abs(hours)} hours ago)"
    elif is_expiring_soon(expires_on, threshold_hours, now):
        return f"EXPIRING in {hours} hour{'s' if hours != 1 else ''}"
    else:
        return f"Valid ({hours} hours remaining)"


def derive_path(source: str, replacement: Sequence[str]) -> str:
    """
    Derive a related file name from a request file name.

    Args:
        source: Request file path
        replacement: [search, replace] pair, e.g. ["-csr.json", "-key.pem"]

    Returns:
        Path with the first occurrence of `search` replaced

    Raises:
        ValueError: If the replacement leaves the path unchanged, which
            would make the derived file overwrite the request

    Examples:
        >>> derive_path("/etc/pki/web-csr.json", ["-csr.json", "-chain.pem"])
        '/etc/pki/web-chain.pem'
    """
    search, replace = replacement
    derived = source.replace(search, replace, 1)
    if derived == source:
        raise ValueError(f"Mapping {search!r} -> {replace!r} does not change {source}")
    return derived


def split_hosts(hosts: Iterable[str]) -> Tuple[List[str], List[str]]:
    """
    Split request hosts into DNS names and IP addresses.

    Args:
        hosts: Host entries from a certificate request

    Returns:
        Tuple of (dns_names, ip_addresses), duplicates removed
    """
    sans: List[str] = []
    ip_sans: List[str] = []

    for host in hosts:
        if not host:
            continue
        try:
            address = str(ipaddress.ip_address(host))
        except ValueError:
            if host not in sans:
                sans.append(host)
        else:
            if address not in ip_sans:
                ip_sans.append(address)

    return sans, ip_sans

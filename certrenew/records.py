"""
Certificate records exchanged between scanners, providers and the
orchestrator.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


class RecordError(Exception):
    """Base class for failures tied to a single certificate record."""

    def __init__(self, record_id: str, message: str):
        super().__init__(f"{record_id}: {message}")
        self.record_id = record_id
        self.message = message


@dataclass
class CertificateRecord:
    """
    A certificate request and its current certificate.

    Created by a scanner during discovery. A provider returns an enriched
    copy carrying the newly issued material (serial, cert_pem, key_pem),
    which the scanner then persists.

    expiration is None when neither the request nor the certificate could
    be read; such records are never eligible for renewal.
    """
    id: str
    cert: Optional[str] = None
    key: Optional[str] = None
    expiration: Optional[datetime] = None
    cn: Optional[str] = None
    sans: List[str] = field(default_factory=list)
    ip_sans: List[str] = field(default_factory=list)
    serial: Optional[str] = None
    cert_pem: Optional[str] = None
    key_pem: Optional[str] = None

    @property
    def is_signed(self) -> bool:
        """Check if the record carries newly issued certificate material."""
        return bool(self.cert_pem and self.key_pem)

"""
HashiCorp Vault certificate provider.

Issues certificates through the Vault PKI secrets engine
(POST /v1/<mount>/issue/<role>).
"""

import asyncio
import dataclasses
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests

from .config_loader import VaultProviderConfig
from .logger import StructuredLogger, null_logger
from .records import CertificateRecord, RecordError


class SigningError(RecordError):
    """Raised when the PKI backend does not issue a certificate."""
    pass


def format_ttl(hours: float) -> str:
    """
    Format a validity period as a Vault duration string.

    Whole hours are sent as hours, anything else as whole seconds, so
    the value never uses exponent notation.

    Examples:
        >>> format_ttl(720)
        '720h'
        >>> format_ttl(1.5)
        '5400s'
    """
    hours = float(hours)
    if hours.is_integer():
        return f"{int(hours)}h"
    return f"{max(1, round(hours * 3600))}s"


class Provider(ABC):
    """Abstract base class for certificate issuers."""

    name: str = "provider"

    @abstractmethod
    async def sign(self, record: CertificateRecord, valid_hours: float) -> CertificateRecord:
        """
        Issue a certificate for a record.

        Args:
            record: Record to renew
            valid_hours: Requested validity in hours

        Returns:
            Enriched copy of the record

        Raises:
            SigningError: If no certificate was issued
        """
        pass


class VaultProvider(Provider):
    """
    Certificate provider backed by a Vault PKI mount.

    Requests are sent with the requests library on a worker thread so
    that several signing calls can be outstanding at once.
    """

    def __init__(self, config: VaultProviderConfig, logger: Optional[StructuredLogger] = None):
        """
        Initialize the provider.

        Args:
            config: Vault server, mount, role and token
            logger: Logger to report to
        """
        self.config = config
        self.logger = logger or null_logger()

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def issue_url(self) -> str:
        return f"{self.config.base_url}/v1/{self.config.path}/issue/{self.config.role}"

    def build_request(self, record: CertificateRecord, valid_hours: float) -> Dict[str, Any]:
        """
        Build the issue request body for a record.

        Args:
            record: Record to renew
            valid_hours: Requested validity of the new certificate

        Returns:
            JSON body for the issue endpoint
        """
        body: Dict[str, Any] = {
            "common_name": record.cn,
            "format": "pem",
            "ttl": format_ttl(valid_hours),
        }
        if record.sans:
            body["alt_names"] = ",".join(record.sans)
        if record.ip_sans:
            body["ip_sans"] = ",".join(record.ip_sans)
        return body

    def _issue(self, record: CertificateRecord, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Call the issue endpoint (blocking).

        Returns:
            The response's data object

        Raises:
            SigningError: On transport errors, error statuses or malformed replies
        """
        try:
            response = requests.post(
                self.issue_url,
                json=body,
                headers={
                    "X-Vault-Token": self.config.token,
                    "Content-Type": "application/json",
                },
                verify=self.config.verify,
                timeout=self.config.timeout,
            )
        except requests.RequestException as e:
            raise SigningError(record.id, f"Vault request failed: {e}") from e

        if response.status_code not in (200, 201):
            try:
                errors = response.json().get("errors") or []
            except ValueError:
                errors = []
            detail = "; ".join(str(err) for err in errors) or response.text
            raise SigningError(record.id, f"Vault API error: {response.status_code} - {detail}")

        try:
            result = response.json()
        except ValueError as e:
            raise SigningError(record.id, f"Invalid JSON in Vault response: {e}") from e

        data = result.get("data") if isinstance(result, dict) else None
        if not data:
            raise SigningError(record.id, "Missing data field in result")
        return data

    async def sign(self, record: CertificateRecord, valid_hours: float) -> CertificateRecord:
        """
        Issue a new certificate for a record.

        Args:
            record: Record with cn, sans and ip_sans
            valid_hours: Requested validity in hours

        Returns:
            Copy of the record with serial, cert_pem (certificate followed
            by the issuing CA) and key_pem set

        Raises:
            SigningError: If the certificate could not be issued
        """
        if not record.cn:
            raise SigningError(record.id, "Record has no common name")

        body = self.build_request(record, valid_hours)
        self.logger.debug(f"Issuing certificate for {record.id} at {self.issue_url} ({body['ttl']})")

        data = await asyncio.to_thread(self._issue, record, body)

        try:
            cert_pem = data["certificate"]
            key_pem = data["private_key"]
        except KeyError as e:
            raise SigningError(record.id, f"Missing {e} in Vault response") from e

        if data.get("issuing_ca"):
            cert_pem = f"{cert_pem}\n{data['issuing_ca']}"

        serial = data.get("serial_number")
        self.logger.debug(f"Generated cert S/N {serial} for {record.id}")

        return dataclasses.replace(
            record,
            serial=serial,
            cert_pem=cert_pem,
            key_pem=key_pem,
        )

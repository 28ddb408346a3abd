"""
Shared fixtures for the certificate renewal tests.
"""

import ipaddress
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from certrenew.config_loader import FileScannerConfig


def make_certificate_pem(
    common_name: str,
    not_after: datetime,
    dns_names: Optional[List[str]] = None,
    ip_addresses: Optional[List[str]] = None,
) -> str:
    """Build a self-signed PEM certificate expiring at not_after."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])

    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_after - timedelta(days=30))
        .not_valid_after(not_after)
    )

    alt_names = [x509.DNSName(d) for d in dns_names or []]
    alt_names += [x509.IPAddress(ipaddress.ip_address(ip)) for ip in ip_addresses or []]
    if alt_names:
        builder = builder.add_extension(x509.SubjectAlternativeName(alt_names), critical=False)

    cert = builder.sign(key, hashes.SHA256())
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


def write_request(path: Path, common_name: str, hosts: List[str]) -> Path:
    """Write a CFSSL-style certificate request."""
    path.write_text(json.dumps({
        "CN": common_name,
        "hosts": hosts,
        "key": {"algo": "ecdsa", "size": 256},
    }))
    return path


@pytest.fixture
def scanner_config(tmp_path) -> FileScannerConfig:
    """File scanner configuration rooted at a temporary directory."""
    return FileScannerConfig(
        name="files",
        path=str(tmp_path / "**" / "*-csr.json"),
        crt_map=("-csr.json", "-chain.pem"),
        key_map=("-csr.json", "-key.pem"),
    )


@pytest.fixture
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep the concurrency override of the host out of the tests."""
    monkeypatch.delenv("CERT_RENEWAL_CONCURRENCY", raising=False)

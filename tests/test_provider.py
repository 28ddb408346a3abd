"""
Tests for the Vault certificate provider.

The HTTP layer is patched; no Vault server is needed.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from certrenew.config_loader import VaultProviderConfig
from certrenew.provider import SigningError, VaultProvider, format_ttl
from certrenew.records import CertificateRecord


@pytest.fixture
def provider():
    return VaultProvider(VaultProviderConfig(
        name="vault",
        host="vault.example.com",
        path="pki_int",
        role="web",
        token="s.token",
        verify="/etc/ssl/ca.pem",
        timeout=5,
    ))


@pytest.fixture
def record():
    return CertificateRecord(
        id="/etc/pki/web-csr.json",
        cn="web.example.com",
        sans=["web.example.com", "www.example.com"],
        ip_sans=["10.0.0.5"],
    )


def vault_response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


class TestBuildRequest:
    """Test the issue request body"""

    def test_full_body(self, provider, record):
        assert provider.build_request(record, 720) == {
            "common_name": "web.example.com",
            "format": "pem",
            "ttl": "720h",
            "alt_names": "web.example.com,www.example.com",
            "ip_sans": "10.0.0.5",
        }

    def test_without_sans(self, provider):
        body = provider.build_request(CertificateRecord(id="x", cn="x.example.com"), 1.5)

        assert body == {"common_name": "x.example.com", "format": "pem", "ttl": "5400s"}


class TestFormatTtl:
    """Test Vault duration strings"""

    @pytest.mark.parametrize("hours, expected", [
        (720, "720h"),
        (720.0, "720h"),
        (1.5, "5400s"),
        (0.0001, "1s"),
        (1_000_000, "1000000h"),
        (87_600_000, "87600000h"),
    ])
    def test_format(self, hours, expected):
        assert format_ttl(hours) == expected

    def test_large_validity_in_request(self, provider):
        body = provider.build_request(CertificateRecord(id="x", cn="x.example.com"), 1e6)

        assert body["ttl"] == "1000000h"


class TestSign:
    """Test certificate issuance"""

    @pytest.mark.asyncio
    async def test_issues_certificate(self, provider, record):
        payload = {"data": {
            "serial_number": "39:dd:2e",
            "certificate": "-----CERT-----",
            "issuing_ca": "-----CA-----",
            "private_key": "-----KEY-----",
        }}

        with patch("certrenew.provider.requests.post", return_value=vault_response(200, payload)) as post:
            signed = await provider.sign(record, 720)

        post.assert_called_once()
        args, kwargs = post.call_args
        assert args[0] == "https://vault.example.com:8200/v1/pki_int/issue/web"
        assert kwargs["json"]["common_name"] == "web.example.com"
        assert kwargs["headers"]["X-Vault-Token"] == "s.token"
        assert kwargs["verify"] == "/etc/ssl/ca.pem"
        assert kwargs["timeout"] == 5

        assert signed.serial == "39:dd:2e"
        assert signed.cert_pem == "-----CERT-----\n-----CA-----"
        assert signed.key_pem == "-----KEY-----"
        assert signed.id == record.id
        assert record.cert_pem is None

    @pytest.mark.asyncio
    async def test_error_status(self, provider, record):
        response = vault_response(400, {"errors": ["common name not allowed by this role"]})

        with patch("certrenew.provider.requests.post", return_value=response):
            with pytest.raises(SigningError, match="400 - common name not allowed"):
                await provider.sign(record, 720)

    @pytest.mark.asyncio
    async def test_error_status_without_json(self, provider, record):
        response = vault_response(503, ValueError("no json"), text="upstream unavailable")

        with patch("certrenew.provider.requests.post", return_value=response):
            with pytest.raises(SigningError, match="upstream unavailable"):
                await provider.sign(record, 720)

    @pytest.mark.asyncio
    async def test_transport_error(self, provider, record):
        with patch(
            "certrenew.provider.requests.post",
            side_effect=requests.ConnectionError("connection refused"),
        ):
            with pytest.raises(SigningError, match="connection refused") as exc_info:
                await provider.sign(record, 720)

        assert exc_info.value.record_id == record.id

    @pytest.mark.asyncio
    async def test_missing_data(self, provider, record):
        with patch("certrenew.provider.requests.post", return_value=vault_response(200, {"warnings": []})):
            with pytest.raises(SigningError, match="Missing data field in result"):
                await provider.sign(record, 720)

    @pytest.mark.asyncio
    async def test_missing_private_key(self, provider, record):
        payload = {"data": {"serial_number": "1", "certificate": "-----CERT-----"}}

        with patch("certrenew.provider.requests.post", return_value=vault_response(200, payload)):
            with pytest.raises(SigningError, match="private_key"):
                await provider.sign(record, 720)

    @pytest.mark.asyncio
    async def test_record_without_common_name(self, provider):
        with patch("certrenew.provider.requests.post") as post:
            with pytest.raises(SigningError, match="common name"):
                await provider.sign(CertificateRecord(id="/etc/pki/broken-csr.json"), 720)

        post.assert_not_called()

"""
Tests for the filesystem scanner.
"""

import dataclasses
import os
import stat
from datetime import timedelta
from unittest.mock import patch

import pytest

from certrenew.config_loader import FileScannerConfig
from certrenew.helpers import filter_expiring
from certrenew.records import CertificateRecord
from certrenew.scanner import FileScanner, PushError, ScanError, parse_request

from conftest import make_certificate_pem, write_request


class TestParseRequest:
    """Test CFSSL request parsing"""

    def test_reads_cn_and_hosts(self):
        parsed = parse_request('{"CN": "web.example.com", "hosts": ["web.example.com", "10.1.2.3"]}')

        assert parsed == {
            "cn": "web.example.com",
            "sans": ["web.example.com"],
            "ip_sans": ["10.1.2.3"],
        }

    def test_missing_hosts(self):
        assert parse_request('{"CN": "a"}')["sans"] == []

    def test_rejects_non_object(self):
        with pytest.raises(ValueError):
            parse_request("[1, 2]")


class TestScan:
    """Test discovery of certificate requests"""

    @pytest.mark.asyncio
    async def test_discovers_every_request(self, tmp_path, scanner_config, utc_now):
        expires = (utc_now + timedelta(days=10)).replace(microsecond=0)

        # Request with a current certificate
        write_request(tmp_path / "web-csr.json", "web.example.com", ["web.example.com", "10.0.0.5"])
        (tmp_path / "web-chain.pem").write_text(make_certificate_pem("web.example.com", expires))

        # Request never issued yet, in a nested directory
        nested = tmp_path / "apps"
        nested.mkdir()
        write_request(nested / "api-csr.json", "api.example.com", ["api.example.com"])

        # Request that cannot be read
        (tmp_path / "broken-csr.json").write_text("not json")

        records = await FileScanner(scanner_config).scan(24)
        by_id = {os.path.basename(r.id): r for r in records}

        assert set(by_id) == {"web-csr.json", "api-csr.json", "broken-csr.json"}

        web = by_id["web-csr.json"]
        assert web.cn == "web.example.com"
        assert web.sans == ["web.example.com"]
        assert web.ip_sans == ["10.0.0.5"]
        assert web.expiration == expires
        assert web.cert == str(tmp_path.resolve() / "web-chain.pem")
        assert web.key == str(tmp_path.resolve() / "web-key.pem")

        api = by_id["api-csr.json"]
        assert api.cn == "api.example.com"
        assert api.expiration is not None
        assert api.expiration <= utc_now + timedelta(minutes=1)

        broken = by_id["broken-csr.json"]
        assert broken.expiration is None
        assert broken.cn is None

    @pytest.mark.asyncio
    async def test_certificate_used_when_request_unreadable(self, tmp_path, scanner_config, utc_now):
        expires = (utc_now + timedelta(hours=3)).replace(microsecond=0)
        (tmp_path / "db-csr.json").write_text("{ broken")
        (tmp_path / "db-chain.pem").write_text(
            make_certificate_pem("db.example.com", expires, dns_names=["db.example.com"], ip_addresses=["::1"])
        )

        [record] = await FileScanner(scanner_config).scan(24)

        assert record.cn == "db.example.com"
        assert record.sans == ["db.example.com"]
        assert record.ip_sans == ["::1"]
        assert record.expiration == expires

    @pytest.mark.asyncio
    async def test_no_matching_files(self, scanner_config):
        assert await FileScanner(scanner_config).scan(24) == []

    @pytest.mark.asyncio
    async def test_scan_file_missing(self, tmp_path, scanner_config):
        with pytest.raises(ScanError) as exc_info:
            await FileScanner(scanner_config).scan_file(str(tmp_path / "gone-csr.json"))

        assert exc_info.value.record_id.endswith("gone-csr.json")

    @pytest.mark.asyncio
    async def test_request_without_mapped_names_is_skipped(self, tmp_path):
        config = FileScannerConfig(
            name="files",
            path=str(tmp_path / "*.json"),
            crt_map=("-csr.json", "-chain.pem"),
            key_map=("-csr.json", "-key.pem"),
        )
        write_request(tmp_path / "web.json", "web.example.com", ["web.example.com"])

        assert await FileScanner(config).scan(24) == []


def staged_files(directory):
    return [p.name for p in directory.iterdir() if p.name.endswith(".tmp")]


class TestPush:
    """Test writing renewed material"""

    @staticmethod
    def signed_record(tmp_path, cert_pem="-----CERT-----\n-----CA-----"):
        return CertificateRecord(
            id=str(tmp_path / "web-csr.json"),
            cn="web.example.com",
            serial="aa:bb",
            cert_pem=cert_pem,
            key_pem="-----KEY-----",
        )

    @pytest.mark.asyncio
    async def test_writes_chain_and_key(self, tmp_path, scanner_config):
        record = self.signed_record(tmp_path)
        modes_before_move = {}
        real_replace = os.replace

        def recording_replace(src, dst):
            modes_before_move[os.path.basename(dst)] = stat.S_IMODE(os.stat(src).st_mode)
            real_replace(src, dst)

        with patch("certrenew.scanner.os.replace", side_effect=recording_replace):
            result = await FileScanner(scanner_config).push(record)

        assert result is record
        assert (tmp_path / "web-chain.pem").read_text() == record.cert_pem
        assert (tmp_path / "web-key.pem").read_text() == record.key_pem
        # The key is private from the moment it is created
        assert modes_before_move["web-key.pem"] == 0o600
        assert stat.S_IMODE(os.stat(tmp_path / "web-key.pem").st_mode) == 0o600
        assert stat.S_IMODE(os.stat(tmp_path / "web-chain.pem").st_mode) == 0o644
        assert staged_files(tmp_path) == []

    @pytest.mark.asyncio
    async def test_replaces_existing_files(self, tmp_path, scanner_config):
        (tmp_path / "web-chain.pem").write_text("old chain")
        key = tmp_path / "web-key.pem"
        key.write_text("old key")
        key.chmod(0o644)

        await FileScanner(scanner_config).push(self.signed_record(tmp_path))

        assert key.read_text() == "-----KEY-----"
        assert stat.S_IMODE(os.stat(key).st_mode) == 0o600

    @pytest.mark.asyncio
    async def test_failed_chain_write_leaves_key_untouched(self, tmp_path):
        config = FileScannerConfig(
            name="files",
            path=str(tmp_path / "*-csr.json"),
            crt_map=("-csr.json", "/missing/dir/chain.pem"),
            key_map=("-csr.json", "-key.pem"),
        )
        record = self.signed_record(tmp_path)

        with pytest.raises(PushError) as exc_info:
            await FileScanner(config).push(record)

        assert set(exc_info.value.failures) == {"crt"}
        assert exc_info.value.record_id == record.id
        assert not (tmp_path / "web-key.pem").exists()
        assert staged_files(tmp_path) == []

    @pytest.mark.asyncio
    async def test_failed_key_write_keeps_record_due(self, tmp_path, scanner_config, utc_now):
        old_chain = make_certificate_pem("web.example.com", utc_now + timedelta(hours=3))
        write_request(tmp_path / "web-csr.json", "web.example.com", ["web.example.com"])
        (tmp_path / "web-chain.pem").write_text(old_chain)
        # A directory where the key should go makes moving the key fail
        (tmp_path / "web-key.pem").mkdir()

        scanner = FileScanner(scanner_config)
        [record] = await scanner.scan(12)
        new_chain = make_certificate_pem("web.example.com", utc_now + timedelta(hours=720))
        signed = dataclasses.replace(record, serial="aa:bb", cert_pem=new_chain, key_pem="-----KEY-----")

        with pytest.raises(PushError) as exc_info:
            await scanner.push(signed)

        assert set(exc_info.value.failures) == {"key"}
        assert (tmp_path / "web-chain.pem").read_text() == old_chain
        assert staged_files(tmp_path) == []

        [rescanned] = await scanner.scan(12)
        assert filter_expiring([rescanned], 12) == [rescanned]

    @pytest.mark.asyncio
    async def test_unmapped_request_is_not_overwritten(self, tmp_path):
        config = FileScannerConfig(
            name="files",
            path=str(tmp_path / "*.json"),
            crt_map=("-csr.json", "-chain.pem"),
            key_map=("-csr.json", "-key.pem"),
        )
        request = write_request(tmp_path / "web.json", "web.example.com", ["web.example.com"])
        original = request.read_text()
        record = CertificateRecord(
            id=str(request), cn="web.example.com", serial="1", cert_pem="CERT", key_pem="KEY"
        )

        with pytest.raises(PushError):
            await FileScanner(config).push(record)

        assert request.read_text() == original

    @pytest.mark.asyncio
    async def test_unsigned_record_is_rejected(self, tmp_path, scanner_config):
        record = CertificateRecord(id=str(tmp_path / "web-csr.json"), cn="web.example.com")

        with pytest.raises(PushError):
            await FileScanner(scanner_config).push(record)

        assert not (tmp_path / "web-chain.pem").exists()

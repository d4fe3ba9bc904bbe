"""
Tests for the mkcert-renewer command line.

CertificateManager is patched so every command runs against FakeMkcertGateway
and an in-memory observer instead of the real mkcert binary.
"""

from unittest.mock import patch

import pytest

from conftest import FakeMkcertGateway, FakeObserver, expiry_in, write_certificate
from mkcert_renewer.main import build_parser, main
from mkcert_renewer.manager import CertificateManager


@pytest.fixture
def fake_gateway():
    return FakeMkcertGateway()


@pytest.fixture(autouse=True)
def patched_manager(fake_gateway):
    def factory(config):
        return CertificateManager(
            config=config, gateway=fake_gateway, observer_factory=FakeObserver
        )

    with patch("mkcert_renewer.main.CertificateManager", side_effect=factory) as mock_cls:
        yield mock_cls


@pytest.fixture
def cert_args(temp_dir):
    return ["-p", str(temp_dir), "-n", "dev"]


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_generate_options(self):
        args = build_parser().parse_args(["generate", "-d", "a.test,b.test", "-n", "dev"])
        assert args.command == "generate"
        assert args.domains == "a.test,b.test"
        assert args.name == "dev"


class TestGenerate:
    def test_generate(self, temp_dir, cert_args, fake_gateway, capsys):
        assert main(["generate", "-d", "app.test, api.test", *cert_args]) == 0

        assert (temp_dir / "dev.pem").exists()
        assert (temp_dir / "dev-key.pem").exists()
        assert fake_gateway.calls[0]["args"][4:] == ["app.test", "api.test"]
        assert "Certificate generated" in capsys.readouterr().out

    def test_generate_reports_backup(self, temp_dir, cert_args, capsys):
        write_certificate(temp_dir / "dev.pem", temp_dir / "dev-key.pem", expiry_in(3))

        assert main(["generate", *cert_args]) == 0

        assert "Backup:" in capsys.readouterr().out

    def test_tool_missing(self, cert_args, fake_gateway, capsys):
        fake_gateway.installed = False

        assert main(["generate", *cert_args]) == 1

        assert "not installed" in capsys.readouterr().err

    def test_config_file(self, temp_dir, fake_gateway):
        config_file = temp_dir / "renewer.json"
        config_file.write_text(
            '{"cert_path": "%s", "cert_name": "from-file", "domains": ["f.test"]}'
            % temp_dir.as_posix()
        )

        assert main(["--config", str(config_file), "generate"]) == 0

        assert (temp_dir / "from-file.pem").exists()
        assert fake_gateway.calls[0]["args"][4:] == ["f.test"]


    def test_config_file_with_unknown_keys(self, temp_dir):
        config_file = temp_dir / "renewer.json"
        config_file.write_text(
            '{"certPath": "%s", "certName": "legacy", "keyPath": "elsewhere"}'
            % temp_dir.as_posix()
        )

        assert main(["--config", str(config_file), "generate"]) == 0

        assert (temp_dir / "legacy.pem").exists()


class TestCheck:
    def test_no_certificate(self, cert_args, capsys):
        assert main(["check", *cert_args]) == 1
        assert "No valid certificate found" in capsys.readouterr().out

    def test_valid_certificate(self, temp_dir, cert_args, capsys):
        write_certificate(temp_dir / "dev.pem", temp_dir / "dev-key.pem", expiry_in(60))

        assert main(["check", *cert_args]) == 0

        out = capsys.readouterr().out
        assert "Days remaining: 60" in out
        assert "Certificate is valid" in out

    def test_expiring_certificate(self, temp_dir, cert_args, capsys):
        write_certificate(temp_dir / "dev.pem", temp_dir / "dev-key.pem", expiry_in(20))

        assert main(["check", "-w", "30", *cert_args]) == 1

        assert "needs renewal" in capsys.readouterr().out


class TestLongRunningCommands:
    @patch("mkcert_renewer.main._wait_forever")
    def test_monitor(self, mock_wait, cert_args, capsys):
        assert main(["monitor", *cert_args]) == 0

        mock_wait.assert_called_once()
        assert "Monitoring" in capsys.readouterr().out

    @patch("mkcert_renewer.main._wait_forever")
    def test_schedule(self, mock_wait, cert_args, capsys):
        assert main(["schedule", "-c", "*/10 * * * *", "-d", "app.test", *cert_args]) == 0

        out = capsys.readouterr().out
        assert "Auto-renewal scheduled: '*/10 * * * *'" in out
        assert "Domains: app.test" in out

    @patch("mkcert_renewer.main._wait_forever")
    def test_schedule_invalid_cron(self, mock_wait, cert_args, capsys):
        assert main(["schedule", "-c", "every day", *cert_args]) == 1

        mock_wait.assert_not_called()
        assert "Error:" in capsys.readouterr().err


class TestInstall:
    def test_install_instructions(self, capsys):
        assert main(["install"]) == 0

        out = capsys.readouterr().out
        assert "Install mkcert with:" in out
        assert "mkcert -install" in out

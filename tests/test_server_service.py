"""Tests for the server service."""

import socket
from unittest.mock import MagicMock, patch

import pytest
import requests

from mailkit.errors import MailError
from mailkit.services.server_service import ServerService

MASTER_CF = "smtp      inet  n       -       y       -       -       smtpd\n"


@pytest.fixture
def master_cf(config):
    config.postfix_dir.mkdir(parents=True, exist_ok=True)
    config.master_cf.write_text(MASTER_CF)
    return config.master_cf


def ip_response(ip: str) -> MagicMock:
    response = MagicMock()
    response.json.return_value = {"ip": ip}
    response.text = f"{ip}\n"
    return response


class TestSetup:
    """Tests for the initial configuration of Postfix and Dovecot."""

    def test_sets_postfix_parameters(self, server, config, runner, master_cf):
        server.setup("Mail.Example.com")

        params = runner.params
        assert params["myhostname"] == "mail.example.com"
        assert params["myorigin"] == str(config.mailname_file)
        assert params["virtual_mailbox_maps"] == f"hash:{config.vmailbox_file}"
        assert params["virtual_alias_maps"] == (
            f"hash:{config.virtual_file}, regexp:{config.virtual_regexp_file}"
        )
        assert params["virtual_uid_maps"] == "static:5000"
        assert params["smtpd_sasl_type"] == "dovecot"
        assert params["smtpd_tls_auth_only"] == "no"
        assert config.mailname_file.read_text() == "mail.example.com\n"

    def test_creates_store_files(self, server, config, master_cf):
        result = server.setup("mail.example.com")

        for path in [
            config.virtual_file,
            config.virtual_domains_file,
            config.virtual_regexp_file,
            config.vmailbox_file,
            config.dovecot_users_file,
        ]:
            assert path.exists()
            assert str(path) in result["files_created"]
        assert config.dovecot_users_file.stat().st_mode & 0o777 == 0o600
        assert config.maildir_base.is_dir()

    def test_keeps_existing_main_domains(self, server, runner, master_cf):
        runner.params["virtual_mailbox_domains"] = "$virtual_mailbox_maps, example.com"

        server.setup("mail.example.com")

        assert runner.params["virtual_mailbox_domains"] == "example.com"

    def test_compiles_maps_and_restarts(self, server, config, runner, master_cf):
        server.setup("mail.example.com")

        assert ["postmap", str(config.virtual_file)] in runner.calls
        assert ["postmap", str(config.vmailbox_file)] in runner.calls
        assert runner.calls[-2:] == [
            ["systemctl", "restart", "postfix"],
            ["systemctl", "restart", "dovecot"],
        ]

    def test_adds_submission_service_once(self, server, master_cf):
        first = server.setup("mail.example.com")
        second = server.setup("mail.example.com")

        content = master_cf.read_text()
        assert first["submission_added"] is True
        assert second["submission_added"] is False
        assert content.startswith(MASTER_CF)
        assert content.count("\nsubmission inet n") == 1
        assert "  -o smtpd_sasl_auth_enable=yes\n" in content
        assert "  -o smtpd_tls_auth_only=no\n" in content

    def test_tls_auth_only_can_be_required(self, config, runner, master_cf):
        config.tls_auth_only = True

        ServerService(config, runner).setup("mail.example.com")

        assert runner.params["smtpd_tls_auth_only"] == "yes"
        assert "  -o smtpd_tls_auth_only=yes\n" in master_cf.read_text()

    def test_missing_master_cf(self, server, config):
        result = server.setup("mail.example.com")

        assert result["submission_added"] is False
        assert not config.master_cf.exists()

    def test_configures_dovecot_passwd_file(self, server, config, master_cf):
        result = server.setup("mail.example.com")

        snippet = (config.dovecot_conf_dir / "auth-passwdfile.conf.ext").read_text()
        assert result["dovecot_auth_configured"] is True
        assert "driver = passwd-file" in snippet
        assert f"args = scheme=SHA512-CRYPT username_format=%u {config.dovecot_users_file}" in snippet
        assert "uid=5000 gid=5000" in snippet

        auth_conf = config.dovecot_conf_dir / "10-auth.conf"
        assert auth_conf.read_text() == "!include auth-passwdfile.conf.ext\n"

        server.setup("mail.example.com")
        assert auth_conf.read_text().count("!include auth-passwdfile.conf.ext") == 1

    def test_invalid_hostname(self, server, runner):
        with pytest.raises(MailError) as exc_info:
            server.setup("mail")

        assert exc_info.value.code == "INVALID_DOMAIN"
        assert runner.calls == []


class TestHostname:
    def test_set_hostname(self, server, config, runner):
        server.set_hostname("mx.example.com")

        assert ["hostnamectl", "set-hostname", "mx.example.com"] in runner.calls
        assert runner.params["myhostname"] == "mx.example.com"
        assert config.mailname_file.read_text() == "mx.example.com\n"
        assert ["systemctl", "restart", "postfix"] in runner.calls
        assert ["systemctl", "restart", "dovecot"] in runner.calls

    def test_rdns_matches(self, server, runner):
        runner.params["myhostname"] = "mail.example.com"

        with patch("mailkit.services.server_service.requests.get") as mock_get, \
                patch("mailkit.services.server_service.socket.gethostbyaddr") as mock_rdns:
            mock_get.return_value = ip_response("203.0.113.5")
            mock_rdns.return_value = ("Mail.Example.com.", [], ["203.0.113.5"])

            result = server.check_hostname()

        assert result["public_ip"] == "203.0.113.5"
        assert result["rdns"] == "mail.example.com"
        assert result["matches"] is True

    def test_rdns_mismatch(self, server):
        with patch("mailkit.services.server_service.requests.get") as mock_get, \
                patch("mailkit.services.server_service.socket.gethostbyaddr") as mock_rdns:
            mock_get.return_value = ip_response("203.0.113.5")
            mock_rdns.return_value = ("host-203-0-113-5.isp.net", [], ["203.0.113.5"])

            result = server.check_hostname("mail.example.com")

        assert result["matches"] is False
        assert "host-203-0-113-5.isp.net" in result["message"]

    def test_no_ptr_record(self, server):
        with patch("mailkit.services.server_service.requests.get") as mock_get, \
                patch("mailkit.services.server_service.socket.gethostbyaddr") as mock_rdns:
            mock_get.return_value = ip_response("203.0.113.5")
            mock_rdns.side_effect = socket.herror(1, "Unknown host")

            result = server.check_hostname("mail.example.com")

        assert result["rdns"] is None
        assert result["matches"] is False

    def test_falls_back_to_next_ip_service(self, server):
        with patch("mailkit.services.server_service.requests.get") as mock_get, \
                patch("mailkit.services.server_service.socket.gethostbyaddr") as mock_rdns:
            mock_get.side_effect = [requests.ConnectionError("down"), ip_response("198.51.100.7")]
            mock_rdns.return_value = ("mail.example.com", [], [])

            result = server.check_hostname("mail.example.com")

        assert result["public_ip"] == "198.51.100.7"
        assert mock_get.call_args_list[1].args[0] == "https://ifconfig.me/ip"

    def test_malformed_ip_service_reply_falls_back(self, server):
        broken = MagicMock()
        broken.json.return_value = {"error": "rate limited"}
        with patch("mailkit.services.server_service.requests.get") as mock_get, \
                patch("mailkit.services.server_service.socket.gethostbyaddr") as mock_rdns:
            mock_get.side_effect = [broken, ip_response("198.51.100.7")]
            mock_rdns.return_value = ("mail.example.com", [], [])

            result = server.check_hostname("mail.example.com")

        assert result["public_ip"] == "198.51.100.7"

    def test_no_ip_service_reachable(self, server):
        with patch("mailkit.services.server_service.requests.get") as mock_get:
            mock_get.side_effect = requests.ConnectionError("offline")

            with pytest.raises(MailError) as exc_info:
                server.check_hostname("mail.example.com")

        assert exc_info.value.code == "IP_DETECTION_FAILED"


class TestSasl:
    def test_add_sasl_user(self, server, config, runner):
        result = server.add_sasl_user("relay", "s3cret")

        call = ["saslpasswd2", "-c", "-p", "-f", str(config.sasl_db_file), "relay"]
        assert call in runner.calls
        assert runner.inputs[runner.calls.index(call)] == "s3cret\n"
        assert ["chown", "postfix:postfix", str(config.sasl_db_file)] in runner.calls
        assert config.sasl_db_file.stat().st_mode & 0o777 == 0o660
        assert result["username"] == "relay"

    def test_password_not_on_command_line(self, server, runner):
        server.add_sasl_user("relay", "s3cret")

        assert not any("s3cret" in arg for call in runner.calls for arg in call)

    def test_invalid_username(self, server, runner):
        with pytest.raises(MailError) as exc_info:
            server.add_sasl_user("relay user", "s3cret")

        assert exc_info.value.code == "INVALID_USERNAME"
        assert runner.calls == []

    def test_empty_password(self, server):
        with pytest.raises(MailError) as exc_info:
            server.add_sasl_user("relay", "")

        assert exc_info.value.code == "INVALID_PASSWORD"


class TestHeaderChecks:
    def test_enable(self, server, config, runner):
        server.set_received_header_removal(True)

        assert config.header_checks_file.read_text() == "/^Received:/     IGNORE\n"
        assert runner.params["header_checks"] == f"regexp:{config.header_checks_file}"
        assert ["systemctl", "reload", "postfix"] in runner.calls
        assert server.header_checks_status()["enabled"] is True

    def test_disable(self, server, config, runner):
        server.set_received_header_removal(True)

        server.set_received_header_removal(False)

        assert runner.params["header_checks"] == ""
        assert not config.header_checks_file.exists()
        assert server.header_checks_status()["enabled"] is False

    def test_other_header_checks_are_not_ours(self, server, runner):
        runner.params["header_checks"] = "pcre:/etc/postfix/custom_checks"

        assert server.header_checks_status()["enabled"] is False


class TestStatus:
    def test_status(self, populated, server, runner):
        populated.add_redirect_domain("old.org", "info@example.com")
        runner.params["myhostname"] = "mail.example.com"
        runner.states["saslauthd"] = "inactive"

        status = server.status()

        assert status["hostname"] == "mail.example.com"
        assert status["services"] == {
            "postfix": "active",
            "dovecot": "active",
            "saslauthd": "inactive",
        }
        assert status["main_domains"] == 1
        assert status["mailboxes"] == 2
        assert status["redirect_domains"] == 1
        assert status["received_header_removal"] is False

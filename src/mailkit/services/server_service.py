"""Mail host configuration around the directory: setup, hostname, SASL, headers."""

import logging
import socket
from pathlib import Path
from typing import Any

import requests
from jinja2 import Template

from mailkit.config import MailKitConfig, get_config
from mailkit.errors import MailError
from mailkit.locking import atomic_write
from mailkit.services.directory_service import DirectoryService
from mailkit.services.system_service import (
    CommandRunner,
    DovecotControl,
    PostfixControl,
    SystemControl,
    split_list,
)
from mailkit.validation import validate_hostname, validate_sasl_username

logger = logging.getLogger(__name__)

SUBMISSION_SERVICE_TEMPLATE = """
# Submission port for mail clients (added by mailkit)
submission inet n       -       y       -       -       smtpd
  -o syslog_name=postfix/submission
  -o smtpd_tls_security_level={{ tls_level }}
  -o smtpd_sasl_auth_enable=yes
  -o smtpd_recipient_restrictions=permit_sasl_authenticated,reject
  -o smtpd_client_restrictions=permit_sasl_authenticated,reject
  -o smtpd_tls_auth_only={{ tls_auth_only }}
"""

DOVECOT_PASSWDFILE_TEMPLATE = """# Managed by mailkit
passdb {
    driver = passwd-file
    args = scheme={{ scheme }} username_format=%u {{ users_file }}
}

userdb {
    driver = passwd-file
    args = username_format=%u {{ users_file }}
    default_fields = uid={{ uid }} gid={{ gid }} home={{ maildir_base }}/%d/%n
}
"""

DOVECOT_AUTH_SNIPPET = "auth-passwdfile.conf.ext"
RECEIVED_HEADER_RULE = "/^Received:/     IGNORE"
MONITORED_SERVICES = ["postfix", "dovecot", "saslauthd"]

PUBLIC_IP_SERVICES = [
    "https://api.ipify.org?format=json",
    "https://ifconfig.me/ip",
    "https://icanhazip.com",
]


class ServerService:
    """Configure an installed Postfix/Dovecot pair for the virtual directory."""

    def __init__(
        self,
        config: MailKitConfig | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        self.config = config or get_config()
        self.runner = runner or CommandRunner()
        self.postfix = PostfixControl(self.runner, self.config)
        self.dovecot = DovecotControl(self.runner, self.config)
        self.system = SystemControl(self.runner, self.config)
        self.directory = DirectoryService(self.config, self.runner)

    # ─────────────────────────────────────────────────────────────────────────
    # Setup
    # ─────────────────────────────────────────────────────────────────────────

    def setup(self, hostname: str) -> dict[str, Any]:
        """Point Postfix and Dovecot at mailkit's files.

        Packages, TLS certificates and systemd units are left alone; this only
        writes configuration and (re)starts the two daemons.
        """
        hostname = validate_hostname(hostname)
        created = self._init_store_files()

        # Keep main domains that are already configured
        main_domains = [
            token for token in self.postfix.get_list("virtual_mailbox_domains")
            if ":" not in token and not token.startswith("$")
        ]

        settings = {
            "myhostname": hostname,
            "myorigin": str(self.config.mailname_file),
            "mydestination": "localhost",
            "virtual_mailbox_domains": ", ".join(main_domains),
            "virtual_mailbox_base": str(self.config.maildir_base),
            "virtual_mailbox_maps": f"hash:{self.config.vmailbox_file}",
            "virtual_alias_maps": (
                f"hash:{self.config.virtual_file}, regexp:{self.config.virtual_regexp_file}"
            ),
            "virtual_uid_maps": f"static:{self.config.vmail_uid}",
            "virtual_gid_maps": f"static:{self.config.vmail_gid}",
            "smtpd_sasl_type": "dovecot",
            "smtpd_sasl_path": "private/auth",
            "smtpd_sasl_auth_enable": "yes",
            "smtpd_tls_auth_only": self._yes_no(self.config.tls_auth_only),
            "smtpd_recipient_restrictions": (
                "permit_sasl_authenticated, permit_mynetworks, reject_unauth_destination"
            ),
        }
        for param, value in settings.items():
            self.postfix.set(param, value)

        atomic_write(self.config.mailname_file, f"{hostname}\n")

        submission_added = self._configure_submission_port()
        dovecot_configured = self._configure_dovecot_auth()

        self.config.maildir_base.mkdir(parents=True, exist_ok=True)
        self.system.chown_vmail(self.config.maildir_base)

        # Compiles the hash maps and syncs virtual_alias_domains from the ledger
        self.directory.rebuild()

        for service in ["postfix", "dovecot"]:
            self.system.restart(service)

        logger.info("Mail server configured for %s", hostname)
        return {
            "hostname": hostname,
            "files_created": [str(p) for p in created],
            "submission_added": submission_added,
            "dovecot_auth_configured": dovecot_configured,
            "message": "Mail server setup complete",
        }

    @staticmethod
    def _yes_no(flag: bool) -> str:
        return "yes" if flag else "no"

    def _init_store_files(self) -> list[Path]:
        created: list[Path] = []
        for path in [
            self.config.virtual_file,
            self.config.virtual_domains_file,
            self.config.virtual_regexp_file,
            self.config.vmailbox_file,
        ]:
            if not path.exists():
                atomic_write(path, "")
                created.append(path)

        if not self.config.dovecot_users_file.exists():
            atomic_write(self.config.dovecot_users_file, "", mode=0o600)
            created.append(self.config.dovecot_users_file)
        return created

    def _configure_submission_port(self) -> bool:
        """Append a submission service to master.cf unless one is defined."""
        master_cf = self.config.master_cf
        if not master_cf.exists():
            logger.warning("%s not found; submission service not configured", master_cf)
            return False

        content = master_cf.read_text()
        if any(line.startswith("submission ") for line in content.splitlines()):
            return False

        block = Template(SUBMISSION_SERVICE_TEMPLATE, keep_trailing_newline=True).render(
            tls_level="may",
            tls_auth_only=self._yes_no(self.config.tls_auth_only),
        )
        if content and not content.endswith("\n"):
            content += "\n"
        atomic_write(master_cf, content + block)
        logger.info("Added submission service to %s", master_cf)
        return True

    def _configure_dovecot_auth(self) -> bool:
        """Write the passwd-file auth snippet and include it from 10-auth.conf."""
        conf_dir = self.config.dovecot_conf_dir
        snippet = conf_dir / DOVECOT_AUTH_SNIPPET
        changed = False

        if not snippet.exists() or "driver = passwd-file" not in snippet.read_text():
            content = Template(DOVECOT_PASSWDFILE_TEMPLATE, keep_trailing_newline=True).render(
                scheme=self.config.password_scheme,
                users_file=self.config.dovecot_users_file,
                uid=self.config.vmail_uid,
                gid=self.config.vmail_gid,
                maildir_base=self.config.maildir_base,
            )
            atomic_write(snippet, content)
            changed = True

        auth_conf = conf_dir / "10-auth.conf"
        include = f"!include {DOVECOT_AUTH_SNIPPET}"
        current = auth_conf.read_text() if auth_conf.exists() else ""
        if include not in current.splitlines():
            if current and not current.endswith("\n"):
                current += "\n"
            atomic_write(auth_conf, f"{current}{include}\n")
            changed = True

        return changed

    # ─────────────────────────────────────────────────────────────────────────
    # Hostname
    # ─────────────────────────────────────────────────────────────────────────

    def set_hostname(self, hostname: str) -> dict[str, Any]:
        hostname = validate_hostname(hostname)

        self.system.set_hostname(hostname)
        self.postfix.set("myhostname", hostname)
        atomic_write(self.config.mailname_file, f"{hostname}\n")
        for service in ["postfix", "dovecot"]:
            self.system.restart(service)

        logger.info("Hostname updated to %s", hostname)
        return {"hostname": hostname, "message": f"Hostname updated to {hostname}"}

    def check_hostname(self, hostname: str | None = None) -> dict[str, Any]:
        """Compare the reverse DNS of the public IP with the mail hostname."""
        if hostname:
            hostname = validate_hostname(hostname)
        else:
            hostname = self.postfix.get("myhostname")

        ip = self._fetch_public_ip()
        try:
            rdns = socket.gethostbyaddr(ip)[0].rstrip(".").lower()
        except OSError:
            rdns = None

        matches = rdns is not None and rdns == hostname.lower()
        if matches:
            message = f"Reverse DNS of {ip} matches {hostname}"
        elif rdns:
            message = f"Reverse DNS of {ip} is {rdns}, not {hostname}"
        else:
            message = f"No reverse DNS record for {ip}"
        return {
            "hostname": hostname,
            "public_ip": ip,
            "rdns": rdns,
            "matches": matches,
            "message": message,
        }

    def _fetch_public_ip(self) -> str:
        """Fetch public IP from external services."""
        for service in PUBLIC_IP_SERVICES:
            try:
                resp = requests.get(service, timeout=10)
                resp.raise_for_status()

                if "ipify" in service:
                    return resp.json()["ip"]
                return resp.text.strip()

            except (requests.RequestException, KeyError, ValueError):
                logger.debug("Public IP lookup via %s failed", service)
                continue

        raise MailError(
            code="IP_DETECTION_FAILED",
            message="Could not detect the public IP address",
            suggestion="Check network connectivity",
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Status
    # ─────────────────────────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        services = {name: self.system.service_state(name) for name in MONITORED_SERVICES}

        try:
            hostname = self.postfix.get("myhostname")
        except MailError:
            hostname = None

        domains = self.directory.list_main_domains()
        return {
            "hostname": hostname,
            "services": services,
            "main_domains": len(domains),
            "mailboxes": sum(len(d.mailboxes) for d in domains),
            "catch_alls": sum(1 for d in domains if d.catch_all),
            "redirect_domains": len(self.directory.list_redirect_domains()),
            "received_header_removal": self.header_checks_status()["enabled"],
        }

    # ─────────────────────────────────────────────────────────────────────────
    # SASL
    # ─────────────────────────────────────────────────────────────────────────

    def add_sasl_user(self, username: str, password: str) -> dict[str, Any]:
        """Create or replace an SMTP AUTH user in the Cyrus sasldb."""
        username = validate_sasl_username(username)
        if not password:
            raise MailError(
                code="INVALID_PASSWORD",
                message="Password must not be empty",
            )

        db = self.config.sasl_db_file
        self.runner.run(
            ["saslpasswd2", "-c", "-p", "-f", str(db), username],
            input=f"{password}\n",
        )
        self.runner.run(["chown", "postfix:postfix", str(db)])
        db.chmod(0o660)

        logger.info("SASL user %s created", username)
        return {
            "username": username,
            "sasl_db": str(db),
            "message": f"SASL user {username} created",
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Header checks
    # ─────────────────────────────────────────────────────────────────────────

    def header_checks_status(self) -> dict[str, Any]:
        table = f"regexp:{self.config.header_checks_file}"
        value = self.postfix.get("header_checks")
        return {
            "enabled": table in split_list(value),
            "header_checks": value,
            "file": str(self.config.header_checks_file),
            "file_exists": self.config.header_checks_file.exists(),
        }

    def set_received_header_removal(self, enabled: bool) -> dict[str, Any]:
        """Strip (or stop stripping) Received: headers from relayed mail.

        Other tables listed in ``header_checks`` (such as the virtual MTA
        routing rules) stay in place.
        """
        path = self.config.header_checks_file
        table = f"regexp:{path}"
        tables = [t for t in self.postfix.get_list("header_checks") if t != table]
        if enabled:
            atomic_write(path, f"{RECEIVED_HEADER_RULE}\n")
            self.postfix.set_list("header_checks", [table] + tables)
        else:
            self.postfix.set_list("header_checks", tables)
            path.unlink(missing_ok=True)
        self.postfix.reload()

        state = "enabled" if enabled else "disabled"
        logger.info("Received header removal %s", state)
        return {
            "enabled": enabled,
            "file": str(path),
            "message": f"Received header removal {state}",
        }

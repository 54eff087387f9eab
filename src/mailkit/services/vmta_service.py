"""Virtual MTAs: named smtp transports bound to their own address and HELO name.

Each virtual MTA becomes a ``<name> unix ... smtp`` service in master.cf.
Mail is routed to one either by an ``x-vmta: <name>`` header or by the
sender's domain. The list of virtual MTAs is kept in ``vmta_config`` in the
``[name] / ip = / host =`` format, and every other file is generated from it.
"""

import configparser
import io
import ipaddress
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jinja2 import Template

from mailkit.config import MailKitConfig, get_config
from mailkit.errors import MailError
from mailkit.locking import DirectoryLock, StoreTransaction, atomic_write
from mailkit.services.system_service import CommandRunner, PostfixControl, split_list
from mailkit.validation import validate_domain, validate_hostname

logger = logging.getLogger(__name__)

VMTA_NAME_RE = re.compile(r"^[a-z][a-z0-9_-]{0,31}$")

TRANSPORT_SERVICE_TEMPLATE = """{{ name }} unix  -       -       n       -       -       smtp
  -o {{ bind_param }}={{ ip }}
  -o smtp_helo_name={{ host }}
"""

SENDER_TRANSPORT_PARAM = "sender_dependent_default_transport_maps"
HEADER_CHECKS_PARAM = "header_checks"


@dataclass
class VirtualMta:
    """A named outgoing transport with its own source address."""

    name: str
    ip: str
    host: str
    sender_domains: list[str] = field(default_factory=list)

    @property
    def bind_param(self) -> str:
        if ipaddress.ip_address(self.ip).version == 6:
            return "smtp_bind_address6"
        return "smtp_bind_address"


def master_services(content: str) -> set[str]:
    """Service names defined in a master.cf text."""
    names = set()
    for line in content.splitlines():
        if not line.strip() or line.startswith("#") or line[:1].isspace():
            continue
        names.add(line.split()[0])
    return names


def strip_services(content: str, names: set[str]) -> str:
    """Drop the master.cf entries named in ``names`` with their ``-o`` lines."""
    kept: list[str] = []
    skipping = False
    for line in content.splitlines(keepends=True):
        if line[:1].isspace() and line.strip():
            if not skipping:
                kept.append(line)
            continue
        fields = line.split()
        skipping = bool(fields) and not line.startswith("#") and fields[0] in names
        if not skipping:
            kept.append(line)
    return "".join(kept)


class VmtaService:
    """Maintain the virtual MTA transports and their routing tables."""

    def __init__(
        self,
        config: MailKitConfig | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        self.config = config or get_config()
        self.runner = runner or CommandRunner()
        self.postfix = PostfixControl(self.runner, self.config)

    # ─────────────────────────────────────────────────────────────────────────
    # Ledger
    # ─────────────────────────────────────────────────────────────────────────

    def list_vmtas(self) -> list[VirtualMta]:
        path = self.config.vmta_config_file
        if not path.exists():
            return []

        parser = configparser.ConfigParser(interpolation=None)
        try:
            parser.read_string(path.read_text(), source=str(path))
        except configparser.Error as e:
            raise MailError(
                code="INVALID_VMTA_CONFIG",
                message=f"Cannot parse {path}: {e}",
                suggestion="Fix the file or remove the broken section",
            ) from e

        return [
            VirtualMta(
                name=name,
                ip=parser[name].get("ip", "").strip(),
                host=parser[name].get("host", "").strip(),
                sender_domains=split_list(parser[name].get("senders", "")),
            )
            for name in parser.sections()
        ]

    def _render_ledger(self, vmtas: list[VirtualMta]) -> str:
        parser = configparser.ConfigParser(interpolation=None)
        for vmta in vmtas:
            parser[vmta.name] = {"ip": vmta.ip, "host": vmta.host}
            if vmta.sender_domains:
                parser[vmta.name]["senders"] = ", ".join(vmta.sender_domains)
        buf = io.StringIO()
        parser.write(buf)
        return buf.getvalue()

    # ─────────────────────────────────────────────────────────────────────────
    # Operations
    # ─────────────────────────────────────────────────────────────────────────

    def add_vmta(
        self,
        name: str,
        ip: str,
        host: str,
        sender_domains: list[str] | None = None,
    ) -> dict[str, Any]:
        """Create a transport that sends from ``ip`` and greets as ``host``."""
        name = name.strip().lower()
        if not VMTA_NAME_RE.match(name):
            raise MailError(
                code="INVALID_VMTA_NAME",
                message=f"Invalid virtual MTA name: {name!r}",
                suggestion="Start with a letter; use lowercase letters, digits, '-' or '_'",
            )
        try:
            ip = str(ipaddress.ip_address(ip.strip()))
        except ValueError as e:
            raise MailError(
                code="INVALID_IP",
                message=f"Invalid IP address: {ip!r}",
            ) from e
        host = validate_hostname(host)
        senders = [validate_domain(d, what="sender domain") for d in sender_domains or []]

        with DirectoryLock(self.config.lock_file, timeout=self.config.lock_timeout):
            vmtas = self.list_vmtas()
            if any(v.name == name for v in vmtas):
                raise MailError(
                    code="VMTA_EXISTS",
                    message=f"Virtual MTA {name} already exists",
                    suggestion="Remove it first to change its address or hostname",
                )

            master_cf = self._require_master_cf()
            if name in master_services(master_cf.read_text()):
                raise MailError(
                    code="SERVICE_NAME_TAKEN",
                    message=f"master.cf already defines a service named {name}",
                    suggestion="Choose another name",
                )

            for vmta in vmtas:
                claimed = set(vmta.sender_domains) & set(senders)
                if claimed:
                    raise MailError(
                        code="SENDER_DOMAIN_ROUTED",
                        message=f"{', '.join(sorted(claimed))} already routed via {vmta.name}",
                    )

            vmta = VirtualMta(name=name, ip=ip, host=host, sender_domains=senders)
            self._commit(vmtas + [vmta], previous={v.name for v in vmtas})

        logger.info("Virtual MTA %s added (%s as %s)", name, ip, host)
        return {
            "name": name,
            "ip": ip,
            "host": host,
            "sender_domains": senders,
            "message": f"Virtual MTA {name} added; send with 'x-vmta: {name}' to use it",
        }

    def remove_vmta(self, name: str) -> dict[str, Any]:
        name = name.strip().lower()
        with DirectoryLock(self.config.lock_file, timeout=self.config.lock_timeout):
            vmtas = self.list_vmtas()
            if not any(v.name == name for v in vmtas):
                raise MailError(
                    code="VMTA_NOT_FOUND",
                    message=f"Virtual MTA {name} not found",
                    suggestion="Run 'mailkit vmta list' to see configured virtual MTAs",
                )
            self._require_master_cf()
            self._commit([v for v in vmtas if v.name != name], previous={v.name for v in vmtas})

        logger.info("Virtual MTA %s removed", name)
        return {"name": name, "message": f"Virtual MTA {name} removed"}

    # ─────────────────────────────────────────────────────────────────────────
    # Generated files
    # ─────────────────────────────────────────────────────────────────────────

    def _require_master_cf(self) -> Path:
        master_cf = self.config.master_cf
        if not master_cf.exists():
            raise MailError(
                code="MASTER_CF_NOT_FOUND",
                message=f"{master_cf} not found",
                suggestion="Install Postfix and run 'mailkit server setup' first",
            )
        return master_cf

    def _commit(self, vmtas: list[VirtualMta], previous: set[str]) -> None:
        """Write the ledger, routing tables and master.cf, then point postconf at them."""
        paths = [
            self.config.vmta_config_file,
            self.config.vmta_transport_file,
            self.config.vmta_header_checks_file,
            self.config.master_cf,
        ]
        with StoreTransaction(paths) as txn:
            atomic_write(self.config.vmta_config_file, self._render_ledger(vmtas))
            atomic_write(self.config.vmta_transport_file, self._render_sender_routes(vmtas))
            atomic_write(self.config.vmta_header_checks_file, self._render_header_routes(vmtas))

            content = strip_services(self.config.master_cf.read_text(), previous)
            if content and not content.endswith("\n"):
                content += "\n"
            template = Template(TRANSPORT_SERVICE_TEMPLATE, keep_trailing_newline=True)
            for vmta in vmtas:
                content += template.render(
                    name=vmta.name, bind_param=vmta.bind_param, ip=vmta.ip, host=vmta.host
                )
            atomic_write(self.config.master_cf, content)

            try:
                self._apply_postconf(vmtas)
            except MailError:
                txn.rollback()
                raise

        self.postfix.reload()

    def _render_sender_routes(self, vmtas: list[VirtualMta]) -> str:
        lines = []
        for vmta in vmtas:
            for domain in vmta.sender_domains:
                escaped = domain.replace(".", r"\.")
                lines.append(f"/@{escaped}$/    {vmta.name}:\n")
        return "".join(lines)

    def _render_header_routes(self, vmtas: list[VirtualMta]) -> str:
        return "".join(
            f"/^x-vmta:\\s*{vmta.name}\\s*$/    FILTER {vmta.name}:\n" for vmta in vmtas
        )

    def _apply_postconf(self, vmtas: list[VirtualMta]) -> None:
        header_table = f"regexp:{self.config.vmta_header_checks_file}"
        tables = [t for t in self.postfix.get_list(HEADER_CHECKS_PARAM) if t != header_table]
        if vmtas:
            tables.append(header_table)
        self.postfix.set_list(HEADER_CHECKS_PARAM, tables)

        if any(v.sender_domains for v in vmtas):
            self.postfix.set(SENDER_TRANSPORT_PARAM, f"regexp:{self.config.vmta_transport_file}")
        else:
            self.postfix.set(SENDER_TRANSPORT_PARAM, "")

"""Shared fixtures for mailkit tests."""

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from mailkit.config import MailKitConfig
from mailkit.errors import MailError
from mailkit.services.directory_service import DirectoryService
from mailkit.services.server_service import ServerService


class FakeRunner:
    """Stand-in for CommandRunner that emulates the mail tools in memory.

    postconf reads and writes ``params``; postmap touches the ``.db`` file;
    doveadm returns a predictable hash. Every call is recorded.
    """

    def __init__(self, params: dict[str, str] | None = None) -> None:
        self.params: dict[str, str] = dict(params or {})
        self.states: dict[str, str] = {}
        self.calls: list[list[str]] = []
        self.inputs: list[str | None] = []
        self.fail: dict[str, str] = {}

    def run(self, cmd, input=None, check=True):
        cmd = list(cmd)
        self.calls.append(cmd)
        self.inputs.append(input)

        name = cmd[0]
        failing = name if name in self.fail else " ".join(cmd[:2])
        if failing in self.fail:
            raise MailError(
                code="COMMAND_FAILED",
                message=f"'{name}' exited with status 1: {self.fail[failing]}",
            )

        stdout = ""
        if name == "postconf" and cmd[1] == "-h":
            stdout = self.params.get(cmd[2], "") + "\n"
        elif name == "postconf" and cmd[1] == "-e":
            key, _, value = cmd[2].partition("=")
            self.params[key.strip()] = value.strip()
        elif name == "postmap":
            Path(cmd[1] + ".db").touch()
        elif cmd[:2] == ["doveadm", "pw"]:
            stdout = f"{{{cmd[3]}}}fakehash-{cmd[5]}\n"
        elif cmd[:2] == ["systemctl", "is-active"]:
            stdout = self.states.get(cmd[2], "active") + "\n"
        elif name == "saslpasswd2":
            Path(cmd[cmd.index("-f") + 1]).touch()

        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

    def commands(self, name: str) -> list[list[str]]:
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def config(tmp_path):
    """A configuration rooted in a temporary directory."""
    return MailKitConfig(
        postfix_dir=tmp_path / "postfix",
        mailname_file=tmp_path / "mailname",
        dovecot_users_file=tmp_path / "dovecot" / "users",
        dovecot_conf_dir=tmp_path / "dovecot" / "conf.d",
        maildir_base=tmp_path / "vhosts",
        sasl_db_file=tmp_path / "sasldb2",
        config_file=tmp_path / "config.yaml",
        lock_file=tmp_path / "mailkit.lock",
        lock_timeout=0.0,
        log_file=None,
    )


@pytest.fixture
def runner():
    """A fake command runner with empty domain lists."""
    return FakeRunner(params={"virtual_mailbox_domains": "", "virtual_alias_domains": ""})


@pytest.fixture
def directory(config, runner):
    return DirectoryService(config, runner)


@pytest.fixture
def server(config, runner):
    return ServerService(config, runner)


@pytest.fixture
def populated(directory):
    """example.com with info@ and sales@ mailboxes."""
    directory.add_main_domain("example.com")
    directory.add_mailbox("info@example.com", password="secret")
    directory.add_mailbox("sales@example.com", password="secret")
    return directory


@pytest.fixture
def config_file(config, tmp_path):
    """The temporary configuration written out as YAML for the CLI."""
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "postfix_dir": str(config.postfix_dir),
        "mailname_file": str(config.mailname_file),
        "dovecot_users_file": str(config.dovecot_users_file),
        "dovecot_conf_dir": str(config.dovecot_conf_dir),
        "maildir_base": str(config.maildir_base),
        "sasl_db_file": str(config.sasl_db_file),
        "lock_file": str(config.lock_file),
        "lock_timeout": 0,
        "log_file": "",
    }))
    return path


@pytest.fixture
def cli_runner():
    return CliRunner()


@pytest.fixture
def as_root():
    """Make root_only checks pass."""
    with patch("mailkit.access.os.geteuid", return_value=0):
        yield

"""Thin wrappers around the external tools mailkit drives.

Nothing here edits files directly; every change to the running mail system
goes through postconf, postmap, doveadm, systemctl or hostnamectl.
"""

import logging
import re
import subprocess
from collections.abc import Sequence
from pathlib import Path

from mailkit.config import MailKitConfig
from mailkit.errors import MailError

logger = logging.getLogger(__name__)


class CommandRunner:
    """Run fixed system utilities without a shell."""

    def run(
        self,
        cmd: Sequence[str],
        input: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        # doveadm pw carries the clear-text password on its command line
        shown = "doveadm pw ..." if list(cmd[:2]) == ["doveadm", "pw"] else " ".join(cmd)
        logger.debug("Running: %s", shown)
        try:
            result = subprocess.run(
                list(cmd),
                input=input,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError:
            raise MailError(
                code="COMMAND_NOT_FOUND",
                message=f"Command not found: {cmd[0]}",
                suggestion=f"Install the package that provides '{cmd[0]}'",
            )

        if check and result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise MailError(
                code="COMMAND_FAILED",
                message=f"'{cmd[0]}' exited with status {result.returncode}"
                + (f": {stderr}" if stderr else ""),
            )
        return result


def split_list(value: str) -> list[str]:
    """Split a Postfix list parameter (comma and/or whitespace separated)."""
    return [item for item in re.split(r"[\s,]+", value.strip()) if item]


class PostfixControl:
    """postconf / postmap / reload."""

    def __init__(self, runner: CommandRunner, config: MailKitConfig) -> None:
        self.runner = runner
        self.config = config

    def get(self, param: str) -> str:
        result = self.runner.run(["postconf", "-h", param])
        return result.stdout.strip()

    def set(self, param: str, value: str) -> None:
        logger.info("postconf: %s = %s", param, value)
        self.runner.run(["postconf", "-e", f"{param} = {value}"])

    def get_list(self, param: str) -> list[str]:
        return split_list(self.get(param))

    def set_list(self, param: str, items: list[str]) -> None:
        self.set(param, ", ".join(items))

    def postmap(self, path: Path) -> None:
        logger.info("postmap %s", path)
        self.runner.run(["postmap", str(path)])

    def reload(self) -> None:
        action = self.config.reload_action
        logger.info("Postfix %s", action)
        self.runner.run(["systemctl", action, "postfix"])


class DovecotControl:
    """doveadm and the Dovecot service."""

    def __init__(self, runner: CommandRunner, config: MailKitConfig) -> None:
        self.runner = runner
        self.config = config

    def hash_password(self, password: str) -> str:
        result = self.runner.run(
            ["doveadm", "pw", "-s", self.config.password_scheme, "-p", password],
            check=False,
        )
        password_hash = result.stdout.strip()
        if result.returncode != 0 or not password_hash:
            raise MailError(
                code="PASSWORD_HASH_FAILED",
                message="Failed to generate password hash",
                suggestion="Check that doveadm is installed and the scheme is supported",
            )
        return password_hash


class SystemControl:
    """systemd state, hostname and file ownership."""

    def __init__(self, runner: CommandRunner, config: MailKitConfig) -> None:
        self.runner = runner
        self.config = config

    def service_state(self, name: str) -> str:
        try:
            result = self.runner.run(["systemctl", "is-active", name], check=False)
        except MailError:
            return "unknown"
        return result.stdout.strip() or "unknown"

    def restart(self, name: str) -> None:
        logger.info("Restarting %s", name)
        self.runner.run(["systemctl", "restart", name])

    def set_hostname(self, hostname: str) -> None:
        self.runner.run(["hostnamectl", "set-hostname", hostname])

    def chown_vmail(self, path: Path) -> None:
        self.runner.run(
            ["chown", "-R", f"{self.config.vmail_uid}:{self.config.vmail_gid}", str(path)]
        )

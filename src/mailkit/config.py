"""Configuration management for mailkit."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from mailkit.errors import MailError

DEFAULT_CONFIG_FILE = Path("/etc/mailkit/config.yaml")


@dataclass
class MailKitConfig:
    """mailkit configuration settings."""

    # Postfix
    postfix_dir: Path = field(default_factory=lambda: Path("/etc/postfix"))
    mailname_file: Path = field(default_factory=lambda: Path("/etc/mailname"))
    reload_action: str = "reload"
    tls_auth_only: bool = False

    # Dovecot
    dovecot_users_file: Path = field(default_factory=lambda: Path("/etc/dovecot/users"))
    dovecot_conf_dir: Path = field(default_factory=lambda: Path("/etc/dovecot/conf.d"))
    password_scheme: str = "SHA512-CRYPT"

    # Mail store
    maildir_base: Path = field(default_factory=lambda: Path("/var/mail/vhosts"))
    vmail_uid: int = 5000
    vmail_gid: int = 5000

    # SASL
    sasl_db_file: Path = field(default_factory=lambda: Path("/etc/sasldb2"))

    # mailkit itself
    config_file: Path = field(default_factory=lambda: DEFAULT_CONFIG_FILE)
    lock_file: Path = field(default_factory=lambda: Path("/run/lock/mailkit.lock"))
    lock_timeout: float = 10.0
    log_file: Path | None = field(default_factory=lambda: Path("/var/log/mailkit/mailkit.log"))
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Convert string paths to Path objects if needed."""
        path_fields = [
            "postfix_dir",
            "mailname_file",
            "dovecot_users_file",
            "dovecot_conf_dir",
            "maildir_base",
            "sasl_db_file",
            "config_file",
            "lock_file",
            "log_file",
        ]
        for field_name in path_fields:
            value = getattr(self, field_name)
            if isinstance(value, str):
                setattr(self, field_name, Path(value) if value else None)

        if self.reload_action not in ("reload", "restart"):
            raise ValueError(f"reload_action must be 'reload' or 'restart', got {self.reload_action!r}")

        env_level = os.environ.get("MAILKIT_LOG_LEVEL")
        if env_level:
            self.log_level = env_level

    # Derived map paths

    @property
    def virtual_file(self) -> Path:
        return self.postfix_dir / "virtual"

    @property
    def virtual_domains_file(self) -> Path:
        return self.postfix_dir / "virtual_domains"

    @property
    def virtual_regexp_file(self) -> Path:
        return self.postfix_dir / "virtual_regexp"

    @property
    def vmailbox_file(self) -> Path:
        return self.postfix_dir / "vmailbox"

    @property
    def header_checks_file(self) -> Path:
        return self.postfix_dir / "header_checks"

    @property
    def master_cf(self) -> Path:
        return self.postfix_dir / "master.cf"

    @property
    def vmta_config_file(self) -> Path:
        return self.postfix_dir / "vmta_config"

    @property
    def vmta_transport_file(self) -> Path:
        return self.postfix_dir / "vmta_transport"

    @property
    def vmta_header_checks_file(self) -> Path:
        return self.postfix_dir / "vmta_header_checks"

    @classmethod
    def load(cls, config_path: Path | None = None) -> "MailKitConfig":
        """Load configuration from YAML file, falling back to defaults."""
        if config_path is None:
            env_path = os.environ.get("MAILKIT_CONFIG")
            config_path = Path(env_path) if env_path else DEFAULT_CONFIG_FILE

        config = cls(config_file=config_path)

        if config_path.exists():
            try:
                with open(config_path) as f:
                    data = yaml.safe_load(f) or {}
                config = cls._from_dict(data)
                config.config_file = config_path
            except (yaml.YAMLError, OSError):
                pass  # Fall back to defaults
            except (ValueError, TypeError) as e:
                raise MailError(
                    code="INVALID_CONFIG",
                    message=f"Invalid configuration in {config_path}: {e}",
                    suggestion="Fix the value in the config file or remove the key to use the default",
                ) from e

        return config

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "MailKitConfig":
        """Create config from dictionary."""
        kwargs: dict[str, Any] = {}

        # YAML keys match dataclass fields one to one
        known = {
            "postfix_dir",
            "mailname_file",
            "reload_action",
            "tls_auth_only",
            "dovecot_users_file",
            "dovecot_conf_dir",
            "password_scheme",
            "maildir_base",
            "vmail_uid",
            "vmail_gid",
            "sasl_db_file",
            "lock_file",
            "lock_timeout",
            "log_file",
            "log_level",
        }

        for key in known:
            if key in data:
                kwargs[key] = data[key]

        return cls(**kwargs)


# Global config instance (loaded lazily)
_config: MailKitConfig | None = None


def get_config() -> MailKitConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = MailKitConfig.load()
    return _config


def reload_config(config_path: Path | None = None) -> MailKitConfig:
    """Reload configuration from file."""
    global _config
    _config = MailKitConfig.load(config_path)
    return _config

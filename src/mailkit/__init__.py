"""mailkit - virtual domain and mailbox management for Postfix + Dovecot."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("mailkit")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

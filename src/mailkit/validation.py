"""Input format checks for domains, addresses and account names."""

import re

from mailkit.errors import MailError

DOMAIN_RE = re.compile(r"^[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
WILDCARD_DOMAIN_RE = re.compile(r"^[A-Za-z0-9*.-]+\.[A-Za-z]{2,}$")
LOCAL_PART_RE = re.compile(r"^[A-Za-z0-9._%+-]+$")
SASL_USERNAME_RE = re.compile(r"^[a-zA-Z0-9._-]+$")
QUOTA_RE = re.compile(r"^\d+[KMGT]?$")


def normalize_domain(domain: str) -> str:
    return domain.strip().rstrip(".").lower()


def validate_domain(domain: str, what: str = "domain") -> str:
    """Return the normalized domain or raise INVALID_DOMAIN."""
    value = normalize_domain(domain)
    if not DOMAIN_RE.match(value) or ".." in value or value.startswith((".", "-")):
        raise MailError(
            code="INVALID_DOMAIN",
            message=f"Invalid {what} format: {domain!r}",
            suggestion="Use a fully qualified name such as example.com",
        )
    return value


def validate_redirect_pattern(pattern: str) -> str:
    """Validate a literal redirect domain or a ``*`` wildcard pattern."""
    value = normalize_domain(pattern)
    if "*" not in value:
        return validate_domain(value, what="redirect domain")
    if not WILDCARD_DOMAIN_RE.match(value) or "**" in value or ".." in value:
        raise MailError(
            code="INVALID_DOMAIN",
            message=f"Invalid wildcard domain pattern: {pattern!r}",
            suggestion="Use a pattern such as *.example.com",
        )
    return value


def split_address(address: str) -> tuple[str, str]:
    """Split and normalize ``local@domain``; addresses are stored lowercase."""
    value = address.strip()
    if value.count("@") != 1:
        raise MailError(
            code="INVALID_ADDRESS",
            message=f"Invalid email address: {address!r}",
            suggestion="Use format: user@example.com",
        )
    local, domain = value.split("@", 1)
    if not LOCAL_PART_RE.match(local):
        raise MailError(
            code="INVALID_ADDRESS",
            message=f"Invalid email address format: {address!r}",
            suggestion="The local part may contain letters, digits and . _ % + -",
        )
    return local.lower(), validate_domain(domain)


def validate_address(address: str) -> str:
    local, domain = split_address(address)
    return f"{local}@{domain}"


def validate_hostname(hostname: str) -> str:
    return validate_domain(hostname, what="hostname")


def validate_quota(quota: str) -> str:
    value = quota.strip().upper()
    if value.endswith("B") and len(value) > 1 and value[-2] in "KMGT":
        value = value[:-1]
    if not QUOTA_RE.match(value):
        raise MailError(
            code="INVALID_QUOTA",
            message=f"Invalid quota: {quota!r}",
            suggestion="Use a size such as 500M or 2G",
        )
    return value


def validate_sasl_username(username: str) -> str:
    if not SASL_USERNAME_RE.match(username):
        raise MailError(
            code="INVALID_USERNAME",
            message="Username contains invalid characters",
            suggestion="Use only letters, numbers, dots, underscores, or hyphens",
        )
    return username

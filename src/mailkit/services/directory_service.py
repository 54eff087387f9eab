"""Virtual domain, mailbox and alias directory for Postfix + Dovecot.

Every identity is represented twice: in the Postfix lookup tables under
``postfix_dir`` and, for mailboxes, in the Dovecot passwd-file. All edits go
through ``DirectoryService`` so the two sides change together.
"""

import logging
import os
import secrets
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from mailkit.config import MailKitConfig, get_config
from mailkit.errors import MailError
from mailkit.locking import DirectoryLock, StoreTransaction
from mailkit.maps import (
    DomainList,
    PostfixMap,
    RegexpMap,
    is_wildcard,
    wildcard_matches,
    wildcard_to_regex,
)
from mailkit.services.system_service import (
    CommandRunner,
    DovecotControl,
    PostfixControl,
    SystemControl,
)
from mailkit.userdb import UserDB, UserEntry
from mailkit.validation import (
    split_address,
    validate_address,
    validate_domain,
    validate_quota,
    validate_redirect_pattern,
)

logger = logging.getLogger(__name__)

MAILBOX_DOMAINS_PARAM = "virtual_mailbox_domains"
ALIAS_DOMAINS_PARAM = "virtual_alias_domains"


@dataclass
class MainDomain:
    """A domain this host delivers to local mailboxes."""

    name: str
    mailboxes: list[str] = field(default_factory=list)
    catch_all: str | None = None
    self_mapped: list[str] = field(default_factory=list)


@dataclass
class Mailbox:
    """A virtual mailbox as seen by both Postfix and Dovecot."""

    address: str
    domain: str
    local_part: str
    home: str
    maildir: str | None
    uid: str
    gid: str
    quota: str | None = None
    in_userdb: bool = True
    in_postfix: bool = True


@dataclass
class RedirectDomain:
    """A domain (or wildcard pattern) whose mail is forwarded to one mailbox."""

    domain: str
    target: str | None
    wildcard: bool
    regex: str | None = None


def _is_domain_token(token: str) -> bool:
    return ":" not in token and not token.startswith("$")


class _Store:
    """All directory files plus the two Postfix domain parameters, loaded once."""

    def __init__(self, config: MailKitConfig, postfix: PostfixControl) -> None:
        self.config = config
        self.users = UserDB(config.dovecot_users_file)
        self.vmailbox = PostfixMap(config.vmailbox_file)
        self.virtual = PostfixMap(config.virtual_file)
        self.regexp = RegexpMap(config.virtual_regexp_file)
        self.redirects = DomainList(config.virtual_domains_file)
        self.mailbox_domain_tokens = postfix.get_list(MAILBOX_DOMAINS_PARAM)
        self.alias_domain_tokens = postfix.get_list(ALIAS_DOMAINS_PARAM)

        self._original_text = {path: text for path, text, _ in self._files()}
        self._original_mailbox_tokens = list(self.mailbox_domain_tokens)
        self.changed = False

    @property
    def paths(self) -> list[Path]:
        return [
            self.config.dovecot_users_file,
            self.config.vmailbox_file,
            self.config.virtual_file,
            self.config.virtual_regexp_file,
            self.config.virtual_domains_file,
        ]

    def _files(self) -> list[tuple[Path, str, Any]]:
        return [
            (self.users.path, self.users.render(), self.users),
            (self.vmailbox.path, self.vmailbox.render(), self.vmailbox),
            (self.virtual.path, self.virtual.render(), self.virtual),
            (self.regexp.path, self.regexp.render(), self.regexp),
            (self.redirects.path, "\n".join(self.redirects.domains()), self.redirects),
        ]

    # Main domains

    @property
    def main_domains(self) -> list[str]:
        return [t.lower() for t in self.mailbox_domain_tokens if _is_domain_token(t)]

    def add_main_domain(self, domain: str) -> None:
        self.mailbox_domain_tokens.append(domain)

    def remove_main_domain(self, domain: str) -> None:
        self.mailbox_domain_tokens = [
            t for t in self.mailbox_domain_tokens if t.lower() != domain
        ]

    def mailboxes_of(self, domain: str) -> list[str]:
        found: dict[str, str] = {}
        for address in [*self.users.addresses(), *self.vmailbox.keys()]:
            if address.lower().endswith(f"@{domain}"):
                found.setdefault(address.lower(), address)
        return list(found.values())

    # Redirect domains

    def redirect_matching(self, domain: str) -> str | None:
        """The redirect entry that covers ``domain``, literally or by wildcard."""
        for pattern in self.redirects.domains():
            if pattern == domain:
                return pattern
            if is_wildcard(pattern) and wildcard_matches(pattern, domain):
                return pattern
        return None

    def redirect_target(self, pattern: str) -> str | None:
        if is_wildcard(pattern):
            return self.regexp.get(wildcard_to_regex(pattern))
        return self.virtual.get(f"@{pattern}")

    def desired_alias_domains(self) -> list[str]:
        patterns = self.redirects.domains()
        tokens = [p for p in patterns if not is_wildcard(p)]
        if any(is_wildcard(p) for p in patterns):
            tokens.append(f"regexp:{self.config.virtual_regexp_file}")
        return tokens

    def references_to(self, address: str, ignore: set[str] | None = None) -> list[str]:
        """Alias keys that forward to ``address``, excluding its own self-mapping."""
        ignore = {k.lower() for k in (ignore or set())}
        ignore.add(address.lower())
        refs = [k for k in self.virtual.keys_for_value(address) if k.lower() not in ignore]

        by_regex = {wildcard_to_regex(p): p for p in self.redirects.domains() if is_wildcard(p)}
        for key in self.regexp.keys_for_value(address):
            label = by_regex.get(key, key)
            if label.lower() not in ignore:
                refs.append(label)
        return refs

    # Commit

    def save(self) -> list[Path]:
        """Write every file whose content changed; return the hash maps written."""
        compiled: list[Path] = []
        for path, text, obj in self._files():
            if text == self._original_text[path]:
                continue
            obj.save()
            self.changed = True
            logger.info("Updated %s", path)
            if isinstance(obj, PostfixMap):
                compiled.append(path)
        return compiled

    def apply_postconf(self, postfix: PostfixControl) -> None:
        if self.mailbox_domain_tokens != self._original_mailbox_tokens:
            postfix.set_list(MAILBOX_DOMAINS_PARAM, self.mailbox_domain_tokens)
            self.changed = True

        desired = self.desired_alias_domains()
        if desired != self.alias_domain_tokens:
            postfix.set_list(ALIAS_DOMAINS_PARAM, desired)
            self.alias_domain_tokens = desired
            self.changed = True


class DirectoryService:
    """CRUD on main domains, mailboxes, redirect domains and catch-alls."""

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

    # ─────────────────────────────────────────────────────────────────────────
    # Store access
    # ─────────────────────────────────────────────────────────────────────────

    def _read(self) -> _Store:
        return _Store(self.config, self.postfix)

    @contextmanager
    def _edit(self) -> Iterator[_Store]:
        """Lock, load, let the caller mutate, then commit or roll back.

        Files are written only after the caller's block finishes, and the
        transaction opens only then, so a validation error leaves the files
        and their mtimes untouched. A failure while compiling maps or
        updating postconf restores the text files and recompiles them.
        """
        with DirectoryLock(self.config.lock_file, timeout=self.config.lock_timeout):
            store = self._read()
            yield store

            with StoreTransaction(store.paths) as txn:
                compiled = store.save()
                try:
                    for path in compiled:
                        self.postfix.postmap(path)
                    store.apply_postconf(self.postfix)
                except MailError:
                    txn.rollback()
                    for path in compiled:
                        try:
                            self.postfix.postmap(path)
                        except MailError as e:
                            logger.error("Could not recompile %s after rollback: %s", path, e.message)
                    raise

            if store.changed:
                self.postfix.reload()

    def _require_mailbox(self, store: _Store, address: str) -> UserEntry:
        entry = store.users.get(address)
        if entry is None:
            raise MailError(
                code="MAILBOX_NOT_FOUND",
                message=f"Mailbox '{address}' not found",
                suggestion="Run 'mailkit mailbox list' to see existing mailboxes",
            )
        return entry

    def _require_target(self, store: _Store, target: str) -> None:
        if target not in store.users:
            raise MailError(
                code="TARGET_NOT_MAILBOX",
                message=f"Forwarding target '{target}' is not an existing mailbox",
                suggestion=f"Create it first with 'mailkit mailbox add {target}'",
            )

    def _require_main_domain(self, store: _Store, domain: str) -> None:
        if domain not in store.main_domains:
            raise MailError(
                code="DOMAIN_NOT_FOUND",
                message=f"Main domain '{domain}' is not configured",
                suggestion=f"Run 'mailkit domain add {domain}' first",
            )

    # ─────────────────────────────────────────────────────────────────────────
    # Main domains
    # ─────────────────────────────────────────────────────────────────────────

    def list_main_domains(self) -> list[MainDomain]:
        store = self._read()
        result = []
        for domain in store.main_domains:
            mailboxes = store.mailboxes_of(domain)
            result.append(MainDomain(
                name=domain,
                mailboxes=mailboxes,
                catch_all=store.virtual.get(f"@{domain}"),
                self_mapped=[a for a in mailboxes if store.virtual.get(a) == a],
            ))
        return result

    def add_main_domain(self, domain: str) -> dict[str, Any]:
        """Accept mail for ``domain`` into local mailboxes."""
        domain = validate_domain(domain)

        with self._edit() as store:
            if domain in store.main_domains:
                raise MailError(
                    code="DOMAIN_EXISTS",
                    message=f"Domain '{domain}' already exists",
                )
            redirect = store.redirect_matching(domain)
            if redirect:
                raise MailError(
                    code="DOMAIN_IS_REDIRECT",
                    message=f"Domain '{domain}' is configured as redirect domain '{redirect}'",
                    suggestion=f"Remove it first with 'mailkit redirect remove {redirect}'",
                )

            store.add_main_domain(domain)

        # Only once the directory change is committed
        domain_dir = self.config.maildir_base / domain
        domain_dir.mkdir(parents=True, exist_ok=True)
        self.system.chown_vmail(domain_dir)

        logger.info("Added main domain %s", domain)
        return {
            "domain": domain,
            "maildir": str(domain_dir),
            "message": f"Added {domain} to {MAILBOX_DOMAINS_PARAM}",
        }

    def remove_main_domain(
        self,
        domain: str,
        force: bool = False,
        purge: bool = False,
    ) -> dict[str, Any]:
        """Stop accepting mail for ``domain``.

        With ``force`` its mailboxes and every ``virtual`` key in the domain
        go too, but a mailbox that another domain still forwards to blocks
        the removal.
        """
        domain = validate_domain(domain)

        with self._edit() as store:
            self._require_main_domain(store, domain)

            mailboxes = store.mailboxes_of(domain)
            catch_all = store.virtual.get(f"@{domain}")
            if (mailboxes or catch_all) and not force:
                raise MailError(
                    code="DOMAIN_HAS_MAILBOXES",
                    message=f"Domain '{domain}' has {len(mailboxes)} mailbox(es)"
                    + (" and a catch-all" if catch_all else ""),
                    suggestion="Use --force to delete the domain with its mailboxes",
                )

            # The catch-all, self-mappings and any other alias inside the domain
            owned_keys = {
                key for key in store.virtual.keys() if key.lower().endswith(f"@{domain}")
            }
            owned_keys.update(mailboxes)
            for address in mailboxes:
                refs = store.references_to(address, ignore=owned_keys)
                if refs:
                    raise MailError(
                        code="MAILBOX_REFERENCED",
                        message=f"Mailbox '{address}' is the target of: {', '.join(refs)}",
                        suggestion="Remove or update those redirects first",
                    )

            for key in owned_keys:
                store.virtual.remove(key)
            for address in mailboxes:
                store.users.remove(address)
                store.vmailbox.remove(address)
            store.remove_main_domain(domain)

        domain_dir = self.config.maildir_base / domain
        if purge and domain_dir.exists():
            shutil.rmtree(domain_dir)

        logger.info("Removed main domain %s (%d mailboxes)", domain, len(mailboxes))
        return {
            "domain": domain,
            "mailboxes_removed": len(mailboxes),
            "catch_all_removed": bool(catch_all),
            "maildir_purged": purge,
            "message": f"Domain '{domain}' removed",
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Mailboxes
    # ─────────────────────────────────────────────────────────────────────────

    def list_mailboxes(self, domain: str | None = None) -> list[Mailbox]:
        """List mailboxes from both stores, flagging entries present in only one."""
        store = self._read()
        domain = validate_domain(domain) if domain else None

        mailboxes: dict[str, Mailbox] = {}
        for entry in store.users.entries():
            local, _, dom = entry.user.partition("@")
            mailboxes[entry.user.lower()] = Mailbox(
                address=entry.user,
                domain=dom,
                local_part=local,
                home=entry.home,
                maildir=store.vmailbox.get(entry.user),
                uid=entry.uid,
                gid=entry.gid,
                quota=entry.quota,
                in_postfix=entry.user in store.vmailbox,
            )
        for address, maildir in store.vmailbox.items():
            if address.lower() in mailboxes:
                continue
            local, _, dom = address.partition("@")
            mailboxes[address.lower()] = Mailbox(
                address=address,
                domain=dom,
                local_part=local,
                home="",
                maildir=maildir,
                uid="",
                gid="",
                in_userdb=False,
            )

        result = sorted(mailboxes.values(), key=lambda m: (m.domain, m.local_part))
        if domain:
            result = [m for m in result if m.domain.lower() == domain]
        return result

    def add_mailbox(
        self,
        address: str,
        password: str | None = None,
        quota: str | None = None,
    ) -> dict[str, Any]:
        """Create a mailbox in both stores and its Maildir on disk."""
        local, domain = split_address(address)
        address = f"{local}@{domain}"
        quota = validate_quota(quota) if quota else None

        with self._edit() as store:
            self._require_main_domain(store, domain)
            if address in store.users or address in store.vmailbox:
                raise MailError(
                    code="MAILBOX_EXISTS",
                    message=f"User {address} already exists",
                )

            generated = not password
            if not password:
                password = secrets.token_urlsafe(16)
            password_hash = self.dovecot.hash_password(password)

            home = self.config.maildir_base / domain / local
            entry = UserEntry(
                user=address,
                password=password_hash,
                uid=str(self.config.vmail_uid),
                gid=str(self.config.vmail_gid),
                home=str(home),
            )
            entry.quota = quota
            store.users.add(entry)
            store.vmailbox.set(address, f"{domain}/{local}/")

            # With a catch-all in place the mailbox must map to itself first
            if f"@{domain}" in store.virtual and address not in store.virtual:
                store.virtual.set(address, address)

        for subdir in ["", "cur", "new", "tmp"]:
            (home / subdir).mkdir(parents=True, exist_ok=True)
            os.chmod(home / subdir, 0o700)
        self.system.chown_vmail(home)

        logger.info("Added mailbox %s", address)
        return {
            "address": address,
            "password": password if generated else None,
            "password_generated": generated,
            "maildir": str(home),
            "quota": quota,
            "message": f"Mailbox {address} added",
        }

    def change_password(self, address: str, password: str | None = None) -> dict[str, Any]:
        address = validate_address(address)

        with self._edit() as store:
            entry = self._require_mailbox(store, address)
            generated = not password
            if not password:
                password = secrets.token_urlsafe(16)
            entry.password = self.dovecot.hash_password(password)
            store.users.update(entry)

        logger.info("Password updated for %s", address)
        return {
            "address": address,
            "password": password if generated else None,
            "password_generated": generated,
            "message": f"Password updated for {address}",
        }

    def set_quota(self, address: str, quota: str | None) -> dict[str, Any]:
        """Set or clear (``quota=None``) the storage quota of a mailbox."""
        address = validate_address(address)
        quota = validate_quota(quota) if quota else None

        with self._edit() as store:
            entry = self._require_mailbox(store, address)
            entry.quota = quota
            store.users.update(entry)

        logger.info("Quota for %s set to %s", address, quota or "unlimited")
        return {
            "address": address,
            "quota": quota,
            "message": f"Quota for {address} set to {quota or 'unlimited'}",
        }

    def delete_mailbox(self, address: str, keep_maildir: bool = False) -> dict[str, Any]:
        """Delete a mailbox unless a redirect domain or catch-all forwards to it."""
        address = validate_address(address)

        with self._edit() as store:
            if address not in store.users and address not in store.vmailbox:
                raise MailError(
                    code="MAILBOX_NOT_FOUND",
                    message=f"Mailbox '{address}' not found",
                )

            refs = store.references_to(address)
            if refs:
                raise MailError(
                    code="MAILBOX_REFERENCED",
                    message=(
                        f"Cannot delete mailbox {address} because it is associated with: "
                        + ", ".join(refs)
                    ),
                    suggestion="Please remove or update the associated entries first",
                )

            entry = store.users.get(address)
            local, domain = split_address(address)
            home = Path(entry.home) if entry and entry.home else self.config.maildir_base / domain / local

            store.users.remove(address)
            store.vmailbox.remove(address)
            if store.virtual.get(address) == address:
                store.virtual.remove(address)

        if not keep_maildir and home.exists():
            shutil.rmtree(home)

        logger.info("Deleted mailbox %s", address)
        return {
            "address": address,
            "maildir": str(home),
            "maildir_removed": not keep_maildir,
            "message": f"Mailbox {address} deleted",
        }

    def mailbox_usage(self, domain: str | None = None) -> list[dict[str, Any]]:
        """Disk usage of each Maildir; ``size_bytes`` is None when it is missing."""
        usage = []
        for mailbox in self.list_mailboxes(domain):
            home = Path(mailbox.home) if mailbox.home else (
                self.config.maildir_base / mailbox.domain / mailbox.local_part
            )
            usage.append({
                "address": mailbox.address,
                "maildir": str(home),
                "size_bytes": _dir_size(home) if home.is_dir() else None,
                "quota": mailbox.quota,
            })
        return usage

    # ─────────────────────────────────────────────────────────────────────────
    # Redirect domains
    # ─────────────────────────────────────────────────────────────────────────

    def list_redirect_domains(self) -> list[RedirectDomain]:
        store = self._read()
        result = []
        for pattern in store.redirects.domains():
            wildcard = is_wildcard(pattern)
            result.append(RedirectDomain(
                domain=pattern,
                target=store.redirect_target(pattern),
                wildcard=wildcard,
                regex=wildcard_to_regex(pattern) if wildcard else None,
            ))
        return result

    def add_redirect_domain(self, domain: str, target: str) -> dict[str, Any]:
        """Forward every address at ``domain`` (or matching a wildcard) to ``target``."""
        pattern = validate_redirect_pattern(domain)
        target = validate_address(target)
        wildcard = is_wildcard(pattern)

        with self._edit() as store:
            if pattern in store.redirects:
                raise MailError(
                    code="REDIRECT_EXISTS",
                    message=f"Redirect domain {pattern} already exists",
                    suggestion=f"Use 'mailkit redirect update {pattern} <mailbox>' to change it",
                )
            if wildcard:
                clashing = [d for d in store.main_domains if wildcard_matches(pattern, d)]
            else:
                clashing = [pattern] if pattern in store.main_domains else []
            if clashing:
                raise MailError(
                    code="DOMAIN_IS_MAIN",
                    message=f"Redirect {pattern} overlaps main domain(s): {', '.join(clashing)}",
                    suggestion="A domain cannot be both a main domain and a redirect domain",
                )
            self._require_target(store, target)

            store.redirects.add(pattern)
            if wildcard:
                store.regexp.set(wildcard_to_regex(pattern), target)
            else:
                store.virtual.set(f"@{pattern}", target)

        logger.info("Added redirect domain %s -> %s", pattern, target)
        return {
            "domain": pattern,
            "target": target,
            "wildcard": wildcard,
            "regex": wildcard_to_regex(pattern) if wildcard else None,
            "message": f"Redirect domain {pattern} added to forward to {target}",
        }

    def update_redirect_domain(self, domain: str, target: str) -> dict[str, Any]:
        pattern = validate_redirect_pattern(domain)
        target = validate_address(target)

        with self._edit() as store:
            if pattern not in store.redirects:
                raise MailError(
                    code="REDIRECT_NOT_FOUND",
                    message=f"Redirect domain {pattern} does not exist",
                )
            self._require_target(store, target)

            previous = store.redirect_target(pattern)
            if is_wildcard(pattern):
                store.regexp.set(wildcard_to_regex(pattern), target)
            else:
                store.virtual.set(f"@{pattern}", target)

        logger.info("Redirect domain %s updated: %s -> %s", pattern, previous, target)
        return {
            "domain": pattern,
            "previous_target": previous,
            "target": target,
            "message": f"Redirect domain {pattern} updated to forward to {target}",
        }

    def remove_redirect_domain(self, domain: str) -> dict[str, Any]:
        pattern = validate_redirect_pattern(domain)

        with self._edit() as store:
            if pattern not in store.redirects:
                raise MailError(
                    code="REDIRECT_NOT_FOUND",
                    message=f"Redirect domain {pattern} does not exist",
                )
            target = store.redirect_target(pattern)
            store.redirects.remove(pattern)
            if is_wildcard(pattern):
                store.regexp.remove(wildcard_to_regex(pattern))
            else:
                store.virtual.remove(f"@{pattern}")

        logger.info("Removed redirect domain %s", pattern)
        return {
            "domain": pattern,
            "target": target,
            "message": f"Redirect domain {pattern} deleted",
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Catch-all
    # ─────────────────────────────────────────────────────────────────────────

    def set_catch_all(self, domain: str, target: str) -> dict[str, Any]:
        """Deliver mail for unknown local parts at a main domain to ``target``.

        Each existing mailbox of the domain is mapped to itself so Postfix
        prefers the exact match over ``@domain``.
        """
        domain = validate_domain(domain)
        target = validate_address(target)

        with self._edit() as store:
            self._require_main_domain(store, domain)
            self._require_target(store, target)

            previous = store.virtual.get(f"@{domain}")
            store.virtual.set(f"@{domain}", target)
            added = 0
            for address in store.mailboxes_of(domain):
                if address not in store.virtual:
                    store.virtual.set(address, address)
                    added += 1

        logger.info("Catch-all for %s -> %s", domain, target)
        return {
            "domain": domain,
            "target": target,
            "previous_target": previous,
            "self_mappings_added": added,
            "message": f"Catch-all for {domain} forwards to {target}",
        }

    def remove_catch_all(self, domain: str) -> dict[str, Any]:
        domain = validate_domain(domain)

        with self._edit() as store:
            self._require_main_domain(store, domain)
            target = store.virtual.get(f"@{domain}")
            if target is None:
                raise MailError(
                    code="CATCH_ALL_NOT_FOUND",
                    message=f"Domain {domain} has no catch-all",
                )
            store.virtual.remove(f"@{domain}")
            removed = 0
            for address in store.mailboxes_of(domain):
                if store.virtual.get(address) == address:
                    store.virtual.remove(address)
                    removed += 1

        logger.info("Removed catch-all for %s", domain)
        return {
            "domain": domain,
            "target": target,
            "self_mappings_removed": removed,
            "message": f"Catch-all for {domain} removed",
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Consistency
    # ─────────────────────────────────────────────────────────────────────────

    def check(self) -> dict[str, Any]:
        """Report every place where the stores disagree with each other."""
        store = self._read()
        issues: list[dict[str, str]] = []

        def issue(code: str, subject: str, detail: str) -> None:
            issues.append({"code": code, "subject": subject, "detail": detail})

        users = {a.lower() for a in store.users.addresses()}
        vmailboxes = {a.lower() for a in store.vmailbox.keys()}
        main_domains = set(store.main_domains)

        for address in sorted(users - vmailboxes):
            issue("MISSING_FROM_VMAILBOX", address, "in Dovecot users but not in vmailbox")
        for address in sorted(vmailboxes - users):
            issue("MISSING_FROM_USERDB", address, "in vmailbox but not in Dovecot users")
        for address in sorted(users | vmailboxes):
            domain = address.rpartition("@")[2]
            if domain not in main_domains:
                issue("UNKNOWN_MAIN_DOMAIN", address, f"{domain} is not in {MAILBOX_DOMAINS_PARAM}")

        for pattern in store.redirects.domains():
            target = store.redirect_target(pattern)
            if target is None:
                issue("REDIRECT_WITHOUT_MAP", pattern, "listed in virtual_domains but has no map entry")
            elif target.lower() not in users:
                issue("DANGLING_TARGET", pattern, f"forwards to {target}, which is not a mailbox")
            if not is_wildcard(pattern) and pattern in main_domains:
                issue("MAIN_AND_REDIRECT", pattern, "domain is both a main and a redirect domain")

        for domain in sorted(main_domains):
            target = store.virtual.get(f"@{domain}")
            if target is None:
                continue
            if target.lower() not in users:
                issue("DANGLING_TARGET", f"@{domain}", f"catch-all forwards to {target}, which is not a mailbox")
            for address in store.mailboxes_of(domain):
                if address not in store.virtual:
                    issue("MISSING_SELF_MAPPING", address, f"catch-all on {domain} would capture its mail")

        if store.desired_alias_domains() != store.alias_domain_tokens:
            issue(
                "ALIAS_DOMAINS_OUT_OF_SYNC",
                ALIAS_DOMAINS_PARAM,
                f"expected '{', '.join(store.desired_alias_domains())}', "
                f"found '{', '.join(store.alias_domain_tokens)}'",
            )

        for table in (store.virtual, store.vmailbox):
            if not table.path.exists():
                continue
            db = table.db_path
            if not db.exists():
                issue("STALE_MAP_DB", str(table.path), "compiled .db is missing; run postmap")
            elif db.stat().st_mtime < table.path.stat().st_mtime:
                issue("STALE_MAP_DB", str(table.path), "compiled .db is older than the text map")

        return {"ok": not issues, "issues": issues}

    def rebuild(self) -> dict[str, Any]:
        """Recompile the hash maps, resync virtual_alias_domains and reload Postfix."""
        with DirectoryLock(self.config.lock_file, timeout=self.config.lock_timeout):
            store = self._read()
            compiled = []
            for table in (store.virtual, store.vmailbox):
                if table.path.exists():
                    self.postfix.postmap(table.path)
                    compiled.append(str(table.path))
            store.apply_postconf(self.postfix)
            self.postfix.reload()

        logger.info("Rebuilt maps: %s", ", ".join(compiled) or "none")
        return {
            "compiled": compiled,
            "alias_domains": store.alias_domain_tokens,
            "message": "Maps rebuilt and Postfix reloaded",
        }


def _dir_size(path: Path) -> int:
    total = 0
    for root, _, files in os.walk(path):
        for name in files:
            try:
                total += os.lstat(os.path.join(root, name)).st_size
            except OSError:
                continue
    return total

"""Tests for the directory service.

Each test starts from fixed file contents and checks the exact lines the
operation leaves behind, plus the postconf/postmap/systemctl calls it makes.
"""

import shutil

import pytest

from mailkit.errors import MailError
from mailkit.locking import DirectoryLock
from mailkit.services.directory_service import DirectoryService

REGEX = r"/^([^@]+@)?[^@]+\.shop\.com$/"


def user_line(config, address: str, extra: str = "") -> str:
    local, domain = address.split("@")
    home = config.maildir_base / domain / local
    return f"{address}:{{SHA512-CRYPT}}fakehash-secret:5000:5000::{home}::{extra}"


class TestMainDomains:
    """Tests for adding, listing and removing main domains."""

    def test_add_main_domain(self, directory, config, runner):
        result = directory.add_main_domain("Example.com")

        assert result["domain"] == "example.com"
        assert runner.params["virtual_mailbox_domains"] == "example.com"
        assert (config.maildir_base / "example.com").is_dir()
        assert ["systemctl", "reload", "postfix"] in runner.calls

    def test_add_keeps_existing_tokens(self, directory, runner):
        runner.params["virtual_mailbox_domains"] = "first.org, hash:/etc/postfix/legacy"

        directory.add_main_domain("example.com")

        assert runner.params["virtual_mailbox_domains"] == (
            "first.org, hash:/etc/postfix/legacy, example.com"
        )

    def test_duplicate_main_domain(self, directory):
        directory.add_main_domain("example.com")

        with pytest.raises(MailError) as exc_info:
            directory.add_main_domain("EXAMPLE.com")

        assert exc_info.value.code == "DOMAIN_EXISTS"

    def test_invalid_domain(self, directory, runner):
        with pytest.raises(MailError) as exc_info:
            directory.add_main_domain("not a domain")

        assert exc_info.value.code == "INVALID_DOMAIN"
        assert runner.calls == []

    def test_redirect_domain_cannot_become_main(self, populated):
        populated.add_redirect_domain("old.org", "info@example.com")

        with pytest.raises(MailError) as exc_info:
            populated.add_main_domain("old.org")

        assert exc_info.value.code == "DOMAIN_IS_REDIRECT"

    def test_wildcard_match_cannot_become_main(self, populated):
        populated.add_redirect_domain("*.shop.com", "info@example.com")

        with pytest.raises(MailError) as exc_info:
            populated.add_main_domain("eu.shop.com")

        assert exc_info.value.code == "DOMAIN_IS_REDIRECT"

    def test_list_main_domains(self, populated):
        populated.set_catch_all("example.com", "info@example.com")

        [domain] = populated.list_main_domains()

        assert domain.name == "example.com"
        assert domain.mailboxes == ["info@example.com", "sales@example.com"]
        assert domain.catch_all == "info@example.com"
        assert domain.self_mapped == ["info@example.com", "sales@example.com"]

    def test_remove_empty_domain(self, directory, runner):
        directory.add_main_domain("example.com")

        result = directory.remove_main_domain("example.com")

        assert result["mailboxes_removed"] == 0
        assert runner.params["virtual_mailbox_domains"] == ""

    def test_remove_domain_with_mailboxes_needs_force(self, populated):
        with pytest.raises(MailError) as exc_info:
            populated.remove_main_domain("example.com")

        assert exc_info.value.code == "DOMAIN_HAS_MAILBOXES"

    def test_force_remove_domain(self, populated, config, runner):
        populated.set_catch_all("example.com", "info@example.com")

        result = populated.remove_main_domain("example.com", force=True, purge=True)

        assert result["mailboxes_removed"] == 2
        assert result["catch_all_removed"] is True
        assert config.dovecot_users_file.read_text() == ""
        assert config.vmailbox_file.read_text() == ""
        assert config.virtual_file.read_text() == ""
        assert runner.params["virtual_mailbox_domains"] == ""
        assert not (config.maildir_base / "example.com").exists()

    def test_force_remove_blocked_by_foreign_redirect(self, populated, config):
        populated.add_redirect_domain("old.org", "info@example.com")

        with pytest.raises(MailError) as exc_info:
            populated.remove_main_domain("example.com", force=True)

        assert exc_info.value.code == "MAILBOX_REFERENCED"
        assert "old.org" in exc_info.value.message
        assert "info@example.com" in config.dovecot_users_file.read_text()

    def test_force_remove_with_alias_to_own_mailbox(self, populated, config):
        """An alias inside the domain is not a foreign reference."""
        populated.set_catch_all("example.com", "info@example.com")
        with open(config.virtual_file, "a") as f:
            f.write("postmaster@example.com    info@example.com\n")

        result = populated.remove_main_domain("example.com", force=True)

        assert result["mailboxes_removed"] == 2
        assert config.virtual_file.read_text() == ""

    def test_force_remove_drops_outgoing_alias(self, populated, config):
        config.virtual_file.write_text("team@example.com    someone@elsewhere.org\n")

        populated.remove_main_domain("example.com", force=True)

        assert config.virtual_file.read_text() == ""

    def test_unknown_domain(self, directory):
        with pytest.raises(MailError) as exc_info:
            directory.remove_main_domain("example.com")

        assert exc_info.value.code == "DOMAIN_NOT_FOUND"


class TestMailboxes:
    """Tests for mailbox CRUD."""

    def test_add_mailbox_writes_both_stores(self, directory, config, runner):
        directory.add_main_domain("example.com")

        result = directory.add_mailbox("Info@Example.com", password="secret", quota="1g")

        assert result["address"] == "info@example.com"
        assert result["password"] is None
        assert result["quota"] == "1G"
        assert config.dovecot_users_file.read_text() == (
            user_line(config, "info@example.com", "userdb_quota_rule=*:storage=1G") + "\n"
        )
        assert config.vmailbox_file.read_text() == "info@example.com    example.com/info/\n"
        assert config.dovecot_users_file.stat().st_mode & 0o777 == 0o600
        assert ["postmap", str(config.vmailbox_file)] in runner.calls

    def test_add_mailbox_creates_maildir(self, directory, config, runner):
        directory.add_main_domain("example.com")
        directory.add_mailbox("info@example.com", password="secret")

        home = config.maildir_base / "example.com" / "info"
        for sub in ["cur", "new", "tmp"]:
            assert (home / sub).is_dir()
        assert home.stat().st_mode & 0o777 == 0o700
        assert ["chown", "-R", "5000:5000", str(home)] in runner.calls

    def test_add_mailbox_generates_password(self, directory, runner):
        directory.add_main_domain("example.com")

        result = directory.add_mailbox("info@example.com")

        assert result["password_generated"] is True
        assert len(result["password"]) >= 16
        hash_calls = [c for c in runner.calls if c[:2] == ["doveadm", "pw"]]
        assert hash_calls[-1] == ["doveadm", "pw", "-s", "SHA512-CRYPT", "-p", result["password"]]

    def test_add_mailbox_reloads_once(self, directory, runner):
        directory.add_main_domain("example.com")
        runner.calls.clear()

        directory.add_mailbox("info@example.com", password="secret")

        assert runner.calls.count(["systemctl", "reload", "postfix"]) == 1

    def test_mailbox_requires_main_domain(self, directory):
        with pytest.raises(MailError) as exc_info:
            directory.add_mailbox("info@example.com", password="secret")

        assert exc_info.value.code == "DOMAIN_NOT_FOUND"

    def test_duplicate_mailbox(self, populated):
        with pytest.raises(MailError) as exc_info:
            populated.add_mailbox("INFO@example.com", password="secret")

        assert exc_info.value.code == "MAILBOX_EXISTS"

    def test_duplicate_in_vmailbox_only(self, directory, config):
        directory.add_main_domain("example.com")
        config.postfix_dir.mkdir(parents=True, exist_ok=True)
        config.vmailbox_file.write_text("info@example.com    example.com/info/\n")

        with pytest.raises(MailError) as exc_info:
            directory.add_mailbox("info@example.com", password="secret")

        assert exc_info.value.code == "MAILBOX_EXISTS"

    def test_invalid_quota(self, populated):
        with pytest.raises(MailError) as exc_info:
            populated.add_mailbox("new@example.com", password="secret", quota="lots")

        assert exc_info.value.code == "INVALID_QUOTA"

    def test_change_password(self, populated, config, runner):
        populated.change_password("info@example.com", "n3w")

        lines = config.dovecot_users_file.read_text().splitlines()
        assert lines[0].split(":")[1] == "{SHA512-CRYPT}fakehash-n3w"
        assert lines[1] == user_line(config, "sales@example.com")

    def test_change_password_unknown_mailbox(self, populated):
        with pytest.raises(MailError) as exc_info:
            populated.change_password("nobody@example.com", "x")

        assert exc_info.value.code == "MAILBOX_NOT_FOUND"

    def test_set_and_clear_quota(self, populated, config, runner):
        populated.set_quota("info@example.com", "500M")
        assert config.dovecot_users_file.read_text().splitlines()[0].endswith(
            "::userdb_quota_rule=*:storage=500M"
        )

        runner.calls.clear()
        populated.set_quota("info@example.com", None)

        assert config.dovecot_users_file.read_text().splitlines()[0] == user_line(
            config, "info@example.com"
        )
        # The users file is not a hash map
        assert runner.commands("postmap") == []

    def test_delete_mailbox(self, populated, config):
        result = populated.delete_mailbox("sales@example.com")

        assert result["maildir_removed"] is True
        assert config.dovecot_users_file.read_text() == user_line(config, "info@example.com") + "\n"
        assert config.vmailbox_file.read_text() == "info@example.com    example.com/info/\n"
        assert not (config.maildir_base / "example.com" / "sales").exists()

    def test_delete_mailbox_keep_maildir(self, populated, config):
        populated.delete_mailbox("sales@example.com", keep_maildir=True)

        assert (config.maildir_base / "example.com" / "sales" / "cur").is_dir()

    def test_delete_unknown_mailbox(self, populated):
        with pytest.raises(MailError) as exc_info:
            populated.delete_mailbox("nobody@example.com")

        assert exc_info.value.code == "MAILBOX_NOT_FOUND"

    def test_delete_redirect_target_is_refused(self, populated, config):
        populated.add_redirect_domain("old.org", "info@example.com")

        with pytest.raises(MailError) as exc_info:
            populated.delete_mailbox("info@example.com")

        assert exc_info.value.code == "MAILBOX_REFERENCED"
        assert "old.org" in exc_info.value.message
        assert "info@example.com" in config.vmailbox_file.read_text()

    def test_delete_wildcard_target_is_refused(self, populated):
        populated.add_redirect_domain("*.shop.com", "sales@example.com")

        with pytest.raises(MailError) as exc_info:
            populated.delete_mailbox("sales@example.com")

        assert exc_info.value.code == "MAILBOX_REFERENCED"
        assert "*.shop.com" in exc_info.value.message

    def test_similar_address_is_not_a_reference(self, populated, config):
        """Only an exact target match blocks deletion."""
        populated.add_mailbox("myinfo@example.com", password="secret")
        populated.add_redirect_domain("old.org", "myinfo@example.com")

        populated.delete_mailbox("info@example.com")

        addresses = [line.split(":")[0] for line in config.dovecot_users_file.read_text().splitlines()]
        assert addresses == ["sales@example.com", "myinfo@example.com"]

    def test_list_mailboxes_flags_drift(self, populated, config):
        with config.vmailbox_file.open("a") as f:
            f.write("ghost@example.com    example.com/ghost/\n")

        mailboxes = {m.address: m for m in populated.list_mailboxes()}

        assert mailboxes["info@example.com"].in_postfix is True
        assert mailboxes["info@example.com"].maildir == "example.com/info/"
        assert mailboxes["ghost@example.com"].in_userdb is False

    def test_list_mailboxes_by_domain(self, populated):
        populated.add_main_domain("other.org")
        populated.add_mailbox("bob@other.org", password="secret")

        assert [m.address for m in populated.list_mailboxes("other.org")] == ["bob@other.org"]

    def test_mailbox_usage(self, populated, config):
        (config.maildir_base / "example.com" / "info" / "new" / "1.msg").write_bytes(b"x" * 100)
        populated.delete_mailbox("sales@example.com", keep_maildir=False)
        populated.add_mailbox("gone@example.com", password="secret")
        shutil.rmtree(config.maildir_base / "example.com" / "gone")

        usage = {row["address"]: row for row in populated.mailbox_usage()}

        assert usage["info@example.com"]["size_bytes"] == 100
        assert usage["gone@example.com"]["size_bytes"] is None


class TestRedirectDomains:
    """Tests for literal and wildcard redirect domains."""

    def test_add_literal_redirect(self, populated, config, runner):
        result = populated.add_redirect_domain("Old.org", "info@example.com")

        assert result["wildcard"] is False
        assert config.virtual_domains_file.read_text() == "old.org\n"
        assert config.virtual_file.read_text() == "@old.org    info@example.com\n"
        assert runner.params["virtual_alias_domains"] == "old.org"
        assert ["postmap", str(config.virtual_file)] in runner.calls

    def test_add_wildcard_redirect(self, populated, config, runner):
        result = populated.add_redirect_domain("*.shop.com", "sales@example.com")

        assert result["regex"] == REGEX
        assert config.virtual_domains_file.read_text() == "*.shop.com\n"
        assert config.virtual_regexp_file.read_text() == f"{REGEX}    sales@example.com\n"
        assert runner.params["virtual_alias_domains"] == f"regexp:{config.virtual_regexp_file}"
        # regexp tables are read as text by Postfix
        assert ["postmap", str(config.virtual_regexp_file)] not in runner.calls

    def test_literal_and_wildcard_together(self, populated, config, runner):
        populated.add_redirect_domain("old.org", "info@example.com")
        populated.add_redirect_domain("*.shop.com", "sales@example.com")

        assert runner.params["virtual_alias_domains"] == (
            f"old.org, regexp:{config.virtual_regexp_file}"
        )

    def test_redirect_target_must_be_mailbox(self, populated):
        with pytest.raises(MailError) as exc_info:
            populated.add_redirect_domain("old.org", "nobody@example.com")

        assert exc_info.value.code == "TARGET_NOT_MAILBOX"

    def test_main_domain_cannot_be_redirect(self, populated):
        with pytest.raises(MailError) as exc_info:
            populated.add_redirect_domain("example.com", "info@example.com")

        assert exc_info.value.code == "DOMAIN_IS_MAIN"

    def test_wildcard_covering_main_domain(self, populated):
        populated.add_main_domain("eu.shop.com")

        with pytest.raises(MailError) as exc_info:
            populated.add_redirect_domain("*.shop.com", "info@example.com")

        assert exc_info.value.code == "DOMAIN_IS_MAIN"

    def test_duplicate_redirect(self, populated):
        populated.add_redirect_domain("old.org", "info@example.com")

        with pytest.raises(MailError) as exc_info:
            populated.add_redirect_domain("old.org", "sales@example.com")

        assert exc_info.value.code == "REDIRECT_EXISTS"

    def test_update_redirect(self, populated, config):
        populated.add_redirect_domain("old.org", "info@example.com")
        populated.add_redirect_domain("*.shop.com", "info@example.com")

        result = populated.update_redirect_domain("old.org", "sales@example.com")
        populated.update_redirect_domain("*.shop.com", "sales@example.com")

        assert result["previous_target"] == "info@example.com"
        assert config.virtual_file.read_text() == "@old.org    sales@example.com\n"
        assert config.virtual_regexp_file.read_text() == f"{REGEX}    sales@example.com\n"

    def test_update_unknown_redirect(self, populated):
        with pytest.raises(MailError) as exc_info:
            populated.update_redirect_domain("old.org", "info@example.com")

        assert exc_info.value.code == "REDIRECT_NOT_FOUND"

    def test_remove_redirects(self, populated, config, runner):
        populated.add_redirect_domain("old.org", "info@example.com")
        populated.add_redirect_domain("*.shop.com", "sales@example.com")

        populated.remove_redirect_domain("*.shop.com")
        assert runner.params["virtual_alias_domains"] == "old.org"
        assert config.virtual_regexp_file.read_text() == ""

        populated.remove_redirect_domain("old.org")
        assert runner.params["virtual_alias_domains"] == ""
        assert config.virtual_domains_file.read_text() == ""
        assert config.virtual_file.read_text() == ""

    def test_list_redirects(self, populated):
        populated.add_redirect_domain("old.org", "info@example.com")
        populated.add_redirect_domain("*.shop.com", "sales@example.com")

        redirects = populated.list_redirect_domains()

        assert [(r.domain, r.target, r.wildcard) for r in redirects] == [
            ("old.org", "info@example.com", False),
            ("*.shop.com", "sales@example.com", True),
        ]
        assert redirects[1].regex == REGEX


class TestCatchAll:
    """Tests for catch-all addresses and their self-mappings."""

    def test_set_catch_all_adds_self_mappings(self, populated, config):
        result = populated.set_catch_all("example.com", "info@example.com")

        assert result["self_mappings_added"] == 2
        assert config.virtual_file.read_text() == (
            "@example.com    info@example.com\n"
            "info@example.com    info@example.com\n"
            "sales@example.com    sales@example.com\n"
        )

    def test_new_mailbox_gets_self_mapping(self, populated, config):
        populated.set_catch_all("example.com", "info@example.com")

        populated.add_mailbox("new@example.com", password="secret")

        assert config.virtual_file.read_text().endswith("new@example.com    new@example.com\n")

    def test_deleted_mailbox_loses_self_mapping(self, populated, config):
        populated.set_catch_all("example.com", "info@example.com")

        populated.delete_mailbox("sales@example.com")

        assert "sales@example.com" not in config.virtual_file.read_text()

    def test_catch_all_target_cannot_be_deleted(self, populated):
        populated.set_catch_all("example.com", "info@example.com")

        with pytest.raises(MailError) as exc_info:
            populated.delete_mailbox("info@example.com")

        assert exc_info.value.code == "MAILBOX_REFERENCED"
        assert "@example.com" in exc_info.value.message

    def test_existing_forward_is_not_overwritten(self, populated, config):
        config.virtual_file.write_text("sales@example.com    info@example.com\n")

        result = populated.set_catch_all("example.com", "info@example.com")

        assert result["self_mappings_added"] == 1
        assert "sales@example.com    info@example.com" in config.virtual_file.read_text()

    def test_remove_catch_all(self, populated, config):
        populated.add_redirect_domain("old.org", "info@example.com")
        populated.set_catch_all("example.com", "info@example.com")

        result = populated.remove_catch_all("example.com")

        assert result["self_mappings_removed"] == 2
        assert config.virtual_file.read_text() == "@old.org    info@example.com\n"

    def test_remove_missing_catch_all(self, populated):
        with pytest.raises(MailError) as exc_info:
            populated.remove_catch_all("example.com")

        assert exc_info.value.code == "CATCH_ALL_NOT_FOUND"

    def test_catch_all_requires_main_domain(self, populated):
        with pytest.raises(MailError) as exc_info:
            populated.set_catch_all("other.org", "info@example.com")

        assert exc_info.value.code == "DOMAIN_NOT_FOUND"


class TestAtomicity:
    """A failed operation leaves every file as it was."""

    def test_failed_postmap_rolls_back(self, populated, config, runner):
        users_before = config.dovecot_users_file.read_text()
        vmailbox_before = config.vmailbox_file.read_text()
        runner.fail["postmap"] = "fatal: open database"

        with pytest.raises(MailError) as exc_info:
            populated.add_mailbox("new@example.com", password="secret")

        assert exc_info.value.code == "COMMAND_FAILED"
        assert config.dovecot_users_file.read_text() == users_before
        assert config.vmailbox_file.read_text() == vmailbox_before

    def test_failed_first_write_removes_new_files(self, populated, config, runner):
        runner.fail["postmap"] = "fatal"

        with pytest.raises(MailError):
            populated.add_redirect_domain("old.org", "info@example.com")

        assert not config.virtual_file.exists()
        assert not config.virtual_domains_file.exists()

    def test_hash_failure_writes_nothing(self, populated, config, runner):
        users_before = config.dovecot_users_file.read_text()
        runner.fail["doveadm"] = "unknown scheme"

        with pytest.raises(MailError):
            populated.add_mailbox("new@example.com", password="secret")

        assert config.dovecot_users_file.read_text() == users_before

    def test_rejected_edit_leaves_maps_fresh(self, populated, config):
        """A validation error must not rewrite the text maps behind their .db files."""
        populated.rebuild()
        assert populated.check()["ok"]
        mtimes = {p: p.stat().st_mtime_ns for p in [config.vmailbox_file, config.dovecot_users_file]}

        with pytest.raises(MailError) as exc_info:
            populated.add_main_domain("example.com")

        assert exc_info.value.code == "DOMAIN_EXISTS"
        assert {p: p.stat().st_mtime_ns for p in mtimes} == mtimes
        assert populated.check() == {"ok": True, "issues": []}

    def test_failed_commit_creates_no_maildir(self, populated, config, runner):
        runner.fail["postmap"] = "fatal: open database"

        with pytest.raises(MailError):
            populated.add_mailbox("new@example.com", password="secret")

        assert not (config.maildir_base / "example.com" / "new").exists()

    def test_failed_postconf_creates_no_domain_dir(self, directory, config, runner):
        runner.fail["postconf -e"] = "fatal: bad parameter"

        with pytest.raises(MailError):
            directory.add_main_domain("example.com")

        assert not (config.maildir_base / "example.com").exists()

    def test_locked_directory(self, directory, config):
        with DirectoryLock(config.lock_file):
            with pytest.raises(MailError) as exc_info:
                directory.add_main_domain("example.com")

        assert exc_info.value.code == "STORE_LOCKED"


class TestConsistency:
    """Tests for check() and rebuild()."""

    def test_clean_directory(self, populated):
        populated.add_redirect_domain("old.org", "info@example.com")
        populated.set_catch_all("example.com", "info@example.com")

        assert populated.check() == {"ok": True, "issues": []}

    def test_reports_drift(self, populated, config, runner):
        with config.dovecot_users_file.open("a") as f:
            f.write("orphan@example.com:x:5000:5000::/tmp/orphan::\n")
        with config.vmailbox_file.open("a") as f:
            f.write("ghost@lost.org    lost.org/ghost/\n")
        config.virtual_domains_file.write_text("old.org\n")
        config.virtual_file.write_text("@old.org    nobody@example.com\n")
        runner.params["virtual_alias_domains"] = ""

        codes = {(i["code"], i["subject"]) for i in populated.check()["issues"]}

        assert ("MISSING_FROM_VMAILBOX", "orphan@example.com") in codes
        assert ("MISSING_FROM_USERDB", "ghost@lost.org") in codes
        assert ("UNKNOWN_MAIN_DOMAIN", "ghost@lost.org") in codes
        assert ("DANGLING_TARGET", "old.org") in codes
        assert ("ALIAS_DOMAINS_OUT_OF_SYNC", "virtual_alias_domains") in codes
        assert ("STALE_MAP_DB", str(config.virtual_file)) in codes

    def test_reports_missing_self_mapping(self, populated, config):
        populated.set_catch_all("example.com", "info@example.com")
        config.virtual_file.write_text("@example.com    info@example.com\n")
        populated.rebuild()

        issues = populated.check()["issues"]

        assert {"code": "MISSING_SELF_MAPPING", "subject": "info@example.com",
                "detail": "catch-all on example.com would capture its mail"} in issues

    def test_rebuild(self, populated, config, runner):
        config.virtual_domains_file.write_text("old.org\n")
        config.virtual_file.write_text("@old.org    info@example.com\n")
        runner.calls.clear()

        result = populated.rebuild()

        assert result["compiled"] == [str(config.virtual_file), str(config.vmailbox_file)]
        assert runner.params["virtual_alias_domains"] == "old.org"
        assert runner.calls[-1] == ["systemctl", "reload", "postfix"]

    def test_restart_reload_action(self, config, runner):
        config.reload_action = "restart"
        DirectoryService(config, runner).add_main_domain("example.com")

        assert ["systemctl", "restart", "postfix"] in runner.calls

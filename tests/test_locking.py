"""Tests for the directory lock, atomic writes and transactions."""

import pytest

from mailkit.errors import MailError
from mailkit.locking import DirectoryLock, StoreTransaction, atomic_write


class TestAtomicWrite:
    def test_creates_parent_and_file(self, tmp_path):
        path = tmp_path / "postfix" / "virtual"

        atomic_write(path, "@a.com    x@example.com\n")

        assert path.read_text() == "@a.com    x@example.com\n"
        assert path.stat().st_mode & 0o777 == 0o644

    def test_explicit_mode(self, tmp_path):
        path = tmp_path / "users"

        atomic_write(path, "", mode=0o600)

        assert path.stat().st_mode & 0o777 == 0o600

    def test_leaves_no_temp_files(self, tmp_path):
        atomic_write(tmp_path / "virtual", "one\n")
        atomic_write(tmp_path / "virtual", "two\n")

        assert [p.name for p in tmp_path.iterdir()] == ["virtual"]


class TestDirectoryLock:
    def test_second_holder_is_refused(self, tmp_path):
        """A held lock makes a concurrent edit fail with STORE_LOCKED."""
        path = tmp_path / "mailkit.lock"

        with DirectoryLock(path) as first:
            assert first.held
            with pytest.raises(MailError) as exc_info:
                DirectoryLock(path, timeout=0.0).acquire()

        assert exc_info.value.code == "STORE_LOCKED"

    def test_released_lock_can_be_taken_again(self, tmp_path):
        path = tmp_path / "mailkit.lock"

        with DirectoryLock(path):
            pass
        lock = DirectoryLock(path)
        lock.acquire()

        assert lock.held
        lock.release()
        assert not lock.held


class TestStoreTransaction:
    def test_restores_files_on_error(self, tmp_path):
        existing = tmp_path / "virtual"
        existing.write_text("before\n")
        existing.chmod(0o640)
        created = tmp_path / "vmailbox"

        with pytest.raises(RuntimeError):
            with StoreTransaction([existing, created]):
                existing.write_text("after\n")
                created.write_text("new\n")
                raise RuntimeError("boom")

        assert existing.read_text() == "before\n"
        assert existing.stat().st_mode & 0o777 == 0o640
        assert not created.exists()

    def test_keeps_changes_on_success(self, tmp_path):
        path = tmp_path / "virtual"
        path.write_text("before\n")

        with StoreTransaction([path]):
            path.write_text("after\n")

        assert path.read_text() == "after\n"

    def test_rollback_leaves_unchanged_files_alone(self, tmp_path):
        untouched = tmp_path / "vmailbox"
        untouched.write_text("info@example.com    example.com/info/\n")
        mtime = untouched.stat().st_mtime_ns
        edited = tmp_path / "virtual"
        edited.write_text("before\n")

        with pytest.raises(RuntimeError):
            with StoreTransaction([untouched, edited]):
                edited.write_text("after\n")
                raise RuntimeError("boom")

        assert untouched.stat().st_mtime_ns == mtime
        assert edited.read_text() == "before\n"

    def test_explicit_rollback_is_not_repeated(self, tmp_path):
        """After rollback(), leaving the block with an error restores nothing else."""
        path = tmp_path / "virtual"
        path.write_text("before\n")

        with pytest.raises(RuntimeError):
            with StoreTransaction([path]) as txn:
                path.write_text("after\n")
                txn.rollback()
                path.write_text("written after rollback\n")
                raise RuntimeError("boom")

        assert path.read_text() == "written after rollback\n"

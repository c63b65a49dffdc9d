"""Tests for staged transactions and per-target locking."""

from __future__ import annotations

import os
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from savecrate.errors import ArchiveIOError, TargetBusyError, TransactionError
from savecrate.transaction import (
    STALE_LOCK_SECONDS,
    FileSetTransaction,
    ManagedTree,
    StagedTransaction,
    TransactionState,
    _process_locks,
    lock_file_path,
    target_lock,
)

from conftest import write_file


def _fill(files: dict[str, str]):
    def populate(staging: Path) -> int:
        for relative, content in files.items():
            write_file(staging / relative, content)
        return len(files)

    return populate


@pytest.fixture
def live(tmp_path: Path) -> Path:
    target = tmp_path / "profile"
    write_file(target / "old.txt", "old")
    return target


class TestTargetLock:
    """Exclusive ownership of a target path."""

    def test_lock_file_lifecycle(self, tmp_path: Path) -> None:
        target = tmp_path / "profile"
        with target_lock(target) as lock_path:
            assert lock_path == lock_file_path(target)
            assert lock_path.read_text().strip() == str(os.getpid())
        assert not lock_path.exists()

    def test_not_reentrant(self, tmp_path: Path) -> None:
        target = tmp_path / "profile"
        with target_lock(target):
            with pytest.raises(TargetBusyError):
                with target_lock(target):
                    pass
        with target_lock(target):
            pass

    def test_foreign_lock_file_blocks(self, tmp_path: Path) -> None:
        target = tmp_path / "profile"
        lock_file_path(target).write_text("12345\n")
        with pytest.raises(TargetBusyError, match="lock file"):
            with target_lock(target):
                pass

    def test_stale_lock_file_taken_over(self, tmp_path: Path) -> None:
        target = tmp_path / "profile"
        stale = lock_file_path(target)
        stale.write_text("12345\n")
        old = time.time() - STALE_LOCK_SECONDS - 60
        os.utime(stale, (old, old))

        with target_lock(target):
            assert stale.read_text().strip() == str(os.getpid())
        assert not stale.exists()

    def test_different_targets_independent(self, tmp_path: Path) -> None:
        with target_lock(tmp_path / "a"), target_lock(tmp_path / "b"):
            pass

    def test_registry_entry_dropped_after_release(self, tmp_path: Path) -> None:
        before = set(_process_locks)
        target = tmp_path / "profile"
        with target_lock(target):
            assert len(_process_locks) == len(before) + 1
            with pytest.raises(TargetBusyError):
                with target_lock(target):
                    pass
            assert len(_process_locks) == len(before) + 1
        assert set(_process_locks) == before

        lock_file_path(target).write_text("12345\n")
        with pytest.raises(TargetBusyError):
            with target_lock(target):
                pass
        assert set(_process_locks) == before


class TestStagedTransaction:
    """Whole-directory swap."""

    def test_replaces_target(self, live: Path) -> None:
        tx = StagedTransaction(live)
        assert tx.run(_fill({"new.txt": "new", "sub/x.txt": "x"})) == 2

        assert tx.state is TransactionState.COMMITTED
        assert not (live / "old.txt").exists()
        assert (live / "sub" / "x.txt").read_text() == "x"
        assert not tx.staging_path.exists()
        assert not tx.backup_path.exists()
        assert not lock_file_path(live).exists()

    def test_creates_missing_target(self, tmp_path: Path) -> None:
        target = tmp_path / "fresh"
        StagedTransaction(target).run(_fill({"a.txt": "a"}))
        assert (target / "a.txt").read_text() == "a"

    def test_populate_failure_leaves_target(self, live: Path) -> None:
        def populate(staging: Path) -> None:
            write_file(staging / "half.txt", "half")
            raise ArchiveIOError("download broke")

        tx = StagedTransaction(live)
        with pytest.raises(ArchiveIOError, match="download broke"):
            tx.run(populate)

        assert tx.state is TransactionState.ROLLED_BACK
        assert (live / "old.txt").read_text() == "old"
        assert not tx.staging_path.exists()

    def test_validation_failure_leaves_target(self, live: Path) -> None:
        def validate(staging: Path) -> None:
            raise ValueError("missing winhttp.dll")

        tx = StagedTransaction(live)
        with pytest.raises(ValueError):
            tx.run(_fill({"new.txt": "new"}), validate=validate)

        assert (live / "old.txt").exists()
        assert not (live / "new.txt").exists()
        assert not tx.staging_path.exists()

    def test_stale_siblings_cleared(self, live: Path) -> None:
        tx = StagedTransaction(live)
        write_file(tx.staging_path / "leftover.txt", "x")
        write_file(tx.backup_path / "leftover.txt", "x")

        tx.run(_fill({"new.txt": "new"}))
        assert not (live / "leftover.txt").exists()
        assert not tx.backup_path.exists()

    def test_runs_only_once(self, live: Path) -> None:
        tx = StagedTransaction(live)
        tx.run(_fill({"a.txt": "a"}))
        with pytest.raises(TransactionError, match="already ran"):
            tx.run(_fill({"b.txt": "b"}))

    def test_busy_target_untouched(self, live: Path) -> None:
        with target_lock(live):
            with pytest.raises(TargetBusyError):
                StagedTransaction(live).run(_fill({"new.txt": "new"}))
        assert (live / "old.txt").exists()

    def test_custom_lock_path(self, live: Path, tmp_path: Path) -> None:
        inner = live / "SaveData"
        with target_lock(live):
            with pytest.raises(TargetBusyError):
                StagedTransaction(inner, lock_path=live).run(_fill({"a": "a"}))

    def test_promotion_failure_restores_backup(self, live: Path) -> None:
        tx = StagedTransaction(live)
        real_replace = os.replace

        def flaky_replace(src, dst):
            if Path(src) == tx.staging_path:
                raise OSError("disk full")
            return real_replace(src, dst)

        with patch("savecrate.transaction.os.replace", side_effect=flaky_replace):
            with pytest.raises(TransactionError) as excinfo:
                tx.run(_fill({"new.txt": "new"}))

        assert excinfo.value.rolled_back
        assert not excinfo.value.manual_recovery_required
        assert (live / "old.txt").read_text() == "old"
        assert not tx.staging_path.exists()

    def test_failed_rollback_flags_manual_recovery(self, live: Path) -> None:
        tx = StagedTransaction(live)
        real_replace = os.replace

        def broken_replace(src, dst):
            if Path(src) == live:
                return real_replace(src, dst)
            raise OSError("device gone")

        with patch("savecrate.transaction.os.replace", side_effect=broken_replace):
            with pytest.raises(TransactionError) as excinfo:
                tx.run(_fill({"new.txt": "new"}))

        assert excinfo.value.manual_recovery_required
        assert "manual recovery" in str(excinfo.value)
        assert (tx.backup_path / "old.txt").exists()


class TestFileSetTransaction:
    """Replacement of scattered managed files across roots."""

    def _trees(self, tmp_path: Path, second_collect=None) -> list[ManagedTree]:
        def managed(root: Path) -> list[Path]:
            return sorted(p for p in root.rglob("*.sav") if p.is_file())

        return [
            ManagedTree("profile", tmp_path / "profile", managed),
            ManagedTree("locallow", tmp_path / "locallow", second_collect or managed),
        ]

    def test_replaces_only_managed_files(self, tmp_path: Path) -> None:
        write_file(tmp_path / "profile" / "a.sav", "old-a")
        write_file(tmp_path / "profile" / "gone.sav", "old-gone")
        write_file(tmp_path / "profile" / "keep.cfg", "keep")
        write_file(tmp_path / "locallow" / "l.sav", "old-l")

        tx = FileSetTransaction(tmp_path / "backup", self._trees(tmp_path), tmp_path / "profile")

        def populate(staging: Path) -> None:
            write_file(tx.staging_dir("profile") / "a.sav", "new-a")
            write_file(tx.staging_dir("locallow") / "deep" / "l2.sav", "new-l2")

        tx.run(populate)

        assert (tmp_path / "profile" / "a.sav").read_text() == "new-a"
        assert not (tmp_path / "profile" / "gone.sav").exists()
        assert (tmp_path / "profile" / "keep.cfg").read_text() == "keep"
        assert not (tmp_path / "locallow" / "l.sav").exists()
        assert (tmp_path / "locallow" / "deep" / "l2.sav").read_text() == "new-l2"
        assert not (tmp_path / "backup").exists()

    def test_commit_failure_restores_previous_files(self, tmp_path: Path) -> None:
        write_file(tmp_path / "profile" / "a.sav", "old-a")

        def broken(root: Path) -> list[Path]:
            raise ArchiveIOError("cannot list", root)

        trees = self._trees(tmp_path, second_collect=broken)
        tx = FileSetTransaction(tmp_path / "backup", trees, tmp_path / "profile")

        with pytest.raises(TransactionError) as excinfo:
            tx.run(lambda staging: write_file(tx.staging_dir("profile") / "a.sav", "new-a"))

        assert excinfo.value.rolled_back
        assert tx.state is TransactionState.ROLLED_BACK
        assert (tmp_path / "profile" / "a.sav").read_text() == "old-a"
        assert not (tmp_path / "backup").exists()

    def test_populate_failure_discards_scratch(self, tmp_path: Path) -> None:
        write_file(tmp_path / "profile" / "a.sav", "old-a")
        tx = FileSetTransaction(tmp_path / "backup", self._trees(tmp_path), tmp_path / "profile")

        def populate(staging: Path) -> None:
            write_file(tx.staging_dir("profile") / "a.sav", "partial")
            raise ArchiveIOError("bad entry")

        with pytest.raises(ArchiveIOError):
            tx.run(populate)

        assert (tmp_path / "profile" / "a.sav").read_text() == "old-a"
        assert not (tmp_path / "backup").exists()

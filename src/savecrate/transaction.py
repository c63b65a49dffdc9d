"""
Staged transactions — stage, validate, commit, roll back.

Every destructive change to a profile goes through one of two
variants sharing the same state machine:

- StagedTransaction swaps a whole directory: populate a sibling
  staging directory, move the live target aside as a backup, rename
  staging into place, then drop the backup.
- FileSetTransaction replaces a scattered set of managed files under
  one or more roots (migration import): stage into a private tree,
  then back up and remove the managed files before moving the staged
  files in.

Both refuse to run while another operation holds the same target
(see target_lock).
"""

from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional, TypeVar

from .errors import ArchiveIOError, SaveCrateError, TargetBusyError, TransactionError
from .fsutil import clean_path, collect_files_recursive, copy_file, ensure_dir

logger = logging.getLogger("savecrate.transaction")

T = TypeVar("T")

LOCK_SUFFIX = ".lock"
STALE_LOCK_SECONDS = 6 * 60 * 60

Validate = Callable[[Path], None]


class TransactionState(str, Enum):
    CREATED = "created"
    POPULATING = "populating"
    VALIDATED = "validated"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


# ---------------------------------------------------------------------------
# Per-target locking
# ---------------------------------------------------------------------------

_registry_guard = threading.Lock()
# key -> [lock, number of callers holding or waiting on it]
_process_locks: dict[str, list] = {}


def lock_file_path(target: Path) -> Path:
    """``<target>.lock`` beside the target."""
    return target.with_name(target.name + LOCK_SUFFIX)


def _lock_is_stale(path: Path) -> bool:
    try:
        age = time.time() - path.stat().st_mtime
    except FileNotFoundError:
        return True
    except OSError:
        return False
    return age > STALE_LOCK_SECONDS


def _acquire_lock_file(path: Path, target: Path) -> None:
    ensure_dir(path.parent)
    for attempt in range(2):
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            if attempt == 0 and _lock_is_stale(path):
                logger.warning("Taking over stale lock file %s", path)
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass
                except OSError as exc:
                    raise ArchiveIOError(
                        f"Failed to remove stale lock file '{path}': {exc}", path
                    ) from exc
                continue
            raise TargetBusyError(
                f"Another operation is already running on '{target}' (lock file {path})"
            )
        except OSError as exc:
            raise ArchiveIOError(f"Failed to create lock file '{path}': {exc}", path) from exc

        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(f"{os.getpid()}\n")
        return


def _release_entry(key: str) -> None:
    with _registry_guard:
        entry = _process_locks.get(key)
        if entry is None:
            return
        entry[1] -= 1
        if entry[1] <= 0:
            del _process_locks[key]


@contextmanager
def target_lock(target: Path) -> Iterator[Path]:
    """Hold exclusive ownership of ``target`` for the duration of the block.

    Combines a process-local lock (threads) with a ``<target>.lock``
    file created with O_EXCL (other processes). Not reentrant.

    Raises:
        TargetBusyError: If another operation already owns ``target``.
    """
    target = Path(target)
    key = os.path.normcase(str(target.absolute()))
    with _registry_guard:
        entry = _process_locks.setdefault(key, [threading.Lock(), 0])
        entry[1] += 1
    lock = entry[0]
    if not lock.acquire(blocking=False):
        _release_entry(key)
        raise TargetBusyError(f"Another operation is already running on '{target}'")

    lock_path = lock_file_path(target)
    try:
        _acquire_lock_file(lock_path, target)
        try:
            yield lock_path
        finally:
            try:
                lock_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Failed to remove lock file %s: %s", lock_path, exc)
    finally:
        lock.release()
        _release_entry(key)


# ---------------------------------------------------------------------------
# Shared state machine
# ---------------------------------------------------------------------------


class _Transaction:
    """Template for the stage/validate/commit sequence.

    Subclasses provide the staging location, preparation, commit, and
    cleanup steps.
    """

    def __init__(self, lock_path: Path):
        self.lock_path = lock_path
        self.state = TransactionState.CREATED

    @property
    def staging_path(self) -> Path:
        raise NotImplementedError

    def run(self, populate: Callable[[Path], T], validate: Optional[Validate] = None) -> T:
        """Execute the transaction.

        Args:
            populate: Fills the staging directory; its return value is
                passed back to the caller.
            validate: Optional check of the populated staging directory.
                Raising aborts before the live target is touched.

        Returns:
            Whatever ``populate`` returned.
        """
        if self.state is not TransactionState.CREATED:
            raise TransactionError(f"Transaction already ran (state: {self.state.value})")

        with target_lock(self.lock_path):
            self._prepare()
            self.state = TransactionState.POPULATING
            try:
                result = populate(self.staging_path)
                if validate is not None:
                    validate(self.staging_path)
            except Exception:
                self._discard_staging()
                self.state = TransactionState.ROLLED_BACK
                raise
            self.state = TransactionState.VALIDATED

            self._commit()
            self.state = TransactionState.COMMITTED
            self._cleanup()
            return result

    def _prepare(self) -> None:
        raise NotImplementedError

    def _commit(self) -> None:
        raise NotImplementedError

    def _cleanup(self) -> None:
        raise NotImplementedError

    def _discard_staging(self) -> None:
        try:
            clean_path(self.staging_path)
        except ArchiveIOError as exc:
            logger.warning("Failed to remove staging directory %s: %s", self.staging_path, exc)


# ---------------------------------------------------------------------------
# Directory swap
# ---------------------------------------------------------------------------


class StagedTransaction(_Transaction):
    """Atomically replace the directory ``target``.

    Staging and backup live beside the target as
    ``<target><staging_suffix>`` and ``<target><backup_suffix>``.

    Args:
        target: Directory to replace.
        staging_suffix: Suffix of the staging sibling.
        backup_suffix: Suffix of the backup sibling.
        lock_path: Path whose lock guards the run (defaults to target).
    """

    def __init__(
        self,
        target: Path,
        staging_suffix: str = "._staging",
        backup_suffix: str = "._backup",
        lock_path: Optional[Path] = None,
    ):
        super().__init__(lock_path or target)
        self.target = Path(target)
        self._staging = self.target.with_name(self.target.name + staging_suffix)
        self.backup_path = self.target.with_name(self.target.name + backup_suffix)

    @property
    def staging_path(self) -> Path:
        return self._staging

    def _prepare(self) -> None:
        clean_path(self._staging)
        clean_path(self.backup_path)
        ensure_dir(self._staging)

    def _commit(self) -> None:
        had_target = self.target.exists()
        if had_target:
            try:
                os.replace(self.target, self.backup_path)
            except OSError as exc:
                self._discard_staging()
                self.state = TransactionState.ROLLED_BACK
                raise TransactionError(
                    f"Failed to move existing '{self.target}' aside: {exc}", rolled_back=True
                ) from exc

        try:
            os.replace(self._staging, self.target)
        except OSError as exc:
            self._rollback_promotion(had_target, exc)

        logger.info("Committed %s", self.target)

    def _rollback_promotion(self, had_target: bool, cause: OSError) -> None:
        message = f"Failed to move staged files into '{self.target}': {cause}"
        try:
            clean_path(self.target)
            if had_target:
                os.replace(self.backup_path, self.target)
        except (OSError, SaveCrateError) as rollback_exc:
            self.state = TransactionState.ROLLED_BACK
            raise TransactionError(
                f"{message} Rollback failed and manual recovery may be required: "
                f"{rollback_exc}",
                manual_recovery_required=True,
            ) from cause
        self._discard_staging()
        self.state = TransactionState.ROLLED_BACK
        raise TransactionError(message, rolled_back=True) from cause

    def _cleanup(self) -> None:
        try:
            clean_path(self.backup_path)
        except ArchiveIOError as exc:
            logger.warning("Failed to remove backup %s: %s", self.backup_path, exc)


# ---------------------------------------------------------------------------
# Scattered file set
# ---------------------------------------------------------------------------


@dataclass
class ManagedTree:
    """One root whose managed files a FileSetTransaction replaces.

    Attributes:
        name: Staging/backup sub-directory name (e.g. ``profile``).
        root: Live directory the staged files land in.
        collect: Returns the managed files currently under ``root``.
    """

    name: str
    root: Path
    collect: Callable[[Path], list[Path]]


class FileSetTransaction(_Transaction):
    """Replace the managed files of several roots in one go.

    ``populate`` writes into ``staging_dir(tree.name)`` using paths
    relative to that tree's root. Commit backs up and removes every
    managed file currently present, then moves the staged files in.
    If any step fails, files written by the attempt are removed and the
    backups are copied back.

    Args:
        backup_root: Private scratch directory; removed afterwards.
        trees: Roots to manage.
        lock_path: Path whose lock guards the run.
    """

    def __init__(self, backup_root: Path, trees: list[ManagedTree], lock_path: Path):
        super().__init__(lock_path)
        self.backup_root = Path(backup_root)
        self.trees = trees
        self._written: list[Path] = []
        self._backed_up: list[tuple[Path, Path]] = []

    @property
    def staging_path(self) -> Path:
        return self.backup_root / "staging"

    def staging_dir(self, name: str) -> Path:
        return self.staging_path / name

    def backup_dir(self, name: str) -> Path:
        return self.backup_root / f"{name}_backup"

    def _prepare(self) -> None:
        ensure_dir(self.backup_root)
        clean_path(self.staging_path)
        for tree in self.trees:
            ensure_dir(self.staging_dir(tree.name))

    def _commit(self) -> None:
        try:
            for tree in self.trees:
                self._backup_and_remove(tree)
            for tree in self.trees:
                self._move_staged(tree)
        except (OSError, SaveCrateError) as exc:
            self._rollback(exc)

        for tree in self.trees:
            logger.info("Committed managed files under %s", tree.root)

    def _backup_and_remove(self, tree: ManagedTree) -> None:
        backup = self.backup_dir(tree.name)
        for existing in tree.collect(tree.root):
            saved = backup / existing.relative_to(tree.root)
            copy_file(existing, saved)
            self._backed_up.append((saved, existing))
            existing.unlink()

    def _move_staged(self, tree: ManagedTree) -> None:
        staged_root = self.staging_dir(tree.name)
        for staged in collect_files_recursive(staged_root):
            destination = tree.root / staged.relative_to(staged_root)
            ensure_dir(destination.parent)
            self._written.append(destination)
            try:
                os.replace(staged, destination)
            except OSError:
                copy_file(staged, destination)

    def _rollback(self, cause: Exception) -> None:
        try:
            for written in self._written:
                if written.exists():
                    written.unlink()
            for saved, original in self._backed_up:
                copy_file(saved, original)
        except (OSError, SaveCrateError) as rollback_exc:
            # Backups stay on disk for manual recovery.
            self.state = TransactionState.ROLLED_BACK
            raise TransactionError(
                f"{cause} Rollback failed and manual recovery may be required: "
                f"{rollback_exc} (backups kept in {self.backup_root})",
                manual_recovery_required=True,
            ) from cause
        self.state = TransactionState.ROLLED_BACK
        self._remove_backup_root()
        raise TransactionError(str(cause), rolled_back=True) from cause

    def _discard_staging(self) -> None:
        self._remove_backup_root()

    def _remove_backup_root(self) -> None:
        try:
            clean_path(self.backup_root)
        except ArchiveIOError as exc:
            logger.warning("Failed to remove import backup %s: %s", self.backup_root, exc)

    def _cleanup(self) -> None:
        self._remove_backup_root()

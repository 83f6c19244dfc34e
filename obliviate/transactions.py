import enum
import logging
import pathlib
import threading
import typing

import attr

from .backups import BackupRecord, BackupStore
from .errors import ErrorKind, ObliviateError
from .utils import normalise

log = logging.getLogger(__name__)


class TransactionState(enum.Enum):
    PENDING = 'pending'
    OPEN = 'open'
    COMMITTED = 'committed'
    ROLLED_BACK = 'rolled back'

    @property
    def terminal(self) -> bool:
        return self in (TransactionState.COMMITTED, TransactionState.ROLLED_BACK)


@attr.s
class PathLocks:
    """
    Single-flight locks keyed by normalised path.

    At most one open transaction may hold a given path. Acquiring a path
    that is already held fails immediately rather than waiting.
    """

    _held: typing.Set[pathlib.Path] = attr.ib(factory=set, init=False)
    _lock: threading.Lock = attr.ib(factory=threading.Lock, init=False, repr=False)

    def acquire(self, paths: typing.Iterable[pathlib.Path]) -> typing.Sequence[pathlib.Path]:
        keys = tuple(sorted({normalise(path) for path in paths}))
        with self._lock:
            busy = [key for key in keys if key in self._held]
            if busy:
                raise ObliviateError(
                    ErrorKind.FILE_OPERATION,
                    "Another operation is already in progress for this file",
                ).with_context(path=busy[0])
            self._held.update(keys)
        return keys

    def release(self, keys: typing.Iterable[pathlib.Path]) -> None:
        with self._lock:
            self._held.difference_update(keys)

    def held(self, path: pathlib.Path) -> bool:
        with self._lock:
            return normalise(path) in self._held


@attr.s
class TransactionManager:
    """
    Groups the modification of one or more files into a unit that is either
    committed or rolled back.

    Each manager brackets a single transaction. Once it has been committed
    or rolled back, further calls to either are no-ops.
    """

    store: BackupStore = attr.ib()
    locks: PathLocks = attr.ib(factory=PathLocks)

    state: TransactionState = attr.ib(default=TransactionState.PENDING, init=False)
    records: typing.Dict[pathlib.Path, BackupRecord] = attr.ib(factory=dict, init=False)
    _keys: typing.Sequence[pathlib.Path] = attr.ib(default=(), init=False, repr=False)

    def begin(self, *paths: pathlib.Path) -> 'TransactionManager':
        """
        Back up every existing path before it is modified.

        Paths that do not exist yet are skipped. If any backup fails, the
        backups already taken are rolled back and the error is raised.
        """
        if self.state != TransactionState.PENDING:
            raise ObliviateError(
                ErrorKind.GENERAL,
                f"Cannot begin a transaction that is {self.state.value}")

        self._keys = self.locks.acquire(paths)
        self.state = TransactionState.OPEN

        for path in paths:
            if not path.exists():
                log.debug(f"Not backing up {path} as it does not exist")
                continue

            try:
                self.records[path] = self.store.backup_file(path)
            except ObliviateError:
                log.warning(f"Backup of {path} failed, rolling back transaction")
                try:
                    self.rollback()
                except ObliviateError as error:
                    log.error(f"Rollback after failed backup also failed: {error}")
                raise

        log.debug(f"Began transaction over {len(self.records)} file(s)")
        return self

    def commit(self) -> None:
        """Forget the open transaction; the backups stay on disk as history."""
        if self.state.terminal:
            return

        log.debug(f"Committing transaction over {len(self.records)} file(s)")
        self.records = {}
        self.finish(TransactionState.COMMITTED)

    def rollback(self) -> None:
        """
        Restore every recorded file from its backup.

        All files are attempted; if any restore fails, the last failure is
        raised after the others have been restored.
        """
        if self.state.terminal:
            return

        last_error: typing.Optional[ObliviateError] = None
        for path, record in self.records.items():
            if not record.backup.exists():
                log.warning(f"Backup {record.backup} of {path} has disappeared")
                continue
            try:
                self.store.restore_backup(record.backup, path)
            except ObliviateError as error:
                log.error(f"Failed to restore {path}: {error}")
                last_error = ObliviateError(
                    ErrorKind.FILE_OPERATION,
                    "Failed to restore file during rollback",
                    cause=error,
                ).with_context(path=path, backup=record.backup)

        self.records = {}
        self.finish(TransactionState.ROLLED_BACK)

        if last_error is not None:
            raise last_error

    def finish(self, state: TransactionState) -> None:
        self.state = state
        self.locks.release(self._keys)
        self._keys = ()

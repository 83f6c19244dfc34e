import logging
import pathlib
import subprocess
import typing

import attr

from .backups import BackupStore
from .classify import ErrorClassifier, PatternClassifier
from .errors import ErrorKind, ObliviateError
from .sops import SOPS, FileInfo
from .transactions import PathLocks, TransactionManager

log = logging.getLogger(__name__)


@attr.s(frozen=True, kw_only=True)
class OperationResult:
    path: pathlib.Path = attr.ib()
    summary: str = attr.ib()
    changed: bool = attr.ib(default=True)

    def __str__(self):
        return self.summary


@attr.s(frozen=True)
class SecretOperations:
    """
    Runs sops against secret files, backing them up first.

    Every operation that modifies a file runs inside a transaction over
    that file. A failure rolls the file back to its backup unless the
    failure shows sops never changed it.
    """

    store: BackupStore = attr.ib()
    sops: SOPS = attr.ib(factory=SOPS)
    classifier: ErrorClassifier = attr.ib(factory=PatternClassifier)
    locks: PathLocks = attr.ib(factory=PathLocks)
    default_recipients: typing.Sequence[str] = attr.ib(default=(), converter=tuple)

    def transaction(self) -> TransactionManager:
        return TransactionManager(self.store, self.locks)

    def mutate(
            self,
            verb: str,
            path: pathlib.Path,
            run: typing.Callable[[], typing.Any],
            summary: str) -> OperationResult:
        tm = self.transaction().begin(path)

        try:
            run()
        except subprocess.CalledProcessError as error:
            failure = self.classifier.classify(error.stderr or '', cause=error)
            return self.recover(tm, verb, path, failure, error.stderr or '')
        except OSError as error:
            failure = ObliviateError.wrap(
                error, ErrorKind.FILE_OPERATION, "Failed to run sops", path=path)
            return self.recover(tm, verb, path, failure, '')
        except BaseException:
            tm.rollback()
            raise

        tm.commit()
        log.info(summary)
        return OperationResult(path=path, summary=summary)

    def recover(
            self,
            tm: TransactionManager,
            verb: str,
            path: pathlib.Path,
            failure: ObliviateError,
            stderr: str) -> OperationResult:
        if not failure.mutated:
            log.info(f"Not rolling back {path}: {failure.message}")
            tm.commit()
            return OperationResult(path=path, summary=failure.message, changed=False)

        try:
            tm.rollback()
        except ObliviateError as rollback_error:
            raise ObliviateError(
                ErrorKind.FILE_OPERATION,
                f"Failed to {verb} file and rollback also failed",
                cause=failure.cause,
            ).with_context(
                path=path,
                error=failure,
                stderr=stderr.strip(),
                rollback_error=rollback_error)

        raise failure.with_context(path=path)

    def classified(self, error: subprocess.CalledProcessError, path: pathlib.Path) -> ObliviateError:
        return self.classifier.classify(error.stderr or '', cause=error).with_context(path=path)

    def encrypt(
            self,
            path: pathlib.Path,
            recipients: typing.Optional[typing.Sequence[str]] = None) -> OperationResult:
        recipients = tuple(recipients or self.default_recipients)
        return self.mutate(
            'encrypt', path,
            lambda: self.sops.encrypt(path, recipients),
            f"Encrypted {path.name}")

    def decrypt(self, path: pathlib.Path, output: pathlib.Path) -> OperationResult:
        """Decrypt to a separate file, leaving the encrypted file untouched."""
        try:
            self.sops.decrypt(path, output=output)
        except subprocess.CalledProcessError as error:
            raise self.classified(error, path)
        except OSError as error:
            raise ObliviateError.wrap(
                error, ErrorKind.FILE_OPERATION, "Failed to run sops", path=path)
        log.info(f"Decrypted {path} to {output}")
        return OperationResult(path=output, summary=f"Decrypted {path.name} to {output.name}")

    def decrypt_in_place(self, path: pathlib.Path) -> OperationResult:
        return self.mutate(
            'decrypt', path,
            lambda: self.sops.decrypt(path, in_place=True),
            f"Decrypted {path.name}")

    def edit(self, path: pathlib.Path) -> OperationResult:
        return self.mutate(
            'edit', path,
            lambda: self.sops.edit(path),
            f"Edited {path.name}")

    def add_recipient(self, path: pathlib.Path, recipient: str) -> OperationResult:
        return self.mutate(
            'add recipient to', path,
            lambda: self.sops.rotate(path, add_recipients=[recipient]),
            f"Added recipient {recipient} to {path.name}")

    def rotate(self, path: pathlib.Path) -> OperationResult:
        return self.mutate(
            'rotate', path,
            lambda: self.sops.rotate(path),
            f"Rotated data key of {path.name}")

    def status(self, path: pathlib.Path) -> FileInfo:
        if not path.is_file():
            raise ObliviateError(
                ErrorKind.FILE_OPERATION, "File does not exist",
            ).with_context(path=path)
        try:
            return self.sops.filestatus(path)
        except subprocess.CalledProcessError as error:
            raise self.classified(error, path)
        except OSError as error:
            raise ObliviateError.wrap(
                error, ErrorKind.FILE_OPERATION, "Failed to run sops", path=path)

    def contents(self, path: pathlib.Path) -> str:
        try:
            return self.sops.contents(path)
        except subprocess.CalledProcessError as error:
            raise self.classified(error, path)
        except OSError as error:
            raise ObliviateError.wrap(
                error, ErrorKind.FILE_OPERATION, "Failed to run sops", path=path)

    def backups(self, path: pathlib.Path) -> typing.Sequence[pathlib.Path]:
        return self.store.backups(path.name)

    def restore(self, path: pathlib.Path) -> OperationResult:
        """Replace a file with its most recent backup."""
        keys = self.locks.acquire([path])
        try:
            backup = self.store.restore(path)
        finally:
            self.locks.release(keys)
        return OperationResult(path=path, summary=f"Restored {path.name} from {backup.name}")

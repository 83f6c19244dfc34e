"""
Timestamped backups of files taken before they are modified.

Backups are written to a single directory and named after the file they
were taken from, so only the basename of the original is significant:

\b
    <backup-dir>/<basename>-<YYYYMMDD-HHMMSS>.bak
    <backup-dir>/<basename>-<YYYYMMDD-HHMMSS>-<n>.bak

The second form is only used when more than one backup of a file is taken
within the same second.
"""

import datetime
import itertools
import logging
import pathlib
import re
import typing

import attr

from .errors import ErrorKind, ObliviateError
from .utils import copy_file, ensure_directory, write_private

log = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y%m%d-%H%M%S'
MAX_BACKUPS = 5


@attr.s(frozen=True, kw_only=True)
class BackupRecord:
    original: pathlib.Path = attr.ib()
    backup: pathlib.Path = attr.ib()
    created_at: datetime.datetime = attr.ib()

    def __str__(self):
        return self.backup.name


@attr.s(frozen=True)
class BackupStore:
    directory: pathlib.Path = attr.ib()
    max_backups: int = attr.ib(default=MAX_BACKUPS)
    clock: typing.Callable[[], datetime.datetime] = attr.ib(
        default=datetime.datetime.now, repr=False)

    @staticmethod
    def pattern(basename: str) -> typing.Pattern[str]:
        return re.compile(
            rf'^{re.escape(basename)}-(\d{{8}}-\d{{6}})(?:-(\d+))?\.bak$')

    def backups(self, basename: str) -> typing.Sequence[pathlib.Path]:
        """List backups of a file by name, oldest first."""
        if not self.directory.is_dir():
            return ()

        pattern = self.pattern(basename)
        found: typing.List[typing.Tuple[str, int, pathlib.Path]] = []
        try:
            for path in self.directory.iterdir():
                match = pattern.match(path.name)
                if match and path.is_file():
                    found.append((match.group(1), int(match.group(2) or 0), path))
        except OSError as error:
            raise ObliviateError.wrap(
                error, ErrorKind.FILE_OPERATION,
                "Failed to read backup directory", directory=self.directory)

        return tuple(path for _, _, path in sorted(found))

    def backup_path(
            self,
            basename: str,
            created_at: datetime.datetime,
            sequence: int = 0) -> pathlib.Path:
        stamp = created_at.strftime(TIMESTAMP_FORMAT)
        if sequence:
            return self.directory / f'{basename}-{stamp}-{sequence}.bak'
        return self.directory / f'{basename}-{stamp}.bak'

    def claim(self, basename: str, created_at: datetime.datetime, data: bytes) -> pathlib.Path:
        """Write data to the first backup name for this second that is still free."""
        for sequence in itertools.count():
            backup = self.backup_path(basename, created_at, sequence)
            try:
                write_private(backup, data, exclusive=True)
            except FileExistsError:
                continue
            return backup

    def backup_file(self, path: pathlib.Path) -> BackupRecord:
        """Copy a file into the backup directory and apply the retention limit."""
        if not path.is_file():
            raise ObliviateError(
                ErrorKind.FILE_OPERATION,
                "Cannot backup non-existent file",
            ).with_context(path=path)

        try:
            ensure_directory(self.directory)
        except OSError as error:
            raise ObliviateError.wrap(
                error, ErrorKind.FILE_OPERATION,
                "Failed to create backup directory", directory=self.directory)

        created_at = self.clock()

        try:
            backup = self.claim(path.name, created_at, path.read_bytes())
        except OSError as error:
            raise ObliviateError.wrap(
                error, ErrorKind.FILE_OPERATION,
                "Failed to create backup", source=path, directory=self.directory)

        log.info(f"Backed up {path} to {backup}")
        self.cleanup(path.name)
        return BackupRecord(original=path, backup=backup, created_at=created_at)

    def cleanup(self, basename: str) -> None:
        """Delete the oldest backups of a file beyond the retention limit."""
        try:
            backups = self.backups(basename)
        except ObliviateError as error:
            log.warning(f"Could not list backups of {basename}: {error}")
            return

        for path in backups[:max(0, len(backups) - self.max_backups)]:
            log.debug(f"Removing old backup {path}")
            try:
                path.unlink()
            except OSError as error:
                log.warning(f"Failed to delete old backup {path}: {error}")

    def restore(self, path: pathlib.Path) -> pathlib.Path:
        """Copy the most recent backup of a file over it."""
        backups = self.backups(path.name)
        if not backups:
            raise ObliviateError(
                ErrorKind.FILE_OPERATION,
                "No backups found for file",
            ).with_context(file=path.name)

        latest = backups[-1]
        self.restore_backup(latest, path)
        return latest

    def restore_backup(self, backup: pathlib.Path, path: pathlib.Path) -> None:
        log.info(f"Restoring {path} from {backup}")
        try:
            copy_file(backup, path)
        except OSError as error:
            raise ObliviateError.wrap(
                error, ErrorKind.FILE_OPERATION,
                "Failed to restore from backup", backup=backup, destination=path)

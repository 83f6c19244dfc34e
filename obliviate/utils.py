import logging
import os
import pathlib
import shutil
import subprocess
import typing

import git

from .errors import ErrorKind, ObliviateError

log = logging.getLogger(__name__)

FILE_MODE = 0o600
DIRECTORY_MODE = 0o700
CHUNK_SIZE = 4096


def find_git_directory() -> typing.Optional[pathlib.Path]:
    try:
        repo = git.Repo(search_parent_directories=True)
    except git.exc.InvalidGitRepositoryError:
        return None
    return pathlib.Path(repo.working_dir)


def is_git_ignored(path: pathlib.Path) -> typing.Optional[bool]:
    """
    Check if a path is excluded by a .gitignore file.

    Returns None when the path is not inside a git repository.
    """
    try:
        repo = git.Repo(path.parent, search_parent_directories=True)
    except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError):
        return None
    if repo.bare:
        return None

    resolved = path.resolve()
    try:
        resolved.relative_to(pathlib.Path(repo.working_dir).resolve())
    except ValueError:
        # check-ignore fails outside the work tree and ignored() reports []
        return None
    return bool(repo.ignored(resolved.as_posix()))


def normalise(path: pathlib.Path) -> pathlib.Path:
    return pathlib.Path(os.path.abspath(path)).resolve()


def ensure_directory(path: pathlib.Path) -> None:
    path.mkdir(mode=DIRECTORY_MODE, parents=True, exist_ok=True)


def write_private(path: pathlib.Path, data: bytes, exclusive: bool = False) -> None:
    """
    Write a file that only the owner can read, whatever mode it had before.

    With exclusive set the file must not already exist, and FileExistsError
    is raised if it does.
    """
    ensure_directory(path.parent)
    flags = os.O_WRONLY | os.O_CREAT | (os.O_EXCL if exclusive else os.O_TRUNC)
    fd = os.open(path, flags, FILE_MODE)
    with os.fdopen(fd, 'wb') as f:
        f.write(data)
    os.chmod(path, FILE_MODE)


def copy_file(source: pathlib.Path, destination: pathlib.Path) -> None:
    """Copy the full contents of a file, never renaming either path."""
    write_private(destination, source.read_bytes())


def overwrite(path: pathlib.Path) -> None:
    """Overwrite the full length of a file with zeros."""
    size = path.stat().st_size
    zeros = bytes(CHUNK_SIZE)
    with path.open('r+b') as f:
        written = 0
        while written < size:
            written += f.write(zeros[:min(CHUNK_SIZE, size - written)])
        f.flush()
        os.fsync(f.fileno())


def secure_delete(
        path: pathlib.Path,
        shred: typing.Optional[str] = shutil.which('shred')) -> None:
    """
    Erase a file's contents before unlinking it.

    Uses `shred` when it is installed, otherwise overwrites the file with
    zeros. A path that does not exist is an error, not a no-op.
    """
    if not path.is_file():
        raise ObliviateError(
            ErrorKind.FILE_OPERATION,
            "Cannot securely delete a file that does not exist",
        ).with_context(path=path)

    log.debug(f"Securely deleting {path}")

    try:
        if shred:
            subprocess.run(
                (shred, '--remove', path.as_posix()),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                check=True)
        else:
            overwrite(path)
            path.unlink()
    except (OSError, subprocess.CalledProcessError) as error:
        raise ObliviateError.wrap(
            error, ErrorKind.FILE_OPERATION,
            "Failed to securely delete file", path=path)

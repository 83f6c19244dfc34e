import json
import logging
import os
import pathlib
import re
import subprocess
import typing

import attr

from .errors import ErrorKind, ObliviateError

log = logging.getLogger(__name__)

RECIPIENT_PATTERN = re.compile(r'"recipient":\s*"([^"]+)"', re.IGNORECASE)
NOT_ENCRYPTED = 'not an encrypted file'


def extract_recipients(output: str) -> typing.Sequence[str]:
    return tuple(RECIPIENT_PATTERN.findall(output))


@attr.s(frozen=True, kw_only=True)
class FileInfo:
    path: pathlib.Path = attr.ib()
    encrypted: bool = attr.ib(default=False)
    recipients: typing.Sequence[str] = attr.ib(default=())

    @classmethod
    def parse(cls, path: pathlib.Path, output: str) -> 'FileInfo':
        try:
            encrypted = bool(json.loads(output).get('encrypted', False))
        except (ValueError, AttributeError):
            encrypted = '"encrypted": true' in output
        return cls(
            path=path,
            encrypted=encrypted,
            recipients=extract_recipients(output) if encrypted else ())


@attr.s(frozen=True)
class SOPS:
    """
    Runs the sops command.

    Output is captured so failures can be classified, except when editing,
    where sops needs the terminal to run an editor.
    """

    executable: str = attr.ib(default='sops')
    editor: typing.Optional[str] = attr.ib(default=None)
    age_key_file: typing.Optional[pathlib.Path] = attr.ib(default=None)

    def environment(self) -> typing.Dict[str, str]:
        env = dict(os.environ)
        if self.age_key_file is not None:
            env['SOPS_AGE_KEY_FILE'] = self.age_key_file.as_posix()
        if self.editor:
            env['EDITOR'] = self.editor
        return env

    def run(self,
            arguments: typing.Sequence[str],
            interactive: bool = False) -> subprocess.CompletedProcess:
        command = (self.executable, *arguments)
        log.debug(f"Running {' '.join(command)}")
        try:
            return subprocess.run(
                command,
                stdout=None if interactive else subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self.environment(),
                check=True)
        except subprocess.CalledProcessError as error:
            error.stderr = error.stderr.decode('utf-8', 'replace')
            for line in error.stderr.splitlines():
                log.error(line)
            raise

    @staticmethod
    def text(result: subprocess.CompletedProcess, path: pathlib.Path) -> str:
        try:
            return result.stdout.decode('utf-8')
        except UnicodeDecodeError as error:
            raise ObliviateError.wrap(
                error, ErrorKind.FILE_OPERATION,
                "sops output is not UTF-8 text", path=path)

    def encrypt(
            self,
            path: pathlib.Path,
            recipients: typing.Sequence[str]) -> subprocess.CompletedProcess:
        log.debug(f"Encrypting {path} for {len(recipients)} recipient(s)")
        arguments: typing.List[str] = ['--encrypt']
        if recipients:
            arguments += ['--age', ','.join(recipients)]
        arguments += ['--in-place', str(path)]
        return self.run(arguments)

    def decrypt(
            self,
            path: pathlib.Path,
            output: typing.Optional[pathlib.Path] = None,
            in_place: bool = False) -> subprocess.CompletedProcess:
        log.debug(f"Decrypting {path}")
        arguments: typing.List[str] = ['--decrypt']
        if in_place:
            arguments += ['--in-place']
        elif output is not None:
            arguments += ['--output', str(output)]
        return self.run([*arguments, str(path)])

    def contents(self, path: pathlib.Path) -> str:
        return self.text(self.decrypt(path), path)

    def edit(self, path: pathlib.Path) -> subprocess.CompletedProcess:
        log.debug(f"Editing {path}")
        return self.run([str(path)], interactive=True)

    def rotate(
            self,
            path: pathlib.Path,
            add_recipients: typing.Sequence[str] = ()) -> subprocess.CompletedProcess:
        log.debug(f"Rotating data key of {path}")
        arguments: typing.List[str] = ['rotate', '--in-place']
        if add_recipients:
            arguments += ['--add-age', ','.join(add_recipients)]
        return self.run([*arguments, str(path)])

    def filestatus(self, path: pathlib.Path) -> FileInfo:
        try:
            result = self.run(['filestatus', str(path)])
        except subprocess.CalledProcessError as error:
            if NOT_ENCRYPTED in error.stderr.lower():
                return FileInfo(path=path, encrypted=False)
            raise
        return FileInfo.parse(path, self.text(result, path))

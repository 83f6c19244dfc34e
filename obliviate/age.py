import contextlib
import logging
import os
import pathlib
import shutil
import subprocess
import tempfile
import typing

import attr

from .errors import ErrorKind, ObliviateError
from .utils import secure_delete

log = logging.getLogger(__name__)

PUBLIC_KEY_PREFIX = '# public key: '
PRIVATE_KEY_PREFIX = 'AGE-SECRET-KEY-'


@attr.s(frozen=True, kw_only=True)
class KeyPair:
    private_key: bytes = attr.ib(repr=False)
    public_key: str = attr.ib()
    encrypted: bool = attr.ib(default=False)

    def __str__(self):
        return self.public_key

    @classmethod
    def parse(cls, output: str) -> 'KeyPair':
        """Read a key pair from the output of age-keygen."""
        public_key: typing.Optional[str] = None
        private_key: typing.Optional[str] = None

        for line in output.splitlines():
            if line.startswith(PUBLIC_KEY_PREFIX):
                public_key = line[len(PUBLIC_KEY_PREFIX):].strip()
            elif line.startswith(PRIVATE_KEY_PREFIX):
                private_key = line.strip()

        if not public_key or not private_key:
            raise ObliviateError(
                ErrorKind.KEY_MANAGEMENT, "Failed to parse age key output")

        return cls(private_key=private_key.encode('utf-8'), public_key=public_key)


@attr.s(frozen=True)
class Age:
    """
    Runs the age and age-keygen commands.

    Secrets are never passed as arguments: passphrases are written to
    stdin and key material is passed in private temporary files.
    """

    age: str = attr.ib(default='age')
    keygen: str = attr.ib(default='age-keygen')
    temp_dir: typing.Optional[pathlib.Path] = attr.ib(default=None)
    shred: typing.Optional[str] = attr.ib(factory=lambda: shutil.which('shred'))

    def run(self,
            command: typing.Sequence[str],
            stdin: typing.Optional[bytes] = None) -> subprocess.CompletedProcess:
        log.debug(f"Running {command[0]} {' '.join(command[1:])}")
        try:
            return subprocess.run(
                command,
                input=stdin,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                check=True)
        except subprocess.CalledProcessError as error:
            for line in error.stderr.decode('utf-8', 'replace').splitlines():
                log.error(line)
            raise

    @contextlib.contextmanager
    def private_file(self, data: bytes) -> typing.Iterator[pathlib.Path]:
        """Hold data in a temporary file only the owner can read, then erase it."""
        fd, name = tempfile.mkstemp(prefix='obliviate-', dir=self.temp_dir)
        path = pathlib.Path(name)
        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
            yield path
        finally:
            if path.exists():
                secure_delete(path, shred=self.shred)

    def generate(self) -> KeyPair:
        result = self.run((self.keygen,))
        return KeyPair.parse(result.stdout.decode('utf-8'))

    def encrypt(self, private_key: bytes, passphrase: str) -> bytes:
        """Wrap a private key with a passphrase, confirming it on stdin."""
        with self.private_file(private_key) as path:
            result = self.run(
                (self.age, '--encrypt', '--passphrase', '--output', '-', path.as_posix()),
                stdin=f'{passphrase}\n{passphrase}\n'.encode('utf-8'))
        return result.stdout

    def decrypt(self, ciphertext: bytes, passphrase: str) -> bytes:
        with self.private_file(ciphertext) as path:
            result = self.run(
                (self.age, '--decrypt', path.as_posix()),
                stdin=f'{passphrase}\n'.encode('utf-8'))
        return result.stdout

    def recipient(self, private_key: bytes) -> str:
        """Derive the public key of a private key."""
        result = self.run((self.keygen, '-y'), stdin=private_key)
        return result.stdout.decode('utf-8').strip()

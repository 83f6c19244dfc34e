"""
The lifecycle of the age key used to decrypt secrets.

The private key is kept wrapped with a passphrase at the encrypted key
path. Unlocking it writes the plaintext key to the key path, where sops
expects to find it, and arms a timer that securely erases it again once the
auto-delete interval has passed.
"""

import datetime
import enum
import functools
import hmac
import itertools
import logging
import pathlib
import subprocess
import threading
import time
import typing

import attr

from .age import Age, KeyPair
from .classify import ErrorClassifier, PatternClassifier, Rule
from .errors import ErrorKind, ObliviateError
from .utils import secure_delete, write_private

log = logging.getLogger(__name__)

ExpiryCallback = typing.Callable[[typing.Optional[ObliviateError]], None]


class KeyManagerState(enum.Enum):
    IDLE = 'idle'
    AWAITING_PASSPHRASE = 'awaiting passphrase'
    GENERATING_KEY = 'generating key'
    DECRYPTING_KEY = 'decrypting key'
    DELETING_KEY = 'deleting key'


def passphrase_classifier() -> ErrorClassifier:
    return PatternClassifier(
        rules=(Rule(r'incorrect passphrase|failed to decrypt',
                    ErrorKind.SECURITY, "Incorrect passphrase provided"),),
        fallback="Failed to decrypt key",
        fallback_kind=ErrorKind.SECURITY)


@attr.s
class PassphraseEntry:
    """
    Collects a passphrase, optionally asking for it twice.

    When confirmation is required, a confirmation that does not match the
    first entry is discarded and flagged with an error; the first entry is
    kept and another confirmation is expected.
    """

    confirm: bool = attr.ib(default=False)
    error: typing.Optional[str] = attr.ib(default=None, init=False)
    _first: typing.Optional[str] = attr.ib(default=None, init=False, repr=False)

    @property
    def confirming(self) -> bool:
        return self.confirm and self._first is not None

    def enter(self, value: str) -> typing.Optional[str]:
        """Returns the passphrase once it is complete, otherwise None."""
        if not value:
            self.error = "Passphrase must not be empty"
            return None

        if not self.confirm:
            self.error = None
            return value

        if self._first is None:
            self._first = value
            self.error = None
            return None

        if not hmac.compare_digest(value.encode('utf-8'), self._first.encode('utf-8')):
            self.error = "Passphrases do not match"
            return None

        self.error = None
        return self._first


@attr.s
class KeyState:
    has_decrypted_key: bool = attr.ib(default=False)
    decrypted_at: float = attr.ib(default=0.0)
    expires_at: float = attr.ib(default=0.0)
    public_key: typing.Optional[str] = attr.ib(default=None)


@attr.s
class KeyLifecycleManager:
    key_path: pathlib.Path = attr.ib()
    encrypted_key_path: pathlib.Path = attr.ib()
    auto_delete_interval: datetime.timedelta = attr.ib(
        default=datetime.timedelta(minutes=30))
    age: Age = attr.ib(factory=Age)
    classifier: ErrorClassifier = attr.ib(factory=passphrase_classifier)
    on_expire: typing.Optional[ExpiryCallback] = attr.ib(default=None)
    clock: typing.Callable[[], float] = attr.ib(default=time.time, repr=False)

    state: KeyManagerState = attr.ib(default=KeyManagerState.IDLE, init=False)
    key_state: KeyState = attr.ib(factory=KeyState, init=False)
    entry: typing.Optional[PassphraseEntry] = attr.ib(default=None, init=False)

    _next: typing.Optional[KeyManagerState] = attr.ib(default=None, init=False, repr=False)
    _timer: typing.Optional[threading.Timer] = attr.ib(default=None, init=False, repr=False)
    _generation: int = attr.ib(default=0, init=False, repr=False)
    _generations: typing.Iterator[int] = attr.ib(
        factory=lambda: itertools.count(1), init=False, repr=False)
    _lock: threading.RLock = attr.ib(factory=threading.RLock, init=False, repr=False)

    # Key tool operations

    def generate_key(self) -> KeyPair:
        log.info("Generating a new age key")
        try:
            return self.age.generate()
        except (OSError, subprocess.CalledProcessError) as error:
            raise ObliviateError.wrap(
                error, ErrorKind.KEY_MANAGEMENT, "Failed to generate key")

    def encrypt_key(self, pair: KeyPair, passphrase: str) -> bytes:
        log.info(f"Encrypting key {pair.public_key} with a passphrase")
        try:
            ciphertext = self.age.encrypt(pair.private_key, passphrase)
        except subprocess.CalledProcessError as error:
            raise ObliviateError.wrap(
                error, ErrorKind.KEY_MANAGEMENT, "Failed to encrypt key",
                details=error.stderr.decode('utf-8', 'replace').strip())
        except OSError as error:
            raise ObliviateError.wrap(
                error, ErrorKind.KEY_MANAGEMENT, "Failed to encrypt key")

        if not ciphertext:
            raise ObliviateError(
                ErrorKind.KEY_MANAGEMENT, "Encrypting the key produced no output")
        return ciphertext

    def decrypt_key(self, ciphertext: bytes, passphrase: str) -> bytes:
        log.info("Decrypting key with a passphrase")
        try:
            return self.age.decrypt(ciphertext, passphrase)
        except subprocess.CalledProcessError as error:
            raise self.classifier.classify(
                error.stderr.decode('utf-8', 'replace'), cause=error)
        except OSError as error:
            raise ObliviateError.wrap(
                error, ErrorKind.FILE_OPERATION, "Failed to run the key tool")

    def securely_delete(self, path: pathlib.Path) -> None:
        secure_delete(path, shred=self.age.shred)

    # State machine

    def transition(
            self,
            target: KeyManagerState,
            allowed: typing.Iterable[KeyManagerState] = (KeyManagerState.IDLE,)) -> None:
        with self._lock:
            if self.state not in allowed:
                raise ObliviateError(
                    ErrorKind.KEY_MANAGEMENT,
                    f"Cannot start {target.value} while {self.state.value}")
            log.debug(f"Key manager {self.state.value} -> {target.value}")
            self.state = target

    def begin_generate(self) -> PassphraseEntry:
        """Ask for a new passphrase, twice, before generating a key."""
        self.transition(KeyManagerState.AWAITING_PASSPHRASE)
        self._next = KeyManagerState.GENERATING_KEY
        self.entry = PassphraseEntry(confirm=True)
        return self.entry

    def begin_decrypt(self) -> PassphraseEntry:
        """Ask for the passphrase of the encrypted key."""
        if not self.encrypted_key_path.exists():
            raise ObliviateError(
                ErrorKind.FILE_OPERATION, "No encrypted key found",
            ).with_context(path=self.encrypted_key_path)

        self.transition(KeyManagerState.AWAITING_PASSPHRASE)
        self._next = KeyManagerState.DECRYPTING_KEY
        self.entry = PassphraseEntry(confirm=False)
        return self.entry

    def submit_passphrase(self, value: str) -> typing.Optional[typing.Callable[[], typing.Any]]:
        """
        Pass a passphrase to the current prompt.

        Returns None while the prompt needs more input. Once the passphrase
        is complete the manager moves to generating or decrypting, and the
        task that does the work is returned for the caller to run.
        """
        with self._lock:
            if self.state != KeyManagerState.AWAITING_PASSPHRASE or self.entry is None:
                raise ObliviateError(
                    ErrorKind.KEY_MANAGEMENT, "No passphrase has been requested")

            passphrase = self.entry.enter(value)
            if passphrase is None:
                return None

            target, self._next, self.entry = self._next, None, None
            self.transition(target, allowed=(KeyManagerState.AWAITING_PASSPHRASE,))

        if target == KeyManagerState.GENERATING_KEY:
            return functools.partial(self.create_key, passphrase)
        return functools.partial(self.unlock, passphrase)

    def cancel(self) -> None:
        with self._lock:
            if self.state == KeyManagerState.AWAITING_PASSPHRASE:
                self.entry, self._next = None, None
                self.state = KeyManagerState.IDLE

    def working(self, target: KeyManagerState) -> None:
        # Either continuing from a passphrase prompt or called directly.
        with self._lock:
            if self.state != target:
                self.transition(target)

    def idle(self) -> None:
        with self._lock:
            self.state = KeyManagerState.IDLE

    # Lifecycle

    def create_key(self, passphrase: str, overwrite: bool = False) -> KeyPair:
        """
        Generate a key and store it both wrapped and in plaintext.

        An existing encrypted key is only replaced when overwrite is set,
        as secrets encrypted for it could no longer be decrypted.
        """
        self.working(KeyManagerState.GENERATING_KEY)
        try:
            if self.encrypted_key_path.exists() and not overwrite:
                raise ObliviateError(
                    ErrorKind.KEY_MANAGEMENT, "An encrypted key already exists",
                ).with_context(path=self.encrypted_key_path)

            pair = self.generate_key()
            ciphertext = self.encrypt_key(pair, passphrase)

            self.save(self.encrypted_key_path, ciphertext, "Failed to save encrypted key")
            with self._lock:
                self.save(self.key_path, pair.private_key, "Failed to save decrypted key")
                self.decrypted(pair.public_key)

            log.info(f"Created key {pair.public_key}")
            return pair
        finally:
            self.idle()

    def unlock(self, passphrase: str) -> KeyState:
        """Decrypt the encrypted key to the key path and arm its expiry."""
        self.working(KeyManagerState.DECRYPTING_KEY)
        try:
            try:
                ciphertext = self.encrypted_key_path.read_bytes()
            except OSError as error:
                raise ObliviateError.wrap(
                    error, ErrorKind.FILE_OPERATION,
                    "Failed to load encrypted key", path=self.encrypted_key_path)

            private_key = self.decrypt_key(ciphertext, passphrase)

            with self._lock:
                self.save(self.key_path, private_key, "Failed to save decrypted key")
                self.decrypted(self.public_key(private_key))

            log.info(f"Decrypted key to {self.key_path}")
            return attr.evolve(self.key_state)
        finally:
            self.idle()

    def delete_decrypted_key(self) -> None:
        """Securely erase the decrypted key and cancel its expiry."""
        self.transition(KeyManagerState.DELETING_KEY)
        try:
            self.erase()
        finally:
            self.idle()

    def save(self, path: pathlib.Path, data: bytes, message: str) -> None:
        try:
            write_private(path, data)
        except OSError as error:
            raise ObliviateError.wrap(
                error, ErrorKind.FILE_OPERATION, message, path=path)

    def public_key(self, private_key: bytes) -> typing.Optional[str]:
        try:
            return self.age.recipient(private_key)
        except (OSError, subprocess.CalledProcessError) as error:
            log.warning(f"Could not derive the public key: {error}")
            return None

    def decrypted(self, public_key: typing.Optional[str]) -> None:
        now = self.clock()
        interval = self.auto_delete_interval.total_seconds()
        self.key_state = KeyState(
            has_decrypted_key=True,
            decrypted_at=now,
            expires_at=now + interval,
            public_key=public_key)
        self.arm(interval)

    def erase(self) -> None:
        with self._lock:
            self.disarm()
            try:
                self.securely_delete(self.key_path)
            finally:
                if not self.key_path.exists():
                    self.key_state = KeyState()
        log.info(f"Securely deleted {self.key_path}")

    # Expiry

    def arm(self, seconds: float) -> None:
        """Schedule erasure of the decrypted key, replacing any pending timer."""
        with self._lock:
            self.disarm()
            self._generation = next(self._generations)
            self._timer = threading.Timer(seconds, self.expire, args=(self._generation,))
            self._timer.daemon = True
            self._timer.start()
        log.debug(f"Decrypted key will be deleted in {seconds:.1f}s")

    def disarm(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._generation = 0

    def expire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._timer = None
            log.info("Auto-delete interval has passed, deleting decrypted key")
            error: typing.Optional[ObliviateError] = None
            try:
                self.erase()
            except ObliviateError as e:
                log.error(f"Automatic deletion of the decrypted key failed: {e}")
                error = e

        if self.on_expire is not None:
            self.on_expire(error)

    def remaining(self) -> datetime.timedelta:
        if not self.key_state.has_decrypted_key:
            return datetime.timedelta(0)
        return datetime.timedelta(seconds=max(0.0, self.key_state.expires_at - self.clock()))

    def close(self) -> None:
        self.disarm()

    # Status

    def is_key_decrypted(self) -> bool:
        return self.key_state.has_decrypted_key

    def has_encrypted_key(self) -> bool:
        return self.encrypted_key_path.exists()

    def resync(self) -> bool:
        """
        Rebuild the key state from disk at startup.

        A decrypted key left behind by a previous run keeps the lifetime it
        started with, measured from when it was written. If that has already
        passed it is erased immediately.
        """
        with self._lock:
            if not self.key_path.is_file():
                self.key_state = KeyState()
                return False

            written = self.key_path.stat().st_mtime
            interval = self.auto_delete_interval.total_seconds()
            self.key_state = KeyState(
                has_decrypted_key=True,
                decrypted_at=written,
                expires_at=written + interval,
                public_key=self.public_key(self.key_path.read_bytes()))

            remaining = self.key_state.expires_at - self.clock()
            if remaining <= 0:
                log.warning(f"Decrypted key {self.key_path} has outlived its lifetime")
                self.erase()
                return False

            self.arm(remaining)
            return True

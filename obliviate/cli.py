import datetime
import functools
import logging
import os.path
import pathlib
import typing

import click

from . import __doc__, __version__
from .age import Age, KeyPair
from .config import Config, config_path, format_duration, load, parse_duration, save
from .dispatch import Event
from .errors import ErrorKind, ObliviateError, render
from .keys import KeyState, PassphraseEntry
from .operations import OperationResult
from .sops import SOPS, FileInfo
from .spells import Session, obliviate
from .utils import find_git_directory, is_git_ignored

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


def rel(path: pathlib.Path) -> str:
    """
    Convert a path to a relative Path.

    Returns a string as these should only be used for presentation.
    """
    return os.path.relpath(path.as_posix(), pathlib.Path.cwd().as_posix())


def default_directory() -> pathlib.Path:
    return find_git_directory() or pathlib.Path.cwd()


class PathType(click.Path):
    def convert(self, value, param, ctx):
        return pathlib.Path(super().convert(value, param, ctx))


class Shell:
    """
    The interactive loop.

    Slow work is submitted to the session's dispatcher and the loop waits
    for its result event, showing any events that arrive meanwhile (such as
    the decrypted key expiring).
    """

    def __init__(self, session: Session, directory: pathlib.Path):
        self.session = session
        self.directory = directory
        self.actions: typing.Dict[str, typing.Tuple[str, typing.Callable[[], None]]] = {
            'g': ("Generate a new key", self.generate_key),
            'd': ("Decrypt the key", self.decrypt_key),
            'x': ("Securely delete the decrypted key", self.delete_key),
            's': ("Show the status of a file", self.status),
            'v': ("View a secret", self.view),
            'e': ("Encrypt a file", self.encrypt),
            'u': ("Decrypt a file", self.decrypt),
            'E': ("Edit a secret", self.edit),
            'a': ("Add a recipient to a secret", self.add_recipient),
            'r': ("Rotate the data key of a secret", self.rotate),
            'b': ("Restore a file from its latest backup", self.restore),
            'c': ("Change settings", self.settings),
        }

    @property
    def keys(self):
        return self.session.keys

    @property
    def secrets(self):
        return self.session.secrets

    def run(self) -> None:
        while True:
            self.drain()
            self.show_key_status()
            for key, (label, _) in self.actions.items():
                click.echo(f"  {click.style(key, bold=True)}  {label}")
            click.echo(f"  {click.style('q', bold=True)}  Quit")

            choice = click.prompt(
                "Action",
                type=click.Choice([*self.actions, 'q']),
                show_choices=False)

            if choice == 'q':
                self.quit()
                return

            try:
                self.actions[choice][1]()
            except ObliviateError as error:
                self.show_error(error)
            except click.Abort:
                self.keys.cancel()
                click.echo()
            except Exception as error:
                log.debug(f"Unexpected error from action {choice}", exc_info=True)
                self.keys.cancel()
                self.show_error(error)

    def show_error(self, error: BaseException) -> None:
        click.secho(f"Error: {render(error)}", fg='red', err=True)
        click.pause()

    # Events

    def dispatch(self, name: str, task: typing.Callable[[], typing.Any]) -> typing.Any:
        """Run a task on the dispatcher and wait for its result."""
        future = self.session.dispatcher.submit(name, task)
        while self.session.dispatcher.busy:
            event = self.session.dispatcher.poll(timeout=POLL_INTERVAL)
            if event is not None and not event.task:
                self.handle(event)
        error = future.exception()
        if error is not None:
            raise error
        return future.result()

    def drain(self) -> None:
        while True:
            event = self.session.dispatcher.poll()
            if event is None:
                return
            if not event.task:
                self.handle(event)

    def handle(self, event: Event) -> None:
        if event.name == 'expired':
            if event.error is not None:
                self.show_error(event.error)
            else:
                click.secho("The decrypted key expired and was securely deleted", fg='yellow')

    # Keys

    def show_key_status(self) -> None:
        click.echo()
        if self.keys.is_key_decrypted():
            state = self.keys.key_state
            click.echo(f"Key Status: {click.style('Decrypted', fg='green')}")
            click.echo(f"Decrypted Key Path: {self.keys.key_path}")
            click.echo(f"Auto-Delete In: {format_duration(whole_seconds(self.keys.remaining()))}")
            if state.public_key:
                click.echo(f"Public Key: {state.public_key}")
        else:
            click.echo(f"Key Status: {click.style('Not Decrypted', fg='red')}")
            if self.keys.has_encrypted_key():
                click.echo(f"Encrypted Key Path: {self.keys.encrypted_key_path}")
            else:
                click.echo("No encrypted key found.")
        click.echo()

    def passphrase(self, entry: PassphraseEntry, title: str) -> typing.Callable[[], typing.Any]:
        while True:
            label = "Confirm passphrase" if entry.confirming else title
            task = self.keys.submit_passphrase(click.prompt(label, hide_input=True))
            if task is not None:
                return task
            if entry.error:
                click.secho(entry.error, fg='red')

    def generate_key(self) -> None:
        overwrite = False
        if self.keys.has_encrypted_key():
            click.secho(
                f"An encrypted key already exists at {self.keys.encrypted_key_path}. "
                f"Secrets encrypted for it cannot be decrypted once it is replaced.",
                fg='yellow')
            overwrite = click.confirm("Replace it?", default=False)
            if not overwrite:
                return

        entry = self.keys.begin_generate()
        task = self.passphrase(entry, "Enter passphrase for new key")
        pair: KeyPair = self.dispatch(
            'generate', functools.partial(task, overwrite=overwrite))
        click.secho(f"Generated key {pair.public_key}", fg='green')

    def decrypt_key(self) -> None:
        entry = self.keys.begin_decrypt()
        task = self.passphrase(entry, "Enter passphrase to decrypt key")
        state: KeyState = self.dispatch('decrypt-key', task)
        click.secho(f"Decrypted key to {self.keys.key_path}", fg='green')
        if state.public_key:
            click.echo(f"Public Key: {state.public_key}")

    def delete_key(self) -> None:
        if not self.keys.is_key_decrypted():
            click.echo("There is no decrypted key to delete.")
            return
        self.dispatch('delete-key', self.keys.delete_decrypted_key)
        click.secho(f"Securely deleted {self.keys.key_path}", fg='green')

    # Secrets

    def path(self, prompt: str = "File", exists: bool = True) -> pathlib.Path:
        path = pathlib.Path(click.prompt(prompt)).expanduser()
        if not path.is_absolute():
            path = self.directory / path
        if exists and not path.is_file():
            raise ObliviateError(
                ErrorKind.FILE_OPERATION, "File does not exist",
            ).with_context(path=path)
        return path

    def report(self, result: OperationResult) -> None:
        click.secho(result.summary, fg='green' if result.changed else 'yellow')

    def status(self) -> None:
        path = self.path()
        info: FileInfo = self.dispatch('status', functools.partial(self.secrets.status, path))
        click.echo(f"{rel(info.path)}: {'encrypted' if info.encrypted else 'not encrypted'}")
        for recipient in info.recipients:
            click.echo(f"  recipient: {recipient}")
        for backup in self.secrets.backups(path):
            click.echo(f"  backup: {backup.name}")

    def view(self) -> None:
        path = self.path()
        contents = self.dispatch('view', functools.partial(self.secrets.contents, path))
        click.echo_via_pager(contents)

    def encrypt(self) -> None:
        path = self.path()
        recipients = click.prompt(
            "Recipients (comma separated)",
            default=self.session.config.default_recipients,
            show_default=bool(self.session.config.default_recipients))
        self.report(self.dispatch('encrypt', functools.partial(
            self.secrets.encrypt, path, [r.strip() for r in recipients.split(',') if r.strip()])))

    def decrypt(self) -> None:
        path = self.path()
        if click.confirm("Decrypt in place?", default=False):
            self.report(self.dispatch(
                'decrypt', functools.partial(self.secrets.decrypt_in_place, path)))
            return

        output = self.path("Output file", exists=False)
        self.report(self.dispatch(
            'decrypt', functools.partial(self.secrets.decrypt, path, output)))
        if is_git_ignored(output) is False:
            click.secho(
                f"Decrypted plaintext {rel(output)} is not excluded by .gitignore",
                fg='yellow')

    def edit(self) -> None:
        # sops runs an editor in this terminal, so this can't be dispatched.
        path = self.path()
        self.report(self.secrets.edit(path))

    def add_recipient(self) -> None:
        path = self.path()
        recipient = click.prompt("Recipient")
        self.report(self.dispatch(
            'add-recipient', functools.partial(self.secrets.add_recipient, path, recipient)))

    def rotate(self) -> None:
        path = self.path()
        self.report(self.dispatch('rotate', functools.partial(self.secrets.rotate, path)))

    def restore(self) -> None:
        path = self.path(exists=False)
        backups = self.secrets.backups(path)
        if not backups:
            click.echo(f"There are no backups of {path.name}.")
            return
        if click.confirm(f"Replace {rel(path)} with {backups[-1].name}?", default=False):
            self.report(self.secrets.restore(path))

    def settings(self) -> None:
        config = self.session.config
        for key, value in config.to_dict().items():
            click.echo(f"  {key}: {value}")

        if not click.confirm("Change settings?", default=False):
            return

        interval = click.prompt(
            "Auto-delete interval",
            default=format_duration(config.auto_delete_interval),
            value_proc=parse_interval)
        config.auto_delete_interval = interval
        config.default_recipients = click.prompt(
            "Default recipients", default=config.default_recipients, show_default=False)
        config.editor_command = click.prompt("Editor command", default=config.editor_command)

        save(config, self.session.config_file or config_path())
        self.keys.auto_delete_interval = config.auto_delete_interval
        click.secho(
            "Saved settings. Recipient and editor changes apply after a restart.",
            fg='green')

    def quit(self) -> None:
        if self.keys.is_key_decrypted() and click.confirm(
                "Securely delete the decrypted key before exiting?", default=True):
            try:
                self.keys.delete_decrypted_key()
            except ObliviateError as error:
                click.secho(f"Error: {render(error)}", fg='red', err=True)


def whole_seconds(duration: datetime.timedelta) -> datetime.timedelta:
    return duration - duration % datetime.timedelta(seconds=1)


def parse_interval(value: str) -> datetime.timedelta:
    try:
        interval = parse_duration(value)
    except ValueError as error:
        raise click.BadParameter(str(error))
    if interval.total_seconds() <= 0:
        raise click.BadParameter("The interval must be positive")
    return interval


@click.command(help=__doc__)
@click.version_option(__version__, prog_name='obliviate')
@click.option(
    '-c', '--config', 'config_file',
    type=PathType(dir_okay=False),
    envvar='OBLIVIATE_CONFIG',
    default=config_path,
    help="Defaults to config.json in the user's application directory.")
@click.option(
    '-p', '--path',
    type=PathType(
        file_okay=False,
        dir_okay=True,
        exists=True),
    default=default_directory,
    help="Directory file names are relative to. "
         "Defaults to the current git repository.")
@click.option(
    '--sops', 'sops_command',
    envvar='OBLIVIATE_SOPS',
    default='sops',
    help="The sops executable.")
@click.option(
    '--age', 'age_command',
    envvar='OBLIVIATE_AGE',
    default='age',
    help="The age executable.")
@click.option(
    '--age-keygen', 'keygen_command',
    envvar='OBLIVIATE_AGE_KEYGEN',
    default='age-keygen',
    help="The age-keygen executable.")
@click.option(
    '-d', '--debug', 'debug',
    default=False,
    is_flag=True,
    help="Enable debug logging.")
def main(
        config_file: pathlib.Path,
        path: pathlib.Path,
        sops_command: str,
        age_command: str,
        keygen_command: str,
        debug: bool):
    logging.basicConfig(level=(logging.DEBUG if debug else logging.WARNING))

    config: Config = load(config_file)
    session = obliviate(
        config,
        config_file=config_file,
        age=Age(age=age_command, keygen=keygen_command),
        sops=SOPS(
            executable=sops_command,
            editor=config.editor,
            age_key_file=config.key_path))

    try:
        session.keys.resync()
        Shell(session, path).run()
    finally:
        session.close()

"""
Configuration is stored as JSON in the per-user application directory.

Only this module looks up the user's home and configuration directories.
Everything else is given the paths it needs.
"""

import datetime
import json
import logging
import pathlib
import re
import typing

import attr
import click

from .errors import ErrorKind, ObliviateError
from .utils import write_private

log = logging.getLogger(__name__)

APP_NAME = 'obliviate'
DEFAULT_INTERVAL = datetime.timedelta(minutes=30)
DEFAULT_EDITOR = 'default'

DURATION_UNITS = {
    'ns': 1e-9,
    'us': 1e-6,
    'µs': 1e-6,
    'ms': 1e-3,
    's': 1.0,
    'm': 60.0,
    'h': 3600.0,
}
DURATION_PART = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)')


def parse_duration(text: str) -> datetime.timedelta:
    """Parse a duration such as '30m', '1h30m0s' or '1.5s'."""
    text = text.strip()
    if not text:
        raise ValueError("Empty duration")

    seconds = 0.0
    position = 0
    while position < len(text):
        match = DURATION_PART.match(text, position)
        if not match:
            raise ValueError(f"Invalid duration {text!r}")
        seconds += float(match.group(1)) * DURATION_UNITS[match.group(2)]
        position = match.end()

    return datetime.timedelta(seconds=seconds)


def format_duration(duration: datetime.timedelta) -> str:
    total = duration.total_seconds()
    if 0 < total < 1:
        return f"{total * 1000:g}ms"

    hours, rest = divmod(int(total), 3600)
    minutes = rest // 60
    seconds = f"{total - hours * 3600 - minutes * 60:g}"

    if hours:
        return f"{hours}h{minutes}m{seconds}s"
    if minutes:
        return f"{minutes}m{seconds}s"
    return f"{seconds}s"


def app_directory() -> pathlib.Path:
    return pathlib.Path(click.get_app_dir(APP_NAME))


def config_path() -> pathlib.Path:
    return app_directory() / 'config.json'


def to_path(value: typing.Union[str, pathlib.Path]) -> pathlib.Path:
    return pathlib.Path(value).expanduser()


@attr.s(kw_only=True)
class Config:
    key_path: pathlib.Path = attr.ib(converter=to_path)
    encrypted_key_path: pathlib.Path = attr.ib(converter=to_path)
    backup_dir: pathlib.Path = attr.ib(converter=to_path)
    auto_delete_interval: datetime.timedelta = attr.ib(default=DEFAULT_INTERVAL)
    editor_command: str = attr.ib(default=DEFAULT_EDITOR)
    default_recipients: str = attr.ib(default='')

    @auto_delete_interval.validator
    def _check_interval(self, attribute, value):
        if value.total_seconds() <= 0:
            raise ValueError("auto_delete_interval must be positive")

    @classmethod
    def default(
            cls,
            home: typing.Optional[pathlib.Path] = None,
            directory: typing.Optional[pathlib.Path] = None) -> 'Config':
        home = home or pathlib.Path.home()
        directory = directory or app_directory()
        key_path = home / '.config' / 'sops' / 'age' / 'keys.txt'
        return cls(
            key_path=key_path,
            encrypted_key_path=key_path.with_name(f'{key_path.name}.encrypted'),
            backup_dir=directory / 'backups')

    @property
    def recipients(self) -> typing.Sequence[str]:
        return tuple(r for r in re.split(r'[\s,]+', self.default_recipients) if r)

    @property
    def editor(self) -> typing.Optional[str]:
        """The editor to run, or None to let sops use $EDITOR."""
        if not self.editor_command or self.editor_command == DEFAULT_EDITOR:
            return None
        return self.editor_command

    def to_dict(self) -> typing.Dict[str, str]:
        return {
            'key_path': self.key_path.as_posix(),
            'encrypted_key_path': self.encrypted_key_path.as_posix(),
            'auto_delete_interval': format_duration(self.auto_delete_interval),
            'editor_command': self.editor_command,
            'default_recipients': self.default_recipients,
            'backup_dir': self.backup_dir.as_posix(),
        }

    @classmethod
    def from_dict(cls, data: typing.Mapping[str, typing.Any], defaults: 'Config') -> 'Config':
        values = attr.asdict(defaults, recurse=False)
        values.update({k: v for k, v in data.items() if k in values and v not in (None, '')})

        interval = values['auto_delete_interval']
        if isinstance(interval, str):
            values['auto_delete_interval'] = parse_duration(interval)

        return cls(**values)


def load(
        path: pathlib.Path,
        defaults: typing.Optional[Config] = None) -> Config:
    """Load the configuration, or the defaults if there is no file."""
    defaults = defaults or Config.default()

    if not path.exists():
        log.info(f"No configuration at {path}, using defaults")
        return defaults

    try:
        data = json.loads(path.read_text())
    except OSError as error:
        raise ObliviateError.wrap(
            error, ErrorKind.CONFIG, "Failed to read config file", path=path)
    except ValueError as error:
        raise ObliviateError.wrap(
            error, ErrorKind.CONFIG, "Failed to parse config file", path=path)

    if not isinstance(data, dict):
        raise ObliviateError(
            ErrorKind.CONFIG, "Config file must contain a JSON object",
        ).with_context(path=path)

    try:
        return Config.from_dict(data, defaults)
    except (AttributeError, TypeError, ValueError) as error:
        raise ObliviateError.wrap(
            error, ErrorKind.CONFIG, "Invalid configuration", path=path)


def save(config: Config, path: pathlib.Path) -> None:
    try:
        write_private(path, json.dumps(config.to_dict(), indent=2).encode('utf-8'))
    except OSError as error:
        raise ObliviateError.wrap(
            error, ErrorKind.CONFIG, "Failed to write config file", path=path)
    log.info(f"Saved configuration to {path}")

import enum
import typing

import click


class ErrorKind(enum.Enum):
    GENERAL = 'general'
    SECURITY = 'security'
    FILE_OPERATION = 'file operation'
    KEY_MANAGEMENT = 'key management'
    CONFIG = 'configuration'


GUIDANCE: typing.Dict[ErrorKind, str] = {
    ErrorKind.SECURITY:
        "This is a security-related error. "
        "Please verify your passphrase and file permissions.",
    ErrorKind.FILE_OPERATION:
        "This error occurred during a file operation. "
        "Please check file paths and permissions.",
    ErrorKind.KEY_MANAGEMENT:
        "This error occurred during key management. "
        "Your keys may be corrupted or inaccessible.",
    ErrorKind.CONFIG:
        "This error is caused by missing or invalid configuration.",
}


class ObliviateError(click.ClickException):
    """
    An error with a kind, a human message, an optional cause and context.

    Subclassing ClickException means any error that escapes to the top
    level is printed by click and exits with a non-zero status.
    """

    def __init__(
            self,
            kind: ErrorKind,
            message: str,
            cause: typing.Optional[BaseException] = None,
            context: typing.Optional[typing.Mapping[str, str]] = None,
            mutated: bool = True):
        super().__init__(message)
        self.kind = kind
        self.cause = cause
        self.context: typing.Dict[str, str] = dict(context or {})
        self.mutated = mutated

    def __str__(self):
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message

    def __repr__(self):
        return f"ObliviateError({self.kind.name}, {self.message!r})"

    def with_context(self, **context: typing.Any) -> 'ObliviateError':
        self.context.update({k: str(v) for k, v in context.items()})
        return self

    def format_message(self) -> str:
        return render(self)

    @classmethod
    def wrap(
            cls,
            cause: BaseException,
            kind: ErrorKind,
            message: str,
            **context: typing.Any) -> 'ObliviateError':
        return cls(kind, message, cause=cause).with_context(**context)


def render(error: BaseException) -> str:
    """Format an error for display, with guidance for its kind."""
    lines = [str(error)]

    if isinstance(error, ObliviateError):
        if error.kind in GUIDANCE:
            lines += ['', GUIDANCE[error.kind]]
        if error.context:
            lines += ['', 'Additional information:']
            lines += [f"- {k}: {v}" for k, v in sorted(error.context.items())]

    return '\n'.join(lines)


def is_kind(error: BaseException, kind: ErrorKind) -> bool:
    return isinstance(error, ObliviateError) and error.kind == kind

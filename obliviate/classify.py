"""
Each ErrorClassifier converts the diagnostic output of a tool into an error.
"""

import logging
import re
import typing

import attr

from .errors import ErrorKind, ObliviateError

log = logging.getLogger(__name__)


@attr.s(frozen=True)
class Rule:
    pattern: typing.Pattern[str] = attr.ib(converter=lambda p: re.compile(p, re.IGNORECASE))
    kind: ErrorKind = attr.ib()
    message: str = attr.ib()
    mutated: bool = attr.ib(default=True)

    def matches(self, diagnostic: str) -> bool:
        return self.pattern.search(diagnostic) is not None


DEFAULT_RULES: typing.Sequence[Rule] = (
    Rule(r'failed to decrypt|incorrect passphrase', ErrorKind.SECURITY,
         "Failed to decrypt file (incorrect key or corrupted file)"),
    Rule(r'no key.*found', ErrorKind.SECURITY,
         "No suitable decryption key found"),
    Rule(r'already encrypted', ErrorKind.FILE_OPERATION,
         "File is already encrypted", mutated=False),
    Rule(r'no regex match', ErrorKind.CONFIG,
         "SOPS regex pattern did not match any values"),
    Rule(r'could not find sops configuration', ErrorKind.CONFIG,
         "Missing SOPS configuration (.sops.yaml)"),
)


class ErrorClassifier:
    def classify(
            self,
            diagnostic: str,
            cause: typing.Optional[BaseException] = None) -> ObliviateError:
        raise NotImplementedError


@attr.s(frozen=True)
class PatternClassifier(ErrorClassifier):
    """
    Classify diagnostics with an ordered list of rules.

    The first rule whose pattern is found in the diagnostic wins. Anything
    unmatched is a general error that keeps the raw text as 'details'.
    """

    rules: typing.Sequence[Rule] = attr.ib(default=DEFAULT_RULES)
    fallback: str = attr.ib(default="SOPS operation failed")
    fallback_kind: ErrorKind = attr.ib(default=ErrorKind.GENERAL)

    def classify(
            self,
            diagnostic: str,
            cause: typing.Optional[BaseException] = None) -> ObliviateError:
        for rule in self.rules:
            if rule.matches(diagnostic):
                log.debug(f"Classified diagnostic as {rule.kind.name}: {rule.message}")
                return ObliviateError(
                    rule.kind, rule.message, cause=cause, mutated=rule.mutated)

        return ObliviateError(
            self.fallback_kind, self.fallback, cause=cause,
        ).with_context(details=diagnostic.strip())

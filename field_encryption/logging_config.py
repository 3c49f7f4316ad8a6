"""
Stdout logging for the delivery worker and the platform hooks.

Log records name coordinates, queue entry ids, field names, counts and error
classes. Field values, keys and ciphertext never reach a log record; when an
encrypted value has to be correlated across log lines, ``fingerprint`` gives a
short one-way digest of it instead.
"""

from __future__ import annotations

import hashlib
import logging
import sys

from .errors import FieldEncryptionError

FINGERPRINT_LENGTH = 8


def configure_logging(level: str = "INFO") -> None:
    """
    Configure root logging with a single stdout handler.

    Idempotent: existing root handlers are replaced to avoid duplicate
    emissions when called more than once.
    """
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level.upper())

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level.upper())
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )
    )
    root.addHandler(handler)


def fingerprint(value: str) -> str:
    """Truncated SHA-256 of ``value`` for correlating log lines."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


def describe_error(exc: BaseException) -> str:
    """
    Error class and message for logs and queue failure reasons.

    Only this package's own errors contribute their message; other exceptions
    (a third-party mailer, a driver) are reduced to their class name since
    their messages may quote addresses or field values.
    """
    message = str(exc) if isinstance(exc, FieldEncryptionError) else ""
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__

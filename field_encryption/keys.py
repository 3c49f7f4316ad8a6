"""
Encryption key providers.

The key is read lazily on every operation rather than cached, so a key that
is unset or malformed fails the operation that needed it and nothing else.
"""

from __future__ import annotations

import os
from typing import Callable

from .crypto import SecureKey

DEFAULT_KEY_ENV_VAR = "FIELD_ENCRYPTION_KEY"

KeyProvider = Callable[[], SecureKey]


class EnvironmentKeyProvider:
    """Read a hex-encoded key from an environment variable on each call."""

    def __init__(self, env_var: str = DEFAULT_KEY_ENV_VAR) -> None:
        self._env_var = env_var

    def __call__(self) -> SecureKey:
        return SecureKey.from_hex(os.environ.get(self._env_var))

    def __repr__(self) -> str:
        return f"EnvironmentKeyProvider({self._env_var!r})"


class StaticKeyProvider:
    """Serve a key held in memory (tests and embedded use)."""

    def __init__(self, key: SecureKey) -> None:
        self._key = key

    def __call__(self) -> SecureKey:
        return self._key

    def __repr__(self) -> str:
        return "StaticKeyProvider([REDACTED])"

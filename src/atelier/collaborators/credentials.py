"""Credential resolution for generation API keys.

A job never carries a secret, only a ``credential_ref``. Resolvers turn the
reference into the key sent upstream and raise ``CredentialError`` (which
aborts the batch) when they cannot.
"""

from __future__ import annotations

import os
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping

from atelier.core.errors import CredentialError

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class CredentialResolver(ABC):
    @abstractmethod
    async def resolve(self, credential_ref: str) -> str:
        """Return the secret for ``credential_ref``.

        Raises:
            CredentialError: Unknown reference or empty secret.
        """
        ...


class EnvCredentialResolver(CredentialResolver):
    """The reference names an environment variable, optionally with ``env:``."""

    def __init__(self, prefix: str = "", environ: Mapping[str, str] | None = None) -> None:
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    async def resolve(self, credential_ref: str) -> str:
        name = credential_ref.removeprefix("env:")
        if not _ENV_NAME.match(name):
            raise CredentialError(f"Invalid credential reference: {credential_ref!r}")
        value = self._environ.get(self.prefix + name, "").strip()
        if not value:
            raise CredentialError(f"Credential {credential_ref!r} is not set")
        return value


class StaticCredentialResolver(CredentialResolver):
    """Resolves from a fixed mapping."""

    def __init__(self, secrets: Mapping[str, str]) -> None:
        self._secrets = dict(secrets)

    async def resolve(self, credential_ref: str) -> str:
        value = self._secrets.get(credential_ref)
        if not value:
            raise CredentialError(f"Unknown credential reference: {credential_ref!r}")
        return value

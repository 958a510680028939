"""
Secret Store Adapter.

Resolves named credentials (registry logins, scanner and analysis tokens)
from the execution environment at the moment an action needs them.
Values are never logged or persisted; only names appear in logs.
"""

import os
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Mapping, Optional

import structlog

logger = structlog.get_logger(__name__)

MASK = "***"


class SecretNotFound(KeyError):
    """Raised when a secret name has no value in the store."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(name)

    def __str__(self) -> str:
        return f"Secret '{self.name}' not found"


class SecretStore(ABC):
    """Interface passed to the stage runner for just-in-time secret resolution."""

    @abstractmethod
    def resolve(self, name: str) -> str:
        """
        Return the value of a secret.

        Raises:
            SecretNotFound: If the store has no value for name
        """

    def scrub_environment(self, environ: Mapping[str, str], names: Iterable[str]) -> Dict[str, str]:
        """
        Remove secret-bearing variables from an environment.

        Child processes inherit the result, so no action sees a secret it
        did not declare.
        """
        blocked = set(names)
        return {k: v for k, v in environ.items() if k not in blocked}


class EnvironmentSecretStore(SecretStore):
    """
    Secrets supplied through environment variables.

    With a prefix such as "CI_SECRET_", secret REGISTRY_TOKEN is read from
    CI_SECRET_REGISTRY_TOKEN and every prefixed variable is scrubbed from
    child environments.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None, prefix: str = ""):
        self._environ = environ if environ is not None else os.environ
        self.prefix = prefix

    def env_key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    def resolve(self, name: str) -> str:
        key = self.env_key(name)
        value = self._environ.get(key)
        if value is None:
            logger.warning("secret_not_found", secret=name)
            raise SecretNotFound(name)
        logger.debug("secret_resolved", secret=name)
        return value

    def scrub_environment(self, environ: Mapping[str, str], names: Iterable[str]) -> Dict[str, str]:
        blocked = {self.env_key(n) for n in names} | set(names)
        return {
            k: v for k, v in environ.items()
            if k not in blocked and not (self.prefix and k.startswith(self.prefix))
        }


class MappingSecretStore(SecretStore):
    """In-memory store, for embedding the engine and for tests."""

    def __init__(self, values: Mapping[str, str]):
        self._values = dict(values)

    def resolve(self, name: str) -> str:
        try:
            return self._values[name]
        except KeyError:
            raise SecretNotFound(name) from None


def mask_secrets(text: str, values: Iterable[str]) -> str:
    """Replace every occurrence of a secret value with ***."""
    # Longest first so a secret containing another is masked whole
    for value in sorted({v for v in values if v}, key=len, reverse=True):
        text = text.replace(value, MASK)
    return text

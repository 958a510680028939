"""Secret application layer - store adapters."""

from .secret_store import (
    EnvironmentSecretStore,
    MappingSecretStore,
    SecretNotFound,
    SecretStore,
    mask_secrets,
)

__all__ = [
    "EnvironmentSecretStore",
    "MappingSecretStore",
    "SecretNotFound",
    "SecretStore",
    "mask_secrets",
]

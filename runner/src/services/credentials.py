"""
Credential stores and the scoped stage environment.

Secrets live only inside ``environment_scope``. On every exit path the
transient secret bindings, the merged environment and the redactor are
cleared, so nothing outside the scope keeps a reference to a secret value.
"""

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Protocol

import yaml

from runner.src.config import Settings
from runner.src.errors import CredentialNotFound
from runner.src.models.pipeline import CredentialBinding

logger = logging.getLogger(__name__)

REDACTED = "****"

class CredentialStore(Protocol):
    def lookup(self, credential_id: str) -> str:
        """Return the secret for ``credential_id`` or raise CredentialNotFound."""
        ...

class InMemoryCredentialStore:
    def __init__(self, secrets: Optional[Mapping[str, str]] = None):
        self._secrets = dict(secrets or {})

    def lookup(self, credential_id: str) -> str:
        try:
            return self._secrets[credential_id]
        except KeyError:
            raise CredentialNotFound(credential_id) from None

class EnvironmentCredentialStore:
    """
    Secrets from the runner's own environment.

    ``registry-token`` is read from ``STAGELINE_CREDENTIAL_REGISTRY_TOKEN``.
    """

    def __init__(self, environ: Mapping[str, str], prefix: str = "STAGELINE_CREDENTIAL_"):
        self._environ = environ
        self.prefix = prefix

    def variable_for(self, credential_id: str) -> str:
        return self.prefix + re.sub(r"[^A-Za-z0-9]", "_", credential_id).upper()

    def lookup(self, credential_id: str) -> str:
        value = self._environ.get(self.variable_for(credential_id))
        if value is None:
            raise CredentialNotFound(credential_id)
        return value

class FileCredentialStore(InMemoryCredentialStore):
    """Secrets from a YAML mapping of credential ID to value."""

    def __init__(self, path: Path):
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Credentials file {path} must contain a mapping")
        super().__init__({str(key): str(value) for key, value in data.items()})
        logger.info(f"Loaded {len(data)} credentials from {path}")

class ChainCredentialStore:
    """Tries each store in order."""

    def __init__(self, stores: Iterable[CredentialStore]):
        self.stores = list(stores)

    def lookup(self, credential_id: str) -> str:
        for store in self.stores:
            try:
                return store.lookup(credential_id)
            except CredentialNotFound:
                continue
        raise CredentialNotFound(credential_id)

def build_credential_store(settings: Settings, environ: Mapping[str, str]) -> CredentialStore:
    stores: List[CredentialStore] = []
    if settings.credentials_file:
        stores.append(FileCredentialStore(settings.credentials_file))
    stores.append(EnvironmentCredentialStore(environ, settings.credential_env_prefix))
    return ChainCredentialStore(stores)

class Redactor:
    """Masks verbatim occurrences of secret values."""

    def __init__(self, secrets: Iterable[str] = ()):
        # Longest first, so a secret containing another is masked whole
        self._secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    def redact(self, text: Optional[str]) -> Optional[str]:
        if not text:
            return text
        for secret in self._secrets:
            text = text.replace(secret, REDACTED)
        return text

    def clear(self) -> None:
        self._secrets.clear()

@dataclass(frozen=True)
class StageEnvironment:
    variables: Mapping[str, str]
    redactor: Redactor

    def redact(self, text: Optional[str]) -> Optional[str]:
        return self.redactor.redact(text)

@contextmanager
def environment_scope(
    base: Mapping[str, str],
    overrides: Mapping[str, str],
    bindings: Iterable[CredentialBinding] = (),
    store: Optional[CredentialStore] = None,
) -> Iterator[StageEnvironment]:
    """
    Merge ``base`` with ``overrides`` (overrides win), bind credentials on
    top, and yield the resulting read-only environment.

    Neither ``base`` nor ``overrides`` is modified. Raises CredentialNotFound
    before yielding if any binding cannot be resolved.
    """
    secrets: Dict[str, str] = {}
    merged: Dict[str, str] = {}
    redactor = Redactor()
    try:
        for binding in bindings:
            if store is None:
                raise CredentialNotFound(binding.id)
            secrets[binding.variable] = store.lookup(binding.id)

        merged.update(base)
        merged.update(overrides)
        merged.update(secrets)
        redactor = Redactor(secrets.values())
        yield StageEnvironment(MappingProxyType(merged), redactor)
    finally:
        secrets.clear()
        merged.clear()
        redactor.clear()

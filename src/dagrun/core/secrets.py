"""Secret Provider: resolves opaque credential references at dispatch time.

Steps never carry credential bytes. An executable spec names the secrets it
needs as :class:`SecretRef` values (``store`` + ``key``); the
:class:`SecretProvider` resolves them when a step is materialized, scoped to
that single step's arguments. Nothing is written into the process-wide
environment.

Manifesto:
    - **Opaque references:** definitions hold ``SecretRef``, never values
    - **Scoped resolution:** one step, one lookup, one ``ConcreteArgs``
    - **Pluggable stores:** ``env``, ``file`` and ``dict`` out of the box
    - **Redacted by default:** ``SecretValue`` prints as ``[REDACTED]``

Architecture:
    ::

        ExecutableSpec.secrets = {"PGPASSWORD": SecretRef("file", "db-password")}
                               │
                               │ ParameterResolver.materialize()
                               ▼
        ┌────────────────────────────────────────────────────────┐
        │                   SecretProvider                        │
        │   stores: {"env": EnvSecretBackend,                     │
        │            "file": FileSecretBackend(/run/secrets),     │
        │            "dict": DictSecretBackend}                   │
        └────────────────────────────────────────────────────────┘
                               │
                               ▼
        ConcreteArgs.secret_env = {"PGPASSWORD": SecretValue(...)}

Example:
    >>> provider = SecretProvider({"dict": DictSecretBackend({"token": "s3cr3t"})})
    >>> value = provider.resolve(SecretRef("dict", "token"))
    >>> str(value)
    '[REDACTED]'
    >>> value.get_secret()
    's3cr3t'

Tags:
    secrets, credentials, security, dagrun
"""

from __future__ import annotations

import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from dagrun.core.errors import SecretError


class MissingSecretError(SecretError):
    """Raised when a referenced secret is absent from its store."""

    def __init__(self, store: str, key: str):
        self.store = store
        self.key = key
        super().__init__(f"Secret not found: {store}:{key}")


class UnknownSecretStoreError(SecretError):
    """Raised when a reference names a store that is not registered."""

    def __init__(self, store: str, available: list[str] | None = None):
        self.store = store
        known = ", ".join(sorted(available or [])) or "(none)"
        super().__init__(f"Unknown secret store: {store!r}. Available: {known}")


@dataclass(frozen=True)
class SecretRef:
    """Opaque reference to a credential held by a secret store."""

    store: str
    key: str

    @classmethod
    def parse(cls, reference: str) -> SecretRef:
        """Parse ``"store:key"`` (the form used in YAML definitions)."""
        store, sep, key = reference.partition(":")
        if not sep or not store or not key:
            raise SecretError(f"Invalid secret reference (expected 'store:key'): {reference!r}")
        return cls(store=store, key=key)

    def __str__(self) -> str:
        return f"{self.store}:{self.key}"


class SecretValue:
    """Wrapper for secret values that prevents accidental logging.

    Example:
        >>> secret = SecretValue("my_password")
        >>> print(secret)
        [REDACTED]
        >>> secret.get_secret()
        'my_password'
    """

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = value

    def get_secret(self) -> str:
        """Get the actual secret value."""
        return self._value

    def __str__(self) -> str:
        return "[REDACTED]"

    def __repr__(self) -> str:
        return "SecretValue('[REDACTED]')"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SecretValue):
            return self._value == other._value
        return False

    def __hash__(self) -> int:
        return hash(self._value)


# ---------------------------------------------------------------------------
# Secret backends
# ---------------------------------------------------------------------------


class SecretBackend(ABC):
    """A single secret store."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the secret for *key*, or ``None`` when absent."""
        ...

    def contains(self, key: str) -> bool:
        """Check whether *key* resolves, without handing out the value."""
        return self.get(key) is not None


class EnvSecretBackend(SecretBackend):
    """Resolve secrets from environment variables.

    Tries ``{KEY}`` first, then ``DAGRUN_SECRET_{KEY}``. Dashes in keys map
    to underscores (``db-password`` reads ``DB_PASSWORD``).
    """

    def get(self, key: str) -> str | None:
        key_upper = key.upper().replace("-", "_")
        for pattern in (key_upper, f"DAGRUN_SECRET_{key_upper}"):
            value = os.environ.get(pattern)
            if value is not None:
                return value
        return None


class FileSecretBackend(SecretBackend):
    """Resolve secrets from files (Docker / Kubernetes mounted secrets).

    Caches file contents after first read.
    """

    def __init__(self, secrets_dir: str | Path = "/run/secrets"):
        self.secrets_dir = Path(secrets_dir)
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            if key in self._cache:
                return self._cache[key]

        secret_path = self.secrets_dir / key
        if not secret_path.is_file():
            return None

        try:
            content = secret_path.read_text().strip()
        except OSError:
            return None

        with self._lock:
            self._cache[key] = content
        return content

    def clear_cache(self) -> None:
        """Clear the file content cache."""
        with self._lock:
            self._cache.clear()


class DictSecretBackend(SecretBackend):
    """In-memory secret backend for tests and embedding."""

    def __init__(self, secrets: dict[str, str] | None = None):
        self._secrets = dict(secrets) if secrets else {}

    def get(self, key: str) -> str | None:
        return self._secrets.get(key)

    def set(self, key: str, value: str) -> None:
        """Set a secret value."""
        self._secrets[key] = value


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class SecretProvider:
    """Routes :class:`SecretRef` lookups to the named store."""

    def __init__(self, stores: dict[str, SecretBackend] | None = None):
        self._stores: dict[str, SecretBackend] = dict(stores) if stores is not None else {}

    @classmethod
    def default(cls, secrets_dir: str | Path = "/run/secrets") -> SecretProvider:
        """Provider with the ``env`` and ``file`` stores registered."""
        return cls({"env": EnvSecretBackend(), "file": FileSecretBackend(secrets_dir)})

    def register(self, name: str, backend: SecretBackend) -> None:
        """Register (or replace) a named store."""
        self._stores[name] = backend

    def stores(self) -> list[str]:
        return sorted(self._stores)

    def _backend(self, ref: SecretRef) -> SecretBackend:
        backend = self._stores.get(ref.store)
        if backend is None:
            raise UnknownSecretStoreError(ref.store, list(self._stores))
        return backend

    def resolve(self, ref: SecretRef) -> SecretValue:
        """Resolve *ref* into a redacting :class:`SecretValue`.

        Raises:
            UnknownSecretStoreError: If ``ref.store`` is not registered
            MissingSecretError: If the store has no such key
        """
        value = self._backend(ref).get(ref.key)
        if value is None:
            raise MissingSecretError(ref.store, ref.key)
        return SecretValue(value)

    def contains(self, ref: SecretRef) -> bool:
        """True if *ref* resolves. Unknown stores count as unresolvable."""
        backend = self._stores.get(ref.store)
        return backend is not None and backend.contains(ref.key)


__all__ = [
    "SecretRef",
    "SecretValue",
    "SecretBackend",
    "EnvSecretBackend",
    "FileSecretBackend",
    "DictSecretBackend",
    "SecretProvider",
    "MissingSecretError",
    "UnknownSecretStoreError",
]

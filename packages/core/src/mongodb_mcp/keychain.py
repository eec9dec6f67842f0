"""Per-session registry of secret values that must never reach the logs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Protocol, runtime_checkable

SecretKind = Literal["password", "user", "url", "secret"]


@dataclass(frozen=True, slots=True)
class Secret:
    value: str
    kind: SecretKind


@runtime_checkable
class SecretSource(Protocol):
    """Anything the logging filter can read secrets from."""

    @property
    def all_secrets(self) -> list[Secret]: ...


class Keychain:
    """Holds the secrets of a single session.

    Whenever a credential is identified or created (configured connection
    string, provisioned temporary user, OIDC tokens) it is registered here so
    the logging filter can redact it.
    """

    def __init__(self) -> None:
        self._secrets: list[Secret] = []

    def register(self, value: str, kind: SecretKind) -> None:
        if not value:
            return
        self._secrets.append(Secret(value=value, kind=kind))

    def clear_all_secrets(self) -> None:
        self._secrets = []

    @property
    def all_secrets(self) -> list[Secret]:
        return list(self._secrets)

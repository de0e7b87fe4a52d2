"""Small shared value types."""

from __future__ import annotations

from dataclasses import dataclass


class Secret:
    """Minimal secret wrapper to avoid accidental str() in logs.

    The raw value is only reachable through ``get()``.

    Examples
    --------
    >>> secret = Secret("s3cr3t")
    >>> print(secret)
    <SECRET>
    >>> secret.get()
    's3cr3t'
    """

    __slots__ = ("__value",)

    def __init__(self, value: str) -> None:
        self.__value = value

    def get(self) -> str:
        """Return the wrapped secret value."""
        return self.__value

    def __repr__(self) -> str:
        return "<SECRET>"

    def __str__(self) -> str:
        return "<SECRET>"


@dataclass(frozen=True, slots=True)
class SecretRef:
    """Opaque handle to a secret held by an external secret store.

    Only the key is known to the engine; the value is resolved by a
    SecretResolver at the moment a stage binds its environment.
    """

    key: str

    def __str__(self) -> str:
        return f"secret://{self.key}"

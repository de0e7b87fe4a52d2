"""Port interface for secret resolution."""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from stageflow.kernel.types import Secret


@runtime_checkable
class SecretResolver(Protocol):
    """Resolves secret handles to values at stage bind time.

    Storage mechanics are out of scope: implementations wrap an external
    store (environment, Vault, a cloud secret manager). Values are returned
    as ``Secret`` so they never leak through ``repr`` or log formatting.
    """

    @abstractmethod
    async def aresolve(self, key: str) -> Secret:
        """Resolve a secret key.

        Raises
        ------
        KeyError
            If the secret does not exist
        ValueError
            If the secret value is empty or invalid
        """
        ...

"""
Core interfaces for the Profile Session client.

The session subsystem talks to durable storage, the remote profile gateway
and the identity provider only through these abstractions, so tests and
host applications can substitute their own implementations.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional

from .models import (
    Credential, Measurement, ProfileSnapshot, RefreshedToken, SignInResult
)


class IKeyValueStorage(ABC):
    """Durable string key-value area shared by every session instance."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if absent."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove a key. Removing an absent key is a no-op."""
        pass

    @abstractmethod
    def items(self) -> Dict[str, str]:
        """Return a copy of the whole storage area."""
        pass


class IProfileGateway(ABC):
    """Remote profile API. A 401 on any call raises CredentialInvalidError."""

    @abstractmethod
    async def exchange(self, credential: Credential) -> ProfileSnapshot:
        """Exchange a credential for the user's profile snapshot."""
        pass

    @abstractmethod
    async def refresh(self, refresh_token: str) -> RefreshedToken:
        """Mint a new access token from a refresh token."""
        pass

    @abstractmethod
    async def update_slot(
        self,
        credential: Credential,
        slot_key: str,
        measurement: Measurement,
        default_slot: Optional[str] = None,
        base: Optional[ProfileSnapshot] = None
    ) -> ProfileSnapshot:
        """Upsert one slot, optionally moving the default pointer."""
        pass

    @abstractmethod
    async def delete_slot(
        self,
        credential: Credential,
        slot_key: str,
        base: Optional[ProfileSnapshot] = None
    ) -> ProfileSnapshot:
        """Remove one slot; the returned snapshot carries the new default."""
        pass

    async def set_default_slot(
        self,
        credential: Credential,
        slot_key: str,
        base: ProfileSnapshot
    ) -> ProfileSnapshot:
        """Point the default slot at an existing slot."""
        measurement = base.measurement_for_slot(slot_key)
        if measurement is None:
            raise KeyError(slot_key)
        return await self.update_slot(credential, slot_key, measurement, default_slot=slot_key, base=base)


class IIdentityProvider(ABC):
    """External identity provider consumed by the session subsystem."""

    @abstractmethod
    async def sign_in(self) -> Optional[SignInResult]:
        """Run the interactive sign-in. None means the user cancelled."""
        pass

    @abstractmethod
    async def silent_reauthenticate(self) -> Optional[SignInResult]:
        """Try to obtain a fresh credential without user interaction.

        Returns None, or raises PromptNotDisplayedError, when that is not
        possible.
        """
        pass

    @abstractmethod
    async def revoke(self, credential: Credential) -> bool:
        """Revoke the provider session for a credential."""
        pass

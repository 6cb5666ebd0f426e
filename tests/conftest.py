"""
Shared fixtures and fakes for the Profile Session tests.
"""

import asyncio
from typing import Dict, List, Optional

import pytest

from session_shared.exceptions import CredentialInvalidError
from session_shared.interfaces import IIdentityProvider, IProfileGateway
from session_shared.models import (
    Credential, Measurement, ProfileSnapshot, RefreshedToken, SignInResult
)
from session_client.auth.token_storage import MemoryStorage
from session_client.runtime import SharedSessionContext


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGateway(IProfileGateway):
    """In-memory profile API that records every call."""

    def __init__(self, snapshot: Optional[ProfileSnapshot] = None):
        self.snapshot = snapshot or ProfileSnapshot()
        self.valid_tokens: Optional[set] = None
        self.fail_with: Dict[str, Exception] = {}
        self.refresh_result = RefreshedToken(access_token="access-2", expires_in=3600)
        self.refresh_delay = 0.0

        self.exchange_calls: List[str] = []
        self.refresh_calls: List[str] = []
        self.update_calls: List[tuple] = []
        self.delete_calls: List[str] = []

    def _check(self, operation: str, credential: Credential) -> None:
        if operation in self.fail_with:
            raise self.fail_with[operation]
        if self.valid_tokens is not None and credential.bearer not in self.valid_tokens:
            raise CredentialInvalidError()

    async def exchange(self, credential: Credential) -> ProfileSnapshot:
        self.exchange_calls.append(credential.bearer)
        self._check('exchange', credential)
        return self.snapshot.copy()

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        self.refresh_calls.append(refresh_token)
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if 'refresh' in self.fail_with:
            raise self.fail_with['refresh']
        if self.valid_tokens is not None:
            self.valid_tokens.add(self.refresh_result.access_token)
        return self.refresh_result

    async def update_slot(self, credential, slot_key, measurement: Measurement,
                          default_slot=None, base=None) -> ProfileSnapshot:
        self.update_calls.append((slot_key, measurement.to_record(), default_slot))
        self._check('update_slot', credential)
        self.snapshot = (base or self.snapshot).with_slot(slot_key, measurement.to_record(), default_slot)
        return self.snapshot.copy()

    async def delete_slot(self, credential, slot_key, base=None) -> ProfileSnapshot:
        self.delete_calls.append(slot_key)
        self._check('delete_slot', credential)
        self.snapshot = (base or self.snapshot).without_slot(slot_key)
        return self.snapshot.copy()


class FakeIdentityProvider(IIdentityProvider):
    """Identity provider returning canned results."""

    def __init__(self, sign_in_result: Optional[SignInResult] = None,
                 silent_result: Optional[SignInResult] = None):
        self.sign_in_result = sign_in_result
        self.silent_result = silent_result
        self.silent_error: Optional[Exception] = None
        self.revoke_error: Optional[Exception] = None
        self.sign_in_calls = 0
        self.silent_calls = 0
        self.revoked: List[str] = []

    async def sign_in(self) -> Optional[SignInResult]:
        self.sign_in_calls += 1
        return self.sign_in_result

    async def silent_reauthenticate(self) -> Optional[SignInResult]:
        self.silent_calls += 1
        if self.silent_error is not None:
            raise self.silent_error
        return self.silent_result

    async def revoke(self, credential: Credential) -> bool:
        if self.revoke_error is not None:
            raise self.revoke_error
        self.revoked.append(credential.bearer)
        return True


@pytest.fixture(autouse=True)
def reset_shared_context():
    """Never leak the process-wide context between tests."""
    SharedSessionContext.reset_instance()
    yield
    SharedSessionContext.reset_instance()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def context(storage, clock):
    return SharedSessionContext(storage=storage, clock=clock)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def identity():
    return FakeIdentityProvider()

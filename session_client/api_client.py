"""
HTTP clients for the Profile Session client.

``ProfileGatewayClient`` talks to the remote profile API: it exchanges a
credential for the profile document, renews access tokens and writes
measurement slots. ``IdentityProviderClient`` covers the HTTP side of the
identity provider (revocation and user info) and delegates interactive
prompts to callables supplied by the host application.

The profile document uses the vendor wire format::

    {"BodyData": {"bodyF": {"HV": 170, "WV": 65, "Gender": "F"}, ...},
     "BodyData_ptr": "bodyF", ...}

Mutations send the whole ``BodyData`` object back with
``update_bodydata: true``. Calls are never retried here; a 401 on any call
raises ``CredentialInvalidError``.
"""

import asyncio
import copy
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError
from jose import jwt, JWTError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from session_shared.exceptions import (
    CredentialInvalidError, ErrorCode, GatewayError, NetworkError,
    PromptNotDisplayedError, ProfileSessionError, RefreshError, SignInError
)
from session_shared.interfaces import IIdentityProvider, IProfileGateway
from session_shared.logging_config import mask_token
from session_shared.models import (
    Credential, IdentityToken, Measurement, ProfileSnapshot, RefreshedToken,
    SignInResult, UserInfo
)

logger = logging.getLogger(__name__)

USER_AGENT = 'ProfileSessionClient/1.0'


class ProfileDocument(BaseModel):
    """Profile endpoint response."""
    model_config = ConfigDict(extra='allow')

    BodyData: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    BodyData_ptr: Optional[str] = None

    @field_validator('BodyData', mode='before')
    @classmethod
    def parse_body_data(cls, value):
        if value in (None, ''):
            return {}
        if isinstance(value, str):
            return json.loads(value)
        return value

    @field_validator('BodyData_ptr', mode='before')
    @classmethod
    def empty_pointer_is_none(cls, value):
        return value or None

    def to_snapshot(self) -> ProfileSnapshot:
        return ProfileSnapshot(
            slots=copy.deepcopy(self.BodyData),
            default_slot=self.BodyData_ptr,
            attributes=dict(self.model_extra or {}),
        )


class RefreshResponse(BaseModel):
    """Token endpoint response."""
    success: bool = True
    access_token: Optional[str] = None
    expires_in: float = 3600
    token_type: str = 'Bearer'
    refresh_token: Optional[str] = None
    error: Optional[str] = None

    @field_validator('expires_in', mode='before')
    @classmethod
    def default_lifetime(cls, value):
        return 3600 if value in (None, '') else value


class UserInfoResponse(BaseModel):
    """Identity provider user info response."""
    model_config = ConfigDict(extra='ignore')

    sub: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None


def _merge_record(existing: Optional[Dict[str, Any]], measurement: Measurement) -> Dict[str, Any]:
    """Write a measurement into a slot record, keeping fields the measurement does not carry."""
    record = measurement.to_record()
    if not existing:
        return record
    merged = copy.deepcopy(existing)
    if isinstance(merged.get('body'), dict):
        merged['body'].update(record)
    else:
        merged.update(record)
    return merged


class _HTTPClient:
    """aiohttp session handling and status mapping shared by both clients."""

    def __init__(self, timeout: float = 30.0):
        self.timeout = ClientTimeout(total=timeout)
        self._session: Optional[ClientSession] = None

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> None:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,
                limit_per_host=5,
                keepalive_timeout=30,
                enable_cleanup_closed=True
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={'User-Agent': USER_AGENT}
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _make_request(
        self,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]] = None,
        form: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """
        Make one HTTP request and map the outcome to session errors.

        Raises:
            CredentialInvalidError: On 401
            GatewayError: On other non-200 responses or an unparsable body
            NetworkError: On connection failures and timeouts
        """
        await self._ensure_session()

        try:
            logger.debug(f"Making {method} request to {url}")
            async with self._session.request(
                method=method,
                url=url,
                json=payload,
                data=form,
                headers=headers
            ) as response:
                if response.status == 200:
                    try:
                        data = await response.json(content_type=None)
                    except ValueError as e:
                        raise GatewayError(
                            f"Invalid JSON from {url}: {e}",
                            error_code=ErrorCode.GATEWAY_INVALID_RESPONSE,
                            status_code=200,
                            cause=e
                        )
                    if data is None:
                        return {}
                    if not isinstance(data, dict):
                        raise GatewayError(
                            f"Unexpected response body from {url}",
                            error_code=ErrorCode.GATEWAY_INVALID_RESPONSE,
                            status_code=200
                        )
                    return data

                error_data = await self._get_error_response(response)
                detail = error_data.get('detail') or error_data.get('error') or 'Unknown error'

                if response.status == 401:
                    raise CredentialInvalidError(
                        f"Credential rejected: {detail}",
                        context={'url': url}
                    )
                if response.status >= 500:
                    raise GatewayError(
                        f"Server error ({response.status}): {detail}",
                        error_code=ErrorCode.GATEWAY_SERVER_ERROR,
                        status_code=response.status
                    )
                raise GatewayError(
                    f"Request failed ({response.status}): {detail}",
                    error_code=ErrorCode.GATEWAY_REQUEST_REJECTED,
                    status_code=response.status
                )

        except asyncio.TimeoutError as e:
            logger.warning(f"Request to {url} timed out")
            raise NetworkError(
                f"Request to {url} timed out",
                error_code=ErrorCode.NETWORK_TIMEOUT,
                cause=e
            )
        except (ClientError, OSError) as e:
            logger.warning(f"Network error talking to {url}: {e}")
            raise NetworkError(
                f"Network request to {url} failed: {e}",
                error_code=ErrorCode.NETWORK_CONNECTION_FAILED,
                cause=e
            )

    async def _get_error_response(self, response) -> Dict[str, Any]:
        """Extract error information from response."""
        try:
            data = await response.json(content_type=None)
            if isinstance(data, dict):
                return data
        except (ValueError, ClientError):
            pass
        try:
            text = await response.text()
        except ClientError:
            text = ''
        return {"detail": text or "Unknown error"}


class ProfileGatewayClient(_HTTPClient, IProfileGateway):
    """
    HTTP client for the remote profile API.

    Mutations are read-modify-write on the whole profile document; callers
    pass the snapshot they hold as ``base``. Without a base the current
    document is fetched first.
    """

    def __init__(
        self,
        profile_url: str,
        refresh_url: str,
        provider_type: str = 'Google',
        timeout: float = 30.0
    ):
        super().__init__(timeout=timeout)
        self.profile_url = profile_url
        self.refresh_url = refresh_url
        self.provider_type = provider_type

        logger.info(f"Profile gateway client initialized for {profile_url}")

    @classmethod
    def from_config(cls, config) -> 'ProfileGatewayClient':
        return cls(
            profile_url=config.get_profile_url(),
            refresh_url=config.get_refresh_url(),
            provider_type=config.get_provider_type(),
            timeout=config.get_request_timeout()
        )

    def _credential_fields(self, credential: Credential) -> Dict[str, Any]:
        return {'credential': credential.bearer, 'IDTYPE': self.provider_type}

    def _parse_document(self, data: Dict[str, Any]) -> ProfileSnapshot:
        try:
            return ProfileDocument.model_validate(data).to_snapshot()
        except (ValidationError, ValueError) as e:
            raise GatewayError(
                f"Malformed profile document: {e}",
                error_code=ErrorCode.GATEWAY_INVALID_RESPONSE,
                cause=e
            )

    async def exchange(self, credential: Credential) -> ProfileSnapshot:
        logger.debug(f"Fetching profile for {mask_token(credential.bearer)}")
        data = await self._make_request('POST', self.profile_url, payload=self._credential_fields(credential))
        snapshot = self._parse_document(data)
        logger.info(f"Fetched profile with {len(snapshot.slots)} slot(s)")
        return snapshot

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        try:
            data = await self._make_request('POST', self.refresh_url, payload={'refresh_token': refresh_token})
        except (CredentialInvalidError, GatewayError) as e:
            raise RefreshError(f"Token refresh rejected: {e.message}", cause=e)

        try:
            response = RefreshResponse.model_validate(data)
        except ValidationError as e:
            raise RefreshError(f"Malformed token refresh response: {e}", cause=e)

        if not response.success or not response.access_token:
            raise RefreshError(f"Token refresh failed: {response.error or 'no access token returned'}")

        return RefreshedToken(
            access_token=response.access_token,
            expires_in=response.expires_in,
            refresh_token=response.refresh_token
        )

    async def _write_document(self, credential: Credential, expected: ProfileSnapshot) -> ProfileSnapshot:
        payload = self._credential_fields(credential)
        payload.update({
            'BodyData': expected.slots,
            'BodyData_ptr': expected.default_slot or '',
            'update_bodydata': True,
        })
        data = await self._make_request('POST', self.profile_url, payload=payload)
        if 'BodyData' not in data:
            return expected
        return self._parse_document(data)

    async def update_slot(
        self,
        credential: Credential,
        slot_key: str,
        measurement: Measurement,
        default_slot: Optional[str] = None,
        base: Optional[ProfileSnapshot] = None
    ) -> ProfileSnapshot:
        if base is None:
            base = await self.exchange(credential)
        record = _merge_record(base.slots.get(slot_key), measurement)
        expected = base.with_slot(slot_key, record, default_slot=default_slot)
        logger.info(f"Updating profile slot {slot_key}")
        return await self._write_document(credential, expected)

    async def delete_slot(
        self,
        credential: Credential,
        slot_key: str,
        base: Optional[ProfileSnapshot] = None
    ) -> ProfileSnapshot:
        if base is None:
            base = await self.exchange(credential)
        logger.info(f"Deleting profile slot {slot_key}")
        return await self._write_document(credential, base.without_slot(slot_key))

    async def set_default_slot(
        self,
        credential: Credential,
        slot_key: str,
        base: ProfileSnapshot
    ) -> ProfileSnapshot:
        if not base.has_slot(slot_key):
            raise KeyError(slot_key)
        expected = base.copy()
        expected.default_slot = slot_key
        logger.info(f"Setting default profile slot to {slot_key}")
        return await self._write_document(credential, expected)


PromptHandler = Callable[[], Awaitable[Optional[SignInResult]]]


class IdentityProviderClient(_HTTPClient, IIdentityProvider):
    """
    Identity provider adapter.

    Interactive and silent prompts are UI concerns; the host application
    passes coroutine functions for them. Revocation and user info go over
    HTTP.
    """

    def __init__(
        self,
        revoke_url: Optional[str] = None,
        userinfo_url: Optional[str] = None,
        sign_in_handler: Optional[PromptHandler] = None,
        silent_handler: Optional[PromptHandler] = None,
        timeout: float = 30.0
    ):
        super().__init__(timeout=timeout)
        self.revoke_url = revoke_url
        self.userinfo_url = userinfo_url
        self.sign_in_handler = sign_in_handler
        self.silent_handler = silent_handler

    @classmethod
    def from_config(cls, config, sign_in_handler: Optional[PromptHandler] = None,
                    silent_handler: Optional[PromptHandler] = None) -> 'IdentityProviderClient':
        return cls(
            revoke_url=config.get_revoke_url(),
            userinfo_url=config.get_userinfo_url(),
            sign_in_handler=sign_in_handler,
            silent_handler=silent_handler,
            timeout=config.get_request_timeout()
        )

    async def sign_in(self) -> Optional[SignInResult]:
        if self.sign_in_handler is None:
            raise SignInError("No interactive sign-in handler configured")
        return await self.sign_in_handler()

    async def silent_reauthenticate(self) -> Optional[SignInResult]:
        if self.silent_handler is None:
            raise PromptNotDisplayedError()
        return await self.silent_handler()

    async def revoke(self, credential: Credential) -> bool:
        """Revoke the provider session. Failures are reported as False."""
        if not self.revoke_url:
            return False
        try:
            await self._make_request('POST', self.revoke_url, form={'token': credential.bearer})
        except ProfileSessionError as e:
            logger.warning(f"Failed to revoke provider session: {e.message}")
            return False
        logger.info("Provider session revoked")
        return True

    async def fetch_user_info(self, credential: Credential) -> Optional[UserInfo]:
        """Identity tokens carry the claims themselves; access tokens ask the userinfo endpoint."""
        if isinstance(credential, IdentityToken):
            try:
                claims = jwt.get_unverified_claims(credential.token)
            except JWTError as e:
                logger.warning(f"Identity token claims unreadable: {e}")
                return None
            return UserInfo.from_dict(claims)

        if not self.userinfo_url:
            return None
        data = await self._make_request(
            'GET',
            self.userinfo_url,
            headers={'Authorization': f'Bearer {credential.bearer}'}
        )
        return UserInfo(**UserInfoResponse.model_validate(data).model_dump())

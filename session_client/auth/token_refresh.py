"""
Token refresh scheduling for the Profile Session client.

The scheduler checks remaining validity of the stored credential on a fixed
period and on demand, and renews it before it expires: access tokens with a
refresh token are exchanged at the gateway's token endpoint, everything else
goes through one silent re-authentication at the identity provider.

Two guards keep refreshes from piling up. A per-instance in-flight flag stops
re-entrant refreshes, and the process-wide cooldown in
``SharedSessionContext`` suppresses attempts made shortly after any other
instance's attempt.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from jose import jwt, JWTError

from session_shared.exceptions import (
    ErrorCode, ProfileSessionError, RefreshError, SessionError
)
from session_shared.interfaces import IIdentityProvider, IProfileGateway
from session_shared.logging_config import AuditLogger, log_structured_error
from session_shared.models import (
    AccessToken, Credential, RefreshOutcome, RefreshState, RefreshUrgency, TokenInfo
)
from session_client.auth.credential_store import CredentialStore
from session_client.runtime import SharedSessionContext
from session_client.scheduling import ScheduledTask, TaskRegistry

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = 3600.0
HIGH_URGENCY_SECONDS = 5 * 60
CRITICAL_URGENCY_SECONDS = 2 * 60


def token_info_for(credential: Credential, now: float,
                   default_lifetime: float = DEFAULT_TOKEN_LIFETIME) -> TokenInfo:
    """
    Derive token metadata from a credential.

    JWT credentials carry ``iat``/``exp`` claims; opaque tokens are assumed to
    have been issued now with the provider's default lifetime.
    """
    try:
        claims = jwt.get_unverified_claims(credential.bearer)
        return TokenInfo.from_claims(claims, now=now)
    except (JWTError, ValueError, TypeError) as e:
        logger.debug(f"Credential carries no usable expiry claims, assuming {default_lifetime}s: {e}")
        return TokenInfo.issued_now(default_lifetime, now=now)


class TokenRefreshScheduler:
    """Keeps the stored credential fresh for one session instance."""

    def __init__(
        self,
        store: CredentialStore,
        gateway: IProfileGateway,
        context: SharedSessionContext,
        registry: TaskRegistry,
        identity_provider: Optional[IIdentityProvider] = None,
        check_interval: float = 600.0,
        safety_margin: float = 600.0,
        audit: Optional[AuditLogger] = None
    ):
        self.store = store
        self.gateway = gateway
        self.context = context
        self.registry = registry
        self.identity_provider = identity_provider
        self.check_interval = check_interval
        self.safety_margin = safety_margin
        self.audit = audit or AuditLogger()

        self._state = RefreshState.IDLE
        self._in_flight = False
        self._timer: Optional[ScheduledTask] = None

        self._refresh_callbacks: List[Callable[[Credential], None]] = []
        self._expired_callbacks: List[Callable[[ProfileSessionError], None]] = []

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def next_check(self) -> Optional[float]:
        return self._timer.next_due if self._timer else None

    def add_refresh_callback(self, callback: Callable[[Credential], None]) -> None:
        """Register a callback invoked with the renewed credential."""
        self._refresh_callbacks.append(callback)

    def add_expired_callback(self, callback: Callable[[ProfileSessionError], None]) -> None:
        """Register a callback invoked when renewal failed and the session must end."""
        self._expired_callbacks.append(callback)

    def _notify_refreshed(self, credential: Credential) -> None:
        for callback in self._refresh_callbacks:
            try:
                callback(credential)
            except Exception as e:
                logger.error(f"Error in token refresh callback: {e}")

    def _notify_expired(self, error: ProfileSessionError) -> None:
        for callback in self._expired_callbacks:
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Error in token expiry callback: {e}")

    def start(self) -> bool:
        """Arm the periodic check if there is a stored credential."""
        if self._timer is not None and self._timer.active:
            return True
        if self.store.get() is None:
            logger.debug("No credential stored, refresh timer not armed")
            return False

        self._timer = self.registry.schedule(
            self._on_tick,
            self.check_interval,
            repeat=True,
            name=f"{self.store.instance_id}-token-refresh"
        )
        if self._state == RefreshState.IDLE:
            self._state = RefreshState.SCHEDULED
        logger.debug(f"Token refresh check armed every {self.check_interval}s")
        return True

    def stop(self) -> None:
        """Disarm the periodic check. A refresh already in flight runs to completion."""
        if self._timer is not None:
            self.registry.discard(self._timer)
            self._timer = None
        if self._state == RefreshState.SCHEDULED:
            self._state = RefreshState.IDLE

    def classify(self, token_info: TokenInfo, now: Optional[float] = None) -> RefreshUrgency:
        remaining = token_info.remaining(self.context.clock() if now is None else now)
        if remaining <= 0:
            return RefreshUrgency.EXPIRED
        if remaining <= CRITICAL_URGENCY_SECONDS:
            return RefreshUrgency.CRITICAL
        if remaining <= HIGH_URGENCY_SECONDS:
            return RefreshUrgency.HIGH
        if remaining <= self.safety_margin:
            return RefreshUrgency.NORMAL
        return RefreshUrgency.NONE

    def needs_refresh(self) -> bool:
        if self.store.get() is None:
            return False
        token_info = self.store.get_token_info()
        if token_info is None:
            return True
        return self.classify(token_info) != RefreshUrgency.NONE

    async def _on_tick(self) -> None:
        # Stopping the timer must not cancel a refresh that already started.
        await asyncio.shield(self.check_now("timer"))

    async def check_now(self, reason: str = "on-demand") -> RefreshOutcome:
        """Refresh if the stored credential is within the safety margin of expiry."""
        credential = self.store.get()
        if credential is None:
            return RefreshOutcome.NOT_NEEDED
        token_info = self.store.get_token_info()
        if token_info is None:
            logger.warning(f"No expiry information for stored {credential.kind.value}, refreshing ({reason})")
            return await self.refresh(reason=reason, urgency=RefreshUrgency.HIGH)

        urgency = self.classify(token_info)
        if urgency == RefreshUrgency.NONE:
            return RefreshOutcome.NOT_NEEDED

        remaining = token_info.remaining(self.context.clock())
        logger.info(f"Credential expires in {max(0, int(remaining))}s ({urgency.value} urgency, {reason})")
        return await self.refresh(reason=reason, urgency=urgency)

    async def refresh(self, reason: str = "manual",
                      urgency: RefreshUrgency = RefreshUrgency.NORMAL) -> RefreshOutcome:
        """Renew the stored credential, respecting the in-flight flag and the shared cooldown."""
        if self._in_flight:
            logger.debug(f"Refresh already in flight for {self.store.instance_id} ({reason})")
            return RefreshOutcome.SKIPPED_IN_FLIGHT
        if not self.context.try_begin_refresh():
            return RefreshOutcome.SKIPPED_COOLDOWN

        self._in_flight = True
        self._state = RefreshState.REFRESHING
        credential = self.store.get()
        try:
            if credential is None:
                return RefreshOutcome.NOT_NEEDED
            renewed = await self._renew(credential)
        except SessionError as e:
            logger.info(f"Discarding refresh result: {e.message}")
            return RefreshOutcome.NOT_NEEDED
        except ProfileSessionError as e:
            log_structured_error(logger, e, instance_id=self.store.instance_id, level=logging.WARNING)
            self.audit.log_token_refresh(
                self.store.instance_id or "unknown",
                credential.kind.value,
                success=False,
                urgency=urgency.value,
                error_message=e.message
            )
            self._notify_expired(e)
            return RefreshOutcome.EXPIRED
        finally:
            self._in_flight = False
            self._state = (RefreshState.SCHEDULED
                           if self._timer is not None and self._timer.active
                           else RefreshState.IDLE)

        self.audit.log_token_refresh(
            self.store.instance_id or "unknown",
            renewed.kind.value,
            success=True,
            urgency=urgency.value
        )
        logger.info(f"Credential refreshed ({reason})")
        self._notify_refreshed(renewed)
        return RefreshOutcome.REFRESHED

    async def _renew(self, credential: Credential) -> Credential:
        if isinstance(credential, AccessToken) and credential.refresh_token:
            refreshed = await self.gateway.refresh(credential.refresh_token)
            renewed = AccessToken(
                refreshed.access_token,
                refresh_token=refreshed.refresh_token or credential.refresh_token
            )
            self.store.set(renewed, TokenInfo.issued_now(refreshed.expires_in, now=self.context.clock()))
            return renewed

        if self.identity_provider is None:
            raise RefreshError(
                "Credential cannot be refreshed and no identity provider is configured",
                context={'credential_kind': credential.kind.value}
            )

        result = await self.identity_provider.silent_reauthenticate()
        if result is None:
            raise RefreshError(
                "Silent re-authentication is not possible",
                error_code=ErrorCode.AUTH_PROMPT_NOT_DISPLAYED,
                context={'credential_kind': credential.kind.value}
            )

        token_info = result.token_info or token_info_for(result.credential, self.context.clock())
        self.store.set(result.credential, token_info)
        if result.user_info is not None:
            self.store.set_user_info(result.user_info)
        return result.credential

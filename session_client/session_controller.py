"""
Session controller for the Profile Session client.

One controller exists per widget placement. It owns the authentication state
machine, drives sign-in and sign-out, keeps its in-memory view in step with
the shared storage area through the sync bus and exposes lifecycle events to
the UI layer.

States: UNAUTHENTICATED -> AUTHENTICATING -> AUTHENTICATED -> EXPIRING -> UNAUTHENTICATED.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from session_shared.exceptions import (
    CredentialInvalidError, ErrorCode, GatewayError, NetworkError,
    ProfileSessionError, ReconciliationError, SessionError, SignInError
)
from session_shared.interfaces import IIdentityProvider, IProfileGateway
from session_shared.logging_config import AuditLogger, log_structured_error
from session_shared.models import (
    Credential, Measurement, ProfileSnapshot, RefreshOutcome, ReconciliationAction,
    ReconciliationChoice, ReconciliationResult, SessionEvent, SessionState,
    SignInResult, StorageChange, UserInfo
)
from session_client.auth.credential_store import (
    CREDENTIAL_KEYS, KEY_PROFILE_SNAPSHOT, KEY_TOKEN_INFO, KEY_USER_INFO, CredentialStore
)
from session_client.auth.token_refresh import TokenRefreshScheduler, token_info_for
from session_client.reconciliation import ReconciliationEngine, ReconciliationPrompt
from session_client.runtime import SharedSessionContext
from session_client.scheduling import TaskRegistry

logger = logging.getLogger(__name__)

EventCallback = Callable[[Any], None]


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class SessionController:
    """
    Authentication lifecycle for one session instance.

    Construction restores state from storage without touching the network.
    ``start(initial_load=True)`` then runs the background refresh-and-reconcile
    pass; only the instance that performed the page-load action should pass
    ``initial_load``.
    """

    def __init__(
        self,
        gateway: IProfileGateway,
        identity_provider: Optional[IIdentityProvider] = None,
        context: Optional[SharedSessionContext] = None,
        instance_id: Optional[str] = None,
        check_interval: float = 600.0,
        safety_margin: float = 600.0,
        audit: Optional[AuditLogger] = None
    ):
        self.gateway = gateway
        self.identity_provider = identity_provider
        self.context = context or SharedSessionContext.instance()
        self.instance_id = instance_id or self.context.next_instance_id()
        self.audit = audit or AuditLogger()

        self.registry = TaskRegistry(owner=self.instance_id, clock=self.context.clock)
        self.store = CredentialStore(self.context.storage, self.context.bus, self.instance_id)

        self.refresher = TokenRefreshScheduler(
            self.store,
            gateway,
            self.context,
            self.registry,
            identity_provider=identity_provider,
            check_interval=check_interval,
            safety_margin=safety_margin,
            audit=self.audit
        )
        self.refresher.add_refresh_callback(self._on_token_refreshed)
        self.refresher.add_expired_callback(self._on_refresh_failed)

        self.reconciler = ReconciliationEngine(self.store, gateway, self.context, audit=self.audit)
        self.reconciler.add_prompt_callback(self._on_reconciliation_prompt)

        self._listeners: Dict[SessionEvent, List[EventCallback]] = {}
        self._state = SessionState.UNAUTHENTICATED
        self._credential: Optional[Credential] = None
        self._snapshot: Optional[ProfileSnapshot] = None
        self._closed = False
        self._background: Optional[asyncio.Task] = None

        self._unsubscribe = self.context.bus.subscribe(self.instance_id, self._on_storage_change)
        self._restore()

    @classmethod
    def from_config(cls, config, gateway: IProfileGateway,
                    identity_provider: Optional[IIdentityProvider] = None,
                    context: Optional[SharedSessionContext] = None) -> 'SessionController':
        return cls(
            gateway,
            identity_provider=identity_provider,
            context=context,
            check_interval=config.get_refresh_check_interval(),
            safety_margin=config.get_refresh_safety_margin()
        )

    # State

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state == SessionState.AUTHENTICATED

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    @property
    def snapshot(self) -> Optional[ProfileSnapshot]:
        return self._snapshot.copy() if self._snapshot is not None else None

    @property
    def user_info(self) -> Optional[UserInfo]:
        return self.store.get_user_info()

    @property
    def pending_prompt(self) -> Optional[ReconciliationPrompt]:
        return self.reconciler.pending_prompt

    @property
    def closed(self) -> bool:
        return self._closed

    def _restore(self) -> None:
        credential = self.store.get()
        if credential is None:
            return
        token_info = self.store.get_token_info()
        if token_info is not None and token_info.is_expired(self.context.clock()):
            logger.info("Stored credential has expired, starting unauthenticated")
            return
        self._credential = credential
        self._snapshot = self.store.get_profile_snapshot()
        self._state = SessionState.AUTHENTICATED
        logger.debug(f"{self.instance_id} restored {credential.kind.value} session from storage")

    # Events

    def add_listener(self, event: SessionEvent, callback: EventCallback) -> None:
        """
        Add a callback for a session event.

        Args:
            event: Event to listen for
            callback: Function called with the event payload (may be None)
        """
        self._listeners.setdefault(event, []).append(callback)

    def remove_listener(self, event: SessionEvent, callback: EventCallback) -> None:
        callbacks = self._listeners.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def _emit(self, event: SessionEvent, payload: Any = None) -> None:
        logger.debug(f"{self.instance_id} emitting {event.value}")
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"Error in {event.value} listener: {e}")

    # Lifecycle

    async def start(self, initial_load: bool = False) -> Optional[asyncio.Task]:
        """
        Begin background work for this instance.

        Returns the background refresh-and-reconcile task when one was started.
        """
        self._require_open()
        self.context.ensure_cross_process_watch()
        if self._state != SessionState.AUTHENTICATED:
            return None

        self.refresher.start()
        if not initial_load:
            return None
        if not self.context.try_begin_profile_fetch():
            return None

        self._background = self.registry.spawn(
            self._refresh_and_reconcile(),
            name=f"{self.instance_id}-initial-load"
        )
        return self._background

    async def _refresh_and_reconcile(self) -> Optional[ReconciliationResult]:
        await self.refresher.check_now("initial-load")
        if self._state != SessionState.AUTHENTICATED:
            return None
        try:
            snapshot = await self.refresh_profile()
        except ProfileSessionError as e:
            log_structured_error(logger, e, instance_id=self.instance_id, level=logging.WARNING)
            return None
        if snapshot is None or self._state != SessionState.AUTHENTICATED:
            return None
        try:
            return await self._reconcile(snapshot)
        except CredentialInvalidError:
            self._expire("credential rejected during reconciliation")
            return None

    async def sign_in(self, result: Optional[SignInResult] = None) -> bool:
        """
        Establish a session.

        Args:
            result: Credential handed over by the UI. When omitted, the identity
                provider's interactive sign-in is used.

        Returns:
            True once the session is authenticated
        """
        self._require_open()
        if self._state == SessionState.AUTHENTICATING:
            raise SessionError("Sign-in already in progress", error_code=ErrorCode.SESSION_INVALID_STATE)

        previous_state = self._state
        self._state = SessionState.AUTHENTICATING
        try:
            return await self._sign_in(result)
        except asyncio.CancelledError:
            logger.info(f"Sign-in cancelled for {self.instance_id}")
            if self._state == SessionState.AUTHENTICATING:
                self._state = previous_state if self.store.get() is not None else SessionState.UNAUTHENTICATED
            raise

    async def _sign_in(self, result: Optional[SignInResult]) -> bool:
        try:
            if result is None:
                if self.identity_provider is None:
                    raise SignInError("No identity provider configured")
                result = await self.identity_provider.sign_in()
            if result is None:
                raise SignInError("Sign-in cancelled by user", error_code=ErrorCode.AUTH_SIGN_IN_CANCELLED)
        except ProfileSessionError as e:
            self._fail_sign_in(e, clear=False)
            return False

        now = self.context.clock()
        credential = result.credential
        token_info = result.token_info or token_info_for(credential, now)
        if token_info.is_expired(now):
            self._fail_sign_in(SignInError("Identity provider returned an expired credential"), clear=False)
            return False

        self.store.set(credential, token_info)
        if result.user_info is not None:
            self.store.set_user_info(result.user_info)
        self._credential = credential

        try:
            snapshot = await self._exchange()
            self.store.set_profile_snapshot(snapshot)
        except CredentialInvalidError as e:
            self._fail_sign_in(e, clear=True)
            return False
        except (NetworkError, GatewayError) as e:
            log_structured_error(logger, e, instance_id=self.instance_id, level=logging.WARNING)
            snapshot = self.store.get_profile_snapshot()
            if snapshot is not None:
                logger.info("Profile unavailable, using cached snapshot")
        self._snapshot = snapshot

        if snapshot is not None:
            try:
                await self._reconcile(snapshot, emit=False)
            except CredentialInvalidError as e:
                self._fail_sign_in(e, clear=True)
                return False

        if self._closed:
            logger.info(f"{self.instance_id} closed while signing in")
            return False

        self._state = SessionState.AUTHENTICATED
        self.audit.log_authentication(self.instance_id, credential.kind.value, success=True)
        logger.info(f"{self.instance_id} signed in with {credential.kind.value}")
        self._emit(SessionEvent.SESSION_AUTHENTICATED, credential)
        if self._snapshot is not None:
            self._emit(SessionEvent.PROFILE_UPDATED, self.snapshot)
        if _loop_running():
            self.refresher.start()
        return True

    def _fail_sign_in(self, error: ProfileSessionError, clear: bool) -> None:
        log_structured_error(logger, error, instance_id=self.instance_id, level=logging.WARNING)
        self.audit.log_authentication(self.instance_id, success=False, failure_reason=error.message)
        if clear and not self._closed:
            self.store.clear()
        self._credential = None if clear else self.store.get()
        self._snapshot = None if clear else self._snapshot
        self._state = (SessionState.AUTHENTICATED
                       if self._credential is not None and not clear
                       else SessionState.UNAUTHENTICATED)
        self._emit(SessionEvent.SIGN_IN_FAILED, error)

    async def sign_out(self) -> None:
        """Revoke the provider session if possible, then clear local state regardless."""
        self._require_open()
        credential = self._credential or self.store.get()
        if credential is not None and self.identity_provider is not None:
            try:
                await self.identity_provider.revoke(credential)
            except ProfileSessionError as e:
                logger.warning(f"Revoking provider session failed, signing out anyway: {e.message}")
        self._end_session("user sign-out", expired=False)

    def _expire(self, reason: str) -> None:
        """Move to UNAUTHENTICATED after a fatal credential problem. Safe to call repeatedly."""
        if self._closed or self._state == SessionState.AUTHENTICATING:
            return
        if self._state in (SessionState.UNAUTHENTICATED, SessionState.EXPIRING) and self.store.get() is None:
            return
        self._state = SessionState.EXPIRING
        logger.warning(f"Session expired for {self.instance_id}: {reason}")
        self._end_session(reason, expired=True)

    def _end_session(self, reason: str, expired: bool) -> None:
        self.refresher.stop()
        self.reconciler.cancel_pending()
        self.store.clear()
        self._credential = None
        self._snapshot = None
        self._state = SessionState.UNAUTHENTICATED
        self.audit.log_session_end(self.instance_id, reason, expired=expired)
        if expired:
            self._emit(SessionEvent.SESSION_EXPIRED, reason)
        self._emit(SessionEvent.SESSION_UNAUTHENTICATED, reason)

    async def check_token(self, reason: str = "on-demand") -> RefreshOutcome:
        """Evaluate the credential now, e.g. when the host regains focus or connectivity."""
        self._require_open()
        if self._state != SessionState.AUTHENTICATED:
            return RefreshOutcome.NOT_NEEDED
        return await self.refresher.check_now(reason)

    async def close(self) -> None:
        """Tear down the instance: cancel timers, close the prompt, stop listening."""
        if self._closed:
            return
        self._closed = True
        self.reconciler.cancel_pending()
        self.refresher.stop()
        self.registry.cancel_all()
        self._unsubscribe()
        self.store.close()
        if self._background is not None and not self._background.done():
            try:
                await self._background
            except asyncio.CancelledError:
                pass
        logger.debug(f"{self.instance_id} closed")

    # Profile

    async def _exchange(self) -> ProfileSnapshot:
        """Fetch the profile; after a 401, refresh once and retry once with the new credential."""
        credential = self.store.get()
        if credential is None:
            raise SessionError("No credential stored", error_code=ErrorCode.SESSION_NOT_AUTHENTICATED)

        for attempt in range(2):
            try:
                return await self.gateway.exchange(credential)
            except CredentialInvalidError:
                if attempt > 0 or not credential.refresh_token:
                    raise
                logger.info("Profile fetch unauthorized, refreshing credential before one retry")
                outcome = await self.refresher.refresh(reason="unauthorized")
                renewed = self.store.get()
                if outcome != RefreshOutcome.REFRESHED or renewed is None or renewed == credential:
                    raise
                credential = renewed
        raise CredentialInvalidError("Credential rejected after refresh")

    async def refresh_profile(self) -> Optional[ProfileSnapshot]:
        """
        Fetch the remote profile and cache it.

        A rejected credential ends the session and returns None. Transport
        failures fall back to the cached snapshot when there is one.
        """
        self._require_authenticated()
        try:
            snapshot = await self._exchange()
        except CredentialInvalidError:
            self._expire("profile fetch unauthorized")
            return None
        except (NetworkError, GatewayError) as e:
            if self._snapshot is None:
                raise
            log_structured_error(logger, e, instance_id=self.instance_id, level=logging.WARNING)
            logger.info("Using cached profile snapshot")
            return self.snapshot

        self.store.set_profile_snapshot(snapshot)
        self._snapshot = snapshot
        self._emit(SessionEvent.PROFILE_UPDATED, self.snapshot)
        return self.snapshot

    async def _mutate(self, operation: str, slot_key: str,
                      call: Callable[[Credential, ProfileSnapshot], Awaitable[ProfileSnapshot]]) -> ProfileSnapshot:
        self._require_authenticated()
        base = self._snapshot.copy() if self._snapshot is not None else ProfileSnapshot()
        try:
            updated = await call(self._credential, base)
        except CredentialInvalidError:
            self.audit.log_profile_mutation(self.instance_id, operation, slot_key, result="unauthorized")
            self._expire(f"{operation} unauthorized")
            raise
        except ProfileSessionError:
            self.audit.log_profile_mutation(self.instance_id, operation, slot_key, result="failure")
            raise

        self.store.set_profile_snapshot(updated)
        self._snapshot = updated
        self.audit.log_profile_mutation(self.instance_id, operation, slot_key)
        self._emit(SessionEvent.PROFILE_UPDATED, self.snapshot)
        return self.snapshot

    async def update_slot(self, slot_key: str, measurement: Measurement,
                          make_default: bool = False) -> ProfileSnapshot:
        """Create or overwrite one profile slot."""
        def call(credential, base):
            default = slot_key if make_default or not base.default_slot else None
            return self.gateway.update_slot(credential, slot_key, measurement, default_slot=default, base=base)
        return await self._mutate("update_slot", slot_key, call)

    async def set_default_slot(self, slot_key: str) -> ProfileSnapshot:
        """Point the profile's default slot at an existing slot."""
        if self._snapshot is None or not self._snapshot.has_slot(slot_key):
            raise KeyError(slot_key)
        return await self._mutate(
            "set_default_slot", slot_key,
            lambda credential, base: self.gateway.set_default_slot(credential, slot_key, base)
        )

    async def delete_slot(self, slot_key: str) -> ProfileSnapshot:
        """Remove one profile slot; the default moves to a remaining slot if needed."""
        return await self._mutate(
            "delete_slot", slot_key,
            lambda credential, base: self.gateway.delete_slot(credential, slot_key, base=base)
        )

    # Reconciliation

    async def _reconcile(self, snapshot: ProfileSnapshot, emit: bool = True) -> Optional[ReconciliationResult]:
        try:
            result = await self.reconciler.run(snapshot, self._credential)
        except ReconciliationError as e:
            log_structured_error(logger, e, instance_id=self.instance_id, level=logging.WARNING)
            return None

        if result.snapshot is not None and result.snapshot != self._snapshot:
            self._snapshot = result.snapshot
            if emit:
                self._emit(SessionEvent.PROFILE_UPDATED, self.snapshot)
        if result.action == ReconciliationAction.ASK_USER and result.completed:
            self._emit(SessionEvent.RECONCILIATION_RESOLVED, result)
        return result

    def resolve_reconciliation(self, choice: ReconciliationChoice) -> bool:
        """Answer the open reconciliation prompt."""
        return self.reconciler.resolve(choice)

    # Callbacks

    def _on_reconciliation_prompt(self, prompt: ReconciliationPrompt) -> None:
        self._emit(SessionEvent.RECONCILIATION_PROMPT_NEEDED, prompt)

    def _on_token_refreshed(self, credential: Credential) -> None:
        self._credential = credential
        self._emit(SessionEvent.TOKEN_REFRESHED, credential)

    def _on_refresh_failed(self, error: ProfileSessionError) -> None:
        self._expire(f"credential renewal failed: {error.message}")

    def _on_storage_change(self, change: StorageChange) -> None:
        """Bring the in-memory view in line with a write made by another instance."""
        if self._closed:
            return

        if change.key in CREDENTIAL_KEYS or change.key == KEY_TOKEN_INFO:
            credential = self.store.get()
            if credential == self._credential:
                return
            if credential is None:
                if self._state == SessionState.UNAUTHENTICATED:
                    return
                self.refresher.stop()
                self.reconciler.cancel_pending()
                self._credential = None
                self._snapshot = None
                self._state = SessionState.UNAUTHENTICATED
                logger.info(f"{self.instance_id} signed out by another instance")
                self._emit(SessionEvent.SESSION_UNAUTHENTICATED, "signed out elsewhere")
                return

            was_authenticated = self._credential is not None and self._state == SessionState.AUTHENTICATED
            self._credential = credential
            if was_authenticated:
                self._emit(SessionEvent.TOKEN_REFRESHED, credential)
                return
            if self._state == SessionState.AUTHENTICATING:
                return
            self._snapshot = self.store.get_profile_snapshot()
            self._state = SessionState.AUTHENTICATED
            logger.info(f"{self.instance_id} signed in by another instance")
            self._emit(SessionEvent.SESSION_AUTHENTICATED, credential)
            if _loop_running():
                self.refresher.start()

        elif change.key == KEY_PROFILE_SNAPSHOT:
            snapshot = self.store.get_profile_snapshot()
            if snapshot == self._snapshot:
                return
            self._snapshot = snapshot
            if self._state == SessionState.AUTHENTICATED:
                self._emit(SessionEvent.PROFILE_UPDATED, self.snapshot)

        elif change.key == KEY_USER_INFO:
            logger.debug(f"{self.instance_id} user info changed")

    # Guards

    def _require_open(self) -> None:
        if self._closed:
            raise SessionError(f"Session instance {self.instance_id} is closed",
                               error_code=ErrorCode.SESSION_CLOSED)

    def _require_authenticated(self) -> None:
        self._require_open()
        if self._state != SessionState.AUTHENTICATED or self._credential is None:
            raise SessionError("Not signed in", error_code=ErrorCode.SESSION_NOT_AUTHENTICATED)

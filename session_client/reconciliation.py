"""
Reconciliation of the locally cached measurement with the remote profile.

Runs once when a session is established. ``decide`` is a pure function of
the local measurement and the fetched snapshot; ``run`` carries out the
chosen action. Upload and download are single operations that are never
retried; when one fails, neither the local measurement nor the stored
snapshot is changed.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from session_shared.exceptions import (
    CredentialInvalidError, ErrorCode, ProfileSessionError, ReconciliationError
)
from session_shared.interfaces import IProfileGateway
from session_shared.logging_config import AuditLogger
from session_shared.models import (
    Credential, LocalMeasurement, Measurement, ProfileSnapshot,
    ReconciliationAction, ReconciliationChoice, ReconciliationResult,
    slot_key_for_gender
)
from session_client.auth.credential_store import CredentialStore
from session_client.runtime import SharedSessionContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationDecision:
    action: ReconciliationAction
    slot_key: Optional[str] = None
    gender: Optional[str] = None


@dataclass
class ReconciliationPrompt:
    """The two versions the user chooses between."""
    slot_key: str
    local: Measurement
    remote: Measurement


def reconciliation_gender(local: Optional[LocalMeasurement], snapshot: Optional[ProfileSnapshot],
                          local_gender: Optional[str] = None) -> Optional[str]:
    if local is not None and local.effective_gender:
        return local.effective_gender
    if local_gender:
        return local_gender
    if snapshot is not None:
        return snapshot.default_gender()
    return None


def _with_gender(measurement: Measurement, gender: Optional[str]) -> Measurement:
    return Measurement(
        height=measurement.height,
        weight=measurement.weight,
        gender=measurement.gender or gender,
        extra=dict(measurement.extra),
    )


def decide(local: Optional[LocalMeasurement], snapshot: Optional[ProfileSnapshot],
           local_gender: Optional[str] = None) -> ReconciliationDecision:
    """Pick the reconciliation action. Has no side effects."""
    gender = reconciliation_gender(local, snapshot, local_gender)
    slot_key = slot_key_for_gender(gender) if gender else None
    remote = snapshot.measurement_for_slot(slot_key) if snapshot is not None and slot_key else None

    if local is None:
        if remote is None:
            return ReconciliationDecision(ReconciliationAction.NO_OP, slot_key, gender)
        return ReconciliationDecision(ReconciliationAction.DOWNLOAD, slot_key, gender)

    if slot_key is None:
        logger.warning("Local measurement has no gender and the profile has no default slot, nothing to reconcile")
        return ReconciliationDecision(ReconciliationAction.NO_OP, None, None)

    if remote is None:
        return ReconciliationDecision(ReconciliationAction.UPLOAD, slot_key, gender)

    if _with_gender(local.measurement, gender).matches(remote):
        return ReconciliationDecision(ReconciliationAction.DISCARD_LOCAL, slot_key, gender)
    return ReconciliationDecision(ReconciliationAction.ASK_USER, slot_key, gender)


class ReconciliationEngine:
    """Executes reconciliation for one session instance."""

    def __init__(
        self,
        store: CredentialStore,
        gateway: IProfileGateway,
        context: Optional[SharedSessionContext] = None,
        audit: Optional[AuditLogger] = None
    ):
        self.store = store
        self.gateway = gateway
        self.context = context
        self.audit = audit or AuditLogger()
        self.instance_id = store.instance_id or "session"

        self._pending: Optional[asyncio.Future] = None
        self._prompt: Optional[ReconciliationPrompt] = None
        self._prompt_callbacks: List[Callable[[ReconciliationPrompt], None]] = []

    decide = staticmethod(decide)

    def add_prompt_callback(self, callback: Callable[[ReconciliationPrompt], None]) -> None:
        """Register a callback invoked when the user has to choose."""
        self._prompt_callbacks.append(callback)

    @property
    def pending_prompt(self) -> Optional[ReconciliationPrompt]:
        return self._prompt if self._pending is not None and not self._pending.done() else None

    def resolve(self, choice: ReconciliationChoice) -> bool:
        """Answer the open prompt. Returns False when no prompt is open."""
        if self._pending is None or self._pending.done():
            return False
        self._pending.set_result(ReconciliationChoice(choice))
        return True

    def cancel_pending(self) -> None:
        """Close an open prompt as declined; the local measurement is kept."""
        if self._pending is not None and not self._pending.done():
            self._pending.set_result(None)

    async def run(self, snapshot: Optional[ProfileSnapshot], credential: Credential) -> ReconciliationResult:
        local = self.store.get_local_measurement()
        local_gender = self.store.get_local_gender()
        snapshot = snapshot.copy() if snapshot is not None else ProfileSnapshot()
        decision = decide(local, snapshot, local_gender)
        logger.info(f"Reconciliation decision: {decision.action.value} ({decision.slot_key})")

        if decision.action == ReconciliationAction.NO_OP:
            return ReconciliationResult(decision.action, decision.slot_key, snapshot=snapshot, local=local)

        if decision.action == ReconciliationAction.DOWNLOAD:
            result = self._download(snapshot, decision.slot_key)
            result.snapshot = await self._purge_stale_slot(credential, snapshot, decision.slot_key, local_gender)
            return result

        if decision.action == ReconciliationAction.UPLOAD:
            return await self._upload(credential, snapshot, decision.slot_key, local, decision.gender,
                                      action=decision.action)

        if decision.action == ReconciliationAction.DISCARD_LOCAL:
            self.store.clear_local_measurement()
            self.audit.log_reconciliation(self.instance_id, decision.action.value, decision.slot_key)
            return ReconciliationResult(decision.action, decision.slot_key, snapshot=snapshot)

        choice = await self._ask(decision, local, snapshot)
        if choice is None:
            logger.info("Reconciliation declined, keeping local measurement")
            return ReconciliationResult(decision.action, decision.slot_key, snapshot=snapshot,
                                        local=local, completed=False)

        if choice == ReconciliationChoice.USE_LOCAL:
            result = await self._upload(credential, snapshot, decision.slot_key, local, decision.gender,
                                        action=decision.action)
        else:
            result = self._download(snapshot, decision.slot_key, action=decision.action)
            result.snapshot = await self._purge_stale_slot(credential, snapshot, decision.slot_key, local_gender)
        result.choice = choice
        return result

    async def _ask(self, decision: ReconciliationDecision, local: LocalMeasurement,
                   snapshot: ProfileSnapshot) -> Optional[ReconciliationChoice]:
        if self.context is not None and not self.context.claim_prompt(self.instance_id):
            logger.info("Another instance is already asking the user, skipping prompt")
            return None

        self._pending = asyncio.get_running_loop().create_future()
        self._prompt = ReconciliationPrompt(
            slot_key=decision.slot_key,
            local=_with_gender(local.measurement, decision.gender),
            remote=snapshot.measurement_for_slot(decision.slot_key),
        )
        try:
            for callback in self._prompt_callbacks:
                try:
                    callback(self._prompt)
                except Exception as e:
                    logger.error(f"Error in reconciliation prompt callback: {e}")
            return await self._pending
        finally:
            self._pending = None
            self._prompt = None
            if self.context is not None:
                self.context.release_prompt(self.instance_id)

    async def _upload(self, credential: Credential, snapshot: ProfileSnapshot, slot_key: str,
                      local: LocalMeasurement, gender: Optional[str],
                      action: ReconciliationAction) -> ReconciliationResult:
        measurement = _with_gender(local.measurement, gender)
        default_slot = None if snapshot.default_slot else slot_key
        try:
            updated = await self.gateway.update_slot(
                credential, slot_key, measurement, default_slot=default_slot, base=snapshot
            )
        except CredentialInvalidError:
            raise
        except ProfileSessionError as e:
            self.audit.log_reconciliation(self.instance_id, "upload", slot_key, result="failure")
            raise ReconciliationError(
                f"Uploading local measurement to {slot_key} failed: {e.message}",
                error_code=ErrorCode.RECONCILIATION_UPLOAD_FAILED,
                slot_key=slot_key,
                cause=e
            )

        self.store.set_profile_snapshot(updated)
        self.store.clear_local_measurement()
        self.audit.log_reconciliation(self.instance_id, "upload", slot_key)
        return ReconciliationResult(action, slot_key, snapshot=updated)

    def _download(self, snapshot: ProfileSnapshot, slot_key: str,
                  action: ReconciliationAction = ReconciliationAction.DOWNLOAD) -> ReconciliationResult:
        measurement = snapshot.measurement_for_slot(slot_key)
        if measurement is None:
            raise ReconciliationError(
                f"Profile has no slot {slot_key} to download",
                error_code=ErrorCode.RECONCILIATION_DOWNLOAD_FAILED,
                slot_key=slot_key
            )
        local = LocalMeasurement(measurement=measurement, gender=measurement.gender)
        try:
            self.store.set_local_measurement(local)
        except ProfileSessionError as e:
            raise ReconciliationError(
                f"Storing downloaded measurement failed: {e.message}",
                error_code=ErrorCode.RECONCILIATION_DOWNLOAD_FAILED,
                slot_key=slot_key,
                cause=e
            )
        self.audit.log_reconciliation(self.instance_id, "download", slot_key)
        return ReconciliationResult(action, slot_key, snapshot=snapshot, local=local.copy())

    async def _purge_stale_slot(self, credential: Credential, snapshot: ProfileSnapshot,
                                downloaded_slot: str, previous_gender: Optional[str]) -> ProfileSnapshot:
        """
        Delete the old gender's slot when it duplicates the slot just downloaded.

        Returns the profile as it stands afterwards.
        """
        if not previous_gender:
            return snapshot
        stale_slot = slot_key_for_gender(previous_gender)
        if stale_slot == downloaded_slot or stale_slot not in snapshot.slots:
            return snapshot
        if snapshot.slots[stale_slot] != snapshot.slots[downloaded_slot]:
            return snapshot

        try:
            updated = await self.gateway.delete_slot(credential, stale_slot, base=snapshot)
        except CredentialInvalidError:
            raise
        except ProfileSessionError as e:
            logger.warning(f"Could not remove duplicate profile slot {stale_slot}: {e.message}")
            return snapshot
        self.store.set_profile_snapshot(updated)
        logger.info(f"Removed duplicate profile slot {stale_slot}")
        return updated

"""
Typed access to the shared session storage area.

The credential store owns the storage schema. It decodes the stored
credential into its variant exactly once, on read, and announces every write
on the sync bus after the write has been applied.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from session_shared.exceptions import ErrorCode, SessionError
from session_shared.interfaces import IKeyValueStorage
from session_shared.models import (
    AccessToken, Credential, IdentityToken, LocalMeasurement, Measurement,
    ProfileSnapshot, TokenInfo, UserInfo
)
from session_client.auth.sync_bus import SyncBus

logger = logging.getLogger(__name__)

KEY_CREDENTIAL = "auth.credential"
KEY_TOKEN_INFO = "auth.token_info"
KEY_ACCESS_TOKEN = "auth.access_token"
KEY_REFRESH_TOKEN = "auth.refresh_token"
KEY_TOKEN_EXPIRES_AT = "auth.token_expires_at"
KEY_USER_INFO = "auth.user_info"
KEY_PROFILE_SNAPSHOT = "profile.snapshot"
KEY_LOCAL_MEASUREMENT = "measurement.local"
KEY_LOCAL_GENDER = "measurement.local_gender"

CREDENTIAL_KEYS = (KEY_CREDENTIAL, KEY_ACCESS_TOKEN, KEY_REFRESH_TOKEN, KEY_TOKEN_EXPIRES_AT)
SESSION_KEYS = CREDENTIAL_KEYS + (KEY_TOKEN_INFO, KEY_USER_INFO, KEY_PROFILE_SNAPSHOT)
MEASUREMENT_KEYS = (KEY_LOCAL_MEASUREMENT, KEY_LOCAL_GENDER)

Write = Tuple[str, Optional[str]]


def _dump(data: Dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(',', ':'))


class CredentialStore:
    """
    Credential, token metadata, cached profile and local measurement storage.

    Writes are last-writer-wins. Multi-key writes are applied one after the
    other without suspending, then announced in the same order. When a write
    fails, the writes already applied are still announced.
    """

    def __init__(self, storage: IKeyValueStorage, bus: Optional[SyncBus] = None,
                 instance_id: Optional[str] = None):
        self.storage = storage
        self.bus = bus
        self.instance_id = instance_id
        self._closed = False

    def close(self) -> None:
        """Refuse further writes from this instance."""
        self._closed = True

    def _apply(self, writes: List[Write]) -> List[Write]:
        if self._closed:
            raise SessionError(
                f"Session instance {self.instance_id} is closed",
                error_code=ErrorCode.SESSION_CLOSED
            )

        applied = []
        try:
            for key, value in writes:
                if value is None:
                    if self.storage.get(key) is None:
                        continue
                    self.storage.remove(key)
                else:
                    self.storage.set(key, value)
                applied.append((key, value))
        finally:
            # Writes that landed before a failure are announced too
            if self.bus is not None:
                for key, value in applied:
                    self.bus.publish(key, value, origin=self.instance_id)
        return applied

    def _read_json(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self.storage.get(key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Ignoring malformed value stored under {key}: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Ignoring non-object value stored under {key}")
            return None
        return data

    # Credential

    def get(self) -> Optional[Credential]:
        identity = self.storage.get(KEY_CREDENTIAL)
        if identity:
            return IdentityToken(identity)
        access = self.storage.get(KEY_ACCESS_TOKEN)
        if access:
            return AccessToken(access, refresh_token=self.storage.get(KEY_REFRESH_TOKEN) or None)
        return None

    def get_token_info(self) -> Optional[TokenInfo]:
        """Token metadata, falling back to the stored expiry time when unreadable."""
        data = self._read_json(KEY_TOKEN_INFO)
        if data is not None:
            try:
                return TokenInfo.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring malformed token info: {e}")
        return self._expiry_fallback()

    def _expiry_fallback(self) -> Optional[TokenInfo]:
        raw = self.storage.get(KEY_TOKEN_EXPIRES_AT)
        if raw is None:
            return None
        try:
            return TokenInfo.from_expiry(int(raw) / 1000)
        except ValueError as e:
            logger.warning(f"Ignoring malformed token expiry: {e}")
            return None

    def set(self, credential: Credential, token_info: TokenInfo) -> None:
        """Make ``credential`` the current one, superseding any previous credential."""
        if isinstance(credential, IdentityToken):
            writes: List[Write] = [
                (KEY_CREDENTIAL, credential.token),
                (KEY_ACCESS_TOKEN, None),
                (KEY_REFRESH_TOKEN, None),
                (KEY_TOKEN_EXPIRES_AT, None),
            ]
        elif isinstance(credential, AccessToken):
            writes = [
                (KEY_ACCESS_TOKEN, credential.token),
                (KEY_REFRESH_TOKEN, credential.refresh_token),
                (KEY_TOKEN_EXPIRES_AT, str(int(token_info.expires_at * 1000))),
                (KEY_CREDENTIAL, None),
            ]
        else:
            raise TypeError(f"Unsupported credential type: {type(credential).__name__}")

        writes.append((KEY_TOKEN_INFO, _dump(token_info.to_dict())))
        self._apply(writes)
        logger.debug(f"Stored {credential.kind.value} credential")

    def clear(self) -> bool:
        """Remove credential, token info, user info and profile snapshot.

        Returns True if anything was removed.
        """
        applied = self._apply([(key, None) for key in SESSION_KEYS])
        if applied:
            logger.info("Cleared stored session")
        return bool(applied)

    # Profile snapshot

    def get_profile_snapshot(self) -> Optional[ProfileSnapshot]:
        data = self._read_json(KEY_PROFILE_SNAPSHOT)
        if data is None:
            return None
        try:
            return ProfileSnapshot.from_dict(data)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed profile snapshot: {e}")
            return None

    def set_profile_snapshot(self, snapshot: Optional[ProfileSnapshot]) -> None:
        value = _dump(snapshot.to_dict()) if snapshot is not None else None
        self._apply([(KEY_PROFILE_SNAPSHOT, value)])

    # User info

    def get_user_info(self) -> Optional[UserInfo]:
        data = self._read_json(KEY_USER_INFO)
        return UserInfo.from_dict(data) if data is not None else None

    def set_user_info(self, user_info: Optional[UserInfo]) -> None:
        value = _dump(user_info.to_dict()) if user_info is not None else None
        self._apply([(KEY_USER_INFO, value)])

    # Local measurement

    def get_local_gender(self) -> Optional[str]:
        gender = self.storage.get(KEY_LOCAL_GENDER)
        return gender.strip() if gender and gender.strip() else None

    def get_local_measurement(self) -> Optional[LocalMeasurement]:
        data = self._read_json(KEY_LOCAL_MEASUREMENT)
        if data is None:
            return None
        return LocalMeasurement(measurement=Measurement.from_record(data), gender=self.get_local_gender())

    def set_local_measurement(self, local: LocalMeasurement) -> None:
        gender = local.gender or local.measurement.gender
        self._apply([
            (KEY_LOCAL_MEASUREMENT, _dump(local.measurement.to_record())),
            (KEY_LOCAL_GENDER, gender),
        ])

    def clear_local_measurement(self) -> None:
        self._apply([(key, None) for key in MEASUREMENT_KEYS])

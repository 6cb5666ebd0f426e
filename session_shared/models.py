"""
Core data models for the Profile Session client.

Credentials, token metadata, measurement records and the cached remote
profile snapshot. Every model converts to and from plain dictionaries so
that components exchange copies rather than live objects.
"""

import copy
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Union
from enum import Enum


SLOT_PREFIX = "body"
HEIGHT_FIELD = "HV"
WEIGHT_FIELD = "WV"
GENDER_FIELD = "Gender"


class CredentialKind(Enum):
    """Discriminant for the two credential variants."""
    IDENTITY_TOKEN = "identity_token"
    ACCESS_TOKEN = "access_token"


class SessionState(Enum):
    """Authentication state of one session controller."""
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRING = "expiring"


class RefreshState(Enum):
    """State of the token refresh scheduler."""
    IDLE = "idle"
    SCHEDULED = "scheduled"
    REFRESHING = "refreshing"


class RefreshUrgency(Enum):
    """How close the current credential is to expiry."""
    NONE = "none"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"
    EXPIRED = "expired"


class RefreshOutcome(Enum):
    """Result of a single refresh evaluation."""
    REFRESHED = "refreshed"
    NOT_NEEDED = "not_needed"
    SKIPPED_IN_FLIGHT = "skipped_in_flight"
    SKIPPED_COOLDOWN = "skipped_cooldown"
    EXPIRED = "expired"


class ReconciliationAction(Enum):
    """Action selected by the reconciliation decision table."""
    NO_OP = "no_op"
    DOWNLOAD = "download"
    UPLOAD = "upload"
    DISCARD_LOCAL = "discard_local"
    ASK_USER = "ask_user"


class ReconciliationChoice(Enum):
    """User answer to the reconciliation prompt."""
    USE_LOCAL = "use_local"
    USE_REMOTE = "use_remote"


class SessionEvent(Enum):
    """Events emitted by a session controller to the UI layer."""
    SESSION_AUTHENTICATED = "session-authenticated"
    SESSION_UNAUTHENTICATED = "session-unauthenticated"
    SESSION_EXPIRED = "session-expired"
    PROFILE_UPDATED = "profile-updated"
    RECONCILIATION_PROMPT_NEEDED = "reconciliation-prompt-needed"
    RECONCILIATION_RESOLVED = "reconciliation-resolved"
    SIGN_IN_FAILED = "sign-in-failed"
    TOKEN_REFRESHED = "token-refreshed"


@dataclass(frozen=True)
class IdentityToken:
    """Self-contained, provider-signed credential. Not refreshable."""
    token: str
    kind: ClassVar[CredentialKind] = CredentialKind.IDENTITY_TOKEN

    def __post_init__(self):
        if not self.token:
            raise ValueError("Identity token cannot be empty")

    @property
    def bearer(self) -> str:
        return self.token

    @property
    def refresh_token(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class AccessToken:
    """Short-lived credential, optionally paired with a refresh token."""
    token: str
    refresh_token: Optional[str] = None
    kind: ClassVar[CredentialKind] = CredentialKind.ACCESS_TOKEN

    def __post_init__(self):
        if not self.token:
            raise ValueError("Access token cannot be empty")

    @property
    def bearer(self) -> str:
        return self.token


Credential = Union[IdentityToken, AccessToken]


@dataclass(frozen=True)
class TokenInfo:
    """Issuance metadata used to compute remaining validity offline."""
    issued_at: float
    lifetime: float

    def __post_init__(self):
        if self.lifetime < 0:
            raise ValueError("Token lifetime cannot be negative")

    @classmethod
    def issued_now(cls, lifetime: float, now: Optional[float] = None) -> 'TokenInfo':
        return cls(issued_at=time.time() if now is None else now, lifetime=float(lifetime))

    @classmethod
    def from_expiry(cls, expires_at: float) -> 'TokenInfo':
        """Build token info from a bare expiry time; the issuance time is unknown."""
        return cls(issued_at=float(expires_at), lifetime=0.0)

    @classmethod
    def from_claims(cls, claims: Dict[str, Any], now: Optional[float] = None) -> 'TokenInfo':
        """Build token info from JWT ``iat``/``exp`` claims.

        An ``iat`` in the future (clock skew) is clamped to ``now`` while
        keeping the provider's expiry time.
        """
        now = time.time() if now is None else now
        if 'exp' not in claims:
            raise ValueError("Token claims carry no expiry")
        expires_at = float(claims['exp'])
        issued_at = min(float(claims.get('iat', now)), now)
        return cls(issued_at=issued_at, lifetime=max(0.0, expires_at - issued_at))

    @property
    def expires_at(self) -> float:
        return self.issued_at + self.lifetime

    def remaining(self, now: float) -> float:
        return self.expires_at - now

    def is_expired(self, now: float) -> bool:
        return self.remaining(now) <= 0

    def to_dict(self) -> Dict[str, Any]:
        return {'issued_at': self.issued_at, 'lifetime': self.lifetime}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TokenInfo':
        return cls(issued_at=float(data['issued_at']), lifetime=float(data['lifetime']))


def _normalize(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return text.upper()


@dataclass
class Measurement:
    """One measurement record. Only height, weight and gender take part in comparisons."""
    height: Any = None
    weight: Any = None
    gender: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Dict[str, Any], gender: Optional[str] = None) -> 'Measurement':
        """Parse a slot record, flat ``{HV, WV, Gender}`` or nested ``{body: {...}}``."""
        data = dict(record or {})
        body = data.get('body')
        if isinstance(body, dict):
            nested = dict(body)
            data = {k: v for k, v in data.items() if k != 'body'}
            data.update(nested)

        extra = {k: copy.deepcopy(v) for k, v in data.items()
                 if k not in (HEIGHT_FIELD, WEIGHT_FIELD, GENDER_FIELD)}
        return cls(
            height=data.get(HEIGHT_FIELD),
            weight=data.get(WEIGHT_FIELD),
            gender=data.get(GENDER_FIELD) or gender,
            extra=extra,
        )

    def to_record(self) -> Dict[str, Any]:
        record = copy.deepcopy(self.extra)
        record[HEIGHT_FIELD] = self.height
        record[WEIGHT_FIELD] = self.weight
        if self.gender:
            record[GENDER_FIELD] = self.gender
        return record

    def matches(self, other: 'Measurement') -> bool:
        return (
            _normalize(self.height) == _normalize(other.height)
            and _normalize(self.weight) == _normalize(other.weight)
            and _normalize(self.gender) == _normalize(other.gender)
        )


@dataclass
class LocalMeasurement:
    """Measurement captured without an active session plus its gender tag."""
    measurement: Measurement
    gender: Optional[str] = None

    @property
    def effective_gender(self) -> Optional[str]:
        return self.measurement.gender or self.gender

    def copy(self) -> 'LocalMeasurement':
        return LocalMeasurement(
            measurement=Measurement.from_record(self.measurement.to_record()),
            gender=self.gender,
        )


def slot_key_for_gender(gender: str) -> str:
    return f"{SLOT_PREFIX}{gender}"


def gender_for_slot_key(slot_key: Optional[str]) -> Optional[str]:
    if slot_key and slot_key.startswith(SLOT_PREFIX) and len(slot_key) > len(SLOT_PREFIX):
        return slot_key[len(SLOT_PREFIX):]
    return None


@dataclass
class ProfileSnapshot:
    """Last fetched remote profile: slot records plus the default slot pointer."""
    slots: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    default_slot: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    def copy(self) -> 'ProfileSnapshot':
        return ProfileSnapshot(
            slots=copy.deepcopy(self.slots),
            default_slot=self.default_slot,
            attributes=copy.deepcopy(self.attributes),
        )

    def has_slot(self, slot_key: str) -> bool:
        return slot_key in self.slots

    def measurement_for_slot(self, slot_key: str) -> Optional[Measurement]:
        record = self.slots.get(slot_key)
        if record is None:
            return None
        return Measurement.from_record(record, gender=gender_for_slot_key(slot_key))

    def default_gender(self) -> Optional[str]:
        if not self.default_slot:
            return None
        measurement = self.measurement_for_slot(self.default_slot)
        if measurement and measurement.gender:
            return measurement.gender
        return gender_for_slot_key(self.default_slot)

    def with_slot(self, slot_key: str, record: Dict[str, Any],
                  default_slot: Optional[str] = None) -> 'ProfileSnapshot':
        updated = self.copy()
        updated.slots[slot_key] = copy.deepcopy(record)
        if default_slot is not None:
            updated.default_slot = default_slot
        return updated

    def without_slot(self, slot_key: str) -> 'ProfileSnapshot':
        updated = self.copy()
        updated.slots.pop(slot_key, None)
        if updated.default_slot == slot_key:
            remaining: List[str] = list(updated.slots)
            updated.default_slot = remaining[0] if remaining else None
        return updated

    def to_dict(self) -> Dict[str, Any]:
        return {
            'slots': copy.deepcopy(self.slots),
            'default_slot': self.default_slot,
            'attributes': copy.deepcopy(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProfileSnapshot':
        slots = data.get('slots') or {}
        if not isinstance(slots, dict):
            raise ValueError("Snapshot slots must be an object")
        return cls(
            slots=copy.deepcopy(slots),
            default_slot=data.get('default_slot') or None,
            attributes=copy.deepcopy(data.get('attributes') or {}),
        )


@dataclass
class UserInfo:
    """Identity claims cached for display."""
    sub: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'sub': self.sub, 'email': self.email, 'name': self.name, 'picture': self.picture}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UserInfo':
        return cls(
            sub=data.get('sub'),
            email=data.get('email'),
            name=data.get('name'),
            picture=data.get('picture'),
        )


@dataclass
class SignInResult:
    """What the identity provider hands back after an interactive sign-in."""
    credential: Credential
    token_info: Optional[TokenInfo] = None
    user_info: Optional[UserInfo] = None


@dataclass
class RefreshedToken:
    """Token endpoint response."""
    access_token: str
    expires_in: float = 3600
    refresh_token: Optional[str] = None


@dataclass
class StorageChange:
    """One storage mutation as delivered by the sync bus."""
    key: str
    value: Optional[str]
    origin: Optional[str] = None


@dataclass
class ReconciliationResult:
    """Outcome of one reconciliation run."""
    action: ReconciliationAction
    slot_key: Optional[str] = None
    choice: Optional[ReconciliationChoice] = None
    snapshot: Optional[ProfileSnapshot] = None
    local: Optional[LocalMeasurement] = None
    completed: bool = True

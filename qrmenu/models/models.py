"""
Domain Models and Data Structures
"""
import json
from typing import Dict, Any, Optional, List, Tuple
from dataclasses import dataclass, field, asdict
from enum import Enum


class SessionState(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    BLOCKED = "BLOCKED"


class TokenKind(str, Enum):
    MAGIC_LINK = "magic_link"
    OTP = "otp"


@dataclass
class SessionContext:
    """What a QR scan or delivery link tells us about the diner"""
    store_id: str
    fingerprint: str
    table_id: Optional[str] = None
    is_delivery: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class ContextualSession:
    """A diner session bound to one store/table and one device"""
    id: str
    store_id: str
    fingerprint: str
    created_at: int
    last_activity: int
    expires_at: int
    table_id: Optional[str] = None
    is_delivery: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_authenticated: bool = False
    customer_id: Optional[str] = None
    order_count: int = 0
    total_spent: float = 0.0
    state: SessionState = SessionState.ACTIVE

    @classmethod
    def from_row(cls, row) -> "ContextualSession":
        return cls(
            id=row["session_id"],
            store_id=row["store_id"],
            fingerprint=row["fingerprint"],
            created_at=row["created_at"],
            last_activity=row["last_activity"],
            expires_at=row["expires_at"],
            table_id=row["table_id"],
            is_delivery=bool(row["is_delivery"]),
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            is_authenticated=bool(row["is_authenticated"]),
            customer_id=row["customer_id"],
            order_count=row["order_count"],
            total_spent=row["total_spent"],
            state=SessionState(row["state"]),
        )

    def is_expired(self, now_ts: int) -> bool:
        return self.state == SessionState.EXPIRED or now_ts >= self.expires_at

    def remaining_sec(self, now_ts: int) -> int:
        return max(0, self.expires_at - now_ts)

    def to_public(self, now_ts: int) -> Dict[str, Any]:
        return {
            "sessionId": self.id,
            "storeId": self.store_id,
            "tableId": self.table_id,
            "isDelivery": self.is_delivery,
            "isAuthenticated": self.is_authenticated,
            "customerId": self.customer_id,
            "expiresAt": self.expires_at,
            "remaining": self.remaining_sec(now_ts),
            "state": self.state.value,
        }


@dataclass
class DeviceInfo:
    """Normalised browser signals a fingerprint is computed from"""
    user_agent: str = ""
    screen_resolution: str = ""
    timezone: str = ""
    language: str = ""
    canvas: Optional[str] = None
    webgl: Optional[str] = None
    device_memory: Optional[float] = None
    hardware_concurrency: Optional[int] = None
    color_depth: Optional[int] = None
    pixel_ratio: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DeviceInfo":
        data = data or {}
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__ if k in data})


@dataclass
class FingerprintResult:
    hash: str
    confidence: float
    device_info: DeviceInfo
    generated_at: int


@dataclass
class FingerprintChange:
    """Result of comparing two device profiles"""
    has_changed: bool
    similarity: float
    risk_level: str  # "low", "medium", "high"
    differences: List[str]


@dataclass
class StoredFingerprint:
    hash: str
    device_info: DeviceInfo
    confidence: float
    usage_count: int
    suspicious_activity: int
    is_blocked: bool
    created_at: int
    last_seen: int
    blocked_reason: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "StoredFingerprint":
        return cls(
            hash=row["hash"],
            device_info=DeviceInfo.from_dict(json.loads(row["device_info"] or "{}")),
            confidence=row["confidence"],
            usage_count=row["usage_count"],
            suspicious_activity=row["suspicious_activity"],
            is_blocked=bool(row["is_blocked"]),
            created_at=row["created_at"],
            last_seen=row["last_seen"],
            blocked_reason=row["blocked_reason"],
        )


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int
    retry_after: int = 0


@dataclass
class AuthToken:
    """A magic-link token or a one-time code, as persisted"""
    id: str
    kind: TokenKind
    phone: str
    store_id: str
    issued_at: int
    expires_at: int
    secret_hash: Optional[str] = None
    fingerprint: Optional[str] = None
    session_id: Optional[str] = None
    table_id: Optional[str] = None
    is_delivery: bool = True
    used: bool = False
    used_at: Optional[int] = None
    revoked: bool = False

    @classmethod
    def from_row(cls, row) -> "AuthToken":
        return cls(
            id=row["token_id"],
            kind=TokenKind(row["kind"]),
            phone=row["phone"],
            store_id=row["store_id"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            secret_hash=row["secret_hash"],
            fingerprint=row["fingerprint"],
            session_id=row["session_id"],
            table_id=row["table_id"],
            is_delivery=bool(row["is_delivery"]),
            used=bool(row["used"]),
            used_at=row["used_at"],
            revoked=bool(row["revoked"]),
        )

    def is_expired(self, now_ts: int) -> bool:
        return now_ts >= self.expires_at


@dataclass
class AuthRequestResult:
    expires_at: int
    remaining: int
    kind: TokenKind = TokenKind.MAGIC_LINK


@dataclass
class Customer:
    id: str
    phone: str
    store_id: str
    created_at: int
    name: Optional[str] = None


@dataclass
class AuthResult:
    session: ContextualSession
    customer: Customer
    access_token: str
    expires_at: int
    is_new_customer: bool = False


# (product, sorted (additional id, quantity) pairs, notes)
ItemKey = Tuple[str, Tuple[Tuple[str, int], ...], str]


@dataclass
class Additional:
    id: str
    name: str = ""
    price: float = 0.0
    quantity: int = 1


@dataclass
class CartItem:
    product_identify: str
    name: str
    price: float
    quantity: int = 1
    notes: str = ""
    additionals: List[Additional] = field(default_factory=list)

    @property
    def identity_key(self) -> ItemKey:
        extras = tuple(sorted((a.id, a.quantity) for a in self.additionals))
        return self.product_identify, extras, self.notes

    @property
    def unit_price(self) -> float:
        return self.price + sum(a.price * a.quantity for a in self.additionals)

    @property
    def line_total(self) -> float:
        return round(self.unit_price * self.quantity, 2)

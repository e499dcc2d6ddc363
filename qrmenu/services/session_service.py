"""
Session Service - contextual diner sessions (store, table or delivery, device)
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from qrmenu.core.config import Settings
from qrmenu.core.errors import (
    FingerprintBlocked, InvalidFingerprint, InvalidSessionState, SessionContextMismatch,
    SessionExpired, SessionLimitExceeded, SessionNotFound,
)
from qrmenu.db.fingerprint import FingerprintStore
from qrmenu.db.session import SessionStore
from qrmenu.models.models import ContextualSession, DeviceInfo, SessionContext, SessionState
from qrmenu.services.fingerprint_service import FingerprintEngine
from qrmenu.services.rate_limiter import RateLimiter, fingerprint_rule
from qrmenu.utils.helpers import new_id, now

log = logging.getLogger(__name__)


class SessionService:
    """
    Lifecycle: created -> active (touched on every request) -> expired or blocked.

    Expiry is always re-checked against the clock; deleting expired rows is
    housekeeping only.
    """

    def __init__(self, store: SessionStore, fingerprints: FingerprintStore, limiter: RateLimiter,
                 settings: Settings, engine: Optional[FingerprintEngine] = None,
                 now_fn: Callable[[], int] = now):
        self.store = store
        self.fingerprints = fingerprints
        self.limiter = limiter
        self.settings = settings
        self.engine = engine or FingerprintEngine(settings.fingerprint_significant_change_threshold, now_fn)
        self.now_fn = now_fn

    def _expiry_for(self, s: ContextualSession, now_ts: int, extra_sec: Optional[int] = None) -> int:
        duration = extra_sec if extra_sec is not None else self.settings.session_duration_sec(s.is_delivery)
        cap = s.created_at + self.settings.session_max_lifetime_sec
        return min(now_ts + duration, cap)

    async def create_session(self, ctx: SessionContext) -> ContextualSession:
        """
        Start (or reattach to) the session for this device at this store/table.
        A second scan of the same QR code by the same device returns the
        session it already has.
        """
        if not ctx.store_id:
            raise InvalidSessionState("store_id is required")
        if not self.engine.is_valid_hash(ctx.fingerprint):
            raise InvalidFingerprint()
        table_id = None if ctx.is_delivery else (ctx.table_id or None)
        if not ctx.is_delivery and table_id is None:
            raise InvalidSessionState("table_id is required for table sessions")

        if await self.fingerprints.is_blocked(ctx.fingerprint):
            log.warning("Blocked fingerprint %s tried to open a session at store %s",
                        ctx.fingerprint[:12], ctx.store_id)
            raise FingerprintBlocked()

        await self.limiter.enforce(
            [fingerprint_rule(ctx.fingerprint, self.settings.rate_limit_fingerprint_per_hour)],
            "Too many requests from this device",
        )

        now_ts = self.now_fn()
        candidate = ContextualSession(
            id=new_id(),
            store_id=ctx.store_id,
            fingerprint=ctx.fingerprint,
            created_at=now_ts,
            last_activity=now_ts,
            expires_at=now_ts + self.settings.session_duration_sec(ctx.is_delivery),
            table_id=table_id,
            is_delivery=ctx.is_delivery,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
        try:
            s, reattached = await self.store.create_or_reattach(
                candidate,
                max_per_fingerprint=self.settings.max_sessions_per_fingerprint,
                max_per_table=self.settings.max_sessions_per_table,
            )
        except SessionLimitExceeded as e:
            if e.details.get("scope") == "fingerprint":
                await self.fingerprints.record_suspicious(ctx.fingerprint, "session cap reached", now_ts)
            raise
        if reattached:
            log.info("Reattached session %s (store=%s table=%s)", s.id, s.store_id, s.table_id)
            return await self.update_activity(s.id)
        log.info("Created session %s (store=%s table=%s delivery=%s)",
                 s.id, s.store_id, s.table_id, s.is_delivery)
        await self._check_ip_rotation(s)
        return s

    async def _check_ip_rotation(self, s: ContextualSession) -> None:
        """One device hopping between many client addresses looks like a scripted client."""
        if not s.ip_address:
            return
        since = s.created_at - self.settings.ip_rotation_window_minutes * 60
        n = await self.store.distinct_ips(s.fingerprint, since)
        if n >= self.settings.ip_rotation_threshold:
            log.warning("Fingerprint %s opened sessions from %d addresses", s.fingerprint[:12], n)
            await self.fingerprints.record_suspicious(s.fingerprint, f"ip rotation ({n} addresses)", s.created_at)

    async def get_session(self, session_id: str) -> ContextualSession:
        """Live session or SessionNotFound / SessionExpired."""
        s = await self.store.get(session_id)
        if s is None:
            raise SessionNotFound()
        if s.state == SessionState.BLOCKED:
            raise FingerprintBlocked("Session blocked")
        if s.is_expired(self.now_fn()):
            raise SessionExpired()
        return s

    async def validate_session(self, session_id: str, store_id: str, table_id: Optional[str] = None,
                               fingerprint: Optional[str] = None,
                               device_info: Optional[DeviceInfo] = None) -> ContextualSession:
        """
        Check that the session is alive and belongs to this store/table/device,
        then touch it. A wrong context counts as suspicious activity for the
        session's device.
        """
        s = await self.get_session(session_id)
        now_ts = self.now_fn()

        if await self.fingerprints.is_blocked(s.fingerprint):
            await self.store.block_fingerprint_sessions(s.fingerprint)
            raise FingerprintBlocked()

        mismatch = None
        if s.store_id != store_id:
            mismatch = "store"
        elif table_id is not None and not s.is_delivery and s.table_id != table_id:
            mismatch = "table"
        elif fingerprint is not None and fingerprint != s.fingerprint:
            mismatch = await self._fingerprint_mismatch(s, fingerprint, device_info)

        if mismatch:
            log.warning("Session %s context mismatch (%s)", s.id, mismatch)
            await self.fingerprints.record_suspicious(s.fingerprint, f"{mismatch} mismatch", now_ts)
            raise SessionContextMismatch(f"Session does not match this {mismatch}")

        return await self.update_activity(s.id)

    async def _fingerprint_mismatch(self, s: ContextualSession, fingerprint: str,
                                    device_info: Optional[DeviceInfo]) -> Optional[str]:
        """
        A different hash alone can be browser drift (updated user agent,
        moved window to another screen). Both profiles are compared and only
        a high-risk change, or one we cannot compare, counts as another device.
        """
        old = await self.fingerprints.get(s.fingerprint)
        if device_info is None:
            new = await self.fingerprints.get(fingerprint)
            device_info = new.device_info if new else None
        if old is None or device_info is None:
            return "device"
        change = self.engine.detect_change(old.device_info, device_info)
        if change.risk_level == "high":
            return "device"
        log.info("Session %s fingerprint drift tolerated (risk=%s, similarity=%.2f)",
                 s.id, change.risk_level, change.similarity)
        return None

    async def update_activity(self, session_id: str) -> ContextualSession:
        """Slide the expiry forward; capped at created_at + max lifetime, never shortened."""
        s = await self.get_session(session_id)
        now_ts = self.now_fn()
        await self.store.touch(s.id, now_ts, self._expiry_for(s, now_ts))
        return await self.get_session(s.id)

    async def extend_session(self, session_id: str, additional_minutes: int) -> ContextualSession:
        if additional_minutes <= 0:
            raise InvalidSessionState("additional_minutes must be positive")
        s = await self.get_session(session_id)
        now_ts = self.now_fn()
        target = min(s.expires_at + additional_minutes * 60,
                     s.created_at + self.settings.session_max_lifetime_sec)
        await self.store.touch(s.id, now_ts, target)
        return await self.get_session(s.id)

    async def associate_customer(self, session_id: str, customer_id: str) -> ContextualSession:
        s = await self.get_session(session_id)
        if s.is_authenticated:
            if s.customer_id == customer_id:
                return s
            raise InvalidSessionState("Session already belongs to another customer")
        if not await self.store.associate_customer(s.id, customer_id, self.now_fn()):
            # lost a race with another verification or the session just expired
            raise InvalidSessionState("Session can no longer be identified")
        log.info("Session %s identified as customer %s", s.id, customer_id)
        return await self.get_session(s.id)

    async def record_order(self, session_id: str, amount: float) -> ContextualSession:
        if amount < 0:
            raise InvalidSessionState("Order amount cannot be negative")
        s = await self.get_session(session_id)
        if not await self.store.record_order(s.id, amount, self.now_fn()):
            raise SessionExpired()
        return await self.get_session(s.id)

    async def expire_session(self, session_id: str) -> bool:
        deleted = await self.store.delete(session_id)
        if deleted:
            log.info("Session %s ended", session_id)
        return deleted

    async def clean_expired_sessions(self) -> int:
        n = await self.store.delete_expired(self.now_fn())
        if n:
            log.info("Removed %d expired session(s)", n)
        return n

    async def get_active_sessions(self, store_id: str) -> List[ContextualSession]:
        return await self.store.list_active(store_id, self.now_fn())

    async def get_session_stats(self, store_id: Optional[str] = None) -> Dict[str, Any]:
        return await self.store.stats(self.now_fn(), store_id)

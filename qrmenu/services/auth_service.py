"""
WhatsApp authentication: magic links and one-time codes.

Both flows share the per-phone and per-device request quotas. Tokens are
single use; the used flag is flipped with a conditional update so only one
concurrent verification can win.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set

from jose import JWTError, jwt

from qrmenu.core.config import Settings
from qrmenu.core.errors import (
    AuthFailed, FingerprintBlocked, InvalidPhoneNumber, InvalidSessionState, RateLimitExceeded,
    SessionContextMismatch, TokenAlreadyUsed, TokenExpired, TokenNotFound,
)
from qrmenu.db.customers import CustomerDirectory
from qrmenu.db.fingerprint import FingerprintStore
from qrmenu.db.tokens import TokenStore
from qrmenu.models.models import (
    AuthRequestResult, AuthResult, AuthToken, ContextualSession, SessionContext, TokenKind,
)
from qrmenu.services.messaging import MessagingGateway
from qrmenu.services.rate_limiter import RateLimiter, fingerprint_rule, whatsapp_rules
from qrmenu.services.session_service import SessionService
from qrmenu.utils.helpers import constant_time_equals, hmac_hex, new_id, new_numeric_code, now
from qrmenu.utils.phone import mask_phone, normalize_phone
from qrmenu.utils.url_utils import build_magic_link

log = logging.getLogger(__name__)

ALGORITHM = "HS256"
_DUMMY_HASH = "0" * 64


class MagicLinkAuthService:

    def __init__(self, tokens: TokenStore, sessions: SessionService, customers: CustomerDirectory,
                 gateway: MessagingGateway, limiter: RateLimiter, fingerprints: FingerprintStore,
                 settings: Settings, secret: str, now_fn: Callable[[], int] = now):
        self.tokens = tokens
        self.sessions = sessions
        self.customers = customers
        self.gateway = gateway
        self.limiter = limiter
        self.fingerprints = fingerprints
        self.settings = settings
        self.secret = secret
        self.now_fn = now_fn
        self._pending: Set[asyncio.Task] = set()

    # ---------------- dispatch ----------------

    def _dispatch(self, phone: str, content: str) -> None:
        """Fire-and-forget; the request has already succeeded once the token is stored."""
        task = asyncio.create_task(self._send(phone, content))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, phone: str, content: str) -> None:
        try:
            result = await self.gateway.send_whatsapp_message(phone, content)
        except Exception:
            log.exception("WhatsApp dispatch to %s crashed", mask_phone(phone))
            return
        if not result.success:
            log.warning("WhatsApp dispatch to %s failed via %s: %s",
                        mask_phone(phone), result.provider, result.error_message)

    async def flush(self) -> None:
        """Wait for in-flight dispatches (shutdown, tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    # ---------------- shared request path ----------------

    async def _prepare_request(self, phone: str, store_id: str, fingerprint: Optional[str],
                               session_id: Optional[str], table_id: Optional[str],
                               is_delivery: bool) -> Dict[str, Any]:
        phone = normalize_phone(phone)
        if session_id:
            s = await self.sessions.get_session(session_id)
            if s.store_id != store_id:
                raise SessionContextMismatch("Session does not match this store")
            fingerprint = fingerprint or s.fingerprint
            table_id, is_delivery = s.table_id, s.is_delivery
        if fingerprint and await self.fingerprints.is_blocked(fingerprint):
            raise FingerprintBlocked()

        rules = whatsapp_rules(phone, self.settings.rate_limit_whatsapp_per_hour,
                               self.settings.rate_limit_whatsapp_per_day)
        if fingerprint:
            rules.append(fingerprint_rule(fingerprint, self.settings.rate_limit_fingerprint_per_hour))
        quota = await self.limiter.enforce(rules, "Too many authentication requests")
        return {
            "phone": phone,
            "store_id": store_id,
            "fingerprint": fingerprint,
            "session_id": session_id,
            "table_id": table_id,
            "is_delivery": is_delivery,
            "remaining": quota.remaining,
        }

    def _new_token(self, kind: TokenKind, req: Dict[str, Any], secret_hash: Optional[str] = None) -> AuthToken:
        issued = self.now_fn()
        return AuthToken(
            id=new_id(),
            kind=kind,
            phone=req["phone"],
            store_id=req["store_id"],
            issued_at=issued,
            expires_at=issued + self.settings.token_ttl_sec,
            secret_hash=secret_hash,
            fingerprint=req["fingerprint"],
            session_id=req["session_id"],
            table_id=req["table_id"],
            is_delivery=req["is_delivery"],
        )

    # ---------------- magic link ----------------

    def sign_link_token(self, t: AuthToken) -> str:
        claims = {
            "jti": t.id,
            "sub": t.phone,
            "store": t.store_id,
            "iat": t.issued_at,
            "exp": t.expires_at,
            "ctx": {"tableId": t.table_id, "isDelivery": t.is_delivery, "fingerprint": t.fingerprint},
        }
        return jwt.encode(claims, self.secret, algorithm=ALGORITHM)

    async def request_magic_link(self, phone: str, store_id: str, fingerprint: Optional[str] = None,
                                 session_id: Optional[str] = None, table_id: Optional[str] = None,
                                 is_delivery: bool = True, origin: Optional[str] = None) -> AuthRequestResult:
        req = await self._prepare_request(phone, store_id, fingerprint, session_id, table_id, is_delivery)
        t = self._new_token(TokenKind.MAGIC_LINK, req)
        await self.tokens.insert(t)

        base = origin or self.settings.external_origin or (self.settings.allowed_origins or ["http://localhost:8000"])[0]
        link = build_magic_link(base, self.sign_link_token(t))
        self._dispatch(t.phone, (
            f"Tap to confirm your number and continue your order:\n{link}\n\n"
            f"This link expires in {self.settings.token_ttl_minutes} minutes and works only once."
        ))
        log.info("Magic link issued for %s (store=%s, expires_at=%d)", mask_phone(t.phone), store_id, t.expires_at)
        return AuthRequestResult(expires_at=t.expires_at, remaining=req["remaining"], kind=TokenKind.MAGIC_LINK)

    async def verify_token(self, token: str, session_id: Optional[str] = None,
                           fingerprint: Optional[str] = None) -> AuthResult:
        try:
            claims = jwt.decode(token, self.secret, algorithms=[ALGORITHM], options={"verify_exp": False})
        except JWTError:
            raise TokenNotFound()
        token_id = claims.get("jti")
        if not token_id:
            raise TokenNotFound()

        attempt = await self.limiter.hit(f"magic_link:verify:{token_id}",
                                         self.settings.token_max_verify_attempts,
                                         self.settings.token_ttl_sec)
        if not attempt.allowed:
            raise RateLimitExceeded(attempt.retry_after, "Too many attempts for this link")

        t = await self.tokens.get(token_id)
        if t is None or t.kind != TokenKind.MAGIC_LINK or t.revoked:
            raise TokenNotFound()
        if t.used:
            raise TokenAlreadyUsed()
        if t.is_expired(self.now_fn()):
            raise TokenExpired()

        s = await self._resolve_session(t, session_id, fingerprint)
        if not await self.tokens.consume(t.id, self.now_fn()):
            raise TokenAlreadyUsed() if (await self.tokens.get(t.id)).used else TokenExpired()
        log.info("Magic link %s verified for %s", t.id[:8], mask_phone(t.phone))
        return await self._complete(t, s)

    # ---------------- one-time code ----------------

    def _code_hash(self, token_id: str, code: str) -> str:
        return hmac_hex(self.secret, f"{token_id}:{code}")

    async def request_code(self, phone: str, store_id: str, fingerprint: Optional[str] = None,
                           session_id: Optional[str] = None, table_id: Optional[str] = None,
                           is_delivery: bool = True) -> AuthRequestResult:
        req = await self._prepare_request(phone, store_id, fingerprint, session_id, table_id, is_delivery)
        code = new_numeric_code(self.settings.otp_length)
        t = self._new_token(TokenKind.OTP, req)
        t.secret_hash = self._code_hash(t.id, code)

        revoked = await self.tokens.revoke_codes(t.phone, store_id)
        if revoked:
            log.debug("Superseded %d earlier code(s) for %s", revoked, mask_phone(t.phone))
        await self.tokens.insert(t)

        self._dispatch(t.phone, (
            f"Your verification code is {code}.\n"
            f"It expires in {self.settings.token_ttl_minutes} minutes. Do not share it with anyone."
        ))
        log.info("Code issued for %s (store=%s, expires_at=%d)", mask_phone(t.phone), store_id, t.expires_at)
        return AuthRequestResult(expires_at=t.expires_at, remaining=req["remaining"], kind=TokenKind.OTP)

    async def verify_code(self, phone: str, code: str, store_id: str, session_id: Optional[str] = None,
                          fingerprint: Optional[str] = None) -> AuthResult:
        """
        Unknown phone, wrong code, expired code and exhausted attempts all
        raise the same AuthFailed so callers cannot tell which phones have
        codes outstanding. Every attempt is counted and hashed, whether or
        not a code exists. TokenAlreadyUsed is only reported to a caller who
        submits the spent code itself.
        """
        code = (code or "").strip()
        try:
            phone = normalize_phone(phone)
        except InvalidPhoneNumber:
            raise AuthFailed()

        t = await self.tokens.latest_code(phone, store_id)
        key = f"otp:verify:{t.id}" if t else f"otp:verify:unknown:{phone}:{store_id}"
        attempt = await self.limiter.hit(key, self.settings.otp_max_attempts, self.settings.token_ttl_sec)
        matches = constant_time_equals(self._code_hash(t.id if t else "missing", code),
                                       (t.secret_hash if t else None) or _DUMMY_HASH)

        if t is None or t.revoked:
            raise AuthFailed()
        if not attempt.allowed:
            if not t.used:
                await self._code_exhausted(t, fingerprint)
            raise AuthFailed()
        if t.used:
            raise TokenAlreadyUsed() if matches else AuthFailed()
        if t.is_expired(self.now_fn()):
            raise AuthFailed()
        if not matches:
            if attempt.remaining == 0:
                await self._code_exhausted(t, fingerprint)
            raise AuthFailed()

        s = await self._resolve_session(t, session_id, fingerprint)
        if not await self.tokens.consume(t.id, self.now_fn()):
            raise TokenAlreadyUsed() if (await self.tokens.get(t.id)).used else AuthFailed()
        log.info("Code %s verified for %s", t.id[:8], mask_phone(t.phone))
        return await self._complete(t, s)

    async def _code_exhausted(self, t: AuthToken, fingerprint: Optional[str]) -> None:
        await self.tokens.revoke(t.id)
        log.warning("Code %s for %s exhausted its attempts", t.id[:8], mask_phone(t.phone))
        fp = fingerprint or t.fingerprint
        if fp:
            await self.fingerprints.record_suspicious(fp, "code attempts exhausted", self.now_fn())

    # ---------------- completion ----------------

    async def _resolve_session(self, t: AuthToken, session_id: Optional[str],
                               fingerprint: Optional[str]) -> ContextualSession:
        """The session being identified: the caller's, the requester's, or a new one from the token context."""
        sid = session_id or t.session_id
        if sid:
            s = await self.sessions.get_session(sid)
            if s.store_id != t.store_id:
                raise SessionContextMismatch("Session does not match this store")
            return s
        fp = fingerprint or t.fingerprint
        if not fp:
            raise InvalidSessionState("No session to identify")
        return await self.sessions.create_session(SessionContext(
            store_id=t.store_id,
            fingerprint=fp,
            table_id=t.table_id,
            is_delivery=t.is_delivery,
        ))

    def issue_credential(self, s: ContextualSession) -> str:
        claims = {
            "sub": s.customer_id,
            "sid": s.id,
            "store": s.store_id,
            "typ": "session",
            "iat": self.now_fn(),
            "exp": s.expires_at,
        }
        return jwt.encode(claims, self.secret, algorithm=ALGORITHM)

    def decode_credential(self, credential: str) -> Dict[str, Any]:
        try:
            claims = jwt.decode(credential, self.secret, algorithms=[ALGORITHM],
                                options={"verify_exp": False})
        except JWTError:
            raise AuthFailed("Invalid credential")
        if claims.get("typ") != "session" or int(claims.get("exp", 0)) <= self.now_fn():
            raise AuthFailed("Invalid credential")
        return claims

    async def _complete(self, t: AuthToken, s: ContextualSession) -> AuthResult:
        customer = await self.customers.find_customer_by_phone(t.phone, t.store_id)
        is_new = customer is None
        if is_new:
            customer = await self.customers.create_customer(t.phone, t.store_id, self.now_fn())
        s = await self.sessions.associate_customer(s.id, customer.id)
        return AuthResult(
            session=s,
            customer=customer,
            access_token=self.issue_credential(s),
            expires_at=s.expires_at,
            is_new_customer=is_new,
        )

    async def cleanup(self) -> int:
        return await self.tokens.delete_expired(self.now_fn())

# qrmenu/core/app.py
import asyncio, base64, logging, secrets
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.sessions import SessionMiddleware

from qrmenu.core.config import Settings, load_settings
from qrmenu.core.errors import QRMenuError, SessionNotFound
from qrmenu.db.customers import CustomerDirectory, SqliteCustomerDirectory
from qrmenu.db.database import Database
from qrmenu.db.fingerprint import FingerprintStore
from qrmenu.db.session import SessionStore
from qrmenu.db.tokens import TokenStore
from qrmenu.models.models import SessionContext
from qrmenu.models.schemas import AuthRequestBody, CartSyncBody, CodeVerifyBody, OrderBody, SessionInitBody
from qrmenu.services.auth_service import MagicLinkAuthService
from qrmenu.services.cart import CartTTLStore
from qrmenu.services.fingerprint_service import FingerprintEngine
from qrmenu.services.messaging import MessagingGateway, build_gateway
from qrmenu.services.rate_limiter import RateLimiter
from qrmenu.services.session_service import SessionService
from qrmenu.utils.helpers import b64u, constant_time_equals, now
from qrmenu.utils.url_utils import link_origin

log = logging.getLogger(__name__)


# ---------------- Security / request-id middleware ----------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    # JSON only; nothing here is meant to be framed or rendered
    CSP_API = "default-src 'none'; frame-ancestors 'none'"

    async def dispatch(self, request: Request, call_next):
        resp = await call_next(request)
        resp.headers.setdefault("Content-Security-Policy", self.CSP_API)
        # magic-link tokens travel in the query string
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        if request.url.path.startswith(("/auth/", "/session/")):
            resp.headers.setdefault("Cache-Control", "no-store")
        return resp


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or b64u(secrets.token_bytes(9))
        request.state.request_id = rid
        resp = await call_next(request)
        resp.headers["X-Request-ID"] = rid
        return resp


def _client_ip(req: Request, trust_proxy_headers: bool = False) -> Optional[str]:
    forwarded = req.headers.get("x-forwarded-for") if trust_proxy_headers else None
    if forwarded:
        return forwarded.split(",")[0].strip()
    return req.client.host if req.client else None


def create_app(settings: Optional[Settings] = None, gateway: Optional[MessagingGateway] = None,
               customers: Optional[CustomerDirectory] = None,
               now_fn: Callable[[], int] = now) -> FastAPI:
    """Build the API with its services wired to one database."""
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s [%(name)s.%(funcName)s] %(message)s")
    log.info("Loaded config from: %s", settings.cfg_file_used or "<defaults>")
    for warning in settings.warnings:
        log.warning(warning)

    token_secret = settings.token_secret or secrets.token_urlsafe(32)
    cookie_secret = settings.session_secret_key or base64.urlsafe_b64encode(secrets.token_bytes(32)).decode()
    if not settings.session_secret_key:
        log.warning("No session secret configured; generated ephemeral dev key.")

    db = Database(settings.db_path)
    engine = FingerprintEngine(settings.fingerprint_significant_change_threshold, now_fn)
    fingerprints = FingerprintStore(db, settings.fingerprint_block_threshold)
    limiter = RateLimiter(db, now_fn)
    sessions = SessionService(SessionStore(db, settings.session_activity_timeout_sec), fingerprints, limiter,
                              settings, engine, now_fn)
    auth = MagicLinkAuthService(
        tokens=TokenStore(db),
        sessions=sessions,
        customers=customers or SqliteCustomerDirectory(db),
        gateway=gateway or build_gateway(settings),
        limiter=limiter,
        fingerprints=fingerprints,
        settings=settings,
        secret=token_secret,
        now_fn=now_fn,
    )

    app = FastAPI(
        title="QR Menu API",
        description="""Diner sessions and WhatsApp identification for QR-code ordering""",
        version="1.0.0",
        middleware=[
            Middleware(RequestIDMiddleware),
            Middleware(SecurityHeadersMiddleware),
            Middleware(SessionMiddleware,
                       secret_key=cookie_secret,
                       session_cookie=settings.session_cookie_name,
                       https_only=settings.https_only,
                       same_site=settings.session_samesite),
        ],
    )
    app.state.settings = settings
    app.state.db = db
    app.state.engine = engine
    app.state.fingerprints = fingerprints
    app.state.limiter = limiter
    app.state.sessions = sessions
    app.state.auth = auth
    app.state.cleanup_task = None

    @app.exception_handler(QRMenuError)
    async def _domain_error(req: Request, exc: QRMenuError):
        headers = {}
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            headers["Retry-After"] = str(retry_after)
        return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)

    # ---- Background cleanup task ----
    async def run_cleanup() -> dict:
        return {
            "sessions": await sessions.clean_expired_sessions(),
            "tokens": await auth.cleanup(),
            "rate_limits": await limiter.cleanup(),
            "fingerprints": await fingerprints.cleanup(now_fn() - settings.fingerprint_retention_days * 86400),
        }

    async def _periodic_cleanup():
        while True:
            await asyncio.sleep(settings.cleanup_interval_minutes * 60)
            try:
                removed = await run_cleanup()
                log.info("Periodic cleanup: %s", removed)
            except Exception:
                log.exception("Periodic cleanup failed")

    app.state.run_cleanup = run_cleanup

    @app.on_event("startup")
    async def _startup():
        await db.init()
        await run_cleanup()
        app.state.cleanup_task = asyncio.create_task(_periodic_cleanup())
        log.info("Started periodic cleanup every %d min", settings.cleanup_interval_minutes)

    @app.on_event("shutdown")
    async def _shutdown():
        task = app.state.cleanup_task
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await auth.flush()
        await db.close()

    def _session_id(req: Request) -> str:
        sid = req.session.get("sid")
        if not sid:
            raise SessionNotFound("No session")
        return sid

    # ---------------- session ----------------

    @app.post("/session/init", tags=["session"], summary="Open or resume a diner session")
    async def session_init(body: SessionInitBody, req: Request):
        fp = engine.generate(body.signals)
        stored = await fingerprints.observe(fp, now_fn())
        s = await sessions.create_session(SessionContext(
            store_id=body.storeId,
            fingerprint=fp.hash,
            table_id=body.tableId,
            is_delivery=body.isDelivery,
            ip_address=_client_ip(req, settings.trust_proxy_headers),
            user_agent=req.headers.get("user-agent"),
        ))
        req.session["sid"] = s.id
        return {**s.to_public(now_fn()), "fingerprint": fp.hash, "confidence": fp.confidence,
                "riskScore": fingerprints.risk_score(stored)}

    @app.get("/session/validate", tags=["session"])
    async def session_validate(req: Request, storeId: str, tableId: Optional[str] = None,
                               fingerprint: Optional[str] = None):
        s = await sessions.validate_session(_session_id(req), storeId, tableId, fingerprint)
        return s.to_public(now_fn())

    @app.post("/session/activity", tags=["session"])
    async def session_activity(req: Request):
        s = await sessions.update_activity(_session_id(req))
        return s.to_public(now_fn())

    @app.post("/session/order", tags=["session"])
    async def session_order(body: OrderBody, req: Request):
        s = await sessions.record_order(_session_id(req), body.amount)
        return {"orderCount": s.order_count, "totalSpent": round(s.total_spent, 2)}

    @app.post("/session/logout", tags=["session"])
    async def session_logout(req: Request):
        sid = req.session.get("sid")
        if sid:
            await sessions.expire_session(sid)
        req.session.clear()
        return {"ok": True}

    def _require_admin(req: Request) -> None:
        if settings.admin_api_key:
            if not constant_time_equals(req.headers.get("X-Admin-Key", ""), settings.admin_api_key):
                raise HTTPException(status_code=403, detail="Invalid admin key")
        elif not settings.dev_allow_insecure_cookie:
            raise HTTPException(status_code=403, detail="Admin endpoint only available in development mode")

    @app.get("/session/stats", tags=["session"])
    async def session_stats(req: Request, storeId: Optional[str] = None):
        _require_admin(req)
        return await sessions.get_session_stats(storeId)

    # ---------------- WhatsApp auth ----------------

    @app.post("/auth/whatsapp/request", tags=["auth"], summary="Send a magic link or code over WhatsApp")
    async def auth_request(body: AuthRequestBody, req: Request):
        sid = req.session.get("sid")
        if body.mode == "code":
            result = await auth.request_code(body.phone, body.storeId, session_id=sid,
                                             table_id=body.tableId, is_delivery=body.isDelivery)
        else:
            result = await auth.request_magic_link(
                body.phone, body.storeId, session_id=sid, table_id=body.tableId,
                is_delivery=body.isDelivery,
                origin=link_origin(req, settings.external_origin, settings.allowed_origins,
                                   settings.trust_proxy_headers),
            )
        return {"ok": True, "mode": body.mode, "expiresAt": result.expires_at, "remaining": result.remaining}

    def _auth_response(req: Request, result) -> dict:
        req.session["sid"] = result.session.id
        req.session["credential"] = result.access_token
        return {
            "ok": True,
            "accessToken": result.access_token,
            "expiresAt": result.expires_at,
            "customerId": result.customer.id,
            "isNewCustomer": result.is_new_customer,
            "session": result.session.to_public(now_fn()),
        }

    @app.get("/auth/whatsapp/verify", tags=["auth"], summary="Magic-link landing")
    async def auth_verify(token: str, req: Request):
        result = await auth.verify_token(token, session_id=req.session.get("sid"))
        return _auth_response(req, result)

    @app.post("/auth/whatsapp/code/verify", tags=["auth"])
    async def auth_code_verify(body: CodeVerifyBody, req: Request):
        result = await auth.verify_code(body.phone, body.code, body.storeId, session_id=req.session.get("sid"))
        return _auth_response(req, result)

    # ---------------- cart ----------------

    @app.post("/cart/sync", tags=["cart"], summary="Re-validate a client cart against the session")
    async def cart_sync(body: CartSyncBody, req: Request):
        cart = CartTTLStore.from_dict(body.cart.model_dump(), settings.cart_ttl_hours,
                                     settings.cart_ttl_delivery_hours, now_fn)
        session = None
        session_lost = False
        sid = req.session.get("sid")
        if sid:
            try:
                session = await sessions.get_session(sid)
            except QRMenuError as e:
                log.info("Cart sync without live session (%s)", e.kind)
                session_lost = True
        cleared = cart.sync_cart(session)
        if session_lost and cart.items:
            cart.clear()
            cleared = True
        return {
            "cleared": cleared,
            "validForCheckout": cart.is_valid_for_checkout(session),
            "totalItems": cart.total_items,
            "totalPrice": cart.total_price,
            "cart": cart.to_dict(),
        }

    @app.get("/healthz", include_in_schema=False)
    async def healthz():
        return {"ok": True}

    return app

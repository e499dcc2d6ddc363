"""
URL canonicalization and magic-link construction
"""
import logging
from typing import List, Optional
from urllib.parse import urlencode, urlsplit
from fastapi import Request

log = logging.getLogger(__name__)

MAGIC_LINK_PATH = "/auth/whatsapp/verify"


def canonicalize_origin(url: str) -> Optional[str]:
    """scheme://host[:port] with default ports dropped; None if `url` has no host."""
    parts = urlsplit(url)
    scheme = (parts.scheme or "").lower()
    host = (parts.hostname or "").lower()
    if not scheme or not host:
        return None
    if ":" in host:
        host = f"[{host}]"  # IPv6
    port = parts.port
    if port and (scheme, port) not in (("https", 443), ("http", 80)):
        return f"{scheme}://{host}:{port}"
    return f"{scheme}://{host}"


def is_allowed_origin(origin: str, allowed_origins: List[str]) -> bool:
    canonical = canonicalize_origin(origin)
    return canonical is not None and canonical in {canonicalize_origin(o) for o in allowed_origins}


def request_origin(request: Request, external_origin: Optional[str] = None,
                   trust_proxy_headers: bool = False) -> str:
    """Origin the client sees: the configured external origin, else the proxy headers, else the request URL"""
    if external_origin:
        return canonicalize_origin(external_origin) or external_origin.rstrip("/")
    headers = request.headers if trust_proxy_headers else {}
    scheme = headers.get("x-forwarded-proto") or request.url.scheme
    netloc = headers.get("x-forwarded-host") or request.url.netloc
    fwd_port = headers.get("x-forwarded-port")
    if fwd_port and urlsplit(f"//{netloc}").port is None:
        netloc = f"{netloc}:{fwd_port}"
    return canonicalize_origin(f"{scheme}://{netloc}") or f"{scheme}://{netloc}"


def link_origin(request: Request, external_origin: Optional[str], allowed_origins: List[str],
                trust_proxy_headers: bool = False) -> Optional[str]:
    """
    Origin for links sent to a diner. A configured external origin is used as is;
    one derived from the request must be in `allowed_origins`, otherwise the
    first allowed origin is used.
    """
    if external_origin:
        return request_origin(request, external_origin)
    origin = request_origin(request, trust_proxy_headers=trust_proxy_headers)
    if is_allowed_origin(origin, allowed_origins):
        return origin
    log.warning("Request origin %s is not allowed; links use the default origin", origin)
    return canonicalize_origin(allowed_origins[0]) if allowed_origins else None


def build_magic_link(origin: str, token: str) -> str:
    return f"{origin.rstrip('/')}{MAGIC_LINK_PATH}?{urlencode({'token': token})}"

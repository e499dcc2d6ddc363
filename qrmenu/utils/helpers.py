# qrmenu/utils/helpers.py
import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Any, Dict

log = logging.getLogger(__name__)


# -------- Base64 utility --------
def b64u(data: bytes) -> str:
    """Base64url encode bytes to string."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


# -------- Hashing utilities --------
def canonical_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def hmac_hex(secret: str, data: str) -> str:
    return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# -------- Time utility --------
def now() -> int:
    """Get current timestamp."""
    return int(time.time())


# -------- Identifier utilities --------
def new_id(nbytes: int = 18) -> str:
    """Opaque, unguessable identifier."""
    return b64u(secrets.token_bytes(nbytes))


def new_numeric_code(length: int) -> str:
    """Uniformly random, zero-padded numeric code."""
    return str(secrets.randbelow(10 ** length)).zfill(length)

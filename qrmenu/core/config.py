# qrmenu/core/config.py
from __future__ import annotations
import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Literal, Dict, Any, List
import yaml

log = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the merged configuration is inconsistent."""


@dataclass
class Settings:
    # Server / external
    external_origin: Optional[str]
    allowed_origins: List[str]
    trust_proxy_headers: bool
    admin_api_key: Optional[str]
    # Cookie/session
    session_cookie_name: str
    session_samesite: Literal["lax", "strict", "none"]
    session_secret_key: Optional[str]
    dev_allow_insecure_cookie: bool
    # DB
    db_path: str
    # Diner sessions (minutes)
    session_duration_table_minutes: int
    session_duration_delivery_minutes: int
    session_max_lifetime_minutes: int
    session_activity_timeout_minutes: int
    max_sessions_per_table: int
    max_sessions_per_fingerprint: int
    cleanup_interval_minutes: int
    # Rate limits
    rate_limit_whatsapp_per_hour: int
    rate_limit_whatsapp_per_day: int
    rate_limit_fingerprint_per_hour: int
    # Magic links / one-time codes
    token_secret: Optional[str]
    token_ttl_minutes: int
    token_max_verify_attempts: int
    otp_length: int
    otp_max_attempts: int
    # Cart
    cart_ttl_hours: int
    cart_ttl_delivery_hours: int
    # Fingerprints
    fingerprint_block_threshold: int
    fingerprint_significant_change_threshold: int
    fingerprint_retention_days: int
    ip_rotation_threshold: int
    ip_rotation_window_minutes: int
    # WhatsApp gateway
    whatsapp_provider: Literal["log", "cloud"]
    whatsapp_api_url: str
    whatsapp_phone_number_id: Optional[str]
    whatsapp_access_token: Optional[str]
    whatsapp_timeout_sec: int
    # Logging
    log_level: str
    # Informational
    cfg_file_used: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def https_only(self) -> bool:
        return not self.dev_allow_insecure_cookie

    def session_duration_sec(self, is_delivery: bool) -> int:
        minutes = self.session_duration_delivery_minutes if is_delivery else self.session_duration_table_minutes
        return minutes * 60

    @property
    def session_max_lifetime_sec(self) -> int:
        return self.session_max_lifetime_minutes * 60

    @property
    def session_activity_timeout_sec(self) -> int:
        return self.session_activity_timeout_minutes * 60

    @property
    def token_ttl_sec(self) -> int:
        return self.token_ttl_minutes * 60


_DEFAULTS: Dict[str, Any] = {
    "server": {
        "external_origin": None,
        "allowed_origins": ["http://localhost:8000"],
        "trust_proxy_headers": False,  # only behind a proxy that overwrites X-Forwarded-*
        "admin_api_key": None,
    },
    "db": {"path": "data/qrmenu.db"},
    "session": {
        "cookie_name": "qrmenu_session",
        "same_site": "lax",
        "secret_key": None,  # if None, app will generate an ephemeral key on startup (dev only)
        "dev_allow_insecure_cookie": True,
        "duration_table_minutes": 240,
        "duration_delivery_minutes": 120,
        "max_lifetime_minutes": 480,
        "activity_timeout_minutes": 30,
        "max_per_table": 10,
        "max_per_fingerprint": 3,
        "cleanup_interval_minutes": 60,
    },
    "rate_limits": {
        "whatsapp_per_hour": 2,
        "whatsapp_per_day": 3,
        "fingerprint_per_hour": 100,
    },
    "auth": {
        "token_secret": None,
        "token_ttl_minutes": 15,
        "token_max_verify_attempts": 5,
        "otp_length": 6,
        "otp_max_attempts": 3,
    },
    "cart": {"ttl_hours": 4, "ttl_delivery_hours": 2},
    "fingerprint": {
        "block_threshold": 5,
        "significant_change_threshold": 2,
        "retention_days": 30,
        "ip_rotation_threshold": 5,
        "ip_rotation_window_minutes": 30,
    },
    "whatsapp": {
        "provider": "log",
        "api_url": "https://graph.facebook.com/v19.0",
        "phone_number_id": None,
        "access_token": None,
        "timeout_sec": 10,
    },
    "logging": {"level": "INFO"},
}

_SEARCH_ORDER = (
    "qrmenu.yaml",
    "qrmenu.yml",
    "qrmenu.dev.yaml",
)


def _merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(a)
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def _substitute_env_vars(obj: Any) -> Any:
    """Replace "${VAR}" strings with the environment value, if one is set."""
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    if isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        var_name = obj[2:-1]
        env_value = os.getenv(var_name)
        if env_value:
            return env_value
        log.warning("Environment variable %s not set, keeping placeholder", var_name)
    return obj


def _unresolved(v: Optional[str]) -> Optional[str]:
    if isinstance(v, str) and v.startswith("${") and v.endswith("}"):
        return None
    return v


def _find_config(path: Optional[str], base_dir: Path) -> Optional[Path]:
    explicit = path or os.getenv("QRMENU_CONFIG")
    if explicit:
        candidate = Path(explicit)
        if not candidate.is_absolute():
            for c in (Path.cwd() / candidate, base_dir / candidate):
                if c.exists():
                    return c
        elif candidate.exists():
            return candidate
        raise FileNotFoundError(f"QRMENU_CONFIG not found: {explicit}")
    for name in _SEARCH_ORDER:
        for d in (Path.cwd(), base_dir):
            p = d / name
            if p.exists():
                return p
    return None


def _validate(s: Settings) -> None:
    problems = []
    for name in ("session_duration_table_minutes", "session_duration_delivery_minutes"):
        value = getattr(s, name)
        if value <= 0:
            problems.append(f"{name} must be positive")
        elif value > s.session_max_lifetime_minutes:
            problems.append(f"{name} exceeds session_max_lifetime_minutes")
    for name in ("max_sessions_per_table", "max_sessions_per_fingerprint",
                 "rate_limit_whatsapp_per_hour", "rate_limit_whatsapp_per_day",
                 "rate_limit_fingerprint_per_hour", "token_ttl_minutes",
                 "otp_max_attempts", "token_max_verify_attempts",
                 "fingerprint_block_threshold", "cleanup_interval_minutes",
                 "session_activity_timeout_minutes", "fingerprint_retention_days",
                 "ip_rotation_threshold", "ip_rotation_window_minutes"):
        if getattr(s, name) < 1:
            problems.append(f"{name} must be >= 1")
    if not 4 <= s.otp_length <= 10:
        problems.append("otp_length must be between 4 and 10")
    if s.rate_limit_whatsapp_per_hour > s.rate_limit_whatsapp_per_day:
        problems.append("rate_limit_whatsapp_per_hour exceeds rate_limit_whatsapp_per_day")
    if s.whatsapp_provider == "cloud" and not (s.whatsapp_phone_number_id and s.whatsapp_access_token):
        problems.append("whatsapp provider 'cloud' requires phone_number_id and access_token")
    if problems:
        raise ConfigError("; ".join(problems))


def load_settings(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> Settings:
    """
    Load YAML settings with sensible overrides:
    - explicit `path`, else QRMENU_CONFIG, else the first of _SEARCH_ORDER found
      in the working directory or the project root
    - ${VAR} values are taken from the environment
    - `overrides` (same nested shape as the YAML) win over everything
    """
    base_dir = Path(__file__).resolve().parents[2]
    cfg_file_used = _find_config(path, base_dir)

    data: Dict[str, Any] = {}
    if cfg_file_used:
        with open(cfg_file_used, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        data = _substitute_env_vars(data)
        log.info("Loaded config from: %s", str(cfg_file_used))

    cfg = _merge(_merge(_DEFAULTS, data), overrides or {})
    server = cfg.get("server") or {}
    sess = cfg.get("session") or {}
    limits = cfg.get("rate_limits") or {}
    auth = cfg.get("auth") or {}
    cart = cfg.get("cart") or {}
    fp = cfg.get("fingerprint") or {}
    wa = cfg.get("whatsapp") or {}

    # Normalize db path
    db_path = (cfg.get("db") or {}).get("path") or "data/qrmenu.db"
    if db_path != ":memory:":
        dbp = Path(db_path)
        if not dbp.is_absolute():
            dbp = base_dir / dbp
        db_path = str(dbp)

    warnings = []
    token_secret = _unresolved(auth.get("token_secret")) or os.getenv("QRMENU_TOKEN_SECRET")
    if not token_secret:
        warnings.append("No auth.token_secret configured; tokens will not survive a restart")

    s = Settings(
        external_origin=server.get("external_origin"),
        allowed_origins=list(server.get("allowed_origins") or []),
        trust_proxy_headers=bool(server.get("trust_proxy_headers", False)),
        admin_api_key=_unresolved(server.get("admin_api_key")),
        session_cookie_name=sess.get("cookie_name") or "qrmenu_session",
        session_samesite=(sess.get("same_site") or "lax").lower(),  # type: ignore
        session_secret_key=_unresolved(sess.get("secret_key")),
        dev_allow_insecure_cookie=bool(sess.get("dev_allow_insecure_cookie", False)),
        db_path=db_path,
        session_duration_table_minutes=int(sess.get("duration_table_minutes", 240)),
        session_duration_delivery_minutes=int(sess.get("duration_delivery_minutes", 120)),
        session_max_lifetime_minutes=int(sess.get("max_lifetime_minutes", 480)),
        session_activity_timeout_minutes=int(sess.get("activity_timeout_minutes", 30)),
        max_sessions_per_table=int(sess.get("max_per_table", 10)),
        max_sessions_per_fingerprint=int(sess.get("max_per_fingerprint", 3)),
        cleanup_interval_minutes=int(sess.get("cleanup_interval_minutes", 60)),
        rate_limit_whatsapp_per_hour=int(limits.get("whatsapp_per_hour", 2)),
        rate_limit_whatsapp_per_day=int(limits.get("whatsapp_per_day", 3)),
        rate_limit_fingerprint_per_hour=int(limits.get("fingerprint_per_hour", 100)),
        token_secret=token_secret,
        token_ttl_minutes=int(auth.get("token_ttl_minutes", 15)),
        token_max_verify_attempts=int(auth.get("token_max_verify_attempts", 5)),
        otp_length=int(auth.get("otp_length", 6)),
        otp_max_attempts=int(auth.get("otp_max_attempts", 3)),
        cart_ttl_hours=int(cart.get("ttl_hours", 4)),
        cart_ttl_delivery_hours=int(cart.get("ttl_delivery_hours", 2)),
        fingerprint_block_threshold=int(fp.get("block_threshold", 5)),
        fingerprint_significant_change_threshold=int(fp.get("significant_change_threshold", 2)),
        fingerprint_retention_days=int(fp.get("retention_days", 30)),
        ip_rotation_threshold=int(fp.get("ip_rotation_threshold", 5)),
        ip_rotation_window_minutes=int(fp.get("ip_rotation_window_minutes", 30)),
        whatsapp_provider=(wa.get("provider") or "log").lower(),  # type: ignore
        whatsapp_api_url=(wa.get("api_url") or "").rstrip("/"),
        whatsapp_phone_number_id=_unresolved(wa.get("phone_number_id")),
        whatsapp_access_token=_unresolved(wa.get("access_token")),
        whatsapp_timeout_sec=int(wa.get("timeout_sec", 10)),
        log_level=str((cfg.get("logging") or {}).get("level") or "INFO").upper(),
        cfg_file_used=str(cfg_file_used) if cfg_file_used else None,
        warnings=warnings,
    )
    _validate(s)
    return s

# qrmenu/services/fingerprint_service.py
"""
Device fingerprinting: hash generation and cross-visit profile comparison
"""
import logging
import re
from typing import Any, Callable, Dict, List, Optional

from qrmenu.models.models import DeviceInfo, FingerprintChange, FingerprintResult
from qrmenu.utils.helpers import canonical_json, now, sha256_hex

log = logging.getLogger(__name__)

_HASH_RE = re.compile(r"^[0-9a-fA-F]{8,64}$")

# browser field name -> DeviceInfo attribute
_ALIASES = {
    "userAgent": "user_agent",
    "screenResolution": "screen_resolution",
    "timezone": "timezone",
    "language": "language",
    "canvas": "canvas",
    "canvasHash": "canvas",
    "webgl": "webgl",
    "webglHash": "webgl",
    "deviceMemory": "device_memory",
    "hardwareConcurrency": "hardware_concurrency",
    "colorDepth": "color_depth",
    "pixelRatio": "pixel_ratio",
}

BASE_CONFIDENCE = 0.5
FALLBACK_CONFIDENCE = 0.3


def _num(v: Any, cast: Callable):
    if v is None or v == "":
        return None
    try:
        return cast(v)
    except (TypeError, ValueError):
        return None


def normalize_signals(signals: Dict[str, Any]) -> DeviceInfo:
    """Map raw browser signals (camelCase or snake_case) onto a DeviceInfo; junk becomes None."""
    raw: Dict[str, Any] = {}
    for key, value in (signals or {}).items():
        attr = _ALIASES.get(key, key)
        if attr in DeviceInfo.__dataclass_fields__:
            raw[attr] = value

    def text(name: str) -> str:
        v = raw.get(name)
        return str(v).strip() if v is not None else ""

    def opt_text(name: str) -> Optional[str]:
        return text(name) or None

    return DeviceInfo(
        user_agent=text("user_agent"),
        screen_resolution=text("screen_resolution").lower().replace(" ", ""),
        timezone=text("timezone"),
        language=text("language").lower(),
        canvas=opt_text("canvas"),
        webgl=opt_text("webgl"),
        device_memory=_num(raw.get("device_memory"), float),
        hardware_concurrency=_num(raw.get("hardware_concurrency"), int),
        color_depth=_num(raw.get("color_depth"), int),
        pixel_ratio=_num(raw.get("pixel_ratio"), float),
    )


def os_family(user_agent: str) -> str:
    ua = (user_agent or "").lower()
    if not ua:
        return "unknown"
    if "iphone" in ua or "ipad" in ua or "ipod" in ua:
        return "ios"
    if "android" in ua:
        return "android"
    if "cros" in ua:
        return "chromeos"
    if "windows" in ua:
        return "windows"
    if "macintosh" in ua or "mac os x" in ua:
        return "macos"
    if "linux" in ua:
        return "linux"
    return "other"


class FingerprintEngine:
    """Pure and deterministic: same signals, same hash."""

    def __init__(self, significant_change_threshold: int = 2, now_fn: Callable[[], int] = now):
        self.significant_change_threshold = significant_change_threshold
        self.now_fn = now_fn

        # Stable, browser-bound characteristics
        self.critical_signals = [
            "os_family",
            "user_agent",
            "canvas",
            "webgl",
            "device_memory",
            "hardware_concurrency",
        ]
        # Can legitimately drift (second monitor, travel, language switch)
        self.important_signals = [
            "timezone",
            "screen_resolution",
            "language",
            "color_depth",
            "pixel_ratio",
        ]
        # A device that changes several of these at once is probably not the same device
        self.significant_signals = ["os_family", "timezone", "screen_resolution"]

    os_family = staticmethod(os_family)

    @staticmethod
    def is_valid_hash(fp_hash: Optional[str]) -> bool:
        return bool(fp_hash) and bool(_HASH_RE.match(fp_hash))

    @staticmethod
    def hash_device(info: DeviceInfo) -> str:
        payload = {
            "ua": info.user_agent,
            "sr": info.screen_resolution,
            "tz": info.timezone,
            "lang": info.language,
            "canvas": info.canvas,
            "webgl": info.webgl,
            "mem": info.device_memory,
            "cores": info.hardware_concurrency,
            "color": info.color_depth,
            "pixel": info.pixel_ratio,
        }
        return sha256_hex(canonical_json(payload))

    @staticmethod
    def confidence(info: DeviceInfo) -> float:
        if not info.timezone or not info.user_agent:
            return FALLBACK_CONFIDENCE
        c = BASE_CONFIDENCE
        if info.canvas:
            c += 0.2
        if info.webgl:
            c += 0.2
        if info.device_memory:
            c += 0.05
        if info.hardware_concurrency:
            c += 0.05
        return round(min(c, 1.0), 2)

    def generate(self, signals: Dict[str, Any]) -> FingerprintResult:
        info = normalize_signals(signals)
        result = FingerprintResult(
            hash=self.hash_device(info),
            confidence=self.confidence(info),
            device_info=info,
            generated_at=self.now_fn(),
        )
        if result.confidence <= FALLBACK_CONFIDENCE:
            log.debug("Low-confidence fingerprint %s (missing core signals)", result.hash[:12])
        return result

    @staticmethod
    def _value(info: DeviceInfo, signal: str):
        if signal == "os_family":
            return os_family(info.user_agent) if info.user_agent else None
        v = getattr(info, signal)
        return v if v not in ("", None) else None

    def detect_change(self, old: DeviceInfo, new: DeviceInfo) -> FingerprintChange:
        """Compare two device profiles; risk is driven by how many significant signals moved."""
        differences: List[str] = []

        def score(signals: List[str]) -> float:
            compared = matched = 0
            for signal in signals:
                a, b = self._value(old, signal), self._value(new, signal)
                if a is None and b is None:
                    continue
                compared += 1
                if a == b:
                    matched += 1
                else:
                    differences.append(f"{signal} changed: {a} -> {b}")
            return matched / compared if compared else 1.0

        critical_score = score(self.critical_signals)
        important_score = score(self.important_signals)
        similarity = round((critical_score * 0.7) + (important_score * 0.3), 3)

        significant = sum(
            1 for s in self.significant_signals if self._value(old, s) != self._value(new, s)
        )
        if significant >= self.significant_change_threshold:
            risk_level = "high"
        elif significant == 1 or similarity < 0.7:
            risk_level = "medium"
        else:
            risk_level = "low"

        return FingerprintChange(
            has_changed=bool(differences),
            similarity=similarity,
            risk_level=risk_level,
            differences=differences,
        )

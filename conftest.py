"""
Test configuration: in-memory database, controllable clock, capturing WhatsApp gateway
"""
import re
from typing import List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

import pytest

from qrmenu.core.config import load_settings
from qrmenu.db.customers import SqliteCustomerDirectory
from qrmenu.db.database import Database
from qrmenu.db.fingerprint import FingerprintStore
from qrmenu.db.session import SessionStore
from qrmenu.db.tokens import TokenStore
from qrmenu.services.auth_service import MagicLinkAuthService
from qrmenu.services.fingerprint_service import FingerprintEngine
from qrmenu.services.messaging import MessagingGateway, NotificationResult
from qrmenu.services.rate_limiter import RateLimiter
from qrmenu.services.session_service import SessionService

TEST_DB_PATH = ":memory:"  # Use in-memory database for tests
START_TS = 1_700_000_000

_LINK_RE = re.compile(r"https?://\S+")
_CODE_RE = re.compile(r"\b(\d{4,10})\b")


class FakeClock:
    """now_fn replacement; tests move time explicitly."""

    def __init__(self, start: int = START_TS):
        self.t = start

    def __call__(self) -> int:
        return self.t

    def advance(self, seconds: int) -> None:
        self.t += seconds


class CapturingGateway(MessagingGateway):
    """Records outgoing WhatsApp messages instead of sending them"""

    def __init__(self, fail: bool = False):
        self.outbox: List[Tuple[str, str]] = []
        self.fail = fail

    @property
    def provider_name(self) -> str:
        return "capture"

    async def send_whatsapp_message(self, phone: str, content: str) -> NotificationResult:
        if self.fail:
            raise ConnectionError("gateway down")
        self.outbox.append((phone, content))
        return NotificationResult(success=True, message_id=str(len(self.outbox)), provider="capture")

    def last_link(self) -> Optional[str]:
        for _, content in reversed(self.outbox):
            m = _LINK_RE.search(content)
            if m:
                return m.group(0)
        return None

    def last_token(self) -> Optional[str]:
        link = self.last_link()
        return parse_qs(urlsplit(link).query)["token"][0] if link else None

    def last_code(self) -> Optional[str]:
        for _, content in reversed(self.outbox):
            m = _CODE_RE.search(content)
            if m:
                return m.group(1)
        return None


def make_settings(**sections):
    overrides = {
        "db": {"path": TEST_DB_PATH},
        "auth": {"token_secret": "test-token-secret"},
        "session": {"secret_key": "test-cookie-secret", "dev_allow_insecure_cookie": True},
        "server": {"external_origin": "https://menu.test"},
        "logging": {"level": "DEBUG"},
    }
    for name, values in sections.items():
        overrides.setdefault(name, {}).update(values)
    return load_settings(overrides=overrides)


@pytest.fixture(autouse=True)
def setup_test_environment(monkeypatch):
    """Keep a developer's local config out of the tests"""
    monkeypatch.delenv("QRMENU_CONFIG", raising=False)
    monkeypatch.delenv("QRMENU_TOKEN_SECRET", raising=False)
    monkeypatch.setattr("qrmenu.core.config._SEARCH_ORDER", ())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
async def db():
    d = Database(TEST_DB_PATH)
    await d.init()
    yield d
    await d.close()


@pytest.fixture
def engine(clock):
    return FingerprintEngine(2, clock)


@pytest.fixture
def fingerprints(db, settings):
    return FingerprintStore(db, settings.fingerprint_block_threshold)


@pytest.fixture
def limiter(db, clock):
    return RateLimiter(db, clock)


@pytest.fixture
def sessions(db, fingerprints, limiter, settings, engine, clock):
    return SessionService(SessionStore(db, settings.session_activity_timeout_sec), fingerprints, limiter,
                          settings, engine, clock)


@pytest.fixture
def gateway():
    return CapturingGateway()


@pytest.fixture
def customers(db):
    return SqliteCustomerDirectory(db)


@pytest.fixture
def tokens(db):
    return TokenStore(db)


@pytest.fixture
def auth(tokens, sessions, customers, gateway, limiter, fingerprints, settings, clock):
    return MagicLinkAuthService(tokens, sessions, customers, gateway, limiter, fingerprints,
                                settings, "test-token-secret", clock)


@pytest.fixture
def mock_signals():
    """Browser signals as the menu page reports them"""
    return {
        "userAgent": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148 Safari/604.1",
        "screenResolution": "390x844",
        "timezone": "America/Sao_Paulo",
        "language": "pt-BR",
        "canvas": "c4nv4s",
        "webgl": "Apple GPU",
        "deviceMemory": 4,
        "hardwareConcurrency": 6,
        "colorDepth": 24,
        "pixelRatio": 3,
    }

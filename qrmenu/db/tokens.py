# qrmenu/db/tokens.py
from __future__ import annotations
import logging
from typing import Optional

from qrmenu.db.database import Database
from qrmenu.models.models import AuthToken, TokenKind

log = logging.getLogger(__name__)


class TokenStore:
    """Single-use magic-link tokens and one-time codes."""

    def __init__(self, db: Database):
        self.db = db

    async def insert(self, t: AuthToken) -> None:
        await self.db.exec(
            """INSERT INTO auth_tokens(token_id, kind, phone, store_id, secret_hash, fingerprint,
                   session_id, table_id, is_delivery, issued_at, expires_at, used, used_at, revoked)
               VALUES(?,?,?,?,?,?,?,?,?,?,?,0,NULL,0)""",
            (t.id, t.kind.value, t.phone, t.store_id, t.secret_hash, t.fingerprint,
             t.session_id, t.table_id, int(t.is_delivery), t.issued_at, t.expires_at),
        )

    async def get(self, token_id: str) -> Optional[AuthToken]:
        row = await self.db.fetchone("SELECT * FROM auth_tokens WHERE token_id=?", (token_id,))
        return AuthToken.from_row(row) if row else None

    async def latest_code(self, phone: str, store_id: str) -> Optional[AuthToken]:
        """Most recent one-time code, including used and revoked ones."""
        row = await self.db.fetchone(
            """SELECT * FROM auth_tokens
               WHERE phone=? AND store_id=? AND kind=?
               ORDER BY issued_at DESC, rowid DESC LIMIT 1""",
            (phone, store_id, TokenKind.OTP.value),
        )
        return AuthToken.from_row(row) if row else None

    async def revoke_codes(self, phone: str, store_id: str) -> int:
        return await self.db.exec(
            "UPDATE auth_tokens SET revoked=1 WHERE phone=? AND store_id=? AND kind=? AND used=0 AND revoked=0",
            (phone, store_id, TokenKind.OTP.value),
        )

    async def revoke(self, token_id: str) -> bool:
        return await self.db.exec(
            "UPDATE auth_tokens SET revoked=1 WHERE token_id=? AND revoked=0", (token_id,)
        ) == 1

    async def consume(self, token_id: str, now_ts: int) -> bool:
        """Flip used 0->1. Exactly one concurrent caller gets True."""
        n = await self.db.exec(
            """UPDATE auth_tokens SET used=1, used_at=?
               WHERE token_id=? AND used=0 AND revoked=0 AND expires_at > ?""",
            (now_ts, token_id, now_ts),
        )
        return n == 1

    async def delete_expired(self, now_ts: int) -> int:
        return await self.db.exec("DELETE FROM auth_tokens WHERE expires_at <= ?", (now_ts,))

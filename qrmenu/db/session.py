# qrmenu/db/session.py
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional, Tuple

from qrmenu.core.errors import SessionLimitExceeded
from qrmenu.db.database import Database, Transaction
from qrmenu.models.models import ContextualSession

log = logging.getLogger(__name__)

# not expired or blocked; only these rows may still be updated
_LIVE = "state = 'ACTIVE' AND expires_at > ?"
# live and touched within the activity timeout; only these count against limits
_ACTIVE = f"{_LIVE} AND last_activity > ?"


class SessionStore:
    """Persistence for diner sessions. Limits are enforced inside one transaction."""

    def __init__(self, db: Database, activity_timeout_sec: int = 30 * 60):
        self.db = db
        self.activity_timeout_sec = activity_timeout_sec

    def _active_params(self, now_ts: int) -> Tuple[int, int]:
        return now_ts, now_ts - self.activity_timeout_sec

    # --- reads -------------------------------------------------------------

    async def get(self, session_id: str) -> Optional[ContextualSession]:
        row = await self.db.fetchone("SELECT * FROM sessions WHERE session_id=?", (session_id,))
        return ContextualSession.from_row(row) if row else None

    async def list_active(self, store_id: str, now_ts: int) -> List[ContextualSession]:
        rows = await self.db.fetchall(
            f"SELECT * FROM sessions WHERE store_id=? AND {_ACTIVE} ORDER BY created_at",
            (store_id, *self._active_params(now_ts)),
        )
        return [ContextualSession.from_row(r) for r in rows]

    async def stats(self, now_ts: int, store_id: Optional[str] = None) -> Dict[str, Any]:
        where, params = ("WHERE store_id=?", (store_id,)) if store_id else ("", ())
        row = await self.db.fetchone(
            f"""
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN {_ACTIVE} THEN 1 ELSE 0 END), 0) AS active,
                   COALESCE(SUM(CASE WHEN {_LIVE} THEN 1 ELSE 0 END), 0) AS live,
                   COALESCE(SUM(CASE WHEN {_ACTIVE} AND is_authenticated=1 THEN 1 ELSE 0 END), 0) AS authenticated,
                   COALESCE(SUM(CASE WHEN {_ACTIVE} AND is_delivery=1 THEN 1 ELSE 0 END), 0) AS delivery,
                   COALESCE(SUM(CASE WHEN state='BLOCKED' THEN 1 ELSE 0 END), 0) AS blocked,
                   COALESCE(SUM(order_count), 0) AS orders,
                   COALESCE(SUM(total_spent), 0) AS revenue
            FROM sessions {where}
            """,
            self._active_params(now_ts) + (now_ts,) + self._active_params(now_ts) * 2 + params,
        )
        active = row["active"]
        return {
            "total": row["total"],
            "active": active,
            "idle": row["live"] - active,
            "authenticated": row["authenticated"],
            "anonymous": active - row["authenticated"],
            "delivery": row["delivery"],
            "table": active - row["delivery"],
            "blocked": row["blocked"],
            "orders": row["orders"],
            "revenue": round(row["revenue"], 2),
        }

    async def distinct_ips(self, fingerprint: str, since: int) -> int:
        """Number of client addresses this device opened sessions from since `since`."""
        row = await self.db.fetchone(
            """SELECT COUNT(DISTINCT ip_address) AS n FROM sessions
               WHERE fingerprint=? AND created_at >= ? AND ip_address IS NOT NULL""",
            (fingerprint, since),
        )
        return row["n"]

    # --- creation ----------------------------------------------------------

    @staticmethod
    async def _find_live(tx: Transaction, fingerprint: str, store_id: str,
                           table_id: Optional[str], now_ts: int) -> Optional[ContextualSession]:
        row = await tx.fetchone(
            f"""SELECT * FROM sessions
                WHERE fingerprint=? AND store_id=? AND table_id IS ? AND {_LIVE}
                ORDER BY last_activity DESC LIMIT 1""",
            (fingerprint, store_id, table_id, now_ts),
        )
        return ContextualSession.from_row(row) if row else None

    async def create_or_reattach(self, s: ContextualSession, *, max_per_fingerprint: int,
                                 max_per_table: int) -> Tuple[ContextualSession, bool]:
        """
        Insert `s` unless the same device already holds an active session for
        the same (store, table); that one is returned instead.
        Returns (session, reattached).
        """
        now_ts = s.created_at
        async with self.db.transaction() as tx:
            existing = await self._find_live(tx, s.fingerprint, s.store_id, s.table_id, now_ts)
            if existing:
                return existing, True

            row = await tx.fetchone(
                f"SELECT COUNT(*) AS n FROM sessions WHERE fingerprint=? AND {_ACTIVE}",
                (s.fingerprint, *self._active_params(now_ts)),
            )
            if row["n"] >= max_per_fingerprint:
                raise SessionLimitExceeded("Too many active sessions for this device",
                                           scope="fingerprint", limit=max_per_fingerprint)

            if s.table_id is not None:
                row = await tx.fetchone(
                    f"SELECT COUNT(*) AS n FROM sessions WHERE store_id=? AND table_id=? AND {_ACTIVE}",
                    (s.store_id, s.table_id, *self._active_params(now_ts)),
                )
                if row["n"] >= max_per_table:
                    raise SessionLimitExceeded("Too many active sessions for this table",
                                               scope="table", limit=max_per_table)

            await tx.exec(
                """INSERT INTO sessions(session_id, store_id, table_id, is_delivery, fingerprint,
                       ip_address, user_agent, created_at, last_activity, expires_at,
                       is_authenticated, customer_id, order_count, total_spent, state)
                   VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)""",
                (s.id, s.store_id, s.table_id, int(s.is_delivery), s.fingerprint,
                 s.ip_address, s.user_agent, s.created_at, s.last_activity, s.expires_at,
                 int(s.is_authenticated), s.customer_id, s.order_count, s.total_spent,
                 s.state.value),
            )
        return s, False

    # --- conditional updates (each reports whether a row changed) ----------

    async def touch(self, session_id: str, now_ts: int, new_expires_at: int) -> bool:
        """Advance last_activity/expires_at; never moves either backwards."""
        n = await self.db.exec(
            f"""UPDATE sessions
                SET last_activity=MAX(last_activity, ?), expires_at=MAX(expires_at, ?)
                WHERE session_id=? AND {_LIVE}""",
            (now_ts, new_expires_at, session_id, now_ts),
        )
        return n == 1

    async def associate_customer(self, session_id: str, customer_id: str, now_ts: int) -> bool:
        n = await self.db.exec(
            f"""UPDATE sessions SET is_authenticated=1, customer_id=?, last_activity=MAX(last_activity, ?)
                WHERE session_id=? AND is_authenticated=0 AND {_LIVE}""",
            (customer_id, now_ts, session_id, now_ts),
        )
        return n == 1

    async def record_order(self, session_id: str, amount: float, now_ts: int) -> bool:
        n = await self.db.exec(
            f"""UPDATE sessions SET order_count=order_count+1, total_spent=total_spent+?,
                       last_activity=MAX(last_activity, ?)
                WHERE session_id=? AND {_LIVE}""",
            (amount, now_ts, session_id, now_ts),
        )
        return n == 1

    async def block_fingerprint_sessions(self, fingerprint: str) -> int:
        n = await self.db.exec(
            "UPDATE sessions SET state='BLOCKED' WHERE fingerprint=? AND state='ACTIVE'",
            (fingerprint,),
        )
        if n:
            log.warning("Blocked %d session(s) for fingerprint %s", n, fingerprint[:12])
        return n

    async def delete(self, session_id: str) -> bool:
        return await self.db.exec("DELETE FROM sessions WHERE session_id=?", (session_id,)) == 1

    async def delete_expired(self, now_ts: int) -> int:
        return await self.db.exec("DELETE FROM sessions WHERE expires_at <= ?", (now_ts,))


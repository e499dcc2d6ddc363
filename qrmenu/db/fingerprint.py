# qrmenu/db/fingerprint.py
from __future__ import annotations
import json, logging
from typing import Optional

from qrmenu.db.database import Database
from qrmenu.models.models import FingerprintResult, StoredFingerprint

log = logging.getLogger(__name__)


class FingerprintStore:
    """Registry of seen devices: usage, suspicious activity and blocks."""

    def __init__(self, db: Database, block_threshold: int = 5):
        self.db = db
        self.block_threshold = block_threshold

    async def get(self, fp_hash: str) -> Optional[StoredFingerprint]:
        row = await self.db.fetchone("SELECT * FROM fingerprints WHERE hash=?", (fp_hash,))
        return StoredFingerprint.from_row(row) if row else None

    async def observe(self, result: FingerprintResult, now_ts: int) -> StoredFingerprint:
        """Record a sighting; usage_count is incremented in the same statement."""
        await self.db.exec(
            """INSERT INTO fingerprints(hash, device_info, confidence, usage_count, suspicious_activity,
                   is_blocked, created_at, last_seen)
               VALUES(?,?,?,1,0,0,?,?)
               ON CONFLICT(hash) DO UPDATE SET
                 usage_count=usage_count+1,
                 last_seen=excluded.last_seen,
                 confidence=excluded.confidence,
                 device_info=excluded.device_info""",
            (result.hash, json.dumps(result.device_info.to_dict(), separators=(",", ":")),
             result.confidence, now_ts, now_ts),
        )
        return await self.get(result.hash)

    async def is_blocked(self, fp_hash: str) -> bool:
        row = await self.db.fetchone("SELECT is_blocked FROM fingerprints WHERE hash=?", (fp_hash,))
        return bool(row and row["is_blocked"])

    async def record_suspicious(self, fp_hash: str, reason: str, now_ts: int) -> StoredFingerprint:
        """
        Increment suspicious_activity; the device is blocked once the counter
        reaches block_threshold. Unknown hashes get a row with zero confidence.
        """
        async with self.db.transaction() as tx:
            await tx.exec(
                """INSERT INTO fingerprints(hash, device_info, confidence, usage_count, suspicious_activity,
                       is_blocked, created_at, last_seen)
                   VALUES(?, '{}', 0, 0, 1, 0, ?, ?)
                   ON CONFLICT(hash) DO UPDATE SET suspicious_activity=suspicious_activity+1""",
                (fp_hash, now_ts, now_ts),
            )
            newly_blocked = await tx.exec(
                """UPDATE fingerprints SET is_blocked=1, blocked_reason=?
                   WHERE hash=? AND is_blocked=0 AND suspicious_activity >= ?""",
                (f"suspicious activity: {reason}", fp_hash, self.block_threshold),
            )
            row = await tx.fetchone("SELECT * FROM fingerprints WHERE hash=?", (fp_hash,))
        stored = StoredFingerprint.from_row(row)
        if newly_blocked:
            log.warning("Fingerprint %s blocked after %d suspicious events (last: %s)",
                        fp_hash[:12], stored.suspicious_activity, reason)
        else:
            log.info("Suspicious activity for %s (%d/%d): %s", fp_hash[:12],
                     stored.suspicious_activity, self.block_threshold, reason)
        return stored

    async def block(self, fp_hash: str, reason: str) -> bool:
        n = await self.db.exec(
            "UPDATE fingerprints SET is_blocked=1, blocked_reason=? WHERE hash=?",
            (reason, fp_hash),
        )
        if n:
            log.warning("Fingerprint %s blocked: %s", fp_hash[:12], reason)
        return n == 1

    async def unblock(self, fp_hash: str) -> bool:
        n = await self.db.exec(
            "UPDATE fingerprints SET is_blocked=0, blocked_reason=NULL, suspicious_activity=0 WHERE hash=?",
            (fp_hash,),
        )
        return n == 1

    def risk_score(self, stored: StoredFingerprint) -> float:
        """0..1; low confidence adds a little risk but cannot push a clean device to a block."""
        score = 0.0
        score += min(stored.suspicious_activity / self.block_threshold, 1.0) * 0.4
        if stored.usage_count > 1000:
            score += 0.2
        if stored.is_blocked:
            score += 0.5
        score += (1 - stored.confidence) * 0.2
        return round(min(score, 1.0), 3)

    async def cleanup(self, older_than: int) -> int:
        """Forget unblocked devices not seen since `older_than`."""
        return await self.db.exec(
            "DELETE FROM fingerprints WHERE last_seen < ? AND is_blocked=0", (older_than,)
        )

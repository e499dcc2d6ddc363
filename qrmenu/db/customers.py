# qrmenu/db/customers.py
"""
Customer directory.

The ordering platform owns customers; this module only needs to find one by
phone or create one. `SqliteCustomerDirectory` is the default backing store.
"""
from __future__ import annotations
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Optional

from qrmenu.db.database import Database
from qrmenu.models.models import Customer

log = logging.getLogger(__name__)


class CustomerDirectory(ABC):

    @abstractmethod
    async def find_customer_by_phone(self, phone: str, store_id: str) -> Optional[Customer]:
        """Return the customer registered with this phone at this store, if any."""

    @abstractmethod
    async def create_customer(self, phone: str, store_id: str, now_ts: int,
                              name: Optional[str] = None) -> Customer:
        """Create a customer; must be idempotent for an existing (phone, store)."""


class SqliteCustomerDirectory(CustomerDirectory):

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _from_row(row) -> Customer:
        return Customer(id=row["customer_id"], phone=row["phone"], store_id=row["store_id"],
                        created_at=row["created_at"], name=row["name"])

    async def find_customer_by_phone(self, phone: str, store_id: str) -> Optional[Customer]:
        row = await self.db.fetchone(
            "SELECT * FROM customers WHERE phone=? AND store_id=?", (phone, store_id)
        )
        return self._from_row(row) if row else None

    async def create_customer(self, phone: str, store_id: str, now_ts: int,
                              name: Optional[str] = None) -> Customer:
        cid = str(uuid.uuid4())
        n = await self.db.exec(
            """INSERT INTO customers(customer_id, phone, store_id, name, created_at)
               VALUES(?,?,?,?,?) ON CONFLICT(phone, store_id) DO NOTHING""",
            (cid, phone, store_id, name, now_ts),
        )
        if n:
            log.info("Created customer %s for store %s", cid, store_id)
        return await self.find_customer_by_phone(phone, store_id)

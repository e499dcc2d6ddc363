"""
Per-diner cart with a time-to-live bound to the ordering context.

The cart lives with the client between requests (to_dict/from_dict); the
server only re-validates it against the current session.
"""
import logging
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional

from qrmenu.models.models import Additional, CartItem, ContextualSession, ItemKey
from qrmenu.utils.helpers import now

log = logging.getLogger(__name__)

HOUR = 3600


class CartTTLStore:

    def __init__(self, ttl_hours: int = 4, delivery_ttl_hours: int = 2,
                 now_fn: Callable[[], int] = now):
        self.ttl_hours = ttl_hours
        self.delivery_ttl_hours = delivery_ttl_hours
        self.now_fn = now_fn
        self._items: Dict[ItemKey, CartItem] = {}
        self.store_id: Optional[str] = None
        self.table_id: Optional[str] = None
        self.delivery_mode = False
        self.session_id: Optional[str] = None
        self.session_expires_at: Optional[int] = None
        self.last_updated = self.now_fn()
        self.expires_at: Optional[int] = None

    # ---------------- bookkeeping ----------------

    @property
    def ttl_sec(self) -> int:
        return (self.delivery_ttl_hours if self.delivery_mode else self.ttl_hours) * HOUR

    def _touch(self) -> None:
        ts = self.now_fn()
        self.last_updated = ts
        expires_at = ts + self.ttl_sec
        if self.session_expires_at is not None:
            expires_at = min(expires_at, self.session_expires_at)
        self.expires_at = expires_at

    @property
    def items(self) -> List[CartItem]:
        return list(self._items.values())

    def is_expired(self) -> bool:
        return self.expires_at is not None and self.now_fn() >= self.expires_at

    # ---------------- items ----------------

    def add_item(self, item: CartItem) -> CartItem:
        """Lines with the same product, additionals and notes are merged."""
        if item.quantity <= 0:
            raise ValueError("quantity must be positive")
        key = item.identity_key
        existing = self._items.get(key)
        if existing:
            existing.quantity += item.quantity
        else:
            existing = self._items[key] = item
        self._touch()
        return existing

    def remove_item(self, identity_key: ItemKey) -> bool:
        removed = self._items.pop(identity_key, None) is not None
        if removed:
            self._touch()
        return removed

    def update_quantity(self, identity_key: ItemKey, quantity: int) -> Optional[CartItem]:
        """Zero or less removes the line."""
        if identity_key not in self._items:
            return None
        if quantity <= 0:
            self.remove_item(identity_key)
            return None
        self._items[identity_key].quantity = quantity
        self._touch()
        return self._items[identity_key]

    def clear(self) -> None:
        self._items.clear()
        self.expires_at = None
        self.last_updated = self.now_fn()

    @property
    def total_items(self) -> int:
        return sum(i.quantity for i in self._items.values())

    @property
    def total_price(self) -> float:
        # additionals are priced per unit, so they scale with quantity
        return round(sum(i.line_total for i in self._items.values()), 2)

    # ---------------- context ----------------

    def set_context(self, store_id: str, table_id: Optional[str] = None) -> None:
        self.store_id = store_id
        self.table_id = table_id
        self._touch()

    def set_delivery_mode(self, is_delivery: bool) -> None:
        self.delivery_mode = is_delivery
        if is_delivery:
            self.table_id = None
        self._touch()

    def bind_session(self, session: ContextualSession) -> None:
        """Re-key the cart to the session's context; it can never outlive the session."""
        self.session_id = session.id
        self.session_expires_at = session.expires_at
        self.store_id = session.store_id
        self.table_id = session.table_id
        self.delivery_mode = session.is_delivery
        self._touch()

    def sync_cart(self, session: Optional[ContextualSession] = None) -> bool:
        """
        Drop the contents when the cart or its session has expired, or when the
        session now points at another store. Returns True when the cart was cleared.
        """
        ts = self.now_fn()
        reason = None
        if self.is_expired():
            reason = "cart expired"
        elif session is not None and session.is_expired(ts):
            reason = "session expired"
        elif session is not None and self.store_id and session.store_id != self.store_id:
            reason = "store changed"

        if reason:
            if self._items:
                log.info("Clearing cart (%s, %d items)", reason, len(self._items))
            self.clear()
            if session is not None and not session.is_expired(ts):
                self.bind_session(session)
            return True
        if session is not None:
            self.bind_session(session)
        return False

    def is_valid_for_checkout(self, session: Optional[ContextualSession]) -> bool:
        if not self._items or self.is_expired():
            return False
        if session is None or session.is_expired(self.now_fn()):
            return False
        if session.store_id != self.store_id:
            return False
        if not session.is_delivery and session.table_id != self.table_id:
            return False
        return True

    # ---------------- client storage ----------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [asdict(i) for i in self._items.values()],
            "storeId": self.store_id,
            "tableId": self.table_id,
            "deliveryMode": self.delivery_mode,
            "sessionId": self.session_id,
            "sessionExpiresAt": self.session_expires_at,
            "lastUpdated": self.last_updated,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], ttl_hours: int = 4, delivery_ttl_hours: int = 2,
                  now_fn: Callable[[], int] = now) -> "CartTTLStore":
        cart = cls(ttl_hours, delivery_ttl_hours, now_fn)
        for raw in data.get("items") or []:
            item = CartItem(
                product_identify=str(raw["product_identify"]),
                name=raw.get("name", ""),
                price=float(raw.get("price", 0)),
                quantity=int(raw.get("quantity", 1)),
                notes=raw.get("notes") or "",
                additionals=[Additional(id=str(a["id"]), name=a.get("name", ""), price=float(a.get("price", 0)),
                                        quantity=int(a.get("quantity", 1)))
                             for a in raw.get("additionals") or []],
            )
            if item.quantity > 0:
                existing = cart._items.get(item.identity_key)
                if existing:
                    existing.quantity += item.quantity
                else:
                    cart._items[item.identity_key] = item
        cart.store_id = data.get("storeId")
        cart.table_id = data.get("tableId")
        cart.delivery_mode = bool(data.get("deliveryMode", False))
        cart.session_id = data.get("sessionId")
        cart.session_expires_at = data.get("sessionExpiresAt")
        cart.last_updated = data.get("lastUpdated") or cart.now_fn()
        cart.expires_at = data.get("expiresAt")
        return cart

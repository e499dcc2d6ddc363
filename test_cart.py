"""
Cart TTL store
"""
import pytest

from qrmenu.models.models import Additional, CartItem, ContextualSession
from qrmenu.services.cart import CartTTLStore

HOUR = 3600


def item(identify="p1", qty=1, notes="", extras=(), price=10.0):
    return CartItem(product_identify=identify, name=identify.upper(), price=price, quantity=qty,
                    notes=notes, additionals=[Additional(id=e, name=e, price=2.0) for e in extras])


def session(clock, store="S1", table="T1", delivery=False, ttl=4 * HOUR):
    return ContextualSession(id="sid", store_id=store, fingerprint="f" * 64, created_at=clock(),
                             last_activity=clock(), expires_at=clock() + ttl,
                             table_id=None if delivery else table, is_delivery=delivery)


@pytest.fixture
def cart(clock):
    return CartTTLStore(4, 2, clock)


class TestCartItems:

    def test_same_line_merges(self, cart):
        cart.add_item(item(qty=1, notes="no onion", extras=("bacon", "cheese")))
        cart.add_item(item(qty=2, notes="no onion", extras=("cheese", "bacon")))
        assert len(cart.items) == 1
        assert cart.items[0].quantity == 3

    def test_different_notes_or_extras_stay_apart(self, cart):
        cart.add_item(item())
        cart.add_item(item(notes="well done"))
        cart.add_item(item(extras=("bacon",)))
        assert len(cart.items) == 3
        assert cart.total_items == 3

    def test_totals_include_additionals_per_unit(self, cart):
        cart.add_item(item(qty=2, extras=("bacon",)))
        cart.add_item(item("p2", qty=1, price=5.5))
        assert cart.total_price == pytest.approx(2 * 12.0 + 5.5)

    def test_identity_is_not_a_joined_string(self, cart):
        cart.add_item(item(extras=("1,2",)))
        cart.add_item(item(extras=("1", "2")))
        cart.add_item(item(notes="x"))
        cart.add_item(item(notes="x "))
        assert len(cart.items) == 4

    def test_additional_quantity_is_priced_and_kept_apart(self, cart):
        double = CartItem(product_identify="p1", name="P1", price=10.0,
                          additionals=[Additional(id="bacon", name="Bacon", price=2.0, quantity=2)])
        cart.add_item(double)
        cart.add_item(item(extras=("bacon",)))
        assert len(cart.items) == 2
        assert double.unit_price == pytest.approx(14.0)
        assert cart.total_price == pytest.approx(14.0 + 12.0)

    def test_remove_and_update(self, cart):
        line = cart.add_item(item(qty=2))
        assert cart.update_quantity(line.identity_key, 5).quantity == 5
        assert cart.update_quantity(line.identity_key, 0) is None
        assert cart.items == []
        assert cart.remove_item(line.identity_key) is False

    def test_rejects_non_positive_quantity(self, cart):
        with pytest.raises(ValueError):
            cart.add_item(item(qty=0))


class TestCartTTL:

    def test_expires_after_ttl(self, cart, clock):
        cart.add_item(item())
        assert cart.expires_at == clock() + 4 * HOUR
        clock.advance(4 * HOUR)
        assert cart.is_expired()
        assert cart.sync_cart() is True
        assert cart.items == []

    def test_delivery_ttl_is_shorter(self, cart, clock):
        cart.set_delivery_mode(True)
        cart.add_item(item())
        assert cart.expires_at == clock() + 2 * HOUR

    def test_set_context_keeps_items(self, cart):
        cart.add_item(item())
        cart.set_context("S1", "T2")
        assert cart.store_id == "S1" and cart.table_id == "T2"
        assert len(cart.items) == 1

    def test_never_outlives_session(self, cart, clock):
        s = session(clock, ttl=HOUR)
        cart.bind_session(s)
        cart.add_item(item())
        assert cart.expires_at == s.expires_at

    def test_sync_rekeys_to_session(self, cart, clock):
        cart.add_item(item())
        assert cart.sync_cart(session(clock, table="T7")) is False
        assert cart.store_id == "S1" and cart.table_id == "T7"
        assert len(cart.items) == 1

    def test_sync_clears_on_expired_session(self, cart, clock):
        s = session(clock, ttl=HOUR)
        cart.bind_session(s)
        cart.add_item(item())
        clock.advance(HOUR)
        assert cart.sync_cart(s) is True
        assert cart.items == []

    def test_sync_clears_on_store_change(self, cart, clock):
        cart.bind_session(session(clock))
        cart.add_item(item())
        assert cart.sync_cart(session(clock, store="S2")) is True
        assert cart.items == [] and cart.store_id == "S2"


class TestCheckout:

    def test_valid(self, cart, clock):
        s = session(clock)
        cart.bind_session(s)
        cart.add_item(item())
        assert cart.is_valid_for_checkout(s)

    def test_empty_or_without_session(self, cart, clock):
        s = session(clock)
        cart.bind_session(s)
        assert not cart.is_valid_for_checkout(s)
        cart.add_item(item())
        assert not cart.is_valid_for_checkout(None)

    def test_other_table(self, cart, clock):
        cart.bind_session(session(clock))
        cart.add_item(item())
        assert not cart.is_valid_for_checkout(session(clock, table="T9"))

    def test_client_storage_round_trip(self, cart, clock):
        s = session(clock)
        cart.bind_session(s)
        cart.add_item(item(qty=2, extras=("bacon",)))
        cart.add_item(CartItem(product_identify="p2", name="P2", price=5.0,
                               additionals=[Additional(id="egg", name="Egg", price=1.5, quantity=3)]))
        restored = CartTTLStore.from_dict(cart.to_dict(), now_fn=clock)
        assert restored.total_price == cart.total_price
        assert restored.total_price == pytest.approx(2 * 12.0 + 9.5)
        assert [i.identity_key for i in restored.items] == [i.identity_key for i in cart.items]
        assert restored.expires_at == cart.expires_at
        assert restored.is_valid_for_checkout(s)

from concurrent.futures import ThreadPoolExecutor

import pytest
from pymongo.errors import OperationFailure

import cart as cart_module
from cart import Cart, LocalLineStore, MemoryStorage, RemoteLineStore, Wishlist, line_store, owner_key, session_lock
from catalog import start_sale
from errors import InvalidInput, NotFound
from pricing import today
from schemas import CartLine, Sale, WishlistLine
from tests.helpers import bearer


class RejectingCollection:
    """Wraps a collection and fails every write with the given error code."""

    def __init__(self, inner, code):
        self.inner = inner
        self.code = code

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def _fail(self, *args, **kwargs):
        raise OperationFailure("not authorized on storefront_test", code=self.code)

    insert_one = update_one = delete_one = delete_many = _fail


@pytest.fixture
def remote_cart(db, customer):
    return Cart(RemoteLineStore(db["cart_items"], str(customer["_id"]), CartLine), db)


def test_same_product_and_variation_merge_into_one_line(db, remote_cart, shirt):
    remote_cart.add_item(shirt["product_id"], 2, shirt["xl"])
    remote_cart.add_item(shirt["product_id"], 3, shirt["xl"])

    assert len(remote_cart.items) == 1
    assert remote_cart.items[0].quantity == 5
    assert db["cart_items"].count_documents({}) == 1
    assert db["cart_items"].find_one()["quantity"] == 5


def test_different_variations_stay_separate(remote_cart, shirt):
    remote_cart.add_item(shirt["product_id"], 1, shirt["xl"])
    remote_cart.add_item(shirt["product_id"], 1, shirt["m"])
    remote_cart.add_item(shirt["product_id"], 1)
    assert len(remote_cart.items) == 3
    assert remote_cart.total_item_count == 3


def test_line_price_is_snapshot_with_sale(remote_cart, shirt):
    line = remote_cart.add_item(shirt["product_id"], 2, shirt["xl"])
    assert line.price == 44.0
    assert line.original_price == 55.0
    assert line.variation_name == "XL"
    assert remote_cart.snapshot()["subtotal"] == 88.0


def test_noop_quantity_update_keeps_subtotal(remote_cart, shirt, tote):
    line = remote_cart.add_item(shirt["product_id"], 2, shirt["xl"])
    remote_cart.add_item(tote, 1)
    before = remote_cart.subtotal

    remote_cart.update_quantity(line.id, line.quantity)
    assert remote_cart.subtotal == before
    assert remote_cart.total_item_count == 3


def test_update_to_zero_removes_line(remote_cart, tote):
    line = remote_cart.add_item(tote, 2)
    remote_cart.update_quantity(line.id, 0)
    assert remote_cart.items == []


def test_remove_unknown_item(remote_cart):
    with pytest.raises(NotFound):
        remote_cart.remove_item("missing")


def test_quantity_must_be_positive(remote_cart, tote):
    with pytest.raises(InvalidInput):
        remote_cart.add_item(tote, 0)


def test_cart_reloads_from_store(db, customer, remote_cart, shirt, tote):
    remote_cart.add_item(shirt["product_id"], 2, shirt["xl"])
    remote_cart.add_item(tote, 1)

    reloaded = Cart(line_store("cart", db, None, user_id=str(customer["_id"])), db)
    assert [(i.name, i.quantity) for i in reloaded.items] == [("Linen Overshirt", 2), ("Canvas Tote", 1)]
    assert reloaded.subtotal == pytest.approx(103.0)


def test_clear(db, remote_cart, tote):
    remote_cart.add_item(tote, 1)
    remote_cart.clear()
    assert remote_cart.items == []
    assert db["cart_items"].count_documents({}) == 0


def test_permission_denied_keeps_local_change(db, customer, tote):
    store = RemoteLineStore(RejectingCollection(db["cart_items"], 13), str(customer["_id"]), CartLine)
    cart = Cart(store, db)

    line = cart.add_item(tote, 2)
    assert cart.total_item_count == 2
    cart.update_quantity(line.id, 4)
    assert cart.total_item_count == 4
    cart.remove_item(line.id)
    assert cart.items == []
    assert db["cart_items"].count_documents({}) == 0


def test_other_store_errors_propagate(db, customer, tote):
    store = RemoteLineStore(RejectingCollection(db["cart_items"], 121), str(customer["_id"]), CartLine)
    cart = Cart(store, db)
    with pytest.raises(OperationFailure):
        cart.add_item(tote, 1)
    assert cart.items == []


def test_guest_cart_lives_in_key_value_store(db, shirt, tote):
    storage = MemoryStorage()
    cart = Cart(LocalLineStore(storage, "cart:g1", CartLine), db)
    cart.add_item(tote, 2)
    cart.add_item(tote, 3)
    cart.add_item(shirt["product_id"], 1, shirt["xl"])
    assert storage.get_item("cart:g1") is not None

    rehydrated = Cart(line_store("cart", db, storage, guest_id="g1"), db)
    assert [(i.product_id, i.quantity) for i in rehydrated.items] == [(tote, 5), (shirt["product_id"], 1)]
    assert rehydrated.subtotal == pytest.approx(15 * 5 + 44)

    rehydrated.clear()
    assert storage.get_item("cart:g1") is None


def test_guest_storage_in_mongo(db, client, tote):
    response = client.post("/cart/items", json={"product_id": tote, "quantity": 1}, headers={"X-Guest-Id": "g2"})
    assert response.status_code == 200
    assert db["guest_storage"].find_one({"_id": "cart:g2"}) is not None


def test_owner_key():
    assert owner_key(user_id="u1") == "user:u1"
    assert owner_key(guest_id="g1") == "guest:g1"
    with pytest.raises(InvalidInput):
        owner_key()


def test_wishlist_add_is_idempotent(db, customer, shirt):
    wishlist = Wishlist(line_store("wishlist", db, None, user_id=str(customer["_id"])), db)
    _, added = wishlist.add_item(shirt["product_id"])
    _, again = wishlist.add_item(shirt["product_id"])
    assert added and not again
    assert len(wishlist.items) == 1
    assert wishlist.contains(shirt["product_id"])


def test_wishlist_is_repriced_on_load(db, customer, shirt):
    uid = str(customer["_id"])
    wishlist = Wishlist(line_store("wishlist", db, None, user_id=uid), db)
    line, _ = wishlist.add_item(shirt["product_id"])
    # the XL sale does not apply to the product as a whole
    assert line.price == 50.0

    start_sale(db, Sale(product_id=shirt["product_id"], discount_percentage=10, start_date=today(), end_date=today()))
    reloaded = Wishlist(RemoteLineStore(db["wishlist_items"], uid, WishlistLine), db)
    assert reloaded.items[0].price == 45.0
    assert reloaded.items[0].original_price == 50.0


def test_sold_out_variation_cannot_be_added(db, remote_cart, shirt):
    db["product_variations"].update_one({"name": "XL"}, {"$set": {"stock": 0}})
    with pytest.raises(InvalidInput, match="Out of stock"):
        remote_cart.add_item(shirt["product_id"], 1, shirt["xl"])
    assert remote_cart.items == []


def test_merged_quantity_cannot_exceed_stock(remote_cart, shirt):
    remote_cart.add_item(shirt["product_id"], 8, shirt["xl"])
    with pytest.raises(InvalidInput, match="Only 10 left"):
        remote_cart.add_item(shirt["product_id"], 3, shirt["xl"])
    assert remote_cart.items[0].quantity == 8


def test_session_locks_come_from_a_fixed_pool(client, tote):
    for _ in range(50):
        assert client.post("/cart/items", json={"product_id": tote}).status_code == 200
    assert len(cart_module._locks) == cart_module.LOCK_STRIPES
    assert session_lock("guest:g1") is session_lock("guest:g1")


def test_concurrent_adds_do_not_lose_updates(db, client, customer, tote):
    headers = bearer(customer)

    def add_one(_):
        return client.post("/cart/items", json={"product_id": tote, "quantity": 1}, headers=headers).status_code

    with ThreadPoolExecutor(max_workers=8) as pool:
        statuses = list(pool.map(add_one, range(20)))

    assert statuses == [200] * 20
    lines = list(db["cart_items"].find({"user_id": str(customer["_id"])}))
    assert len(lines) == 1
    assert lines[0]["quantity"] == 20

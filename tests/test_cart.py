import json

import pytest

from cart import CART_STORAGE_KEY, Cart, CartStore, delivery_fee
from schemas import Product


def make_product(pid="p1", name="Tomatoes", price=10.0):
    return Product(id=pid, name=name, price=price, stock_level=5, farmer_id="f1")


@pytest.mark.parametrize("subtotal, fee", [
    (0, 25),
    (49.99, 25),
    (50.00, 15),
    (99.99, 15),
    (100.00, 0),
    (250, 0),
])
def test_delivery_fee_tiers(subtotal, fee):
    assert delivery_fee(subtotal) == fee


def test_add_merges_and_keeps_first_price():
    cart = Cart()
    cart.add(make_product(price=10.0), 2)
    cart.add(make_product(price=12.5), 3)

    assert len(cart.items) == 1
    assert cart.items[0].quantity == 5
    assert cart.items[0].price_per_item == 10.0
    assert cart.total_price == 50.0


def test_add_ignores_non_positive_quantity():
    cart = Cart()
    cart.add(make_product(), 0)
    cart.add(make_product(), -2)
    assert cart.is_empty()


def test_set_quantity_zero_removes_line():
    cart = Cart()
    cart.add(make_product("p1", price=10.0), 2)
    cart.add(make_product("p2", name="Eggs", price=3.0), 4)
    assert cart.total_items == 6
    assert cart.total_price == 32.0

    cart.set_quantity("p1", 0)

    assert cart.find("p1") is None
    assert cart.total_items == 4
    assert cart.total_price == 12.0


def test_remove_and_clear():
    cart = Cart()
    cart.add(make_product("p1"), 1)
    cart.add(make_product("p2"), 1)
    cart.remove("p1")
    assert [i.product_id for i in cart.items] == ["p2"]
    cart.clear()
    assert cart.total_items == 0
    assert cart.total_price == 0


def test_cart_persists_between_loads(gateway):
    store = CartStore(gateway, "client-1")
    cart = Cart.load(store)
    cart.add(make_product("p1", price=4.5), 2)

    reloaded = Cart.load(CartStore(gateway, "client-1"))
    assert reloaded.items[0].product_id == "p1"
    assert reloaded.items[0].quantity == 2

    raw = json.loads(gateway.get_client_value("client-1", CART_STORAGE_KEY))
    assert raw[0]["price_per_item"] == 4.5


def test_carts_are_scoped_per_client(gateway):
    Cart.load(CartStore(gateway, "a")).add(make_product(), 1)
    assert Cart.load(CartStore(gateway, "b")).is_empty()


@pytest.mark.parametrize("raw", ["not json", '{"oops": 1}', '[{"product_id": "p1"}]'])
def test_corrupt_storage_loads_empty_cart(gateway, raw):
    gateway.set_client_value("client-1", CART_STORAGE_KEY, raw)
    assert Cart.load(CartStore(gateway, "client-1")).is_empty()


def test_summary_includes_fee():
    cart = Cart()
    cart.add(make_product(price=20.0), 3)
    summary = cart.summary()
    assert summary["total_price"] == 60.0
    assert summary["delivery_fee"] == 15
    assert summary["total"] == 75.0


def test_cart_api_flow(client, farmer, add_product):
    pid = add_product(farmer["farmer_id"])
    headers = {"X-Client-Id": "browser-1"}

    res = client.post("/api/cart/items", json={"product_id": pid, "quantity": 2}, headers=headers)
    assert res.status_code == 200
    assert res.json()["total_items"] == 2

    client.post("/api/cart/items", json={"product_id": pid, "quantity": 1}, headers=headers)
    body = client.get("/api/cart", headers=headers).json()
    assert len(body["items"]) == 1
    assert body["items"][0]["quantity"] == 3

    body = client.put(f"/api/cart/items/{pid}", json={"quantity": 0}, headers=headers).json()
    assert body["items"] == []


def test_cart_api_rejects_out_of_stock(client, farmer, add_product):
    pid = add_product(farmer["farmer_id"], stock_level=0)
    res = client.post("/api/cart/items", json={"product_id": pid, "quantity": 1}, headers={"X-Client-Id": "c"})
    assert res.status_code == 409


def test_cart_api_requires_client_id(client):
    assert client.get("/api/cart").status_code == 400


def test_set_quantity_ignores_missing_line():
    cart = Cart()
    cart.add(make_product("p1"), 1)
    cart.set_quantity("p9", 4)
    assert [(i.product_id, i.quantity) for i in cart.items] == [("p1", 1)]


def test_cart_api_update_missing_line_is_not_found(client, farmer, add_product):
    pid = add_product(farmer["farmer_id"])
    headers = {"X-Client-Id": "browser-2"}
    res = client.put(f"/api/cart/items/{pid}", json={"quantity": 2}, headers=headers)
    assert res.status_code == 404
    assert client.get("/api/cart", headers=headers).json()["items"] == []

# tests/test_cart.py
import pytest

from cart import (
    INSUFFICIENT_STOCK,
    PRODUCT_DELETED,
    PRODUCT_NOT_APPROVED,
    PRODUCT_NOT_FOUND,
    VARIANT_NOT_FOUND,
)
from conftest import BUYER
from errors import EmptyCartError, NotFoundError, ValidationError


def test_empty_cart_cannot_be_snapshotted(services):
    with pytest.raises(EmptyCartError):
        services.cart.snapshot(BUYER)


def test_adding_same_product_twice_merges_lines(market, services):
    s = market.seller()
    p = market.product(s, 100)
    market.add(p, 1)
    market.add(p, 2)

    items = services.cart.list_items(BUYER)
    assert len(items) == 1
    assert items[0]["quantity"] == 3
    assert items[0]["product"]["name"] == "Item"


def test_snapshot_uses_live_price(market, services):
    s = market.seller()
    p = market.product(s, 100)
    market.add(p, 2)
    services.storage.update_document("product", p, {"price": 120})

    snap = services.cart.snapshot(BUYER)

    assert snap.ok
    line = snap.lines[0]
    assert line.unit_price == 120
    assert line.line_total == 240
    assert line.seller_id == s


def test_variant_price_and_stock_win(market, services):
    s = market.seller()
    p = market.product(s, 100, stock=0)
    v = market.variant(p, stock=5, price=150)
    market.add(p, 3, variant_id=v)

    snap = services.cart.snapshot(BUYER)

    assert snap.ok
    assert snap.lines[0].unit_price == 150
    assert snap.lines[0].stock == 5


def test_violations_are_collected_per_line(market, services):
    s = market.seller()
    ok = market.product(s, 10, name="Fine")
    low = market.product(s, 10, stock=1, name="Scarce")
    gone = market.product(s, 10, name="Gone")
    hidden = market.product(s, 10, name="Hidden")
    other = market.product(s, 10, name="Other")
    with_variant = market.product(s, 10, name="Shirt")
    wrong_variant = market.variant(other, stock=5)

    market.add(ok, 1)
    low_item = market.add(low, 2)
    gone_item = market.add(gone, 1)
    hidden_item = market.add(hidden, 1)
    variant_item = market.add(with_variant, 1)
    vanished = market.add(ok, 1, variant_id=market.variant(ok, stock=5, sku="SKU-2"))

    services.storage.update_document("product", gone, {"is_deleted": True})
    services.storage.update_document("product", hidden, {"is_approved": False})
    services.storage.update_document("cart_item", variant_item, {"variant_id": wrong_variant})
    services.storage.delete_document("product", ok)

    snap = services.cart.snapshot(BUYER)

    reasons = {v["item_id"]: v["reason"] for v in snap.violations}
    assert reasons[low_item] == INSUFFICIENT_STOCK
    assert reasons[gone_item] == PRODUCT_DELETED
    assert reasons[hidden_item] == PRODUCT_NOT_APPROVED
    assert reasons[variant_item] == VARIANT_NOT_FOUND
    assert reasons[vanished] == PRODUCT_NOT_FOUND
    assert not snap.ok


def test_unapproved_product_blocks_checkout(market, services):
    s = market.seller()
    p = market.product(s, 10, approved=False)
    item = market.add(p, 1)

    snap = services.cart.snapshot(BUYER)
    assert snap.lines == []
    assert snap.violations == [{"item_id": item, "reason": PRODUCT_NOT_APPROVED}]


def test_cannot_add_deleted_product(market, services):
    s = market.seller()
    p = market.product(s, 10)
    services.storage.update_document("product", p, {"is_deleted": True})
    with pytest.raises(NotFoundError):
        market.add(p, 1)


def test_update_and_remove_are_owner_scoped(market, services):
    s = market.seller()
    p = market.product(s, 10)
    item = market.add(p, 1)

    assert services.cart.update_quantity(BUYER, item, 4)["quantity"] == 4
    with pytest.raises(ValidationError):
        services.cart.update_quantity(BUYER, item, 0)
    with pytest.raises(NotFoundError):
        services.cart.update_quantity("someone-else", item, 2)
    with pytest.raises(NotFoundError):
        services.cart.remove_item("someone-else", item)

    services.cart.remove_item(BUYER, item)
    assert services.cart.list_items(BUYER) == []


def test_clear_only_given_lines(market, services):
    s = market.seller()
    first = market.add(market.product(s, 10, name="A"), 1)
    second = market.add(market.product(s, 20, name="B"), 1)

    assert services.cart.clear(BUYER, [first]) == 1
    assert [i["id"] for i in services.cart.list_items(BUYER)] == [second]

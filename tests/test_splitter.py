# tests/test_splitter.py
import pytest

from cart import CartSnapshot, SnapshotLine
from splitter import (
    FlatRateDeliveryPolicy,
    FreeDeliveryPolicy,
    delivery_policy_for,
    split_by_seller,
)


def line(item_id, seller_id, price, qty=1):
    return SnapshotLine(
        item_id=item_id,
        product_id=f"p-{item_id}",
        variant_id=None,
        seller_id=seller_id,
        name=item_id,
        quantity=qty,
        unit_price=price,
        gst_rate=0,
        stock=100,
    )


def snapshot(*lines):
    return CartSnapshot(buyer_id="b", lines=list(lines))


def test_groups_keep_first_appearance_order():
    snap = snapshot(line("1", "B", 100), line("2", "A", 50, qty=2), line("3", "B", 25))

    result = split_by_seller(snap, FreeDeliveryPolicy())

    assert [d.seller_id for d in result.drafts] == ["B", "A"]
    assert [d.position for d in result.drafts] == [0, 1]
    assert [d.subtotal for d in result.drafts] == [125, 100]
    assert [l.item_id for l in result.drafts[0].lines] == ["1", "3"]
    assert result.subtotal == 225
    assert result.multi_seller


def test_every_line_lands_in_exactly_one_draft():
    lines = [line(str(i), "ABC"[i % 3], 10 * i + 1, qty=i % 4 + 1) for i in range(12)]
    result = split_by_seller(snapshot(*lines), FreeDeliveryPolicy())

    placed = [l.item_id for d in result.drafts for l in d.lines]
    assert sorted(placed) == sorted(l.item_id for l in lines)
    assert result.subtotal == round(sum(l.line_total for l in lines), 2)
    assert result.subtotal == round(sum(d.subtotal for d in result.drafts), 2)


def test_single_seller_is_not_multi_seller():
    result = split_by_seller(snapshot(line("1", "A", 10), line("2", "A", 5)), FreeDeliveryPolicy())
    assert len(result.drafts) == 1
    assert not result.multi_seller
    assert result.gross_total == 15


def test_flat_rate_delivery_per_seller():
    snap = snapshot(line("1", "A", 600), line("2", "B", 300))

    result = split_by_seller(snap, FlatRateDeliveryPolicy(40, free_above=500))

    assert [d.delivery_charge for d in result.drafts] == [0, 40]
    assert result.delivery_charges == 40
    assert result.gross_total == 940


def test_policy_selection():
    assert isinstance(delivery_policy_for(0, 0), FreeDeliveryPolicy)
    policy = delivery_policy_for(30, 0)
    assert isinstance(policy, FlatRateDeliveryPolicy)
    # no waiver configured
    assert policy.charge_for("A", 10_000, []) == 30


def test_snapshot_with_violations_is_refused():
    snap = snapshot(line("1", "A", 10))
    snap.violations.append({"item_id": "2", "reason": "insufficient_stock"})
    with pytest.raises(ValueError):
        split_by_seller(snap, FreeDeliveryPolicy())

"""
Buyer carts and the checkout snapshot built from them.

The snapshot re-reads every product and variant so prices and stock are
live; whatever price was cached on the cart line when it was added is
ignored. Problems with individual lines are collected, not raised, so the
buyer sees every blocked item at once.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from bson import ObjectId

from database import Storage, oid, serialize
from errors import EmptyCartError, NotFoundError, ValidationError
from schemas import CartItem, CartItemIn

logger = logging.getLogger(__name__)

CART = "cart_item"
PRODUCTS = "product"
VARIANTS = "variant"

# violation reasons
PRODUCT_NOT_FOUND = "product_not_found"
PRODUCT_DELETED = "product_deleted"
PRODUCT_NOT_APPROVED = "product_not_approved"
VARIANT_NOT_FOUND = "variant_not_found"
INSUFFICIENT_STOCK = "insufficient_stock"


@dataclass
class SnapshotLine:
    item_id: str
    product_id: str
    variant_id: Optional[str]
    seller_id: str
    name: str
    quantity: int
    unit_price: float
    gst_rate: float
    stock: int

    @property
    def line_total(self) -> float:
        return round(self.unit_price * self.quantity, 2)


@dataclass
class CartSnapshot:
    buyer_id: str
    lines: List[SnapshotLine] = field(default_factory=list)
    violations: List[Dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations


def _by_id(docs: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    return {str(d["_id"]): d for d in docs}


def _oids(values) -> List[ObjectId]:
    return [ObjectId(v) for v in values if v and ObjectId.is_valid(v)]


class CartService:
    def __init__(self, storage: Storage):
        self.storage = storage

    def _items(self, user_id: str) -> List[Dict[str, Any]]:
        return self.storage.get_documents(CART, {"user_id": user_id}, sort=[("created_at", 1), ("_id", 1)])

    def list_items(self, user_id: str) -> List[Dict[str, Any]]:
        items = self._items(user_id)
        products = _by_id(self.storage.get_documents(PRODUCTS, {"_id": {"$in": _oids(i["product_id"] for i in items)}}))
        out = []
        for item in items:
            view = serialize(item)
            product = products.get(item["product_id"])
            view["product"] = serialize(product)
            out.append(view)
        return out

    def add_item(self, user_id: str, req: CartItemIn) -> Dict[str, Any]:
        product = self.storage.get_document(PRODUCTS, oid(req.product_id))
        if product is None or product.get("is_deleted"):
            raise NotFoundError("Product not found", product_id=req.product_id)
        price = product.get("price")
        if req.variant_id:
            variant = self.storage.get_document(VARIANTS, oid(req.variant_id))
            if variant is None or variant.get("product_id") != req.product_id:
                raise NotFoundError("Variant not found", variant_id=req.variant_id)
            if variant.get("price") is not None:
                price = variant["price"]

        existing = self.storage.find_document(
            CART, {"user_id": user_id, "product_id": req.product_id, "variant_id": req.variant_id}
        )
        if existing:
            self.storage.give(CART, {"_id": existing["_id"]}, {"quantity": req.quantity})
            return serialize(self.storage.get_document(CART, existing["_id"]))

        line = CartItem(
            user_id=user_id,
            product_id=req.product_id,
            variant_id=req.variant_id,
            quantity=req.quantity,
            price_at_add=price,
        )
        item_id = self.storage.create_document(CART, line.model_dump())
        return serialize(self.storage.get_document(CART, item_id))

    def update_quantity(self, user_id: str, item_id: str, quantity: int) -> Dict[str, Any]:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", quantity=quantity)
        updated = self.storage.update_document(CART, oid(item_id), {"quantity": quantity}, expected={"user_id": user_id})
        if updated is None:
            raise NotFoundError("Cart item not found", item_id=item_id)
        return serialize(updated)

    def remove_item(self, user_id: str, item_id: str) -> None:
        removed = self.storage.delete_documents(CART, {"_id": oid(item_id), "user_id": user_id})
        if not removed:
            raise NotFoundError("Cart item not found", item_id=item_id)

    def clear(self, user_id: str, item_ids: Optional[List[str]] = None) -> int:
        """Empty the cart, or only the given lines when `item_ids` is set."""
        query: Dict[str, Any] = {"user_id": user_id}
        if item_ids is not None:
            query["_id"] = {"$in": _oids(item_ids)}
        return self.storage.delete_documents(CART, query)

    def snapshot(self, buyer_id: str) -> CartSnapshot:
        items = self._items(buyer_id)
        if not items:
            raise EmptyCartError()

        products = _by_id(self.storage.get_documents(PRODUCTS, {"_id": {"$in": _oids(i["product_id"] for i in items)}}))
        variants = _by_id(self.storage.get_documents(VARIANTS, {"_id": {"$in": _oids(i.get("variant_id") for i in items)}}))

        snap = CartSnapshot(buyer_id=buyer_id)
        for item in items:
            item_id = str(item["_id"])
            product = products.get(item["product_id"])
            reason = None
            variant = None
            if product is None:
                reason = PRODUCT_NOT_FOUND
            elif product.get("is_deleted"):
                reason = PRODUCT_DELETED
            elif not product.get("is_approved"):
                reason = PRODUCT_NOT_APPROVED
            elif item.get("variant_id"):
                variant = variants.get(item["variant_id"])
                if variant is None or variant.get("product_id") != item["product_id"]:
                    reason = VARIANT_NOT_FOUND

            if reason is None:
                source = variant if variant is not None else product
                stock = int(source.get("stock", 0))
                if stock < item["quantity"]:
                    reason = INSUFFICIENT_STOCK

            if reason is not None:
                snap.violations.append({"item_id": item_id, "reason": reason})
                continue

            price = product["price"]
            if variant is not None and variant.get("price") is not None:
                price = variant["price"]
            snap.lines.append(
                SnapshotLine(
                    item_id=item_id,
                    product_id=item["product_id"],
                    variant_id=item.get("variant_id"),
                    seller_id=product["seller_id"],
                    name=product.get("name", ""),
                    quantity=int(item["quantity"]),
                    unit_price=float(price),
                    gst_rate=float(product.get("gst_rate", 0)),
                    stock=stock,
                )
            )

        if snap.violations:
            logger.warning("Cart for %s has %d blocked items", buyer_id, len(snap.violations))
        return snap

"""
Checkout settlement: turning a buyer's cart into an order.

The sequence for `create_order` is

1. resolve the shipping address and snapshot the cart (live prices/stock)
2. split by seller and price delivery
3. validate coupon, wallet coins, redeemed coins and reward points against
   live balances, and all of them together against the amount payable
4. verify an online payment if one was made
5. reserve stock with conditional decrements
6. write the order, its sub-orders and items
7. queue the wallet debits, cart cleanup, rewards and notifications

Anything that fails in steps 1-5 leaves nothing behind. Once step 6 has
succeeded the order stands: later failures are logged by the outbox and
retried, never rolled back into the order.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from cart import INSUFFICIENT_STOCK, PRODUCTS, VARIANTS, CartService, CartSnapshot
from collaborators import PaymentGateway
from database import Storage, now_utc, oid, serialize
from errors import (
    ExcessiveDiscountError,
    InsufficientBalanceError,
    NotFoundError,
    PaymentVerificationError,
    PermissionDeniedError,
    StockViolationError,
    ValidationError,
)
from order_status import StatusService
from schemas import Actor, Address, CheckoutRequest, Order, OrderItem, SubOrder, WalletPool
from settings import Settings
from side_effects import ORDER_ITEMS, ORDERS, SUB_ORDERS, SideEffects
from splitter import DeliveryPolicy, SplitResult, split_by_seller
from wallet import POOL_LABELS, WalletLedger

logger = logging.getLogger(__name__)

ADDRESSES = "address"
COUPONS = "coupon"


class CouponBook:
    def __init__(self, storage: Storage):
        self.storage = storage

    def discount_for(self, code: Optional[str], subtotal: float) -> float:
        if not code:
            return 0.0
        coupon = self.storage.find_document(COUPONS, {"code": code.strip().upper(), "active": True})
        if coupon is None:
            raise ValidationError("Invalid coupon code", coupon_code=code)
        if subtotal < float(coupon.get("min_order", 0)):
            raise ValidationError(
                "Order does not meet the coupon minimum", coupon_code=code, min_order=coupon["min_order"]
            )
        if coupon.get("kind") == "percent":
            return round(subtotal * float(coupon["value"]) / 100, 2)
        return round(min(float(coupon["value"]), subtotal), 2)


@dataclass
class DiscountApplication:
    wallet_coins_used: float = 0.0
    redeem_coins_used: float = 0.0
    reward_points_used: float = 0.0
    reward_discount: float = 0.0
    coupon_discount: float = 0.0

    @property
    def total(self) -> float:
        return round(self.wallet_coins_used + self.redeem_coins_used + self.reward_discount + self.coupon_discount, 2)

    def debits(self) -> Dict[str, float]:
        return {
            WalletPool.BALANCE.value: self.wallet_coins_used,
            WalletPool.REDEEMED.value: self.redeem_coins_used,
            WalletPool.REWARD_POINTS.value: self.reward_points_used,
        }


@dataclass
class CheckoutQuote:
    snapshot: CartSnapshot
    split: SplitResult
    discounts: DiscountApplication
    total: float
    shipping_address: Dict[str, Any]
    address_id: Optional[str] = None

    def view(self) -> Dict[str, Any]:
        return {
            "sub_orders": [
                {
                    "seller_id": d.seller_id,
                    "subtotal": d.subtotal,
                    "delivery_charge": d.delivery_charge,
                    "items": [
                        {
                            "item_id": line.item_id,
                            "product_id": line.product_id,
                            "variant_id": line.variant_id,
                            "name": line.name,
                            "quantity": line.quantity,
                            "unit_price": line.unit_price,
                        }
                        for line in d.lines
                    ],
                }
                for d in self.split.drafts
            ],
            "subtotal": self.split.subtotal,
            "delivery_charges": self.split.delivery_charges,
            "wallet_discount": self.discounts.wallet_coins_used,
            "redeem_discount": self.discounts.redeem_coins_used,
            "reward_discount": self.discounts.reward_discount,
            "coupon_discount": self.discounts.coupon_discount,
            "total": self.total,
            "multi_seller": self.split.multi_seller,
        }


class SettlementCoordinator:
    def __init__(
        self,
        storage: Storage,
        cart: CartService,
        wallet: WalletLedger,
        effects: SideEffects,
        statuses: StatusService,
        coupons: CouponBook,
        gateway: PaymentGateway,
        delivery: DeliveryPolicy,
        settings: Settings,
    ):
        self.storage = storage
        self.cart = cart
        self.wallet = wallet
        self.effects = effects
        self.statuses = statuses
        self.coupons = coupons
        self.gateway = gateway
        self.delivery = delivery
        self.settings = settings

    # ----- quoting -----

    def _shipping_address(self, buyer_id: str, req: CheckoutRequest) -> Tuple[Dict[str, Any], Optional[str]]:
        if req.address_id:
            saved = self.storage.find_document(ADDRESSES, {"_id": oid(req.address_id), "user_id": buyer_id})
            if saved is None:
                raise ValidationError("Shipping address not found", address_id=req.address_id)
            fields = {k: saved.get(k) for k in Address.model_fields}
            return Address(**fields).model_dump(), req.address_id
        if req.shipping_details is not None:
            return req.shipping_details.model_dump(), None
        raise ValidationError("A shipping address is required", field="address_id")

    def _check_pool(self, buyer_id: str, pool: WalletPool, requested: float) -> None:
        if requested <= 0:
            return
        available = self.wallet.available(buyer_id, pool)
        if requested > available:
            raise InsufficientBalanceError(POOL_LABELS[pool], requested, available)

    def _discounts(self, buyer_id: str, req: CheckoutRequest, split: SplitResult) -> DiscountApplication:
        applied = DiscountApplication(
            wallet_coins_used=round(req.wallet_coins_used, 2),
            redeem_coins_used=round(req.redeem_coins_used, 2),
            reward_points_used=round(req.reward_points_used, 2),
            reward_discount=round(req.reward_points_used * self.settings.reward_point_value, 2),
            coupon_discount=self.coupons.discount_for(req.coupon_code, split.subtotal),
        )
        self._check_pool(buyer_id, WalletPool.BALANCE, applied.wallet_coins_used)
        self._check_pool(buyer_id, WalletPool.REDEEMED, applied.redeem_coins_used)
        self._check_pool(buyer_id, WalletPool.REWARD_POINTS, applied.reward_points_used)

        payable = split.gross_total
        if applied.total > payable:
            raise ExcessiveDiscountError(applied.total, payable)
        return applied

    def quote(self, buyer_id: str, req: CheckoutRequest) -> CheckoutQuote:
        shipping_address, address_id = self._shipping_address(buyer_id, req)
        snapshot = self.cart.snapshot(buyer_id)
        if not snapshot.ok:
            raise StockViolationError(snapshot.violations)
        split = split_by_seller(snapshot, self.delivery)
        discounts = self._discounts(buyer_id, req, split)
        total = max(round(split.gross_total - discounts.total, 2), 0.0)
        return CheckoutQuote(
            snapshot=snapshot,
            split=split,
            discounts=discounts,
            total=total,
            shipping_address=shipping_address,
            address_id=address_id,
        )

    def preview(self, buyer_id: str, req: CheckoutRequest) -> Dict[str, Any]:
        return self.quote(buyer_id, req).view()

    def create_payment_intent(self, buyer_id: str, req: CheckoutRequest) -> Dict[str, Any]:
        quote = self.quote(buyer_id, req)
        if quote.total <= 0:
            raise ValidationError("Nothing to pay online for this order", total=quote.total)
        receipt_id = f"rcpt_{uuid.uuid4().hex[:20]}"
        gateway_order = self.gateway.create_order(
            int(round(quote.total * 100)), receipt_id, {"buyer_id": buyer_id}
        )
        return {"receipt_id": receipt_id, "gateway_order": gateway_order, "total": quote.total, "currency": self.settings.currency}

    # ----- checkout -----

    def _verify_payment(self, req: CheckoutRequest) -> Optional[str]:
        if req.payment_method != "online":
            return None
        if not (req.gateway_order_id and req.payment_id and req.payment_signature):
            raise ValidationError(
                "Online payment requires gateway_order_id, payment_id and payment_signature"
            )
        result = self.gateway.verify_payment(req.payment_id, req.gateway_order_id, req.payment_signature)
        if not result.get("success"):
            raise PaymentVerificationError("Payment verification failed", payment_id=req.payment_id)
        return req.payment_id

    def _reserve_stock(self, snapshot: CartSnapshot) -> List[Tuple[str, str, int]]:
        taken = []
        for line in snapshot.lines:
            collection, doc_id = (VARIANTS, line.variant_id) if line.variant_id else (PRODUCTS, line.product_id)
            if not self.storage.decrement_stock(collection, doc_id, line.quantity):
                self._release_stock(taken)
                logger.warning("Stock ran out for %s during checkout of %s", doc_id, snapshot.buyer_id)
                raise StockViolationError([{"item_id": line.item_id, "reason": INSUFFICIENT_STOCK}])
            taken.append((collection, doc_id, line.quantity))
        return taken

    def _release_stock(self, taken) -> None:
        for collection, doc_id, quantity in taken:
            self.storage.increment_stock(collection, doc_id, quantity)

    def _persist(self, buyer_id: str, quote: CheckoutQuote, req: CheckoutRequest, payment_reference: Optional[str]) -> str:
        d = quote.discounts
        order = Order(
            buyer_id=buyer_id,
            total=quote.total,
            subtotal=quote.split.subtotal,
            delivery_charges=quote.split.delivery_charges,
            placed_at=now_utc(),
            address_id=quote.address_id,
            shipping_address=quote.shipping_address,
            payment_method=req.payment_method,
            payment_reference=payment_reference,
            wallet_discount=d.wallet_coins_used,
            redeem_discount=d.redeem_coins_used,
            reward_discount=d.reward_discount,
            coupon_discount=d.coupon_discount,
            coupon_code=req.coupon_code.strip().upper() if req.coupon_code else None,
            multi_seller=quote.split.multi_seller,
        )
        order_id = self.storage.create_document(ORDERS, order.model_dump())
        try:
            sub_ids = self.storage.create_documents(SUB_ORDERS, [
                SubOrder(
                    order_id=order_id,
                    seller_id=draft.seller_id,
                    position=draft.position,
                    subtotal=draft.subtotal,
                    delivery_charge=draft.delivery_charge,
                ).model_dump()
                for draft in quote.split.drafts
            ])
            items = []
            for sub_id, draft in zip(sub_ids, quote.split.drafts):
                for line in draft.lines:
                    items.append(OrderItem(
                        order_id=order_id,
                        sub_order_id=sub_id,
                        product_id=line.product_id,
                        variant_id=line.variant_id,
                        seller_id=line.seller_id,
                        name=line.name,
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                        gst_rate=line.gst_rate,
                    ).model_dump())
            self.storage.create_documents(ORDER_ITEMS, items)
        except Exception:
            logger.exception("Failed writing sub-orders for order %s; removing it", order_id)
            self.storage.delete_documents(ORDER_ITEMS, {"order_id": order_id})
            self.storage.delete_documents(SUB_ORDERS, {"order_id": order_id})
            self.storage.delete_document(ORDERS, order_id)
            raise
        return order_id

    def _paid_order(self, buyer_id: str, payment_id: str) -> Optional[Dict[str, Any]]:
        existing = self.storage.find_document(ORDERS, {"buyer_id": buyer_id, "payment_reference": payment_id})
        if existing is not None:
            logger.info("Checkout retry for payment %s returns order %s", payment_id, existing["_id"])
            return self._detail(serialize(existing))
        return None

    def create_order(self, buyer_id: str, req: CheckoutRequest) -> Dict[str, Any]:
        if req.payment_method == "online" and req.payment_id:
            existing = self._paid_order(buyer_id, req.payment_id)
            if existing is not None:
                return existing

        quote = self.quote(buyer_id, req)
        payment_reference = self._verify_payment(req)
        taken = self._reserve_stock(quote.snapshot)
        try:
            order_id = self._persist(buyer_id, quote, req, payment_reference)
        except DuplicateKeyError:
            # a concurrent checkout with the same payment got its order in first
            self._release_stock(taken)
            existing = self._paid_order(buyer_id, payment_reference)
            if existing is None:
                raise PaymentVerificationError("Payment already settled another order", payment_id=payment_reference)
            return existing
        except Exception:
            self._release_stock(taken)
            raise

        order = self._detail(serialize(self.storage.get_document(ORDERS, order_id)))
        logger.info(
            "Order %s placed by %s: total=%s sellers=%d", order_id, buyer_id, quote.total, len(quote.split.drafts)
        )
        keys = self.effects.order_placed(
            order, order["sub_orders"], quote.discounts.debits(), [l.item_id for l in quote.snapshot.lines]
        )
        self.effects.run(keys)
        return order

    # ----- status changes -----

    def update_order_status(self, order_id: str, status, actor: Actor) -> Dict[str, Any]:
        self.statuses.update_order_status(order_id, status, actor)
        return self.get_order(order_id, actor)

    def update_sub_order_status(self, sub_order_id: str, status, actor: Actor) -> Dict[str, Any]:
        return self.statuses.update_sub_order_status(sub_order_id, status, actor)

    def cancel_order(self, order_id: str, actor: Actor) -> Dict[str, Any]:
        self.statuses.cancel_order(order_id, actor)
        return self.get_order(order_id, actor)

    # ----- reads -----

    def _detail(self, order: Dict[str, Any], seller_id: Optional[str] = None) -> Dict[str, Any]:
        query: Dict[str, Any] = {"order_id": order["id"]}
        if seller_id is not None:
            query["seller_id"] = seller_id
        subs = [serialize(s) for s in self.storage.get_documents(SUB_ORDERS, query, sort=[("position", 1)])]
        items = [serialize(i) for i in self.storage.get_documents(ORDER_ITEMS, {"order_id": order["id"]})]
        for sub in subs:
            sub["items"] = [i for i in items if i["sub_order_id"] == sub["id"]]
        return dict(order, sub_orders=subs)

    def get_order(self, order_id: str, actor: Actor) -> Dict[str, Any]:
        order = serialize(self.storage.get_document(ORDERS, order_id))
        if order is None:
            raise NotFoundError("Order not found", order_id=order_id)
        if actor.is_admin:
            return self._detail(order)
        if actor.role == "seller":
            detail = self._detail(order, seller_id=actor.seller_id)
            if detail["sub_orders"]:
                return detail
        elif order["buyer_id"] == actor.user_id:
            return self._detail(order)
        raise PermissionDeniedError("Not allowed to view this order")

    def list_orders(self, actor: Actor) -> List[Dict[str, Any]]:
        if actor.is_admin:
            orders = self.storage.get_documents(ORDERS, {}, sort=[("placed_at", -1)])
            return [self._detail(serialize(o)) for o in orders]
        if actor.role == "seller":
            subs = self.storage.get_documents(SUB_ORDERS, {"seller_id": actor.seller_id})
            order_ids = list(dict.fromkeys(s["order_id"] for s in subs))
            orders = self.storage.get_documents(
                ORDERS, {"_id": {"$in": [oid(i) for i in order_ids]}}, sort=[("placed_at", -1)]
            )
            return [self._detail(serialize(o), seller_id=actor.seller_id) for o in orders]
        orders = self.storage.get_documents(ORDERS, {"buyer_id": actor.user_id}, sort=[("placed_at", -1)])
        return [self._detail(serialize(o)) for o in orders]

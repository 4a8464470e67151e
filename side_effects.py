"""
Post-commit side effects of checkout and status changes.

Callers enqueue through `SideEffects`; the handlers registered here run
from the outbox. Every task key names the entity and the change that caused
it, so asking for the same effect twice only ever queues it once.
"""
import logging
from typing import Any, Dict, List, Optional

from cart import PRODUCTS, VARIANTS, CartService
from collaborators import EmailService, Notifier
from database import Storage, oid, serialize
from outbox import Outbox, TaskDeferred
from schemas import WalletPool
from wallet import CHECKOUT_DEBIT, ORDER_CANCEL_REFUND, TRANSACTIONS, WalletLedger

logger = logging.getLogger(__name__)

ORDERS = "order"
SUB_ORDERS = "sub_order"
ORDER_ITEMS = "order_item"
SELLERS = "seller"

WALLET_DEBIT = "wallet.debit"
WALLET_REFUND = "wallet.refund"
FIRST_PURCHASE = "wallet.first_purchase_reward"
STOCK_RESTORE = "stock.restore"
CART_CLEAR = "cart.clear"
NOTIFY = "notify"
EMAIL_PLACED = "email.order_placed"
EMAIL_SHIPPED = "email.order_shipped"
EMAIL_CANCELLED = "email.order_cancelled"


def debit_reference(order_id: str, pool: str) -> str:
    return f"debit:{order_id}:{pool}"


def refund_reference(order_id: str, scope: str) -> str:
    return f"refund:{order_id}:{scope}"


class SideEffects:
    def __init__(
        self,
        outbox: Outbox,
        storage: Storage,
        wallet: WalletLedger,
        cart: CartService,
        notifier: Notifier,
        email: EmailService,
    ):
        self.outbox = outbox
        self.storage = storage
        self.wallet = wallet
        self.cart = cart
        self.notifier = notifier
        self.email = email

        outbox.register(WALLET_DEBIT, self._debit)
        outbox.register(WALLET_REFUND, self._refund)
        outbox.register(FIRST_PURCHASE, self._first_purchase)
        outbox.register(STOCK_RESTORE, self._restore_stock)
        outbox.register(CART_CLEAR, self._clear_cart)
        outbox.register(NOTIFY, self._notify)
        outbox.register(EMAIL_PLACED, self._email_placed)
        outbox.register(EMAIL_SHIPPED, self._email_shipped)
        outbox.register(EMAIL_CANCELLED, self._email_cancelled)

    def run(self, keys: List[Optional[str]]) -> None:
        self.outbox.dispatch(keys)

    # ----- enqueue -----

    def order_placed(
        self,
        order: Dict[str, Any],
        sub_orders: List[Dict[str, Any]],
        debits: Dict[str, float],
        cart_item_ids: List[str],
    ) -> List[Optional[str]]:
        order_id = order["id"]
        buyer_id = order["buyer_id"]
        keys = []
        for pool, amount in debits.items():
            if amount > 0:
                keys.append(self.outbox.enqueue(
                    WALLET_DEBIT,
                    {"user_id": buyer_id, "order_id": order_id, "pool": pool, "amount": amount},
                    key=f"{debit_reference(order_id, pool)}",
                ))
        keys.append(self.outbox.enqueue(
            CART_CLEAR, {"user_id": buyer_id, "item_ids": cart_item_ids}, key=f"cart-clear:{order_id}"
        ))
        keys.append(self.outbox.enqueue(
            FIRST_PURCHASE, {"user_id": buyer_id, "order_id": order_id}, key=f"first-purchase:{buyer_id}"
        ))
        keys.append(self._notify_later(
            f"order:{order_id}:placed:buyer",
            buyer_id,
            "Order placed",
            f"Your order {order_id} has been placed.",
            "order_placed",
            f"/orders/{order_id}",
        ))
        for sub in sub_orders:
            seller = self.storage.get_document(SELLERS, sub["seller_id"])
            if seller and seller.get("owner_user_id"):
                keys.append(self._notify_later(
                    f"sub_order:{sub['id']}:placed:seller",
                    seller["owner_user_id"],
                    "New order",
                    f"You have a new order {sub['id']}.",
                    "new_order",
                    f"/seller/orders/{sub['id']}",
                ))
        keys.append(self.outbox.enqueue(EMAIL_PLACED, {"order_id": order_id}, key=f"email:{order_id}:placed"))
        return keys

    def sub_order_shipped(self, order: Dict[str, Any], sub: Dict[str, Any], old: str) -> List[Optional[str]]:
        change = f"sub_order:{sub['id']}:{old}->shipped"
        return [
            self._notify_later(
                f"{change}:notify",
                order["buyer_id"],
                "Order shipped",
                f"Items from your order {order['id']} are on their way.",
                "order_shipped",
                f"/orders/{order['id']}",
            ),
            self.outbox.enqueue(
                EMAIL_SHIPPED, {"order_id": order["id"], "sub_order_id": sub["id"]}, key=f"{change}:email"
            ),
        ]

    def sub_order_cancelled(
        self, order: Dict[str, Any], sub: Dict[str, Any], old: str, refund: float, notify: bool
    ) -> List[Optional[str]]:
        change = f"sub_order:{sub['id']}:{old}->cancelled"
        keys = [self.outbox.enqueue(STOCK_RESTORE, {"sub_order_id": sub["id"]}, key=f"restock:{sub['id']}")]
        if refund > 0:
            keys.append(self._refund_later(order, sub["id"], refund))
        if notify:
            keys.append(self._notify_later(
                f"{change}:notify",
                order["buyer_id"],
                "Order cancelled",
                f"Part of your order {order['id']} has been cancelled.",
                "order_cancelled",
                f"/orders/{order['id']}",
            ))
            keys.append(self.outbox.enqueue(
                EMAIL_CANCELLED, {"order_id": order["id"], "sub_order_id": sub["id"]}, key=f"{change}:email"
            ))
        return keys

    def order_cancelled(self, order: Dict[str, Any], old: str, refund: float, notify: bool) -> List[Optional[str]]:
        change = f"order:{order['id']}:{old}->cancelled"
        keys = []
        if refund > 0:
            keys.append(self._refund_later(order, "order", refund))
        if notify:
            keys.append(self._notify_later(
                f"{change}:notify",
                order["buyer_id"],
                "Order cancelled",
                f"Your order {order['id']} has been cancelled.",
                "order_cancelled",
                f"/orders/{order['id']}",
            ))
            keys.append(self.outbox.enqueue(EMAIL_CANCELLED, {"order_id": order["id"]}, key=f"{change}:email"))
        return keys

    def _refund_later(self, order: Dict[str, Any], scope: str, amount: float) -> Optional[str]:
        reference = refund_reference(order["id"], scope)
        return self.outbox.enqueue(
            WALLET_REFUND,
            {"user_id": order["buyer_id"], "order_id": order["id"], "amount": amount, "reference": reference},
            key=reference,
        )

    def _notify_later(self, key, user_id, title, message, kind, link) -> Optional[str]:
        payload = {
            "user_id": user_id,
            "notification": {"title": title, "message": message, "type": kind, "link": link},
        }
        return self.outbox.enqueue(NOTIFY, payload, key=key)

    # ----- handlers -----

    def _debit(self, p: Dict[str, Any]) -> None:
        self.wallet.redeem(
            p["user_id"],
            p["amount"],
            CHECKOUT_DEBIT,
            related_order_id=p["order_id"],
            pool=p["pool"],
            reference=debit_reference(p["order_id"], p["pool"]),
        )

    def _refund(self, p: Dict[str, Any]) -> None:
        reference = debit_reference(p["order_id"], WalletPool.BALANCE.value)
        debit_task = self.outbox.status(reference)
        if debit_task in ("pending", "running"):
            raise TaskDeferred(f"wallet debit {reference} has not settled")
        if self.storage.get_document(TRANSACTIONS, reference) is None:
            logger.warning("Skipping refund %s: order %s never debited wallet coins", p["reference"], p["order_id"])
            return
        credited = self.wallet.credit(
            p["user_id"],
            p["amount"],
            ORDER_CANCEL_REFUND,
            related_order_id=p["order_id"],
            reference=p["reference"],
        )
        if credited:
            self.storage.give(ORDERS, {"_id": oid(p["order_id"])}, {"wallet_refunded": p["amount"]})

    def _first_purchase(self, p: Dict[str, Any]) -> None:
        self.wallet.process_first_purchase_reward(p["user_id"], p["order_id"])

    def _restore_stock(self, p: Dict[str, Any]) -> None:
        for item in self.storage.get_documents(ORDER_ITEMS, {"sub_order_id": p["sub_order_id"]}):
            claimed = self.storage.update_document(ORDER_ITEMS, item["_id"], {"restocked": True}, expected={"restocked": False})
            if claimed is None:
                continue
            if item.get("variant_id"):
                self.storage.increment_stock(VARIANTS, item["variant_id"], item["quantity"])
            else:
                self.storage.increment_stock(PRODUCTS, item["product_id"], item["quantity"])
        logger.info("Restored stock for sub-order %s", p["sub_order_id"])

    def _clear_cart(self, p: Dict[str, Any]) -> None:
        self.cart.clear(p["user_id"], p.get("item_ids"))

    def _notify(self, p: Dict[str, Any]) -> None:
        self.notifier.notify_user(p["user_id"], p["notification"])

    def _load(self, order_id: str, sub_order_id: Optional[str] = None):
        order = serialize(self.storage.get_document(ORDERS, order_id))
        sub = serialize(self.storage.get_document(SUB_ORDERS, sub_order_id)) if sub_order_id else None
        return order, sub

    def _email_placed(self, p: Dict[str, Any]) -> None:
        order, _ = self._load(p["order_id"])
        subs = [serialize(s) for s in self.storage.get_documents(SUB_ORDERS, {"order_id": p["order_id"]})]
        self.email.send_order_placed_emails(order, subs)

    def _email_shipped(self, p: Dict[str, Any]) -> None:
        order, sub = self._load(p["order_id"], p["sub_order_id"])
        self.email.send_order_shipped_emails(order, sub)

    def _email_cancelled(self, p: Dict[str, Any]) -> None:
        order, sub = self._load(p["order_id"], p.get("sub_order_id"))
        self.email.send_order_cancelled_emails(order, sub)

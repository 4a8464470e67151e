"""
Order and sub-order status machine.

Both levels share one set of states:

    pending -> processing -> shipped -> delivered
    pending | processing -> cancelled
    delivered -> approve_return -> process_return -> completed_return
    delivered | approve_return -> reject_return

Sub-orders move independently. After every sub-order write the parent is
recomputed from a fresh read of all its sub-orders: when they agree on one
status the parent takes it, otherwise it stays where it is. Writing the
parent directly fans the new status out to every sub-order.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from database import Storage, serialize
from errors import InvalidStatusTransitionError, NotFoundError, PermissionDeniedError, ValidationError
from schemas import Actor, OrderStatus
from side_effects import ORDERS, SUB_ORDERS, SideEffects

logger = logging.getLogger(__name__)

S = OrderStatus

TRANSITIONS = {
    S.PENDING: {S.PROCESSING, S.CANCELLED},
    S.PROCESSING: {S.SHIPPED, S.CANCELLED},
    S.SHIPPED: {S.DELIVERED},
    S.DELIVERED: {S.APPROVE_RETURN, S.REJECT_RETURN},
    S.APPROVE_RETURN: {S.PROCESS_RETURN, S.REJECT_RETURN},
    S.PROCESS_RETURN: {S.COMPLETED_RETURN},
    S.CANCELLED: set(),
    S.COMPLETED_RETURN: set(),
    S.REJECT_RETURN: set(),
}

TERMINAL = frozenset(s for s, nxt in TRANSITIONS.items() if not nxt)

# CAS retries when another request moves the same entity mid-write
_WRITE_ATTEMPTS = 3


def parse_status(value) -> OrderStatus:
    try:
        return S(value)
    except ValueError:
        raise ValidationError(f"Invalid order status: {value}", allowed=[s.value for s in S])


def can_transition(current, new) -> bool:
    return S(new) in TRANSITIONS[S(current)]


def check_transition(current, new, strict: bool = True, entity_id: Optional[str] = None) -> None:
    current, new = S(current), S(new)
    if current == new or not strict:
        return
    if new not in TRANSITIONS[current]:
        raise InvalidStatusTransitionError(current.value, new.value, entity_id)


def aggregate(statuses: Iterable[str]) -> Optional[OrderStatus]:
    """The status every sub-order shares, or None if they disagree."""
    distinct = set(statuses)
    if len(distinct) == 1:
        return S(distinct.pop())
    return None


def refund_share(order: Dict[str, Any], sub: Dict[str, Any]) -> float:
    """Wallet coins owed back when one sub-order alone is cancelled."""
    spent = float(order.get("wallet_discount") or 0)
    subtotal = float(order.get("subtotal") or 0)
    if spent <= 0 or subtotal <= 0:
        return 0.0
    return round(spent * float(sub["subtotal"]) / subtotal, 2)


class StatusService:
    def __init__(self, storage: Storage, effects: SideEffects, strict: bool = True):
        self.storage = storage
        self.effects = effects
        self.strict = strict

    # ----- loading / authorization -----

    def _order(self, order_id: str) -> Dict[str, Any]:
        order = serialize(self.storage.get_document(ORDERS, order_id))
        if order is None:
            raise NotFoundError("Order not found", order_id=order_id)
        return order

    def _sub_order(self, sub_order_id: str) -> Dict[str, Any]:
        sub = serialize(self.storage.get_document(SUB_ORDERS, sub_order_id))
        if sub is None:
            raise NotFoundError("Sub-order not found", sub_order_id=sub_order_id)
        return sub

    def _siblings(self, order_id: str) -> List[Dict[str, Any]]:
        docs = self.storage.get_documents(SUB_ORDERS, {"order_id": order_id}, sort=[("position", 1)])
        return [serialize(d) for d in docs]

    @staticmethod
    def _seller_owns(actor: Actor, subs: List[Dict[str, Any]]) -> bool:
        return actor.role == "seller" and bool(subs) and all(s["seller_id"] == actor.seller_id for s in subs)

    def _authorize_sub(self, actor: Actor, sub: Dict[str, Any]) -> None:
        if actor.is_admin or self._seller_owns(actor, [sub]):
            return
        raise PermissionDeniedError("Only the seller of this sub-order or an admin can change it")

    def _authorize_order(self, actor: Actor, order: Dict[str, Any], subs: List[Dict[str, Any]], cancelling: bool) -> None:
        if actor.is_admin or self._seller_owns(actor, subs):
            return
        if cancelling and actor.role == "buyer" and actor.user_id == order["buyer_id"]:
            return
        raise PermissionDeniedError("Not allowed to change this order")

    # ----- writes -----

    def _write(self, collection: str, entity: Dict[str, Any], new: OrderStatus, extra: Optional[Dict[str, Any]] = None):
        """Compare-and-set the status; returns (old_status, written_doc) or (None, fresh_doc) if already `new`."""
        current = entity
        for _ in range(_WRITE_ATTEMPTS):
            old = current["status"]
            if old == new.value:
                return None, current
            check_transition(old, new, self.strict, current["id"])
            data = {"status": new.value}
            if extra:
                data.update(extra)
            written = self.storage.update_document(collection, current["id"], data, expected={"status": old})
            if written is not None:
                return old, serialize(written)
            current = serialize(self.storage.get_document(collection, current["id"]))
        raise InvalidStatusTransitionError(current["status"], new.value, current["id"])

    def update_sub_order_status(self, sub_order_id: str, status, actor: Actor) -> Dict[str, Any]:
        new = parse_status(status)
        sub = self._sub_order(sub_order_id)
        self._authorize_sub(actor, sub)
        order = self._order(sub["order_id"])

        keys: List[Optional[str]] = []
        extra = None
        if new == S.CANCELLED:
            extra = {"wallet_refund": refund_share(order, sub)}
        old, sub = self._write(SUB_ORDERS, sub, new, extra)
        if old is not None:
            logger.info("Sub-order %s %s -> %s by %s", sub["id"], old, new.value, actor.user_id)
            keys += self._sub_order_changed(order, sub, old, new, propagated=False)

        keys += self._sync_parent(order["id"])
        self.effects.run(keys)
        return self._sub_order(sub_order_id)

    def update_order_status(self, order_id: str, status, actor: Actor) -> Dict[str, Any]:
        new = parse_status(status)
        order = self._order(order_id)
        subs = self._siblings(order_id)
        self._authorize_order(actor, order, subs, cancelling=False)
        return self._set_order_status(order, subs, new, actor)

    def cancel_order(self, order_id: str, actor: Actor) -> Dict[str, Any]:
        order = self._order(order_id)
        subs = self._siblings(order_id)
        self._authorize_order(actor, order, subs, cancelling=True)
        return self._set_order_status(order, subs, S.CANCELLED, actor)

    def _set_order_status(self, order, subs, new: OrderStatus, actor: Actor) -> Dict[str, Any]:
        check_transition(order["status"], new, self.strict, order["id"])
        moving = [s for s in subs if s["status"] != new.value]
        for sub in moving:
            check_transition(sub["status"], new, self.strict, sub["id"])

        keys: List[Optional[str]] = []
        old, written = self._write(ORDERS, order, new)
        if old is not None:
            logger.info("Order %s %s -> %s by %s", order["id"], old, new.value, actor.user_id)
            keys += self._order_changed(written, old, new, via_sync=False)
            order = written

        for sub in moving:
            try:
                sub_old, sub = self._write(SUB_ORDERS, sub, new)
            except InvalidStatusTransitionError:
                # moved underneath us; the parent recompute below settles it
                logger.warning("Sub-order %s changed during fan-out to %s", sub["id"], new.value)
                continue
            if sub_old is not None:
                keys += self._sub_order_changed(order, sub, sub_old, new, propagated=True)

        keys += self._sync_parent(order["id"])
        self.effects.run(keys)
        return self._order(order["id"])

    def _sync_parent(self, order_id: str) -> List[Optional[str]]:
        order = self._order(order_id)
        shared = aggregate(s["status"] for s in self._siblings(order_id))
        if shared is None or shared.value == order["status"]:
            return []
        written = self.storage.update_document(
            ORDERS, order_id, {"status": shared.value}, expected={"status": order["status"]}
        )
        if written is None:
            logger.warning("Order %s changed while syncing to %s", order_id, shared.value)
            return []
        logger.info("Order %s %s -> %s (all sub-orders agree)", order_id, order["status"], shared.value)
        return self._order_changed(serialize(written), order["status"], shared, via_sync=True)

    # ----- side effects -----

    def _sub_order_changed(self, order, sub, old: str, new: OrderStatus, propagated: bool) -> List[Optional[str]]:
        if new == S.SHIPPED:
            return self.effects.sub_order_shipped(order, sub, old)
        if new == S.CANCELLED:
            refund = 0.0 if propagated else float(sub.get("wallet_refund") or 0)
            return self.effects.sub_order_cancelled(order, sub, old, refund, notify=not propagated)
        return []

    def _order_changed(self, order, old: str, new: OrderStatus, via_sync: bool) -> List[Optional[str]]:
        if new != S.CANCELLED:
            return []
        already = sum(float(s.get("wallet_refund") or 0) for s in self._siblings(order["id"]))
        remaining = round(float(order.get("wallet_discount") or 0) - already, 2)
        return self.effects.order_cancelled(order, old, max(remaining, 0.0), notify=not via_sync)

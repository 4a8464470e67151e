"""
Split a validated cart snapshot into one draft per seller.

Seller groups keep the order in which each seller first appears in the
cart, so splitting the same cart twice gives the same sub-order layout.
"""
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import List, Protocol

from cart import CartSnapshot, SnapshotLine


class DeliveryPolicy(Protocol):
    def charge_for(self, seller_id: str, subtotal: float, lines: List[SnapshotLine]) -> float:
        ...


class FreeDeliveryPolicy:
    def charge_for(self, seller_id: str, subtotal: float, lines: List[SnapshotLine]) -> float:
        return 0.0


class FlatRateDeliveryPolicy:
    """Flat charge per seller shipment, waived at or above `free_above` (0 disables the waiver)."""

    def __init__(self, rate: float, free_above: float = 0.0):
        self.rate = rate
        self.free_above = free_above

    def charge_for(self, seller_id: str, subtotal: float, lines: List[SnapshotLine]) -> float:
        if self.free_above and subtotal >= self.free_above:
            return 0.0
        return round(self.rate, 2)


def delivery_policy_for(rate: float, free_above: float) -> DeliveryPolicy:
    if rate <= 0:
        return FreeDeliveryPolicy()
    return FlatRateDeliveryPolicy(rate, free_above)


@dataclass
class SubOrderDraft:
    seller_id: str
    position: int
    lines: List[SnapshotLine] = field(default_factory=list)
    subtotal: float = 0.0
    delivery_charge: float = 0.0


@dataclass
class SplitResult:
    drafts: List[SubOrderDraft]
    subtotal: float
    delivery_charges: float

    @property
    def multi_seller(self) -> bool:
        return len(self.drafts) >= 2

    @property
    def gross_total(self) -> float:
        return round(self.subtotal + self.delivery_charges, 2)


def split_by_seller(snapshot: CartSnapshot, delivery: DeliveryPolicy) -> SplitResult:
    if not snapshot.ok:
        raise ValueError("cannot split a snapshot with violations")

    groups: "OrderedDict[str, SubOrderDraft]" = OrderedDict()
    for line in snapshot.lines:
        draft = groups.get(line.seller_id)
        if draft is None:
            draft = groups[line.seller_id] = SubOrderDraft(seller_id=line.seller_id, position=len(groups))
        draft.lines.append(line)

    for draft in groups.values():
        draft.subtotal = round(sum(line.unit_price * line.quantity for line in draft.lines), 2)
        draft.delivery_charge = round(delivery.charge_for(draft.seller_id, draft.subtotal, draft.lines), 2)

    drafts = list(groups.values())
    return SplitResult(
        drafts=drafts,
        subtotal=round(sum(d.subtotal for d in drafts), 2),
        delivery_charges=round(sum(d.delivery_charge for d in drafts), 2),
    )

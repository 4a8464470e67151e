"""
Invoice data for an order, one section per seller.

Each line is run through the tax engine with the buyer's shipping state and
the seller's registered state. Rendering the document is someone else's job;
this only produces the numbers.
"""
from decimal import Decimal
from typing import Any, Dict, List

from database import Storage, serialize
from errors import NotFoundError
from side_effects import ORDER_ITEMS, ORDERS, SELLERS, SUB_ORDERS
from tax import compute_line_tax, normalize_state, q2


def _money(value: Decimal) -> float:
    return float(q2(value))


class InvoiceService:
    def __init__(self, storage: Storage):
        self.storage = storage

    def compute_invoice(self, order_id: str) -> Dict[str, Any]:
        order = serialize(self.storage.get_document(ORDERS, order_id))
        if order is None:
            raise NotFoundError("Order not found", order_id=order_id)

        buyer_state = (order.get("shipping_address") or {}).get("state")
        subs = self.storage.get_documents(SUB_ORDERS, {"order_id": order["id"]}, sort=[("position", 1)])
        items = self.storage.get_documents(ORDER_ITEMS, {"order_id": order["id"]})

        totals = {"gross": Decimal("0"), "taxable_value": Decimal("0"), "tax_amount": Decimal("0")}
        components = {"CGST": Decimal("0"), "SGST": Decimal("0"), "IGST": Decimal("0")}
        sections: List[Dict[str, Any]] = []

        for sub in subs:
            sub_id = str(sub["_id"])
            seller = self.storage.get_document(SELLERS, sub["seller_id"]) or {}
            seller_state = seller.get("state")
            lines = []
            section_gross = section_taxable = section_tax = Decimal("0")
            for item in (i for i in items if i["sub_order_id"] == sub_id):
                tax = compute_line_tax(item["unit_price"], item["quantity"], item.get("gst_rate", 0), buyer_state, seller_state)
                lines.append({
                    "product_id": item["product_id"],
                    "variant_id": item.get("variant_id"),
                    "name": item.get("name"),
                    "quantity": item["quantity"],
                    "unit_price": item["unit_price"],
                    "gst_rate": item.get("gst_rate", 0),
                    "total_price": _money(tax.total_price),
                    "taxable_value": _money(tax.taxable_value),
                    "tax_amount": _money(tax.tax_amount),
                    "taxes": [
                        {"name": c.name, "rate": float(c.rate), "amount": _money(c.amount)}
                        for c in tax.components
                    ],
                })
                section_gross += tax.total_price
                section_taxable += tax.taxable_value
                section_tax += tax.tax_amount
                for c in tax.components:
                    components[c.name] += c.amount

            sections.append({
                "sub_order_id": sub_id,
                "seller_id": sub["seller_id"],
                "seller_name": seller.get("name"),
                "seller_state": seller_state,
                "status": sub["status"],
                "lines": lines,
                "gross": _money(section_gross),
                "taxable_value": _money(section_taxable),
                "tax_amount": _money(section_tax),
                "delivery_charge": sub.get("delivery_charge", 0),
            })
            totals["gross"] += section_gross
            totals["taxable_value"] += section_taxable
            totals["tax_amount"] += section_tax

        discounts = sum(
            float(order.get(k) or 0)
            for k in ("wallet_discount", "redeem_discount", "reward_discount", "coupon_discount")
        )
        return {
            "order_id": order["id"],
            "placed_at": order.get("placed_at"),
            "buyer_id": order["buyer_id"],
            "shipping_address": order.get("shipping_address"),
            "place_of_supply": normalize_state(buyer_state),
            "sellers": sections,
            "totals": {
                "gross": _money(totals["gross"]),
                "taxable_value": _money(totals["taxable_value"]),
                "tax_amount": _money(totals["tax_amount"]),
                "cgst": _money(components["CGST"]),
                "sgst": _money(components["SGST"]),
                "igst": _money(components["IGST"]),
                "delivery_charges": order.get("delivery_charges", 0),
                "discounts": round(discounts, 2),
                "payable": order["total"],
            },
        }

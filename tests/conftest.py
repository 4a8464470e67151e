# tests/conftest.py
# Ensure project root (parent of tests) is on sys.path so the flat modules import.
import sys
from pathlib import Path

import mongomock
import pytest
from pymongo.errors import AutoReconnect

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from schemas import Actor, CartItemIn, CheckoutRequest, Coupon, Product, SavedAddress, Seller, Variant  # noqa: E402
from services import build_services  # noqa: E402
from settings import Settings  # noqa: E402
from wallet import ACCOUNTS, TOP_UP  # noqa: E402

BUYER = "buyer-1"

ADDRESS = {
    "full_name": "Asha Rao",
    "line1": "12 MG Road",
    "city": "Pune",
    "state": "MH",
    "postal_code": "411001",
}


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

class FakeGateway:
    """Accepts any payment whose signature is "good"."""

    def __init__(self):
        self.created = []
        self.verified = []

    def create_order(self, amount_minor_units, receipt_id, notes):
        self.created.append({"amount": amount_minor_units, "receipt": receipt_id, "notes": notes})
        return {"id": f"gw_{len(self.created)}", "amount": amount_minor_units, "currency": "INR"}

    def verify_payment(self, payment_id, order_id, signature):
        self.verified.append((payment_id, order_id, signature))
        return {"success": signature == "good"}


class RecordingEmail:
    def __init__(self):
        self.sent = []

    def send_order_placed_emails(self, order, sub_orders):
        self.sent.append(("placed", order["id"], None))

    def send_order_shipped_emails(self, order, sub_order):
        self.sent.append(("shipped", order["id"], sub_order["id"]))

    def send_order_cancelled_emails(self, order, sub_order=None):
        self.sent.append(("cancelled", order["id"], sub_order["id"] if sub_order else None))

    def count(self, kind):
        return sum(1 for s in self.sent if s[0] == kind)


# ---------------------------------------------------------------------------
# Seeding helper
# ---------------------------------------------------------------------------

class Market:
    """Builds catalog, carts and wallets on top of a services container."""

    def __init__(self, services):
        self.services = services
        self.storage = services.storage

    def seller(self, name="Store", state="Maharashtra", owner=None):
        doc = Seller(name=name, owner_user_id=owner or f"owner-{name.lower()}", state=state)
        return self.storage.create_document("seller", doc.model_dump())

    def product(self, seller_id, price, stock=10, gst_rate=0, name="Item", approved=True):
        doc = Product(seller_id=seller_id, name=name, price=price, gst_rate=gst_rate, stock=stock, is_approved=approved)
        return self.storage.create_document("product", doc.model_dump())

    def variant(self, product_id, stock, price=None, sku="SKU-1"):
        doc = Variant(product_id=product_id, sku=sku, price=price, stock=stock)
        return self.storage.create_document("variant", doc.model_dump())

    def add(self, product_id, quantity=1, variant_id=None, buyer=BUYER):
        item = self.services.cart.add_item(
            buyer, CartItemIn(product_id=product_id, variant_id=variant_id, quantity=quantity)
        )
        return item["id"]

    def address(self, user_id=BUYER, **overrides):
        doc = SavedAddress(user_id=user_id, **dict(ADDRESS, **overrides))
        return self.storage.create_document("address", doc.model_dump())

    def coupon(self, code, value, kind="flat", min_order=0):
        doc = Coupon(code=code, kind=kind, value=value, min_order=min_order)
        return self.storage.create_document("coupon", doc.model_dump())

    def fund(self, amount, pool="balance", user_id=BUYER):
        self.services.wallet.credit(user_id, amount, TOP_UP, pool=pool)

    def stock(self, product_id, collection="product"):
        return self.storage.get_document(collection, product_id)["stock"]

    def count(self, collection, query=None):
        return self.storage.count_documents(collection, query)

    def request(self, **kwargs):
        kwargs.setdefault("shipping_details", ADDRESS)
        return CheckoutRequest(**kwargs)

    def two_seller_cart(self):
        """Seller A: one item at 500. Seller B: two items at 300."""
        a = self.seller("Alpha", state="Maharashtra")
        b = self.seller("Bravo", state="Karnataka")
        pa = self.product(a, 500, name="Lamp")
        pb = self.product(b, 300, name="Mug")
        self.add(pa, 1)
        self.add(pb, 2)
        return a, b, pa, pb

    def place(self, **kwargs):
        return self.services.settlement.create_order(BUYER, self.request(**kwargs))


def drop_first_wallet_debit(services, monkeypatch):
    """The next conditional decrement on a wallet account loses its connection."""
    take = services.storage.take
    dropped = []

    def flaky_take(collection_name, *args, **kwargs):
        if collection_name == ACCOUNTS and not dropped:
            dropped.append(collection_name)
            raise AutoReconnect("connection reset by peer")
        return take(collection_name, *args, **kwargs)

    monkeypatch.setattr(services.storage, "take", flaky_take)
    return dropped


def buyer(user_id=BUYER):
    return Actor(user_id=user_id, role="buyer")


def seller_actor(seller_id):
    return Actor(user_id=f"user-{seller_id}", role="seller", seller_id=seller_id)


def admin():
    return Actor(user_id="admin-1", role="admin")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db():
    return mongomock.MongoClient()["settlement_test"]


@pytest.fixture
def settings():
    return Settings(first_purchase_reward=50)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def services(db, settings, gateway, email):
    return build_services(db, settings, gateway=gateway, email=email)


@pytest.fixture
def market(services):
    return Market(services)

"""
Explicit wiring of the settlement services.

Everything is built from a database handle and a Settings instance; the
collaborators can be swapped (tests pass fakes, production passes a real
payment gateway).
"""
from dataclasses import dataclass
from typing import Optional

from pymongo.database import Database

from cart import CartService
from collaborators import (
    EmailService,
    LoggingEmailService,
    Notifier,
    PaymentGateway,
    StoredNotifier,
    UnconfiguredGateway,
)
from database import Storage
from invoices import InvoiceService
from order_status import StatusService
from outbox import Outbox
from settings import Settings
from settlement import CouponBook, SettlementCoordinator
from side_effects import SideEffects
from splitter import delivery_policy_for
from wallet import WalletLedger


@dataclass
class Services:
    settings: Settings
    storage: Storage
    cart: CartService
    wallet: WalletLedger
    outbox: Outbox
    statuses: StatusService
    settlement: SettlementCoordinator
    invoices: InvoiceService


def build_services(
    db: Database,
    settings: Settings,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[Notifier] = None,
    email: Optional[EmailService] = None,
) -> Services:
    storage = Storage(db)
    cart = CartService(storage)
    wallet = WalletLedger(storage, settings)
    outbox = Outbox(storage, max_attempts=settings.outbox_max_attempts, lease_seconds=settings.outbox_lease_seconds)
    effects = SideEffects(
        outbox,
        storage,
        wallet,
        cart,
        notifier or StoredNotifier(storage),
        email or LoggingEmailService(),
    )
    statuses = StatusService(storage, effects, strict=settings.strict_status_transitions)
    settlement = SettlementCoordinator(
        storage=storage,
        cart=cart,
        wallet=wallet,
        effects=effects,
        statuses=statuses,
        coupons=CouponBook(storage),
        gateway=gateway or UnconfiguredGateway(),
        delivery=delivery_policy_for(settings.delivery_flat_rate, settings.free_delivery_above),
        settings=settings,
    )
    return Services(
        settings=settings,
        storage=storage,
        cart=cart,
        wallet=wallet,
        outbox=outbox,
        statuses=statuses,
        settlement=settlement,
        invoices=InvoiceService(storage),
    )

"""
Database Schemas for the marketplace settlement service

Each Pydantic model corresponds to a MongoDB collection with the lowercase
class name (snake_cased) used as the collection name. Request schemas at
the bottom are what the API accepts; they are never stored as-is.
"""
from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class OrderStatus(str, Enum):
    """Status shared by orders and sub-orders."""
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    APPROVE_RETURN = "approve_return"
    PROCESS_RETURN = "process_return"
    COMPLETED_RETURN = "completed_return"
    REJECT_RETURN = "reject_return"


class WalletPool(str, Enum):
    BALANCE = "balance"
    REDEEMED = "redeemed_balance"
    REWARD_POINTS = "reward_points"


Role = Literal["buyer", "seller", "admin"]
PaymentMethod = Literal["cod", "online"]


class Document(BaseModel):
    """Base for stored schemas; enums are kept as their plain values."""

    model_config = ConfigDict(use_enum_values=True)


# Catalog

class Seller(BaseModel):
    name: str = Field(..., description="Store name")
    owner_user_id: str = Field(..., description="User that operates the store")
    state: Optional[str] = Field(None, description="State of registration, drives GST split")
    email: Optional[str] = Field(None, description="Where order emails go")


class Product(BaseModel):
    seller_id: str = Field(..., description="Owning seller")
    name: str = Field(..., description="Product name")
    price: float = Field(..., ge=0, description="Unit price, GST inclusive")
    gst_rate: float = Field(0, ge=0, le=100, description="GST percentage included in price")
    stock: int = Field(0, ge=0, description="Units on hand when no variant is chosen")
    is_approved: bool = Field(False, description="Cleared for sale by an admin")
    is_deleted: bool = Field(False, description="Soft-deleted by the seller")


class VariantIn(BaseModel):
    sku: str
    price: Optional[float] = Field(None, ge=0, description="Overrides product price when set")
    stock: int = Field(0, ge=0)
    size: Optional[str] = None
    color: Optional[str] = None


class Variant(VariantIn):
    product_id: str


class Address(BaseModel):
    full_name: str
    line1: str
    line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    phone: Optional[str] = None


class SavedAddress(Address):
    user_id: str


class CartItem(BaseModel):
    user_id: str
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(1, ge=1)
    price_at_add: Optional[float] = Field(None, description="Display only; checkout re-prices")


class Coupon(BaseModel):
    code: str
    kind: Literal["flat", "percent"] = "flat"
    value: float = Field(..., gt=0)
    min_order: float = Field(0, ge=0)
    active: bool = True


# Orders

class Order(Document):
    buyer_id: str
    status: OrderStatus = OrderStatus.PENDING
    total: float = Field(..., ge=0)
    subtotal: float = Field(..., ge=0)
    delivery_charges: float = Field(0, ge=0)
    placed_at: datetime
    address_id: Optional[str] = None
    shipping_address: Address
    payment_method: PaymentMethod
    payment_reference: Optional[str] = None
    wallet_discount: float = 0
    redeem_discount: float = 0
    reward_discount: float = 0
    coupon_discount: float = 0
    coupon_code: Optional[str] = None
    multi_seller: bool = False
    wallet_refunded: float = 0


class SubOrder(Document):
    order_id: str
    seller_id: str
    position: int = Field(..., ge=0, description="Order of first appearance in the cart")
    subtotal: float = Field(..., ge=0)
    delivery_charge: float = Field(0, ge=0)
    status: OrderStatus = OrderStatus.PENDING
    wallet_refund: float = Field(0, ge=0, description="Wallet coins refunded when this slice alone was cancelled")


class OrderItem(Document):
    order_id: str
    sub_order_id: str
    product_id: str
    variant_id: Optional[str] = None
    seller_id: str
    name: str
    quantity: int = Field(..., gt=0)
    unit_price: float = Field(..., ge=0)
    gst_rate: float = 0
    restocked: bool = False


# Wallet

class WalletAccount(Document):
    user_id: str
    balance: float = Field(0, ge=0, description="Spendable wallet coins")
    redeemed_balance: float = Field(0, ge=0, description="Loyalty points converted to coins")
    reward_points: float = Field(0, ge=0)
    lifetime_earned: float = 0
    lifetime_spent: float = 0


class WalletTransaction(Document):
    user_id: str
    pool: WalletPool
    amount: float = Field(..., description="Signed: positive credits, negative debits")
    reason_code: str
    related_order_id: Optional[str] = None
    note: Optional[str] = None


# Side effects

class Notification(Document):
    user_id: str
    title: str
    message: str
    type: str
    link: Optional[str] = None
    read: bool = False


class OutboxTask(Document):
    kind: str
    payload: dict = Field(default_factory=dict)
    status: Literal["pending", "running", "done", "failed"] = "pending"
    attempts: int = 0
    last_error: Optional[str] = None
    lease_expires: Optional[float] = Field(None, description="Epoch seconds after which a running task may be reclaimed")


# ----- Request schemas -----

class Actor(BaseModel):
    """Who is calling; resolved upstream, trusted here."""
    user_id: str
    role: Role = "buyer"
    seller_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _either(name: str, camel: str) -> AliasChoices:
    return AliasChoices(name, camel)


class CheckoutRequest(BaseModel):
    """Checkout input, accepting camelCase or snake_case keys."""

    model_config = ConfigDict(populate_by_name=True)

    address_id: Optional[str] = Field(None, validation_alias=_either("address_id", "addressId"))
    shipping_details: Optional[Address] = Field(
        None, validation_alias=_either("shipping_details", "shippingDetails")
    )
    payment_method: PaymentMethod = Field("cod", validation_alias=_either("payment_method", "paymentMethod"))
    wallet_coins_used: float = Field(0, ge=0, validation_alias=_either("wallet_coins_used", "walletCoinsUsed"))
    redeem_coins_used: float = Field(0, ge=0, validation_alias=_either("redeem_coins_used", "redeemCoinsUsed"))
    reward_points_used: float = Field(0, ge=0, validation_alias=_either("reward_points_used", "rewardPointsUsed"))
    coupon_code: Optional[str] = Field(None, validation_alias=_either("coupon_code", "couponCode"))
    gateway_order_id: Optional[str] = Field(None, validation_alias=_either("gateway_order_id", "gatewayOrderId"))
    payment_id: Optional[str] = Field(None, validation_alias=_either("payment_id", "paymentId"))
    payment_signature: Optional[str] = Field(
        None, validation_alias=_either("payment_signature", "paymentSignature")
    )


class StatusUpdateRequest(BaseModel):
    status: str


class CartItemIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., validation_alias=_either("product_id", "productId"))
    variant_id: Optional[str] = Field(None, validation_alias=_either("variant_id", "variantId"))
    quantity: int = Field(1, ge=1)


class CartItemUpdate(BaseModel):
    quantity: int = Field(..., ge=1)


class TopUpRequest(BaseModel):
    user_id: str
    amount: float = Field(..., gt=0)
    pool: WalletPool = WalletPool.BALANCE
    note: Optional[str] = Field(None, max_length=200, description="Stored on the ledger entry")


class ConvertPointsRequest(BaseModel):
    points: int = Field(..., gt=0)


class ProductIn(BaseModel):
    name: str
    price: float = Field(..., ge=0)
    gst_rate: float = Field(0, ge=0, le=100)
    stock: int = Field(0, ge=0)
    variants: List[VariantIn] = Field(default_factory=list)

import logging
from contextlib import asynccontextmanager
from typing import Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from database import connect, oid, serialize
from errors import SettlementError
from schemas import (
    Actor,
    Address,
    CartItemIn,
    CartItemUpdate,
    CheckoutRequest,
    ConvertPointsRequest,
    Product,
    ProductIn,
    SavedAddress,
    StatusUpdateRequest,
    TopUpRequest,
    Variant,
)
from services import Services, build_services
from settings import Settings
from wallet import TOP_UP

# ----- Config -----
SETTINGS = Settings.from_env()

logging.basicConfig(
    level=getattr(logging, SETTINGS.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("settlement")


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = connect(SETTINGS.database_url, SETTINGS.database_name)
    if db is not None:
        services = build_services(db, SETTINGS)
        services.storage.ensure_indexes()
        app.state.services = services
        logger.info("Connected to database %s", SETTINGS.database_name)
    else:
        app.state.services = None
        logger.warning("DATABASE_URL/DATABASE_NAME not set; order routes are unavailable")
    yield


app = FastAPI(title="Marketplace Settlement API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail())
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail()})


# ----- Dependencies -----

def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return services


def current_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Literal["buyer", "seller", "admin"] = Header("buyer"),
    x_seller_id: Optional[str] = Header(None),
) -> Actor:
    # identity is established by the gateway in front of this service
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    if x_user_role == "seller" and not x_seller_id:
        raise HTTPException(status_code=403, detail="Seller id missing")
    return Actor(user_id=x_user_id, role=x_user_role, seller_id=x_seller_id)


def require_admin(actor: Actor = Depends(current_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return actor


# ----- Routes -----
@app.get("/")
def read_root():
    return {"message": "Marketplace Settlement Backend Running"}


@app.get("/api/config")
def get_config():
    return {
        "currency": SETTINGS.currency,
        "first_purchase_reward": SETTINGS.first_purchase_reward,
        "points_per_coin": SETTINGS.points_per_coin,
        "reward_point_value": SETTINGS.reward_point_value,
        "delivery_flat_rate": SETTINGS.delivery_flat_rate,
        "free_delivery_above": SETTINGS.free_delivery_above,
        "strict_status_transitions": SETTINGS.strict_status_transitions,
    }


# Products
@app.get("/api/products")
def list_products(seller_id: Optional[str] = Query(None), services: Services = Depends(get_services)):
    query = {"is_deleted": False}
    if seller_id:
        query["seller_id"] = seller_id
    return [serialize(p) for p in services.storage.get_documents("product", query)]


@app.post("/api/products")
def create_product(p: ProductIn, actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    if actor.role != "seller":
        raise HTTPException(status_code=403, detail="Only sellers can list products")
    doc = Product(seller_id=actor.seller_id, name=p.name, price=p.price, gst_rate=p.gst_rate, stock=p.stock)
    pid = services.storage.create_document("product", doc.model_dump())
    variant_ids = [
        services.storage.create_document("variant", Variant(product_id=pid, **v.model_dump()).model_dump())
        for v in p.variants
    ]
    return {"id": pid, "variant_ids": variant_ids}


@app.post("/api/products/{product_id}/approve")
def approve_product(product_id: str, _: Actor = Depends(require_admin), services: Services = Depends(get_services)):
    updated = services.storage.update_document("product", oid(product_id), {"is_approved": True})
    if updated is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"updated": True}


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    expected = None if actor.is_admin else {"seller_id": actor.seller_id}
    updated = services.storage.update_document("product", oid(product_id), {"is_deleted": True}, expected=expected)
    if updated is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"deleted": True}


# Addresses
@app.get("/api/addresses")
def list_addresses(actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    return [serialize(a) for a in services.storage.get_documents("address", {"user_id": actor.user_id})]


@app.post("/api/addresses")
def create_address(a: Address, actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    doc = SavedAddress(user_id=actor.user_id, **a.model_dump())
    return {"id": services.storage.create_document("address", doc.model_dump())}


# Cart
@app.get("/api/cart")
def get_cart(actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    return services.cart.list_items(actor.user_id)


@app.post("/api/cart")
def add_to_cart(item: CartItemIn, actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    return services.cart.add_item(actor.user_id, item)


@app.put("/api/cart/{item_id}")
def update_cart_item(
    item_id: str,
    upd: CartItemUpdate,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    return services.cart.update_quantity(actor.user_id, item_id, upd.quantity)


@app.delete("/api/cart/{item_id}")
def remove_cart_item(item_id: str, actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    services.cart.remove_item(actor.user_id, item_id)
    return {"success": True, "message": "Item removed from cart"}


# Checkout & orders
@app.post("/api/checkout/preview")
def checkout_preview(req: CheckoutRequest, actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    return services.settlement.preview(actor.user_id, req)


@app.post("/api/payments/intent")
def payment_intent(req: CheckoutRequest, actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    return services.settlement.create_payment_intent(actor.user_id, req)


@app.post("/api/orders")
def place_order(req: CheckoutRequest, actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    return services.settlement.create_order(actor.user_id, req)


@app.get("/api/orders")
def list_orders(actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    return services.settlement.list_orders(actor)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    return services.settlement.get_order(order_id, actor)


@app.put("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    upd: StatusUpdateRequest,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    return services.settlement.update_order_status(order_id, upd.status, actor)


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    return services.settlement.cancel_order(order_id, actor)


@app.put("/api/sub-orders/{sub_order_id}/status")
def update_sub_order_status(
    sub_order_id: str,
    upd: StatusUpdateRequest,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    return services.settlement.update_sub_order_status(sub_order_id, upd.status, actor)


@app.get("/api/orders/{order_id}/invoice")
def get_invoice(order_id: str, actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    # raises unless the caller may see the order
    services.settlement.get_order(order_id, actor)
    return services.invoices.compute_invoice(order_id)


# Wallet
@app.get("/api/wallet/balance")
def wallet_balance(actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    return services.wallet.get_balance(actor.user_id)


@app.get("/api/wallet/transactions")
def wallet_transactions(
    limit: int = Query(50, ge=1, le=500),
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    return services.wallet.list_transactions(actor.user_id, limit=limit)


@app.post("/api/wallet/topup")
def wallet_topup(req: TopUpRequest, _: Actor = Depends(require_admin), services: Services = Depends(get_services)):
    services.wallet.credit(req.user_id, req.amount, TOP_UP, pool=req.pool, note=req.note)
    return services.wallet.get_balance(req.user_id)


@app.post("/api/wallet/convert")
def wallet_convert(req: ConvertPointsRequest, actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    return services.wallet.convert_points(actor.user_id, req.points)


# Outbox
@app.post("/api/admin/outbox/drain")
def drain_outbox(limit: int = Query(100, ge=1, le=1000), _: Actor = Depends(require_admin), services: Services = Depends(get_services)):
    return services.outbox.drain(limit=limit)


@app.get("/api/admin/outbox/failed")
def failed_outbox_tasks(_: Actor = Depends(require_admin), services: Services = Depends(get_services)):
    return [serialize(t) for t in services.outbox.failed()]


@app.get("/api/health")
def health(request: Request):
    services = getattr(request.app.state, "services", None)
    response = {
        "backend": "running",
        "database": "not configured",
        "collections": [],
    }
    if services is not None:
        try:
            response["collections"] = services.storage.db.list_collection_names()[:20]
            response["database"] = "connected"
        except Exception as e:
            logger.warning("Health check could not reach the database: %s", e)
            response["database"] = f"error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=SETTINGS.port)

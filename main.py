import os
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Any, Dict

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database

from addresses import AddressBook
from auth import (
    authenticate,
    create_token,
    delete_user,
    find_user,
    get_admin_user,
    get_current_user,
    is_admin,
    list_users,
    public_user,
    update_user,
)
from carts import CartStore, cart_response
from catalog import Catalog
from database import ensure_indexes, get_db, to_str_id
from errors import (
    AlreadyLinkedError,
    CartflowError,
    ConflictError,
    EmptyCartError,
    InsufficientStockError,
    InvalidIdError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
)
from orders import OrderEngine, order_response
from registration import Registration
from schemas import (
    AddToCartRequest,
    AddressCreate,
    AddressUpdate,
    CreateGuestOrderRequest,
    CreateOrderRequest,
    LoginRequest,
    OrderFilter,
    OrderStatus,
    PaymentMethod,
    ProductCreate,
    ProductFilter,
    ProductUpdate,
    RegisterRequest,
    StockAdjustment,
    StockUpdate,
    UpdateCartItemRequest,
    UpdateOrderStatusRequest,
    UserFilter,
    UserUpdate,
    VariantInput,
    VariantUpdate,
)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("cartflow")

# Configuration
STORE_NAME = os.getenv("STORE_NAME", "Cartflow")
PRIMARY_CURRENCY = os.getenv("PRIMARY_CURRENCY", "BRL")
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes(get_db())
    except Exception as exc:
        logger.warning("Could not ensure indexes at startup: %s", exc)
    yield


app = FastAPI(title="Cartflow API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in ALLOWED_ORIGINS] if ALLOWED_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handlers
ERROR_STATUS_CODES = {
    NotFoundError: 404,
    InvalidIdError: 400,
    InvalidRequestError: 400,
    EmptyCartError: 400,
    InsufficientStockError: 400,
    InvalidStateError: 400,
    AlreadyLinkedError: 400,
    ConflictError: 409,
}


def status_code_for(exc: CartflowError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 400


@app.exception_handler(CartflowError)
async def cartflow_error_handler(request: Request, exc: CartflowError):
    content: Dict[str, Any] = {"detail": str(exc), "error_type": type(exc).__name__}
    if isinstance(exc, InsufficientStockError):
        content["errors"] = exc.errors
        content["shortages"] = [s.to_dict() for s in exc.shortages]
    return JSONResponse(status_code=status_code_for(exc), content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Services
def get_catalog(db: Database = Depends(get_db)) -> Catalog:
    return Catalog(db)


def get_carts(db: Database = Depends(get_db), catalog: Catalog = Depends(get_catalog)) -> CartStore:
    return CartStore(db, catalog)


def get_addresses(db: Database = Depends(get_db)) -> AddressBook:
    return AddressBook(db)


def get_orders(db: Database = Depends(get_db), catalog: Catalog = Depends(get_catalog),
               carts: CartStore = Depends(get_carts),
               addresses: AddressBook = Depends(get_addresses)) -> OrderEngine:
    return OrderEngine(db, catalog, carts, addresses)


def get_registration(db: Database = Depends(get_db), orders: OrderEngine = Depends(get_orders),
                     addresses: AddressBook = Depends(get_addresses)) -> Registration:
    return Registration(db, orders, addresses)


def page_of(result: Dict[str, Any], key: str) -> Dict[str, Any]:
    return {key: [to_str_id(d) for d in result[key]], "pagination": result["pagination"]}


# Health and config
@app.get("/")
def root():
    return {"name": STORE_NAME, "status": "ok"}


@app.get("/health")
def health(db: Database = Depends(get_db)):
    response = {"backend": "running", "database": "not connected", "collections": []}
    try:
        db.command("ping")
        response["database"] = "connected"
        response["collections"] = db.list_collection_names()[:10]
    except Exception as exc:
        logger.warning("Health check could not reach the database: %s", exc)
        response["database"] = f"error: {str(exc)[:80]}"
    return response


@app.get("/config")
def get_config():
    return {
        "storeName": STORE_NAME,
        "currency": PRIMARY_CURRENCY,
        "paymentMethods": [m.value for m in PaymentMethod],
        "orderStatuses": [s.value for s in OrderStatus],
    }


# Auth
@app.post("/auth/register", status_code=201)
def register(data: RegisterRequest, registration: Registration = Depends(get_registration)):
    user = registration.register(data)
    return {"token": create_token(user), "user": public_user(user)}


@app.post("/auth/login")
def login(data: LoginRequest, db: Database = Depends(get_db)):
    user = authenticate(db, data.email, data.password)
    return {"token": create_token(user), "user": public_user(user)}


@app.get("/auth/me")
def me(user: Dict[str, Any] = Depends(get_current_user)):
    return public_user(user)


# Users (admin)
@app.get("/admin/users")
def admin_list_users(filters: Annotated[UserFilter, Query()], user: Dict[str, Any] = Depends(get_admin_user),
                     db: Database = Depends(get_db)):
    return list_users(db, filters)


@app.get("/admin/users/{user_id}")
def admin_get_user(user_id: str, user: Dict[str, Any] = Depends(get_admin_user), db: Database = Depends(get_db)):
    return public_user(find_user(db, user_id))


@app.patch("/admin/users/{user_id}")
def admin_update_user(user_id: str, data: UserUpdate, user: Dict[str, Any] = Depends(get_admin_user),
                      db: Database = Depends(get_db)):
    return public_user(update_user(db, user_id, data))


@app.delete("/admin/users/{user_id}", status_code=204)
def admin_delete_user(user_id: str, user: Dict[str, Any] = Depends(get_admin_user), db: Database = Depends(get_db)):
    if user_id == str(user["_id"]):
        raise InvalidRequestError("Admins cannot delete their own account")
    delete_user(db, user_id)
    return Response(status_code=204)


# Products
@app.get("/products")
def list_products(filters: Annotated[ProductFilter, Query()], catalog: Catalog = Depends(get_catalog)):
    return page_of(catalog.list_active(filters), "products")


@app.get("/products/{product_id}")
def get_product(product_id: str, catalog: Catalog = Depends(get_catalog)):
    return to_str_id(catalog.find_active_by_id(product_id))


@app.get("/products/{product_id}/variants/{sku}/availability")
def variant_availability(product_id: str, sku: str, quantity: int = Query(1, ge=1),
                         catalog: Catalog = Depends(get_catalog)):
    catalog.find_active_by_id(product_id)
    return {"sku": sku, "quantity": quantity, "available": catalog.check_availability(product_id, sku, quantity)}


@app.post("/admin/products", status_code=201)
def create_product(data: ProductCreate, user: Dict[str, Any] = Depends(get_admin_user),
                   catalog: Catalog = Depends(get_catalog)):
    return to_str_id(catalog.create(data))


@app.get("/admin/products")
def admin_list_products(filters: Annotated[ProductFilter, Query()], user: Dict[str, Any] = Depends(get_admin_user),
                        catalog: Catalog = Depends(get_catalog)):
    return page_of(catalog.list(filters), "products")


@app.get("/admin/products/code/{code}")
def admin_product_by_code(code: str, user: Dict[str, Any] = Depends(get_admin_user),
                          catalog: Catalog = Depends(get_catalog)):
    return to_str_id(catalog.find_by_code(code))


@app.get("/admin/products/{product_id}")
def admin_get_product(product_id: str, user: Dict[str, Any] = Depends(get_admin_user),
                      catalog: Catalog = Depends(get_catalog)):
    return to_str_id(catalog.find_by_id(product_id))


@app.patch("/admin/products/{product_id}")
def update_product(product_id: str, data: ProductUpdate, user: Dict[str, Any] = Depends(get_admin_user),
                   catalog: Catalog = Depends(get_catalog)):
    return to_str_id(catalog.update(product_id, data))


@app.patch("/admin/products/{product_id}/activate")
def activate_product(product_id: str, user: Dict[str, Any] = Depends(get_admin_user),
                     catalog: Catalog = Depends(get_catalog)):
    return to_str_id(catalog.activate(product_id))


@app.patch("/admin/products/{product_id}/deactivate")
def deactivate_product(product_id: str, user: Dict[str, Any] = Depends(get_admin_user),
                       catalog: Catalog = Depends(get_catalog)):
    return to_str_id(catalog.deactivate(product_id))


@app.post("/admin/products/{product_id}/variants", status_code=201)
def add_variant(product_id: str, data: VariantInput, user: Dict[str, Any] = Depends(get_admin_user),
                catalog: Catalog = Depends(get_catalog)):
    return to_str_id(catalog.add_variant(product_id, data))


@app.patch("/admin/products/{product_id}/variants/{sku}")
def update_variant(product_id: str, sku: str, data: VariantUpdate, user: Dict[str, Any] = Depends(get_admin_user),
                   catalog: Catalog = Depends(get_catalog)):
    return to_str_id(catalog.update_variant(product_id, sku, data))


@app.delete("/admin/products/{product_id}/variants/{sku}")
def remove_variant(product_id: str, sku: str, user: Dict[str, Any] = Depends(get_admin_user),
                   catalog: Catalog = Depends(get_catalog)):
    return to_str_id(catalog.remove_variant(product_id, sku))


@app.patch("/admin/products/{product_id}/variants/{sku}/stock")
def set_variant_stock(product_id: str, sku: str, data: StockUpdate, user: Dict[str, Any] = Depends(get_admin_user),
                      catalog: Catalog = Depends(get_catalog)):
    return to_str_id(catalog.set_variant_stock(product_id, sku, data.stock))


@app.patch("/admin/products/{product_id}/variants/{sku}/increase-stock")
def increase_variant_stock(product_id: str, sku: str, data: StockAdjustment,
                           user: Dict[str, Any] = Depends(get_admin_user), catalog: Catalog = Depends(get_catalog)):
    catalog.increase_stock(product_id, sku, data.quantity)
    return to_str_id(catalog.find_by_id(product_id))


@app.patch("/admin/products/{product_id}/variants/{sku}/decrease-stock")
def decrease_variant_stock(product_id: str, sku: str, data: StockAdjustment,
                           user: Dict[str, Any] = Depends(get_admin_user), catalog: Catalog = Depends(get_catalog)):
    catalog.decrease_stock(product_id, sku, data.quantity)
    return to_str_id(catalog.find_by_id(product_id))


# Cart
@app.get("/cart")
def cart_get(user: Dict[str, Any] = Depends(get_current_user), carts: CartStore = Depends(get_carts)):
    return cart_response(carts.get_or_create(str(user["_id"])))


@app.post("/cart/items", status_code=201)
def cart_add(data: AddToCartRequest, user: Dict[str, Any] = Depends(get_current_user),
             carts: CartStore = Depends(get_carts)):
    return cart_response(carts.add_item(str(user["_id"]), data))


@app.patch("/cart/items/{index}")
def cart_update_item(index: int, data: UpdateCartItemRequest, user: Dict[str, Any] = Depends(get_current_user),
                     carts: CartStore = Depends(get_carts)):
    return cart_response(carts.update_item(str(user["_id"]), index, data.quantity))


@app.delete("/cart/items/{index}")
def cart_remove_item(index: int, user: Dict[str, Any] = Depends(get_current_user),
                     carts: CartStore = Depends(get_carts)):
    return cart_response(carts.remove_item(str(user["_id"]), index))


@app.delete("/cart")
def cart_clear(user: Dict[str, Any] = Depends(get_current_user), carts: CartStore = Depends(get_carts)):
    return cart_response(carts.clear(str(user["_id"])))


@app.get("/cart/validate")
def cart_validate(user: Dict[str, Any] = Depends(get_current_user), carts: CartStore = Depends(get_carts)):
    shortages = carts.validate_stock(carts.get_or_create(str(user["_id"])))
    return {
        "valid": not shortages,
        "errors": [s.describe() for s in shortages],
        "shortages": [s.to_dict() for s in shortages],
    }


# Addresses
@app.post("/addresses", status_code=201)
def create_address(data: AddressCreate, user: Dict[str, Any] = Depends(get_current_user),
                   addresses: AddressBook = Depends(get_addresses)):
    return to_str_id(addresses.create(str(user["_id"]), data))


@app.get("/addresses")
def list_addresses(user: Dict[str, Any] = Depends(get_current_user), addresses: AddressBook = Depends(get_addresses)):
    return [to_str_id(a) for a in addresses.list_for_user(str(user["_id"]))]


@app.get("/addresses/default")
def get_default_address(user: Dict[str, Any] = Depends(get_current_user),
                        addresses: AddressBook = Depends(get_addresses)):
    address = addresses.get_default(str(user["_id"]))
    if not address:
        raise NotFoundError("Address", message="No default address")
    return to_str_id(address)


@app.get("/addresses/{address_id}")
def get_address(address_id: str, user: Dict[str, Any] = Depends(get_current_user),
                addresses: AddressBook = Depends(get_addresses)):
    return to_str_id(addresses.find_by_id(address_id, str(user["_id"])))


@app.patch("/addresses/{address_id}")
def update_address(address_id: str, data: AddressUpdate, user: Dict[str, Any] = Depends(get_current_user),
                   addresses: AddressBook = Depends(get_addresses)):
    return to_str_id(addresses.update(address_id, str(user["_id"]), data))


@app.patch("/addresses/{address_id}/default")
def set_default_address(address_id: str, user: Dict[str, Any] = Depends(get_current_user),
                        addresses: AddressBook = Depends(get_addresses)):
    return to_str_id(addresses.set_default(address_id, str(user["_id"])))


@app.delete("/addresses/{address_id}")
def delete_address(address_id: str, user: Dict[str, Any] = Depends(get_current_user),
                   addresses: AddressBook = Depends(get_addresses)):
    addresses.remove(address_id, str(user["_id"]))
    return {"id": address_id, "deleted": True}


# Orders
@app.post("/orders", status_code=201)
def create_order(data: CreateOrderRequest, user: Dict[str, Any] = Depends(get_current_user),
                 orders: OrderEngine = Depends(get_orders)):
    return order_response(orders.create(str(user["_id"]), data))


@app.post("/orders/guest", status_code=201)
def create_guest_order(data: CreateGuestOrderRequest, orders: OrderEngine = Depends(get_orders)):
    return order_response(orders.create_guest(data))


@app.get("/orders")
def list_orders(filters: Annotated[OrderFilter, Query()], user: Dict[str, Any] = Depends(get_current_user),
                orders: OrderEngine = Depends(get_orders)):
    return orders.list(str(user["_id"]), is_admin(user), filters)


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: Dict[str, Any] = Depends(get_current_user),
              orders: OrderEngine = Depends(get_orders)):
    return order_response(orders.get(order_id, str(user["_id"]), is_admin(user)))


@app.patch("/admin/orders/{order_id}/status")
def update_order_status(order_id: str, data: UpdateOrderStatusRequest, user: Dict[str, Any] = Depends(get_admin_user),
                        orders: OrderEngine = Depends(get_orders)):
    return order_response(orders.update_status(order_id, data))


@app.patch("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user: Dict[str, Any] = Depends(get_current_user),
                 orders: OrderEngine = Depends(get_orders)):
    return order_response(orders.cancel(order_id, str(user["_id"])))


@app.post("/orders/{order_id}/link")
def link_order(order_id: str, user: Dict[str, Any] = Depends(get_current_user),
               registration: Registration = Depends(get_registration)):
    shipping_address = registration.claim_guest_order(user, order_id)
    return {"order_id": order_id, "linked": True, "shipping_address": shipping_address}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

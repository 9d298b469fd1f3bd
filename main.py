import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from auth import Accounts, get_current_user, get_store
from bazaars import Bazaars
from carts import CartManager, cart_view
from catalog import Catalog
from database import Store, connect, serialize_doc
from errors import MarketplaceError
from orders import OrderComposer
from references import ReconciliationError
from schemas import (
    BazaarCategoryBulk,
    BazaarCategoryIn,
    BazaarCategoryUpdate,
    BazaarIn,
    BazaarUpdate,
    CartLineInput,
    CategoryNames,
    LoginInput,
    ProductIn,
    ProductUpdate,
    RegisterInput,
    ReviewIn,
    UserUpdate,
)

logger = logging.getLogger(__name__)


# Error handlers

def marketplace_error(request: Request, exc: MarketplaceError):
    message = exc.message
    if isinstance(exc, ReconciliationError) and request.url.path.startswith("/products/"):
        message += "; retry with POST /products/{id}/reconcile"
    return JSONResponse(status_code=exc.status_code, content={"message": message})


def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail})


def validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        err = errors[0]
        field = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        message = f"{field}: {err.get('msg')}" if field else err.get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"message": message})


def server_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Server Error"})


def create_app(store: Optional[Store] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "store", None) is None:
            app.state.store = connect()
        app.state.store.ensure_indexes()
        OrderComposer(app.state.store).recover_checkouts()
        yield

    app = FastAPI(title="Marketplace API", lifespan=lifespan)
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(MarketplaceError, marketplace_error)
    app.add_exception_handler(StarletteHTTPException, http_error)
    app.add_exception_handler(RequestValidationError, validation_error)
    app.add_exception_handler(Exception, server_error)

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    @app.get("/")
    def read_root():
        return {"message": "Marketplace API"}

    @app.get("/test")
    def test_database(store: Store = Depends(get_store)):
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "database_name": None,
            "collections": [],
        }
        try:
            response["database"] = "✅ Available"
            response["database_name"] = store.name
            response["collections"] = store.db.list_collection_names()
        except Exception as e:
            response["database"] = f"❌ Error: {str(e)[:80]}"
        return response

    # Auth

    @app.post("/auth/register", status_code=201)
    def register(payload: RegisterInput, store: Store = Depends(get_store)):
        return Accounts(store).register(payload)

    @app.post("/auth/login")
    def login(payload: LoginInput, store: Store = Depends(get_store)):
        return Accounts(store).login(payload.email, payload.password)

    @app.get("/auth/me")
    def me(current_user: dict = Depends(get_current_user)):
        return current_user

    @app.get("/users/{user_id}")
    def get_user(user_id: str, current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        return Accounts(store).get_user(current_user, user_id)

    @app.put("/users/{user_id}")
    def update_user(user_id: str, data: UserUpdate, current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        return Accounts(store).update_user(current_user, user_id, data)

    # Cart

    @app.get("/cart/getCart")
    def get_cart(current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        carts = CartManager(store)
        return carts.expand(carts.get_or_create(current_user["id"]))

    @app.post("/cart/updateCart")
    def update_cart(item: CartLineInput, current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        cart = CartManager(store).upsert_line(current_user["id"], item.product_id, item.quantity)
        return cart_view(cart)

    @app.delete("/cart/removeProduct/{product_id}")
    def remove_from_cart(product_id: str, current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        return cart_view(CartManager(store).remove_line(current_user["id"], product_id))

    @app.delete("/cart/empty")
    def empty_cart(current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        cart = CartManager(store).clear(current_user["id"])
        return {"message": "Cart emptied successfully", "cart": cart_view(cart)}

    # Orders

    @app.post("/orders/createOrder", status_code=201)
    def create_order(
        current_user: dict = Depends(get_current_user),
        store: Store = Depends(get_store),
        idempotency_key: Optional[str] = Header(default=None),
    ):
        order = OrderComposer(store).place_order(current_user["id"], idempotency_key)
        return {"message": "Order created successfully", "order": order}

    @app.get("/orders/getOrders")
    def get_orders(current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        orders = OrderComposer(store).list_orders(current_user["id"])
        if not orders:
            return {"message": "No orders found", "orders": []}
        return {"orders": orders, "totalOrders": len(orders)}

    # Products

    @app.get("/products")
    def list_products(page: int = 1, limit: int = 10, category: Optional[str] = None, store: Store = Depends(get_store)):
        return serialize_doc(Catalog(store).list_products(page, limit, category))

    @app.get("/products/myproducts")
    def my_products(current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        return serialize_doc(Catalog(store).seller_products(current_user["id"]))

    @app.get("/products/{product_id}")
    def get_product(product_id: str, store: Store = Depends(get_store)):
        return serialize_doc(Catalog(store).get_product(product_id))

    @app.post("/products", status_code=201)
    def create_product(data: ProductIn, current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        return serialize_doc(Catalog(store).create_product(current_user["id"], data))

    @app.put("/products/{product_id}")
    def update_product(product_id: str, data: ProductUpdate, current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        return serialize_doc(Catalog(store).update_product(current_user["id"], product_id, data))

    @app.delete("/products/{product_id}")
    def delete_product(product_id: str, current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        Catalog(store).delete_product(current_user["id"], product_id)
        return {"message": "Product deleted successfully"}

    @app.post("/products/{product_id}/reconcile")
    def reconcile_product(product_id: str, current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        return Catalog(store).repair_product_references(current_user["id"], product_id)

    @app.post("/products/{product_id}/reviews", status_code=201)
    def add_review(product_id: str, data: ReviewIn, current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        return serialize_doc(Catalog(store).add_review(current_user["id"], product_id, data.rating, data.comment))

    # Categories

    @app.post("/categories/addCategories", status_code=201)
    def add_categories(payload: CategoryNames, store: Store = Depends(get_store)):
        saved = Catalog(store).add_categories(payload.names)
        return {"message": "Categories added successfully", "categories": serialize_doc(saved)}

    @app.get("/categories/getAllCategories")
    def all_categories(store: Store = Depends(get_store)):
        return serialize_doc(Catalog(store).list_categories())

    @app.get("/categories/{category_id}")
    def get_category(category_id: str, store: Store = Depends(get_store)):
        return serialize_doc(Catalog(store).get_category(category_id))

    @app.delete("/categories/{category_id}")
    def delete_category(category_id: str, current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        Catalog(store).delete_category(category_id)
        return {"message": "Category deleted successfully"}

    # Bazaars

    @app.post("/bazaar/categories/add", status_code=201)
    def add_bazaar_categories(payload: BazaarCategoryBulk, current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        saved = Bazaars(store).add_categories(payload.categories)
        return {"message": "BazaarCategories added successfully", "categories": serialize_doc(saved)}

    @app.get("/bazaar/categories/all")
    def all_bazaar_categories(page: int = 1, limit: int = 20, store: Store = Depends(get_store)):
        return serialize_doc(Bazaars(store).list_categories(page, limit))

    @app.post("/bazaar", status_code=201)
    def create_bazaar(data: BazaarIn, current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        return serialize_doc(Bazaars(store).create_bazaar(data))

    @app.get("/bazaar")
    def list_bazaars(page: int = 1, limit: int = 10, store: Store = Depends(get_store)):
        return serialize_doc(Bazaars(store).list_bazaars(page, limit))

    @app.get("/bazaar/{bazaar_id}")
    def get_bazaar(bazaar_id: str, store: Store = Depends(get_store)):
        return serialize_doc(Bazaars(store).get_bazaar(bazaar_id))

    @app.put("/bazaar/{bazaar_id}")
    def update_bazaar(bazaar_id: str, data: BazaarUpdate, current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        return serialize_doc(Bazaars(store).update_bazaar(bazaar_id, data))

    @app.delete("/bazaar/{bazaar_id}")
    def delete_bazaar(bazaar_id: str, current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        Bazaars(store).delete_bazaar(bazaar_id)
        return {"message": "Bazaar deleted successfully"}

    @app.post("/bazaar/{bazaar_id}/categories", status_code=201)
    def add_bazaar_category(bazaar_id: str, data: BazaarCategoryIn, current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        return serialize_doc(Bazaars(store).add_category(bazaar_id, data))

    @app.get("/bazaar/{bazaar_id}/categories")
    def bazaar_categories(bazaar_id: str, store: Store = Depends(get_store)):
        return serialize_doc(Bazaars(store).bazaar_categories(bazaar_id))

    @app.get("/bazaar/{bazaar_id}/categories/{category_id}")
    def get_bazaar_category(bazaar_id: str, category_id: str, store: Store = Depends(get_store)):
        return serialize_doc(Bazaars(store).get_category(bazaar_id, category_id))

    @app.put("/bazaar/{bazaar_id}/categories/{category_id}")
    def update_bazaar_category(
        bazaar_id: str,
        category_id: str,
        data: BazaarCategoryUpdate,
        current_user: dict = Depends(get_current_user),
        store: Store = Depends(get_store),
    ):
        return serialize_doc(Bazaars(store).update_category(bazaar_id, category_id, data))

    @app.delete("/bazaar/{bazaar_id}/categories/{category_id}")
    def delete_bazaar_category(bazaar_id: str, category_id: str, current_user: dict = Depends(get_current_user), store: Store = Depends(get_store)):
        Bazaars(store).delete_category(bazaar_id, category_id)
        return {"message": "Category removed from bazaar successfully"}


app = create_app()


if __name__ == "__main__":
    import uvicorn
    config.configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)

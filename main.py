import hmac
import logging
import os
from typing import List, Literal, Optional

from bson.errors import InvalidId
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import BaseModel, EmailStr, Field

import catalog
import checkout
import identity
import messaging
import products
import storage
from cart import Cart, CartStore
from context import AppContext
from database import db as default_db, serialize_doc
from errors import AuthError, AuthorizationError, NotFoundError, ValidationFailed
from gateway import MarketGateway
from identity import ProfileError, Session
from payments import PaymentClient, PaymentError, PaymentSessionRequest

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
logger = logging.getLogger("farmmarket")


# -----------------------------
# Schemas (request bodies)
# -----------------------------

class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    username: str = Field(..., min_length=1)
    role: Literal["farmer", "consumer"]
    location: Optional[str] = None
    farm_name: Optional[str] = None
    farm_location: Optional[str] = None
    contact_info: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    username: Optional[str] = None
    contact_info: Optional[str] = None
    farm_name: Optional[str] = None
    farm_location: Optional[str] = None
    location: Optional[str] = None
    profile_image: Optional[str] = None


class ProductCreate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    stock_level: Optional[int] = None
    image_url: Optional[str] = None
    category: Optional[str] = None
    unit: Optional[str] = None
    is_organic: bool = False


class BulkProductCreate(BaseModel):
    products: List[ProductCreate]


class CartAdd(BaseModel):
    product_id: str
    quantity: int = 1


class CartQuantity(BaseModel):
    quantity: int


class CheckoutRequest(BaseModel):
    delivery_address: str = ""
    contact_number: str = ""
    order_notes: Optional[str] = None


class MessageCreate(BaseModel):
    receiver_id: str
    content: str


# -----------------------------
# Dependencies
# -----------------------------

def get_ctx(request: Request) -> AppContext:
    return request.app.state.context


def get_gateway(ctx: AppContext = Depends(get_ctx)) -> MarketGateway:
    if ctx.db is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return ctx.gateway


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return None


def optional_session(
    authorization: Optional[str] = Header(default=None),
    gateway: MarketGateway = Depends(get_gateway),
) -> Optional[Session]:
    return identity.load_session(gateway, _bearer(authorization))


def require_session(session: Optional[Session] = Depends(optional_session)) -> Session:
    if session is None:
        raise HTTPException(status_code=401, detail="Please sign in to continue")
    return session


def get_cart(
    x_client_id: Optional[str] = Header(default=None),
    gateway: MarketGateway = Depends(get_gateway),
) -> Cart:
    if not x_client_id:
        raise HTTPException(status_code=400, detail="Missing X-Client-Id header")
    return Cart.load(CartStore(gateway, x_client_id))


def product_out(p) -> dict:
    return serialize_doc(p.model_dump())


def order_out(o) -> dict:
    data = serialize_doc(o.model_dump(exclude={"items"}))
    data["items"] = [i.model_dump() for i in o.items]
    return data


def message_out(m) -> dict:
    return serialize_doc(m.model_dump())


# -----------------------------
# App
# -----------------------------

def create_app(database=None, payment_client: Optional[PaymentClient] = None) -> FastAPI:
    database = database if database is not None else default_db

    app = FastAPI(title="Farm Market API")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.context = AppContext(
        db=database,
        gateway=MarketGateway(database),
        payment_client=payment_client or PaymentClient.from_env(),
    )

    @app.exception_handler(InvalidId)
    def invalid_id_handler(request: Request, exc: InvalidId):
        return JSONResponse(status_code=400, content={"detail": "Invalid id"})

    @app.exception_handler(ValidationFailed)
    def validation_handler(request: Request, exc: ValidationFailed):
        return JSONResponse(status_code=400, content={"detail": str(exc), "errors": exc.fields})

    @app.exception_handler(NotFoundError)
    def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc), "redirect": "/"})

    @app.exception_handler(AuthorizationError)
    def unauthorized_handler(request: Request, exc: AuthorizationError):
        return JSONResponse(status_code=403, content={"detail": str(exc)})

    @app.exception_handler(ProfileError)
    def profile_handler(request: Request, exc: ProfileError):
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:

    # -----------------------------
    # Health & Test
    # -----------------------------

    @app.get("/")
    def read_root(error: Optional[str] = None):
        body = {"message": "Farm Market API running"}
        if error:
            body["error"] = error
        return body

    @app.get("/test")
    def test_database(ctx: AppContext = Depends(get_ctx)):
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
            "database_name": "❌ Not Set",
            "collections": [],
        }
        try:
            if ctx.db is not None:
                response["database"] = "✅ Connected"
                response["database_name"] = ctx.db.name
                response["collections"] = ctx.db.list_collection_names()
        except Exception as e:
            response["database"] = f"❌ Error: {str(e)[:80]}"
        response["stripe_key"] = "✅ Set" if ctx.payment_client.secret_key else "❌ Not Set"
        return response

    # -----------------------------
    # Auth & Profile
    # -----------------------------

    @app.post("/api/auth/register", status_code=201)
    def register(payload: RegisterRequest, gateway: MarketGateway = Depends(get_gateway)):
        try:
            user = identity.sign_up(gateway, **payload.model_dump())
        except AuthError as e:
            raise HTTPException(status_code=400, detail=str(e))
        token = identity.sign_in(gateway, payload.email, payload.password)
        return {"token": token, "user": serialize_doc(user.model_dump())}

    @app.post("/api/auth/login")
    def login(payload: LoginRequest, gateway: MarketGateway = Depends(get_gateway)):
        try:
            token = identity.sign_in(gateway, payload.email, payload.password)
        except AuthError as e:
            raise HTTPException(status_code=401, detail=str(e))
        session = identity.load_session(gateway, token)
        return {"token": token, "user": serialize_doc(session.user.model_dump())}

    @app.post("/api/auth/logout")
    def logout(session: Session = Depends(require_session), gateway: MarketGateway = Depends(get_gateway)):
        identity.sign_out(gateway, session.token)
        return {"ok": True}

    def profile_body(session: Session) -> dict:
        return {
            "user": serialize_doc(session.user.model_dump()),
            "farmer": session.farmer.model_dump() if session.farmer else None,
            "consumer": session.consumer.model_dump() if session.consumer else None,
        }

    @app.get("/api/auth/me")
    def me(session: Session = Depends(require_session)):
        return profile_body(session)

    @app.get("/api/profile")
    def get_profile(session: Session = Depends(require_session)):
        return profile_body(session)

    @app.put("/api/profile")
    def put_profile(payload: ProfileUpdate, session: Session = Depends(require_session), gateway: MarketGateway = Depends(get_gateway)):
        updated = identity.update_profile(gateway, session, payload.model_dump(exclude_none=True))
        return profile_body(updated)

    # -----------------------------
    # Catalog
    # -----------------------------

    @app.get("/api/products")
    def list_products(
        category: Optional[str] = Query(default=None),
        q: Optional[str] = Query(default=None),
        gateway: MarketGateway = Depends(get_gateway),
    ):
        view = catalog.build_catalog(gateway, category, q)
        body = {
            "state": view.state,
            "message": view.message,
            "category": view.category,
            "query": view.query,
            "categories": view.categories,
            "total": len(view.products),
            "items": [product_out(p) for p in view.filtered],
        }
        if view.state == catalog.STATE_ERROR:
            return JSONResponse(status_code=503, content=body)
        return body

    @app.get("/api/products/{product_id}")
    def get_product(product_id: str, gateway: MarketGateway = Depends(get_gateway)):
        return product_out(catalog.get_product_detail(gateway, product_id))

    # -----------------------------
    # Farmer products
    # -----------------------------

    @app.get("/api/farmer/products")
    def farmer_products(session: Session = Depends(require_session), gateway: MarketGateway = Depends(get_gateway)):
        return {"items": [product_out(p) for p in catalog.list_own_products(gateway, session)]}

    @app.post("/api/products", status_code=201)
    def create_product(payload: ProductCreate, session: Session = Depends(require_session), gateway: MarketGateway = Depends(get_gateway)):
        try:
            product = products.create_product(gateway, session, payload.model_dump())
        except ValidationFailed as e:
            return JSONResponse(status_code=400, content={"error": str(e), "details": e.fields})
        except ProfileError as e:
            return JSONResponse(status_code=400, content={"error": str(e), "details": None})
        return {"product": product_out(product)}

    @app.post("/api/products/bulk", status_code=201)
    def create_products_bulk(payload: BulkProductCreate, session: Session = Depends(require_session), gateway: MarketGateway = Depends(get_gateway)):
        created = products.create_products_bulk(gateway, session, [p.model_dump() for p in payload.products])
        return {"items": [product_out(p) for p in created]}

    @app.delete("/api/products/{product_id}")
    def delete_product(product_id: str, session: Session = Depends(require_session), gateway: MarketGateway = Depends(get_gateway)):
        catalog.delete_own_product(gateway, session, product_id)
        return {"ok": True}

    # -----------------------------
    # Storage
    # -----------------------------

    @app.post("/api/storage/product-images", status_code=201)
    async def upload_image(
        request: Request,
        filename: Optional[str] = Query(default=None),
        session: Session = Depends(require_session),
        gateway: MarketGateway = Depends(get_gateway),
    ):
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > storage.MAX_IMAGE_BYTES:
            raise HTTPException(status_code=413, detail="Image is too large")
        content = await request.body()
        content_type = request.headers.get("content-type", "")
        url = storage.upload_product_image(gateway, session, filename, content, content_type)
        return {"url": url}

    @app.get("/storage/v1/object/public/{bucket}/{path:path}")
    def read_object(bucket: str, path: str, gateway: MarketGateway = Depends(get_gateway)):
        obj = storage.read_object(gateway, bucket, path)
        if not obj:
            raise HTTPException(status_code=404, detail="Object not found")
        return Response(content=bytes(obj["content"]), media_type=obj.get("content_type"))

    # -----------------------------
    # Cart
    # -----------------------------

    @app.get("/api/cart")
    def view_cart(cart: Cart = Depends(get_cart)):
        return cart.summary()

    @app.post("/api/cart/items")
    def add_to_cart(item: CartAdd, cart: Cart = Depends(get_cart), gateway: MarketGateway = Depends(get_gateway)):
        product = gateway.get_product(item.product_id)
        if product is None:
            raise HTTPException(status_code=404, detail="Product not found")
        if product.stock_level <= 0:
            raise HTTPException(status_code=409, detail="Out of stock")
        cart.add(product, item.quantity)
        return cart.summary()

    @app.put("/api/cart/items/{product_id}")
    def update_cart_item(product_id: str, body: CartQuantity, cart: Cart = Depends(get_cart)):
        if cart.find(product_id) is None:
            raise HTTPException(status_code=404, detail="Item not in cart")
        cart.set_quantity(product_id, body.quantity)
        return cart.summary()

    @app.delete("/api/cart/items/{product_id}")
    def remove_cart_item(product_id: str, cart: Cart = Depends(get_cart)):
        cart.remove(product_id)
        return cart.summary()

    @app.delete("/api/cart")
    def clear_cart(cart: Cart = Depends(get_cart)):
        cart.clear()
        return cart.summary()

    # -----------------------------
    # Checkout + Payments
    # -----------------------------

    @app.post("/api/checkout")
    def place_order(
        payload: CheckoutRequest,
        request: Request,
        cart: Cart = Depends(get_cart),
        session: Optional[Session] = Depends(optional_session),
        ctx: AppContext = Depends(get_ctx),
    ):
        if cart.is_empty():
            raise HTTPException(status_code=400, detail={"message": "Your cart is empty", "redirect": "/cart"})
        if session is None:
            raise HTTPException(status_code=401, detail={"message": "Please sign in to continue", "redirect": "/login?redirect=/checkout"})

        orchestrator = checkout.CheckoutOrchestrator(ctx.gateway, ctx.payment_client)
        details = checkout.DeliveryDetails(
            delivery_address=payload.delivery_address,
            contact_number=payload.contact_number,
            order_notes=payload.order_notes,
        )
        try:
            result = orchestrator.place_order(cart, session, details, origin=request.headers.get("origin"))
        except checkout.CheckoutValidationError as e:
            return JSONResponse(status_code=422, content={"detail": str(e), "errors": e.fields})
        except checkout.CheckoutError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return {
            "order_id": result.order_id,
            "url": result.url,
            "subtotal": result.subtotal,
            "delivery_fee": result.delivery_fee,
            "total": result.total,
        }

    @app.get("/api/payment-success")
    def payment_success(
        session_id: Optional[str] = Query(default=None),
        order_id: Optional[str] = Query(default=None),
        gateway: MarketGateway = Depends(get_gateway),
    ):
        if not order_id:
            return RedirectResponse(url="/?error=missing_order", status_code=303)
        try:
            order = checkout.confirm_payment(gateway, order_id, session_id)
        except checkout.OrderConflictError as e:
            return JSONResponse(status_code=409, content={"detail": str(e), "order_id": order_id})
        return {"order": order_out(order)}

    @app.post("/api/payments/create-session")
    def create_payment_session(body: PaymentSessionRequest, request: Request, ctx: AppContext = Depends(get_ctx)):
        try:
            url = ctx.payment_client.create_session(body, request.headers.get("origin"))
        except PaymentError as e:
            return JSONResponse(status_code=502, content={"error": str(e)})
        return {"url": url}

    # -----------------------------
    # Orders
    # -----------------------------

    @app.get("/api/orders")
    def list_orders(session: Session = Depends(require_session), gateway: MarketGateway = Depends(get_gateway)):
        return {"items": [order_out(o) for o in checkout.list_my_orders(gateway, session)]}

    @app.get("/api/orders/{order_id}")
    def get_order(order_id: str, session: Session = Depends(require_session), gateway: MarketGateway = Depends(get_gateway)):
        return order_out(checkout.get_my_order(gateway, session, order_id))

    @app.post("/api/orders/reconcile")
    def reconcile_orders(
        older_than_minutes: int = Query(default=60, ge=checkout.MIN_ORDER_AGE_MINUTES),
        x_operator_token: Optional[str] = Header(default=None),
        gateway: MarketGateway = Depends(get_gateway),
    ):
        expected = os.getenv("OPERATOR_TOKEN")
        if not expected:
            raise HTTPException(status_code=403, detail="Reconciliation is disabled")
        if not x_operator_token or not hmac.compare_digest(x_operator_token.encode(), expected.encode()):
            raise HTTPException(status_code=401, detail="Invalid operator token")
        expired = checkout.expire_stale_orders(gateway, older_than_minutes)
        return {"cancelled": expired}

    # -----------------------------
    # Messages
    # -----------------------------

    @app.get("/api/messages")
    def messages_page(
        farmer_id: Optional[str] = Query(default=None, alias="farmerId"),
        session: Session = Depends(require_session),
        gateway: MarketGateway = Depends(get_gateway),
    ):
        conversations = messaging.list_conversations(gateway, session.user_id)
        active = messaging.resolve_farmer_target(gateway, farmer_id)
        if active is None and conversations:
            active = conversations[0].counterparty.id
        thread = messaging.open_thread(gateway, session.user_id, active) if active else []
        for c in conversations:
            if c.counterparty.id == active:
                c.unread = 0
        return {
            "conversations": [c.model_dump() for c in conversations],
            "active": active,
            "messages": [message_out(m) for m in thread],
        }

    @app.get("/api/messages/recipients")
    def message_recipients(
        q: Optional[str] = Query(default=None),
        session: Session = Depends(require_session),
        gateway: MarketGateway = Depends(get_gateway),
    ):
        found = messaging.search_recipients(gateway, session.role, q or "")
        return {"items": [r.model_dump() for r in found]}

    @app.get("/api/messages/{counterparty_id}")
    def message_thread(counterparty_id: str, session: Session = Depends(require_session), gateway: MarketGateway = Depends(get_gateway)):
        thread = messaging.open_thread(gateway, session.user_id, counterparty_id)
        return {"items": [message_out(m) for m in thread]}

    @app.post("/api/messages", status_code=201)
    def send_message(payload: MessageCreate, session: Session = Depends(require_session), gateway: MarketGateway = Depends(get_gateway)):
        message = messaging.send_message(gateway, session.user_id, payload.receiver_id, payload.content)
        return message_out(message)


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

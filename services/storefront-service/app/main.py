from fastapi import FastAPI, Depends, HTTPException, status, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from datetime import datetime
from typing import Optional, List
import os
import sys
import httpx
from urllib.parse import quote

# Add the parent directory to sys.path to resolve shared imports
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../../../")))

from shared.utils import (
    settings, SuccessResponse, HealthResponse, require_token, optional_token, readable_token
)
from shared.backend_client import BackendClient
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from app import orders as order_ops
from app.community import parse_comment, parse_posts, sort_posts
from app.models import CartState, Order
from app.pricing import PriceLookup, unwrap_collection
from app.reports import parse_low_stock, revenue_by_day, shape_low_stock
from app.schemas import (
    CartItemAdd, CartItemUpdate, CartResponse, CatalogEntryResponse, CheckoutResponse,
    CommentCreate, CommentResponse, LineItemResponse, LowStockRow, OrderListResponse,
    OrderResponse, OrderStatusUpdate, PostResponse, RevenuePoint, VoteRequest, VoteStateResponse
)
from app.sessions import SessionRegistry, StorefrontSession

VERSION = "1.0.0"

# Setup Logging
logger = setup_logging("storefront-service", settings.LOG_LEVEL)

app = FastAPI(title="Storefront Service")

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="storefront-service")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_backend_client():
    # Tests swap in an httpx.MockTransport through app.state.transport
    app.state.http = httpx.AsyncClient(
        base_url=settings.BACKEND_API_URL,
        timeout=settings.BACKEND_TIMEOUT_SECONDS,
        transport=getattr(app.state, "transport", None),
    )
    app.state.sessions = SessionRegistry(app.state.http, settings)

@app.on_event("shutdown")
async def shutdown_backend_client():
    await app.state.sessions.close_all()
    await app.state.http.aclose()

# --- Dependencies ---
def request_id_of(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)

async def get_session(request: Request, token: str = Depends(require_token)) -> StorefrontSession:
    session = app.state.sessions.for_token(token, request_id_of(request))
    request.state.user_id = session.user_id
    return session

async def get_optional_session(request: Request, token: Optional[str] = Depends(optional_token)) -> Optional[StorefrontSession]:
    # an unreadable token on a public route browses anonymously
    token = readable_token(token)
    if not token:
        return None
    return await get_session(request, token)

async def get_public_client(request: Request, token: Optional[str] = Depends(optional_token)) -> BackendClient:
    token = readable_token(token)
    async def provider():
        return token
    return BackendClient(app.state.http, token_provider=provider, request_id=request_id_of(request))

async def load_price_lookup(client: BackendClient) -> PriceLookup:
    return PriceLookup.build(await client.get(settings.CATALOG_PATH))

# --- Helpers ---
def cart_response(state: CartState) -> CartResponse:
    return CartResponse(
        items=[LineItemResponse.from_item(item) for item in state.items],
        totals=state.totals,
        currency=settings.CURRENCY,
    )

def order_response(order: Order) -> OrderResponse:
    return OrderResponse(
        order_id=order.order_id,
        status=order.status,
        items=[LineItemResponse.from_item(item) for item in order.items],
        totals=order_ops.order_totals(order),
        currency=settings.CURRENCY,
        user_id=order.user_id,
        user_email=order.user_email,
        created_at=order.created_at,
        payment=order.payment,
    )

# --- Endpoints ---

# Catalog
@app.get("/catalog", response_model=SuccessResponse[List[CatalogEntryResponse]])
@limiter.limit(settings.RATE_LIMIT)
async def get_catalog(request: Request, client: BackendClient = Depends(get_public_client)):
    lookup = await load_price_lookup(client)
    entries = [CatalogEntryResponse(sku=e.sku, name=e.name, unit_price=e.unit_price) for e in lookup.values()]
    return SuccessResponse(data=entries)

# Cart
@app.get("/cart", response_model=SuccessResponse[CartResponse])
@limiter.limit(settings.RATE_LIMIT)
async def get_cart(request: Request, session: StorefrontSession = Depends(get_session)):
    state = await session.cart.refresh(reload_catalog=True)
    return SuccessResponse(data=cart_response(state))

@app.post("/cart/items", response_model=SuccessResponse[CartResponse])
@limiter.limit(settings.RATE_LIMIT)
async def add_to_cart(item: CartItemAdd, request: Request, session: StorefrontSession = Depends(get_session)):
    if not session.cart.price_lookup:
        await session.cart.refresh_catalog()
    state = await session.cart.add_to_cart(item.sku, item.quantity)
    return SuccessResponse(data=cart_response(state), message="Added to cart")

@app.put("/cart/items/{sku}", response_model=SuccessResponse[CartResponse])
@limiter.limit(settings.RATE_LIMIT)
async def update_cart_item(sku: str, update: CartItemUpdate, request: Request, session: StorefrontSession = Depends(get_session)):
    if not session.cart.price_lookup:
        await session.cart.refresh_catalog()
    state = await session.cart.set_quantity(sku, update.quantity)
    return SuccessResponse(data=cart_response(state))

@app.delete("/cart/items/{sku}", response_model=SuccessResponse[CartResponse])
@limiter.limit(settings.RATE_LIMIT)
async def remove_cart_item(sku: str, request: Request, session: StorefrontSession = Depends(get_session)):
    state = await session.cart.remove_item(sku)
    return SuccessResponse(data=cart_response(state))

@app.post("/checkout", response_model=SuccessResponse[CheckoutResponse])
@limiter.limit(settings.RATE_LIMIT)
async def checkout(request: Request, session: StorefrontSession = Depends(get_session)):
    url = await session.cart.checkout()
    return SuccessResponse(data=CheckoutResponse(url=url))

# Orders
@app.get("/orders", response_model=SuccessResponse[List[OrderResponse]])
@limiter.limit(settings.RATE_LIMIT)
async def list_orders(request: Request, session: StorefrontSession = Depends(get_session)):
    lookup = await load_price_lookup(session.client)
    orders = await order_ops.fetch_orders(session.client, lookup)
    return SuccessResponse(data=[order_response(o) for o in orders])

@app.get("/orders/{order_id}", response_model=SuccessResponse[OrderResponse])
@limiter.limit(settings.RATE_LIMIT)
async def get_order(order_id: str, request: Request, session: StorefrontSession = Depends(get_session)):
    lookup = await load_price_lookup(session.client)
    order = await order_ops.fetch_order(session.client, lookup, order_id)
    return SuccessResponse(data=order_response(order))

# Admin
@app.get("/admin/orders", response_model=SuccessResponse[OrderListResponse])
@limiter.limit(settings.RATE_LIMIT)
async def admin_list_orders(
    request: Request,
    q: str = "",
    status_filter: str = Query("", alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    session: StorefrontSession = Depends(get_session),
):
    lookup = await load_price_lookup(session.client)
    orders = await order_ops.fetch_orders(session.client, lookup, path="/admin/orders")
    matched = order_ops.filter_orders(orders, query=q, status=status_filter)
    page_items, total = order_ops.paginate(matched, page=page, limit=limit)
    return SuccessResponse(data=OrderListResponse(
        orders=[order_response(o) for o in page_items],
        total=total,
        page=page,
        limit=limit,
    ))

@app.get("/admin/orders/{order_id}", response_model=SuccessResponse[OrderResponse])
@limiter.limit(settings.RATE_LIMIT)
async def admin_get_order(order_id: str, request: Request, session: StorefrontSession = Depends(get_session)):
    lookup = await load_price_lookup(session.client)
    order = await order_ops.fetch_order(session.client, lookup, order_id, path="/admin/orders")
    return SuccessResponse(data=order_response(order))

@app.patch("/admin/orders/{order_id}/status", response_model=SuccessResponse[OrderResponse])
@limiter.limit(settings.RATE_LIMIT)
async def admin_update_order_status(order_id: str, status_update: OrderStatusUpdate, request: Request,
                                    session: StorefrontSession = Depends(get_session)):
    lookup = await load_price_lookup(session.client)
    order = await order_ops.update_status(session.client, lookup, order_id, status_update.status)
    return SuccessResponse(data=order_response(order), message="Order status updated")

@app.post("/admin/orders/{order_id}/refund", response_model=SuccessResponse[OrderResponse])
@limiter.limit(settings.RATE_LIMIT)
async def admin_refund_order(order_id: str, request: Request, session: StorefrontSession = Depends(get_session)):
    lookup = await load_price_lookup(session.client)
    order = await order_ops.refund(session.client, lookup, order_id)
    return SuccessResponse(data=order_response(order), message="Order refunded")

@app.get("/admin/revenue", response_model=SuccessResponse[List[RevenuePoint]])
@limiter.limit(settings.RATE_LIMIT)
async def admin_revenue(request: Request, days: int = Query(30, ge=1, le=366),
                        session: StorefrontSession = Depends(get_session)):
    lookup = await load_price_lookup(session.client)
    orders = await order_ops.fetch_orders(session.client, lookup, path="/admin/orders")
    return SuccessResponse(data=revenue_by_day(orders, days=days))

@app.get("/admin/low-stock", response_model=SuccessResponse[List[LowStockRow]])
@limiter.limit(settings.RATE_LIMIT)
async def admin_low_stock(
    request: Request,
    default_min: int = Query(settings.LOW_STOCK_DEFAULT_MIN, ge=0),
    limit: int = Query(5, ge=1, le=100),
    hide_zero: bool = True,
    zero_cap: int = Query(5, ge=0),
    session: StorefrontSession = Depends(get_session),
):
    payload = await session.client.get(
        "/admin/alerts/low-stock",
        params={"defaultMin": default_min, "limit": limit},
    )
    rows = parse_low_stock(payload, default_min=default_min)
    return SuccessResponse(data=shape_low_stock(rows, hide_zero=hide_zero, zero_cap=zero_cap))

# Community
@app.get("/posts", response_model=SuccessResponse[List[PostResponse]])
@limiter.limit(settings.RATE_LIMIT)
async def list_posts(
    request: Request,
    sort: str = "top",
    client: BackendClient = Depends(get_public_client),
    session: Optional[StorefrontSession] = Depends(get_optional_session),
):
    posts = parse_posts(await (session.client if session else client).get("/posts"))
    if session:
        session.votes.load(posts)
        posts = session.votes.overlay(posts)
    posts = sort_posts(posts, sort)
    return SuccessResponse(data=[
        PostResponse(**{**p.model_dump(), "my_vote": p.my_vote or 0}) for p in posts
    ])

@app.post("/posts/{post_id}/vote", response_model=SuccessResponse[VoteStateResponse])
@limiter.limit(settings.RATE_LIMIT)
async def vote_post(post_id: str, vote: VoteRequest, request: Request, session: StorefrontSession = Depends(get_session)):
    await session.votes.ensure_loaded(post_id)
    state = await session.votes.vote(post_id, vote.direction)
    return SuccessResponse(data=VoteStateResponse(
        post_id=state.post_id,
        current_vote=state.current_vote,
        vote_count=state.vote_count,
    ))

@app.get("/posts/{post_id}/comments", response_model=SuccessResponse[List[CommentResponse]])
@limiter.limit(settings.RATE_LIMIT)
async def list_comments(
    post_id: str,
    request: Request,
    client: BackendClient = Depends(get_public_client),
    session: Optional[StorefrontSession] = Depends(get_optional_session),
):
    if session:
        comments = await session.thread(post_id).refresh()
    else:
        payload = await client.get(f"/posts/{quote(post_id, safe='')}/comments")
        comments = [c for c in (parse_comment(raw) for raw in unwrap_collection(payload, "comments")) if c]
    return SuccessResponse(data=[CommentResponse(**c.model_dump()) for c in comments])

@app.post("/posts/{post_id}/comments", response_model=SuccessResponse[List[CommentResponse]])
@limiter.limit(settings.RATE_LIMIT)
async def add_comment(post_id: str, comment: CommentCreate, request: Request,
                      session: StorefrontSession = Depends(get_session)):
    comments = await session.thread(post_id).submit(comment.text)
    return SuccessResponse(data=[CommentResponse(**c.model_dump()) for c in comments], message="Comment added")

@app.get("/health", response_model=HealthResponse)
async def health_check():
    backend_status = "unknown"
    try:
        resp = await app.state.http.get(settings.CATALOG_PATH, timeout=2.0)
        backend_status = "healthy" if resp.status_code == 200 else "unhealthy"
    except httpx.RequestError:
        backend_status = "unreachable"

    if backend_status != "healthy":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Unhealthy"
        )

    return HealthResponse(
        service="storefront-service",
        status="healthy",
        timestamp=datetime.utcnow(),
        version=VERSION,
        dependencies={
            "backend": backend_status,
            "open_sessions": len(app.state.sessions),
        }
    )

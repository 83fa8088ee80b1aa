from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from shared.security_config import sanitize_input

from app.models import LineItem, Totals

class CartItemAdd(BaseModel):
    sku: str = Field(..., min_length=1)
    quantity: int  # positivity is enforced by the sequencer (InvalidQuantity)

    @field_validator('sku')
    def sanitize_sku(cls, v):
        return sanitize_input(v)

class CartItemUpdate(BaseModel):
    quantity: int

class LineItemResponse(BaseModel):
    sku: str
    name: Optional[str] = None
    quantity: int
    unit_price: float
    line_total: float

    @classmethod
    def from_item(cls, item: LineItem) -> "LineItemResponse":
        return cls(
            sku=item.sku,
            name=item.name,
            quantity=item.quantity,
            unit_price=item.unit_price,
            line_total=item.line_total,
        )

class CartResponse(BaseModel):
    items: List[LineItemResponse]
    totals: Totals
    currency: str

class CheckoutResponse(BaseModel):
    url: str

class CatalogEntryResponse(BaseModel):
    sku: str
    name: str
    unit_price: float

class OrderResponse(BaseModel):
    order_id: str
    status: str
    items: List[LineItemResponse]
    totals: Totals
    currency: str
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    created_at: Optional[datetime] = None
    payment: Optional[dict] = None

class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    total: int
    page: int
    limit: int

class OrderStatusUpdate(BaseModel):
    status: str = Field(..., min_length=1)

    @field_validator('status')
    def sanitize_status(cls, v):
        return sanitize_input(v)

class VoteRequest(BaseModel):
    direction: int  # 1 = up, -1 = down

class VoteStateResponse(BaseModel):
    post_id: str
    current_vote: int
    vote_count: int

class PostResponse(BaseModel):
    id: str
    title: str
    body: Optional[str] = None
    votes: int
    my_vote: int = 0
    comments_count: Optional[int] = None
    created_at: Optional[datetime] = None
    author_name: Optional[str] = None

class CommentCreate(BaseModel):
    text: str = Field(..., min_length=1)

    @field_validator('text')
    def sanitize_text(cls, v):
        return sanitize_input(v)

class CommentResponse(BaseModel):
    id: str
    author_name: str
    text: str
    created_at: Optional[datetime] = None
    pending: bool = False

class RevenuePoint(BaseModel):
    label: str  # YYYY-MM-DD (UTC)
    total: float

class LowStockRow(BaseModel):
    part_id: str
    sku: Optional[str] = None
    name: Optional[str] = None
    location_id: Optional[str] = None
    qty_on_hand: int = 0
    available: int = 0
    threshold: int = 0
    eta: Optional[str] = None
    severity: str = "low"  # out | critical | low

from datetime import datetime
from typing import Optional, List, Literal
from pydantic import BaseModel, Field

Vote = Literal[-1, 0, 1]

class PriceEntry(BaseModel):
    sku: str
    name: str
    unit_price: float = 0.0

    class Config:
        frozen = True

class LineItem(BaseModel):
    sku: str
    quantity: int = Field(..., gt=0)
    unit_price: float = 0.0  # resolved price used for totals
    unit_price_override: Optional[float] = None  # price at time of purchase
    name: Optional[str] = None

    @property
    def line_total(self) -> float:
        return self.unit_price * self.quantity

class ServerTotals(BaseModel):
    # Any field the backend sends wins over the client projection
    subtotal: Optional[float] = None
    tax: Optional[float] = None
    grand: Optional[float] = None

class Totals(BaseModel):
    subtotal: float = 0.0
    tax: float = 0.0
    grand: float = 0.0

class CartState(BaseModel):
    items: List[LineItem] = []
    totals: Totals = Field(default_factory=Totals)

class VoteState(BaseModel):
    post_id: str
    current_vote: Vote = 0
    vote_count: int = 0
    pending_delta: int = 0  # unconfirmed local change still in flight

    @property
    def confirmed_count(self) -> int:
        return self.vote_count - self.pending_delta

class Post(BaseModel):
    id: str
    title: str = ""
    body: Optional[str] = None
    votes: int = 0
    my_vote: Optional[Vote] = None  # None when the backend does not say
    comments_count: Optional[int] = None
    created_at: Optional[datetime] = None
    author_name: Optional[str] = None

class Comment(BaseModel):
    id: str
    author_name: str = ""
    text: str
    created_at: Optional[datetime] = None
    pending: bool = False  # local placeholder awaiting the server copy

class Order(BaseModel):
    order_id: str
    status: str = ""
    items: List[LineItem] = []
    server_totals: Optional[ServerTotals] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    created_at: Optional[datetime] = None
    payment: Optional[dict] = None

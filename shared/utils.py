from datetime import datetime
from typing import Optional, Generic, TypeVar, Any
from fastapi import HTTPException, status, Header
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings
from jose import JWTError, jwt

# --- Configuration ---
class Settings(BaseSettings):
    BACKEND_API_URL: str = "http://localhost:3001"
    BACKEND_TIMEOUT_SECONDS: float = 10.0
    CART_CONTRACT: str = "upsert"  # upsert | replace
    CATALOG_PATH: str = "/parts"
    CART_PATH: str = "/cart"
    CURRENCY: str = "LKR"
    RATE_LIMIT: str = "100/minute"
    RATE_LIMIT_ENABLED: bool = True
    LOW_STOCK_DEFAULT_MIN: int = 5
    SESSION_IDLE_SECONDS: float = 1800.0
    MAX_SESSIONS: int = Field(1000, ge=1)
    MAX_VIEWS_PER_SESSION: int = Field(200, ge=1)  # comment threads and voted posts kept per user
    LOG_LEVEL: str = "INFO"

    @field_validator("CURRENCY")
    def validate_currency(cls, v):
        v = (v or "LKR").strip().upper()
        if len(v) != 3:
            raise ValueError("Invalid currency code: expected ISO4217 length 3")
        return v

    @field_validator("CART_CONTRACT")
    def validate_contract(cls, v):
        v = (v or "upsert").strip().lower()
        if v not in ("upsert", "replace"):
            raise ValueError("CART_CONTRACT must be 'upsert' or 'replace'")
        return v

    class Config:
        env_file = ".env"

settings = Settings()

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    dependencies: Optional[dict] = None


# --- Exceptions ---
class AppException(HTTPException):
    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "An error occurred",
        headers: Optional[dict] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)

    def __str__(self) -> str:
        return str(self.detail)

class NotFoundException(AppException):
    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class UnauthorizedException(AppException):
    def __init__(self, detail: str = "Unauthorized"):
         super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )

class NetworkError(AppException):
    """Transport failure talking to the backend (DNS, refused, timeout). Never retried."""
    def __init__(self, detail: str = "Backend unavailable"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)

class ServerError(AppException):
    """Non-2xx backend response. `detail` is the backend's own message.

    Client errors (4xx) keep the backend's status, everything else is a 502.
    """
    def __init__(self, detail: str, backend_status: Optional[int] = None, status_code: Optional[int] = None):
        if status_code is None:
            if backend_status and 400 <= backend_status < 500:
                status_code = backend_status
            else:
                status_code = status.HTTP_502_BAD_GATEWAY
        super().__init__(status_code=status_code, detail=detail)
        self.backend_status = backend_status

class PartialMutationFailure(ServerError):
    """Delete succeeded, follow-up add failed. The line is gone until re-added."""
    def __init__(self, sku: str, cause: Exception):
        super().__init__(
            detail=f"Cart update for {sku} failed: {cause}",
            backend_status=getattr(cause, "backend_status", None),
            status_code=status.HTTP_502_BAD_GATEWAY,
        )
        self.sku = sku
        self.cause = cause

class ClientValidationError(AppException):
    """Precondition violation caught before any backend call."""
    def __init__(self, detail: str = "Invalid request", status_code: int = status.HTTP_400_BAD_REQUEST):
        super().__init__(status_code=status_code, detail=detail)

class InvalidQuantity(ClientValidationError):
    def __init__(self, quantity: Any):
        super().__init__(detail=f"Quantity must be a positive integer, got {quantity!r}")
        self.quantity = quantity

class DuplicateVote(ClientValidationError):
    def __init__(self):
        super().__init__(detail="You already voted this way.", status_code=status.HTTP_409_CONFLICT)

class MutationInFlight(AppException):
    def __init__(self, entity: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"A change to {entity} is already in progress"
        )
        self.entity = entity


# --- Authentication ---
# Tokens are issued and verified by the external identity provider. Here we only
# read the subject so each user gets their own views.
def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, param = authorization.partition(" ")
    if scheme.lower() != "bearer" or not param:
        return None
    return param.strip()

def token_subject(token: str) -> str:
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        raise UnauthorizedException(detail="Malformed bearer token")
    sub = claims.get("sub")
    if not sub:
        raise UnauthorizedException(detail="Token has no subject")
    return str(sub)

def readable_token(token: Optional[str]) -> Optional[str]:
    """The token when its subject can be read, else None so public routes fall back to anonymous."""
    if not token:
        return None
    try:
        token_subject(token)
    except UnauthorizedException:
        return None
    return token

# --- Decorators/Dependencies ---
async def require_token(authorization: Optional[str] = Header(None)) -> str:
    token = parse_bearer(authorization)
    if not token:
         raise UnauthorizedException(detail="Invalid authentication credentials")
    return token

async def optional_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    return parse_bearer(authorization)

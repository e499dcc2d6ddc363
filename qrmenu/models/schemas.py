"""
Request bodies for the HTTP API
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class SessionInitBody(BaseModel):
    storeId: str = Field(min_length=1)
    tableId: Optional[str] = None
    isDelivery: bool = False
    signals: Dict[str, Any] = Field(default_factory=dict)


class AuthRequestBody(BaseModel):
    phone: str
    storeId: str = Field(min_length=1)
    mode: Literal["link", "code"] = "link"
    tableId: Optional[str] = None
    isDelivery: bool = True


class CodeVerifyBody(BaseModel):
    phone: str
    code: str = Field(min_length=1, max_length=12)
    storeId: str = Field(min_length=1)


class AdditionalBody(BaseModel):
    id: str = Field(min_length=1)
    name: str = ""
    price: float = Field(0.0, ge=0)
    quantity: int = Field(1, ge=1)


class CartItemBody(BaseModel):
    product_identify: str = Field(min_length=1)
    name: str = ""
    price: float = Field(ge=0)
    quantity: int = Field(1, ge=0)
    notes: str = ""
    additionals: List[AdditionalBody] = Field(default_factory=list)


class CartBody(BaseModel):
    """Cart as the client stores it between requests"""
    items: List[CartItemBody] = Field(default_factory=list)
    storeId: Optional[str] = None
    tableId: Optional[str] = None
    deliveryMode: bool = False
    sessionId: Optional[str] = None
    sessionExpiresAt: Optional[int] = None
    lastUpdated: Optional[int] = None
    expiresAt: Optional[int] = None


class CartSyncBody(BaseModel):
    cart: CartBody = Field(default_factory=CartBody)


class OrderBody(BaseModel):
    amount: float = Field(ge=0)

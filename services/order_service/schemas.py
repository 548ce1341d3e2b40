from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from .models import OrderStatus


class ConfirmOrderRequest(BaseModel):
    total_cents: int = Field(ge=0, description="Total amount in cents", examples=[1000])

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class OrderResponse(BaseModel):
    id: str
    tenant_id: str
    status: OrderStatus
    version: int
    total_cents: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class PaginatedOrdersResponse(BaseModel):
    items: List[OrderResponse]
    next_cursor: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class ErrorDetail(BaseModel):
    code: str
    message: str
    timestamp: datetime
    path: str
    details: Optional[dict] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail

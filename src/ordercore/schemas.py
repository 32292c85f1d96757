from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from ordercore.models import EventType, OrderStatus, PaymentMethod, PaymentStatus


class LineItem(BaseModel):
    product_id: UUID
    quantity: int = Field(..., gt=0, le=100, description="Units of the product")


class ReserveStockRequest(BaseModel):
    items: List[LineItem] = Field(..., min_length=1)
    session_id: Optional[str] = Field(None, max_length=128)


class ReserveStockResponse(BaseModel):
    reservation_ids: List[UUID]


class ReleaseResponse(BaseModel):
    released: int


class OrderCreateRequest(BaseModel):
    items: List[LineItem]
    payment_method: PaymentMethod
    notes: Optional[str] = Field(None, max_length=500)


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_id: UUID
    product_snapshot: dict
    quantity: int
    unit_price: Decimal
    discounted_price: Optional[Decimal]
    total: Decimal


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    amount: Decimal
    currency: str
    method: PaymentMethod
    status: PaymentStatus
    paid_at: Optional[datetime]
    refund_amount: Optional[Decimal]
    refunded_at: Optional[datetime]


class StatusHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: OrderStatus
    notes: Optional[str]
    changed_by: Optional[str]
    created_at: datetime


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    user_id: UUID
    status: OrderStatus
    payment_method: PaymentMethod
    subtotal: Decimal
    delivery_fee: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal
    notes: Optional[str]
    estimated_delivery: Optional[datetime]
    confirmed_at: Optional[datetime]
    packed_at: Optional[datetime]
    dispatched_at: Optional[datetime]
    delivered_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    refunded_at: Optional[datetime]
    cancellation_reason: Optional[str]
    sla_breached_at: Optional[datetime]
    created_at: datetime
    items: List[OrderItemRead]
    payment: Optional[PaymentRead]
    status_history: List[StatusHistoryRead]


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    notes: Optional[str] = None


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class PartialFulfillmentRequest(BaseModel):
    item_ids: List[UUID] = Field(..., min_length=1)


class PartialFulfillmentResult(BaseModel):
    order_id: UUID
    removed_items: int
    refund_amount: Decimal


class PaymentWebhook(BaseModel):
    """Normalised gateway callback; providers post this shape after signature checks."""
    event_id: str = Field(..., min_length=1, max_length=128)
    type: Literal["payment.succeeded", "payment.failed"]
    order_id: UUID
    gateway_payment_id: Optional[str] = None
    reason: Optional[str] = None


class RefreshRequest(BaseModel):
    refresh_token: str


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class JobRunResult(BaseModel):
    job: str
    result: Any


# ── Outbox event payloads ──────────────────────────────────────


class OrderCreated(BaseModel):
    event_type: Literal[EventType.ORDER_CREATED] = EventType.ORDER_CREATED
    order_id: UUID
    order_number: str
    user_id: UUID
    total: Decimal
    payment_method: PaymentMethod


class PaymentSucceeded(BaseModel):
    event_type: Literal[EventType.PAYMENT_SUCCESS] = EventType.PAYMENT_SUCCESS
    order_id: UUID
    order_number: str
    user_id: UUID
    amount: Decimal
    gateway_payment_id: Optional[str] = None


class StockDeducted(BaseModel):
    event_type: Literal[EventType.STOCK_DEDUCTED] = EventType.STOCK_DEDUCTED
    product_id: UUID
    order_id: UUID
    quantity: int


class OrderStatusChanged(BaseModel):
    event_type: Literal[EventType.ORDER_STATUS_CHANGED] = EventType.ORDER_STATUS_CHANGED
    order_id: UUID
    order_number: str
    user_id: UUID
    previous_status: OrderStatus
    new_status: OrderStatus
    action: Optional[str] = None
    removed_items: List[UUID] = []
    refund_amount: Optional[Decimal] = None


class OrderCancelled(BaseModel):
    event_type: Literal[EventType.ORDER_CANCELLED] = EventType.ORDER_CANCELLED
    order_id: UUID
    order_number: str
    user_id: UUID
    reason: Optional[str] = None
    automated: bool = False


DomainEvent = Annotated[
    Union[OrderCreated, PaymentSucceeded, StockDeducted, OrderStatusChanged, OrderCancelled],
    Field(discriminator="event_type"),
]

domain_event_adapter = TypeAdapter(DomainEvent)

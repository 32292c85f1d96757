import enum
import uuid
from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Column, Enum, ForeignKey, Integer, Numeric,
    String, Text, UniqueConstraint, Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from ordercore.db import Base, UTCDateTime, utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PACKED = "PACKED"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, enum.Enum):
    CASH_ON_DELIVERY = "CASH_ON_DELIVERY"
    STRIPE = "STRIPE"
    RAZORPAY = "RAZORPAY"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class OutboxStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class EventType(str, enum.Enum):
    ORDER_CREATED = "ORDER_CREATED"
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    STOCK_DEDUCTED = "STOCK_DEDUCTED"
    ORDER_STATUS_CHANGED = "ORDER_STATUS_CHANGED"
    ORDER_CANCELLED = "ORDER_CANCELLED"


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("reserved_quantity >= 0", name="ck_products_reserved_non_negative"),
        CheckConstraint("reserved_quantity <= stock_quantity", name="ck_products_reserved_within_stock"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    sku = Column(String(64), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    discounted_price = Column(Numeric(12, 2), nullable=True)
    unit = Column(String(32), nullable=True)
    is_available = Column(Boolean, nullable=False, default=True)
    stock_quantity = Column(Integer, nullable=False, default=0)
    reserved_quantity = Column(Integer, nullable=False, default=0)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    @property
    def available_quantity(self) -> int:
        return self.stock_quantity - self.reserved_quantity


class InventoryReservation(Base):
    __tablename__ = "inventory_reservations"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservations_quantity_positive"),
        CheckConstraint(
            "released_at IS NULL OR converted_at IS NULL",
            name="ck_reservations_single_terminal_marker",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id = Column(Uuid, ForeignKey("products.id"), nullable=False, index=True)
    owner = Column(Uuid, nullable=False, index=True)
    session_id = Column(String(128), nullable=True)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=True, index=True)
    quantity = Column(Integer, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=False, index=True)
    released_at = Column(UTCDateTime, nullable=True)
    converted_at = Column(UTCDateTime, nullable=True)

    @property
    def is_active(self) -> bool:
        return self.released_at is None and self.converted_at is None


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    key = Column(String(255), nullable=False, unique=True)
    request_hash = Column(String(64), nullable=False)
    status_code = Column(Integer, nullable=True)
    # plain JSON keeps the stored text as written, so replays are byte-identical
    response_body = Column(JSON, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=False, index=True)


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    type = Column(Enum(EventType, native_enum=False, length=32), nullable=False)
    payload = Column(JSONType, nullable=False)
    status = Column(
        Enum(OutboxStatus, native_enum=False, length=16),
        nullable=False,
        default=OutboxStatus.PENDING,
        index=True,
    )
    retries = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    processed_at = Column(UTCDateTime, nullable=True)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number = Column(String(32), nullable=False, unique=True)
    user_id = Column(Uuid, nullable=False, index=True)
    status = Column(
        Enum(OrderStatus, native_enum=False, length=20),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
    )
    payment_method = Column(Enum(PaymentMethod, native_enum=False, length=20), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    delivery_fee = Column(Numeric(12, 2), nullable=False, default=0)
    discount = Column(Numeric(12, 2), nullable=False, default=0)
    tax = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False)
    notes = Column(Text, nullable=True)
    estimated_delivery = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
    confirmed_at = Column(UTCDateTime, nullable=True)
    packed_at = Column(UTCDateTime, nullable=True)
    dispatched_at = Column(UTCDateTime, nullable=True)
    delivered_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    refunded_at = Column(UTCDateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    sla_breached_at = Column(UTCDateTime, nullable=True)
    sla_breach_stage = Column(String(20), nullable=True)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
        lazy="selectin",
    )
    payment = relationship(
        "Payment",
        back_populates="order",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    status_history = relationship(
        "OrderStatusHistory",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusHistory.created_at",
        lazy="selectin",
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(Uuid, ForeignKey("products.id"), nullable=False)
    product_snapshot = Column(JSONType, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    discounted_price = Column(Numeric(12, 2), nullable=True)
    total = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    method = Column(Enum(PaymentMethod, native_enum=False, length=20), nullable=False)
    status = Column(
        Enum(PaymentStatus, native_enum=False, length=16),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    gateway_payment_id = Column(String(128), nullable=True)
    failure_reason = Column(Text, nullable=True)
    paid_at = Column(UTCDateTime, nullable=True)
    refund_amount = Column(Numeric(12, 2), nullable=True)
    refunded_at = Column(UTCDateTime, nullable=True)
    refund_metadata = Column(JSONType, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="payment")


class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(Enum(OrderStatus, native_enum=False, length=20), nullable=False)
    notes = Column(Text, nullable=True)
    changed_by = Column(String(64), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    order = relationship("Order", back_populates="status_history")


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    token = Column(String(128), nullable=False, unique=True)
    user_id = Column(Uuid, nullable=False, index=True)
    role = Column(String(32), nullable=False, default="CUSTOMER")
    family = Column(String(32), nullable=False, index=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=False)
    revoked_at = Column(UTCDateTime, nullable=True)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    provider = Column(String(32), nullable=False)
    event_id = Column(String(128), nullable=False)
    event_type = Column(String(64), nullable=False)
    payload = Column(JSONType, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class JobLock(Base):
    __tablename__ = "job_locks"

    name = Column(String(128), primary_key=True)
    owner = Column(String(64), nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)

import enum
from datetime import datetime, timezone
from uuid import uuid4
from sqlalchemy import Column, String, Numeric, DateTime, Enum, ForeignKey, JSON, CheckConstraint
from sqlalchemy.orm import declarative_base
from payment_service.errors import InvalidTransition

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(enum.Enum):
    CASH = "Cash"
    MPESA = "Mpesa"
    CARD = "Card"


class OrderStatus(enum.Enum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    SCHEDULED = "scheduled"
    EN_ROUTE = "en_route"
    DELIVERED = "delivered"
    INVOICED = "invoiced"
    PAID = "paid"
    CANCELLED = "cancelled"


class PaymentStatusCache(enum.Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}

ORDER_TRANSITIONS = {
    OrderStatus.DRAFT: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.SCHEDULED, OrderStatus.CANCELLED},
    OrderStatus.SCHEDULED: {OrderStatus.EN_ROUTE, OrderStatus.CANCELLED},
    OrderStatus.EN_ROUTE: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.INVOICED, OrderStatus.PAID},
    OrderStatus.INVOICED: {OrderStatus.PAID},
    OrderStatus.PAID: set(),
    OrderStatus.CANCELLED: set(),
}

# Orders in these states may be marked paid once fully covered
PAYABLE_ORDER_STATUSES = frozenset(
    status for status, targets in ORDER_TRANSITIONS.items() if OrderStatus.PAID in targets
)


def ensure_transition(current, target, transitions):
    if target not in transitions.get(current, set()):
        raise InvalidTransition(current, target)
    return target


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid4()))
    customer_id = Column(String, index=True, nullable=True)
    status = Column(Enum(OrderStatus), default=OrderStatus.DRAFT, nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    payment_status_cache = Column(
        Enum(PaymentStatusCache), default=PaymentStatusCache.PENDING, nullable=False
    )
    payment_due_date = Column(DateTime(timezone=True), nullable=True)
    payment_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (CheckConstraint("amount > 0", name="payment_amount_positive"),)

    id = Column(String, primary_key=True, index=True, default=lambda: str(uuid4()))
    payment_id = Column(String, nullable=True)  # PAY-2025-001
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    payment_method = Column(Enum(PaymentMethod), nullable=False)
    status = Column(Enum(PaymentStatus), default=PaymentStatus.PENDING, index=True, nullable=False)
    # CheckoutRequestID until the gateway confirms, then the M-Pesa receipt number
    transaction_id = Column(String, unique=True, index=True, nullable=True)
    mpesa_receipt_number = Column(String, unique=True, nullable=True)
    payment_date = Column(DateTime(timezone=True), nullable=True)
    payment_metadata = Column("metadata", JSON, default=dict, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def transition_to(self, target: PaymentStatus):
        self.status = ensure_transition(self.status, target, PAYMENT_TRANSITIONS)

    def merge_metadata(self, **values):
        # Reassign so the JSON column is flagged dirty
        self.payment_metadata = {**(self.payment_metadata or {}), **values}

from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Text,
    Index,
)


Base = declarative_base()

# Invoice.status
INV_PENDING = "pending"
INV_PAID = "paid"
INV_OVERDUE = "overdue"
INV_CANCELLED = "cancelled"
INV_REFUNDED = "refunded"

# PaymentSession.status
PS_CREATED = "created"
PS_COMPLETED = "completed"
PS_EXPIRED = "expired"
PS_FAILED = "failed"

PS_STATUSES = (PS_CREATED, PS_COMPLETED, PS_EXPIRED, PS_FAILED)
PS_TERMINAL = (PS_COMPLETED, PS_EXPIRED, PS_FAILED)


# ----------------------------
# ORM models
# ----------------------------
class Invoice(Base):
    __tablename__ = "invoices"
    id = Column(String, primary_key=True)
    invoice_number = Column(String, nullable=False, unique=True)
    buyer_id = Column(String, nullable=True)

    # pending | paid | overdue | cancelled | refunded
    status = Column(String, nullable=False, default=INV_PENDING)

    subtotal = Column(Integer, nullable=False)  # cents
    buyers_premium_rate = Column(String, nullable=True)  # exact decimal text
    buyers_premium_amount = Column(Integer, nullable=False)  # cents
    tax_rate = Column(String, nullable=False)  # exact decimal text
    tax_amount = Column(Integer, nullable=False)  # cents
    grand_total = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False, default="USD")

    payment_method = Column(String, nullable=True)
    due_date = Column(String, nullable=False)  # ISO date
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)


class InvoiceItem(Base):
    __tablename__ = "invoice_items"
    id = Column(String, primary_key=True)
    invoice_id = Column(String, nullable=False, index=True)
    lot_id = Column(String, nullable=False)
    title = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(String, nullable=False)  # exact decimal text
    total_price = Column(Integer, nullable=False)  # cents
    created_at = Column(Float, nullable=False)


class PaymentSession(Base):
    __tablename__ = "payment_sessions"
    session_id = Column(String, primary_key=True)
    invoice_id = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False)

    # created | completed | expired | failed
    status = Column(String, nullable=False, default=PS_CREATED)
    provider_payment_status = Column(String, nullable=True)
    payment_intent_id = Column(String, nullable=True, index=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=True)
    correlation_id = Column(String, nullable=True)
    # `metadata` is reserved on declarative classes
    meta = Column("metadata", Text, nullable=False, default="{}")
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("idx_audit_logs_entity", "entity_type", "entity_id"),
    )

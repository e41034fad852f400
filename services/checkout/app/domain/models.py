from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import String, ForeignKey, Numeric, DateTime, Integer, Boolean, JSON, Text
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from app.domain.enums import (
    CANCELLABLE_DELIVERY_STATUSES,
    DeliveryStatus,
    PaymentStatus,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class Checkout(Base):
    __tablename__ = "checkouts"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_number: Mapped[str] = mapped_column(String(40), unique=True, index=True)
    # External user reference (no FK - microservices pattern); None for guests
    user: Mapped[Optional[str]] = mapped_column("user_id", String(64), nullable=True, index=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    # Address snapshot captured at checkout time, camelCase keys
    user_details: Mapped[dict] = mapped_column(JSON)
    payment_type: Mapped[str] = mapped_column(String(30))
    payment_status: Mapped[str] = mapped_column(String(20), index=True, default=PaymentStatus.PENDING.value)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    payment_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    delivery_status: Mapped[str] = mapped_column(String(30), index=True, default=DeliveryStatus.PENDING.value)
    estimated_delivery_date: Mapped[datetime] = mapped_column(DateTime)
    actual_delivery_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancellation_deadline: Mapped[datetime] = mapped_column(DateTime)
    delivery_agent: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    products: Mapped[list["CheckoutItem"]] = relationship(
        "CheckoutItem", back_populates="checkout", cascade="all, delete-orphan",
        order_by="CheckoutItem.position", lazy="selectin",
    )
    delivery_status_timeline: Mapped[list["CheckoutStatusEvent"]] = relationship(
        "CheckoutStatusEvent", back_populates="checkout", cascade="all, delete-orphan",
        order_by="CheckoutStatusEvent.id", lazy="selectin",
    )

    # UPDATE ... WHERE id = ? AND version = ?; StaleDataError on mismatch
    __mapper_args__ = {"version_id_col": version}

    def append_status(self, status: DeliveryStatus, note: Optional[str] = None,
                      now: Optional[datetime] = None) -> "CheckoutStatusEvent":
        """Set the delivery status and record it on the timeline."""
        changed_at = now or utcnow()
        if self.delivery_status_timeline:
            changed_at = max(changed_at, self.delivery_status_timeline[-1].changed_at)
        event = CheckoutStatusEvent(status=DeliveryStatus(status).value, changed_at=changed_at, note=note)
        self.delivery_status = event.status
        self.delivery_status_timeline.append(event)
        return event

    def can_be_cancelled(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return (
            now <= self.cancellation_deadline
            and self.payment_status != PaymentStatus.PAID.value
            and self.delivery_status in {s.value for s in CANCELLABLE_DELIVERY_STATUSES}
        )

    @property
    def customer_name(self) -> str:
        details = self.user_details or {}
        return f"{details.get('firstName', '')} {details.get('lastName', '')}".strip()

    @property
    def delivery_address_summary(self) -> str:
        details = self.user_details or {}
        country = details.get("country") or {}
        parts = [
            details.get("address"),
            details.get("city"),
            details.get("state"),
            country.get("name") if isinstance(country, dict) else country,
        ]
        return ", ".join(p for p in parts if p)


class CheckoutItem(Base):
    __tablename__ = "checkout_items"
    id: Mapped[int] = mapped_column(primary_key=True)
    checkout_id: Mapped[int] = mapped_column(ForeignKey("checkouts.id", ondelete="CASCADE"), index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    # Catalog product reference (no FK - microservices pattern)
    product: Mapped[str] = mapped_column("product_id", String(64))
    quantity: Mapped[int]
    size: Mapped[str] = mapped_column(String(40))
    color: Mapped[str] = mapped_column(String(40))
    # Price and product snapshot frozen at checkout time
    price: Mapped[Decimal] = mapped_column("unit_price", Numeric(12, 2))
    product_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    product_snapshot: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    checkout: Mapped[Checkout] = relationship("Checkout", back_populates="products")


class CheckoutStatusEvent(Base):
    """Delivery timeline entry; rows are only ever inserted."""
    __tablename__ = "checkout_status_events"
    id: Mapped[int] = mapped_column(primary_key=True)
    checkout_id: Mapped[int] = mapped_column(ForeignKey("checkouts.id", ondelete="CASCADE"), index=True)
    status: Mapped[str] = mapped_column(String(30))
    changed_at: Mapped[datetime] = mapped_column(DateTime)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    checkout: Mapped[Checkout] = relationship("Checkout", back_populates="delivery_status_timeline")


class Notification(Base):
    """Admin notification persisted for the dashboard inbox."""
    __tablename__ = "notifications"
    id: Mapped[int] = mapped_column(primary_key=True)
    type: Mapped[str] = mapped_column(String(50), index=True)
    message: Mapped[str] = mapped_column(Text)
    data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

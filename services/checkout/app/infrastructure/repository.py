"""
Persistence for orders and admin notifications.

Every read-modify-write of an order goes through ``CheckoutRepository.apply``
(or ``remove`` for deletions). Both re-read the row, run the caller's guards
against that fresh state and commit with the ``version`` compare-and-set, so
two concurrent writers can never both pass a guard such as "not already paid".
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.domain.enums import DeliveryStatus, PaymentStatus, PaymentType
from app.domain.errors import ConcurrentUpdateError, NotFoundError
from app.domain.models import Checkout, Notification
from shared.core import get_logger

logger = get_logger(__name__)

# mutate(checkout) -> False when nothing changed (nothing is written)
Mutation = Callable[[Checkout], Optional[bool]]


class CheckoutRepository:
    def __init__(self, db: Session, max_retries: int = 3):
        self.db = db
        self.max_retries = max_retries

    def add(self, checkout: Checkout) -> Checkout:
        self.db.add(checkout)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return checkout

    def get(self, checkout_id: int) -> Optional[Checkout]:
        return self.db.get(Checkout, checkout_id)

    def get_or_raise(self, checkout_id: int) -> Checkout:
        checkout = self.get(checkout_id)
        if checkout is None:
            raise NotFoundError("Checkout not found")
        return checkout

    def find_by_reference(self, reference: str) -> Optional[Checkout]:
        return self.db.scalars(
            select(Checkout).where(Checkout.payment_reference == reference)
        ).first()

    def find_by_order_number(self, order_number: str) -> Optional[Checkout]:
        return self.db.scalars(
            select(Checkout).where(Checkout.order_number == order_number)
        ).first()

    def list(self, skip: int = 0, limit: int = 100) -> List[Checkout]:
        stmt = select(Checkout).order_by(Checkout.created_at.desc(), Checkout.id.desc()).offset(skip).limit(limit)
        return list(self.db.scalars(stmt))

    def list_for_user(self, user_id: str, delivery_status: Optional[str] = None) -> List[Checkout]:
        stmt = select(Checkout).where(Checkout.user == str(user_id))
        if delivery_status:
            stmt = stmt.where(Checkout.delivery_status == delivery_status)
        return list(self.db.scalars(stmt.order_by(Checkout.created_at.desc(), Checkout.id.desc())))

    def filter(self, **columns: Any) -> List[Checkout]:
        """Equality filter on scalar columns; ``None`` values are ignored."""
        stmt = select(Checkout)
        for name, value in columns.items():
            if value is not None:
                stmt = stmt.where(getattr(Checkout, name) == value)
        return list(self.db.scalars(stmt.order_by(Checkout.created_at.desc(), Checkout.id.desc())))

    def all(self) -> List[Checkout]:
        return list(self.db.scalars(select(Checkout)))

    def find_stale_pending_online(self, created_before: datetime, limit: int = 100) -> List[Checkout]:
        stmt = (
            select(Checkout)
            .where(
                Checkout.payment_type == PaymentType.ONLINE_PAYMENT.value,
                Checkout.payment_status == PaymentStatus.PENDING.value,
                Checkout.payment_reference.is_not(None),
                Checkout.created_at < created_before,
            )
            .order_by(Checkout.created_at)
            .limit(limit)
        )
        return list(self.db.scalars(stmt))

    def find_pending_delivery_payments(self) -> List[Checkout]:
        stmt = (
            select(Checkout)
            .where(
                Checkout.payment_type == PaymentType.PAYMENT_ON_DELIVERY.value,
                Checkout.payment_status == PaymentStatus.PENDING.value,
                Checkout.delivery_status.in_([
                    DeliveryStatus.OUT_FOR_DELIVERY.value,
                    DeliveryStatus.DELIVERED.value,
                ]),
            )
            .order_by(Checkout.created_at)
        )
        return list(self.db.scalars(stmt))

    def totals_by(self, column_name: str, **filters: Any) -> Dict[str, Dict[str, Any]]:
        """``{value: {"count": n, "total": Decimal}}`` grouped on one column."""
        column = getattr(Checkout, column_name)
        stmt = select(column, func.count(Checkout.id), func.sum(Checkout.total_amount)).group_by(column)
        for name, value in filters.items():
            stmt = stmt.where(getattr(Checkout, name) == value)
        return {
            key: {"count": count, "total": total or 0}
            for key, count, total in self.db.execute(stmt)
        }

    def apply(self, checkout_id: int, mutate: Mutation) -> Checkout:
        """
        Read-modify-write one order under optimistic concurrency.

        ``mutate`` runs against freshly loaded state on every attempt and may
        raise to abort (nothing is written). If it returns ``False`` the
        record is returned as loaded without a write.

        Raises:
            NotFoundError: the order does not exist (or was deleted meanwhile)
            ConcurrentUpdateError: every attempt lost the version race
        """
        for attempt in range(1, self.max_retries + 1):
            checkout = self.db.get(Checkout, checkout_id, populate_existing=True)
            if checkout is None:
                raise NotFoundError("Checkout not found")
            try:
                changed = mutate(checkout)
            except Exception:
                self.db.rollback()
                raise
            if changed is False:
                return checkout
            try:
                self.db.commit()
                return checkout
            except StaleDataError:
                self.db.rollback()
                logger.warning(
                    f"Concurrent update on checkout {checkout_id}, retrying ({attempt}/{self.max_retries})"
                )
        raise ConcurrentUpdateError("Checkout was modified concurrently, please retry")

    def remove(self, checkout_id: int, guard: Optional[Callable[[Checkout], None]] = None) -> Checkout:
        """Delete an order after ``guard`` accepted its current state."""
        for attempt in range(1, self.max_retries + 1):
            checkout = self.db.get(Checkout, checkout_id, populate_existing=True)
            if checkout is None:
                raise NotFoundError("Checkout not found")
            try:
                if guard is not None:
                    guard(checkout)
                self.db.delete(checkout)
                self.db.commit()
                return checkout
            except StaleDataError:
                self.db.rollback()
                logger.warning(
                    f"Concurrent update while deleting checkout {checkout_id}, retrying ({attempt}/{self.max_retries})"
                )
            except Exception:
                self.db.rollback()
                raise
        raise ConcurrentUpdateError("Checkout was modified concurrently, please retry")


class NotificationRepository:
    def __init__(self, db: Session):
        self.db = db

    def add(self, type: str, message: str, data: Optional[dict] = None) -> Notification:
        notification = Notification(type=type, message=message, data=data)
        self.db.add(notification)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return notification

    def list(self, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        stmt = select(Notification)
        if unread_only:
            stmt = stmt.where(Notification.read.is_(False))
        return list(self.db.scalars(stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)))

    def mark_read(self, notification_id: int) -> Notification:
        notification = self.db.get(Notification, notification_id)
        if notification is None:
            raise NotFoundError("Notification not found")
        notification.read = True
        self.db.commit()
        return notification

"""
Periodic sweep for online payments whose webhook never arrived.

Each stale ``pending`` online order is run through the same verification
path an admin would trigger, so paid orders flip to ``paid`` and abandoned
ones end up ``failed`` with the gateway's reason.
"""

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, ContextManager, Dict, List, Optional

from sqlalchemy.orm import Session

from app.application.payment_verifier import PaymentVerifier
from app.domain.errors import CheckoutError, PaymentVerificationError
from app.domain.models import utcnow
from app.infrastructure.repository import CheckoutRepository
from shared.core import HealthStatus, check_result, get_logger

logger = get_logger(__name__)


@dataclass
class SweepReport:
    started_at: datetime
    examined: int = 0
    paid: int = 0
    failed: int = 0
    errors: int = 0
    failures: List[str] = field(default_factory=list)


class PaymentReconciler:
    def __init__(
        self,
        session_factory: Callable[[], ContextManager[Session]],
        verifier_factory: Callable[[Session], PaymentVerifier],
        min_age_minutes: int = 30,
        batch_size: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.verifier_factory = verifier_factory
        self.min_age = timedelta(minutes=min_age_minutes)
        self.batch_size = batch_size
        self.clock = clock
        self.last_report: Optional[SweepReport] = None

    def run_once(self) -> SweepReport:
        report = SweepReport(started_at=self.clock())
        cutoff = report.started_at - self.min_age

        with self.session_factory() as db:
            stale_ids = [c.id for c in CheckoutRepository(db).find_stale_pending_online(cutoff, self.batch_size)]
            verifier = self.verifier_factory(db)
            for checkout_id in stale_ids:
                report.examined += 1
                try:
                    verifier.verify_manually(checkout_id)
                    report.paid += 1
                except PaymentVerificationError as e:
                    report.failed += 1
                    report.failures.append(f"{checkout_id}: {e.message}")
                except CheckoutError as e:
                    # Paid or removed since the query ran
                    logger.info(f"Skipping checkout {checkout_id}: {e.message}")
                except Exception:
                    report.errors += 1
                    logger.exception(f"Reconciliation of checkout {checkout_id} failed")
                    db.rollback()

        self.last_report = report
        logger.info(
            "Payment reconciliation sweep finished",
            extra={'extra_fields': {k: v for k, v in asdict(report).items() if k != "failures"}}
        )
        return report

    def health_check(self) -> Dict[str, Any]:
        """Readiness entry describing the most recent sweep."""
        if self.last_report is None:
            return check_result(HealthStatus.PASS, "worker", output="No sweep has run yet")
        report = self.last_report
        status_val = HealthStatus.WARN if report.errors else HealthStatus.PASS
        return check_result(
            status_val, "worker",
            observedValue=report.examined, observedUnit="orders",
            lastRun=report.started_at.isoformat(),
        )


async def run_periodically(reconciler: PaymentReconciler, interval_seconds: float) -> None:
    """Sweep forever; cancelled by the application lifespan on shutdown."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(reconciler.run_once)
        except Exception:
            logger.exception("Payment reconciliation sweep crashed")

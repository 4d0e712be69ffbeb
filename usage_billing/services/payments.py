import logging
from datetime import datetime

from sqlalchemy.orm import Session

from usage_billing.models.billing import Payment, PaymentStatus, PlanId
from usage_billing.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    validate_enum,
)
from usage_billing.services.response import ListResponseMixin

logger = logging.getLogger(__name__)


class Payments(ListResponseMixin):
    @staticmethod
    def record_invoice(
        db: Session,
        account_id,
        invoice: dict,
        status: PaymentStatus,
        plan_id: PlanId,
        at: datetime,
    ) -> Payment:
        """Upsert the audit row for a provider invoice. Does not commit."""
        invoice_ref = invoice.get("id")
        if not invoice_ref:
            raise ValueError("Invoice payload has no id")
        payment = (
            db.query(Payment)
            .filter(Payment.provider_invoice_ref == invoice_ref)
            .one_or_none()
        )
        if payment is None:
            payment = Payment(account_id=coerce_uuid(account_id), provider_invoice_ref=invoice_ref)
            db.add(payment)
        payment.provider_subscription_ref = invoice.get("subscription")
        payment.currency = (invoice.get("currency") or "usd")[:3]
        payment.status = status
        payment.plan_at_payment = plan_id
        if status == PaymentStatus.succeeded:
            payment.amount_cents = int(invoice.get("amount_paid") or 0)
            payment.paid_at = at
            payment.failure_reason = None
        else:
            payment.amount_cents = int(invoice.get("amount_due") or 0)
            attempts = invoice.get("attempt_count") or 1
            payment.failure_reason = f"Payment attempt {attempts} failed"
        logger.info(
            "Recorded %s payment for invoice %s",
            status.value,
            invoice_ref,
            extra={"account_id": str(account_id)},
        )
        return payment

    @staticmethod
    def list(
        db: Session,
        account_id: str | None,
        status: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[Payment], int]:
        query = db.query(Payment)
        if account_id:
            query = query.filter(Payment.account_id == coerce_uuid(account_id))
        if status:
            query = query.filter(
                Payment.status == validate_enum(status, PaymentStatus, "status")
            )
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": Payment.created_at, "paid_at": Payment.paid_at},
        )
        return list(apply_pagination(query, limit, offset).all()), total


payments = Payments()

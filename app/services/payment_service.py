import logging
from datetime import datetime, timezone
from decimal import Decimal
from sqlalchemy.orm import Session

from app.core.errors import BadRequestError, ForbiddenError, NotFoundError
from app.models.booking import Booking
from app.models.payment import PaymentReceipt, PaymentTransaction
from app.models.service_provider import ServiceProvider
from app.models.user import User
from app.services.audit_service import log_audit
from app.services.notification_service import notify_business, notify_user
from app.services.refund_service import reconcile_gateway_refund

logger = logging.getLogger(__name__)


def receipt_out(r: PaymentReceipt) -> dict:
    return {
        "id": r.id,
        "bookingId": r.booking_id,
        "userId": r.user_id,
        "providerId": r.provider_id,
        "receiptPath": r.receipt_path,
        "referenceNumber": r.reference_number,
        "notes": r.notes,
        "status": r.status,
        "confirmedBy": r.confirmed_by,
        "confirmedAt": r.confirmed_at.isoformat() if r.confirmed_at else None,
        "rejectReason": r.reject_reason,
        "createdAt": r.created_at.isoformat() if r.created_at else None,
    }


def submit_offline_receipt(db: Session, customer: User, booking_id: int, receipt_path: str,
                           reference_number: str = "", notes: str | None = None) -> PaymentReceipt:
    b = db.get(Booking, booking_id)
    if not b:
        raise NotFoundError("Booking not found")
    if b.user_id != customer.id:
        raise ForbiddenError("You can only submit receipts for your own bookings")
    if b.payment_status in ("paid", "refunded"):
        raise BadRequestError(f"Booking is already {b.payment_status}")
    if not (receipt_path or "").strip() and not (reference_number or "").strip():
        raise BadRequestError("A receipt path or reference number is required")

    receipt = db.query(PaymentReceipt).filter(PaymentReceipt.booking_id == b.id).first()
    if not receipt:
        receipt = PaymentReceipt(booking_id=b.id, user_id=customer.id, provider_id=b.provider_id)
        db.add(receipt)
    receipt.receipt_path = (receipt_path or "").strip()
    receipt.reference_number = (reference_number or "").strip()
    receipt.notes = notes
    receipt.status = "awaiting"
    receipt.reject_reason = None
    receipt.confirmed_by = None
    receipt.confirmed_at = None
    b.payment_status = "awaiting_payment_confirmation"
    db.commit()
    db.refresh(receipt)

    notify_business(db, b.provider_id, "Payment Receipt Submitted",
                    f"A payment receipt was submitted for booking #{b.id}. Please review it.",
                    type="payment", link="/cremation/bookings")
    return receipt


def review_offline_receipt(db: Session, actor: User, booking_id: int, action: str, reason: str | None = None) -> PaymentReceipt:
    """Business confirms or rejects the fur parent's payment proof."""
    if action not in ("confirm", "reject"):
        raise BadRequestError("Action must be 'confirm' or 'reject'")
    b = db.get(Booking, booking_id)
    if not b:
        raise NotFoundError("Booking not found")
    if actor.account_type != "admin":
        provider = db.get(ServiceProvider, b.provider_id)
        if not provider or provider.user_id != actor.id:
            raise ForbiddenError("You do not have permission to review payments for this booking")
    receipt = db.query(PaymentReceipt).filter(PaymentReceipt.booking_id == b.id).first()
    if not receipt:
        raise NotFoundError("No payment receipt found for this booking")

    if action == "confirm":
        receipt.status = "confirmed"
        receipt.confirmed_by = actor.id
        receipt.confirmed_at = datetime.now(timezone.utc)
        receipt.reject_reason = None
        b.payment_status = "paid"
        if b.status == "pending":
            b.status = "confirmed"
    else:
        receipt.status = "rejected"
        receipt.reject_reason = reason or "Receipt could not be verified"
        b.payment_status = "awaiting_payment_confirmation"
    log_audit(db, actor.id, f"receipt.{action}ed", "payment_receipt", receipt.id,
              {"bookingId": b.id, "reason": reason})
    db.commit()
    db.refresh(receipt)

    if action == "confirm":
        notify_user(db, b.user_id, "Payment Confirmed",
                    f"Your payment for booking #{b.id} has been confirmed.", type="success",
                    link="/user/furparent/bookings")
    else:
        notify_user(db, b.user_id, "Payment Receipt Rejected",
                    f"Your payment receipt for booking #{b.id} was rejected: {receipt.reject_reason}",
                    type="error", link="/user/furparent/bookings")
    return receipt


def _find_transaction(db: Session, payment_id: str, booking_id: int | None) -> PaymentTransaction | None:
    if not payment_id:
        return None
    tx = db.query(PaymentTransaction).filter(
        (PaymentTransaction.payment_intent_id == payment_id)
        | (PaymentTransaction.source_id == payment_id)
        | (PaymentTransaction.provider_transaction_id == payment_id)
    ).order_by(PaymentTransaction.id.desc()).first()
    if tx or not booking_id:
        return tx
    return db.query(PaymentTransaction).filter(PaymentTransaction.booking_id == booking_id) \
        .order_by(PaymentTransaction.id.desc()).first()


def _metadata_booking_id(attributes: dict) -> int | None:
    raw = (attributes.get("metadata") or {}).get("booking_id")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def handle_payment_paid(db: Session, payment: dict) -> Booking | None:
    payment_id = payment.get("id")
    if not payment_id:
        logger.warning("payment.paid webhook without a payment id; ignored")
        return None
    attrs = payment.get("attributes") or {}
    booking_id = _metadata_booking_id(attrs)
    tx = _find_transaction(db, payment_id, booking_id)
    if tx is None and booking_id is None:
        logger.info("payment.paid %s does not match any booking", payment_id)
        return None
    b = db.get(Booking, tx.booking_id if tx else booking_id)
    if not b:
        return None
    if tx is None:
        tx = PaymentTransaction(booking_id=b.id, provider="paymongo", payment_method=b.payment_method,
                                amount=Decimal(attrs.get("amount", 0)) / 100 if attrs.get("amount") else b.total_price,
                                currency=attrs.get("currency", "PHP"))
        db.add(tx)
    tx.status = "succeeded"
    tx.provider_transaction_id = payment_id
    tx.payment_intent_id = tx.payment_intent_id or attrs.get("payment_intent_id")

    # idempotent
    if b.payment_status == "paid" and b.status == "confirmed":
        db.commit()
        return b
    if b.payment_status != "refunded":
        b.payment_status = "paid"
        if b.status == "pending":
            b.status = "confirmed"
    log_audit(db, None, "payment.paid_webhook", "booking", b.id, {"paymentId": payment_id})
    db.commit()
    notify_user(db, b.user_id, "Payment Confirmed", f"Your payment for booking #{b.id} has been received.",
                type="success", link="/user/furparent/bookings")
    return b


def handle_payment_failed(db: Session, payment: dict) -> Booking | None:
    payment_id = payment.get("id")
    if not payment_id:
        logger.warning("payment.failed webhook without a payment id; ignored")
        return None
    attrs = payment.get("attributes") or {}
    tx = _find_transaction(db, payment_id, _metadata_booking_id(attrs))
    if not tx:
        return None
    tx.status = "failed"
    b = db.get(Booking, tx.booking_id)
    if b and b.payment_status == "not_paid":
        b.payment_status = "failed"
    db.commit()
    if b:
        reason = (attrs.get("last_payment_error") or {}).get("message") or "Payment failed"
        notify_user(db, b.user_id, "Payment Failed", f"Payment for booking #{b.id} failed: {reason}",
                    type="error", link="/user/furparent/bookings")
    return b


def handle_webhook_event(db: Session, event: dict) -> str:
    """Dispatch a PayMongo event envelope; returns the event type handled."""
    data = event.get("data") or {}
    attributes = data.get("attributes") or {}
    event_type = attributes.get("type")
    resource = attributes.get("data") or {}
    if not event_type or not isinstance(resource, dict):
        raise BadRequestError("Invalid webhook structure")

    logger.info("PayMongo webhook %s (%s)", event_type, resource.get("id"))
    if event_type == "payment.paid":
        handle_payment_paid(db, resource)
    elif event_type == "payment.failed":
        handle_payment_failed(db, resource)
    elif event_type in ("refund.succeeded", "refund.updated", "refund.failed"):
        rattrs = resource.get("attributes") or {}
        status = rattrs.get("status") or ("failed" if event_type == "refund.failed" else "succeeded")
        reconcile_gateway_refund(db, resource.get("id"), status,
                                 rattrs.get("failure_reason") or f"payment_id={rattrs.get('payment_id')} amount={rattrs.get('amount')}")
    return event_type

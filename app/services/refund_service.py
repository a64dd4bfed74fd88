"""
Refund lifecycle.

    pending    -> processing | completed | processed | failed | cancelled | pending (reset)
    processing -> completed | processed | failed
    failed     -> pending (reset) | processing (retry)

completed / processed / cancelled are terminal. Every status change goes through
_transition(), which writes a refund_audit_logs row. A refund reaching
completed/processed flips its booking to payment_status='refunded' in the same
commit. Gateway calls happen outside the row lock: the refund is committed as
'processing' first, which is what keeps a second approve/retry out.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.errors import BadRequestError, ForbiddenError, InvalidStateError, NotFoundError
from app.models.booking import Booking
from app.models.payment import PaymentReceipt, PaymentTransaction
from app.models.refund import Refund, RefundAuditLog
from app.models.service_provider import ServiceProvider
from app.models.user import User
from app.services.audit_service import log_refund_audit
from app.services.email_service import queue_email
from app.services.notification_service import notify_admins, notify_business, notify_user
from app.services.paymongo_client import PayMongoError, get_paymongo_client
from app.services import refund_notices

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("pending", "processing")
COMPLETED_STATUSES = ("completed", "processed")
TERMINAL_STATUSES = ("completed", "processed", "cancelled")
ALL_STATUSES = ("pending", "processing", "completed", "processed", "failed", "cancelled")

TRANSITIONS = {
    "pending": {"pending", "processing", "completed", "processed", "failed", "cancelled"},
    "processing": {"completed", "processed", "failed"},
    "failed": {"pending", "processing"},
    "completed": set(),
    "processed": set(),
    "cancelled": set(),
}

AUTOMATIC_METHODS = ("gcash", "card", "paymaya")
# audit actions for a refund the gateway failed, as opposed to one a person rejected
GATEWAY_FAILURE_ACTIONS = ("refund_failed", "refund_retry_failed", "refund_failed_webhook")


# --- payment method helpers -------------------------------------------------

def normalize_payment_method(method: str | None) -> str:
    m = (method or "").strip().lower()
    if "gcash" in m:
        return "gcash"
    if "card" in m or "credit" in m or "debit" in m:
        return "card"
    if "paymaya" in m or "maya" in m:
        return "paymaya"
    if "cash" in m:
        return "cash"
    if "qr" in m or "scan" in m:
        return "qr_code"
    return "cash"


def is_qr_payment(method: str | None) -> bool:
    m = (method or "").lower()
    return "qr" in m or "scan" in m


def determine_refund_type(method: str | None) -> str:
    if is_qr_payment(method):
        return "manual"
    return "automatic" if normalize_payment_method(method) in AUTOMATIC_METHODS else "manual"


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, set())


# --- internals --------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _actor_type(actor: User | None) -> str:
    if actor is None:
        return "system"
    return {"admin": "admin", "business": "staff"}.get(actor.account_type, "customer")


def _actor_label(actor: User | None) -> str:
    if actor is None:
        return "system"
    return actor.full_name or actor.email


def _append_note(refund: Refund, note: str) -> None:
    line = f"[{_now().isoformat()}] {note}"
    refund.notes = f"{refund.notes}\n{line}" if refund.notes else line


def _parse_amount(raw) -> Decimal:
    try:
        amount = Decimal(str(raw)).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError, ValueError):
        raise BadRequestError("Invalid refund amount")
    if amount <= 0:
        raise BadRequestError("Refund amount must be greater than zero")
    return amount


def _lock_refund(db: Session, refund_id: int) -> Refund:
    refund = db.query(Refund).filter(Refund.id == refund_id).with_for_update().first()
    if not refund:
        raise NotFoundError("Refund not found")
    return refund


def _lock_booking(db: Session, booking_id: int) -> Booking:
    booking = db.query(Booking).filter(Booking.id == booking_id).with_for_update().first()
    if not booking:
        raise NotFoundError("Booking not found", code="BOOKING_NOT_FOUND")
    return booking


def _transition(db: Session, refund: Refund, new_status: str, action: str, actor: User | None = None,
                details=None, ip_address: str | None = None) -> None:
    previous = refund.status
    if not can_transition(previous, new_status):
        raise InvalidStateError(
            f"Cannot change refund from '{previous}' to '{new_status}'",
            details={"currentStatus": previous, "requestedStatus": new_status},
        )
    refund.status = new_status
    now = _now()
    refund.updated_at = now
    if new_status == "processing" and refund.processed_at is None:
        refund.processed_at = now
    if new_status in COMPLETED_STATUSES:
        refund.completed_at = now
        refund.processed_at = refund.processed_at or now
    log_refund_audit(
        db, refund.id, action, previous, new_status,
        performed_by=actor.id if actor else None,
        performed_by_type=_actor_type(actor),
        details=details,
        ip_address=ip_address,
    )


def _complete(db: Session, refund: Refund, booking: Booking | None, new_status: str, action: str,
              actor: User | None = None, details=None, ip_address: str | None = None) -> None:
    """Terminal success: refund and booking are written together; the caller commits once."""
    _transition(db, refund, new_status, action, actor, details, ip_address)
    if actor is not None:
        refund.processed_by = actor.id
    if booking is not None:
        booking.payment_status = "refunded"


def has_active_refund(db: Session, booking_id: int) -> Refund | None:
    return (
        db.query(Refund)
        .filter(Refund.booking_id == booking_id, Refund.status.notin_(("failed", "cancelled")))
        .order_by(Refund.id.desc())
        .first()
    )


def find_gateway_payment_id(db: Session, booking_id: int) -> str | None:
    tx = (
        db.query(PaymentTransaction)
        .filter(
            PaymentTransaction.booking_id == booking_id,
            PaymentTransaction.provider == "paymongo",
            PaymentTransaction.provider_transaction_id.isnot(None),
            PaymentTransaction.status.in_(("succeeded", "paid")),
        )
        .order_by(PaymentTransaction.id.desc())
        .first()
    )
    return tx.provider_transaction_id if tx else None


def ensure_provider_access(db: Session, actor: User, booking: Booking) -> None:
    """Admins pass; a business passes only for bookings of a provider it owns."""
    if actor.account_type == "admin":
        return
    if actor.account_type == "business":
        provider = db.get(ServiceProvider, booking.provider_id)
        if provider and provider.user_id == actor.id:
            return
    raise ForbiddenError("You do not have permission to manage refunds for this booking")


def provider_for_user(db: Session, user: User) -> ServiceProvider:
    provider = (
        db.query(ServiceProvider)
        .filter(ServiceProvider.user_id == user.id, ServiceProvider.provider_type == "cremation")
        .first()
    )
    if not provider:
        raise NotFoundError("Cremation provider not found for this account")
    return provider


def _gateway_refund(refund: Refund, payment_id: str) -> dict:
    client = get_paymongo_client()
    result = client.create_refund(
        payment_id=payment_id,
        amount=refund.amount,
        reason="requested_by_customer",
        notes=f"Refund #{refund.id} for booking #{refund.booking_id}",
    )
    status = ((result or {}).get("attributes") or {}).get("status")
    if status == "failed":
        raise PayMongoError("PayMongo rejected the refund")
    return result


def _record_late_gateway_refund(db: Session, refund: Refund, result: dict, actor: User | None = None,
                                ip_address: str | None = None) -> Refund:
    """The gateway paid out after someone else moved the refund off 'processing'.

    The status is left alone; the gateway id is kept so a later webhook can find the row.
    """
    refund.paymongo_refund_id = result.get("id")
    _append_note(refund, f"PayMongo refund {refund.paymongo_refund_id} succeeded after the refund was "
                         f"moved to '{refund.status}'; reconcile with the customer")
    log_refund_audit(db, refund.id, "gateway_refund_after_status_change", refund.status, refund.status,
                     performed_by=actor.id if actor else None, performed_by_type=_actor_type(actor),
                     details={"paymongoRefundId": refund.paymongo_refund_id}, ip_address=ip_address)
    db.commit()
    logger.error("PayMongo refund %s for refund %s landed while it was %s",
                 refund.paymongo_refund_id, refund.id, refund.status)
    notify_admins(db, "Refund Needs Review",
                  f"Refund #{refund.id} (booking #{refund.booking_id}) was paid out by PayMongo after it was "
                  f"marked {refund.status}.", type="warning", link="/admin/refunds")
    return refund


def _retryable_after_failure(db: Session, refund: Refund) -> bool:
    """True when the last status change into 'failed' came from the gateway, not a person."""
    last = (
        db.query(RefundAuditLog.action)
        .filter(RefundAuditLog.refund_id == refund.id, RefundAuditLog.new_status == "failed")
        .order_by(RefundAuditLog.id.desc())
        .first()
    )
    return last is not None and last[0] in GATEWAY_FAILURE_ACTIONS


# --- best-effort side effects -----------------------------------------------

def _email_customer(db: Session, refund: Refund, template, *args) -> None:
    customer = db.get(User, refund.user_id)
    if not customer or not customer.email:
        logger.warning("Refund %s: customer %s has no email", refund.id, refund.user_id)
        return
    try:
        subject, text, html = template(customer.first_name, refund.booking_id, refund.amount, *args)
        queue_email(db, customer.email, subject, text, html=html, related_booking_id=refund.booking_id)
    except Exception:
        db.rollback()
        logger.exception("Refund %s: customer email failed", refund.id)


def _announce_completed(db: Session, refund: Refund) -> None:
    _email_customer(db, refund, refund_notices.refund_processed_email, refund.payment_method)
    notify_user(db, refund.user_id, "Refund Processed",
                f"Your refund of {refund_notices.peso(refund.amount)} for booking #{refund.booking_id} has been processed.",
                type="success", link="/user/furparent/bookings")
    notify_admins(db, "Refund Completed",
                  f"Refund #{refund.id} for booking #{refund.booking_id} ({refund_notices.peso(refund.amount)}) was completed.",
                  type="info", link="/admin/refunds")


def _announce_failed(db: Session, refund: Refund, reason: str | None) -> None:
    _email_customer(db, refund, refund_notices.refund_failed_email, reason)
    notify_user(db, refund.user_id, "Refund Failed",
                f"Your refund request for {refund_notices.peso(refund.amount)} could not be processed. Please contact support.",
                type="error", link="/user/furparent/bookings")


# --- intake -----------------------------------------------------------------

def request_refund(db: Session, customer: User, booking_id, amount, reason: str | None,
                   ip_address: str | None = None) -> Refund:
    """Customer asks for a refund on a paid booking. Creates one pending manual refund."""
    if not booking_id or amount in (None, "") or not (reason or "").strip():
        raise BadRequestError("Booking ID, amount, and reason are required")
    amount = _parse_amount(amount)

    booking = _lock_booking(db, int(booking_id))
    if booking.user_id != customer.id:
        raise ForbiddenError("You can only request refunds for your own bookings")
    if booking.payment_status != "paid":
        raise BadRequestError("Only paid bookings can be refunded")
    if has_active_refund(db, booking.id):
        raise BadRequestError("A refund request already exists for this booking", code="REFUND_ALREADY_EXISTS")
    if booking.total_price is not None and amount > Decimal(str(booking.total_price)):
        raise BadRequestError("Refund amount cannot exceed the booking amount", code="INVALID_AMOUNT")

    refund = Refund(
        booking_id=booking.id,
        user_id=customer.id,
        amount=amount,
        reason=reason.strip(),
        status="pending",
        refund_type="manual",
        payment_method=booking.payment_method or "qr_code",
    )
    db.add(refund)
    db.flush()
    booking.refund_id = refund.id
    log_refund_audit(db, refund.id, "refund_requested", None, "pending",
                     performed_by=customer.id, performed_by_type="customer",
                     details={"amount": str(amount), "reason": refund.reason}, ip_address=ip_address)
    db.commit()
    db.refresh(refund)
    logger.info("Refund %s requested for booking %s (%s)", refund.id, booking.id, amount)

    notify_business(db, booking.provider_id, "Refund Request Received",
                    f"Booking #{booking.id} has a refund request for {refund_notices.peso(amount)}",
                    type="warning", link="/cremation/refunds")
    _email_customer(db, refund, refund_notices.refund_initiated_email)
    return refund


def initiate_refund(db: Session, actor: User, booking_id, amount, reason: str, notes: str | None = None,
                    ip_address: str | None = None) -> dict:
    """Staff-initiated refund. Gateway methods refund automatically; the rest get manual instructions."""
    if not booking_id or not (reason or "").strip():
        raise BadRequestError("Booking ID, amount, and reason are required")
    amount = _parse_amount(amount)
    booking = _lock_booking(db, int(booking_id))
    ensure_provider_access(db, actor, booking)
    if booking.payment_status != "paid":
        raise BadRequestError("Only paid bookings can be refunded")
    if has_active_refund(db, booking.id):
        raise BadRequestError("A refund has already been processed for this booking", code="REFUND_ALREADY_EXISTS")
    if amount > Decimal(str(booking.total_price or 0)):
        raise BadRequestError("Refund amount cannot exceed the booking amount", code="INVALID_AMOUNT")

    method = normalize_payment_method(booking.payment_method)
    refund_type = determine_refund_type(booking.payment_method)
    payment_id = find_gateway_payment_id(db, booking.id) if refund_type == "automatic" else None

    if refund_type == "automatic" and payment_id:
        refund = _create_refund(db, booking, actor, amount, reason, method, "automatic", notes, ip_address)
        refund.transaction_id = payment_id
        _transition(db, refund, "processing", "refund_processing", actor, {"paymentId": payment_id}, ip_address)
        db.commit()
        try:
            result = _gateway_refund(refund, payment_id)
        except PayMongoError as e:
            logger.warning("Automatic refund %s failed, falling back to manual: %s", refund.id, e)
            refund = _lock_refund(db, refund.id)
            _append_note(refund, f"Automatic refund failed: {e}")
            _transition(db, refund, "failed", "refund_failed", actor, str(e), ip_address)
            db.commit()
            manual = _create_refund(db, booking, actor, amount, reason, method, "manual",
                                    f"Automatic refund #{refund.id} failed: {e}", ip_address)
            db.commit()
            return _manual_result(db, manual, "Automatic refund failed. Manual refund initiated instead.")

        refund = _lock_refund(db, refund.id)
        booking = _lock_booking(db, refund.booking_id)
        if refund.status != "processing":
            _record_late_gateway_refund(db, refund, result, actor, ip_address)
            return {
                "refund": refund,
                "refundType": "automatic",
                "message": "PayMongo refunded the payment, but the refund was changed meanwhile and needs review.",
                "requiresManualProcessing": True,
                "instructions": [],
            }
        refund.paymongo_refund_id = result.get("id")
        _complete(db, refund, booking, "completed", "refund_completed", actor,
                  {"paymongoRefundId": refund.paymongo_refund_id}, ip_address)
        db.commit()
        logger.info("Automatic refund %s completed (%s)", refund.id, refund.paymongo_refund_id)
        _announce_completed(db, refund)
        return {
            "refund": refund,
            "refundType": "automatic",
            "message": "Refund processed automatically through PayMongo.",
            "requiresManualProcessing": False,
            "instructions": [],
        }

    note = notes
    if refund_type == "automatic":
        note = "No PayMongo payment found for this booking; processing manually." + (f" {notes}" if notes else "")
    refund = _create_refund(db, booking, actor, amount, reason, method, "manual", note, ip_address)
    db.commit()
    return _manual_result(db, refund, "Manual refund initiated. Please follow the instructions to complete the process.")


def _create_refund(db: Session, booking: Booking, actor: User, amount: Decimal, reason: str, method: str,
                   refund_type: str, notes: str | None, ip_address: str | None) -> Refund:
    refund = Refund(
        booking_id=booking.id,
        user_id=booking.user_id,
        amount=amount,
        reason=reason.strip(),
        status="pending",
        refund_type=refund_type,
        payment_method=method,
        processed_by=actor.id,
    )
    if notes:
        _append_note(refund, notes)
    db.add(refund)
    db.flush()
    booking.refund_id = refund.id
    log_refund_audit(db, refund.id, "refund_initiated", None, "pending",
                     performed_by=actor.id, performed_by_type=_actor_type(actor),
                     details={"amount": str(amount), "refundType": refund_type, "paymentMethod": method},
                     ip_address=ip_address)
    return refund


def _manual_result(db: Session, refund: Refund, message: str) -> dict:
    instructions = refund_notices.manual_refund_instructions(refund.payment_method, refund.amount)
    _email_customer(db, refund, refund_notices.refund_initiated_email)
    notify_user(db, refund.user_id, "Refund Initiated",
                f"Your refund request for {refund_notices.peso(refund.amount)} has been initiated and is being processed.",
                type="info", link="/user/furparent/bookings")
    return {
        "refund": refund,
        "refundType": "manual",
        "message": message,
        "requiresManualProcessing": True,
        "instructions": instructions,
    }


# --- decisions --------------------------------------------------------------

def approve_refund(db: Session, actor: User, refund_id: int, notes: str | None = None,
                   ip_address: str | None = None) -> Refund:
    refund = _lock_refund(db, refund_id)
    booking = _lock_booking(db, refund.booking_id)
    ensure_provider_access(db, actor, booking)
    if refund.status != "pending":
        raise InvalidStateError(f"Refund cannot be approved. Current status: {refund.status}")
    if booking.payment_status != "paid":
        raise BadRequestError("Only paid bookings can be refunded",
                              details={"paymentStatus": booking.payment_status})

    method = normalize_payment_method(refund.payment_method or booking.payment_method)
    if notes:
        _append_note(refund, f"Approved by {_actor_label(actor)}: {notes}")

    if is_qr_payment(refund.payment_method) or method == "qr_code":
        receipt = db.query(PaymentReceipt).filter(PaymentReceipt.booking_id == booking.id).first()
        if not receipt or receipt.status != "confirmed":
            raise BadRequestError("Payment receipt must be confirmed before approving this refund",
                                  details={"receiptStatus": receipt.status if receipt else None})
        _complete(db, refund, booking, "processed", "refund_approved", actor,
                  {"method": "qr_code", "receiptId": receipt.id}, ip_address)
        db.commit()
        logger.info("QR refund %s approved by user %s", refund.id, actor.id)
        _announce_completed(db, refund)
        return refund

    payment_id = refund.transaction_id or (find_gateway_payment_id(db, booking.id) if method == "gcash" else None)
    if method == "gcash" and payment_id:
        refund.transaction_id = payment_id
        refund.refund_type = "automatic"
        _transition(db, refund, "processing", "refund_approved", actor, {"paymentId": payment_id}, ip_address)
        db.commit()
        _email_customer(db, refund, refund_notices.refund_processing_email)
        try:
            result = _gateway_refund(refund, payment_id)
            gateway_error = None
        except PayMongoError as e:
            result, gateway_error = None, str(e)

        refund = _lock_refund(db, refund_id)
        booking = _lock_booking(db, refund.booking_id)
        if refund.status != "processing":
            # rejected or overridden while the gateway call was in flight
            if gateway_error is None:
                return _record_late_gateway_refund(db, refund, result, actor, ip_address)
            db.commit()
            return refund
        if gateway_error is None:
            refund.paymongo_refund_id = result.get("id")
            _complete(db, refund, booking, "completed", "refund_completed", actor,
                      {"paymongoRefundId": refund.paymongo_refund_id}, ip_address)
        else:
            logger.warning("PayMongo refund for %s failed, completing manually: %s", refund.id, gateway_error)
            refund.refund_type = "manual"
            _append_note(refund, f"PayMongo refund failed ({gateway_error}); completed manually")
            _complete(db, refund, booking, "processed", "refund_completed_manual", actor, gateway_error, ip_address)
        db.commit()
        _announce_completed(db, refund)
        return refund

    _complete(db, refund, booking, "processed", "refund_approved", actor, {"method": method}, ip_address)
    db.commit()
    logger.info("Manual refund %s approved by user %s", refund.id, actor.id)
    _announce_completed(db, refund)
    return refund


def reject_refund(db: Session, actor: User, refund_id: int, reason: str | None = None,
                  ip_address: str | None = None) -> Refund:
    refund = _lock_refund(db, refund_id)
    booking = db.get(Booking, refund.booking_id)
    if booking:
        ensure_provider_access(db, actor, booking)
    if refund.status not in ACTIVE_STATUSES:
        raise InvalidStateError(f"Refund cannot be rejected. Current status: {refund.status}")
    _append_note(refund, f"Rejected by {_actor_label(actor)}: {reason or 'No reason given'}")
    _transition(db, refund, "failed", "refund_rejected", actor, reason, ip_address)
    db.commit()
    logger.info("Refund %s rejected by user %s", refund.id, actor.id)
    _announce_failed(db, refund, reason)
    return refund


def cancel_refund(db: Session, actor: User, refund_id: int, reason: str | None = None,
                  ip_address: str | None = None) -> Refund:
    """Admin denial or customer withdrawal of a pending request."""
    refund = _lock_refund(db, refund_id)
    if actor.account_type == "fur_parent":
        if refund.user_id != actor.id:
            raise ForbiddenError("You can only cancel your own refund requests")
    elif actor.account_type != "admin":
        raise ForbiddenError("Only admins can deny refund requests")
    if refund.status != "pending":
        raise InvalidStateError(f"Only pending refunds can be cancelled. Current status: {refund.status}")

    action = "refund_withdrawn" if actor.account_type == "fur_parent" else "refund_denied"
    _append_note(refund, f"{'Withdrawn' if action == 'refund_withdrawn' else 'Denied'} by {_actor_label(actor)}: {reason or 'No reason given'}")
    _transition(db, refund, "cancelled", action, actor, reason, ip_address)
    db.commit()

    if action == "refund_denied":
        _email_customer(db, refund, refund_notices.refund_denied_email, reason)
        notify_user(db, refund.user_id, "Refund Request Denied",
                    f"Your refund request for booking #{refund.booking_id} was denied. Reason: {reason or 'Not specified'}",
                    type="error", link="/user/furparent/bookings")
    return refund


def reset_refund(db: Session, actor: User, refund_id: int, note: str | None = None,
                 ip_address: str | None = None) -> Refund:
    refund = _lock_refund(db, refund_id)
    booking = db.get(Booking, refund.booking_id)
    if booking:
        ensure_provider_access(db, actor, booking)
    if refund.status not in ("failed", "pending"):
        raise InvalidStateError(f"Only failed or pending refunds can be reset. Current status: {refund.status}")
    other = has_active_refund(db, refund.booking_id)
    if refund.status == "failed" and other is not None and other.id != refund.id:
        raise BadRequestError("Another refund is already active for this booking",
                              details={"activeRefundId": other.id}, code="REFUND_ALREADY_EXISTS")
    _append_note(refund, f"Reset to pending by {_actor_label(actor)}" + (f": {note}" if note else ""))
    _transition(db, refund, "pending", "refund_reset", actor, note, ip_address)
    if booking:
        booking.refund_id = refund.id
    db.commit()
    return refund


def retry_refund(db: Session, actor: User | None, refund_id: int, ip_address: str | None = None) -> Refund:
    """Re-run the PayMongo refund call for a failed/pending GCash refund. No backoff, no counter."""
    refund = db.query(Refund).filter(Refund.id == refund_id, Refund.status.in_(("failed", "pending"))) \
        .with_for_update().first()
    if not refund:
        raise NotFoundError("Refund not found or not in retryable status")
    booking = db.get(Booking, refund.booking_id)
    method = normalize_payment_method(refund.payment_method or (booking.payment_method if booking else None))
    if method != "gcash":
        raise BadRequestError("Only GCash payment refunds can be retried through PayMongo")
    payment_id = refund.transaction_id or find_gateway_payment_id(db, refund.booking_id)
    if not payment_id:
        raise BadRequestError("No PayMongo payment found for this booking")
    other = has_active_refund(db, refund.booking_id)
    if other is not None and other.id != refund.id:
        raise BadRequestError("Another refund is already active for this booking",
                              details={"activeRefundId": other.id}, code="REFUND_ALREADY_EXISTS")
    if booking is not None and booking.payment_status != "paid":
        raise BadRequestError("Only paid bookings can be refunded",
                              details={"paymentStatus": booking.payment_status})

    refund.transaction_id = payment_id
    refund.refund_type = "automatic"
    _transition(db, refund, "processing", "refund_retry", actor, {"paymentId": payment_id}, ip_address)
    db.commit()

    try:
        result = _gateway_refund(refund, payment_id)
        gateway_error = None
    except PayMongoError as e:
        result, gateway_error = None, str(e)

    refund = _lock_refund(db, refund_id)
    booking = _lock_booking(db, refund.booking_id)
    if refund.status != "processing":
        if gateway_error is None:
            return _record_late_gateway_refund(db, refund, result, actor, ip_address)
        db.commit()
        return refund
    if gateway_error is None:
        refund.paymongo_refund_id = result.get("id")
        _complete(db, refund, booking, "completed", "refund_completed", actor,
                  {"paymongoRefundId": refund.paymongo_refund_id}, ip_address)
        db.commit()
        logger.info("Retry of refund %s succeeded (%s)", refund.id, refund.paymongo_refund_id)
        _announce_completed(db, refund)
    else:
        _append_note(refund, f"Retry failed: {gateway_error}")
        _transition(db, refund, "failed", "refund_retry_failed", actor, gateway_error, ip_address)
        db.commit()
        logger.warning("Retry of refund %s failed: %s", refund.id, gateway_error)
        _announce_failed(db, refund, gateway_error)
    return refund


def list_retryable_refunds(db: Session) -> list[Refund]:
    """Failed GCash refunds whose failure came from the gateway. Rejected ones stay rejected."""
    rows = (
        db.query(Refund)
        .filter(Refund.status == "failed", Refund.payment_method == "gcash")
        .order_by(Refund.updated_at.asc())
        .all()
    )
    return [r for r in rows if _retryable_after_failure(db, r)]


def retry_failed_refunds(db: Session, actor: User | None = None, limit: int = 50) -> dict:
    attempted = succeeded = failed = 0
    errors = []
    for refund in list_retryable_refunds(db)[:limit]:
        attempted += 1
        try:
            result = retry_refund(db, actor, refund.id)
        except (BadRequestError, NotFoundError) as e:
            db.rollback()
            failed += 1
            errors.append({"refundId": refund.id, "error": e.message})
            continue
        if result.status in COMPLETED_STATUSES:
            succeeded += 1
        else:
            failed += 1
            errors.append({"refundId": result.id, "error": "gateway refund failed"})
    return {"attempted": attempted, "succeeded": succeeded, "failed": failed, "errors": errors}


# --- manual refund bookkeeping ------------------------------------------------

def verify_receipt(db: Session, actor: User, refund_id: int, approved: bool, reason: str | None = None,
                   ip_address: str | None = None) -> Refund:
    refund = _lock_refund(db, refund_id)
    booking = _lock_booking(db, refund.booking_id)
    ensure_provider_access(db, actor, booking)
    if refund.refund_type != "manual":
        raise BadRequestError("Receipt verification is only for manual refunds")
    if refund.status not in ACTIVE_STATUSES:
        raise InvalidStateError(f"Refund receipt cannot be verified. Current status: {refund.status}")

    refund.receipt_verified_by = actor.id
    if approved:
        refund.receipt_verified = True
        _complete(db, refund, booking, "completed", "receipt_verified", actor, {"receiptPath": refund.receipt_path}, ip_address)
        db.commit()
        _announce_completed(db, refund)
    else:
        refund.receipt_verified = False
        _append_note(refund, f"Receipt rejected: {reason or 'No reason given'}")
        _transition(db, refund, "failed", "receipt_rejected", actor, reason, ip_address)
        db.commit()
        _announce_failed(db, refund, reason)
    return refund


def upload_receipt(db: Session, actor: User, refund_id: int, receipt_path: str, ip_address: str | None = None) -> Refund:
    if not (receipt_path or "").strip():
        raise BadRequestError("Receipt path is required")
    refund = _lock_refund(db, refund_id)
    booking = db.get(Booking, refund.booking_id)
    if booking:
        ensure_provider_access(db, actor, booking)
    if refund.status in TERMINAL_STATUSES:
        raise InvalidStateError(f"Cannot attach a receipt to a {refund.status} refund")
    refund.receipt_path = receipt_path.strip()
    refund.receipt_verified = False
    refund.processed_at = _now()
    log_refund_audit(db, refund.id, "receipt_uploaded", refund.status, refund.status,
                     performed_by=actor.id, performed_by_type=_actor_type(actor),
                     details={"receiptPath": refund.receipt_path}, ip_address=ip_address)
    db.commit()
    notify_admins(db, "Refund Receipt Uploaded",
                  f"A receipt was uploaded for refund #{refund.id} (booking #{refund.booking_id}).",
                  type="info", link="/admin/refunds")
    return refund


def add_notes(db: Session, actor: User, refund_id: int, notes: str, ip_address: str | None = None) -> Refund:
    if not (notes or "").strip():
        raise BadRequestError("Notes are required")
    refund = _lock_refund(db, refund_id)
    booking = db.get(Booking, refund.booking_id)
    if booking:
        ensure_provider_access(db, actor, booking)
    _append_note(refund, notes.strip())
    log_refund_audit(db, refund.id, "notes_added", refund.status, refund.status,
                     performed_by=actor.id, performed_by_type=_actor_type(actor),
                     details=notes.strip(), ip_address=ip_address)
    db.commit()
    return refund


def update_status(db: Session, actor: User, refund_id: int, status: str, notes: str | None = None,
                  ip_address: str | None = None) -> Refund:
    if status not in ALL_STATUSES:
        raise BadRequestError(f"Unknown refund status: {status}")
    refund = _lock_refund(db, refund_id)
    booking = _lock_booking(db, refund.booking_id)
    if notes:
        _append_note(refund, notes)
    if status in COMPLETED_STATUSES:
        _complete(db, refund, booking, status, "status_updated", actor, notes, ip_address)
    else:
        _transition(db, refund, status, "status_updated", actor, notes, ip_address)
    db.commit()
    return refund


# --- gateway reconciliation -----------------------------------------------------

def reconcile_gateway_refund(db: Session, paymongo_refund_id: str, gateway_status: str, details: str | None = None) -> Refund | None:
    """Apply a PayMongo refund webhook. Missing or unknown ids and illegal transitions are ignored."""
    if not paymongo_refund_id:
        logger.warning("PayMongo refund webhook without a refund id; ignored")
        return None
    refund = (
        db.query(Refund)
        .filter(Refund.paymongo_refund_id == paymongo_refund_id)
        .with_for_update()
        .first()
    )
    if not refund:
        logger.info("Webhook for unknown PayMongo refund %s", paymongo_refund_id)
        return None
    booking = db.get(Booking, refund.booking_id)
    if gateway_status == "succeeded":
        if refund.status in COMPLETED_STATUSES:
            return refund
        if not can_transition(refund.status, "completed"):
            logger.warning("Refund %s is %s; ignoring succeeded webhook", refund.id, refund.status)
            return refund
        _complete(db, refund, booking, "completed", "refund_completed_webhook", None, details)
    elif gateway_status == "failed":
        if refund.status == "failed":
            return refund
        if refund.status in COMPLETED_STATUSES:
            # settled refunds stay settled; staff follow up from the note
            logger.error("PayMongo reported failure for settled refund %s: %s", refund.id, details)
            _append_note(refund, f"PayMongo reported failure after settlement: {details or 'Refund failed'}")
            log_refund_audit(db, refund.id, "refund_failed_webhook", refund.status, refund.status,
                             performed_by_type="system", details=details)
            db.commit()
            return refund
        if not can_transition(refund.status, "failed"):
            logger.warning("Refund %s is %s; ignoring failed webhook", refund.id, refund.status)
            return refund
        _append_note(refund, f"PayMongo reported failure: {details or 'Refund failed'}")
        _transition(db, refund, "failed", "refund_failed_webhook", None, details)
    else:
        return refund
    db.commit()
    return refund


# --- reads --------------------------------------------------------------------

def refund_out(refund: Refund) -> dict:
    return {
        "id": refund.id,
        "bookingId": refund.booking_id,
        "userId": refund.user_id,
        "amount": float(refund.amount),
        "reason": refund.reason,
        "status": refund.status,
        "refundType": refund.refund_type,
        "paymentMethod": refund.payment_method,
        "transactionId": refund.transaction_id,
        "paymongoRefundId": refund.paymongo_refund_id,
        "processedBy": refund.processed_by,
        "receiptPath": refund.receipt_path,
        "receiptVerified": bool(refund.receipt_verified),
        "notes": refund.notes,
        "initiatedAt": refund.initiated_at.isoformat() if refund.initiated_at else None,
        "processedAt": refund.processed_at.isoformat() if refund.processed_at else None,
        "completedAt": refund.completed_at.isoformat() if refund.completed_at else None,
        "createdAt": refund.created_at.isoformat() if refund.created_at else None,
        "updatedAt": refund.updated_at.isoformat() if refund.updated_at else None,
    }


def audit_trail(db: Session, refund_id: int) -> list[dict]:
    rows = db.query(RefundAuditLog).filter(RefundAuditLog.refund_id == refund_id) \
        .order_by(RefundAuditLog.id.asc()).all()
    return [{
        "id": r.id,
        "action": r.action,
        "previousStatus": r.previous_status,
        "newStatus": r.new_status,
        "performedBy": r.performed_by,
        "performedByType": r.performed_by_type,
        "details": r.details,
        "createdAt": r.created_at.isoformat() if r.created_at else None,
    } for r in rows]


def get_refund_for(db: Session, user: User, refund_id: int) -> dict:
    refund = db.get(Refund, refund_id)
    if not refund:
        raise NotFoundError("Refund not found")
    out = refund_out(refund)
    if user.account_type == "fur_parent":
        if refund.user_id != user.id:
            raise ForbiddenError("Access denied")
        return out
    booking = db.get(Booking, refund.booking_id)
    if booking:
        ensure_provider_access(db, user, booking)
    out["auditTrail"] = audit_trail(db, refund.id)
    return out


def query_refunds(db: Session, status: str | None = None, start_date: str | None = None, end_date: str | None = None,
                  provider_id: int | None = None, user_id: int | None = None, booking_id: int | None = None,
                  search: str | None = None):
    q = db.query(Refund, Booking).join(Booking, Booking.id == Refund.booking_id)
    if status and status != "all":
        q = q.filter(Refund.status == status)
    if start_date:
        q = q.filter(func.date(Refund.created_at) >= start_date)
    if end_date:
        q = q.filter(func.date(Refund.created_at) <= end_date)
    if provider_id:
        q = q.filter(Booking.provider_id == provider_id)
    if user_id:
        q = q.filter(Refund.user_id == user_id)
    if booking_id:
        q = q.filter(Refund.booking_id == booking_id)
    if search:
        like = f"%{search.lower()}%"
        q = q.join(User, User.id == Refund.user_id).filter(
            func.lower(Refund.reason).like(like)
            | func.lower(Booking.pet_name).like(like)
            | func.lower(User.email).like(like)
            | func.lower(User.first_name).like(like)
            | func.lower(User.last_name).like(like)
        )
    return q.order_by(Refund.created_at.desc(), Refund.id.desc())


def refund_stats(db: Session) -> dict:
    rows = db.query(Refund).all()
    by_status = {s: 0 for s in ALL_STATUSES}
    by_type = {"automatic": {"count": 0, "amount": 0.0}, "manual": {"count": 0, "amount": 0.0}}
    by_method: dict[str, dict] = {}
    total_amount = Decimal("0")
    refunded_amount = Decimal("0")
    for r in rows:
        amount = Decimal(str(r.amount or 0))
        total_amount += amount
        by_status[r.status] = by_status.get(r.status, 0) + 1
        bucket = by_type.setdefault(r.refund_type or "manual", {"count": 0, "amount": 0.0})
        bucket["count"] += 1
        bucket["amount"] += float(amount)
        m = by_method.setdefault(r.payment_method or "unknown", {"count": 0, "amount": 0.0})
        m["count"] += 1
        m["amount"] += float(amount)
        if r.status in COMPLETED_STATUSES:
            refunded_amount += amount

    top = (
        db.query(ServiceProvider.id, ServiceProvider.name, func.count(Refund.id), func.coalesce(func.sum(Refund.amount), 0))
        .join(Booking, Booking.provider_id == ServiceProvider.id)
        .join(Refund, Refund.booking_id == Booking.id)
        .group_by(ServiceProvider.id, ServiceProvider.name)
        .order_by(func.count(Refund.id).desc())
        .limit(10)
        .all()
    )
    return {
        "totalRefunds": len(rows),
        "totalAmount": float(total_amount),
        "refundedAmount": float(refunded_amount),
        "byStatus": by_status,
        "byType": by_type,
        "byPaymentMethod": by_method,
        "topProviders": [
            {"providerId": pid, "name": name, "count": int(count), "amount": float(amount)}
            for pid, name, count, amount in top
        ],
    }


import logging
from sqlalchemy.orm import Session
from app.core.errors import BadRequestError, ForbiddenError, NotFoundError
from app.models.user import User
from app.models.booking import Booking
from app.models.service_provider import ServiceProvider, ServicePackage
from app.services.audit_service import log_audit
from app.services.notification_service import notify_business
from app.services import refund_service

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("gcash", "card", "paymaya", "cash", "qr_code")


def booking_out(b: Booking) -> dict:
    return {
        "id": b.id,
        "userId": b.user_id,
        "providerId": b.provider_id,
        "packageId": b.package_id,
        "petName": b.pet_name,
        "bookingDate": b.booking_date,
        "bookingTime": b.booking_time,
        "specialRequests": b.special_requests,
        "totalPrice": float(b.total_price or 0),
        "paymentMethod": b.payment_method,
        "paymentStatus": b.payment_status,
        "status": b.status,
        "refundId": b.refund_id,
        "cancellationReason": b.cancellation_reason,
        "createdAt": b.created_at.isoformat() if b.created_at else None,
    }


def create_booking(db: Session, customer: User, package_id: int, pet_name: str, booking_date: str,
                   booking_time: str, payment_method: str, special_requests: str = "") -> Booking:
    pkg = db.get(ServicePackage, package_id)
    if not pkg or not pkg.is_active:
        raise NotFoundError("Package not found")
    method = refund_service.normalize_payment_method(payment_method)
    if method not in PAYMENT_METHODS:
        raise BadRequestError("Unsupported payment method")

    booking = Booking(
        user_id=customer.id,
        provider_id=pkg.provider_id,
        package_id=pkg.id,
        pet_name=pet_name,
        booking_date=booking_date,
        booking_time=booking_time,
        special_requests=special_requests or "",
        total_price=pkg.price,
        payment_method=method,
        payment_status="not_paid",
        status="pending",
    )
    db.add(booking)
    db.commit()
    db.refresh(booking)
    logger.info("Booking %s created by user %s for package %s", booking.id, customer.id, pkg.id)

    notify_business(db, booking.provider_id, "New Booking",
                    f"{customer.full_name or customer.email} booked {pkg.name} for {pet_name} on {booking_date}.",
                    type="booking", link="/cremation/bookings")
    return booking


def visible_bookings(db: Session, user: User, status: str | None = None):
    q = db.query(Booking)
    if user.account_type == "fur_parent":
        q = q.filter(Booking.user_id == user.id)
    elif user.account_type == "business":
        provider_ids = [p.id for p in db.query(ServiceProvider).filter(ServiceProvider.user_id == user.id).all()]
        q = q.filter(Booking.provider_id.in_(provider_ids or [-1]))
    if status:
        q = q.filter(Booking.status == status)
    return q.order_by(Booking.created_at.desc(), Booking.id.desc())


def get_booking_for(db: Session, user: User, booking_id: int) -> Booking:
    b = db.get(Booking, booking_id)
    if not b:
        raise NotFoundError("Booking not found")
    if user.account_type == "admin" or b.user_id == user.id:
        return b
    if user.account_type == "business":
        provider = db.get(ServiceProvider, b.provider_id)
        if provider and provider.user_id == user.id:
            return b
    raise ForbiddenError("Access denied")


def cancel_booking(db: Session, customer: User, booking_id: int, reason: str = "") -> dict:
    """Cancel an owned booking. A paid booking gets a pending full refund through the normal intake."""
    b = db.get(Booking, booking_id)
    if not b:
        raise NotFoundError("Booking not found")
    if b.user_id != customer.id:
        raise ForbiddenError("You can only cancel your own bookings")
    if b.status in ("cancelled", "completed"):
        raise BadRequestError(f"Booking is already {b.status}")

    b.status = "cancelled"
    b.cancellation_reason = reason or "Cancelled by customer"
    log_audit(db, customer.id, "booking.cancelled", "booking", b.id, {"reason": b.cancellation_reason})
    db.commit()

    refund = None
    if b.payment_status == "paid" and not refund_service.has_active_refund(db, b.id):
        refund = refund_service.request_refund(db, customer, b.id, b.total_price, b.cancellation_reason)

    notify_business(db, b.provider_id, "Booking Cancelled",
                    f"Booking #{b.id} for {b.pet_name} was cancelled by the customer.",
                    type="warning", link="/cremation/bookings")
    db.refresh(b)
    return {"booking": b, "refund": refund}

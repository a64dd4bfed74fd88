from decimal import Decimal

import pytest

from app.core.errors import BadRequestError, ForbiddenError, InvalidStateError, NotFoundError
from app.models.email_log import EmailLog
from app.models.notification import Notification
from app.models.payment import PaymentReceipt
from app.models.refund import RefundAuditLog
from app.services import refund_service
from app.services.paymongo_client import PayMongoError
from conftest import FakePayMongo


def _audit_actions(db, refund_id):
    rows = db.query(RefundAuditLog).filter(RefundAuditLog.refund_id == refund_id).order_by(RefundAuditLog.id).all()
    return [r.action for r in rows]


@pytest.mark.parametrize("current,new,allowed", [
    ("pending", "processing", True),
    ("pending", "cancelled", True),
    ("processing", "completed", True),
    ("processing", "pending", False),
    ("failed", "pending", True),
    ("failed", "completed", False),
    ("completed", "failed", False),
    ("processed", "pending", False),
    ("cancelled", "pending", False),
])
def test_transition_table(current, new, allowed):
    assert refund_service.can_transition(current, new) is allowed


@pytest.mark.parametrize("method,expected", [
    ("gcash", "automatic"),
    ("GCash", "automatic"),
    ("card", "automatic"),
    ("cash", "manual"),
    ("qr_code", "manual"),
    ("scan_to_pay", "manual"),
])
def test_refund_type_by_payment_method(method, expected):
    assert refund_service.determine_refund_type(method) == expected


def test_request_creates_pending_refund(db, fur_parent, make_booking):
    booking = make_booking()
    refund = refund_service.request_refund(db, fur_parent, booking.id, "1500", "Service no longer needed")

    db.refresh(booking)
    assert refund.status == "pending"
    assert refund.refund_type == "manual"
    assert refund.amount == Decimal("1500.00")
    assert booking.refund_id == refund.id
    assert booking.payment_status == "paid"
    assert _audit_actions(db, refund.id) == ["refund_requested"]
    assert db.query(EmailLog).filter(EmailLog.related_booking_id == booking.id).count() == 1


def test_request_requires_paid_booking(db, fur_parent, make_booking):
    booking = make_booking(payment_status="not_paid")
    with pytest.raises(BadRequestError, match="Only paid bookings"):
        refund_service.request_refund(db, fur_parent, booking.id, 100, "reason")


def test_request_rejects_second_active_refund(db, fur_parent, make_booking):
    booking = make_booking()
    refund_service.request_refund(db, fur_parent, booking.id, 500, "first")
    with pytest.raises(BadRequestError) as exc:
        refund_service.request_refund(db, fur_parent, booking.id, 500, "second")
    assert exc.value.code == "REFUND_ALREADY_EXISTS"


def test_request_allowed_again_after_rejection(db, fur_parent, business, provider, make_booking):
    booking = make_booking()
    first = refund_service.request_refund(db, fur_parent, booking.id, 500, "first")
    refund_service.reject_refund(db, business, first.id, "not eligible")
    second = refund_service.request_refund(db, fur_parent, booking.id, 500, "second")
    assert second.id != first.id
    assert second.status == "pending"


def test_request_validates_amount_and_owner(db, fur_parent, other_parent, make_booking):
    booking = make_booking(total="1000.00")
    with pytest.raises(BadRequestError) as exc:
        refund_service.request_refund(db, fur_parent, booking.id, "1000.01", "too much")
    assert exc.value.code == "INVALID_AMOUNT"
    with pytest.raises(BadRequestError):
        refund_service.request_refund(db, fur_parent, booking.id, "-5", "negative")
    with pytest.raises(BadRequestError, match="required"):
        refund_service.request_refund(db, fur_parent, booking.id, 100, "  ")
    with pytest.raises(ForbiddenError):
        refund_service.request_refund(db, other_parent, booking.id, 100, "not mine")


def test_approve_cash_refund_marks_booking_refunded(db, fur_parent, business, provider, admin, make_booking):
    booking = make_booking(payment_method="cash")
    refund = refund_service.request_refund(db, fur_parent, booking.id, 1500, "changed plans")

    refund = refund_service.approve_refund(db, business, refund.id, "cash handed over")
    db.refresh(booking)
    assert refund.status == "processed"
    assert refund.processed_by == business.id
    assert refund.completed_at is not None
    assert booking.payment_status == "refunded"
    assert "cash handed over" in refund.notes
    assert _audit_actions(db, refund.id) == ["refund_requested", "refund_approved"]


def test_approve_qr_refund_needs_confirmed_receipt(db, fur_parent, business, provider, make_booking):
    booking = make_booking(payment_method="qr_code")
    refund = refund_service.request_refund(db, fur_parent, booking.id, 1500, "duplicate payment")

    with pytest.raises(BadRequestError, match="receipt must be confirmed"):
        refund_service.approve_refund(db, business, refund.id)

    db.add(PaymentReceipt(booking_id=booking.id, user_id=fur_parent.id, provider_id=provider.id,
                          reference_number="QR-881", status="confirmed"))
    db.commit()

    refund = refund_service.approve_refund(db, business, refund.id)
    db.refresh(booking)
    assert refund.status == "processed"
    assert booking.payment_status == "refunded"


def test_approve_gcash_refund_goes_through_gateway(db, fur_parent, business, provider, make_booking,
                                                  gcash_payment, paymongo):
    booking = make_booking(payment_method="gcash")
    gcash_payment(booking, "pay_abc")
    refund = refund_service.request_refund(db, fur_parent, booking.id, 1500, "vet said no")

    refund = refund_service.approve_refund(db, business, refund.id)
    db.refresh(booking)
    assert paymongo.calls == [{"payment_id": "pay_abc", "amount": Decimal("1500.00")}]
    assert refund.status == "completed"
    assert refund.refund_type == "automatic"
    assert refund.paymongo_refund_id == "ref_fake_1"
    assert refund.transaction_id == "pay_abc"
    assert booking.payment_status == "refunded"
    assert _audit_actions(db, refund.id) == ["refund_requested", "refund_approved", "refund_completed"]


def test_approve_gcash_gateway_error_completes_manually(db, fur_parent, business, provider, make_booking,
                                                       gcash_payment, paymongo):
    paymongo.error = PayMongoError("PayMongo 400: payment already refunded")
    booking = make_booking(payment_method="gcash")
    gcash_payment(booking)
    refund = refund_service.request_refund(db, fur_parent, booking.id, 1500, "vet said no")

    refund = refund_service.approve_refund(db, business, refund.id)
    db.refresh(booking)
    assert refund.status == "processed"
    assert refund.refund_type == "manual"
    assert "payment already refunded" in refund.notes
    assert booking.payment_status == "refunded"


def test_approve_only_from_pending(db, fur_parent, business, provider, make_booking):
    booking = make_booking()
    refund = refund_service.request_refund(db, fur_parent, booking.id, 1500, "changed plans")
    refund_service.approve_refund(db, business, refund.id)
    with pytest.raises(InvalidStateError):
        refund_service.approve_refund(db, business, refund.id)


def test_other_business_cannot_approve(db, fur_parent, provider, make_booking):
    from app.models.user import User

    stranger = User(email="elsewhere@example.com", account_type="business", password_hash="x")
    db.add(stranger)
    db.commit()
    booking = make_booking()
    refund = refund_service.request_refund(db, fur_parent, booking.id, 1500, "changed plans")
    with pytest.raises(ForbiddenError):
        refund_service.approve_refund(db, stranger, refund.id)


def test_reject_leaves_booking_payment_status(db, fur_parent, business, provider, make_booking):
    booking = make_booking()
    refund = refund_service.request_refund(db, fur_parent, booking.id, 1500, "changed plans")

    refund = refund_service.reject_refund(db, business, refund.id, "service already rendered")
    db.refresh(booking)
    assert refund.status == "failed"
    assert booking.payment_status == "paid"
    assert "service already rendered" in refund.notes
    subjects = [e.subject for e in db.query(EmailLog).all()]
    assert "Refund Processing Failed - RainbowPaws" in subjects


def test_reset_failed_refund_keeps_amount_and_booking(db, fur_parent, business, provider, make_booking):
    booking = make_booking()
    refund = refund_service.request_refund(db, fur_parent, booking.id, "750.50", "partial")
    refund_service.reject_refund(db, business, refund.id, "try again later")

    refund = refund_service.reset_refund(db, business, refund.id, "customer called back")
    db.refresh(booking)
    assert refund.status == "pending"
    assert refund.amount == Decimal("750.50")
    assert refund.booking_id == booking.id
    assert booking.refund_id == refund.id
    assert _audit_actions(db, refund.id)[-1] == "refund_reset"


def test_reset_blocked_while_another_refund_is_active(db, fur_parent, business, provider, make_booking):
    booking = make_booking()
    first = refund_service.request_refund(db, fur_parent, booking.id, 500, "first")
    refund_service.reject_refund(db, business, first.id, "no")
    refund_service.request_refund(db, fur_parent, booking.id, 500, "second")

    with pytest.raises(BadRequestError) as exc:
        refund_service.reset_refund(db, business, first.id)
    assert exc.value.code == "REFUND_ALREADY_EXISTS"


def test_reset_not_allowed_from_terminal_state(db, fur_parent, business, provider, make_booking):
    booking = make_booking()
    refund = refund_service.request_refund(db, fur_parent, booking.id, 500, "first")
    refund_service.approve_refund(db, business, refund.id)
    with pytest.raises(InvalidStateError):
        refund_service.reset_refund(db, business, refund.id)


def test_retry_only_for_gcash(db, fur_parent, admin, business, provider, make_booking):
    booking = make_booking(payment_method="cash")
    refund = refund_service.request_refund(db, fur_parent, booking.id, 500, "first")
    with pytest.raises(BadRequestError, match="Only GCash"):
        refund_service.retry_refund(db, admin, refund.id)


def test_retry_only_from_failed_or_pending(db, fur_parent, admin, business, provider, make_booking,
                                           gcash_payment, paymongo):
    booking = make_booking(payment_method="gcash")
    gcash_payment(booking)
    refund = refund_service.request_refund(db, fur_parent, booking.id, 500, "first")
    refund_service.approve_refund(db, business, refund.id)
    assert refund.status == "completed"
    with pytest.raises(NotFoundError, match="not in retryable status"):
        refund_service.retry_refund(db, admin, refund.id)


def test_retry_failed_gcash_refund(db, fur_parent, admin, business, provider, make_booking,
                                   gcash_payment, paymongo):
    booking = make_booking(payment_method="gcash")
    gcash_payment(booking, "pay_retry")
    refund = refund_service.request_refund(db, fur_parent, booking.id, 1500, "sick pet recovered")
    refund_service.reject_refund(db, business, refund.id, "gateway timeout")

    refund = refund_service.retry_refund(db, admin, refund.id)
    db.refresh(booking)
    assert refund.status == "completed"
    assert refund.paymongo_refund_id == "ref_fake_1"
    assert booking.payment_status == "refunded"
    assert "refund_retry" in _audit_actions(db, refund.id)


def test_retry_gateway_error_returns_to_failed(db, fur_parent, admin, business, provider, make_booking,
                                               gcash_payment, paymongo):
    paymongo.error = PayMongoError("PayMongo unreachable: timeout")
    booking = make_booking(payment_method="gcash")
    gcash_payment(booking)
    refund = refund_service.request_refund(db, fur_parent, booking.id, 1500, "reason")

    refund = refund_service.retry_refund(db, admin, refund.id)
    db.refresh(booking)
    assert refund.status == "failed"
    assert "Retry failed" in refund.notes
    assert booking.payment_status == "paid"
    assert _audit_actions(db, refund.id)[-2:] == ["refund_retry", "refund_retry_failed"]


def test_retry_failed_refunds_batch(db, fur_parent, admin, business, provider, make_booking,
                                    gcash_payment, paymongo):
    paymongo.error = PayMongoError("PayMongo unreachable: timeout")
    for _ in range(2):
        booking = make_booking(payment_method="gcash")
        gcash_payment(booking, f"pay_{booking.id}")
        refund = refund_service.request_refund(db, fur_parent, booking.id, 100, "batch")
        refund_service.retry_refund(db, admin, refund.id)
        assert refund.status == "failed"

    paymongo.error = None
    result = refund_service.retry_failed_refunds(db, admin)
    assert result == {"attempted": 2, "succeeded": 2, "failed": 0, "errors": []}
    assert refund_service.list_retryable_refunds(db) == []


def test_batch_retry_leaves_rejected_refunds_alone(db, fur_parent, business, provider, make_booking,
                                                  gcash_payment, paymongo):
    booking = make_booking(payment_method="gcash")
    gcash_payment(booking)
    refund = refund_service.request_refund(db, fur_parent, booking.id, 1500, "changed plans")
    refund_service.reject_refund(db, business, refund.id, "not eligible per policy")

    assert refund_service.list_retryable_refunds(db) == []
    result = refund_service.retry_failed_refunds(db)
    db.refresh(booking)
    assert result["attempted"] == 0
    assert paymongo.calls == []
    assert refund.status == "failed"
    assert booking.payment_status == "paid"


def test_retry_blocked_while_another_refund_is_active(db, fur_parent, admin, business, provider, make_booking,
                                                     gcash_payment, paymongo):
    booking = make_booking(payment_method="gcash")
    gcash_payment(booking)
    first = refund_service.request_refund(db, fur_parent, booking.id, 1500, "first")
    refund_service.reject_refund(db, business, first.id, "not eligible")
    second = refund_service.request_refund(db, fur_parent, booking.id, 1500, "second")

    with pytest.raises(BadRequestError) as exc:
        refund_service.retry_refund(db, admin, first.id)
    assert exc.value.code == "REFUND_ALREADY_EXISTS"
    db.rollback()
    assert paymongo.calls == []

    second = refund_service.approve_refund(db, business, second.id)
    db.refresh(first)
    assert second.status == "completed"
    assert first.status == "failed"
    assert len(paymongo.calls) == 1


def test_approve_refuses_booking_that_is_no_longer_paid(db, fur_parent, business, provider, make_booking,
                                                        gcash_payment, paymongo):
    booking = make_booking(payment_method="gcash")
    gcash_payment(booking)
    refund = refund_service.request_refund(db, fur_parent, booking.id, 1500, "reason")
    booking.payment_status = "refunded"
    db.commit()

    with pytest.raises(BadRequestError, match="Only paid bookings"):
        refund_service.approve_refund(db, business, refund.id)
    db.rollback()
    db.refresh(refund)
    assert refund.status == "pending"
    assert paymongo.calls == []


def test_gateway_payout_after_mid_flight_rejection_is_recorded(db, monkeypatch, fur_parent, business, admin,
                                                              provider, make_booking, gcash_payment):
    booking = make_booking(payment_method="gcash")
    gcash_payment(booking)
    refund = refund_service.request_refund(db, fur_parent, booking.id, 1500, "reason")
    refund_id = refund.id

    class RejectedMeanwhile(FakePayMongo):
        def create_refund(self, **kwargs):
            refund_service.reject_refund(db, business, refund_id, "customer changed their mind")
            return super().create_refund(**kwargs)

    gateway = RejectedMeanwhile()
    monkeypatch.setattr(refund_service, "get_paymongo_client", lambda: gateway)

    refund = refund_service.approve_refund(db, business, refund_id)
    db.refresh(booking)
    assert len(gateway.calls) == 1
    assert refund.status == "failed"
    assert refund.paymongo_refund_id == "ref_fake_1"
    assert "ref_fake_1 succeeded after the refund was moved to 'failed'" in refund.notes
    assert booking.payment_status == "paid"
    assert _audit_actions(db, refund_id)[-2:] == ["refund_rejected", "gateway_refund_after_status_change"]
    assert db.query(Notification).filter(Notification.user_id == admin.id,
                                         Notification.title == "Refund Needs Review").count() == 1


def test_customer_can_withdraw_pending_refund(db, fur_parent, other_parent, make_booking):
    booking = make_booking()
    refund = refund_service.request_refund(db, fur_parent, booking.id, 100, "oops")
    with pytest.raises(ForbiddenError):
        refund_service.cancel_refund(db, other_parent, refund.id)

    refund = refund_service.cancel_refund(db, fur_parent, refund.id, "changed my mind")
    assert refund.status == "cancelled"
    assert _audit_actions(db, refund.id)[-1] == "refund_withdrawn"


def test_admin_denial_emails_customer(db, fur_parent, admin, business, make_booking):
    booking = make_booking()
    refund = refund_service.request_refund(db, fur_parent, booking.id, 100, "oops")
    with pytest.raises(ForbiddenError):
        refund_service.cancel_refund(db, business, refund.id)

    refund = refund_service.cancel_refund(db, admin, refund.id, "outside refund window")
    assert refund.status == "cancelled"
    denial = db.query(EmailLog).filter(EmailLog.subject == f"Refund Request Denied - Booking #{booking.id}").one()
    assert "outside refund window" in denial.body


def test_initiate_cash_refund_returns_instructions(db, business, provider, make_booking):
    booking = make_booking(payment_method="cash")
    result = refund_service.initiate_refund(db, business, booking.id, 1500, "service cancelled by center")
    assert result["refundType"] == "manual"
    assert result["requiresManualProcessing"] is True
    assert any("cash" in line.lower() for line in result["instructions"])
    assert result["refund"].status == "pending"


def test_initiate_gcash_refund_is_automatic(db, business, provider, make_booking, gcash_payment, paymongo):
    booking = make_booking(payment_method="gcash")
    gcash_payment(booking)
    result = refund_service.initiate_refund(db, business, booking.id, 1500, "service cancelled by center")
    db.refresh(booking)
    assert result["refundType"] == "automatic"
    assert result["refund"].status == "completed"
    assert booking.payment_status == "refunded"


def test_initiate_gcash_falls_back_to_manual(db, business, provider, make_booking, gcash_payment, paymongo):
    paymongo.error = PayMongoError("PayMongo 500: internal error")
    booking = make_booking(payment_method="gcash")
    gcash_payment(booking)
    result = refund_service.initiate_refund(db, business, booking.id, 1500, "service cancelled by center")
    db.refresh(booking)
    assert result["refundType"] == "manual"
    assert result["refund"].status == "pending"
    assert booking.refund_id == result["refund"].id
    assert booking.payment_status == "paid"


def test_verify_receipt_completes_manual_refund(db, fur_parent, business, provider, make_booking):
    booking = make_booking(payment_method="cash")
    refund = refund_service.request_refund(db, fur_parent, booking.id, 1500, "reason")
    refund_service.upload_receipt(db, business, refund.id, "/uploads/refunds/r1.jpg")

    refund = refund_service.verify_receipt(db, business, refund.id, approved=True)
    db.refresh(booking)
    assert refund.receipt_verified is True
    assert refund.status == "completed"
    assert booking.payment_status == "refunded"


def test_gateway_webhook_reconciliation(db, fur_parent, business, provider, make_booking, gcash_payment, paymongo):
    booking = make_booking(payment_method="gcash")
    gcash_payment(booking)
    refund = refund_service.request_refund(db, fur_parent, booking.id, 1500, "reason")
    refund.paymongo_refund_id = "ref_hook"
    refund.status = "processing"
    db.commit()

    refund = refund_service.reconcile_gateway_refund(db, "ref_hook", "succeeded", "ok")
    db.refresh(booking)
    assert refund.status == "completed"
    assert booking.payment_status == "refunded"

    # a late failure does not reopen a settled refund
    refund = refund_service.reconcile_gateway_refund(db, "ref_hook", "failed", "insufficient balance")
    assert refund.status == "completed"
    assert "insufficient balance" in refund.notes
    assert refund_service.reconcile_gateway_refund(db, "ref_unknown", "succeeded") is None


def test_refund_stats(db, fur_parent, business, provider, make_booking):
    b1 = make_booking()
    b2 = make_booking()
    r1 = refund_service.request_refund(db, fur_parent, b1.id, 1000, "one")
    refund_service.request_refund(db, fur_parent, b2.id, 500, "two")
    refund_service.approve_refund(db, business, r1.id)

    stats = refund_service.refund_stats(db)
    assert stats["totalRefunds"] == 2
    assert stats["totalAmount"] == 1500.0
    assert stats["refundedAmount"] == 1000.0
    assert stats["byStatus"]["processed"] == 1
    assert stats["byStatus"]["pending"] == 1
    assert stats["topProviders"][0]["providerId"] == provider.id


def test_notes_and_admin_status_override(db, fur_parent, admin, provider, make_booking):
    booking = make_booking()
    refund = refund_service.request_refund(db, fur_parent, booking.id, 300, "reason")

    refund = refund_service.add_notes(db, admin, refund.id, "Called the customer")
    assert refund.notes.endswith("Called the customer")
    assert refund.status == "pending"

    refund = refund_service.update_status(db, admin, refund.id, "processed", "Paid out at the front desk")
    db.refresh(booking)
    assert refund.status == "processed"
    assert booking.payment_status == "refunded"

    with pytest.raises(InvalidStateError):
        refund_service.update_status(db, admin, refund.id, "pending")
    with pytest.raises(BadRequestError, match="Unknown refund status"):
        refund_service.update_status(db, admin, refund.id, "lost")

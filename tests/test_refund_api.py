from app.models.booking import Booking
from app.models.refund import Refund
from app.services.paymongo_client import PayMongoError
from conftest import auth_headers


def test_refund_request_then_duplicate_rejected(client, db, fur_parent, provider, make_booking):
    booking = make_booking(booking_id=123, total="1500.00")
    body = {"bookingId": 123, "amount": 1500, "reason": "Pet passed before the appointment"}

    r = client.post("/api/bookings/refund-request", json=body, headers=auth_headers(fur_parent))
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["success"] is True
    assert data["refund"]["status"] == "pending"
    assert data["refund"]["bookingId"] == 123
    assert data["refund"]["amount"] == 1500.0

    r = client.post("/api/bookings/refund-request", json=body, headers=auth_headers(fur_parent))
    assert r.status_code == 400
    assert r.json()["error"] == "A refund request already exists for this booking"
    assert r.json()["code"] == "REFUND_ALREADY_EXISTS"
    assert db.query(Refund).filter(Refund.booking_id == booking.id).count() == 1


def test_refund_request_missing_fields(client, fur_parent):
    r = client.post("/api/bookings/refund-request", json={"bookingId": 1}, headers=auth_headers(fur_parent))
    assert r.status_code == 400
    assert r.json()["error"] == "Booking ID, amount, and reason are required"


def test_refund_request_requires_fur_parent(client, business, provider, make_booking):
    booking = make_booking()
    r = client.post("/api/bookings/refund-request",
                    json={"bookingId": booking.id, "amount": 10, "reason": "x"},
                    headers=auth_headers(business))
    assert r.status_code == 403


def test_refund_request_unauthenticated(client):
    r = client.post("/api/bookings/refund-request", json={})
    assert r.status_code == 401
    assert r.json() == {"error": "Not authenticated"}


def test_legacy_token_with_wrong_account_type_is_rejected(client, fur_parent):
    r = client.get("/api/admin/refunds", headers={"Authorization": f"Bearer {fur_parent.id}_admin"})
    assert r.status_code == 401


def test_legacy_cookie_token_is_accepted(client, fur_parent):
    r = client.get("/api/auth/me", headers={"Cookie": f"auth_token={fur_parent.id}_fur_parent"})
    assert r.status_code == 200
    assert r.json()["accountType"] == "fur_parent"


def test_provider_approves_through_cremation_route(client, db, fur_parent, business, provider, make_booking):
    booking = make_booking(payment_method="cash")
    r = client.post("/api/bookings/refund-request",
                    json={"bookingId": booking.id, "amount": "1500", "reason": "schedule conflict"},
                    headers=auth_headers(fur_parent))
    refund_id = r.json()["refund"]["id"]

    r = client.get("/api/cremation/refunds", headers=auth_headers(business))
    assert r.status_code == 200
    assert [x["id"] for x in r.json()["refunds"]] == [refund_id]

    r = client.post(f"/api/cremation/refunds/{refund_id}/approve", json={"notes": "paid back in person"},
                    headers=auth_headers(business))
    assert r.status_code == 200, r.text
    assert r.json()["refund"]["status"] == "processed"
    db.expire_all()
    assert db.get(Booking, booking.id).payment_status == "refunded"

    r = client.post(f"/api/cremation/refunds/{refund_id}/approve", json={}, headers=auth_headers(business))
    assert r.status_code == 400
    assert "Current status: processed" in r.json()["error"]


def test_put_action_dispatch(client, db, fur_parent, business, admin, provider, make_booking):
    booking = make_booking()
    r = client.post("/api/bookings/refund-request",
                    json={"bookingId": booking.id, "amount": 200, "reason": "partial"},
                    headers=auth_headers(fur_parent))
    refund_id = r.json()["refund"]["id"]

    r = client.put(f"/api/refunds/{refund_id}", json={"action": "reject_refund", "reason": "not eligible"},
                   headers=auth_headers(business))
    assert r.json()["refund"]["status"] == "failed"
    db.expire_all()
    assert db.get(Booking, booking.id).payment_status == "paid"

    r = client.put(f"/api/refunds/{refund_id}", json={"action": "retry_refund"}, headers=auth_headers(business))
    assert r.status_code == 403

    r = client.put(f"/api/refunds/{refund_id}", json={"action": "reset_refund", "notes": "second look"},
                   headers=auth_headers(business))
    assert r.json()["refund"]["status"] == "pending"
    assert r.json()["refund"]["amount"] == 200.0

    r = client.put(f"/api/refunds/{refund_id}", json={"action": "retry_refund"}, headers=auth_headers(admin))
    assert r.status_code == 400
    assert r.json()["error"] == "Only GCash payment refunds can be retried through PayMongo"

    r = client.put(f"/api/refunds/{refund_id}", json={"action": "add_notes", "notes": "Customer called back"},
                   headers=auth_headers(business))
    assert r.status_code == 200
    assert r.json()["refund"]["status"] == "pending"
    assert r.json()["refund"]["notes"].endswith("Customer called back")

    r = client.put(f"/api/refunds/{refund_id}", json={"action": "explode"}, headers=auth_headers(admin))
    assert r.status_code == 422
    assert r.json()["error"] == "Validation failed"


def test_get_refund_visibility(client, fur_parent, other_parent, business, provider, make_booking):
    booking = make_booking()
    r = client.post("/api/bookings/refund-request",
                    json={"bookingId": booking.id, "amount": 100, "reason": "why not"},
                    headers=auth_headers(fur_parent))
    refund_id = r.json()["refund"]["id"]

    assert client.get(f"/api/refunds/{refund_id}", headers=auth_headers(other_parent)).status_code == 403
    own = client.get(f"/api/refunds/{refund_id}", headers=auth_headers(fur_parent)).json()["refund"]
    assert "auditTrail" not in own
    staff = client.get(f"/api/refunds/{refund_id}", headers=auth_headers(business)).json()["refund"]
    assert [a["action"] for a in staff["auditTrail"]] == ["refund_requested"]
    assert client.get("/api/refunds/9999", headers=auth_headers(business)).status_code == 404


def test_customer_refund_listing_and_withdrawal(client, fur_parent, provider, make_booking):
    booking = make_booking()
    r = client.post("/api/bookings/refund-request",
                    json={"bookingId": booking.id, "amount": 100, "reason": "why not"},
                    headers=auth_headers(fur_parent))
    refund_id = r.json()["refund"]["id"]

    listing = client.get("/api/customer/refunds", headers=auth_headers(fur_parent)).json()["refunds"]
    assert listing[0]["petName"] == "Mochi"

    r = client.post(f"/api/customer/refunds/{refund_id}/cancel", headers=auth_headers(fur_parent))
    assert r.json()["refund"]["status"] == "cancelled"


def test_admin_listing_stats_and_deny(client, fur_parent, admin, provider, make_booking):
    b1 = make_booking()
    b2 = make_booking()
    for b in (b1, b2):
        client.post("/api/bookings/refund-request", json={"bookingId": b.id, "amount": 100, "reason": "batch"},
                    headers=auth_headers(fur_parent))

    r = client.get("/api/admin/refunds", params={"status": "pending", "search": "maria"},
                   headers=auth_headers(admin))
    assert r.status_code == 200
    data = r.json()
    assert data["total"] == 2
    assert data["refunds"][0]["providerName"] == "Rainbow Bridge Pet Cremation"

    refund_id = data["refunds"][0]["id"]
    r = client.post(f"/api/admin/refunds/{refund_id}/deny", json={"reason": "outside window"},
                    headers=auth_headers(admin))
    assert r.json()["refund"]["status"] == "cancelled"

    stats = client.get("/api/admin/refunds/stats", headers=auth_headers(admin)).json()
    assert stats["byStatus"]["cancelled"] == 1
    assert stats["byStatus"]["pending"] == 1


def test_admin_retry_failed_endpoint(client, db, fur_parent, business, admin, provider, make_booking,
                                     gcash_payment, paymongo):
    refund_ids = []
    for reason in ("gcash", "changed plans"):
        booking = make_booking(payment_method="gcash")
        gcash_payment(booking)
        r = client.post("/api/bookings/refund-request",
                        json={"bookingId": booking.id, "amount": 1500, "reason": reason},
                        headers=auth_headers(fur_parent))
        refund_ids.append(r.json()["refund"]["id"])
    gateway_failed, rejected = refund_ids

    paymongo.error = PayMongoError("PayMongo unreachable: timeout")
    r = client.put(f"/api/refunds/{gateway_failed}", json={"action": "retry_refund"}, headers=auth_headers(admin))
    assert r.json()["refund"]["status"] == "failed"
    client.post(f"/api/cremation/refunds/{rejected}/reject", json={"reason": "not eligible"},
                headers=auth_headers(business))
    paymongo.error = None

    pending = client.get("/api/admin/refunds/retry-failed", headers=auth_headers(admin)).json()
    assert pending["count"] == 1

    r = client.post("/api/admin/refunds/retry-failed", headers=auth_headers(admin))
    assert r.json()["attempted"] == 1
    assert r.json()["succeeded"] == 1
    db.expire_all()
    assert db.get(Refund, gateway_failed).status == "completed"
    assert db.get(Refund, rejected).status == "failed"


def test_staff_initiated_refund(client, business, provider, make_booking):
    booking = make_booking(payment_method="qr_code")
    r = client.post("/api/refunds", json={"bookingId": booking.id, "amount": 750, "reason": "center closed"},
                    headers=auth_headers(business))
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["refundType"] == "manual"
    assert data["requiresManualProcessing"] is True
    assert data["instructions"][0] == "INSTRUCTIONS FOR CREMATION CENTER:"

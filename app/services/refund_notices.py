"""Customer/provider-facing copy for refund emails and manual refund instructions."""
from decimal import Decimal
from html import escape

from app.core.config import settings


def peso(amount) -> str:
    return f"₱{Decimal(str(amount or 0)):,.2f}"


def _html(title: str, paragraphs: list[str]) -> str:
    body = "".join(f"<p>{escape(p)}</p>" for p in paragraphs)
    return (
        "<div style=\"font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;\">"
        f"<h2 style=\"color:#6b4e9b\">{escape(title)}</h2>{body}"
        "<p style=\"color:#888\">RainbowPaws - honoring every companion.</p></div>"
    )


def manual_refund_instructions(payment_method: str, amount) -> list[str]:
    method = (payment_method or "").lower()
    if "qr" in method or "scan" in method:
        return [
            "INSTRUCTIONS FOR CREMATION CENTER:",
            "Please process the refund manually via your PayMongo dashboard:",
            "1. Log into your cremation center's PayMongo account",
            "2. Navigate to the Payments section",
            "3. Find the original payment transaction",
            f"4. Process a refund of {peso(amount)}",
            "5. Download the official refund receipt from PayMongo",
            "6. Upload the receipt to the system using the \"Upload Receipt\" button",
            "7. The system will verify and complete the refund process",
            "",
            "NOTE: This is a QR code payment that requires manual processing by the cremation center.",
        ]
    if method == "cash":
        return [
            "INSTRUCTIONS FOR CREMATION CENTER:",
            "Please process the cash refund manually:",
            f"1. Prepare cash amount of {peso(amount)}",
            "2. Contact the customer to arrange refund collection",
            "3. Have customer sign a refund receipt",
            "4. Take a photo or scan the signed receipt",
            "5. Upload the receipt image to the system",
            "6. Mark the refund as completed in the system",
        ]
    return [
        "INSTRUCTIONS FOR CREMATION CENTER:",
        f"Refund {peso(amount)} to the customer through the original payment channel ({payment_method}).",
        "Upload proof of the refund, then mark the refund as completed.",
    ]


def refund_initiated_email(first_name: str, booking_id: int, amount) -> tuple[str, str, str]:
    subject = "Refund Request Initiated - RainbowPaws"
    lines = [
        f"Hi {first_name or 'there'},",
        f"Your refund request of {peso(amount)} for booking #{booking_id} has been received and is being processed.",
        "We will email you again once the refund is completed.",
    ]
    return subject, "\n\n".join(lines), _html("Refund Request Initiated", lines)


def refund_processing_email(first_name: str, booking_id: int, amount) -> tuple[str, str, str]:
    subject = "Your Refund Is Being Processed - RainbowPaws"
    lines = [
        f"Hi {first_name or 'there'},",
        f"Your refund of {peso(amount)} for booking #{booking_id} was approved and sent to the payment provider.",
        "GCash refunds usually arrive within 5-10 business days.",
    ]
    return subject, "\n\n".join(lines), _html("Refund Processing", lines)


def refund_processed_email(first_name: str, booking_id: int, amount, payment_method: str) -> tuple[str, str, str]:
    subject = "Your Refund Has Been Processed - RainbowPaws"
    lines = [
        f"Hi {first_name or 'there'},",
        f"Your refund of {peso(amount)} for booking #{booking_id} has been processed.",
        f"Refund method: {payment_method}.",
        f"You can review your bookings at {settings.CLIENT_BASE_URL}/user/furparent/bookings.",
    ]
    return subject, "\n\n".join(lines), _html("Refund Processed", lines)


def refund_failed_email(first_name: str, booking_id: int, amount, reason: str | None = None) -> tuple[str, str, str]:
    subject = "Refund Processing Failed - RainbowPaws"
    lines = [
        f"Hi {first_name or 'there'},",
        f"We could not complete your refund of {peso(amount)} for booking #{booking_id}.",
        f"Reason: {reason or 'Not specified'}",
        "Our team has been notified. Please contact support if you have questions.",
    ]
    return subject, "\n\n".join(lines), _html("Refund Processing Failed", lines)


def refund_denied_email(first_name: str, booking_id: int, amount, reason: str | None = None) -> tuple[str, str, str]:
    subject = f"Refund Request Denied - Booking #{booking_id}"
    lines = [
        f"Hi {first_name or 'there'},",
        f"Your refund request of {peso(amount)} for booking #{booking_id} has been denied.",
        f"Reason: {reason or 'Not specified'}",
    ]
    return subject, "\n\n".join(lines), _html("Refund Request Denied", lines)

from sqlalchemy import String, Integer, DateTime, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from decimal import Decimal
from app.db.session import Base

class PaymentTransaction(Base):
    """Gateway-side payment for a booking. Refunds look up the gateway payment id here."""
    __tablename__ = "payment_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(Integer, index=True)
    provider: Mapped[str] = mapped_column(String(40), default="paymongo")
    payment_method: Mapped[str] = mapped_column(String(20), default="gcash")
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3), default="PHP")
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, succeeded, failed, refunded
    source_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    provider_transaction_id: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)  # pay_...
    refund_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


class PaymentReceipt(Base):
    """Proof of an offline (QR / bank transfer) payment uploaded by the fur parent."""
    __tablename__ = "payment_receipts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    provider_id: Mapped[int] = mapped_column(Integer, index=True)
    receipt_path: Mapped[str] = mapped_column(String(512), default="")
    reference_number: Mapped[str] = mapped_column(String(120), default="")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="awaiting")  # awaiting, confirmed, rejected
    confirmed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reject_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

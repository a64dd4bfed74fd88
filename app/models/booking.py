from sqlalchemy import String, Integer, DateTime, Numeric
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from decimal import Decimal
from app.db.session import Base

class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)  # fur parent
    provider_id: Mapped[int] = mapped_column(Integer, index=True)
    package_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    pet_name: Mapped[str] = mapped_column(String(120), default="")
    booking_date: Mapped[str] = mapped_column(String(10), default="")  # YYYY-MM-DD
    booking_time: Mapped[str] = mapped_column(String(5), default="")   # HH:MM
    special_requests: Mapped[str] = mapped_column(String(1000), default="")

    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    payment_method: Mapped[str] = mapped_column(String(20), default="cash")  # gcash, card, paymaya, cash, qr_code
    payment_status: Mapped[str] = mapped_column(String(40), default="not_paid", index=True)  # not_paid, awaiting_payment_confirmation, paid, refunded, failed
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)  # pending, confirmed, completed, cancelled
    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    refund_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                                                 onupdate=lambda: datetime.now(timezone.utc))

from sqlalchemy import String, Integer, DateTime, Numeric, Text, Boolean
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from decimal import Decimal
from app.db.session import Base

class Refund(Base):
    __tablename__ = "refunds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(Integer, index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)  # fur parent receiving the money
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    reason: Mapped[str] = mapped_column(String(1000), default="")

    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)  # pending, processing, completed, processed, failed, cancelled
    refund_type: Mapped[str] = mapped_column(String(20), default="manual")  # automatic, manual
    payment_method: Mapped[str] = mapped_column(String(20), default="qr_code")

    transaction_id: Mapped[str | None] = mapped_column(String(120), nullable=True)  # gateway payment being refunded
    paymongo_refund_id: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)
    processed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)

    receipt_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    receipt_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    receipt_verified_by: Mapped[int | None] = mapped_column(Integer, nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    initiated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                                                 onupdate=lambda: datetime.now(timezone.utc))


class RefundAuditLog(Base):
    __tablename__ = "refund_audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    refund_id: Mapped[int] = mapped_column(Integer, index=True)
    action: Mapped[str] = mapped_column(String(50), index=True)  # refund_requested, refund_approved, refund_reset, ...
    previous_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    performed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    performed_by_type: Mapped[str] = mapped_column(String(20), default="system")  # system, admin, staff, customer
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

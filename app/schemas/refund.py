from pydantic import BaseModel
from typing import Literal, Optional, Union

class RefundInitiate(BaseModel):
    bookingId: Optional[int] = None
    amount: Optional[Union[float, str]] = None
    reason: Optional[str] = None
    notes: Optional[str] = None

class RefundAction(BaseModel):
    action: Literal[
        "approve_refund", "reject_refund", "reset_refund", "retry_refund",
        "verify_receipt", "update_status", "add_notes",
    ]
    notes: Optional[str] = None
    reason: Optional[str] = None
    approved: Optional[bool] = None
    status: Optional[str] = None

class RefundDecision(BaseModel):
    notes: Optional[str] = None
    reason: Optional[str] = None

class RefundReceiptIn(BaseModel):
    receiptPath: str

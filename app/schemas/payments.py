from pydantic import BaseModel
from typing import Literal, Optional

class OfflineReceiptIn(BaseModel):
    bookingId: int
    receiptPath: Optional[str] = ""
    referenceNumber: Optional[str] = ""
    notes: Optional[str] = None

class OfflineReviewIn(BaseModel):
    bookingId: int
    action: Literal["confirm", "reject"]
    reason: Optional[str] = None

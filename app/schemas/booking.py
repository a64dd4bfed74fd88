from pydantic import BaseModel, Field
from typing import Optional, Union

class BookingCreate(BaseModel):
    packageId: int
    petName: str = Field(min_length=1, max_length=120)
    bookingDate: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")
    bookingTime: str = Field(default="", pattern=r"^(\d{2}:\d{2})?$")
    paymentMethod: str = "gcash"
    specialRequests: Optional[str] = ""

class BookingCancel(BaseModel):
    reason: Optional[str] = ""

class RefundRequestIn(BaseModel):
    # left optional so missing fields come back as 400 with a readable message
    bookingId: Optional[int] = None
    amount: Optional[Union[float, str]] = None
    reason: Optional[str] = None

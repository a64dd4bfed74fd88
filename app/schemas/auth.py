from pydantic import BaseModel, Field
from typing import Literal, Optional

class LoginRequest(BaseModel):
    email: str
    password: str

class RegisterRequest(BaseModel):
    email: str
    password: str = Field(min_length=8)
    firstName: str
    lastName: str = ""
    phone: Optional[str] = ""
    accountType: Literal["fur_parent", "business"] = "fur_parent"
    businessName: Optional[str] = None  # required for business accounts

class TokenOut(BaseModel):
    token: str
    token_type: str = "bearer"
    user: dict

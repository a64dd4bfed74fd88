from pydantic import BaseModel, Field
from typing import Optional

class PackageCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = ""
    price: float = Field(gt=0)

class PackageUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, gt=0)
    isActive: Optional[bool] = None

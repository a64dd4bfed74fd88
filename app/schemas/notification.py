from pydantic import BaseModel, Field
from typing import List, Optional

class MarkReadIn(BaseModel):
    notificationIds: Optional[List[int]] = None
    markAll: bool = False

class BroadcastIn(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    message: str = Field(min_length=1)
    type: str = "info"

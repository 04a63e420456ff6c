from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class UnsubscribeTokenOut(BaseModel):
    user_id: str
    purpose: str
    expires_at: datetime


class UnsubscribeOut(BaseModel):
    user_id: str
    status: Literal["unsubscribed"] = "unsubscribed"

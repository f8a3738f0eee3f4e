# callrelay/transport/schemas.py
from pydantic import BaseModel, Field


class NotificationTestIn(BaseModel):
    call_sid: str = Field(min_length=1, max_length=64)
    status: str = Field(min_length=1, max_length=32)
    chat_id: str = Field(min_length=1, max_length=64)


class InputSummaryIn(BaseModel):
    chat_id: str = Field(min_length=1, max_length=64)


class DeliveryOut(BaseModel):
    success: bool

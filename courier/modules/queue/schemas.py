import uuid
from datetime import datetime
from pydantic import BaseModel, Field, model_validator

class MessageCreate(BaseModel):
    kind: str = Field(default="chat", pattern="^(chat|email)$")
    recipient: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)
    subject: str | None = Field(default=None, max_length=255)
    channel_hint: str | None = None
    scheduled_at: datetime | None = None

    @model_validator(mode="after")
    def _email_needs_subject(self):
        if self.kind == "email" and not self.subject:
            raise ValueError("subject is required for email messages")
        return self

class MessageOut(BaseModel):
    id: uuid.UUID
    kind: str
    recipient: str
    subject: str | None
    content: str
    channel_id: str | None
    status: str
    attempts: int
    scheduled_at: datetime
    last_attempt_at: datetime | None
    error: str | None
    sent_at: datetime | None
    failed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

class MessagePage(BaseModel):
    items: list[MessageOut]
    total: int
    limit: int
    offset: int

class CountOut(BaseModel):
    count: int

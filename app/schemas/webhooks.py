from pydantic import BaseModel
from typing import Optional, Dict


class WebhookResponse(BaseModel):
    received: bool = True
    event_id: Optional[int] = None
    message: str = "OK"


class TelegramWebhookResponse(BaseModel):
    ok: bool = True
    joined: int = 0
    left: int = 0
    unknown_removed: int = 0

    @classmethod
    def from_counters(cls, counters: Dict[str, int]) -> "TelegramWebhookResponse":
        return cls(**counters)

from datetime import datetime
from typing import Protocol, runtime_checkable

DELIVERY_TOPIC = "courier.delivery"
MESSAGE_SENT = "message.sent"
MESSAGE_FAILED = "message.failed"

@runtime_checkable
class EventBusPort(Protocol):
    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None: ...

def delivery_event(event_type: str, message, channel_id: str, occurred_at: datetime, **extra) -> dict:
    """Payload published on DELIVERY_TOPIC once a message is settled."""
    return {
        "event_type": event_type,
        "message_id": str(message.id),
        "channel_id": channel_id,
        "kind": message.kind,
        "recipient": message.recipient,
        "occurred_at": occurred_at.isoformat(),
        **extra,
    }

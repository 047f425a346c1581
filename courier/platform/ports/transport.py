from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable, TYPE_CHECKING

if TYPE_CHECKING:
    from courier.modules.queue.models import OutboundMessage

class ConnectivityState(str, Enum):
    CONNECTED = "connected"
    DEGRADED = "degraded"
    AWAITING_LOGIN = "awaiting_login"  # session exists, waiting for someone to pair it
    CONNECTING = "connecting"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    MAX_RETRIES_REACHED = "max_retries_reached"
    DISABLED = "disabled"

# states in which a channel may claim and send
SENDABLE_STATES = frozenset({ConnectivityState.CONNECTED, ConnectivityState.DEGRADED})

@dataclass
class SendResult:
    ok: bool
    error: str | None = None
    # provider says the channel itself is down; nothing was delivered
    channel_down: bool = False
    response: dict | None = None

@runtime_checkable
class TransportPort(Protocol):
    async def send(self, channel_id: str, message: "OutboundMessage") -> SendResult: ...
    async def check_health(self, channel_id: str) -> ConnectivityState: ...
    async def connect(self, channel_id: str) -> None: ...

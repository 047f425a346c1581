from dataclasses import dataclass
from datetime import date, datetime
from courier.platform.ports.transport import ConnectivityState, SENDABLE_STATES

# states that need no reconnection attempt
STABLE_STATES = SENDABLE_STATES | {ConnectivityState.AWAITING_LOGIN}

@dataclass
class ChannelState:
    id: str
    kind: str
    daily_quota: int
    connectivity: ConnectivityState = ConnectivityState.DISCONNECTED
    daily_count: int = 0
    quota_reset_at: date | None = None
    reconnect_attempts: int = 0
    last_health_check_at: datetime | None = None
    last_error: str | None = None

    @property
    def sendable(self) -> bool:
        return self.connectivity in SENDABLE_STATES

    @property
    def needs_intervention(self) -> bool:
        return self.connectivity in (ConnectivityState.MAX_RETRIES_REACHED, ConnectivityState.DISABLED)

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "connectivity": self.connectivity.value,
            "sendable": self.sendable,
            "daily_count": self.daily_count,
            "daily_quota": self.daily_quota,
            "quota_reset_at": self.quota_reset_at.isoformat() if self.quota_reset_at else None,
            "reconnect_attempts": self.reconnect_attempts,
            "last_health_check_at": self.last_health_check_at.isoformat() if self.last_health_check_at else None,
            "last_error": self.last_error,
        }

import asyncio
import logging
from courier.core.clock import Clock
from courier.core.errors import ConfigurationError
from courier.platform.ports.transport import TransportPort, ConnectivityState
from courier.modules.delivery.channels import ChannelState, STABLE_STATES

log = logging.getLogger("delivery.health")

class HealthMonitor:
    """Owns a channel's connectivity state and its reconnection budget.

    `check` runs at the start of every worker iteration. Reconnection is only
    attempted when the transport reports an unstable state and at least
    `interval` seconds passed since the previous check; after
    `max_reconnect_attempts` consecutive failures the channel is parked in
    `max_retries_reached` until `reset` is called or the transport comes back
    on its own.
    """

    def __init__(self, transport: TransportPort, clock: Clock, *, interval: float = 300.0,
                 max_reconnect_attempts: int = 3, timeout: float = 15.0):
        self.transport = transport
        self.clock = clock
        self.interval = interval
        self.max_reconnect_attempts = max_reconnect_attempts
        self.timeout = timeout

    async def _probe(self, channel: ChannelState) -> ConnectivityState:
        try:
            return await asyncio.wait_for(self.transport.check_health(channel.id), self.timeout)
        except ConfigurationError:
            raise
        except Exception as e:
            log.warning("[Health] Check failed for %s: %s", channel.id, e)
            channel.last_error = f"{type(e).__name__}: {e}"
            return ConnectivityState.ERROR

    async def check(self, channel: ChannelState) -> bool:
        """Refresh connectivity; returns True when the channel may send."""
        if channel.connectivity == ConnectivityState.DISABLED:
            return False
        now = self.clock.now()
        try:
            state = await self._probe(channel)
        except ConfigurationError as e:
            self.disable(channel, str(e))
            return False

        if state in STABLE_STATES:
            if channel.connectivity != state:
                log.info("[Health] Channel %s is %s", channel.id, state.value)
            channel.connectivity = state
            channel.reconnect_attempts = 0
            channel.last_health_check_at = now
            return channel.sendable

        if channel.connectivity == ConnectivityState.MAX_RETRIES_REACHED:
            # parked until someone resets it
            return False

        channel.connectivity = state
        last = channel.last_health_check_at
        if last is None or (now - last).total_seconds() > self.interval:
            channel.last_health_check_at = now
            await self.reconnect(channel)
        return channel.sendable

    async def reconnect(self, channel: ChannelState) -> bool:
        log.warning("[Health] Channel %s is %s. Attempting reconnection...", channel.id, channel.connectivity.value)
        try:
            await asyncio.wait_for(self.transport.connect(channel.id), self.timeout)
        except ConfigurationError as e:
            self.disable(channel, str(e))
            return False
        except Exception as e:
            self.record_connect_failure(channel, f"{type(e).__name__}: {e}")
            return False
        self.mark_connecting(channel)
        try:
            state = await self._probe(channel)
        except ConfigurationError as e:
            self.disable(channel, str(e))
            return False
        if state in STABLE_STATES:
            channel.connectivity = state
        return channel.sendable

    # ---- state mutators shared with the coordinator's bootstrap ----

    def record_connect_failure(self, channel: ChannelState, error: str) -> bool:
        """Count a failed connect; returns True once the channel is parked."""
        channel.reconnect_attempts += 1
        channel.last_error = error
        if channel.reconnect_attempts >= self.max_reconnect_attempts:
            channel.connectivity = ConnectivityState.MAX_RETRIES_REACHED
            log.error(
                "[Health] Max reconnection attempts (%d) reached for %s. Waiting for manual trigger.",
                self.max_reconnect_attempts, channel.id,
            )
            return True
        channel.connectivity = ConnectivityState.ERROR
        log.warning(
            "[Health] Reconnect %d/%d failed for %s: %s",
            channel.reconnect_attempts, self.max_reconnect_attempts, channel.id, error,
        )
        return False

    def mark_connecting(self, channel: ChannelState) -> None:
        channel.connectivity = ConnectivityState.CONNECTING
        channel.reconnect_attempts = 0
        channel.last_health_check_at = self.clock.now()

    def mark_down(self, channel: ChannelState, error: str | None = None) -> None:
        if channel.connectivity in STABLE_STATES or channel.connectivity == ConnectivityState.CONNECTING:
            channel.connectivity = ConnectivityState.DISCONNECTED
        if error:
            channel.last_error = error

    def disable(self, channel: ChannelState, error: str) -> None:
        channel.connectivity = ConnectivityState.DISABLED
        channel.last_error = error
        log.error("[Health] Channel %s disabled: %s", channel.id, error)

    def reset(self, channel: ChannelState) -> None:
        channel.reconnect_attempts = 0
        channel.last_health_check_at = None
        channel.last_error = None
        if channel.needs_intervention:
            channel.connectivity = ConnectivityState.DISCONNECTED
        log.info("[Health] Channel %s reset", channel.id)

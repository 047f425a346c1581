import asyncio
import logging
import random
from datetime import timedelta
from courier.core.clock import Clock, SystemClock
from courier.core.config import Settings, ChannelConfig, settings as default_settings
from courier.core.errors import ConfigurationError, UnknownChannelError
from courier.platform.ports.event_bus import EventBusPort
from courier.platform.ports.transport import TransportPort, ConnectivityState
from courier.modules.queue.service import QueueStore
from courier.modules.delivery.backoff import BackoffPolicy
from courier.modules.delivery.channels import ChannelState
from courier.modules.delivery.health import HealthMonitor
from courier.modules.delivery.quota import QuotaTracker
from courier.modules.delivery.worker import ChannelWorker

log = logging.getLogger("delivery.coordinator")

# more than this many rows stuck in processing marks the queue as suspicious
PROCESSING_WARNING_THRESHOLD = 10

class QueueCoordinator:
    """Runs one ChannelWorker per configured channel.

    Each channel task first bootstraps its transport (`connect`) with a capped
    linear backoff, then hands over to the worker loop. A channel that keeps
    failing to bootstrap is parked in `max_retries_reached` but its loop still
    runs so a manual fix is picked up; a channel with a configuration error is
    disabled and gets no loop at all.
    """

    def __init__(
        self,
        store: QueueStore,
        transports: dict[str, TransportPort],
        *,
        settings: Settings | None = None,
        channels: list[ChannelConfig] | None = None,
        bus: EventBusPort | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ):
        self.settings = settings or default_settings
        self.store = store
        self.bus = bus
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()
        self.backoff = BackoffPolicy(self.settings.BACKOFF_TABLE, self.settings.MAX_ATTEMPTS)
        self.quota = QuotaTracker(self.settings.QUOTA_TIMEZONE)
        self.channels: dict[str, ChannelState] = {}
        self.monitors: dict[str, HealthMonitor] = {}
        self.workers: dict[str, ChannelWorker] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._started = False

        for cfg in (channels if channels is not None else self.settings.CHANNELS):
            transport = transports.get(cfg.id)
            if transport is None:
                raise ConfigurationError(f"no transport configured for channel {cfg.id}")
            self._add_channel(cfg, transport)

    def _add_channel(self, cfg: ChannelConfig, transport: TransportPort) -> None:
        s = self.settings
        channel = ChannelState(id=cfg.id, kind=cfg.kind, daily_quota=s.daily_quota_for(cfg))
        monitor = HealthMonitor(
            transport,
            self.clock,
            interval=s.HEALTH_CHECK_INTERVAL,
            max_reconnect_attempts=s.MAX_RECONNECT_ATTEMPTS,
            timeout=s.HEALTH_TIMEOUT,
        )
        self.channels[cfg.id] = channel
        self.monitors[cfg.id] = monitor
        self.workers[cfg.id] = ChannelWorker(
            channel,
            store=self.store,
            transport=transport,
            health=monitor,
            quota=self.quota,
            backoff=self.backoff,
            clock=self.clock,
            bus=self.bus,
            rng=self.rng,
            jitter_min=s.JITTER_MIN,
            jitter_max=s.JITTER_MAX,
            send_timeout=s.SEND_TIMEOUT,
            kinds=[cfg.kind],
        )

    @property
    def running(self) -> bool:
        return self._started

    def _channel(self, channel_id: str) -> ChannelState:
        try:
            return self.channels[channel_id]
        except KeyError:
            raise UnknownChannelError(channel_id) from None

    async def start(self) -> None:
        if self._started:
            return
        if self.settings.RECLAIM_ON_STARTUP:
            await self.store.reclaim_stale(timedelta(seconds=self.settings.STALE_PROCESSING_AFTER), self.clock.now())
        self._started = True
        for worker in self.workers.values():
            worker.rearm()
        log.info("Delivery coordinator starting %d channel(s): %s", len(self.channels), ", ".join(self.channels))
        for channel_id in self.channels:
            self._spawn(channel_id)

    def _spawn(self, channel_id: str) -> None:
        self._tasks[channel_id] = asyncio.create_task(self._run_channel(channel_id), name=f"courier-worker-{channel_id}")

    async def _run_channel(self, channel_id: str) -> None:
        await self.bootstrap(channel_id)
        channel = self.channels[channel_id]
        worker = self.workers[channel_id]
        if channel.connectivity == ConnectivityState.DISABLED:
            await self.store.unpin_pending(channel_id, self.clock.now())
            return
        if worker.stopping:
            return
        await worker.run()

    async def bootstrap(self, channel_id: str) -> bool:
        """Connect the channel's transport, retrying with min(step * attempt, cap) delays."""
        channel = self._channel(channel_id)
        monitor = self.monitors[channel_id]
        worker = self.workers[channel_id]
        s = self.settings
        while not worker.stopping:
            log.info("[Coordinator] Initializing channel %s", channel_id)
            try:
                await asyncio.wait_for(monitor.transport.connect(channel_id), s.HEALTH_TIMEOUT)
            except ConfigurationError as e:
                monitor.disable(channel, str(e))
                return False
            except Exception as e:
                if monitor.record_connect_failure(channel, f"{type(e).__name__}: {e}"):
                    return False
                delay = min(s.BOOTSTRAP_RETRY_STEP * channel.reconnect_attempts, s.BOOTSTRAP_RETRY_CAP)
                log.info(
                    "[Coordinator] Retry %d/%d for %s in %ds",
                    channel.reconnect_attempts, monitor.max_reconnect_attempts, channel_id, int(delay),
                )
                await worker.pause(delay)
                continue
            monitor.mark_connecting(channel)
            self.quota.roll(channel, self.clock.now())
            return True
        return False

    def reset_channel(self, channel_id: str) -> dict:
        """Clear the manual-intervention flag; restarts the channel task if it has exited."""
        channel = self._channel(channel_id)
        self.monitors[channel_id].reset(channel)
        task = self._tasks.get(channel_id)
        if self._started and (task is None or task.done()):
            self._spawn(channel_id)
        return self.describe(channel_id)

    async def stop(self) -> None:
        if not self._started:
            return
        log.info("Delivery coordinator stopping")
        for worker in self.workers.values():
            worker.stop()
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            # in-flight sends are allowed to finish; only stragglers get cancelled
            _, pending = await asyncio.wait(tasks, timeout=self.settings.SHUTDOWN_TIMEOUT)
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        self._started = False
        log.info("Delivery coordinator stopped")

    def describe(self, channel_id: str) -> dict:
        channel = self._channel(channel_id)
        task = self._tasks.get(channel_id)
        worker = self.workers[channel_id]
        return {
            **channel.snapshot(),
            "running": task is not None and not task.done(),
            "iterations": worker.iterations,
            "last_outcome": worker.last_outcome.value if worker.last_outcome else None,
        }

    def snapshot(self) -> dict[str, dict]:
        return {cid: self.describe(cid) for cid in self.channels}

    def health_report(self, queue_stats: dict) -> dict:
        channels = self.snapshot()
        sendable = sum(1 for c in channels.values() if c["sendable"])
        if sendable == 0:
            overall = "critical"
        elif sendable < len(channels):
            overall = "degraded"
        elif queue_stats["by_status"].get("processing", 0) > PROCESSING_WARNING_THRESHOLD:
            overall = "warning"
        else:
            overall = "healthy"
        return {"overall": overall, "channels": channels, "queue": queue_stats["by_status"]}

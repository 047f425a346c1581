import asyncio
import logging
import random
from enum import Enum
from typing import Sequence
from courier.core.clock import Clock
from courier.core.errors import ChannelUnavailableError, ConfigurationError, DeliveryError, LeaseLostError
from courier.platform.ports.event_bus import EventBusPort, DELIVERY_TOPIC, MESSAGE_SENT, MESSAGE_FAILED, delivery_event
from courier.platform.ports.transport import TransportPort, SendResult
from courier.modules.queue.models import OutboundMessage
from courier.modules.queue.service import QueueStore
from courier.modules.delivery.backoff import BackoffPolicy
from courier.modules.delivery.channels import ChannelState
from courier.modules.delivery.health import HealthMonitor
from courier.modules.delivery.quota import QuotaTracker

log = logging.getLogger("delivery.worker")

class IterationOutcome(str, Enum):
    UNHEALTHY = "unhealthy"
    QUOTA_EXHAUSTED = "quota_exhausted"
    IDLE = "idle"
    SENT = "sent"
    RELEASED = "released"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    LEASE_LOST = "lease_lost"
    ERROR = "error"

class ChannelWorker:
    """Processing loop of a single channel.

    One iteration is: health check, quota check, claim one message, send it,
    record the outcome. Iterations never overlap; the next one starts after a
    random pause in [jitter_min, jitter_max] seconds so channels do not send
    in lockstep.
    """

    def __init__(
        self,
        channel: ChannelState,
        *,
        store: QueueStore,
        transport: TransportPort,
        health: HealthMonitor,
        quota: QuotaTracker,
        backoff: BackoffPolicy,
        clock: Clock,
        bus: EventBusPort | None = None,
        rng: random.Random | None = None,
        jitter_min: float = 25.0,
        jitter_max: float = 40.0,
        send_timeout: float = 60.0,
        kinds: Sequence[str] | None = None,
    ):
        self.channel = channel
        self.store = store
        self.transport = transport
        self.health = health
        self.quota = quota
        self.backoff = backoff
        self.clock = clock
        self.bus = bus
        self.rng = rng or random.Random()
        self.jitter_min = jitter_min
        self.jitter_max = jitter_max
        self.send_timeout = send_timeout
        self.kinds = list(kinds) if kinds else None
        self.iterations = 0
        self.last_outcome: IterationOutcome | None = None
        self._stopping = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def stop(self) -> None:
        self._stopping.set()

    def rearm(self) -> None:
        self._stopping.clear()

    def jitter_delay(self) -> float:
        return self.rng.uniform(self.jitter_min, self.jitter_max)

    async def pause(self, seconds: float) -> None:
        """Sleep on the injected clock, waking early if the worker is stopped."""
        sleeper = asyncio.ensure_future(self.clock.sleep(seconds))
        stopper = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            stopper.cancel()

    async def run(self) -> None:
        cid = self.channel.id
        log.info("[Worker-%s] Processing loop started", cid)
        while not self.stopping:
            try:
                outcome = await self.run_once()
            except Exception:
                log.exception("[Worker-%s] Error in loop", cid)
                outcome = IterationOutcome.ERROR
            self.iterations += 1
            self.last_outcome = outcome
            if self.stopping:
                break
            await self.pause(self.jitter_delay())
        log.info("[Worker-%s] Processing loop stopped after %d iterations", cid, self.iterations)

    async def run_once(self) -> IterationOutcome:
        channel = self.channel
        now = self.clock.now()
        self.quota.roll(channel, now)

        if not await self.health.check(channel):
            log.debug("[Worker-%s] Channel is %s, skipping queue", channel.id, channel.connectivity.value)
            if channel.needs_intervention:
                # nobody else may claim rows pinned here until the channel is reset
                await self.store.unpin_pending(channel.id, now)
            return IterationOutcome.UNHEALTHY

        if self.quota.exhausted(channel, now):
            log.debug("[Worker-%s] Daily limit %d reached", channel.id, channel.daily_quota)
            return IterationOutcome.QUOTA_EXHAUSTED

        message = await self.store.claim_next(channel.id, now, self.kinds)
        if message is None:
            return IterationOutcome.IDLE

        log.info("[Worker-%s] Processing message %s for %s...", channel.id, message.id, message.recipient)
        result = await self._send(message)
        try:
            return await self._settle(message, result)
        except LeaseLostError as e:
            log.warning("[Worker-%s] %s; outcome discarded", channel.id, e)
            return IterationOutcome.LEASE_LOST

    async def _send(self, message: OutboundMessage) -> SendResult:
        try:
            return await asyncio.wait_for(self.transport.send(self.channel.id, message), self.send_timeout)
        except (ChannelUnavailableError, ConfigurationError) as e:
            return SendResult(ok=False, error=f"{type(e).__name__}: {e}", channel_down=True)
        except DeliveryError as e:
            return SendResult(ok=False, error=str(e))
        except asyncio.TimeoutError:
            return SendResult(ok=False, error=f"send timed out after {self.send_timeout}s")
        except Exception as e:
            return SendResult(ok=False, error=f"{type(e).__name__}: {e}")

    async def _settle(self, message: OutboundMessage, result: SendResult) -> IterationOutcome:
        channel = self.channel
        now = self.clock.now()

        if result.ok:
            await self.store.record_success(message.id, channel.id, now, result.response)
            count = self.quota.record_send(channel, now)
            log.info("[Worker-%s] Sent! Daily count: %d", channel.id, count)
            await self._publish(MESSAGE_SENT, message, attempts=message.attempts)
            return IterationOutcome.SENT

        if result.channel_down:
            # lease release: hand the message back without spending a retry
            log.warning("[Worker-%s] Channel unavailable (%s). Releasing message %s", channel.id, result.error, message.id)
            await self.store.release(message.id, channel.id, now)
            self.health.mark_down(channel, result.error)
            return IterationOutcome.RELEASED

        error = result.error or "transport reported failure"
        decision = self.backoff.decide(message.attempts, now)
        await self.store.record_failure(
            message.id,
            channel.id,
            error=error,
            next_attempts=decision.attempts,
            next_scheduled_at=decision.scheduled_at,
            terminal=decision.terminal,
            now=now,
        )
        if decision.terminal:
            log.error(
                "[Worker-%s] Message %s PERMANENTLY FAILED after %d attempts: %s",
                channel.id, message.id, decision.attempts, error,
            )
            await self._publish(MESSAGE_FAILED, message, attempts=decision.attempts, error=error)
            return IterationOutcome.FAILED

        log.info(
            "[Worker-%s] Failed: %s. Retry %d/%d scheduled in %ds",
            channel.id, error, decision.attempts, self.backoff.max_attempts, int(decision.delay),
        )
        return IterationOutcome.RETRY_SCHEDULED

    async def _publish(self, event_type: str, message: OutboundMessage, **extra) -> None:
        if self.bus is None:
            return
        value = delivery_event(event_type, message, self.channel.id, self.clock.now(), **extra)
        try:
            await self.bus.publish(topic=DELIVERY_TOPIC, key=str(message.id), value=value)
        except Exception:
            # delivery state is already committed; the event is best effort
            log.exception("[Worker-%s] Publish %s failed", self.channel.id, event_type)

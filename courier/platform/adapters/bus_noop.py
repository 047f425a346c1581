import json
import logging
from courier.platform.ports.event_bus import EventBusPort

log = logging.getLogger("bus.noop")

class NoopEventBus(EventBusPort):
    """Logs delivery events instead of publishing them."""

    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None:
        log.info(
            f"[NOOP BUS] {value.get('event_type', '-')} message={key} "
            f"channel={value.get('channel_id')} attempts={value.get('attempts')}"
        )
        log.debug(f"[NOOP BUS] topic={topic} payload={json.dumps(value, default=str)} headers={headers or {}}")

import logging
from courier.platform.ports.transport import TransportPort, SendResult, ConnectivityState

log = logging.getLogger("transport.noop")

class NoopTransport(TransportPort):
    """Always connected; every send succeeds and is only logged."""

    async def send(self, channel_id: str, message) -> SendResult:
        log.info(f"[NOOP TRANSPORT] channel={channel_id} to={message.recipient} id={message.id}")
        return SendResult(ok=True, response={"transport": "noop"})

    async def check_health(self, channel_id: str) -> ConnectivityState:
        return ConnectivityState.CONNECTED

    async def connect(self, channel_id: str) -> None:
        log.debug(f"[NOOP TRANSPORT] connect channel={channel_id}")

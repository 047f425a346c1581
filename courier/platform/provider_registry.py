from courier.core.config import settings, ChannelConfig
from courier.platform.ports.event_bus import EventBusPort
from courier.platform.adapters.bus_noop import NoopEventBus
from courier.platform.adapters.bus_redis import RedisEventBus
from courier.platform.ports.transport import TransportPort
from courier.platform.adapters.transport_noop import NoopTransport
from courier.platform.adapters.transport_chat_gateway import ChatGatewayTransport
from courier.platform.adapters.transport_smtp import SmtpTransport

class ProviderRegistry:
    _event_bus: EventBusPort | None = None
    _transports: dict[str, TransportPort] = {}

    @classmethod
    def event_bus(cls) -> EventBusPort:
        if cls._event_bus is None:
            prov = (settings.EVENT_BUS_PROVIDER or "noop").lower()
            if prov == "redis":
                cls._event_bus = RedisEventBus()
            else:
                cls._event_bus = NoopEventBus()
        return cls._event_bus

    @classmethod
    def transport(cls, name: str) -> TransportPort:
        # one adapter per transport type; channels sharing a type share its client
        if name not in cls._transports:
            if name == "chat_gateway":
                cls._transports[name] = ChatGatewayTransport()
            elif name == "smtp":
                cls._transports[name] = SmtpTransport()
            else:
                cls._transports[name] = NoopTransport()
        return cls._transports[name]

    @classmethod
    def transports_for(cls, channels: list[ChannelConfig]) -> dict[str, TransportPort]:
        return {c.id: cls.transport(c.transport) for c in channels}

    @classmethod
    async def aclose(cls) -> None:
        for adapter in [*cls._transports.values(), cls._event_bus]:
            close = getattr(adapter, "close", None)
            if close is not None:
                await close()
        cls._transports = {}
        cls._event_bus = None

registry = ProviderRegistry()

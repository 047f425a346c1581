import logging
import httpx
from courier.core.config import settings
from courier.core.errors import ConfigurationError, ChannelUnavailableError
from courier.platform.ports.transport import TransportPort, SendResult, ConnectivityState

log = logging.getLogger("transport.chat_gateway")

# gateway session status -> connectivity
_STATUS_MAP = {
    "connected": ConnectivityState.CONNECTED,
    "inchat": ConnectivityState.CONNECTED,
    "islogged": ConnectivityState.CONNECTED,
    "qrcode": ConnectivityState.AWAITING_LOGIN,
    "qr_ready": ConnectivityState.AWAITING_LOGIN,
    "notlogged": ConnectivityState.AWAITING_LOGIN,
    "initializing": ConnectivityState.CONNECTING,
    "starting": ConnectivityState.CONNECTING,
    "closed": ConnectivityState.DISCONNECTED,
    "disconnected": ConnectivityState.DISCONNECTED,
    "browserclose": ConnectivityState.DISCONNECTED,
}

class ChatGatewayTransport(TransportPort):
    """Chat sessions hosted by an external gateway, one gateway session per channel.

    Endpoints (relative to CHAT_GATEWAY_URL):
      POST {session}/start-session
      GET  {session}/status-session   -> {"status": "..."}
      POST {session}/send-message     <- {"phone": ..., "message": ...}
    """

    def __init__(self, base_url: str | None = None, token: str | None = None, timeout: float | None = None,
                 client: httpx.AsyncClient | None = None):
        self.base_url = (base_url or settings.CHAT_GATEWAY_URL or "").rstrip("/")
        self.token = token if token is not None else settings.CHAT_GATEWAY_TOKEN
        self.timeout = timeout or settings.SEND_TIMEOUT
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if not self.base_url:
            raise ConfigurationError("CHAT_GATEWAY_URL not configured")
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self._client = httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=self.timeout)
        return self._client

    async def connect(self, channel_id: str) -> None:
        try:
            r = await self._http().post(f"/{channel_id}/start-session")
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise ChannelUnavailableError(f"start-session failed for {channel_id}: {e}") from e
        log.info(f"[CHAT GATEWAY] session {channel_id} start requested")

    async def check_health(self, channel_id: str) -> ConnectivityState:
        try:
            r = await self._http().get(f"/{channel_id}/status-session")
            r.raise_for_status()
        except httpx.HTTPError as e:
            log.warning(f"[CHAT GATEWAY] status check failed for {channel_id}: {e}")
            return ConnectivityState.ERROR
        status = str(r.json().get("status", "")).lower()
        return _STATUS_MAP.get(status, ConnectivityState.ERROR)

    async def send(self, channel_id: str, message) -> SendResult:
        client = self._http()
        try:
            r = await client.post(
                f"/{channel_id}/send-message",
                json={"phone": message.recipient, "message": message.content},
            )
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            # request never reached the gateway
            return SendResult(ok=False, error=f"{type(e).__name__}: {e}", channel_down=True)
        except httpx.HTTPError as e:
            return SendResult(ok=False, error=f"{type(e).__name__}: {e}")

        if r.status_code == 503:
            return SendResult(ok=False, error=f"gateway unavailable: {r.text[:200]}", channel_down=True)
        if r.is_error:
            return SendResult(ok=False, error=f"HTTP {r.status_code}: {r.text[:500]}")
        try:
            body = r.json()
        except ValueError:
            body = {"raw": r.text[:500]}
        return SendResult(ok=True, response=body if isinstance(body, dict) else {"data": body})

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

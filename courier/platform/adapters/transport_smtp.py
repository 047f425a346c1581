import asyncio
import logging
import smtplib
import socket
import time
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from courier.core.config import settings
from courier.core.errors import ConfigurationError, ChannelUnavailableError
from courier.platform.ports.transport import TransportPort, SendResult, ConnectivityState

log = logging.getLogger("transport.smtp")

# raised before the server accepted anything for delivery
_CONNECTIVITY_ERRORS = (
    smtplib.SMTPConnectError,
    smtplib.SMTPServerDisconnected,
    smtplib.SMTPAuthenticationError,
    socket.timeout,
    ConnectionError,
)

@dataclass
class SmtpConfig:
    host: str
    port: int
    user: str | None
    password: str | None
    from_email: str
    from_name: str
    use_tls: bool
    use_ssl: bool
    timeout: float = 30.0

    @classmethod
    def from_settings(cls) -> "SmtpConfig":
        return cls(
            host=settings.SMTP_HOST or "",
            port=settings.SMTP_PORT,
            user=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            from_email=settings.SMTP_FROM_EMAIL or settings.SMTP_USER or "",
            from_name=settings.SMTP_FROM_NAME,
            use_tls=settings.SMTP_TLS,
            use_ssl=settings.SMTP_SSL,
            timeout=settings.SEND_TIMEOUT,
        )

class SmtpTransport(TransportPort):
    """Email over SMTP. smtplib is blocking, so every call runs in a worker thread."""

    def __init__(self, config: SmtpConfig | None = None, probe_interval: float | None = None):
        self.config = config or SmtpConfig.from_settings()
        # opening an SMTP session per worker iteration is wasteful; reuse the last probe for a while
        self.probe_interval = settings.HEALTH_CHECK_INTERVAL if probe_interval is None else probe_interval
        self._last_probe: float | None = None
        self._last_state = ConnectivityState.DISCONNECTED

    def _validate(self) -> None:
        if not self.config.host or not self.config.port:
            raise ConfigurationError("SMTP not configured: check SMTP_HOST and SMTP_PORT")
        if not self.config.from_email:
            raise ConfigurationError("SMTP not configured: SMTP_FROM_EMAIL or SMTP_USER required")

    def _open(self) -> smtplib.SMTP:
        c = self.config
        if c.use_ssl:
            server = smtplib.SMTP_SSL(host=c.host, port=c.port, timeout=c.timeout)
        else:
            server = smtplib.SMTP(host=c.host, port=c.port, timeout=c.timeout)
        try:
            if c.use_tls and not c.use_ssl:
                server.starttls()
            if c.user and c.password:
                server.login(c.user, c.password)
        except Exception:
            server.close()
            raise
        return server

    def _build(self, message) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg["From"] = f"{self.config.from_name} <{self.config.from_email}>"
        msg["To"] = message.recipient
        msg["Subject"] = message.subject or ""
        msg.attach(MIMEText(message.content or "", "plain", "utf-8"))
        return msg

    def _verify_sync(self) -> None:
        with self._open() as server:
            code, _ = server.noop()
            if code != 250:
                raise smtplib.SMTPResponseException(code, b"NOOP rejected")

    def _send_sync(self, message) -> dict:
        with self._open() as server:
            refused = server.send_message(self._build(message))
        return {"refused": {rcpt: [code, resp.decode(errors="replace")] for rcpt, (code, resp) in refused.items()}}

    async def connect(self, channel_id: str) -> None:
        self._validate()
        try:
            await asyncio.to_thread(self._verify_sync)
        except (smtplib.SMTPException, OSError) as e:
            raise ChannelUnavailableError(f"SMTP verification failed: {e}") from e
        self._last_probe = time.monotonic()
        self._last_state = ConnectivityState.CONNECTED
        log.info(f"[SMTP] {channel_id} verified against {self.config.host}:{self.config.port}")

    async def check_health(self, channel_id: str) -> ConnectivityState:
        self._validate()
        now = time.monotonic()
        if self._last_probe is not None and now - self._last_probe < self.probe_interval:
            return self._last_state
        self._last_probe = now
        try:
            await asyncio.to_thread(self._verify_sync)
            self._last_state = ConnectivityState.CONNECTED
        except (smtplib.SMTPException, OSError) as e:
            log.error(f"[SMTP] {channel_id} verification failed: {e}")
            self._last_state = ConnectivityState.DISCONNECTED
        return self._last_state

    async def send(self, channel_id: str, message) -> SendResult:
        self._validate()
        try:
            response = await asyncio.to_thread(self._send_sync, message)
        except _CONNECTIVITY_ERRORS as e:
            return SendResult(ok=False, error=f"{type(e).__name__}: {e}", channel_down=True)
        except (smtplib.SMTPException, OSError) as e:
            return SendResult(ok=False, error=f"{type(e).__name__}: {e}")
        return SendResult(ok=True, response=response)

import uuid
import logging
from datetime import datetime, timedelta, timezone
from typing import Sequence
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from courier.core.base import utcnow
from courier.core.errors import MessageNotFoundError, IllegalTransitionError
from courier.modules.queue.models import OutboundMessage, PENDING, SENT, FAILED, STATUSES
from courier.modules.queue.repository import MessageRepository

log = logging.getLogger("queue.store")

class QueueStore:
    """Durable message queue shared by every channel worker.

    Each call runs in its own transaction, so a failing call leaves the row as
    it was. Worker-side updates (`release`, `record_success`, `record_failure`)
    only apply while the caller's channel still holds the message in
    `processing`; otherwise `LeaseLostError` is raised.
    """

    def __init__(self, sessions: async_sessionmaker[AsyncSession]):
        self._sessions = sessions

    # ---- enqueue / read ----

    async def enqueue(self, *, recipient: str, content: str, kind: str = "chat", subject: str | None = None,
                      channel_hint: str | None = None, scheduled_at: datetime | None = None) -> OutboundMessage:
        now = utcnow()
        if scheduled_at is not None and scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
        async with self._sessions() as session, session.begin():
            msg = await MessageRepository(session).create(
                kind=kind,
                recipient=recipient,
                subject=subject,
                content=content,
                channel_id=channel_hint,
                status=PENDING,
                attempts=0,
                scheduled_at=scheduled_at or now,
                created_at=now,
                updated_at=now,
            )
        log.info("Enqueued %s message %s for %s", kind, msg.id, recipient)
        return msg

    async def get(self, message_id: uuid.UUID) -> OutboundMessage:
        async with self._sessions() as session:
            msg = await MessageRepository(session).get(message_id)
        if msg is None:
            raise MessageNotFoundError(str(message_id))
        return msg

    # ---- worker operations ----

    async def claim_next(self, channel_id: str, now: datetime, kinds: Sequence[str] | None = None) -> OutboundMessage | None:
        async with self._sessions() as session, session.begin():
            return await MessageRepository(session).claim_next(channel_id, now, kinds)

    async def release(self, message_id: uuid.UUID, channel_id: str, now: datetime) -> None:
        async with self._sessions() as session, session.begin():
            await MessageRepository(session).update_held(
                message_id, channel_id, status=PENDING, channel_id=None, scheduled_at=now, updated_at=now,
            )

    async def record_success(self, message_id: uuid.UUID, channel_id: str, now: datetime,
                             provider_response: dict | None = None) -> None:
        async with self._sessions() as session, session.begin():
            await MessageRepository(session).update_held(
                message_id, channel_id, status=SENT, sent_at=now, error=None,
                provider_response=provider_response, updated_at=now,
            )

    async def record_failure(self, message_id: uuid.UUID, channel_id: str, *, error: str, next_attempts: int,
                             next_scheduled_at: datetime, terminal: bool, now: datetime,
                             release_affinity: bool = False) -> None:
        values = dict(attempts=next_attempts, error=error[:2000], last_attempt_at=now, updated_at=now)
        if terminal:
            # keep channel affinity on terminal rows for audit
            values.update(status=FAILED, failed_at=now)
        else:
            values.update(status=PENDING, scheduled_at=max(next_scheduled_at, now))
            if release_affinity:
                values.update(channel_id=None)
        async with self._sessions() as session, session.begin():
            await MessageRepository(session).update_held(message_id, channel_id, **values)

    # ---- operator tooling ----

    async def reclaim_stale(self, older_than: timedelta, now: datetime | None = None) -> int:
        now = now or utcnow()
        async with self._sessions() as session, session.begin():
            count = await MessageRepository(session).reclaim_stale(now - older_than, now)
        if count:
            log.warning("Reset %d stuck processing messages to pending", count)
        else:
            log.info("No stuck processing messages found")
        return count

    async def unpin_pending(self, channel_id: str, now: datetime | None = None) -> int:
        """Hand pending messages pinned to `channel_id` back to the shared pool."""
        now = now or utcnow()
        async with self._sessions() as session, session.begin():
            count = await MessageRepository(session).unpin_pending(channel_id, now)
        if count:
            log.warning("Released %d pending messages pinned to channel %s", count, channel_id)
        return count

    async def retry_failed(self, message_id: uuid.UUID, now: datetime | None = None) -> OutboundMessage:
        async with self._sessions() as session, session.begin():
            repo = MessageRepository(session)
            msg = await repo.get(message_id)
            if msg is None:
                raise MessageNotFoundError(str(message_id))
            if msg.status != FAILED:
                raise IllegalTransitionError(f"only failed messages can be retried (status={msg.status})")
            await repo.requeue_failed(now or utcnow(), message_id)
            return await repo.get(message_id)

    async def retry_all_failed(self, now: datetime | None = None) -> int:
        async with self._sessions() as session, session.begin():
            count = await MessageRepository(session).requeue_failed(now or utcnow())
        log.info("%d failed messages queued for retry", count)
        return count

    async def delete(self, message_id: uuid.UUID) -> None:
        async with self._sessions() as session, session.begin():
            if not await MessageRepository(session).delete(message_id):
                raise MessageNotFoundError(str(message_id))

    async def purge_failed(self, older_than: timedelta, now: datetime | None = None) -> int:
        now = now or utcnow()
        async with self._sessions() as session, session.begin():
            count = await MessageRepository(session).purge_failed(now - older_than)
        if count:
            log.info("Purged %d failed messages older than %s", count, older_than)
        return count

    async def list_failed(self, limit: int = 50, offset: int = 0) -> tuple[Sequence[OutboundMessage], int]:
        async with self._sessions() as session:
            repo = MessageRepository(session)
            items = await repo.list_by_status(FAILED, limit, offset)
            total = (await repo.count_by_status()).get(FAILED, 0)
        return items, total

    async def stats(self) -> dict:
        async with self._sessions() as session:
            repo = MessageRepository(session)
            by_status = await repo.count_by_status()
            by_channel = await repo.count_by_channel()
            avg_attempts = await repo.average_attempts(SENT)
        counts = {s: by_status.get(s, 0) for s in STATUSES}
        return {
            "by_status": counts,
            "total": sum(counts.values()),
            "by_channel": {(k or "unassigned"): v for k, v in by_channel.items()},
            "avg_attempts_sent": avg_attempts,
        }

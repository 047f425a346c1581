import uuid
from datetime import datetime
from typing import Sequence
from sqlalchemy import select, update, delete, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession
from courier.core.errors import LeaseLostError
from courier.modules.queue.models import OutboundMessage, PENDING, PROCESSING, SENT, FAILED

class MessageRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **data) -> OutboundMessage:
        obj = OutboundMessage(**data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, message_id: uuid.UUID) -> OutboundMessage | None:
        return await self.session.get(OutboundMessage, message_id, populate_existing=True)

    def _eligible(self, channel_id: str, now: datetime, kinds: Sequence[str] | None):
        clauses = [
            OutboundMessage.status == PENDING,
            OutboundMessage.scheduled_at <= now,
            or_(OutboundMessage.channel_id.is_(None), OutboundMessage.channel_id == channel_id),
        ]
        if kinds:
            clauses.append(OutboundMessage.kind.in_(list(kinds)))
        return and_(*clauses)

    async def claim_next(self, channel_id: str, now: datetime, kinds: Sequence[str] | None = None) -> OutboundMessage | None:
        """Claim the oldest due message for `channel_id`; None only when nothing is eligible.

        A lost compare-and-swap means another claimer took that row, so the
        next candidate is read again until one is won or none is left.
        """
        eligible = self._eligible(channel_id, now, kinds)
        while True:
            # SELECT ... FOR UPDATE SKIP LOCKED (ignored by sqlite, which serialises writers)
            q = (
                select(OutboundMessage.id, OutboundMessage.version)
                .where(eligible)
                .order_by(OutboundMessage.scheduled_at.asc(), OutboundMessage.created_at.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            row = (await self.session.execute(q)).first()
            if row is None:
                return None
            # compare-and-swap: only wins if nobody touched the row since we read it
            res = await self.session.execute(
                update(OutboundMessage)
                .where(OutboundMessage.id == row.id, OutboundMessage.version == row.version, eligible)
                .values(status=PROCESSING, channel_id=channel_id, updated_at=now, version=OutboundMessage.version + 1)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:
                return await self.get(row.id)

    async def update_held(self, message_id: uuid.UUID, owner: str, **values) -> None:
        res = await self.session.execute(
            update(OutboundMessage)
            .where(
                OutboundMessage.id == message_id,
                OutboundMessage.status == PROCESSING,
                OutboundMessage.channel_id == owner,
            )
            .values(version=OutboundMessage.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise LeaseLostError(message_id, owner)

    async def reclaim_stale(self, cutoff: datetime, now: datetime) -> int:
        res = await self.session.execute(
            update(OutboundMessage)
            .where(OutboundMessage.status == PROCESSING, OutboundMessage.updated_at < cutoff)
            .values(status=PENDING, channel_id=None, updated_at=now, version=OutboundMessage.version + 1)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount

    async def unpin_pending(self, channel_id: str, now: datetime) -> int:
        res = await self.session.execute(
            update(OutboundMessage)
            .where(OutboundMessage.status == PENDING, OutboundMessage.channel_id == channel_id)
            .values(channel_id=None, updated_at=now, version=OutboundMessage.version + 1)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount

    async def requeue_failed(self, now: datetime, message_id: uuid.UUID | None = None) -> int:
        q = update(OutboundMessage).where(OutboundMessage.status == FAILED)
        if message_id is not None:
            q = q.where(OutboundMessage.id == message_id)
        res = await self.session.execute(
            q.values(
                status=PENDING, channel_id=None, attempts=0, error=None, failed_at=None,
                scheduled_at=now, updated_at=now, version=OutboundMessage.version + 1,
            ).execution_options(synchronize_session=False)
        )
        return res.rowcount

    async def delete(self, message_id: uuid.UUID) -> int:
        res = await self.session.execute(delete(OutboundMessage).where(OutboundMessage.id == message_id))
        return res.rowcount

    async def purge_failed(self, cutoff: datetime) -> int:
        res = await self.session.execute(
            delete(OutboundMessage).where(OutboundMessage.status == FAILED, OutboundMessage.updated_at < cutoff)
        )
        return res.rowcount

    async def list_by_status(self, status: str, limit: int = 50, offset: int = 0) -> Sequence[OutboundMessage]:
        order = OutboundMessage.failed_at.desc() if status == FAILED else OutboundMessage.updated_at.desc()
        q = (
            select(OutboundMessage)
            .where(OutboundMessage.status == status)
            .order_by(order, OutboundMessage.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        res = await self.session.execute(q)
        return res.scalars().all()

    async def count_by_status(self) -> dict[str, int]:
        res = await self.session.execute(
            select(OutboundMessage.status, func.count()).group_by(OutboundMessage.status)
        )
        return {status: count for status, count in res.all()}

    async def count_by_channel(self) -> dict[str | None, int]:
        res = await self.session.execute(
            select(OutboundMessage.channel_id, func.count()).group_by(OutboundMessage.channel_id)
        )
        return {channel: count for channel, count in res.all()}

    async def average_attempts(self, status: str = SENT) -> float | None:
        res = await self.session.execute(
            select(func.avg(OutboundMessage.attempts)).where(OutboundMessage.status == status)
        )
        avg = res.scalar_one_or_none()
        return float(avg) if avg is not None else None

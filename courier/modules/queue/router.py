import uuid
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from courier.modules.queue.schemas import MessageCreate, MessageOut, MessagePage, CountOut
from courier.modules.queue.service import QueueStore

router = APIRouter()

def get_store(request: Request) -> QueueStore:
    return request.app.state.store

@router.post("/messages", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
async def enqueue_message(payload: MessageCreate, request: Request, store: QueueStore = Depends(get_store)):
    coordinator = getattr(request.app.state, "coordinator", None)
    if payload.channel_hint and coordinator is not None:
        channel = coordinator.channels.get(payload.channel_hint)
        if channel is None:
            raise HTTPException(422, f"Unknown channel: {payload.channel_hint}")
        # a pinned message is only claimable by its channel, which only claims its own kind
        if channel.kind != payload.kind:
            raise HTTPException(422, f"Channel {channel.id} sends {channel.kind} messages, not {payload.kind}")
    return await store.enqueue(**payload.model_dump())

# declared before /messages/{message_id} so "failed" is not parsed as an id
@router.get("/messages/failed", response_model=MessagePage)
async def list_failed(limit: int = Query(50, ge=1, le=500), offset: int = Query(0, ge=0), store: QueueStore = Depends(get_store)):
    items, total = await store.list_failed(limit, offset)
    return MessagePage(items=[MessageOut.model_validate(m) for m in items], total=total, limit=limit, offset=offset)

@router.post("/messages/retry-failed", response_model=CountOut)
async def retry_all_failed(store: QueueStore = Depends(get_store)):
    return CountOut(count=await store.retry_all_failed())

@router.get("/messages/{message_id}", response_model=MessageOut)
async def get_message(message_id: uuid.UUID, store: QueueStore = Depends(get_store)):
    return await store.get(message_id)

@router.post("/messages/{message_id}/retry", response_model=MessageOut)
async def retry_message(message_id: uuid.UUID, store: QueueStore = Depends(get_store)):
    return await store.retry_failed(message_id)

@router.delete("/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(message_id: uuid.UUID, store: QueueStore = Depends(get_store)):
    await store.delete(message_id)

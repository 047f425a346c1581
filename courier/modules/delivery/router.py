from datetime import timedelta
from fastapi import APIRouter, Depends, HTTPException, Request
from courier.core.config import settings
from courier.modules.queue.router import get_store
from courier.modules.queue.schemas import CountOut
from courier.modules.queue.service import QueueStore
from courier.modules.delivery.coordinator import QueueCoordinator

router = APIRouter()

def get_coordinator(request: Request) -> QueueCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(503, "Delivery workers are not running in this process")
    return coordinator

@router.get("/health")
async def delivery_health(store: QueueStore = Depends(get_store), coordinator: QueueCoordinator = Depends(get_coordinator)):
    return coordinator.health_report(await store.stats())

@router.get("/stats")
async def delivery_stats(store: QueueStore = Depends(get_store)):
    return await store.stats()

@router.get("/channels")
async def list_channels(coordinator: QueueCoordinator = Depends(get_coordinator)):
    return coordinator.snapshot()

@router.post("/channels/{channel_id}/reset")
async def reset_channel(channel_id: str, coordinator: QueueCoordinator = Depends(get_coordinator)):
    return coordinator.reset_channel(channel_id)

@router.post("/reclaim-stale", response_model=CountOut)
async def reclaim_stale(store: QueueStore = Depends(get_store)):
    return CountOut(count=await store.reclaim_stale(timedelta(seconds=settings.STALE_PROCESSING_AFTER)))

@router.post("/purge-failed", response_model=CountOut)
async def purge_failed(store: QueueStore = Depends(get_store)):
    return CountOut(count=await store.purge_failed(timedelta(days=settings.FAILED_RETENTION_DAYS)))

from fastapi import APIRouter
from courier.modules.queue.router import router as queue_router
from courier.modules.delivery.router import router as delivery_router

api_router = APIRouter()
api_router.include_router(queue_router, tags=["messages"])
api_router.include_router(delivery_router, prefix="/delivery", tags=["delivery"])

@api_router.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}

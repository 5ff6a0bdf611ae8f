from fastapi import APIRouter
from utils import log

from clients.relay import hub

from .bids import router as bids_router
from .products import router as products_router
from .relay import router as relay_router
from .transports import router as transports_router
from .users import router as users_router

logger = log.get_logger(__name__)

router = APIRouter(prefix="/api")
router.include_router(users_router)
router.include_router(products_router)
router.include_router(bids_router)
router.include_router(transports_router)
router.include_router(relay_router)


@router.get("/health", tags=["health"])
async def route_health():
    return {"status": "ok", "relay_connections": hub.connection_count}

import logging
from typing import Any

from .hub import (
    Connection,
    RelayHub,
    product_room,
    user_room,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

# Process-wide hub shared by the engines (publishers) and the WebSocket route (subscribers).
hub = RelayHub()


async def emit_to_product(product_id: str, event: str, payload: Any) -> None:
    try:
        await hub.emit_to_product(product_id, event, payload)
    except Exception as e:
        logger.warning(f"Relay emit '{event}' to product {product_id} failed: {e}")


async def emit_to_user(user_id: str, event: str, payload: Any) -> None:
    try:
        await hub.emit_to_user(user_id, event, payload)
    except Exception as e:
        logger.warning(f"Relay emit '{event}' to user {user_id} failed: {e}")


async def emit_to_all(event: str, payload: Any) -> None:
    try:
        await hub.emit_to_all(event, payload)
    except Exception as e:
        logger.warning(f"Relay broadcast '{event}' failed: {e}")

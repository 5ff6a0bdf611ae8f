"""
WebSocket endpoint for live marketplace events.

Clients connect to ``/api/ws?token=<bearer>``; the token is verified before
the connection is accepted. Client frames are JSON objects with an
``action`` key, server frames are ``{"event": ..., "data": ...}``.

Actions:
- ``join_product_room`` / ``leave_product_room`` with ``productId``
- ``join_user_room`` subscribes to the caller's own notifications
- ``new_bid_notification`` with ``productId`` and ``bid`` is re-broadcast to
  the product room as ``bid_update``
- ``typing`` / ``stop_typing`` with ``productId`` reach the other members of
  the product room as ``user_typing`` / ``user_stop_typing``
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from clients.relay import hub, product_room, user_room, utc_now_iso
from utils import log

from .dependencies import authenticate_token

logger = log.get_logger(__name__)

router = APIRouter(tags=["relay"])


class WebSocketConnection:
    def __init__(self, websocket: WebSocket, user_id: str, role: Optional[str]):
        self.websocket = websocket
        self.user_id = user_id
        self.role = role

    async def send_json(self, data: Any) -> None:
        await self.websocket.send_json(data)


def _product_id(message: Dict[str, Any]) -> Optional[str]:
    return message.get("productId") or message.get("product_id")


async def handle_client_message(conn: WebSocketConnection, message: Dict[str, Any]) -> None:
    action = message.get("action")

    if action == "join_user_room":
        room = user_room(conn.user_id)
        hub.join(conn, room)
        await conn.send_json({"event": "joined", "data": {"room": room}})
        return

    product_id = _product_id(message)
    if action in ("join_product_room", "leave_product_room", "new_bid_notification", "typing", "stop_typing") and not product_id:
        await conn.send_json({"event": "error", "data": {"message": "productId is required"}})
        return

    if action == "join_product_room":
        room = product_room(product_id)
        hub.join(conn, room)
        logger.debug(f"User {conn.user_id} joined {room}")
        await conn.send_json({"event": "joined", "data": {"room": room}})
    elif action == "leave_product_room":
        room = product_room(product_id)
        hub.leave(conn, room)
        await conn.send_json({"event": "left", "data": {"room": room}})
    elif action == "new_bid_notification":
        await hub.emit(
            product_room(product_id),
            "bid_update",
            {"productId": product_id, "bid": message.get("bid"), "timestamp": utc_now_iso()},
        )
    elif action in ("typing", "stop_typing"):
        event = "user_typing" if action == "typing" else "user_stop_typing"
        await hub.emit(
            product_room(product_id),
            event,
            {"userId": conn.user_id, "productId": product_id},
            exclude=conn,
        )
    else:
        await conn.send_json({"event": "error", "data": {"message": f"Unknown action: {action}"}})


@router.websocket("/ws")
async def route_relay(websocket: WebSocket, token: Optional[str] = Query(default=None)):
    user = None
    if token:
        try:
            user = await authenticate_token(websocket.app, token)
        except Exception as e:
            logger.error(f"Relay authentication failed: {e}", exc_info=True)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    conn = WebSocketConnection(websocket, user["sub"], user.get("role"))
    hub.register(conn)
    logger.info(f"Relay connected: user {conn.user_id} ({hub.connection_count} open)")

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await conn.send_json({"event": "error", "data": {"message": "Invalid JSON"}})
                continue
            if not isinstance(message, dict):
                await conn.send_json({"event": "error", "data": {"message": "Expected a JSON object"}})
                continue
            await handle_client_message(conn, message)
    except WebSocketDisconnect:
        pass
    finally:
        hub.unregister(conn)
        logger.info(f"Relay disconnected: user {conn.user_id}")

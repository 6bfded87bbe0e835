from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from social_inbox.dependencies import init_state, resolve_actor
from social_inbox.services.realtime import ADMIN_ROOM, SELLERS_ROOM, seller_room

router = APIRouter()


def rooms_for(admin_key: str | None, seller_id: str | None) -> list[str]:
    actor = resolve_actor(admin_key, seller_id)
    if actor is None:
        return []
    if actor.is_admin:
        return [ADMIN_ROOM]
    return [SELLERS_ROOM, seller_room(actor.seller_id)]


@router.websocket("/ws")
async def inbox_socket(websocket: WebSocket):
    """Live inbox events. Clients re-sync through the HTTP API after reconnecting."""
    init_state(websocket.app)
    manager = websocket.app.state.connection_manager
    rooms = rooms_for(websocket.query_params.get("admin_key"), websocket.query_params.get("seller_id"))

    await manager.connect(websocket, rooms)
    try:
        while True:
            # Only keepalives are answered; everything else is ignored.
            if (await websocket.receive_text()).strip() == "ping":
                await websocket.send_json({"event": "pong", "data": None})
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket)

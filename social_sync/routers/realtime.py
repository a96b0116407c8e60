import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from social_sync.routers.session import session_state
from social_sync.utils.websocket_manager import ConnectionManager


logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])
manager = ConnectionManager()

STORE_NAMES = ("follows", "posts", "messages")


def _log_push_failure(user_id: str, task: "asyncio.Task[None]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None and not isinstance(exc, WebSocketDisconnect):
        logger.warning("State push for %s stopped with error: %s", user_id, exc)


@router.websocket("/ws/state")
async def state_socket(websocket: WebSocket):
    session = getattr(websocket.app.state, "session", None)
    if session is None or not session.current_user_id:
        await websocket.close(code=4401)
        return
    user_id = session.current_user_id
    queue = await manager.connect(user_id, websocket)

    unsubscribers = [
        getattr(session, name).subscribe(lambda name=name: manager.notify(user_id, name))
        for name in STORE_NAMES
    ]

    async def push() -> None:
        await websocket.send_json({"store": "all", "state": session_state(session)})
        while True:
            name = await queue.get()
            snapshot = getattr(session, name).snapshot().model_dump(mode="json")
            await websocket.send_json({"store": name, "state": snapshot})

    pusher = asyncio.create_task(push())
    pusher.add_done_callback(lambda task: _log_push_failure(user_id, task))
    try:
        # clients only listen; reading detects the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("State socket for %s disconnected", user_id)
    finally:
        # no awaits here: the server may already be cancelling this task
        pusher.cancel()
        for unsubscribe in unsubscribers:
            unsubscribe()
        manager.disconnect(user_id, websocket)

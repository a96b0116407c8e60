import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from social_sync.config import Settings, get_settings
from social_sync.database.connection import close_mongo_connection, connect_to_mongo
from social_sync.routers.conversations import router as conversations_router
from social_sync.routers.follows import router as follows_router
from social_sync.routers.posts import router as posts_router
from social_sync.routers.realtime import router as realtime_router
from social_sync.routers.session import router as session_router
from social_sync.session import Session
from social_sync.utils.realtime_bus import create_bus



def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(settings: Optional[Settings] = None, session: Optional[Session] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if session is not None:
            app.state.session = session
            try:
                yield
            finally:
                await session.close()
            return

        db = await connect_to_mongo(settings)
        bus = create_bus(settings)
        app.state.session = Session.from_database(settings, db, bus)
        try:
            await app.state.session.ensure_indexes()
            app.state.session.start()
            if settings.current_user_id:
                await app.state.session.login(settings.current_user_id)
            yield
        finally:
            await app.state.session.close()
            await bus.close()
            await close_mongo_connection()

    app = FastAPI(title="Social Sync", lifespan=lifespan)
    app.include_router(session_router)
    app.include_router(follows_router)
    app.include_router(posts_router)
    app.include_router(conversations_router)
    app.include_router(realtime_router)

    @app.get("/")
    async def root():
        current = getattr(app.state, "session", None)
        return {"message": "Social Sync is running", "current_user_id": current.current_user_id if current else None}

    return app

from contextlib import asynccontextmanager

from fastapi import FastAPI

from realtime_chat.config import get_settings
from realtime_chat.database.backend import MongoBackend
from realtime_chat.database.connection import close_mongo_connection, connect_to_mongo, get_database
from realtime_chat.routers.chat import router as chat_router
from realtime_chat.routers.conversations import router as conversations_router
from realtime_chat.routers.presence import router as presence_router
from realtime_chat.utils.realtime_bus import create_bus


@asynccontextmanager
async def lifespan(app: FastAPI):

    settings = get_settings()
    db = await connect_to_mongo()
    bus = create_bus(settings.redis_url)
    app.state.settings = settings
    app.state.bus = bus
    app.state.backend = MongoBackend(db, bus)
    try:
        yield
    finally:
        await bus.close()
        await close_mongo_connection()


app = FastAPI(title="Realtime chat", lifespan=lifespan)


app.include_router(chat_router)
app.include_router(conversations_router)
app.include_router(presence_router)


@app.get("/")
async def root():

    db = get_database()
    collections = await db.list_collection_names()
    return {"message": "Connected to MongoDB!", "collections": collections}

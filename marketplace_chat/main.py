from contextlib import asynccontextmanager

from fastapi import FastAPI

from marketplace_chat.config import configure_logging
from marketplace_chat.database.connection import close_mongo_connection, connect_to_mongo, get_database
from marketplace_chat.repositories.message_repository import MessageRepository
from marketplace_chat.routers.conversations import router as conversations_router
from marketplace_chat.routers.messages import router as messages_router
from marketplace_chat.utils.realtime_bus import close_bus


@asynccontextmanager
async def lifespan(app: FastAPI):

    configure_logging()
    await connect_to_mongo()
    await MessageRepository(get_database()).ensure_indexes()
    try:
        yield
    finally:
        await close_bus()
        await close_mongo_connection()


app = FastAPI(title="Marketplace messaging", lifespan=lifespan)


app.include_router(messages_router)
app.include_router(conversations_router)


@app.get("/")
async def root():

    db = get_database()
    collections = await db.list_collection_names()
    return {"message": "Connected to MongoDB!", "collections": collections}

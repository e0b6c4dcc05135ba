from motor.motor_asyncio import AsyncIOMotorClient

from config.env import MONGO_URI

if not MONGO_URI:
    raise RuntimeError("MONGODB_URI not set")

client = AsyncIOMotorClient(MONGO_URI)
db = client.get_default_database()


def get_db():
    return db


def get_client():
    return client

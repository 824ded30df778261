# reliefmatch/core/db.py
from functools import lru_cache

from motor.motor_asyncio import AsyncIOMotorClient

from reliefmatch.core.config import get_settings


@lru_cache(maxsize=1)
def get_client() -> AsyncIOMotorClient:
    # Cached to play nicely with uvicorn --reload
    return AsyncIOMotorClient(get_settings().mongo_uri, uuidRepresentation="standard")


def get_db():
    return get_client()[get_settings().mongo_db]

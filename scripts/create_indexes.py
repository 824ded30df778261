import asyncio

from reliefmatch.core.db import get_client, get_db
from reliefmatch.repos.mongo import ensure_indexes


async def main():
    await ensure_indexes(get_db())
    get_client().close()
    print("Indexes ensured: donations, needs, geocoding_cache")

if __name__ == "__main__":
    asyncio.run(main())

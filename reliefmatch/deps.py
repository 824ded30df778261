from fastapi import Request

from reliefmatch.core.config import Settings


def get_repo(settings: Settings):
    if settings.use_mongo:
        from reliefmatch.core.db import get_db
        from reliefmatch.repos.mongo import MongoRepo
        return MongoRepo(get_db())
    from reliefmatch.repos.inmemory import InMemoryRepo
    return InMemoryRepo()


# Request-scoped accessors for services built in the app lifespan
def get_matching(request: Request):
    return request.app.state.matching


def get_geocoder(request: Request):
    return request.app.state.geocoder


def get_distance(request: Request):
    return request.app.state.distance


def get_worker(request: Request):
    return request.app.state.worker

# reliefmatch/routers/matching.py
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from reliefmatch.core.errors import GeocodeUnavailableError, InvalidInputError, PersistenceError
from reliefmatch.deps import get_distance, get_geocoder, get_matching, get_worker
from reliefmatch.schemas import GeocodeIn, GeocodeResult, ScoredMatch, TravelEstimate, TravelIn, WorkerStatus

router = APIRouter(prefix="/api/matching", tags=["matching"])


@router.get("/donations/{donation_id}", response_model=List[ScoredMatch])
async def matches_for_donation(
    donation_id: str,
    max_distance_km: float = Query(50, gt=0),
    limit: int = Query(10, ge=1, le=100),
    matching=Depends(get_matching),
):
    try:
        return await matching.find_best_matches_for_id(donation_id, max_distance_km, limit)
    except LookupError:
        raise HTTPException(status_code=404, detail="Donation not found")
    except PersistenceError as ex:
        raise HTTPException(status_code=503, detail=str(ex))


@router.post("/geocode", response_model=GeocodeResult)
async def geocode(body: GeocodeIn, geocoder=Depends(get_geocoder)):
    try:
        return await geocoder.geocode(body.address)
    except InvalidInputError as ex:
        raise HTTPException(status_code=400, detail=str(ex))
    except (GeocodeUnavailableError, PersistenceError) as ex:
        raise HTTPException(status_code=503, detail=str(ex))


@router.post("/travel", response_model=TravelEstimate)
async def travel(body: TravelIn, distance=Depends(get_distance)):
    return await distance.estimate_travel(body.origin, body.destination, body.profile)


@router.get("/worker", response_model=WorkerStatus)
async def worker_status(worker=Depends(get_worker)):
    return worker.status()

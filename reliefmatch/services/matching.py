# reliefmatch/services/matching.py
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from reliefmatch.core.config import URGENCY_SCORES, MatchWeights, QualityThresholds, Settings
from reliefmatch.core.errors import GeocodeUnavailableError, InvalidInputError
from reliefmatch.schemas import Donation, MatchScore, Need, ScoredMatch, TravelEstimate
from .routing import DistanceService, TravelMemo

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


# --------------------------------------------------
# Sub-scores, each in [0, 1]
# --------------------------------------------------
def category_score(donor_category: str, need_category: str) -> float:
    return 1.0 if (donor_category or "").lower() == (need_category or "").lower() else 0.0


def distance_score(km: float, max_km: float = 100.0) -> float:
    return max(0.0, 1.0 - min(km, max_km) / max_km)


def urgency_score(urgency: Optional[str]) -> float:
    return URGENCY_SCORES.get((urgency or "").lower(), URGENCY_SCORES["none"])


def quantity_score(donor_qty: float, need_qty: float) -> float:
    if donor_qty <= 0 or need_qty <= 0:
        return 0.0
    ratio = min(donor_qty, need_qty) / max(donor_qty, need_qty)
    surplus_bonus = 0.2 if donor_qty >= need_qty else 0.0
    return min(1.0, ratio + surplus_bonus)


def item_similarity(a: str, b: str) -> float:
    """Exact 1.0, substring 0.8, shared words 0.5..0.8, else 0."""
    s1 = (a or "").strip().lower()
    s2 = (b or "").strip().lower()
    if not s1 or not s2:
        return 0.0
    if s1 == s2:
        return 1.0
    if s1 in s2 or s2 in s1:
        return 0.8

    w1, w2 = set(s1.split()), set(s2.split())
    shared = w1 & w2
    if shared:
        return 0.5 + 0.3 * len(shared) / max(len(w1), len(w2))
    return 0.0


def clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


def recency_score(created_at: datetime, now: datetime, window_days: float = 30.0) -> float:
    days_old = (now - _aware(created_at)).total_seconds() / SECONDS_PER_DAY
    # future timestamps count as brand new
    return clamp01(1.0 - days_old / window_days)


# --------------------------------------------------
# Scorer
# --------------------------------------------------
class MatchScorer:
    """Weighted 0..1 donation/need scorer."""

    def __init__(self, distance: DistanceService, weights: Optional[MatchWeights] = None,
                 thresholds: Optional[QualityThresholds] = None, max_distance_km: float = 100.0,
                 recency_window_days: float = 30.0, clock: Callable[[], datetime] = _utcnow):
        self.distance = distance
        self.weights = weights or MatchWeights()
        self.thresholds = thresholds or QualityThresholds()
        self.max_distance_km = max_distance_km
        self.recency_window_days = recency_window_days
        self.clock = clock

    def quality(self, total: float) -> str:
        t = self.thresholds
        if total >= t.excellent:
            return "excellent"
        if total >= t.good:
            return "good"
        if total >= t.fair:
            return "fair"
        return "poor"

    def combine(self, donation: Donation, need: Need, travel: TravelEstimate) -> ScoredMatch:
        w = self.weights
        parts = {
            "category": category_score(donation.category, need.category),
            "distance": distance_score(travel.distance_km, self.max_distance_km),
            "urgency": urgency_score(need.urgency),
            "quantity": quantity_score(donation.quantity, need.quantity),
            "item_similarity": item_similarity(donation.item, need.item),
            "recency": recency_score(need.created_at, self.clock(), self.recency_window_days),
        }
        total = clamp01(sum(getattr(w, k) * v for k, v in parts.items()))
        return ScoredMatch(
            need=need,
            score=MatchScore(total=total, **parts),
            distance_km=travel.distance_km,
            driving_time_minutes=travel.driving_time_minutes,
            logistics_cost=travel.logistics_cost,
            match_quality=self.quality(total),
        )

    async def score(self, donation: Donation, need: Need, memo: Optional[TravelMemo] = None) -> ScoredMatch:
        if donation.coordinates is None or need.coordinates is None:
            raise ValueError("donation and need must be geocoded before scoring")
        if memo is not None:
            travel = await memo.estimate(donation.coordinates, need.coordinates)
        else:
            travel = await self.distance.estimate_travel(donation.coordinates, need.coordinates)
        return self.combine(donation, need, travel)


# --------------------------------------------------
# Orchestrator
# --------------------------------------------------
class MatchingService:
    def __init__(self, repo, geocoder, distance: DistanceService, scorer: MatchScorer,
                 min_score: float = 0.2, concurrency: int = 8, clock: Callable[[], datetime] = _utcnow):
        self.repo = repo
        self.geocoder = geocoder
        self.distance = distance
        self.scorer = scorer
        self.min_score = min_score
        self.concurrency = max(1, concurrency)
        self.clock = clock

    async def ensure_coordinates(self, donation: Donation) -> Optional[Donation]:
        """Geocode and persist a donation's location; None when it can't be placed."""
        if donation.coordinates is not None:
            return donation
        try:
            result = await self.geocoder.geocode(donation.location_text)
        except (GeocodeUnavailableError, InvalidInputError) as ex:
            logger.warning("Donation %s could not be geocoded, no matches: %s", donation.id, ex)
            return None

        fields = {
            "coordinates": result.coordinates,
            "formatted_address": result.formatted_address,
            "geocode_quality": result.quality,
            "geocoded_at": self.clock(),
        }
        await self.repo.update_geocode("donations", donation.id, fields)
        return donation.model_copy(update=fields)

    async def find_best_matches(self, donation: Donation, max_distance_km: float = 50,
                                limit: int = 10) -> List[ScoredMatch]:
        located = await self.ensure_coordinates(donation)
        if located is None:
            return []

        # over-fetch to survive the score filter
        needs = await self.distance.find_needs_within_radius(located.coordinates, max_distance_km, limit * 3)
        needs = [n for n in needs if n.coordinates is not None]

        memo = TravelMemo(self.distance)
        sem = asyncio.Semaphore(self.concurrency)

        async def _one(need: Need) -> ScoredMatch:
            async with sem:
                return await self.scorer.score(located, need, memo)

        scored = await asyncio.gather(*(_one(n) for n in needs))

        kept = [m for m in scored if m.score.total > self.min_score]
        kept.sort(key=lambda m: (-m.score.total, _aware(m.need.created_at), m.need.id))
        return kept[:limit]

    async def find_best_matches_for_id(self, donation_id: str, max_distance_km: float = 50,
                                       limit: int = 10) -> List[ScoredMatch]:
        donation = await self.repo.get_donation(donation_id)
        if donation is None:
            raise LookupError(f"donation {donation_id} not found")
        return await self.find_best_matches(donation, max_distance_km, limit)


def build_matching_service(repo, geocoder, distance: DistanceService, settings: Settings) -> MatchingService:
    scorer = MatchScorer(
        distance,
        weights=settings.match_weights,
        thresholds=settings.quality_thresholds,
        max_distance_km=settings.max_distance_score_km,
        recency_window_days=settings.recency_window_days,
    )
    return MatchingService(repo, geocoder, distance, scorer,
                           min_score=settings.min_match_score, concurrency=settings.match_concurrency)

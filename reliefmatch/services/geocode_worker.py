# reliefmatch/services/geocode_worker.py
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from reliefmatch.core.errors import GeocodeUnavailableError, InvalidInputError, PersistenceError
from reliefmatch.schemas import RecordKind, WorkerStatus

logger = logging.getLogger(__name__)

BATCH_SIZE = 10
DELAY_BETWEEN_BATCHES = 5.0  # seconds
IDLE_FACTOR = 5
ERROR_FACTOR = 2


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GeocodeWorker:
    """
    Backfills coordinates on donations and needs.

    One pass = one donations batch + one needs batch. Sleeps `delay` after a pass,
    `delay * 5` when both batches were empty and `delay * 2` after a pass that raised.
    Must be started explicitly; stop() is honoured at the top of the loop.
    A stopped worker has to be join()ed before start() will run it again.
    """

    def __init__(self, repo, geocoder, batch_size: int = BATCH_SIZE,
                 delay: float = DELAY_BETWEEN_BATCHES, retry_after: timedelta = timedelta(hours=24),
                 clock: Callable[[], datetime] = _utcnow):
        self.repo = repo
        self.geocoder = geocoder
        self.batch_size = batch_size
        self.delay = delay
        self.retry_after = retry_after
        self.clock = clock

        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self.passes = 0
        self.last_pass = {}
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            if self._stop.is_set():
                logger.warning("Geocode worker is still stopping; join() it before restarting")
            else:
                logger.info("Geocode worker is already running")
            return
        self._stop.clear()
        logger.info("Starting geocode worker...")
        self._task = asyncio.create_task(self._run(), name="geocode-worker")

    def stop(self) -> None:
        logger.info("Stopping geocode worker...")
        self._stop.set()

    async def join(self) -> None:
        if self._task is not None:
            await self._task

    def status(self) -> WorkerStatus:
        return WorkerStatus(running=self.is_running, passes=self.passes,
                            last_pass=dict(self.last_pass), last_error=self.last_error)

    async def _sleep(self, seconds: float) -> None:
        # wakes early on stop() so shutdown doesn't wait out an idle backoff
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                donations, needs = await self.run_once()
                wait = self.delay * IDLE_FACTOR if donations == 0 and needs == 0 else self.delay
            except Exception as ex:
                logger.exception("Error in geocode worker pass")
                self.last_error = str(ex)
                wait = self.delay * ERROR_FACTOR
            await self._sleep(wait)
        logger.info("Geocode worker stopped")

    async def run_once(self) -> Tuple[int, int]:
        """One pass over both record kinds. Store errors propagate."""
        donations = await self.process_batch("donations")
        needs = await self.process_batch("needs")
        self.passes += 1
        self.last_pass = {"donations": donations, "needs": needs, "at": self.clock().isoformat()}
        return donations, needs

    async def process_batch(self, kind: RecordKind) -> int:
        retry_before = self.clock() - self.retry_after
        records = await self.repo.list_missing_coordinates(kind, self.batch_size, retry_before)
        if not records:
            return 0

        logger.info("Processing %d %s for geocoding...", len(records), kind)
        updated = 0
        for rec in records:
            try:
                result = await self.geocoder.geocode(rec.location_text)
            except (GeocodeUnavailableError, InvalidInputError) as ex:
                logger.warning("Failed to geocode %s %s (%r): %s", kind, rec.id, rec.location_text, ex)
                # stamp as attempted so it isn't retried every pass
                await self.repo.update_geocode(kind, rec.id, {"geocoded_at": self.clock()})
                continue
            except PersistenceError:
                raise
            except Exception:
                logger.exception("Error geocoding %s %s", kind, rec.id)
                await self.repo.update_geocode(kind, rec.id, {"geocoded_at": self.clock()})
                continue

            await self.repo.update_geocode(kind, rec.id, {
                "coordinates": result.coordinates,
                "formatted_address": result.formatted_address,
                "geocode_quality": result.quality,
                "geocoded_at": self.clock(),
            })
            updated += 1

        logger.info("Updated %d %s with geocoding data", updated, kind)
        return len(records)

import asyncio
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import date, datetime, timedelta

from croniter import croniter

from sheetsync.config import Settings
from sheetsync.integrations.job_store import JobStore
from sheetsync.models.jobs import SyncJob, SyncStatus
from sheetsync.sync.context import RunResult
from sheetsync.sync.pipeline import SyncPipeline
from sheetsync.time_utils import isoformat_utc, now_local, to_local

logger = logging.getLogger(__name__)

_SCHEDULABLE_STATUSES = {SyncStatus.ACTIVE, SyncStatus.ERROR}


def in_active_window(job: SyncJob, today: date) -> bool:
    if job.active_from and job.active_from > today:
        return False
    if job.active_until and job.active_until < today:
        return False
    return True


def due_fire_time(cron_expression: str, window_start: datetime, now: datetime) -> datetime | None:
    """The first cron fire time inside ``(window_start, now]``, if any.

    Raises ValueError (croniter's errors subclass it) for expressions that do not parse.
    """
    fire_time = croniter(cron_expression, window_start).get_next(datetime)
    if fire_time <= now:
        return fire_time
    return None


class RunRegistry:
    """Job ids with a run in progress in this process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._running: set[str] = set()

    def claim(self, job_id: str) -> bool:
        with self._lock:
            if job_id in self._running:
                return False
            self._running.add(job_id)
            return True

    def release(self, job_id: str) -> None:
        with self._lock:
            self._running.discard(job_id)

    def running(self) -> list[str]:
        with self._lock:
            return sorted(self._running)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._running


class SyncScheduler:
    def __init__(self, settings: Settings, store: JobStore, pipeline: SyncPipeline) -> None:
        self._settings = settings
        self._store = store
        self._pipeline = pipeline
        self._registry = RunRegistry()
        self._executor: ThreadPoolExecutor | None = None
        self._futures: dict[str, Future] = {}
        self._futures_lock = threading.Lock()
        self._last_fired: dict[str, datetime] = {}
        self._last_tick_now: datetime | None = None
        self._tick_lock = threading.Lock()
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._last_status: dict[str, str | int | list[str] | None] = {
            "scheduler": "idle",
            "last_tick_at": None,
            "last_tick_status": None,
            "last_tick_message": None,
            "last_candidates": 0,
            "last_dispatched": [],
        }

    def start(self) -> None:
        if not self._settings.scheduler_enabled:
            logger.info("sync scheduler is disabled")
            self._last_status["scheduler"] = "disabled"
            return
        if self._task and not self._task.done():
            return
        self._ensure_executor()
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("sync scheduler started")
        self._last_status["scheduler"] = "running"

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            await self._task
            logger.info("sync scheduler stopped")
        if self._executor is not None:
            # In-flight runs are left to finish on their worker threads.
            self._executor.shutdown(wait=False)
            self._executor = None
        self._last_status["scheduler"] = "stopped"

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        interval = max(5, self._settings.scheduler_poll_interval_seconds)
        next_tick_at = loop.time()
        while not self._stop_event.is_set():
            try:
                self.tick(now_local(self._settings))
            except Exception:
                logger.exception("sync scheduler tick failed")

            # Fixed cadence: the next tick is due one interval after this one started.
            next_tick_at += interval
            if next_tick_at < loop.time():
                next_tick_at = loop.time()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=next_tick_at - loop.time())
            except asyncio.TimeoutError:
                pass

    def tick(self, now: datetime | None = None) -> list[str]:
        """Dispatch every job that is due at ``now``; returns the dispatched job ids."""
        now = to_local(self._settings, now) if now is not None else now_local(self._settings)
        with self._tick_lock:
            return self._tick(now)

    def _tick(self, now: datetime) -> list[str]:
        self._last_status["last_tick_at"] = isoformat_utc(now)
        result, jobs = self._store.get_due_job_candidates()
        if result.status == "error":
            logger.error("could not fetch jobs for scheduling: %s", result.message)
            self._last_status["last_tick_status"] = "error"
            self._last_status["last_tick_message"] = result.message
            return []

        window_start = self._window_start(now)
        dispatched: list[str] = []
        for job in jobs:
            if job.is_archived or job.status not in _SCHEDULABLE_STATUSES:
                continue
            if not in_active_window(job, now.date()):
                logger.debug("job %s is outside its active window", job.id)
                continue
            try:
                fire_time = due_fire_time(job.cron_schedule, window_start, now)
            except (ValueError, KeyError) as exc:
                logger.error("could not parse cron schedule %r for job %s: %s", job.cron_schedule, job.id, exc)
                continue
            if fire_time is None:
                continue
            if self._last_fired.get(job.id) == fire_time:
                logger.debug("job %s already dispatched for %s", job.id, fire_time.isoformat())
                continue
            if self._dispatch(job.id):
                self._last_fired[job.id] = fire_time
                dispatched.append(job.id)
                logger.info("triggering job: %s (ID: %s) for %s", job.name or job.id, job.id, fire_time.isoformat())

        if self._last_tick_now is None or now > self._last_tick_now:
            self._last_tick_now = now
        self._last_status["last_tick_status"] = "ok"
        self._last_status["last_tick_message"] = f"checked {len(jobs)} jobs, dispatched {len(dispatched)}"
        self._last_status["last_candidates"] = len(jobs)
        self._last_status["last_dispatched"] = dispatched
        return dispatched

    def _window_start(self, now: datetime) -> datetime:
        """Start of the due window for a tick at ``now``.

        Normally ``now - lookback``. When the previous tick is older than that,
        the window reaches back to it so no fire time falls between two ticks,
        but never further than one poll interval past the lookback.
        """
        lookback = max(1, self._settings.scheduler_lookback_seconds)
        window_start = now - timedelta(seconds=lookback)
        if self._last_tick_now is not None and self._last_tick_now < window_start:
            max_catch_up = timedelta(seconds=lookback + max(5, self._settings.scheduler_poll_interval_seconds))
            window_start = max(self._last_tick_now, now - max_catch_up)
        return window_start

    def _claim(self, job_id: str) -> bool:
        if not self._registry.claim(job_id):
            logger.info("job %s is still running; not dispatching another run", job_id)
            return False
        if self._store.is_run_in_flight(job_id):
            self._registry.release(job_id)
            logger.info("job %s has a run in flight elsewhere; not dispatching another run", job_id)
            return False
        return True

    def _dispatch(self, job_id: str) -> bool:
        if not self._claim(job_id):
            return False
        try:
            future = self._ensure_executor().submit(self._run, job_id)
        except RuntimeError:
            self._registry.release(job_id)
            logger.exception("could not submit run for job %s", job_id)
            return False
        with self._futures_lock:
            self._futures[job_id] = future
        future.add_done_callback(lambda _f, key=job_id: self._forget_future(key))
        return True

    def _run(self, job_id: str) -> RunResult | None:
        try:
            result = self._pipeline.run_job(job_id)
            logger.info(
                "sync run finished: job=%s run=%s status=%s rows=%s duration=%ss",
                job_id,
                result.run_id,
                result.status.value,
                result.rows_synced,
                result.duration_in_seconds,
            )
            return result
        except Exception:
            logger.exception("sync run for job %s raised", job_id)
            return None
        finally:
            self._registry.release(job_id)

    def run_now(self, job_id: str) -> RunResult | None:
        """Run a job in the calling thread; None when a run for it is already in progress."""
        if not self._claim(job_id):
            return None
        try:
            return self._pipeline.run_job(job_id)
        finally:
            self._registry.release(job_id)

    def is_running(self, job_id: str) -> bool:
        return job_id in self._registry

    def _forget_future(self, job_id: str) -> None:
        with self._futures_lock:
            self._futures.pop(job_id, None)

    def join(self, timeout: float | None = None) -> None:
        with self._futures_lock:
            pending = list(self._futures.values())
        if pending:
            wait(pending, timeout=timeout)

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=max(1, self._settings.scheduler_max_workers),
                thread_name_prefix="sync-run",
            )
        return self._executor

    def get_status(self) -> dict[str, str | int | bool | list[str] | None]:
        return {
            "scheduler_enabled": self._settings.scheduler_enabled,
            "poll_interval_seconds": self._settings.scheduler_poll_interval_seconds,
            "lookback_seconds": self._settings.scheduler_lookback_seconds,
            "max_workers": self._settings.scheduler_max_workers,
            "running_jobs": self._registry.running(),
            **self._last_status,
        }

"""
Dispatch layer: hands normalized events to the event processor asynchronously.

Two interchangeable implementations share the Dispatcher interface:

RedisQueueDispatcher
    Durable queue on Redis. Jobs are keyed by an id derived from the event id,
    so enqueueing the same event twice is acknowledged as a duplicate. A pool
    of workers drains the queue, holding each job in an active list until it
    is acknowledged. A job interrupted by shutdown goes back to the waiting
    list, and jobs left active by a crashed process are requeued on start.
    Failed jobs are retried with exponential backoff (2s, 4s, 8s by default)
    and, once retries are exhausted, moved to a dead-letter list and reported
    through `on_dead_letter`.

InProcessDispatcher
    Fallback when no broker is reachable. Runs the handler as a background
    task in this process, once, with no retry. Ledger deduplication still
    applies; durability does not.

`build_dispatcher` picks one at startup. The Redis dispatcher also falls
back to the in-process one per call when the broker stops answering.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import redis.asyncio as redis
from pydantic import BaseModel
from redis.exceptions import RedisError

from stocksync.core.config import Settings
from stocksync.core.exceptions import DispatchError
from stocksync.integrations.events import StockEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[StockEvent], Awaitable[Any]]
DeadLetterHandler = Callable[[StockEvent, str], Awaitable[None]]

QUEUE_METHOD = "queue"
IN_PROCESS_METHOD = "in_process"


class EnqueueAck(BaseModel):
    accepted: bool
    job_id: str
    method: str
    duplicate: bool = False


class Dispatcher(ABC):
    method: str = ""

    @abstractmethod
    async def enqueue(self, event: StockEvent) -> EnqueueAck:
        """Submit an event for asynchronous processing"""
        pass

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @abstractmethod
    async def stats(self) -> Dict[str, int]:
        pass


class InProcessDispatcher(Dispatcher):
    method = IN_PROCESS_METHOD

    def __init__(self, handler: EventHandler, on_failure: Optional[DeadLetterHandler] = None):
        self.handler = handler
        self.on_failure = on_failure
        self._tasks: Set[asyncio.Task] = set()
        self.completed = 0
        self.failed = 0

    async def enqueue(self, event: StockEvent) -> EnqueueAck:
        task = asyncio.create_task(self._run(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"Dispatched {event.job_id} in-process (fallback, no retry)")
        return EnqueueAck(accepted=True, job_id=event.job_id, method=self.method)

    async def _run(self, event: StockEvent) -> None:
        try:
            await self.handler(event)
        except Exception as e:
            self.failed += 1
            logger.exception(f"In-process fallback processing of {event.job_id} failed; no retry available")
            if self.on_failure is not None:
                await self.on_failure(event, str(e))
        else:
            self.completed += 1

    async def stop(self) -> None:
        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} in-process job(s) to finish")
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stats(self) -> Dict[str, int]:
        return {"active": len(self._tasks), "completed": self.completed, "failed": self.failed}


class RedisQueueDispatcher(Dispatcher):
    method = QUEUE_METHOD

    def __init__(
        self,
        client: "redis.Redis",
        handler: EventHandler,
        queue_name: str = "stock-events",
        concurrency: int = 5,
        max_retries: int = 3,
        backoff_seconds: float = 2.0,
        completed_ttl: int = 24 * 3600,
        dead_letter_ttl: int = 7 * 24 * 3600,
        on_dead_letter: Optional[DeadLetterHandler] = None,
        fallback: Optional[Dispatcher] = None,
        poll_timeout: int = 1,
        promote_interval: float = 0.5,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.handler = handler
        self.queue_name = queue_name
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.completed_ttl = completed_ttl
        self.dead_letter_ttl = dead_letter_ttl
        self.on_dead_letter = on_dead_letter
        self.fallback = fallback
        self.poll_timeout = poll_timeout
        self.promote_interval = promote_interval
        self._clock = clock
        self._workers: List[asyncio.Task] = []
        self._running = False
        self._active = 0

    # -- keys -------------------------------------------------------------

    @property
    def waiting_key(self) -> str:
        return f"{self.queue_name}:waiting"

    @property
    def active_key(self) -> str:
        return f"{self.queue_name}:active"

    @property
    def delayed_key(self) -> str:
        return f"{self.queue_name}:delayed"

    @property
    def dead_key(self) -> str:
        return f"{self.queue_name}:dead"

    @property
    def stats_key(self) -> str:
        return f"{self.queue_name}:stats"

    def job_key(self, job_id: str) -> str:
        return f"{self.queue_name}:job:{job_id}"

    def backoff_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return self.backoff_seconds * (2 ** (attempt - 1))

    # -- producer ---------------------------------------------------------

    async def enqueue(self, event: StockEvent) -> EnqueueAck:
        job_id = event.job_id
        job = {
            "id": job_id,
            "event": event.model_dump(mode="json"),
            "attempts": 0,
            "status": "waiting",
            "enqueued_at": self._clock(),
        }
        try:
            created = await self.client.set(self.job_key(job_id), json.dumps(job), nx=True,
                                            ex=self.dead_letter_ttl)
            if not created:
                logger.info(f"Job {job_id} already queued or recently processed; skipping")
                return EnqueueAck(accepted=False, job_id=job_id, method=self.method, duplicate=True)
            await self.client.lpush(self.waiting_key, job_id)
        except (RedisError, OSError) as e:
            if self.fallback is None:
                raise DispatchError(f"Broker rejected job {job_id}: {str(e)}") from e
            logger.warning(f"Broker unreachable while enqueueing {job_id} ({str(e)}); using in-process fallback")
            return await self.fallback.enqueue(event)

        logger.debug(f"Queued job {job_id}")
        return EnqueueAck(accepted=True, job_id=job_id, method=self.method)

    # -- consumer ---------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        try:
            await self.requeue_active()
        except (RedisError, OSError) as e:
            logger.error(f"Could not requeue interrupted jobs on '{self.queue_name}': {str(e)}")
        self._workers = [asyncio.create_task(self._worker(i)) for i in range(self.concurrency)]
        self._workers.append(asyncio.create_task(self._promoter()))
        logger.info(f"Started {self.concurrency} queue worker(s) on '{self.queue_name}'")

    async def requeue_active(self) -> int:
        """Return jobs left in the active list by a stopped or crashed worker to the waiting list."""
        requeued = 0
        while await self.client.lmove(self.active_key, self.waiting_key, "RIGHT", "RIGHT") is not None:
            requeued += 1
        if requeued:
            logger.warning(f"Requeued {requeued} interrupted job(s) on '{self.queue_name}'")
        return requeued

    async def stop(self) -> None:
        self._running = False
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if self.fallback is not None:
            await self.fallback.stop()
        logger.info(f"Queue workers on '{self.queue_name}' stopped")

    async def _worker(self, index: int) -> None:
        while self._running:
            try:
                job_id = await self.next_job()
            except (RedisError, OSError) as e:
                logger.error(f"Worker {index} lost the broker: {str(e)}")
                await asyncio.sleep(1)
                continue
            if job_id is None:
                continue
            try:
                await self.run_job(job_id)
            except (RedisError, OSError) as e:
                logger.error(f"Worker {index} could not update job {job_id}: {str(e)}")

    async def next_job(self) -> Optional[str]:
        """Take the oldest waiting job, keeping it in the active list until acknowledged."""
        return await self.client.blmove(self.waiting_key, self.active_key, self.poll_timeout, "RIGHT", "LEFT")

    async def run_job(self, job_id: str) -> None:
        """Execute one job fetched from the waiting list."""
        raw = await self.client.get(self.job_key(job_id))
        if raw is None:
            logger.warning(f"Job {job_id} has no payload (expired?); dropping")
            await self.client.lrem(self.active_key, 1, job_id)
            return
        job = json.loads(raw)
        event = StockEvent.model_validate(job["event"])
        job["attempts"] = job.get("attempts", 0) + 1
        job["status"] = "active"

        self._active += 1
        try:
            await self.handler(event)
        except asyncio.CancelledError:
            # attempt is not counted; the job key still holds the previous state
            await self.client.rpush(self.waiting_key, job_id)
            await self.client.lrem(self.active_key, 1, job_id)
            logger.warning(f"Job {job_id} interrupted; returned to the waiting list")
            raise
        except Exception as e:
            await self._handle_failure(job, event, e)
        else:
            job["status"] = "completed"
            job["finished_at"] = self._clock()
            await self.client.set(self.job_key(job_id), json.dumps(job), ex=self.completed_ttl)
            await self.client.hincrby(self.stats_key, "completed", 1)
        finally:
            self._active -= 1
        await self.client.lrem(self.active_key, 1, job_id)

    async def _handle_failure(self, job: Dict[str, Any], event: StockEvent, error: Exception) -> None:
        job_id = job["id"]
        attempt = job["attempts"]
        job["last_error"] = str(error)

        if attempt <= self.max_retries:
            delay = self.backoff_for(attempt)
            retry_after = getattr(error, "retry_after", None)
            if retry_after:
                delay = max(delay, float(retry_after))
            job["status"] = "delayed"
            await self.client.set(self.job_key(job_id), json.dumps(job), ex=self.dead_letter_ttl)
            await self.client.zadd(self.delayed_key, {job_id: self._clock() + delay})
            logger.warning(f"Job {job_id} failed (attempt {attempt}/{self.max_retries + 1}): {str(error)}; "
                           f"retrying in {delay:.0f}s")
            return

        job["status"] = "dead_letter"
        job["finished_at"] = self._clock()
        await self.client.set(self.job_key(job_id), json.dumps(job), ex=self.dead_letter_ttl)
        await self.client.lpush(self.dead_key, job_id)
        await self.client.hincrby(self.stats_key, "failed", 1)
        logger.error(f"Job {job_id} exhausted {attempt} attempts; moved to dead-letter: {str(error)}")
        if self.on_dead_letter is not None:
            await self.on_dead_letter(event, str(error))

    async def promote_due(self) -> int:
        """Move delayed jobs whose time has come back to the waiting list."""
        due = await self.client.zrangebyscore(self.delayed_key, 0, self._clock())
        promoted = 0
        for job_id in due:
            # zrem decides which promoter wins if several processes race
            if await self.client.zrem(self.delayed_key, job_id):
                await self.client.lpush(self.waiting_key, job_id)
                promoted += 1
        return promoted

    async def _promoter(self) -> None:
        while self._running:
            try:
                await self.promote_due()
            except (RedisError, OSError) as e:
                logger.error(f"Delayed job promotion failed: {str(e)}")
            await asyncio.sleep(self.promote_interval)

    async def stats(self) -> Dict[str, int]:
        counters = await self.client.hgetall(self.stats_key) or {}
        return {
            "waiting": await self.client.llen(self.waiting_key),
            "delayed": await self.client.zcard(self.delayed_key),
            "dead_letter": await self.client.llen(self.dead_key),
            "active": self._active,
            "completed": int(counters.get("completed", 0)),
            "failed": int(counters.get("failed", 0)),
        }


async def build_dispatcher(settings: Settings, handler: EventHandler,
                           on_dead_letter: Optional[DeadLetterHandler] = None) -> Dispatcher:
    """Connect to the broker if configured and reachable; otherwise run in-process."""
    fallback = InProcessDispatcher(handler, on_failure=on_dead_letter)
    if not settings.REDIS_URL:
        logger.warning("REDIS_URL not set; events will be processed in-process (fallback, no retries)")
        return fallback

    client = redis.from_url(settings.REDIS_URL, decode_responses=True, socket_connect_timeout=2)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.warning(f"Broker at {settings.REDIS_URL} unreachable ({str(e)}); "
                       f"events will be processed in-process (fallback, no retries)")
        await client.aclose()
        return fallback

    logger.info(f"Broker connected: {settings.REDIS_URL}")
    return RedisQueueDispatcher(
        client,
        handler,
        queue_name=settings.QUEUE_NAME,
        concurrency=settings.QUEUE_CONCURRENCY,
        max_retries=settings.QUEUE_MAX_RETRIES,
        backoff_seconds=settings.QUEUE_BACKOFF_SECONDS,
        completed_ttl=settings.QUEUE_COMPLETED_TTL_SECONDS,
        dead_letter_ttl=settings.QUEUE_DEAD_LETTER_TTL_SECONDS,
        on_dead_letter=on_dead_letter,
        fallback=fallback,
    )

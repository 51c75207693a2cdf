# worker.py
import asyncio
import datetime as dt
import json
from typing import Awaitable, Callable, Dict, Optional

import redis

from config import (REDIS_URL, PING_STREAM, PING_GROUP, PING_CONSUMER,
                    QUEUE_CAPACITY, MAX_WORKERS)
from errors import QueueFullError, TrackingError
from ingest import IngestionService, parse_payload
from utils.variables import DEVICE_IDLE_DRAIN_S

from logging_config import get_logger

# ------------ Variable Declaration -----------
logger = get_logger("worker", "worker.log")

BATCH_SIZE = 100
BLOCK_MS = 5000


# =====================================================================
# Per-device ordered dispatch
# =====================================================================
class DeviceDispatcher:
    """
    One FIFO queue and one drain task per device, so pings of a device are
    processed strictly in submission order while different devices run in
    parallel. At most `max_workers` devices are processed at the same time.

    Queues are bounded: blocking submitters wait for room, non-blocking ones
    get QueueFullError (retryable). Accepted work is never dropped.
    """

    def __init__(self, handler: Callable[[dict], Awaitable], *,
                 queue_capacity: int = QUEUE_CAPACITY,
                 max_workers: int = MAX_WORKERS,
                 idle_drain_s: float = DEVICE_IDLE_DRAIN_S):
        self._handler = handler
        self._capacity = queue_capacity
        self._slots = asyncio.Semaphore(max_workers)
        self._idle_drain_s = idle_drain_s
        self._queues: Dict[int, asyncio.Queue] = {}
        self._drainers: Dict[int, asyncio.Task] = {}
        self._closed = False

    def pending(self, device_id: int) -> int:
        q = self._queues.get(device_id)
        return q.qsize() if q else 0

    def _queue_for(self, device_id: int) -> asyncio.Queue:
        q = self._queues.get(device_id)
        if q is None:
            q = asyncio.Queue(maxsize=self._capacity)
            self._queues[device_id] = q
            self._drainers[device_id] = asyncio.create_task(self._drain(device_id, q))
        return q

    async def submit(self, device_id: int, payload: dict, *, block: bool = True) -> asyncio.Future:
        """Queue a payload; the returned future resolves with the handler's result or error."""
        if self._closed:
            raise RuntimeError("dispatcher is closed")

        fut = asyncio.get_running_loop().create_future()
        q = self._queue_for(device_id)
        if block:
            await q.put((payload, fut))
        else:
            try:
                q.put_nowait((payload, fut))
            except asyncio.QueueFull:
                logger.warning(f"[dispatch] Queue full for device {device_id}, rejecting")
                raise QueueFullError(device_id, self._capacity)
        return fut

    async def _drain(self, device_id: int, q: asyncio.Queue) -> None:
        while True:
            try:
                payload, fut = await asyncio.wait_for(q.get(), timeout=self._idle_drain_s)
            except asyncio.TimeoutError:
                # no await between the emptiness check and removal → no lost submissions
                if q.empty():
                    self._queues.pop(device_id, None)
                    self._drainers.pop(device_id, None)
                    return
                continue

            try:
                async with self._slots:
                    result = await self._handler(payload)
            except Exception as e:
                if not fut.done():
                    fut.set_exception(e)
            else:
                if not fut.done():
                    fut.set_result(result)
            finally:
                q.task_done()

    async def close(self) -> None:
        """Stop accepting work, finish everything already queued, stop drain tasks."""
        self._closed = True
        for q in list(self._queues.values()):
            await q.join()
        tasks = list(self._drainers.values())
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._queues.clear()
        self._drainers.clear()


# ---------- Ensure Consumer Group ----------
async def init_group(r) -> None:
    try:
        # Start reading only NEW messages from now → id="$", create stream if missing
        r.xgroup_create(PING_STREAM, PING_GROUP, id="$", mkstream=True)
        logger.info("Consumer group created.")
    except redis.exceptions.ResponseError as e:
        if "BUSYGROUP" in str(e):
            logger.info("Consumer group already exists.")
        else:
            raise


def _ack(r, msg_id) -> None:
    try:
        r.xack(PING_STREAM, PING_GROUP, msg_id)
        r.xdel(PING_STREAM, msg_id)
    except Exception as rexc:
        logger.exception(f"Failed to ack/xdel message {msg_id}: {rexc}")


# =====================================================================
# One batch of stream records
# =====================================================================
async def handle_batch(r, dispatcher: DeviceDispatcher, msgs) -> int:
    """
    Submit every record to the dispatcher and wait for the outcomes.
    Acked: successes, malformed JSON, validation / unknown-device failures.
    Left pending for redelivery: retryable failures. Returns that count.
    """
    waiting = []

    for _, records in msgs or []:
        for _id, fields in records:
            try:
                payload = json.loads(fields[b"data"])
                device_id = parse_payload(payload, dt.datetime.now(dt.timezone.utc))["device_id"]
            except (KeyError, TypeError, ValueError) as je:
                # malformed message: ack & delete to avoid poison-pill
                logger.exception(f"Failed to decode record {_id}: {je}")
                _ack(r, _id)
                continue
            except TrackingError as ve:
                logger.warning(f"Rejected record {_id}: {ve}")
                _ack(r, _id)
                continue

            fut = await dispatcher.submit(device_id, payload, block=True)
            waiting.append((_id, device_id, fut))

    retry_later = 0
    outcomes = await asyncio.gather(*(f for _, _, f in waiting), return_exceptions=True)
    for (_id, device_id, _), outcome in zip(waiting, outcomes):
        if isinstance(outcome, TrackingError) and outcome.retryable:
            # DO NOT ack on retryable failure so the message is delivered again
            logger.warning(f"Retryable failure for record {_id} device {device_id}: {outcome}")
            retry_later += 1
        elif isinstance(outcome, TrackingError):
            logger.warning(f"Rejected record {_id} device {device_id}: {outcome}")
            _ack(r, _id)
        elif isinstance(outcome, BaseException):
            logger.error(f"Error processing record {_id} device {device_id}: {outcome!r}")
            retry_later += 1
        else:
            _ack(r, _id)
    return retry_later


# ---------- Main Worker Loop ----------
async def worker(r=None, service: Optional[IngestionService] = None) -> None:
    r = r or redis.from_url(REDIS_URL, decode_responses=False)
    service = service or IngestionService()
    dispatcher = DeviceDispatcher(service.ingest)

    logger.info("Worker starting, initializing consumer group...")
    await init_group(r)

    logger.info("Worker listening for Redis Stream messages...")
    # "0" re-reads this consumer's pending (unacked) entries, ">" only new ones
    read_from = "0"

    try:
        while True:
            try:
                # Blocking read via executor (call will block the threadpool, not the event loop)
                msgs = await asyncio.get_running_loop().run_in_executor(
                    None,
                    lambda: r.xreadgroup(PING_GROUP, PING_CONSUMER, {PING_STREAM: read_from},
                                         count=BATCH_SIZE, block=BLOCK_MS),
                )

                total = sum(len(rec[1]) for rec in msgs or [])
                if total:
                    logger.info(f"Fetched {total} records from stream")

                retry_later = await handle_batch(r, dispatcher, msgs)
                if retry_later:
                    read_from = "0"
                elif read_from == "0" and not total:
                    read_from = ">"

            except Exception as e:
                logger.exception(f"Worker loop encountered an error: {e}")

            # small sleep to avoid tight loop in case of unexpected fast failures
            await asyncio.sleep(0.1)
    finally:
        await dispatcher.close()

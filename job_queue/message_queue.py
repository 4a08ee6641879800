"""
Ordered Dispatch Queue — FIFO per partition, deduplicating, with a
dead-letter sink. Abstract interface with in-memory and Redis backends.

Contract:
  - send(body, partition_key, dedup_id, delay_seconds)
      delay_seconds must be within [0, max_delay_seconds]; a second send
      with the same dedup_id inside the dedup window is dropped and the
      original message id returned.
  - receive(max_messages)
      hands out at most the head of each partition, and nothing from a
      partition that still has a message in flight; within a partition,
      delivery follows send order.
  - ack(receipt)      terminal: the message is gone.
  - release(receipt)  make the message visible again for redelivery.
      A message not acked within the visibility timeout is released
      implicitly. Once a message has been delivered max_receive_count
      times without an ack it moves to the dead-letter sink.

Message envelope body schema (JSON):
  {"id": ..., "provider": ..., "endpoint": ..., "body": {...}}
"""
from __future__ import annotations

import asyncio
import json
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Callable, Optional

from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import QueueConfig
from models.schemas import MessageEnvelope

logger = structlog.get_logger()


class QueueError(Exception):
    """Rejected queue operation (bad parameters, unknown receipt)."""


@dataclass
class DeadLetter:
    message_id: str
    body: str
    partition_key: str
    dedup_id: str
    receive_count: int
    reason: str


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class DispatchQueue(ABC):
    """Abstract dispatch queue interface."""

    def __init__(
        self,
        max_delay_seconds: int = 900,
        max_receive_count: int = 5,
        visibility_timeout_seconds: float = 120,
        dedup_window_seconds: float = 86400,
    ):
        self.max_delay_seconds = max_delay_seconds
        self.max_receive_count = max_receive_count
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.dedup_window_seconds = dedup_window_seconds

    def _validate_send(self, partition_key: str, dedup_id: str, delay_seconds: int):
        if not partition_key:
            raise QueueError("partition_key is required")
        if not dedup_id:
            raise QueueError("dedup_id is required")
        if delay_seconds < 0 or delay_seconds > self.max_delay_seconds:
            raise QueueError(
                f"delay_seconds must be in [0, {self.max_delay_seconds}], got {delay_seconds}"
            )

    def _dlq_reason(self) -> str:
        return f"Exceeded {self.max_receive_count} attempts"

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def send(self, body: str, partition_key: str, dedup_id: str,
                   delay_seconds: int = 0) -> str:
        """Enqueue a message. Returns the message id."""
        ...

    @abstractmethod
    async def receive(self, max_messages: int = 5, wait_seconds: float = 0) -> list[MessageEnvelope]:
        """Deliver up to ``max_messages`` visible messages."""
        ...

    @abstractmethod
    async def ack(self, receipt_handle: str) -> bool:
        """Acknowledge a delivered message. Returns False for a stale receipt."""
        ...

    @abstractmethod
    async def release(self, receipt_handle: str) -> bool:
        """Return a delivered message for redelivery (or dead-letter it)."""
        ...

    @abstractmethod
    async def dead_letters(self, count: int = 10) -> list[DeadLetter]:
        ...

    @abstractmethod
    async def depth(self) -> int:
        """Messages pending or in flight."""
        ...


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

@dataclass
class _StoredMessage:
    message_id: str
    body: str
    partition_key: str
    dedup_id: str
    seq: int
    visible_at: float
    receive_count: int = 0
    receipt: Optional[str] = None
    inflight_until: float = 0.0

    def envelope(self) -> MessageEnvelope:
        return MessageEnvelope(
            message_id=self.message_id,
            receipt_handle=self.receipt or "",
            body=self.body,
            partition_key=self.partition_key,
            dedup_id=self.dedup_id,
            receive_count=self.receive_count,
        )


class InMemoryDispatchQueue(DispatchQueue):
    """
    Development/test queue with the full delivery contract.
    Single-process only — state lives in dicts on the event loop.

    ``clock`` drives delays, visibility and dedup expiry so tests can move
    time forward without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, **kwargs):
        super().__init__(**kwargs)
        self._clock = clock
        self._pending: dict[str, list[_StoredMessage]] = {}   # partition → messages by seq
        self._inflight: dict[str, _StoredMessage] = {}        # receipt → message
        self._locked: dict[str, int] = {}                     # partition → in-flight count
        self._dedup: dict[str, tuple[float, str]] = {}        # dedup_id → (expires_at, message_id)
        self._dlq: list[DeadLetter] = []
        self._seq = 0
        self.sent_count = 0

    async def connect(self):
        logger.info("inmemory_queue_connected")

    async def close(self):
        logger.info("inmemory_queue_closed", depth=await self.depth())

    # ── send ──────────────────────────────────────────────

    async def send(self, body: str, partition_key: str, dedup_id: str,
                   delay_seconds: int = 0) -> str:
        self._validate_send(partition_key, dedup_id, delay_seconds)
        now = self._clock()
        self._expire_dedup(now)

        existing = self._dedup.get(dedup_id)
        if existing:
            logger.info("duplicate_send_suppressed",
                        dedup_id=dedup_id,
                        message_id=existing[1])
            return existing[1]

        self._seq += 1
        msg = _StoredMessage(
            message_id=uuid.uuid4().hex,
            body=body,
            partition_key=partition_key,
            dedup_id=dedup_id,
            seq=self._seq,
            visible_at=now + delay_seconds,
        )
        self._pending.setdefault(partition_key, []).append(msg)
        self._dedup[dedup_id] = (now + self.dedup_window_seconds, msg.message_id)
        self.sent_count += 1
        logger.debug("message_sent",
                     message_id=msg.message_id,
                     partition=partition_key,
                     dedup_id=dedup_id,
                     delay_seconds=delay_seconds)
        return msg.message_id

    def _expire_dedup(self, now: float):
        expired = [k for k, (exp, _) in self._dedup.items() if exp <= now]
        for k in expired:
            del self._dedup[k]

    # ── receive ───────────────────────────────────────────

    async def receive(self, max_messages: int = 5, wait_seconds: float = 0) -> list[MessageEnvelope]:
        deadline = time.monotonic() + wait_seconds
        while True:
            batch = self._collect(max_messages)
            if batch or time.monotonic() >= deadline:
                return batch
            await asyncio.sleep(min(0.05, max(0.0, deadline - time.monotonic())))

    def _collect(self, max_messages: int) -> list[MessageEnvelope]:
        now = self._clock()
        self._reclaim_expired(now)
        batch: list[MessageEnvelope] = []

        for partition, msgs in self._pending.items():
            if len(batch) >= max_messages:
                break
            if self._locked.get(partition):
                continue
            # Only the head of a partition goes out, one at a time; a delayed
            # head holds back the rest of its partition.
            if not msgs or msgs[0].visible_at > now:
                continue
            msg = msgs.pop(0)
            msg.receive_count += 1
            msg.receipt = f"{msg.message_id}:{uuid.uuid4().hex[:8]}"
            msg.inflight_until = now + self.visibility_timeout_seconds
            self._inflight[msg.receipt] = msg
            self._locked[partition] = 1
            batch.append(msg.envelope())

        self._pending = {p: m for p, m in self._pending.items() if m}
        return batch

    def _reclaim_expired(self, now: float):
        expired = [r for r, m in self._inflight.items() if m.inflight_until <= now]
        for receipt in expired:
            msg = self._inflight.pop(receipt)
            self._unlock(msg.partition_key)
            logger.info("visibility_timeout_expired",
                        message_id=msg.message_id,
                        partition=msg.partition_key,
                        receive_count=msg.receive_count)
            self._requeue(msg, now)

    # ── ack / release ─────────────────────────────────────

    async def ack(self, receipt_handle: str) -> bool:
        msg = self._inflight.pop(receipt_handle, None)
        if msg is None:
            logger.warning("ack_unknown_receipt", receipt=receipt_handle)
            return False
        self._unlock(msg.partition_key)
        logger.debug("message_acked", message_id=msg.message_id)
        return True

    async def release(self, receipt_handle: str) -> bool:
        msg = self._inflight.pop(receipt_handle, None)
        if msg is None:
            logger.warning("release_unknown_receipt", receipt=receipt_handle)
            return False
        self._unlock(msg.partition_key)
        self._requeue(msg, self._clock())
        return True

    def _unlock(self, partition: str):
        remaining = self._locked.get(partition, 0) - 1
        if remaining > 0:
            self._locked[partition] = remaining
        else:
            self._locked.pop(partition, None)

    def _requeue(self, msg: _StoredMessage, now: float):
        msg.receipt = None
        if msg.receive_count >= self.max_receive_count:
            self._dlq.append(DeadLetter(
                message_id=msg.message_id,
                body=msg.body,
                partition_key=msg.partition_key,
                dedup_id=msg.dedup_id,
                receive_count=msg.receive_count,
                reason=self._dlq_reason(),
            ))
            logger.warning("job_moved_to_dlq",
                           message_id=msg.message_id,
                           partition=msg.partition_key,
                           attempts=msg.receive_count)
            return
        msg.visible_at = now
        msgs = self._pending.setdefault(msg.partition_key, [])
        msgs.append(msg)
        msgs.sort(key=lambda m: m.seq)

    # ── inspection ────────────────────────────────────────

    async def dead_letters(self, count: int = 10) -> list[DeadLetter]:
        return self._dlq[:count]

    async def depth(self) -> int:
        return sum(len(m) for m in self._pending.values()) + len(self._inflight)

    def snapshot(self) -> dict:
        return {
            "pending": sum(len(m) for m in self._pending.values()),
            "in_flight": len(self._inflight),
            "locked_partitions": sorted(self._locked),
            "dead_letters": len(self._dlq),
            "sent": self.sent_count,
        }


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

class RedisDispatchQueue(DispatchQueue):
    """
    Production queue backed by Redis.

    Keys (prefix = queue name):
      {q}:seq                 send order counter
      {q}:msg:{id}            hash: body, partition_key, dedup_id, visible_at, receive_count
      {q}:dedup:{dedup_id}    SET NX EX <window> → message id
      {q}:partitions          set of partitions with pending messages
      {q}:part:{partition}    sorted set, score = seq
      {q}:lock:{partition}    SET NX PX <visibility> → receipt (one message in flight)
      {q}:dlq                 list of JSON dead letters

    The partition lock expiring is the visibility timeout: the head message
    becomes deliverable again on the next receive.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379",
                 name: str = "jobspread-jobs", **kwargs):
        super().__init__(**kwargs)
        self._redis_url = redis_url
        self._name = name
        self._redis = None

    def _key(self, *parts: str) -> str:
        return ":".join((self._name,) + parts)

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._ping()
        logger.info("redis_queue_connected", url=self._redis_url, queue=self._name)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10), reraise=True)
    async def _ping(self):
        await self._redis.ping()

    async def close(self):
        if self._redis:
            await self._redis.aclose()

    async def send(self, body: str, partition_key: str, dedup_id: str,
                   delay_seconds: int = 0) -> str:
        self._validate_send(partition_key, dedup_id, delay_seconds)
        message_id = uuid.uuid4().hex

        claimed = await self._redis.set(
            self._key("dedup", dedup_id), message_id,
            nx=True, ex=int(self.dedup_window_seconds),
        )
        if not claimed:
            existing = await self._redis.get(self._key("dedup", dedup_id))
            logger.info("duplicate_send_suppressed", dedup_id=dedup_id, message_id=existing)
            return existing or message_id

        seq = await self._redis.incr(self._key("seq"))
        pipe = self._redis.pipeline()
        pipe.hset(self._key("msg", message_id), mapping={
            "body": body,
            "partition_key": partition_key,
            "dedup_id": dedup_id,
            "visible_at": str(time.time() + delay_seconds),
            "receive_count": "0",
        })
        pipe.zadd(self._key("part", partition_key), {message_id: seq})
        pipe.sadd(self._key("partitions"), partition_key)
        await pipe.execute()
        logger.debug("message_sent", message_id=message_id, partition=partition_key,
                     dedup_id=dedup_id, delay_seconds=delay_seconds)
        return message_id

    async def receive(self, max_messages: int = 5, wait_seconds: float = 0) -> list[MessageEnvelope]:
        deadline = time.monotonic() + wait_seconds
        while True:
            batch = await self._collect(max_messages)
            if batch or time.monotonic() >= deadline:
                return batch
            await asyncio.sleep(min(0.2, max(0.0, deadline - time.monotonic())))

    async def _collect(self, max_messages: int) -> list[MessageEnvelope]:
        batch: list[MessageEnvelope] = []
        partitions = await self._redis.smembers(self._key("partitions"))

        for partition in sorted(partitions):
            if len(batch) >= max_messages:
                break
            part_key = self._key("part", partition)
            head = await self._redis.zrange(part_key, 0, 0)
            if not head:
                await self._redis.srem(self._key("partitions"), partition)
                continue
            message_id = head[0]
            data = await self._redis.hgetall(self._key("msg", message_id))
            if not data:
                await self._redis.zrem(part_key, message_id)
                continue
            if float(data["visible_at"]) > time.time():
                continue

            receipt = f"{message_id}:{uuid.uuid4().hex[:8]}"
            locked = await self._redis.set(
                self._key("lock", partition), receipt,
                nx=True, px=int(self.visibility_timeout_seconds * 1000),
            )
            if not locked:
                continue

            count = await self._redis.hincrby(self._key("msg", message_id), "receive_count", 1)
            if count > self.max_receive_count:
                # Delivered max times and every delivery timed out.
                await self._dead_letter(message_id, data, count - 1)
                await self._redis.delete(self._key("lock", partition))
                continue

            batch.append(MessageEnvelope(
                message_id=message_id,
                receipt_handle=receipt,
                body=data["body"],
                partition_key=partition,
                dedup_id=data["dedup_id"],
                receive_count=count,
            ))
        return batch

    async def _owned(self, receipt_handle: str) -> Optional[tuple[str, dict]]:
        message_id = receipt_handle.split(":", 1)[0]
        data = await self._redis.hgetall(self._key("msg", message_id))
        if not data:
            return None
        current = await self._redis.get(self._key("lock", data["partition_key"]))
        if current != receipt_handle:
            return None
        return message_id, data

    async def ack(self, receipt_handle: str) -> bool:
        owned = await self._owned(receipt_handle)
        if owned is None:
            logger.warning("ack_unknown_receipt", receipt=receipt_handle)
            return False
        message_id, data = owned
        pipe = self._redis.pipeline()
        pipe.zrem(self._key("part", data["partition_key"]), message_id)
        pipe.delete(self._key("msg", message_id))
        pipe.delete(self._key("lock", data["partition_key"]))
        await pipe.execute()
        return True

    async def release(self, receipt_handle: str) -> bool:
        owned = await self._owned(receipt_handle)
        if owned is None:
            logger.warning("release_unknown_receipt", receipt=receipt_handle)
            return False
        message_id, data = owned
        count = int(data.get("receive_count", 0))
        if count >= self.max_receive_count:
            await self._dead_letter(message_id, data, count)
        else:
            await self._redis.hset(self._key("msg", message_id), "visible_at", str(time.time()))
        await self._redis.delete(self._key("lock", data["partition_key"]))
        return True

    async def _dead_letter(self, message_id: str, data: dict, receive_count: int):
        letter = DeadLetter(
            message_id=message_id,
            body=data["body"],
            partition_key=data["partition_key"],
            dedup_id=data["dedup_id"],
            receive_count=receive_count,
            reason=self._dlq_reason(),
        )
        pipe = self._redis.pipeline()
        pipe.lpush(self._key("dlq"), json.dumps(asdict(letter)))
        pipe.zrem(self._key("part", data["partition_key"]), message_id)
        pipe.delete(self._key("msg", message_id))
        await pipe.execute()
        logger.warning("job_moved_to_dlq",
                       message_id=message_id,
                       partition=data["partition_key"],
                       attempts=receive_count)

    async def dead_letters(self, count: int = 10) -> list[DeadLetter]:
        raw = await self._redis.lrange(self._key("dlq"), 0, count - 1)
        return [DeadLetter(**json.loads(r)) for r in raw]

    async def depth(self) -> int:
        partitions = await self._redis.smembers(self._key("partitions"))
        total = 0
        for partition in partitions:
            total += await self._redis.zcard(self._key("part", partition))
        return total


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_message_queue(config: Optional[QueueConfig] = None) -> DispatchQueue:
    """Factory: create the configured queue backend."""
    config = config or QueueConfig()
    common = dict(
        max_delay_seconds=config.max_delay_seconds,
        max_receive_count=config.max_receive_count,
        visibility_timeout_seconds=config.visibility_timeout_seconds,
        dedup_window_seconds=config.dedup_window_seconds,
    )

    if config.backend == "redis":
        queue = RedisDispatchQueue(redis_url=config.redis_url, name=config.url, **common)
    else:
        queue = InMemoryDispatchQueue(**common)

    logger.info("queue_created", backend=config.backend, queue=config.url)
    return queue

"""
MODULE OVERVIEW:
The persistent outbox: a durable, per-session FIFO of outbound sends that survives
backend outages and process restarts.

WHAT IS HAPPENING HERE:
Each session owns an ordered list of `QueuedSendOperation`s. A drain takes the head,
calls the injected send function, and either drops it (sent) or records the error,
moves it to the tail and reschedules the whole session after a jittered backoff.
Moving to the tail keeps one poison message from blocking everything behind it.

Drains for one session never overlap (`_processing` + one timer handle per session);
different sessions drain independently on the same event loop. Going offline cancels
every pending timer; coming back online reschedules every non-empty session.

The whole map is rewritten to `<persist_dir>/queue.json` on an interval, only when
something changed. Storage problems are logged and reported as `queue:error`, never
raised.
"""
import asyncio
import json
import os
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from vex_client.shared.client_utils import backoff_delay, new_operation_id
from vex_client.shared.config import OutboxConfig
from vex_client.shared.errors import VexError
from vex_client.shared.events import EventEmitter
from vex_client.shared.models import QueuedSendOperation, QueueStats

SendFunction = Callable[[str, str, Any, Any], Awaitable[Any]]

QUEUE_FILE = "queue.json"


class PersistentOutbox:
    def __init__(
        self,
        config: OutboxConfig | None = None,
        send_fn: Optional[SendFunction] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or OutboxConfig()
        self.ev = EventEmitter()
        self._send_fn = send_fn
        self._clock = clock

        self._queues: Dict[str, List[QueuedSendOperation]] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._processing: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._persist_task: asyncio.Task | None = None
        self._online = True
        self._dirty = False
        self._destroyed = False

        self._load()
        self._ensure_persist_task()

    @property
    def path(self) -> Path:
        return Path(self.config.persist_dir) / QUEUE_FILE

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def send_function(self) -> Optional[SendFunction]:
        return self._send_fn

    def set_send_function(self, fn: SendFunction) -> None:
        self._send_fn = fn

    def start(self) -> None:
        """Start the persistence loop and drain anything loaded from disk. Needs a running loop."""
        self._ensure_persist_task()
        if self._online:
            for session_id, queue in self._queues.items():
                if queue:
                    self._schedule(session_id)

    # ==========================
    # ONLINE / OFFLINE
    # ==========================
    def set_online(self) -> None:
        if self._online:
            return
        logger.info("Outbox: server online, processing queued operations")
        self._online = True
        for session_id, queue in self._queues.items():
            if queue:
                self._schedule(session_id)

    def set_offline(self) -> None:
        if not self._online:
            return
        logger.info("Outbox: server offline, queuing operations")
        self._online = False
        # In-flight sends are left to finish.
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

    # ==========================
    # QUEUE API
    # ==========================
    def enqueue(self, session_id: str, target: str, payload: Any, options: Any = None) -> QueuedSendOperation:
        queue = self._queues.setdefault(session_id, [])

        if len(queue) >= self.config.max_queue_size:
            removed = queue.pop(0)
            logger.warning(f"session_id={session_id} Outbox full, removed oldest operation {removed.id}")
            self.ev.emit("message:expired", removed)

        op = QueuedSendOperation(
            id=new_operation_id(),
            session_id=session_id,
            target=target,
            payload=payload,
            options=options,
            enqueued_at=self._clock(),
        )
        queue.append(op)
        self._dirty = True

        logger.info(f"session_id={session_id} op_id={op.id} event=queued")
        self.ev.emit("message:queued", op)

        self._ensure_persist_task()
        if self._online:
            self._schedule(session_id)
        return op

    def get_stats(self) -> QueueStats:
        by_session = {sid: len(q) for sid, q in self._queues.items()}
        return QueueStats(
            total_sessions=len(self._queues),
            total_operations=sum(by_session.values()),
            by_session=by_session,
        )

    def get_pending(self, session_id: str) -> List[QueuedSendOperation]:
        return list(self._queues.get(session_id, ()))

    def remove(self, session_id: str, op_id: str) -> bool:
        queue = self._queues.get(session_id)
        if not queue:
            return False
        for op in queue:
            if op.id == op_id:
                queue.remove(op)
                self._dirty = True
                return True
        return False

    def clear_session(self, session_id: str) -> None:
        self._queues.pop(session_id, None)
        self._dirty = True
        timer = self._timers.pop(session_id, None)
        if timer:
            timer.cancel()

    def clear_all(self) -> None:
        self._queues.clear()
        self._dirty = True
        self._cancel_timers()

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        if self._persist_task:
            self._persist_task.cancel()
            self._persist_task = None
        self._cancel_timers()
        for task in list(self._tasks):
            task.cancel()
        self.save()
        self.ev.remove_all_listeners()

    # ==========================
    # DRAIN
    # ==========================
    def retry_delay(self, attempts: int) -> float:
        return backoff_delay(
            attempts - 1,
            self.config.base_delay_s,
            self.config.max_delay_s,
            jitter=0.2,
        )

    def _schedule(self, session_id: str, delay_s: float = 0.0) -> None:
        if not self._online or self._destroyed:
            return
        if session_id in self._timers or session_id in self._processing:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"session_id={session_id} no running loop, drain deferred to start()")
            return
        self._timers[session_id] = loop.call_later(delay_s, self._fire, session_id)

    def _fire(self, session_id: str) -> None:
        self._timers.pop(session_id, None)
        task = asyncio.ensure_future(self.process_queue(session_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _cancel_timers(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

    async def process_queue(self, session_id: str) -> None:
        if self._send_fn is None:
            logger.warning("Outbox: no send function configured")
            return
        if not self._online:
            logger.debug(f"session_id={session_id} Outbox offline, skipping drain")
            return
        if session_id in self._processing:
            return

        queue = self._queues.get(session_id)
        if not queue:
            self.ev.emit("queue:empty", session_id)
            return

        self._processing.add(session_id)
        retry_in: float | None = None
        try:
            self.ev.emit("queue:processing", session_id, len(queue))
            logger.info(f"session_id={session_id} Outbox processing {len(queue)} operations")
            self._purge_expired(session_id, queue)

            while queue and self._online:
                op = queue[0]

                if op.attempt_count >= self.config.max_attempts:
                    logger.error(f"session_id={session_id} op_id={op.id} Max attempts reached")
                    queue.pop(0)
                    self._dirty = True
                    self.ev.emit("message:failed", op, VexError("Max attempts reached"))
                    continue

                op.attempt_count += 1
                op.last_attempt_at = self._clock()
                self._dirty = True
                logger.info(f"session_id={session_id} op_id={op.id} Sending (attempt {op.attempt_count})")

                try:
                    result = await self._send_fn(op.session_id, op.target, op.payload, op.options)
                except Exception as e:
                    op.last_error = str(e) or type(e).__name__
                    self._dirty = True
                    logger.error(f"session_id={session_id} op_id={op.id} Failed to send: {op.last_error}")

                    if not self._online:
                        logger.info(f"session_id={session_id} Outbox went offline, pausing drain")
                        return

                    retry_in = self.retry_delay(op.attempt_count)
                    logger.info(f"session_id={session_id} op_id={op.id} Retrying in {retry_in:.2f}s")
                    if op in queue:
                        queue.remove(op)
                        queue.append(op)
                    return

                if op in queue:
                    queue.remove(op)
                self._dirty = True
                logger.info(f"session_id={session_id} op_id={op.id} event=sent")
                self.ev.emit("message:sent", op, result)
        finally:
            self._processing.discard(session_id)
            if retry_in is not None:
                self._schedule(session_id, retry_in)

        if queue and self._online:
            self._schedule(session_id, 1.0)
        elif not queue:
            if self._queues.get(session_id) is queue:
                del self._queues[session_id]
            self.ev.emit("queue:empty", session_id)

    def _purge_expired(self, session_id: str, queue: List[QueuedSendOperation]) -> None:
        now = self._clock()
        expired = [op for op in queue if now - op.enqueued_at > self.config.max_age_s]
        for op in expired:
            queue.remove(op)
            self.ev.emit("message:expired", op)
        if expired:
            self._dirty = True
            logger.info(f"session_id={session_id} Outbox cleaned {len(expired)} expired operations")

    # ==========================
    # PERSISTENCE
    # ==========================
    def _ensure_persist_task(self) -> None:
        if self._persist_task is not None or self._destroyed:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self._persist_task = asyncio.create_task(self._persist_loop())

    async def _persist_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.persist_interval_s)
            if self._dirty:
                self.save()

    def flush(self) -> None:
        if self._dirty:
            self.save()

    def save(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            data = {
                sid: [op.model_dump(mode="json") for op in queue]
                for sid, queue in self._queues.items()
                if queue
            }
            tmp = self.path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
            self._dirty = False
            logger.debug(f"Outbox saved {len(data)} queues to {self.path}")
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Outbox error saving to disk: {e}")
            self.ev.emit("queue:error", e)

    def _load(self) -> None:
        if not self.path.exists():
            logger.debug("Outbox: no persisted queue found")
            return

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("persisted outbox is not a JSON object")
            loaded = {
                sid: [QueuedSendOperation.model_validate(item) for item in items]
                for sid, items in data.items()
            }
        except (OSError, ValueError, TypeError) as e:
            logger.error(f"Outbox error loading from disk, starting empty: {e}")
            return

        now = self._clock()
        total_loaded = 0
        total_expired = 0
        for sid, ops in loaded.items():
            valid = [op for op in ops if now - op.enqueued_at <= self.config.max_age_s]
            total_expired += len(ops) - len(valid)
            if valid:
                self._queues[sid] = valid
                total_loaded += len(valid)

        if total_expired:
            self._dirty = True
        logger.info(f"Outbox loaded {total_loaded} operations from disk ({total_expired} expired)")

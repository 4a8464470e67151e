"""
Durable outbox for work that runs after an order is committed.

Wallet debits, refunds, stock restores, notifications and emails are
written as `outbox_task` documents keyed by a dedupe key, then processed.
A key that was already enqueued is ignored, so retried status changes never
schedule the same side effect twice. Handlers that fail are retried on the
next drain until `max_attempts`; domain errors are not retried.

A worker claims a task by moving it to `running` with a lease. If the worker
dies mid-task the lease runs out and the next drain claims the task again.
"""
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from database import Storage
from errors import SettlementError
from schemas import OutboxTask

logger = logging.getLogger(__name__)

OUTBOX = "outbox_task"

Handler = Callable[[Dict[str, Any]], None]


class TaskDeferred(Exception):
    """Raised by a handler that has to wait for another task to settle.

    The task goes back to `pending` without using up an attempt.
    """


class Outbox:
    def __init__(self, storage: Storage, max_attempts: int = 5, lease_seconds: float = 300.0):
        self.storage = storage
        self.max_attempts = max_attempts
        self.lease_seconds = lease_seconds
        self._handlers: Dict[str, Handler] = {}

    def register(self, kind: str, handler: Handler) -> None:
        self._handlers[kind] = handler

    def enqueue(self, kind: str, payload: Dict[str, Any], key: str) -> Optional[str]:
        task = OutboxTask(kind=kind, payload=payload)
        if not self.storage.create_once(OUTBOX, key, task.model_dump()):
            logger.debug("Outbox task %s already queued", key)
            return None
        return key

    def status(self, key: str) -> Optional[str]:
        task = self.storage.get_document(OUTBOX, key)
        return task["status"] if task else None

    def dispatch(self, keys: Iterable[Optional[str]]) -> None:
        """Run freshly enqueued tasks now; failures stay queued for `drain`."""
        for key in keys:
            if key is not None:
                self._run(key)

    def drain(self, limit: int = 100) -> Dict[str, int]:
        """Run pending tasks and reclaim running ones whose lease expired."""
        due = {
            "$or": [
                {"status": "pending"},
                {"status": "running", "lease_expires": {"$lt": time.time()}},
            ]
        }
        tasks = self.storage.get_documents(OUTBOX, due, sort=[("created_at", 1)], limit=limit)
        counts = {"done": 0, "failed": 0, "retry": 0}
        for task in tasks:
            if task["status"] == "running":
                logger.warning("Reclaiming outbox task %s after its lease expired", task["_id"])
                claim = {"status": "running", "lease_expires": task["lease_expires"]}
            else:
                claim = {"status": "pending"}
            outcome = self._run(task["_id"], claim)
            if outcome:
                counts[outcome] += 1
        return counts

    def failed(self) -> List[Dict[str, Any]]:
        return self.storage.get_documents(OUTBOX, {"status": "failed"})

    def _run(self, key: str, claim: Optional[Dict[str, Any]] = None) -> Optional[str]:
        task = self.storage.update_document(
            OUTBOX,
            key,
            {"status": "running", "lease_expires": time.time() + self.lease_seconds},
            expected=claim or {"status": "pending"},
        )
        if task is None:
            return None

        attempts = int(task.get("attempts", 0)) + 1
        handler = self._handlers.get(task["kind"])
        if handler is None:
            logger.error("No handler for outbox task %s (%s)", key, task["kind"])
            self._finish(key, "failed", attempts, "no handler")
            return "failed"

        try:
            handler(task["payload"])
        except TaskDeferred as exc:
            logger.info("Outbox task %s deferred: %s", key, exc)
            self._finish(key, "pending", attempts - 1, str(exc))
            return "retry"
        except SettlementError as exc:
            logger.error("Outbox task %s failed permanently: %s %s", key, exc.code, exc.detail())
            self._finish(key, "failed", attempts, exc.message)
            return "failed"
        except Exception as exc:
            status = "pending" if attempts < self.max_attempts else "failed"
            logger.exception("Outbox task %s failed (attempt %d/%d)", key, attempts, self.max_attempts)
            self._finish(key, status, attempts, repr(exc))
            return "retry" if status == "pending" else "failed"

        self._finish(key, "done", attempts, None)
        return "done"

    def _finish(self, key: str, status: str, attempts: int, error: Optional[str]) -> None:
        self.storage.update_document(
            OUTBOX, key, {"status": status, "attempts": attempts, "last_error": error, "lease_expires": None}
        )

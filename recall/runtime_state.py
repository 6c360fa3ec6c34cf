"""
Runtime state for the recall process.

This module provides the background embedding worker: semantic-index
writes are queued and executed serially by a single asyncio task, so the
code that saves a memory or closes a session never waits on the network.
Failures are recorded and logged, never raised to the submitter.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class EmbeddingTask:
    job_id: str
    task_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    requested_at: str = ""


class EmbeddingWorker:
    """Background worker that pushes embeddings to the semantic index serially."""

    def __init__(
        self,
        enabled: Optional[bool] = None,
        queue_maxsize: Optional[int] = None,
        recent_limit: int = 30,
    ) -> None:
        if enabled is None or queue_maxsize is None:
            from .config import get_settings

            settings = get_settings()
            enabled = settings.embed_worker_enabled if enabled is None else enabled
            queue_maxsize = settings.embed_queue_maxsize if queue_maxsize is None else queue_maxsize
        self._enabled = bool(enabled)
        self._queue_maxsize = max(1, int(queue_maxsize))
        self._recent_limit = max(1, recent_limit)

        self._queue: asyncio.Queue[EmbeddingTask] = asyncio.Queue(maxsize=self._queue_maxsize)
        self._index_factory: Optional[Callable[[], Any]] = None
        self._runner: Optional[asyncio.Task] = None

        self._recent_jobs: Deque[Dict[str, Any]] = deque(maxlen=self._recent_limit)
        self._enqueued_total = 0
        self._succeeded_total = 0
        self._failed_total = 0
        self._dropped_total = 0
        self._active_job_id: Optional[str] = None
        self._last_error: Optional[str] = None
        self._last_finished_at: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def ensure_started(self, index_factory: Callable[[], Any]) -> None:
        if not self._enabled:
            return
        self._index_factory = index_factory
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self._run_loop(), name="runtime-embed-worker")

    async def shutdown(self, drain_timeout: float = 0.0) -> None:
        """Stop the worker, first giving queued jobs up to drain_timeout seconds."""
        runner = self._runner
        self._runner = None
        if runner is None:
            return
        if drain_timeout > 0 and not runner.done():
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "embed_worker_drain_timeout",
                    pending=self._queue.qsize(),
                    timeout_sec=drain_timeout,
                )
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            pass

    async def wait_idle(self) -> None:
        """Block until every queued job has been processed."""
        if self._runner is not None:
            await self._queue.join()

    def _submit(self, task_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self._enabled:
            return {"queued": False, "reason": "embed_worker_disabled"}
        if self._runner is None or self._runner.done():
            return {"queued": False, "reason": "embed_worker_not_started"}

        task = EmbeddingTask(
            job_id=f"emb-{uuid.uuid4().hex[:10]}",
            task_type=task_type,
            payload=payload,
            requested_at=_utc_iso_now(),
        )
        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull:
            self._dropped_total += 1
            self._record(task, status="dropped", error="queue_full")
            logger.warning("embed_job_dropped", job_id=task.job_id, task_type=task_type)
            return {"queued": False, "dropped": True, "job_id": task.job_id, "reason": "queue_full"}

        self._enqueued_total += 1
        return {"queued": True, "job_id": task.job_id}

    def submit_memory(self, memory_id: int, fact: str, category: str) -> Dict[str, Any]:
        return self._submit(
            "upsert_memory", {"memory_id": memory_id, "fact": fact, "category": category}
        )

    def submit_session(self, session_id: str, title: str, summary: str, date: str) -> Dict[str, Any]:
        return self._submit(
            "upsert_session",
            {"session_id": session_id, "title": title, "summary": summary, "date": date},
        )

    def submit_delete(self, vector_id: str) -> Dict[str, Any]:
        return self._submit("delete_vector", {"vector_id": vector_id})

    def status(self) -> Dict[str, Any]:
        return {
            "enabled": self._enabled,
            "running": self._runner is not None and not self._runner.done(),
            "queue_depth": self._queue.qsize(),
            "queue_maxsize": self._queue_maxsize,
            "active_job_id": self._active_job_id,
            "stats": {
                "enqueued": self._enqueued_total,
                "succeeded": self._succeeded_total,
                "failed": self._failed_total,
                "dropped": self._dropped_total,
            },
            "last_error": self._last_error,
            "last_finished_at": self._last_finished_at,
            "recent_jobs": list(self._recent_jobs),
        }

    async def _run_loop(self) -> None:
        while True:
            task = await self._queue.get()
            self._active_job_id = task.job_id
            try:
                ok = await self._execute_task(task)
            except asyncio.CancelledError:
                self._queue.task_done()
                raise
            except Exception as exc:
                self._failed_total += 1
                self._last_error = str(exc)
                self._record(task, status="failed", error=str(exc))
                logger.warning(
                    "embed_job_failed", job_id=task.job_id, task_type=task.task_type, error=str(exc)
                )
            else:
                if ok:
                    self._succeeded_total += 1
                    self._record(task, status="succeeded")
                else:
                    self._failed_total += 1
                    self._last_error = "index_rejected"
                    self._record(task, status="failed", error="index_rejected")
            finally:
                if self._active_job_id == task.job_id:
                    self._active_job_id = None
            self._queue.task_done()

    async def _execute_task(self, task: EmbeddingTask) -> bool:
        factory = self._index_factory
        if not callable(factory):
            raise RuntimeError("embed worker is not initialized with an index factory.")
        index = factory()

        payload = task.payload
        if task.task_type == "upsert_memory":
            result = index.upsert_memory(
                int(payload["memory_id"]), payload["fact"], payload["category"]
            )
        elif task.task_type == "upsert_session":
            result = index.upsert_session_summary(
                payload["session_id"], payload["title"], payload["summary"], payload["date"]
            )
        elif task.task_type == "delete_vector":
            result = index.delete_vector(payload["vector_id"])
        else:
            raise ValueError(f"Unknown embed task type '{task.task_type}'.")

        if inspect.isawaitable(result):
            result = await result
        return bool(result)

    def _record(self, task: EmbeddingTask, *, status: str, error: Optional[str] = None) -> None:
        finished_at = _utc_iso_now()
        record = {
            "job_id": task.job_id,
            "task_type": task.task_type,
            "requested_at": task.requested_at,
            "finished_at": finished_at,
            "status": status,
        }
        if error:
            record["error"] = error
        self._last_finished_at = finished_at
        self._recent_jobs.appendleft(record)


class RuntimeState:
    def __init__(self) -> None:
        self.embed_worker = EmbeddingWorker()

    async def ensure_started(self, index_factory: Callable[[], Any]) -> None:
        await self.embed_worker.ensure_started(index_factory)

    async def shutdown(self, drain_timeout: float = 0.0) -> None:
        await self.embed_worker.shutdown(drain_timeout=drain_timeout)


runtime_state = RuntimeState()

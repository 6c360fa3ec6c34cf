import asyncio

import pytest

from recall.runtime_state import EmbeddingWorker


class _FakeIndex:
    def __init__(self, reject=()) -> None:
        self.calls = []
        self._reject = set(reject)

    async def upsert_memory(self, memory_id, fact, category):
        await asyncio.sleep(0)
        self.calls.append(("upsert_memory", memory_id, fact, category))
        return memory_id not in self._reject

    async def upsert_session_summary(self, session_id, title, summary, date):
        self.calls.append(("upsert_session", session_id, title, summary, date))
        return True

    async def delete_vector(self, vector_id):
        if vector_id == "explode":
            raise RuntimeError("index exploded")
        self.calls.append(("delete_vector", vector_id))
        return True


@pytest.mark.asyncio
async def test_worker_runs_jobs_in_submission_order() -> None:
    index = _FakeIndex(reject={2})
    worker = EmbeddingWorker(enabled=True, queue_maxsize=16)
    await worker.ensure_started(lambda: index)
    try:
        receipts = [
            worker.submit_memory(1, "User likes tea", "general"),
            worker.submit_session("s1", "Trip", "Planning Tokyo", "2024-01-01"),
            worker.submit_memory(2, "rejected", "general"),
            worker.submit_delete("explode"),
            worker.submit_delete("session:s0"),
        ]
        assert all(receipt["queued"] for receipt in receipts)

        await worker.wait_idle()

        assert [call[0] for call in index.calls] == [
            "upsert_memory",
            "upsert_session",
            "upsert_memory",
            "delete_vector",
        ]
        status = worker.status()
        assert status["running"] is True
        assert status["queue_depth"] == 0
        assert status["stats"] == {"enqueued": 5, "succeeded": 3, "failed": 2, "dropped": 0}
        assert status["last_error"] is not None
        assert len(status["recent_jobs"]) == 5
        assert status["recent_jobs"][0]["status"] == "succeeded"
        assert {job["status"] for job in status["recent_jobs"]} == {"succeeded", "failed"}
    finally:
        await worker.shutdown()
    assert worker.status()["running"] is False


@pytest.mark.asyncio
async def test_submit_returns_immediately_and_drops_when_full() -> None:
    index = _FakeIndex()
    worker = EmbeddingWorker(enabled=True, queue_maxsize=1)
    await worker.ensure_started(lambda: index)
    try:
        first = worker.submit_memory(1, "a", "general")
        second = worker.submit_memory(2, "b", "general")

        assert first["queued"] is True
        assert second == {"queued": False, "dropped": True, "job_id": second["job_id"], "reason": "queue_full"}
        assert worker.status()["stats"]["dropped"] == 1
    finally:
        await worker.shutdown(drain_timeout=1.0)
    assert index.calls == [("upsert_memory", 1, "a", "general")]


@pytest.mark.asyncio
async def test_submit_without_running_worker_is_not_queued() -> None:
    disabled = EmbeddingWorker(enabled=False, queue_maxsize=8)
    await disabled.ensure_started(lambda: _FakeIndex())
    assert disabled.submit_memory(1, "a", "general") == {"queued": False, "reason": "embed_worker_disabled"}
    assert disabled.status()["running"] is False

    idle = EmbeddingWorker(enabled=True, queue_maxsize=8)
    assert idle.submit_delete("memory:1") == {"queued": False, "reason": "embed_worker_not_started"}
    assert idle.status()["stats"]["enqueued"] == 0

"""
Unit tests for the delivery queue
"""

import asyncio

import pytest

from engine.services.delivery_queue import DeliveryQueue
from engine.services.presenter import OverlayPresenter
from shared.errors import PresentationError
from shared.models.alert import AlertStatus, QueuedAlert
from shared.models.template import RenderedAlert
from shared.repositories.alert_queue import AlertQueueRepository
from shared.store import MemoryStore


def _payload() -> RenderedAlert:
    return RenderedAlert(html="<b>hi</b>", css="", duration=0)


async def _settle(queue: DeliveryQueue) -> None:
    await asyncio.wait_for(queue.wait_idle(), timeout=2)


class TestDeliveryQueue:
    """Test suite for DeliveryQueue"""

    @pytest.fixture
    def repo(self, store):
        return AlertQueueRepository(store)

    @pytest.fixture
    async def queue(self, repo, sink):
        q = DeliveryQueue(repo, sink, min_delay=0)
        yield q
        await q.stop()

    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, queue, sink):
        """[5, 1, 5] presents the priority-1 alert first, then the 5s in order"""
        queue.pause()
        first = await queue.enqueue("follow", _payload(), priority=5)
        urgent = await queue.enqueue("raid", _payload(), priority=1)
        second = await queue.enqueue("follow", _payload(), priority=5)
        queue.resume()
        await _settle(queue)

        assert sink.presented == [urgent, first, second]

    @pytest.mark.asyncio
    async def test_many_priorities_non_decreasing(self, queue, sink):
        priorities = [3, 5, 1, 3, 2, 5, 1, 4]
        queue.pause()
        ids = [await queue.enqueue("follow", _payload(), priority=p) for p in priorities]
        queue.resume()
        await _settle(queue)

        order = {alert_id: i for i, alert_id in enumerate(ids)}
        presented = [(priorities[order[a]], order[a]) for a in sink.presented]
        assert presented == sorted(presented)

    @pytest.mark.asyncio
    async def test_default_priority(self, queue):
        queue.pause()
        alert_id = await queue.enqueue("follow", _payload())
        assert queue.pending[0].id == alert_id
        assert queue.pending[0].priority == 5

    @pytest.mark.asyncio
    async def test_single_flight(self, queue, sink):
        """Never more than one alert in the sink at a time"""
        for _ in range(5):
            await queue.enqueue("cheer", _payload())
        await _settle(queue)

        assert len(sink.presented) == 5
        assert sink.max_active == 1

    @pytest.mark.asyncio
    async def test_failed_presentation_recorded_and_queue_continues(self, queue, sink):
        queue.pause()
        broken = await queue.enqueue("donation", _payload())
        healthy = await queue.enqueue("donation", _payload())
        sink.failures[broken] = "renderer offline"
        queue.resume()
        await _settle(queue)

        history = {a.id: a for a in await queue.get_history()}
        assert history[broken].status == AlertStatus.FAILED
        assert history[broken].error == "renderer offline"
        assert history[healthy].status == AlertStatus.COMPLETED
        assert sink.presented == [broken, healthy]

    @pytest.mark.asyncio
    async def test_pause_does_not_cancel_in_flight(self, queue, sink):
        sink.gate = asyncio.Event()
        first = await queue.enqueue("follow", _payload())
        second = await queue.enqueue("follow", _payload())
        while queue.current is None:
            await asyncio.sleep(0)

        queue.pause()
        assert queue.get_status() == {"queue_length": 1, "processing": True, "paused": True}
        sink.gate.set()
        await _settle(queue)

        assert sink.presented == [first]
        assert [a.id for a in queue.pending] == [second]

        queue.resume()
        await _settle(queue)
        assert sink.presented == [first, second]

    @pytest.mark.asyncio
    async def test_clear_removes_pending_records(self, queue, repo):
        queue.pause()
        await queue.enqueue("follow", _payload())
        await queue.enqueue("raid", _payload())

        assert await queue.clear() == 2
        assert queue.get_status()["queue_length"] == 0
        assert await repo.list_pending() == []

    @pytest.mark.asyncio
    async def test_records_move_to_history(self, queue, repo):
        alert_id = await queue.enqueue("follow", _payload(), data={"username": "nii"})
        await _settle(queue)

        assert await repo.list_pending() == []
        item = await repo.get_history_item(alert_id)
        assert item.status == AlertStatus.COMPLETED
        assert item.data == {"username": "nii"}
        assert item.started_at is not None and item.completed_at is not None

    @pytest.mark.asyncio
    async def test_history_limit(self, repo, sink):
        queue = DeliveryQueue(repo, sink, min_delay=0, history_limit=3)
        for _ in range(5):
            await queue.enqueue("follow", _payload())
        await _settle(queue)
        await queue.stop()

        assert len(await queue.get_history()) == 3

    @pytest.mark.asyncio
    async def test_on_complete_only_for_success(self, repo, sink):
        completed = []
        queue = DeliveryQueue(repo, sink, min_delay=0, on_complete=completed.append)
        queue.pause()
        ok = await queue.enqueue("follow", _payload())
        bad = await queue.enqueue("follow", _payload())
        sink.failures[bad] = "nope"
        queue.resume()
        await _settle(queue)
        await queue.stop()

        assert [a.id for a in completed] == [ok]

    @pytest.mark.asyncio
    async def test_restore_after_restart(self, repo, sink):
        waiting = QueuedAlert(event_type="raid", payload=_payload(), priority=2)
        interrupted = QueuedAlert(
            event_type="follow", payload=_payload(), status=AlertStatus.PROCESSING
        )
        await repo.save_pending(waiting)
        await repo.save_pending(interrupted)

        queue = DeliveryQueue(repo, sink, min_delay=0)
        assert await queue.restore() == 1
        await _settle(queue)
        await queue.stop()

        assert sink.presented == [waiting.id]
        history = {a.id: a for a in await repo.get_history()}
        assert history[interrupted.id].status == AlertStatus.FAILED
        assert history[interrupted.id].error == "Interrupted by restart"


class UnreachableStore(MemoryStore):
    async def set(self, key, value):
        raise ConnectionError("overlay store unreachable")

    async def delete(self, key):
        raise ConnectionError("overlay store unreachable")


async def _no_wait(seconds: float) -> None:
    await asyncio.sleep(0)


class TestOverlayPresenterFailures:
    @pytest.mark.asyncio
    async def test_publish_failure_raises_presentation_error(self):
        presenter = OverlayPresenter(UnreachableStore(), sleep=_no_wait)
        alert = QueuedAlert(event_type="follow", payload=_payload())

        with pytest.raises(PresentationError) as exc:
            await presenter(alert)

        assert isinstance(exc.value.__cause__, ConnectionError)
        assert presenter.current is None
        assert presenter.presented_total == 0

    @pytest.mark.asyncio
    async def test_queue_records_presenter_outage(self, store):
        presenter = OverlayPresenter(UnreachableStore(), sleep=_no_wait)
        queue = DeliveryQueue(AlertQueueRepository(store), presenter, min_delay=0)
        try:
            alert_id = await queue.enqueue("raid", _payload())
            await _settle(queue)
        finally:
            await queue.stop()

        (item,) = await queue.get_history()
        assert item.id == alert_id
        assert item.status == AlertStatus.FAILED
        assert item.error.startswith("Overlay publish failed: ConnectionError")

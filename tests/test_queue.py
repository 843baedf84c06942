from __future__ import annotations

import threading

from src.runtime.queue import QueueManager, retry_delay_s


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def _queue(db_path: str, clock: FakeClock, **kw: object) -> QueueManager:
    return QueueManager(db_path=db_path, clock=clock, **kw)  # type: ignore[arg-type]


def test_retry_delay_doubles_and_caps() -> None:
    assert [retry_delay_s(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]
    assert retry_delay_s(20) == 300.0
    assert retry_delay_s(3, base_s=5, max_s=12) == 12.0


def test_items_are_claimed_in_fifo_order(db_path: str) -> None:
    q = _queue(db_path, FakeClock())
    ids = [q.enqueue({"query": f"q{i}"}) for i in range(3)]
    claimed = [q.dequeue_next() for _ in range(3)]
    assert [c.item_id for c in claimed] == ids
    assert all(c.status == "running" for c in claimed)
    assert q.dequeue_next() is None


def test_delayed_item_waits_for_its_time(db_path: str) -> None:
    clock = FakeClock()
    q = _queue(db_path, clock)
    q.enqueue({"query": "later"}, delay_s=30)
    assert q.dequeue_next() is None
    clock.now += 30
    assert q.dequeue_next() is not None


def test_concurrent_claims_hand_out_an_item_once(db_path: str) -> None:
    q = _queue(db_path, FakeClock())
    q.enqueue({"query": "only"})

    barrier = threading.Barrier(4)
    results: list[object] = []
    lock = threading.Lock()

    def claim() -> None:
        barrier.wait()
        item = q.dequeue_next()
        with lock:
            results.append(item)

    threads = [threading.Thread(target=claim) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert len(results) == 4
    assert sum(1 for r in results if r is not None) == 1


def test_failing_item_retries_with_backoff_then_fails(db_path: str) -> None:
    clock = FakeClock()
    q = _queue(db_path, clock, max_attempts=3, backoff_base_s=1.0)
    item_id = q.enqueue({"query": "always fails"})

    attempts_seen = []
    for expected_delay in (1.0, 2.0, None):
        item = q.dequeue_next()
        assert item is not None and item.item_id == item_id
        after = q.fail(item_id, "boom")
        attempts_seen.append(after.attempts)
        if expected_delay is None:
            assert after.status == "failed"
        else:
            assert after.status == "pending"
            assert after.next_attempt_at == clock.now + expected_delay
            assert q.dequeue_next() is None
            clock.now += expected_delay

    assert attempts_seen == [1, 2, 3]
    clock.now += 10_000
    assert q.dequeue_next() is None
    final = q.get(item_id)
    assert final.status == "failed"
    assert final.last_error == "boom"
    assert q.stats()["failed"] == 1


def test_retried_item_goes_to_the_back(db_path: str) -> None:
    clock = FakeClock()
    q = _queue(db_path, clock, backoff_base_s=0.0)
    first = q.enqueue({"query": "a"})
    second = q.enqueue({"query": "b"})

    assert q.dequeue_next().item_id == first
    q.fail(first, "flaky")
    assert q.dequeue_next().item_id == second
    assert q.dequeue_next().item_id == first


def test_defer_does_not_use_an_attempt(db_path: str) -> None:
    clock = FakeClock()
    q = _queue(db_path, clock)
    item_id = q.enqueue({"query": "a"})
    q.dequeue_next()
    assert q.defer(item_id, 5.0, reason="lane busy") is True

    item = q.get(item_id)
    assert item.status == "pending"
    assert item.attempts == 0
    assert q.dequeue_next() is None
    clock.now += 5
    assert q.dequeue_next().item_id == item_id
    assert q.complete(item_id, result="done") is True
    assert q.get(item_id).attempts == 1
    assert q.get(item_id).status == "completed"

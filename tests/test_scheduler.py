from __future__ import annotations

import threading
import time

import pytest

from fakes import failing_task, timed_task
from ocrserver.scheduler import BoundedPool, ConcurrencyScheduler


def _max_overlap(results) -> int:
    events = sorted([(r["start"], 1) for r in results] + [(r["end"], -1) for r in results],
                    key=lambda e: (e[0], e[1]))
    running = peak = 0
    for _, delta in events:
        running += delta
        peak = max(peak, running)
    return peak


def test_bounded_pool_limits_and_tracks_peak():
    pool = BoundedPool("test", 2)
    inside = []
    lock = threading.Lock()

    def work():
        with pool.slot():
            with lock:
                inside.append(pool.in_use)
            time.sleep(0.05)

    threads = [threading.Thread(target=work) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert max(inside) <= 2
    assert pool.peak == 2
    assert pool.in_use == 0


def test_bounded_pool_acquire_times_out():
    pool = BoundedPool("test", 1)
    assert pool.acquire()
    assert not pool.acquire(timeout=0.05)
    pool.release()
    assert pool.acquire(timeout=0.05)


def test_bounded_pool_rejects_zero():
    with pytest.raises(ValueError):
        BoundedPool("test", 0)


def test_job_pool_per_root(make_config, tmp_path):
    from ocrserver.config import WatchRoot

    a, b = WatchRoot(tmp_path / "a"), WatchRoot(tmp_path / "b")
    scheduler = ConcurrencyScheduler(make_config(roots=(a, b), max_files=3))

    assert scheduler.job_pool(a) is not scheduler.job_pool(b)
    assert scheduler.job_pool(a).limit == 3


def test_pages_never_exceed_max_pgs(make_config):
    scheduler = ConcurrencyScheduler(make_config(max_pgs=2), worker_fn=timed_task)
    tasks = [{"n": i, "sleep": 0.4} for i in range(5)]

    results = scheduler.run_pages(tasks, desc="doc.pdf")

    assert sorted(r["n"] for r in results) == [0, 1, 2, 3, 4]
    assert _max_overlap(results) <= 2
    assert len({r["pid"] for r in results}) <= 2


def test_no_new_pages_after_a_failure(make_config):
    scheduler = ConcurrencyScheduler(make_config(max_pgs=1), worker_fn=failing_task)
    tasks = [{"n": i, "sleep": 0.05, "fail": i == 1} for i in range(6)]

    results = scheduler.run_pages(tasks, desc="doc.pdf")

    assert [r["n"] for r in results] == [0, 1]
    assert results[-1]["error"] == "boom"


def test_broken_worker_initialization_fails_the_pages(make_config):
    scheduler = ConcurrencyScheduler(make_config(max_pgs=2, ocr_backend="fakes.NoSuchEngine"),
                                     worker_fn=timed_task)
    results = scheduler.run_pages([{"n": i} for i in range(3)], desc="doc.pdf")

    assert results
    assert all(r.get("error") for r in results)


def test_empty_task_list(config):
    assert ConcurrencyScheduler(config).run_pages([]) == []

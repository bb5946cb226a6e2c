import asyncio
import threading

import pytest

from m365_admin.batch import BatchProcessor, chunked, run_batch
from m365_admin.config import BatchConfig


def no_sleep_recorder():
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    return sleeps, sleep


def test_chunked_preserves_order_and_sizes():
    assert list(chunked(list(range(7)), 3)) == [[0, 1, 2], [3, 4, 5], [6]]
    assert list(chunked([], 3)) == []


def test_chunked_rejects_bad_size():
    with pytest.raises(ValueError):
        list(chunked([1], 0))


@pytest.mark.parametrize("kwargs", [
    {"chunk_size": 0},
    {"max_concurrency": 0},
    {"delay_ms": -1},
])
def test_batch_config_validation(kwargs):
    with pytest.raises(ValueError):
        BatchConfig(**kwargs)


def test_empty_input_does_nothing():
    sleeps, sleep = no_sleep_recorder()
    result = asyncio.run(BatchProcessor(BatchConfig(), sleep=sleep).run([], lambda x: x))
    assert (result.total, result.processed, result.failed, result.chunks) == (0, 0, 0, 0)
    assert sleeps == []


def test_every_item_attempted_once_and_failures_counted():
    attempts = []

    async def work(item):
        attempts.append(item)
        if item % 4 == 0:
            raise RuntimeError(f"bad {item}")
        return item * 2

    sleeps, sleep = no_sleep_recorder()
    config = BatchConfig(chunk_size=5, max_concurrency=2, delay_ms=250)
    result = asyncio.run(BatchProcessor(config, sleep=sleep).run(range(12), work))

    assert sorted(attempts) == list(range(12))
    assert result.total == 12
    assert result.failed == 3
    assert result.processed == 9
    assert result.processed + result.failed == result.total
    assert result.chunks == 3
    # Delay only between chunks
    assert sleeps == [0.25, 0.25]
    assert [f.index for f in result.failures] == [0, 4, 8]
    assert result.failures[0].error == "RuntimeError: bad 0"


def test_no_sleep_for_single_chunk():
    sleeps, sleep = no_sleep_recorder()
    asyncio.run(BatchProcessor(BatchConfig(chunk_size=20), sleep=sleep).run(range(20), lambda x: x))
    assert sleeps == []


def test_concurrency_is_bounded():
    state = {"in_flight": 0, "peak": 0}

    async def work(item):
        state["in_flight"] += 1
        state["peak"] = max(state["peak"], state["in_flight"])
        await asyncio.sleep(0.01)
        state["in_flight"] -= 1

    config = BatchConfig(chunk_size=10, max_concurrency=3, delay_ms=0)
    result = asyncio.run(BatchProcessor(config).run(range(10), work))
    assert result.processed == 10
    assert state["peak"] == 3


def test_chunks_run_sequentially():
    order = []

    async def work(item):
        order.append(("start", item))
        await asyncio.sleep(0.001 * (3 - item % 3))
        order.append(("end", item))

    config = BatchConfig(chunk_size=3, max_concurrency=3, delay_ms=0)
    asyncio.run(BatchProcessor(config).run(range(6), work))
    last_end_first_chunk = max(i for i, e in enumerate(order) if e[0] == "end" and e[1] < 3)
    first_start_second_chunk = min(i for i, e in enumerate(order) if e[0] == "start" and e[1] >= 3)
    assert last_end_first_chunk < first_start_second_chunk


def test_sync_work_runs_in_worker_threads():
    main_thread = threading.get_ident()
    seen = []

    def work(item):
        seen.append(threading.get_ident())
        return item

    result = run_batch(range(4), work, BatchConfig(delay_ms=0))
    assert result.processed == 4
    assert all(t != main_thread for t in seen)


def test_on_item_reports_each_outcome():
    outcomes = {}

    def work(item):
        if item == "b":
            raise ValueError("nope")
        return item.upper()

    run_batch(["a", "b", "c"], work, BatchConfig(delay_ms=0),
              on_item=lambda i, item, outcome: outcomes.__setitem__(i, outcome))
    assert outcomes[0].ok and outcomes[0].value == "A"
    assert not outcomes[1].ok and outcomes[1].error == "ValueError: nope"
    assert outcomes[2].value == "C"


def test_failures_are_logged(caplog):
    def work(item):
        raise KeyError(item)

    with caplog.at_level("ERROR", logger="m365_admin.batch"):
        result = run_batch([1], work, BatchConfig(delay_ms=0))
    assert result.failed == 1
    assert "Batch item 0 failed" in caplog.text


def test_result_to_dict():
    result = run_batch([1, 2], lambda x: 1 / (x - 1), BatchConfig(delay_ms=0))
    data = result.to_dict()
    assert data["total"] == 2
    assert data["failed"] == 1
    assert data["failures"][0]["item"] == 1
    assert data["failures"][0]["error"].startswith("ZeroDivisionError")

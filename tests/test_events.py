"""Tests for the progress notifier and the bounded job log buffer."""

import re

import pytest

from datapipe.modules.jobs.events import JobEvent, JobLogBuffer, ProgressNotifier

pytestmark = pytest.mark.anyio


async def test_publish_fans_out_to_subscribers() -> None:
    notifier = ProgressNotifier()
    first, second = notifier.subscribe(), notifier.subscribe()

    notifier.publish(JobEvent(job_id=1, type="progress", progress=50))

    assert (await first.get()).progress == 50
    assert (await second.get()).job_id == 1


async def test_unsubscribed_queue_gets_nothing() -> None:
    notifier = ProgressNotifier()
    queue = notifier.subscribe()
    notifier.unsubscribe(queue)
    notifier.publish(JobEvent(job_id=1, type="completed"))
    assert queue.empty()


async def test_full_queue_drops_events_without_blocking() -> None:
    notifier = ProgressNotifier(max_queue_size=1)
    queue = notifier.subscribe()

    notifier.publish(JobEvent(job_id=1, type="progress", progress=10))
    notifier.publish(JobEvent(job_id=1, type="progress", progress=20))

    assert queue.qsize() == 1
    assert queue.get_nowait().progress == 10


def test_log_lines_are_timestamped() -> None:
    logs = JobLogBuffer()
    logs.add(7, "Job enqueued")
    [line] = logs.get(7)
    assert re.fullmatch(r"\[\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}\+00:00\] Job enqueued", line)


def test_log_buffer_keeps_most_recent_lines() -> None:
    logs = JobLogBuffer(max_lines=3)
    for i in range(5):
        logs.add(1, f"line {i}")
    assert [line.split("] ", 1)[1] for line in logs.get(1)] == ["line 2", "line 3", "line 4"]


def test_log_buffer_evicts_least_recent_job() -> None:
    logs = JobLogBuffer(max_lines=10, max_jobs=2)
    logs.add(1, "a")
    logs.add(2, "b")
    logs.add(1, "c")
    logs.add(3, "d")

    assert logs.get(2) == []
    assert len(logs.get(1)) == 2
    assert len(logs.get(3)) == 1


def test_unknown_job_has_no_logs() -> None:
    assert JobLogBuffer().get(999) == []

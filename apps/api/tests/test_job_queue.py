from unittest.mock import patch

import fakeredis
import pytest
from redis import Redis
from rq.job import Job
from rq.registry import ScheduledJobRegistry

from services.delivery import DEFERRED, MAX_DELIVERY_DEFERRALS, deliver_generation_job
from services.errors import DeliveryTransientError, QueueUnavailable
from services.job_queue import (
    enqueue_delivery_job,
    enqueue_generation_job,
    get_delivery_queue,
    get_generation_queue,
    schedule_delivery_retry,
)

REQUEST_ID = "3f2b6c1e-8a51-4c1e-9a0e-5b7d1f2a9c44"


@pytest.fixture
def redis_conn():
    conn = fakeredis.FakeStrictRedis()
    with patch("services.job_queue.get_redis_connection", return_value=conn):
        yield conn


class _ThrottledRuntime:
    def __init__(self, retry_after):
        self.retry_after = retry_after
        self.dispatcher = self

    async def deliver(self, request_id):
        return None

    def run(self, coro):
        coro.close()
        raise DeliveryTransientError("Telegram rate limit", retry_after=self.retry_after)


def test_generation_job_is_stored_with_retry_policy(redis_conn):
    job = enqueue_generation_job(REQUEST_ID)

    assert job.id == f"generation-{REQUEST_ID}"
    assert get_generation_queue(redis_conn).job_ids == [job.id]
    stored = Job.fetch(job.id, connection=redis_conn)
    assert stored.func_name == "services.generation_worker.process_generation_job"
    assert stored.args == (REQUEST_ID,)
    assert stored.retries_left == 2
    assert stored.retry_intervals == [10, 30, 90]


def test_delivery_job_is_stored_on_delivery_queue(redis_conn):
    job = enqueue_delivery_job(REQUEST_ID)

    assert job.id == f"deliver-{REQUEST_ID}"
    assert get_delivery_queue(redis_conn).job_ids == [job.id]
    assert Job.fetch(job.id, connection=redis_conn).func_name == "services.delivery.deliver_generation_job"


def test_redis_outage_is_reported_as_queue_unavailable():
    unreachable = Redis(host="127.0.0.1", port=1, socket_connect_timeout=0.2)
    with patch("services.job_queue.get_redis_connection", return_value=unreachable):
        with pytest.raises(QueueUnavailable):
            enqueue_generation_job(REQUEST_ID)


def test_throttled_delivery_is_scheduled_after_wait(redis_conn):
    job = schedule_delivery_retry(REQUEST_ID, 45, deferrals=1)

    registry = ScheduledJobRegistry(queue=get_delivery_queue(redis_conn))
    assert job.id in registry.get_job_ids()
    assert get_delivery_queue(redis_conn).job_ids == []
    assert job.kwargs == {"deferrals": 1}


def test_delivery_entrypoint_defers_on_retry_after():
    with (
        patch("services.runtime.get_runtime", return_value=_ThrottledRuntime(retry_after=45)),
        patch("services.delivery.schedule_delivery_retry") as schedule,
    ):
        outcome = deliver_generation_job(REQUEST_ID)

    assert outcome["outcome"] == DEFERRED
    schedule.assert_called_once_with(REQUEST_ID, 45, deferrals=1)


def test_delivery_entrypoint_stops_deferring_after_limit():
    with (
        patch("services.runtime.get_runtime", return_value=_ThrottledRuntime(retry_after=45)),
        patch("services.delivery.schedule_delivery_retry") as schedule,
    ):
        with pytest.raises(DeliveryTransientError):
            deliver_generation_job(REQUEST_ID, deferrals=MAX_DELIVERY_DEFERRALS)

    schedule.assert_not_called()


def test_delivery_entrypoint_without_wait_uses_queue_retry():
    with (
        patch("services.runtime.get_runtime", return_value=_ThrottledRuntime(retry_after=None)),
        patch("services.delivery.schedule_delivery_retry") as schedule,
    ):
        with pytest.raises(DeliveryTransientError):
            deliver_generation_job(REQUEST_ID)

    schedule.assert_not_called()

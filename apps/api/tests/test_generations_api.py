from unittest.mock import patch

import pytest
from sqlalchemy.future import select

from models.credit_transaction import CreditTransaction
from models.generation_request import GenerationRequest
from services.errors import QueueUnavailable


class _FakeJob:
    def __init__(self, job_id: str):
        self.id = job_id
        self.origin = "generation_jobs"


def _enqueue_noop(request_id: str):
    return _FakeJob(f"generation-{request_id}")


async def _requests_for(session_maker, user_id):
    async with session_maker() as db:
        result = await db.execute(select(GenerationRequest).where(GenerationRequest.user_id == user_id))
        return result.scalars().all()


@pytest.mark.asyncio
async def test_create_generation_reserves_and_enqueues(api_client, session_maker, make_user, load_subscription, auth_headers):
    user_id = await make_user("api-user", balance=10)
    with patch("services.generations.enqueue_generation_job", side_effect=_enqueue_noop) as enqueue:
        response = await api_client.post(
            "/generate/worksheet",
            json={"subject": "Biology", "topic": "Cells", "questionsCount": 5},
            headers=auth_headers(user_id),
        )

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["status"] == "pending"
    assert payload["creditCost"] == 2
    request_id = payload["requestId"]
    enqueue.assert_called_once_with(request_id)

    assert (await load_subscription(user_id)).credits_balance == 8
    requests = await _requests_for(session_maker, user_id)
    assert len(requests) == 1
    assert requests[0].queue_job_id == f"generation-{request_id}"

    async with session_maker() as db:
        result = await db.execute(
            select(CreditTransaction).where(CreditTransaction.generation_request_id == request_id)
        )
        charges = result.scalars().all()
    assert [(entry.type, entry.amount) for entry in charges] == [("debit", 2)]

    status_resp = await api_client.get(f"/generate/{request_id}", headers=auth_headers(user_id))
    assert status_resp.status_code == 200
    assert status_resp.json() == {"success": True, "status": {"status": "pending"}}


@pytest.mark.asyncio
async def test_insufficient_credits_rejected_before_enqueue(api_client, session_maker, make_user, load_subscription, auth_headers):
    user_id = await make_user("poor-user", balance=5)
    with patch("services.generations.enqueue_generation_job", side_effect=_enqueue_noop) as enqueue:
        response = await api_client.post(
            "/generate/presentation",
            json={"inputText": "The water cycle"},
            headers=auth_headers(user_id),
        )

    assert response.status_code == 402
    payload = response.json()
    assert payload["success"] is False
    assert payload["error"] == "insufficient_credits"
    enqueue.assert_not_called()
    assert await _requests_for(session_maker, user_id) == []
    assert (await load_subscription(user_id)).credits_balance == 5


@pytest.mark.asyncio
async def test_invalid_params_do_not_reserve(api_client, session_maker, make_user, load_subscription, auth_headers):
    user_id = await make_user("invalid-user", balance=10)
    with patch("services.generations.enqueue_generation_job", side_effect=_enqueue_noop) as enqueue:
        missing_topic = await api_client.post(
            "/generate/vocabulary",
            json={"wordsCount": 10},
            headers=auth_headers(user_id),
        )
        unknown_type = await api_client.post("/generate/horoscope", json={}, headers=auth_headers(user_id))

    assert missing_topic.status_code == 422
    assert missing_topic.json()["error"] == "validation_error"
    assert unknown_type.status_code == 422
    enqueue.assert_not_called()
    assert (await load_subscription(user_id)).credits_balance == 10


@pytest.mark.asyncio
async def test_queue_unavailable_fails_and_refunds(api_client, session_maker, make_user, load_subscription, auth_headers):
    user_id = await make_user("queue-down-user", balance=10)
    with patch(
        "services.generations.enqueue_generation_job",
        side_effect=QueueUnavailable("Generation queue unavailable"),
    ):
        response = await api_client.post(
            "/generate/lesson-plan",
            json={"topic": "Volcanoes", "duration": 45},
            headers=auth_headers(user_id),
        )

    assert response.status_code == 503
    assert response.json()["error"] == "queue_unavailable"

    requests = await _requests_for(session_maker, user_id)
    assert len(requests) == 1
    assert requests[0].status == "failed"
    assert requests[0].generation_type == "lesson_plan"
    assert requests[0].error
    assert (await load_subscription(user_id)).credits_balance == 10


@pytest.mark.asyncio
async def test_status_polling_is_scoped_and_read_only(api_client, session_maker, make_user, auth_headers):
    user_id = await make_user("poll-user")
    other_id = await make_user("poll-other")
    with patch("services.generations.enqueue_generation_job", side_effect=_enqueue_noop):
        created = await api_client.post(
            "/generate/text",
            json={"prompt": "Write a haiku about homework"},
            headers=auth_headers(user_id),
        )
    request_id = created.json()["requestId"]
    before = (await _requests_for(session_maker, user_id))[0]

    for _ in range(3):
        response = await api_client.get(f"/generate/{request_id}", headers=auth_headers(user_id))
        assert response.json()["status"] == {"status": "pending"}

    after = (await _requests_for(session_maker, user_id))[0]
    assert after.updated_at == before.updated_at
    assert after.attempts == before.attempts

    foreign = await api_client.get(f"/generate/{request_id}", headers=auth_headers(other_id))
    assert foreign.status_code == 404
    assert foreign.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_generation_requires_session(api_client):
    response = await api_client.post("/generate/quiz", json={"topic": "Maps"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_history_lists_newest_first(api_client, make_user, auth_headers):
    user_id = await make_user("history-user")
    with patch("services.generations.enqueue_generation_job", side_effect=_enqueue_noop):
        first = await api_client.post("/generate/message", json={"formData": {"event": "trip"}}, headers=auth_headers(user_id))
        second = await api_client.post("/generate/quiz", json={"topic": "Maps"}, headers=auth_headers(user_id))

    response = await api_client.get("/generate/history?limit=10", headers=auth_headers(user_id))
    assert response.status_code == 200
    payload = response.json()
    assert payload["total"] == 2
    assert [item["id"] for item in payload["generations"]] == [
        second.json()["requestId"],
        first.json()["requestId"],
    ]
    assert payload["generations"][0]["generation_type"] == "quiz"

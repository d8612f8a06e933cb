import asyncio
import datetime

import pytest

from models import Interview
from vapi_session import VoiceWebhookHandler, WebhookError, parse_timestamp


def call_event(event_type, call_id="call-1", started="2025-03-01T10:00:00Z", ended="2025-03-01T10:06:20Z"):
    call = {
        "id": call_id,
        "startedAt": started,
        "metadata": {"interviewId": "iv1", "userId": "u_hustle"},
    }
    if ended:
        call["endedAt"] = ended
    return {"type": event_type, "call": call}


@pytest.fixture
def handler(session_factory, ledger):
    return VoiceWebhookHandler(session_factory, ledger)


async def _interview(session_factory):
    async with session_factory() as db:
        return await db.get(Interview, "iv1")


def test_parse_timestamp_normalizes_to_naive_utc():
    assert parse_timestamp("2025-03-01T12:00:00+02:00") == datetime.datetime(2025, 3, 1, 10, 0)
    assert parse_timestamp("2025-03-01T10:00:00Z") == datetime.datetime(2025, 3, 1, 10, 0)


async def test_call_start_records_start_time(handler, session_factory, add_interview):
    await add_interview()
    result = await handler.handle(call_event("call-start", ended=None))
    assert result == {"status": "processed"}
    interview = await _interview(session_factory)
    assert interview.start_time == datetime.datetime(2025, 3, 1, 10, 0)


async def test_call_end_deducts_rounded_up_minutes(handler, ledger, session_factory, add_interview):
    await add_interview()
    result = await handler.handle(call_event("call-end"))
    assert result == {"status": "processed", "duration_minutes": 7, "remaining_minutes": 23}

    interview = await _interview(session_factory)
    assert interview.duration == 7
    assert interview.end_time == datetime.datetime(2025, 3, 1, 10, 6, 20)


async def test_duplicate_call_end_deducts_once(handler, ledger, add_interview):
    await add_interview()
    first = await handler.handle(call_event("call-end"))
    second = await handler.handle(call_event("call-end"))
    assert first["status"] == "processed"
    assert second == {"status": "duplicate"}
    assert await ledger.get_minutes("u_hustle") == 23


async def test_concurrent_duplicate_delivery_deducts_once(handler, ledger, add_interview):
    await add_interview()
    results = await asyncio.gather(*(handler.handle(call_event("call-end")) for _ in range(3)))
    assert sorted(r["status"] for r in results) == ["duplicate", "duplicate", "processed"]
    assert await ledger.get_minutes("u_hustle") == 23


async def test_distinct_calls_are_billed_separately(handler, ledger, add_interview):
    await add_interview()
    await handler.handle(call_event("call-end", call_id="call-1"))
    await handler.handle(call_event("call-end", call_id="call-2"))
    assert await ledger.get_minutes("u_hustle") == 16


async def test_variable_values_fallback(handler, ledger):
    payload = call_event("call-end")
    payload["call"]["metadata"] = {}
    payload["call"]["variableValues"] = {"interviewId": "iv9", "userid": "u_prepped"}
    result = await handler.handle(payload)
    assert result["remaining_minutes"] == 53


async def test_missing_metadata_is_rejected(handler):
    payload = call_event("call-end")
    payload["call"]["metadata"] = {}
    with pytest.raises(WebhookError, match="metadata"):
        await handler.handle(payload)


async def test_missing_call_is_rejected(handler):
    with pytest.raises(WebhookError):
        await handler.handle({"type": "call-end"})


async def test_other_events_are_ignored(handler, ledger):
    assert await handler.handle(call_event("speech-update")) == {"status": "ignored"}
    assert await handler.handle(call_event("call-end", ended=None)) == {"status": "ignored"}
    assert await ledger.get_minutes("u_hustle") == 30

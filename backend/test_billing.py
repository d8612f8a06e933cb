import asyncio

import pytest

from billing import RESOURCE_JOB_TARGETS, RESOURCE_SESSION_MINUTES, current_period


async def test_plan_info_picks_subscribed_plan(ledger):
    info = await ledger.get_plan_info("u_prepped")
    assert info == {"plan": "prepped", "interview_limit": 10, "minutes_granted": 60, "is_subscribed": True}


async def test_plan_info_unsubscribed(ledger):
    info = await ledger.get_plan_info("nobody")
    assert info["is_subscribed"] is False
    assert info["plan"] is None
    assert info["interview_limit"] == 0


async def test_first_use_grant_is_idempotent(ledger):
    assert await ledger.get_minutes("u_hired") == 100
    assert await ledger.get_minutes("u_hired") == 100


async def test_concurrent_first_reads_do_not_double_grant(ledger):
    results = await asyncio.gather(*(ledger.get_minutes("u_hustle") for _ in range(5)))
    assert results == [30] * 5
    assert await ledger.get_minutes("u_hustle") == 30


async def test_unsubscribed_user_has_no_minutes(ledger):
    assert await ledger.get_minutes("nobody") == 0


async def test_deduct_floors_at_zero(ledger):
    await ledger.get_minutes("u_hustle")
    assert await ledger.deduct_minutes("u_hustle", 25) == 5
    assert await ledger.deduct_minutes("u_hustle", 40) == 0
    assert await ledger.deduct_minutes("u_hustle", 1) == 0
    assert await ledger.get_minutes("u_hustle") == 0


async def test_concurrent_deductions_lose_no_updates(ledger):
    await ledger.set_plan("u_hired", "hired")
    await asyncio.gather(*(ledger.deduct_minutes("u_hired", 3) for _ in range(10)))
    assert await ledger.get_minutes("u_hired") == 70


async def test_add_minutes_is_additive(ledger):
    await ledger.get_minutes("u_prepped")
    assert await ledger.add_minutes("u_prepped", 15) == 75


async def test_set_plan_overwrites_balance(ledger):
    await ledger.get_minutes("u_hired")
    await ledger.deduct_minutes("u_hired", 90)
    assert await ledger.set_plan("u_hired", "prepped") == 60
    assert await ledger.get_minutes("u_hired") == 60


async def test_set_plan_rejects_unknown_plan(ledger):
    with pytest.raises(ValueError, match="platinum"):
        await ledger.set_plan("u_hired", "platinum")


async def test_usage_accumulates_per_period(ledger):
    await ledger.increment_usage("u_hustle", RESOURCE_SESSION_MINUTES, 2.2)
    await ledger.increment_usage("u_hustle", RESOURCE_SESSION_MINUTES, 4)
    assert await ledger.get_usage("u_hustle", RESOURCE_SESSION_MINUTES) == 7
    assert await ledger.get_usage("u_hustle", RESOURCE_SESSION_MINUTES, period="1999-01") == 0
    assert len(current_period()) == 7


async def test_can_start_denied_when_short_on_minutes(ledger, guard):
    await ledger.get_minutes("u_hustle")
    await ledger.deduct_minutes("u_hustle", 22)

    check = await guard.can_start_interview("u_hustle", 5)
    assert check["allowed"] is False
    assert check["required_minutes"] == 10
    assert check["available_minutes"] == 8
    assert "10" in check["reason"] and "8" in check["reason"]

    await ledger.add_minutes("u_hustle", 4)
    check = await guard.can_start_interview("u_hustle", 5)
    assert check["allowed"] is True
    assert check["available_minutes"] == 12


async def test_can_start_requires_subscription(guard):
    check = await guard.can_start_interview("nobody", 3)
    assert check["allowed"] is False
    assert "subscription" in check["reason"].lower()
    assert check["required_minutes"] == 6


async def test_job_target_quota(ledger, guard):
    await ledger.increment_usage("u_hustle", RESOURCE_JOB_TARGETS, 2)
    check = await guard.check_quota_availability("u_hustle", RESOURCE_JOB_TARGETS)
    assert check["allowed"] is True
    assert check["remaining"] == 1

    await ledger.increment_usage("u_hustle", RESOURCE_JOB_TARGETS, 1)
    check = await guard.check_quota_availability("u_hustle", RESOURCE_JOB_TARGETS)
    assert check["allowed"] is False
    assert check["limit"] == 3
    assert "limit reached" in check["reason"]


async def test_unknown_resource_is_denied(guard):
    check = await guard.check_quota_availability("u_hired", "rockets")
    assert check["allowed"] is False


async def test_session_timeout_budget(ledger, guard):
    assert await guard.get_session_timeout_minutes("u_hustle", 4) == 12
    await ledger.increment_usage("u_hustle", RESOURCE_SESSION_MINUTES, 25)
    assert await guard.get_session_timeout_minutes("u_hustle", 4) == 5
    await ledger.increment_usage("u_hustle", RESOURCE_SESSION_MINUTES, 5)
    assert await guard.get_session_timeout_minutes("u_hustle", 4) == 0
    assert await guard.get_session_timeout_minutes("nobody", 4) == 0

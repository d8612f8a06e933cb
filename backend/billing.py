import logging
import math
from typing import Optional

from sqlalchemy import select, update, case, func
from sqlalchemy.exc import IntegrityError

from models import UserAccount, UsageRecord, utcnow

logger = logging.getLogger("mockmate.billing")

# Plan entitlements, matching the tiers sold by the billing provider.
PLAN_LIMITS = {
    "hustle": {"interviews": 5, "interview_time": 30, "job_targets": 3},
    "prepped": {"interviews": 10, "interview_time": 60, "job_targets": 10},
    "hired": {"interviews": 20, "interview_time": 100, "job_targets": 25},
}
PLAN_PRIORITY = ("hired", "prepped", "hustle")

MINUTES_PER_QUESTION = 2  # pre-flight requirement
SESSION_MINUTES_PER_QUESTION = 3  # session budget allowance

RESOURCE_SESSION_MINUTES = "session_minutes"
RESOURCE_INTERVIEWS = "interviews"
RESOURCE_JOB_TARGETS = "job_targets"


def current_period(now=None) -> str:
    return (now or utcnow()).strftime("%Y-%m")


class StoredPlanEntitlements:
    """Plan membership as last written by the billing webhook.

    The identity provider is the real authority; this reads the copy kept on
    the user record so the service can run without a directory lookup.
    """

    def __init__(self, session_factory):
        self._sessions = session_factory

    async def has_plan(self, user_id: str, plan: str) -> bool:
        async with self._sessions() as db:
            plan_type = await db.scalar(select(UserAccount.plan_type).where(UserAccount.user_id == user_id))
        return plan_type == plan


class PlanLedger:
    """Minutes balance and monthly usage counters per user."""

    def __init__(self, session_factory, entitlements=None):
        self._sessions = session_factory
        self.entitlements = entitlements or StoredPlanEntitlements(session_factory)

    async def get_plan_info(self, user_id: str) -> dict:
        for plan in PLAN_PRIORITY:
            if await self.entitlements.has_plan(user_id, plan):
                limits = PLAN_LIMITS[plan]
                return {
                    "plan": plan,
                    "interview_limit": limits["interviews"],
                    "minutes_granted": limits["interview_time"],
                    "is_subscribed": True,
                }
        return {"plan": None, "interview_limit": 0, "minutes_granted": 0, "is_subscribed": False}

    async def _ensure_account(self, user_id: str) -> None:
        async with self._sessions() as db:
            if await db.get(UserAccount, user_id) is not None:
                return
            db.add(UserAccount(user_id=user_id))
            try:
                await db.commit()
            except IntegrityError:
                # created concurrently
                await db.rollback()

    async def _read_minutes(self, db, user_id: str) -> Optional[int]:
        return await db.scalar(select(UserAccount.total_minutes).where(UserAccount.user_id == user_id))

    async def get_minutes(self, user_id: str) -> int:
        """Current balance; grants the plan's minutes on first use."""
        await self._ensure_account(user_id)
        async with self._sessions() as db:
            current = await self._read_minutes(db, user_id)
        if current is not None:
            return current

        plan = await self.get_plan_info(user_id)
        if not plan["is_subscribed"]:
            return 0

        async with self._sessions() as db:
            # Only the first writer sees total_minutes IS NULL, so concurrent reads cannot double-grant.
            result = await db.execute(
                update(UserAccount)
                .where(UserAccount.user_id == user_id, UserAccount.total_minutes.is_(None))
                .values(
                    total_minutes=plan["minutes_granted"],
                    plan_type=func.coalesce(UserAccount.plan_type, plan["plan"]),
                    last_updated=utcnow(),
                )
            )
            await db.commit()
            if result.rowcount:
                logger.info(f"[BILLING] Granted {plan['minutes_granted']} minutes to user {user_id} ({plan['plan']})")
            current = await self._read_minutes(db, user_id)
        return current if current is not None else plan["minutes_granted"]

    async def add_minutes(self, user_id: str, minutes: int) -> int:
        if minutes < 0:
            raise ValueError("minutes must be non-negative")
        await self.get_minutes(user_id)
        async with self._sessions() as db:
            await db.execute(
                update(UserAccount)
                .where(UserAccount.user_id == user_id)
                .values(
                    total_minutes=func.coalesce(UserAccount.total_minutes, 0) + minutes,
                    last_updated=utcnow(),
                )
            )
            await db.commit()
            balance = await self._read_minutes(db, user_id)
        logger.info(f"[BILLING] Added {minutes} minutes to user {user_id}, balance={balance}")
        return balance

    async def deduct_minutes(self, user_id: str, minutes: int) -> int:
        """Deduct minutes, flooring the balance at zero.

        The session already happened, so an overdraw is recorded as a warning
        instead of being refused.
        """
        if minutes < 0:
            raise ValueError("minutes must be non-negative")
        before = await self.get_minutes(user_id)
        remaining = func.coalesce(UserAccount.total_minutes, 0) - minutes
        async with self._sessions() as db:
            await db.execute(
                update(UserAccount)
                .where(UserAccount.user_id == user_id)
                .values(total_minutes=case((remaining < 0, 0), else_=remaining), last_updated=utcnow())
            )
            await db.commit()
            balance = await self._read_minutes(db, user_id)
        if minutes > before:
            logger.warning(
                f"[BILLING] Overdraw for user {user_id}: deducted {minutes} with {before} available, balance floored at 0"
            )
        else:
            logger.info(f"[BILLING] Deducted {minutes} minutes from user {user_id}, balance={balance}")
        return balance

    async def set_plan(self, user_id: str, plan_type: str) -> int:
        """Plan (re)assignment overwrites the balance with the plan's minutes."""
        if plan_type not in PLAN_LIMITS:
            raise ValueError(f"Unknown plan: {plan_type}")
        granted = PLAN_LIMITS[plan_type]["interview_time"]
        await self._ensure_account(user_id)
        async with self._sessions() as db:
            await db.execute(
                update(UserAccount)
                .where(UserAccount.user_id == user_id)
                .values(total_minutes=granted, plan_type=plan_type, last_updated=utcnow())
            )
            await db.commit()
        logger.info(f"[BILLING] Set {granted} minutes for user {user_id} on {plan_type} plan")
        return granted

    async def get_usage(self, user_id: str, resource: str, period: Optional[str] = None) -> int:
        async with self._sessions() as db:
            amount = await db.scalar(
                select(UsageRecord.amount).where(
                    UsageRecord.user_id == user_id,
                    UsageRecord.period == (period or current_period()),
                    UsageRecord.resource == resource,
                )
            )
        return amount or 0

    async def increment_usage(self, user_id: str, resource: str, amount) -> int:
        amount = int(math.ceil(amount))
        period = current_period()
        async with self._sessions() as db:
            exists = await db.scalar(
                select(UsageRecord.id).where(
                    UsageRecord.user_id == user_id,
                    UsageRecord.period == period,
                    UsageRecord.resource == resource,
                )
            )
            if exists is None:
                db.add(UsageRecord(user_id=user_id, period=period, resource=resource, amount=0))
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
            await db.execute(
                update(UsageRecord)
                .where(
                    UsageRecord.user_id == user_id,
                    UsageRecord.period == period,
                    UsageRecord.resource == resource,
                )
                .values(amount=UsageRecord.amount + amount)
            )
            await db.commit()
        return await self.get_usage(user_id, resource, period)


class QuotaGuard:
    """Advisory checks over PlanLedger state. Nothing is reserved or held."""

    def __init__(self, ledger: PlanLedger):
        self.ledger = ledger

    async def can_start_interview(self, user_id: str, question_count: int) -> dict:
        required = question_count * MINUTES_PER_QUESTION
        plan = await self.ledger.get_plan_info(user_id)
        if not plan["is_subscribed"]:
            return {
                "allowed": False,
                "reason": "No active subscription. Please subscribe to a plan to start interviews.",
                "available_minutes": 0,
                "required_minutes": required,
            }

        available = await self.ledger.get_minutes(user_id)
        if available < required:
            return {
                "allowed": False,
                "reason": (
                    f"Insufficient minutes: this interview needs {required} minutes "
                    f"but only {available} remain."
                ),
                "available_minutes": available,
                "required_minutes": required,
            }
        return {"allowed": True, "available_minutes": available, "required_minutes": required}

    def _limit_for(self, plan: dict, resource: str) -> Optional[int]:
        if not plan["is_subscribed"]:
            return 0
        limits = PLAN_LIMITS[plan["plan"]]
        if resource == RESOURCE_SESSION_MINUTES:
            return limits["interview_time"]
        if resource == RESOURCE_INTERVIEWS:
            return limits["interviews"]
        if resource == RESOURCE_JOB_TARGETS:
            return limits["job_targets"]
        return None

    async def check_quota_availability(self, user_id: str, resource: str, requested: int = 1) -> dict:
        plan = await self.ledger.get_plan_info(user_id)
        limit = self._limit_for(plan, resource)
        if limit is None:
            return {"allowed": False, "remaining": 0, "limit": 0, "used": 0, "reason": f"Unknown resource: {resource}"}

        used = await self.ledger.get_usage(user_id, resource)
        remaining = max(0, limit - used)
        out = {"allowed": remaining >= requested and limit > 0, "remaining": remaining, "limit": limit, "used": used}
        if not plan["is_subscribed"]:
            out["reason"] = "No active subscription."
        elif not out["allowed"]:
            out["reason"] = f"Monthly {resource.replace('_', ' ')} limit reached ({used}/{limit})."
        return out

    async def get_session_timeout_minutes(self, user_id: str, question_count: int) -> int:
        """Session budget in minutes; <= 0 means the user cannot start a session."""
        plan = await self.ledger.get_plan_info(user_id)
        if not plan["is_subscribed"] or question_count <= 0:
            return 0
        balance = await self.ledger.get_minutes(user_id)
        used = await self.ledger.get_usage(user_id, RESOURCE_SESSION_MINUTES)
        period_remaining = plan["minutes_granted"] - used
        return min(balance, period_remaining, question_count * SESSION_MINUTES_PER_QUESTION)

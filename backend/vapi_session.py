import asyncio
import datetime
import logging
import math
import os
import secrets
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from billing import RESOURCE_SESSION_MINUTES
from models import VapiSession, VapiError, Interview, ProcessedWebhook, utcnow

logger = logging.getLogger("mockmate.session")

VAPI_COST_PER_MINUTE = float(os.getenv("VAPI_COST_PER_MINUTE", "0.25"))  # USD, estimated
TERMINAL_STATES = {"completed", "timeout", "error"}


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _elapsed_minutes(start: datetime.datetime, end: datetime.datetime) -> float:
    return max(0.0, (end - start).total_seconds() / 60)


def _session_to_dict(session: VapiSession) -> dict:
    return {
        "session_id": session.session_id,
        "user_id": session.user_id,
        "interview_id": session.interview_id,
        "start_time": session.start_time.isoformat() if session.start_time else None,
        "end_time": session.end_time.isoformat() if session.end_time else None,
        "max_duration_minutes": session.max_duration_minutes,
        "questions_count": session.questions_count,
        "status": session.status,
        "estimated_cost": session.estimated_cost,
        "actual_duration_minutes": session.actual_duration_minutes,
        "actual_cost": session.actual_cost,
    }


class SessionController:
    """Bookkeeping around one bounded voice interview session.

    States: active -> completed | timeout | error. Every transition is a
    conditional UPDATE on status == 'active', which is what makes a late
    timeout after completion a no-op; cancelling the timer is only an
    optimisation.
    """

    def __init__(self, session_factory, ledger, guard, webhook_billing: Optional[bool] = None,
                 seconds_per_minute: float = 60.0):
        self._sessions = session_factory
        self.ledger = ledger
        self.guard = guard
        # When the voice webhook is configured it alone deducts the balance.
        self.webhook_billing = _env_flag("VAPI_WEBHOOK_ENABLED", True) if webhook_billing is None else webhook_billing
        self.seconds_per_minute = seconds_per_minute
        self._timers: dict[str, asyncio.Task] = {}
        self._transitions: set[asyncio.Task] = set()

    async def create_session(self, user_id: str, interview_id: str, question_count: int) -> dict:
        try:
            async with self._sessions() as db:
                owner = await db.scalar(select(Interview.user_id).where(Interview.id == interview_id))
            if owner != user_id:
                logger.warning(f"[SESSION] User {user_id} tried to open a session on interview {interview_id} they do not own")
                return {
                    "success": False,
                    "session_id": None,
                    "max_duration_minutes": 0,
                    "error": "Interview not found",
                }

            max_minutes = await self.guard.get_session_timeout_minutes(user_id, question_count)
            if max_minutes <= 0:
                return {
                    "success": False,
                    "session_id": None,
                    "max_duration_minutes": 0,
                    "error": "Session time limit exceeded for this billing period",
                }

            session_id = f"session_{secrets.token_hex(8)}_{user_id[-6:]}"
            estimated_cost = max_minutes * VAPI_COST_PER_MINUTE
            async with self._sessions() as db:
                db.add(VapiSession(
                    session_id=session_id,
                    user_id=user_id,
                    interview_id=interview_id,
                    start_time=utcnow(),
                    max_duration_minutes=max_minutes,
                    questions_count=question_count,
                    status="active",
                    estimated_cost=estimated_cost,
                ))
                await db.commit()
        except Exception:
            logger.exception(f"[SESSION] Failed to create session for user {user_id}, interview {interview_id}")
            return {"success": False, "session_id": None, "max_duration_minutes": 0, "error": "Failed to create session"}

        self._arm_timeout(session_id, max_minutes * self.seconds_per_minute)
        logger.info(f"[SESSION] Created {session_id} for user {user_id}: {max_minutes} min budget")
        return {
            "success": True,
            "session_id": session_id,
            "max_duration_minutes": max_minutes,
            "estimated_cost": estimated_cost,
        }

    def _arm_timeout(self, session_id: str, delay_seconds: float) -> None:
        task = asyncio.create_task(self._timeout_after(session_id, delay_seconds))
        self._timers[session_id] = task
        task.add_done_callback(lambda _t: self._timers.pop(session_id, None))

    async def _timeout_after(self, session_id: str, delay_seconds: float) -> None:
        await asyncio.sleep(delay_seconds)
        # a cancel that lands mid-transition must not abort the write
        transition = asyncio.ensure_future(self.timeout_session(session_id))
        self._transitions.add(transition)
        transition.add_done_callback(self._transitions.discard)
        await asyncio.shield(transition)

    def _cancel_timer(self, session_id: str) -> None:
        task = self._timers.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()

    def pending_timers(self) -> int:
        return sum(1 for t in self._timers.values() if not t.done())

    async def _finalize(self, session_id: str, status: str, minutes: float, now: datetime.datetime) -> bool:
        async with self._sessions() as db:
            result = await db.execute(
                update(VapiSession)
                .where(VapiSession.session_id == session_id, VapiSession.status == "active")
                .values(
                    status=status,
                    actual_duration_minutes=minutes,
                    actual_cost=minutes * VAPI_COST_PER_MINUTE,
                    end_time=now,
                )
            )
            await db.commit()
        return bool(result.rowcount)

    async def _record_usage(self, user_id: str, minutes: float) -> None:
        await self.ledger.increment_usage(user_id, RESOURCE_SESSION_MINUTES, minutes)
        if not self.webhook_billing:
            await self.ledger.deduct_minutes(user_id, int(math.ceil(minutes)))

    async def _expire(self, session_id: str, status: str, now: Optional[datetime.datetime]) -> bool:
        async with self._sessions() as db:
            session = await db.get(VapiSession, session_id)
        if session is None or session.status != "active":
            return False

        now = now or utcnow()
        minutes = math.ceil(_elapsed_minutes(session.start_time, now))
        if not await self._finalize(session_id, status, minutes, now):
            return False
        await self._record_usage(session.user_id, minutes)
        logger.info(f"[SESSION] {session_id} moved to {status} after {minutes} minutes")
        return True

    async def timeout_session(self, session_id: str, now: Optional[datetime.datetime] = None) -> bool:
        """Fires from the timer; only transitions a session that is still active."""
        try:
            return await self._expire(session_id, "timeout", now)
        except Exception:
            logger.exception(f"[SESSION] Error timing out session {session_id}")
            return False

    async def fail_session(self, session_id: str, now: Optional[datetime.datetime] = None) -> bool:
        self._cancel_timer(session_id)
        try:
            return await self._expire(session_id, "error", now)
        except Exception:
            logger.exception(f"[SESSION] Error failing session {session_id}")
            return False

    async def complete_session(self, session_id: str, actual_duration_minutes: float) -> dict:
        self._cancel_timer(session_id)
        try:
            async with self._sessions() as db:
                session = await db.get(VapiSession, session_id)
            if session is None:
                return {"success": False, "cost": 0, "error": "Session not found"}
            if session.status in TERMINAL_STATES:
                return {"success": False, "cost": session.actual_cost or 0, "error": f"Session already {session.status}"}

            cost = actual_duration_minutes * VAPI_COST_PER_MINUTE
            if not await self._finalize(session_id, "completed", actual_duration_minutes, utcnow()):
                return {"success": False, "cost": 0, "error": "Session already finalized"}
            await self._record_usage(session.user_id, actual_duration_minutes)
        except Exception:
            logger.exception(f"[SESSION] Error completing session {session_id}")
            return {"success": False, "cost": 0, "error": "Failed to complete session"}

        logger.info(f"[SESSION] {session_id} completed: {actual_duration_minutes} min, cost={cost:.2f}")
        return {"success": True, "cost": cost}

    async def get_session_status(self, session_id: str) -> Optional[dict]:
        async with self._sessions() as db:
            session = await db.get(VapiSession, session_id)
        return _session_to_dict(session) if session else None

    async def check_session_health(self, session_id: str, now: Optional[datetime.datetime] = None) -> dict:
        try:
            async with self._sessions() as db:
                session = await db.get(VapiSession, session_id)
        except Exception:
            logger.exception(f"[SESSION] Error checking health of {session_id}")
            session = None

        if session is None or session.status != "active":
            return {"is_active": False, "remaining_minutes": 0, "warning_level": "critical"}

        elapsed = _elapsed_minutes(session.start_time, now or utcnow())
        remaining = max(0.0, session.max_duration_minutes - elapsed)
        warning_level = "none"
        if remaining <= 1:
            warning_level = "critical"
        elif remaining <= 3:
            warning_level = "warning"
        return {"is_active": remaining > 0, "remaining_minutes": round(remaining, 2), "warning_level": warning_level}

    async def recover_sessions(self, now: Optional[datetime.datetime] = None) -> dict:
        """Re-arm timers lost on restart and time out sessions already past their budget."""
        now = now or utcnow()
        async with self._sessions() as db:
            result = await db.execute(select(VapiSession).where(VapiSession.status == "active"))
            active = result.scalars().all()

        expired = rearmed = 0
        for session in active:
            deadline = session.start_time + datetime.timedelta(minutes=session.max_duration_minutes)
            if deadline <= now:
                if await self.timeout_session(session.session_id, now=now):
                    expired += 1
            elif session.session_id not in self._timers:
                self._arm_timeout(session.session_id, (deadline - now).total_seconds() * self.seconds_per_minute / 60)
                rearmed += 1
        if expired or rearmed:
            logger.info(f"[SESSION] Recovery: {expired} expired, {rearmed} timers re-armed")
        return {"expired": expired, "rearmed": rearmed}

    async def shutdown(self) -> None:
        tasks = [t for t in self._timers.values() if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()
        # shielded transitions outlive their timer; let them finish writing
        await asyncio.gather(*list(self._transitions), return_exceptions=True)


# ── Voice service errors ─────────────────────────────────

_ERROR_CLASSES = [
    # (error type, codes, message keywords, should retry, user message)
    ("network", {"NETWORK_ERROR"}, ("network",), True,
     "Network connection issue. Please check your internet and try again."),
    ("quota", {"QUOTA_EXCEEDED"}, ("quota",), False,
     "Voice service quota exceeded. Please try again later or upgrade your plan."),
    ("timeout", {"TIMEOUT"}, ("timeout", "timed out"), True,
     "Connection timed out. Please try again."),
    ("permission", {"PERMISSION_DENIED"}, ("permission",), False,
     "Microphone permission denied. Please allow microphone access and refresh the page."),
]
_UNKNOWN_MESSAGE = "Voice service temporarily unavailable. Please try again in a moment."


def classify_voice_error(error: dict) -> dict:
    code = str(error.get("code") or "").upper()
    message = str(error.get("message") or "").lower()
    for error_type, codes, keywords, should_retry, user_message in _ERROR_CLASSES:
        if code in codes or any(k in message for k in keywords):
            return {"error_type": error_type, "should_retry": should_retry, "user_message": user_message}
    return {"error_type": "unknown", "should_retry": True, "user_message": _UNKNOWN_MESSAGE}


async def log_voice_error(session_factory, session_id: str, error: dict, error_type: str) -> dict:
    """Audit record for a transport failure. Never raises."""
    try:
        async with session_factory() as db:
            db.add(VapiError(
                session_id=session_id,
                error=str(error.get("message") or error),
                error_type=error_type,
                stack=error.get("stack"),
            ))
            await db.commit()
        logger.warning(f"[SESSION] Voice error on {session_id}: type={error_type} message={error.get('message')}")
        return {"success": True}
    except Exception:
        logger.exception(f"[SESSION] Failed to log voice error for session {session_id}")
        return {"success": False}


# ── Voice webhook ────────────────────────────────────────

class WebhookError(ValueError):
    pass


def parse_timestamp(value: str) -> datetime.datetime:
    parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return parsed


class VoiceWebhookHandler:
    """call-start / call-end events from the voice transport.

    Each (event type, call id) pair is processed at most once: the marker row
    commits together with the interview update, and a duplicate delivery
    fails on the primary key before any minutes are deducted.
    """

    def __init__(self, session_factory, ledger):
        self._sessions = session_factory
        self.ledger = ledger

    async def handle(self, payload: dict) -> dict:
        event_type = payload.get("type")
        call = payload.get("call")
        if not isinstance(call, dict):
            raise WebhookError("No call data provided")

        metadata = call.get("metadata") or {}
        variables = call.get("variableValues") or {}
        interview_id = metadata.get("interviewId") or variables.get("interviewId")
        user_id = metadata.get("userId") or variables.get("userid")
        call_id = call.get("id")
        if not interview_id or not user_id:
            raise WebhookError("Missing required metadata")
        if not call_id:
            raise WebhookError("Missing call id")

        logger.info(f"[WEBHOOK] {event_type} for call {call_id} (interview {interview_id}, user {user_id})")
        if event_type == "call-start":
            return await self._call_start(call_id, interview_id, call)
        if event_type == "call-end":
            return await self._call_end(call_id, interview_id, user_id, call)
        logger.info(f"[WEBHOOK] Unhandled webhook type: {event_type}")
        return {"status": "ignored"}

    async def _call_start(self, call_id: str, interview_id: str, call: dict) -> dict:
        started_at = call.get("startedAt")
        if not started_at:
            return {"status": "ignored"}
        try:
            async with self._sessions() as db:
                db.add(ProcessedWebhook(key=f"call-start:{call_id}"))
                await db.execute(
                    update(Interview).where(Interview.id == interview_id).values(start_time=parse_timestamp(started_at))
                )
                await db.commit()
        except IntegrityError:
            logger.info(f"[WEBHOOK] Duplicate call-start for call {call_id} ignored")
            return {"status": "duplicate"}
        return {"status": "processed"}

    async def _call_end(self, call_id: str, interview_id: str, user_id: str, call: dict) -> dict:
        started_at, ended_at = call.get("startedAt"), call.get("endedAt")
        if not started_at or not ended_at:
            return {"status": "ignored"}

        end_time = parse_timestamp(ended_at)
        duration = int(math.ceil(_elapsed_minutes(parse_timestamp(started_at), end_time)))
        try:
            async with self._sessions() as db:
                db.add(ProcessedWebhook(key=f"call-end:{call_id}"))
                result = await db.execute(
                    update(Interview).where(Interview.id == interview_id).values(end_time=end_time, duration=duration)
                )
                await db.commit()
        except IntegrityError:
            logger.info(f"[WEBHOOK] Duplicate call-end for call {call_id} ignored")
            return {"status": "duplicate"}

        if not result.rowcount:
            logger.warning(f"[WEBHOOK] Interview {interview_id} not found; billing {duration} minutes anyway")
        balance = await self.ledger.deduct_minutes(user_id, duration)
        logger.info(f"[WEBHOOK] Interview {interview_id} ended: {duration} minutes deducted from user {user_id}")
        return {"status": "processed", "duration_minutes": duration, "remaining_minutes": balance}

import datetime
import logging
import os

from sqlalchemy import delete, select

from models import Feedback, ProcessedWebhook, VapiError, VapiSession, utcnow

logger = logging.getLogger("mockmate.maintenance")

SESSION_RETENTION_DAYS = int(os.getenv("SESSION_RETENTION_DAYS", "30"))
# call-end markers must outlive the voice transport redelivery window
WEBHOOK_RETENTION_DAYS = int(os.getenv("WEBHOOK_RETENTION_DAYS", "365"))
FEEDBACK_KEEP = 50


def _clamp_score(value):
    try:
        return max(0.0, min(100.0, float(value)))
    except (TypeError, ValueError):
        return 0.0


def _as_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return -1.0


async def validate_and_fix_corrupted_progress(session_factory, user_id: str) -> dict:
    """Clamp stored scores into [0, 100] and backfill missing timestamps."""
    fixed = 0
    issues: list[str] = []
    async with session_factory() as db:
        result = await db.execute(select(Feedback).where(Feedback.user_id == user_id))
        for record in result.scalars().all():
            changed = False
            if record.total_score is None or not 0 <= record.total_score <= 100:
                issues.append(f"{record.id}: total_score {record.total_score}")
                record.total_score = _clamp_score(record.total_score)
                changed = True

            categories = record.category_scores or []
            if any(isinstance(c, dict) and not 0 <= _as_float(c.get("score")) <= 100 for c in categories):
                issues.append(f"{record.id}: category score out of range")
                record.category_scores = [
                    {**c, "score": _clamp_score(c.get("score"))} if isinstance(c, dict) else c
                    for c in categories
                ]
                changed = True

            if record.created_at is None:
                issues.append(f"{record.id}: missing created_at")
                record.created_at = utcnow()
                changed = True
            fixed += changed
        await db.commit()

    if fixed:
        logger.warning(f"[MAINTENANCE] Fixed {fixed} feedback records for user {user_id}: {issues}")
    return {"fixed": fixed, "issues": issues}


async def cleanup_session_data(session_factory, max_age_days: int = SESSION_RETENTION_DAYS,
                               webhook_max_age_days: int = WEBHOOK_RETENTION_DAYS) -> dict:
    """Purge finished sessions and their error logs, and webhook markers on their own longer window."""
    cutoff = utcnow() - datetime.timedelta(days=max_age_days)
    webhook_cutoff = utcnow() - datetime.timedelta(days=max(webhook_max_age_days, max_age_days))
    async with session_factory() as db:
        old_ids = select(VapiSession.session_id).where(
            VapiSession.status != "active", VapiSession.start_time < cutoff
        )
        errors = await db.execute(delete(VapiError).where(VapiError.session_id.in_(old_ids)))
        sessions = await db.execute(
            delete(VapiSession).where(VapiSession.status != "active", VapiSession.start_time < cutoff)
        )
        webhooks = await db.execute(delete(ProcessedWebhook).where(ProcessedWebhook.processed_at < webhook_cutoff))
        await db.commit()

    counts = {"sessions": sessions.rowcount, "errors": errors.rowcount, "webhooks": webhooks.rowcount}
    logger.info(f"[MAINTENANCE] Cleaned up data older than {max_age_days} days: {counts}")
    return counts


async def cleanup_user_feedback(session_factory, user_id: str, keep: int = FEEDBACK_KEEP) -> int:
    async with session_factory() as db:
        result = await db.execute(
            select(Feedback.id)
            .where(Feedback.user_id == user_id)
            .order_by(Feedback.created_at.desc(), Feedback.id.desc())
            .offset(keep)
        )
        stale = list(result.scalars().all())
        if stale:
            await db.execute(delete(Feedback).where(Feedback.id.in_(stale)))
            await db.commit()

    if stale:
        logger.info(f"[MAINTENANCE] Removed {len(stale)} old feedback records for user {user_id}")
    return len(stale)

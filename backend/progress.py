import logging
from typing import Optional

import numpy as np
from sqlalchemy import select, update

from models import Feedback, UserProgress, utcnow
from scoring import CATEGORY_NAMES

logger = logging.getLogger("mockmate.progress")

COMPARISON_WINDOW = 5
CONSISTENCY_WINDOW = 3
MAX_REASONABLE_STD = 20.0


def calculate_consistency(scores: list[float]) -> float:
    """1.0 for identical scores, 0.0 at or beyond a 20-point standard deviation."""
    if len(scores) < 2:
        return 1.0
    return max(0.0, 1.0 - float(np.std(scores)) / MAX_REASONABLE_STD)


def consistency_note(consistency: float) -> str:
    if consistency >= 0.9:
        return "Very consistent performance across sessions"
    if consistency >= 0.8:
        return "Generally consistent with minor variations"
    if consistency >= 0.7:
        return "Moderate consistency - some score variation"
    return "Variable performance - focus on consistency"


def calculate_trend(scores: list[float]) -> dict:
    """Least-squares trend over session index; rate is |slope| in points per session."""
    if len(scores) < 2:
        return {"direction": "consistent", "rate": 0.0, "confidence": "low"}

    y = np.asarray(scores, dtype=float)
    x = np.arange(len(y), dtype=float)
    slope, intercept = np.polyfit(x, y, 1)
    ss_total = float(np.sum((y - y.mean()) ** 2))
    ss_residual = float(np.sum((y - (slope * x + intercept)) ** 2))
    # a flat series is fitted exactly
    r_squared = 1.0 if ss_total == 0 else 1.0 - ss_residual / ss_total

    if r_squared > 0.7:
        confidence = "high"
    elif r_squared > 0.4:
        confidence = "medium"
    else:
        confidence = "low"

    if abs(slope) < 0.5:
        direction = "consistent"
    elif slope > 0:
        direction = "improving"
    else:
        direction = "declining"
    return {"direction": direction, "rate": round(abs(float(slope)), 2), "confidence": confidence}


def generate_progress_recommendations(overall: dict, category_trends: dict, average_score: float) -> list[str]:
    recommendations = []
    if overall["direction"] == "improving" and overall["confidence"] == "high":
        recommendations.append("You're showing strong, consistent improvement! Keep up the current practice routine.")
    elif overall["direction"] == "declining":
        recommendations.append("Focus on returning to fundamentals and consistent practice to reverse the recent trend.")
    elif overall["direction"] == "consistent" and average_score > 75:
        recommendations.append("Your performance is stable. Challenge yourself with more advanced scenarios.")
    elif overall["direction"] == "consistent" and average_score < 65:
        recommendations.append("Focus on building stronger foundations in your weakest areas.")

    declining = [name for name, t in category_trends.items() if t["direction"] == "declining"]
    improving = [
        name for name, t in category_trends.items()
        if t["direction"] == "improving" and t["confidence"] == "high"
    ]
    if declining:
        recommendations.append(f"Pay special attention to: {', '.join(declining)}")
    if improving:
        recommendations.append(f"Great progress in: {', '.join(improving)}")

    if overall["confidence"] == "low":
        recommendations.append("Consider practicing more regularly for more reliable progress tracking.")
    return recommendations


def _category_score(feedback: Feedback, name: str) -> Optional[float]:
    for category in feedback.category_scores or []:
        if isinstance(category, dict) and category.get("name") == name:
            return category.get("score")
    return None


class ProgressTracker:
    def __init__(self, session_factory):
        self._sessions = session_factory

    async def _history(self, user_id: str, newest_first: bool, limit: Optional[int] = None,
                       exclude_interview_id: Optional[str] = None) -> list[Feedback]:
        order = Feedback.created_at.desc() if newest_first else Feedback.created_at.asc()
        query = select(Feedback).where(Feedback.user_id == user_id, Feedback.total_score.is_not(None))
        if exclude_interview_id:
            query = query.where(Feedback.interview_id != exclude_interview_id)
        query = query.order_by(order, Feedback.id)
        if limit:
            query = query.limit(limit)
        async with self._sessions() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def get_session_comparison(self, user_id: str, current_score: float,
                                     exclude_interview_id: Optional[str] = None) -> Optional[dict]:
        """Compare against the most recent prior session; None on a first session."""
        recent = await self._history(user_id, True, COMPARISON_WINDOW, exclude_interview_id)
        if not recent:
            return None

        previous = float(recent[0].total_score)
        delta = current_score - previous
        percent = (delta / previous * 100) if previous else 0.0
        if abs(delta) < 2:
            improvement = "Consistent performance - maintaining your level"
        elif delta > 0:
            improvement = f"Improved by {delta:.1f} points ({percent:.1f}% better)"
        else:
            improvement = f"Decreased by {abs(delta):.1f} points ({abs(percent):.1f}% lower)"

        consistency = calculate_consistency([float(f.total_score) for f in recent[:CONSISTENCY_WINDOW]])
        return {
            "previous_score": previous,
            "score_change": round(delta, 1),
            "percent_change": round(percent, 1),
            "improvement": improvement,
            "consistency_note": consistency_note(consistency),
        }

    async def get_user_progress(self, user_id: str) -> Optional[dict]:
        sessions = await self._history(user_id, newest_first=False)
        scores = [float(f.total_score) for f in sessions]
        if len(scores) < 2:
            return None

        average = sum(scores) / len(scores)
        overall = calculate_trend(scores)
        category_trends = {}
        for name in CATEGORY_NAMES:
            series = [s for s in (_category_score(f, name) for f in sessions) if s is not None]
            if len(series) >= 2:
                category_trends[name] = calculate_trend(series)

        return {
            "total_sessions": len(scores),
            "average_score": round(average, 1),
            "best_score": max(scores),
            "recent_trend": overall,
            "category_trends": category_trends,
            "recommendations": generate_progress_recommendations(overall, category_trends, average),
        }

    async def update_session_history(self, user_id: str, feedback_id: str, interview_id: str,
                                     comparison: Optional[dict]) -> Optional[dict]:
        """Backfill the comparison on the stored feedback and merge-upsert the summary."""
        try:
            if comparison is not None:
                async with self._sessions() as db:
                    await db.execute(
                        update(Feedback).where(Feedback.id == feedback_id).values(session_comparison=comparison)
                    )
                    await db.commit()

            progress = await self.get_user_progress(user_id)
            if progress is None:
                return None
            async with self._sessions() as db:
                record = await db.get(UserProgress, user_id)
                if record is None:
                    record = UserProgress(user_id=user_id)
                    db.add(record)
                record.total_sessions = progress["total_sessions"]
                record.average_score = progress["average_score"]
                record.best_score = progress["best_score"]
                record.recent_trend = progress["recent_trend"]
                record.category_trends = progress["category_trends"]
                record.recommendations = progress["recommendations"]
                record.last_updated = utcnow()
                await db.commit()
            logger.info(f"[PROGRESS] Updated progress for user {user_id} after interview {interview_id}")
            return progress
        except Exception:
            logger.exception(f"[PROGRESS] Failed to update session history for user {user_id}")
            return None

import logging
import uuid
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from billing import SESSION_MINUTES_PER_QUESTION
from models import Feedback, Interview, utcnow
from scoring import ScoringError, normalize_level
from transcript import format_transcript, validate_transcript

logger = logging.getLogger("mockmate.feedback")

SYSTEM_VERSION = "calibrated-v1"


class FeedbackOwnershipError(Exception):
    pass


def feedback_to_dict(record: Feedback) -> dict:
    return {
        "id": record.id,
        "interview_id": record.interview_id,
        "user_id": record.user_id,
        "total_score": record.total_score,
        "overall_percentile": record.overall_percentile,
        "reliability_score": record.reliability_score,
        "category_scores": record.category_scores,
        "question_ratings": record.question_ratings,
        "strengths": record.strengths,
        "areas_for_improvement": record.areas_for_improvement,
        "final_assessment": record.final_assessment,
        "limitations": record.limitations,
        "next_steps": record.next_steps,
        "session_comparison": record.session_comparison,
        "transcript_quality": record.transcript_quality,
        "metadata": record.assessment_metadata,
        "created_at": str(record.created_at) if record.created_at else None,
    }


def apply_evaluation(record: Feedback, evaluation: dict, quality: dict, metadata: dict) -> None:
    record.total_score = evaluation["total_score"]
    record.overall_percentile = evaluation["overall_percentile"]
    record.reliability_score = evaluation["reliability_score"]
    record.category_scores = evaluation["category_scores"]
    record.question_ratings = evaluation["question_ratings"]
    record.strengths = evaluation["strengths"]
    record.areas_for_improvement = evaluation["areas_for_improvement"]
    record.final_assessment = evaluation["final_assessment"]
    record.limitations = evaluation["limitations"]
    record.next_steps = evaluation["next_steps"]
    record.session_comparison = None
    record.transcript_quality = quality
    record.assessment_metadata = metadata


class FeedbackService:
    def __init__(self, session_factory, pipeline, tracker):
        self._sessions = session_factory
        self.pipeline = pipeline
        self.tracker = tracker

    async def get_feedback(self, interview_id: str, user_id: str) -> Optional[dict]:
        async with self._sessions() as db:
            record = await db.scalar(
                select(Feedback).where(Feedback.interview_id == interview_id, Feedback.user_id == user_id).limit(1)
            )
        return feedback_to_dict(record) if record else None

    async def _may_write(self, feedback_id: str, interview_id: str, user_id: str) -> bool:
        async with self._sessions() as db:
            record = await db.get(Feedback, feedback_id)
        return record is None or (record.interview_id, record.user_id) == (interview_id, user_id)

    async def _record_completion(self, interview_id: str, actual_duration_minutes: float) -> None:
        try:
            async with self._sessions() as db:
                await db.execute(
                    update(Interview)
                    .where(Interview.id == interview_id)
                    .values(completed_at=utcnow(), actual_duration_minutes=actual_duration_minutes, status="completed")
                )
                await db.commit()
        except Exception:
            logger.warning(f"[FEEDBACK] Failed to update interview {interview_id} duration", exc_info=True)

    async def _store(self, interview_id: str, user_id: str, feedback_id: Optional[str],
                     evaluation: dict, quality: dict, metadata: dict) -> str:
        """Overwrite the existing record for this interview, or the one named by feedback_id."""
        for attempt in range(2):
            async with self._sessions() as db:
                if feedback_id:
                    record = await db.get(Feedback, feedback_id)
                    if record is not None and (record.interview_id, record.user_id) != (interview_id, user_id):
                        raise FeedbackOwnershipError(f"Feedback {feedback_id} belongs to another interview")
                else:
                    record = await db.scalar(
                        select(Feedback)
                        .where(Feedback.interview_id == interview_id, Feedback.user_id == user_id)
                        .limit(1)
                    )
                if record is None:
                    record = Feedback(
                        id=feedback_id or uuid.uuid4().hex,
                        interview_id=interview_id,
                        user_id=user_id,
                        created_at=utcnow(),
                    )
                    db.add(record)
                apply_evaluation(record, evaluation, quality, metadata)
                try:
                    await db.commit()
                    return record.id
                except IntegrityError:
                    # concurrent create with the same id; next pass updates it
                    await db.rollback()
                    if attempt:
                        raise
        raise RuntimeError("unreachable")

    async def create_feedback(self, interview_id: str, user_id: str, transcript: list[dict],
                              feedback_id: Optional[str] = None,
                              actual_duration_minutes: Optional[float] = None) -> dict:
        try:
            async with self._sessions() as db:
                interview = await db.get(Interview, interview_id)
            if interview is None:
                return {"success": False, "error": "Interview not found"}
            if interview.user_id != user_id:
                logger.warning(f"[FEEDBACK] User {user_id} tried to score interview {interview_id} owned by another user")
                return {"success": False, "error": "Interview not found"}

            if feedback_id and not await self._may_write(feedback_id, interview_id, user_id):
                logger.warning(f"[FEEDBACK] User {user_id} tried to overwrite feedback {feedback_id} of another interview")
                return {"success": False, "error": "Feedback id belongs to another interview"}

            if actual_duration_minutes is not None:
                await self._record_completion(interview_id, actual_duration_minutes)

            quality = validate_transcript(transcript)
            if not quality["is_reliable"]:
                logger.warning(f"[FEEDBACK] Transcript quality issues for interview {interview_id}: {quality['issues']}")

            level = normalize_level(interview.level)
            questions = list(interview.questions or [])
            try:
                evaluation = await self.pipeline.evaluate(questions, transcript, level)
            except ScoringError as e:
                logger.error(f"[FEEDBACK] Scoring failed for interview {interview_id}, user {user_id}: {e}")
                return {
                    "success": False,
                    "error": "Failed to generate detailed feedback. Please try again.",
                    "fallback": {
                        "message": f"Interview completed with {len(questions)} questions.",
                        "transcript_quality": quality["completeness"],
                    },
                }

            comparison = await self.tracker.get_session_comparison(
                user_id, evaluation["total_score"], exclude_interview_id=interview_id
            )

            estimated = len(questions) * SESSION_MINUTES_PER_QUESTION
            metadata = {
                "experience_level": level,
                "assessment_date": utcnow().isoformat(),
                "question_count": len(questions),
                "transcript_length": len(format_transcript(transcript)),
                "actual_duration_minutes": actual_duration_minutes or 0,
                "estimated_duration_minutes": estimated,
                "duration_efficiency": (
                    round(actual_duration_minutes / estimated * 100) if actual_duration_minutes and estimated else 0
                ),
                "system_version": SYSTEM_VERSION,
                "quality_flags": evaluation.pop("quality_flags", []),
            }
            stored_id = await self._store(interview_id, user_id, feedback_id, evaluation, quality, metadata)
        except FeedbackOwnershipError:
            return {"success": False, "error": "Feedback id belongs to another interview"}
        except Exception:
            logger.exception(f"[FEEDBACK] Error saving feedback for interview {interview_id}, user {user_id}")
            return {"success": False, "error": "Failed to process interview feedback"}

        await self.tracker.update_session_history(user_id, stored_id, interview_id, comparison)
        logger.info(f"[FEEDBACK] Stored feedback {stored_id} for interview {interview_id}: {evaluation['total_score']}")
        return {"success": True, "feedback_id": stored_id}

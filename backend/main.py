from fastapi import FastAPI, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from typing import Optional
import logging
import os
import uuid
from dotenv import load_dotenv

load_dotenv()

from database import init_db, get_db, async_session
from models import Interview
from billing import PlanLedger, QuotaGuard, RESOURCE_INTERVIEWS
from vapi_session import (
    SessionController,
    VoiceWebhookHandler,
    WebhookError,
    classify_voice_error,
    log_voice_error,
)
from transcript import TranscriptRegistry
from scoring import ScoringPipeline
from progress import ProgressTracker
from feedback_service import FeedbackService
from maintenance import cleanup_session_data, cleanup_user_feedback, validate_and_fix_corrupted_progress

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("mockmate.api")

app = FastAPI(title="MockMate API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[os.getenv("FRONTEND_URL", "http://localhost:3000")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger = PlanLedger(async_session)
guard = QuotaGuard(ledger)
sessions = SessionController(async_session, ledger, guard)
voice_webhook = VoiceWebhookHandler(async_session, ledger)
transcripts = TranscriptRegistry()
tracker = ProgressTracker(async_session)
feedback_service = FeedbackService(async_session, ScoringPipeline(), tracker)


@app.on_event("startup")
async def startup():
    await init_db()
    await sessions.recover_sessions()
    await cleanup_session_data(async_session)


@app.on_event("shutdown")
async def shutdown():
    await sessions.shutdown()


# ── Plan & Quota ─────────────────────────────────────────

@app.get("/api/plan/{user_id}")
async def get_plan(user_id: str):
    return await ledger.get_plan_info(user_id)


@app.get("/api/minutes/{user_id}")
async def get_minutes(user_id: str):
    return {"user_id": user_id, "minutes": await ledger.get_minutes(user_id)}


@app.get("/api/quota/{user_id}/can-start")
async def can_start(user_id: str, question_count: int):
    if question_count <= 0:
        raise HTTPException(400, "question_count must be positive")
    return await guard.can_start_interview(user_id, question_count)


@app.get("/api/quota/{user_id}/{resource}")
async def quota(user_id: str, resource: str, requested: int = 1):
    return await guard.check_quota_availability(user_id, resource, requested)


# ── Interviews ───────────────────────────────────────────

class InterviewCreate(BaseModel):
    user_id: str
    role: str
    questions: list[str] = Field(min_length=1)
    level: Optional[str] = None
    type: Optional[str] = None
    tone: Optional[str] = None
    difficulty: Optional[str] = None
    specialty_skills: list[str] = []
    is_personalized: bool = False


@app.post("/api/interviews")
async def create_interview(body: InterviewCreate, db: AsyncSession = Depends(get_db)):
    check = await guard.check_quota_availability(body.user_id, RESOURCE_INTERVIEWS)
    if not check["allowed"]:
        raise HTTPException(403, check.get("reason") or "Interview limit reached")

    interview = Interview(
        id=uuid.uuid4().hex,
        user_id=body.user_id,
        questions=body.questions,
        role=body.role,
        level=body.level,
        type=body.type,
        tone=body.tone,
        difficulty=body.difficulty,
        specialty_skills=body.specialty_skills,
        is_personalized=body.is_personalized,
    )
    db.add(interview)
    await db.commit()
    await ledger.increment_usage(body.user_id, RESOURCE_INTERVIEWS, 1)
    return {"id": interview.id, "question_count": len(body.questions)}


# ── Voice Sessions ───────────────────────────────────────

class SessionCreate(BaseModel):
    user_id: str
    interview_id: str
    question_count: int = Field(gt=0)


class SessionComplete(BaseModel):
    actual_duration_minutes: float = Field(ge=0)


class SessionErrorReport(BaseModel):
    message: str
    code: Optional[str] = None
    stack: Optional[str] = None


class TranscriptAppend(BaseModel):
    role: str
    content: str


@app.post("/api/vapi/sessions")
async def create_session(body: SessionCreate):
    return await sessions.create_session(body.user_id, body.interview_id, body.question_count)


@app.post("/api/vapi/sessions/{session_id}/complete")
async def complete_session(session_id: str, body: SessionComplete):
    return await sessions.complete_session(session_id, body.actual_duration_minutes)


@app.get("/api/vapi/sessions/{session_id}")
async def get_session(session_id: str):
    status = await sessions.get_session_status(session_id)
    if not status:
        raise HTTPException(404, "Session not found")
    return status


@app.get("/api/vapi/sessions/{session_id}/health")
async def session_health(session_id: str):
    return await sessions.check_session_health(session_id)


@app.post("/api/vapi/sessions/{session_id}/errors")
async def report_session_error(session_id: str, body: SessionErrorReport):
    error = body.model_dump()
    classified = classify_voice_error(error)
    logged = await log_voice_error(async_session, session_id, error, classified["error_type"])
    if not classified["should_retry"]:
        await sessions.fail_session(session_id)
    return {**classified, "logged": logged["success"]}


@app.post("/api/vapi/sessions/{session_id}/transcript")
async def append_transcript(session_id: str, body: TranscriptAppend):
    part = transcripts.get(session_id).append(body.role, body.content)
    return {"index": part["index"]}


@app.get("/api/vapi/sessions/{session_id}/transcript")
async def read_transcript(session_id: str):
    collector = transcripts.get(session_id, create=False)
    return {"session_id": session_id, "transcript": collector.entries() if collector else []}


# ── Webhooks ─────────────────────────────────────────────

@app.post("/api/vapi/webhook")
async def vapi_webhook(payload: dict):
    try:
        return await voice_webhook.handle(payload)
    except WebhookError as e:
        raise HTTPException(400, str(e))


def _parse_billing_event(payload: dict) -> tuple[Optional[str], Optional[str]]:
    """Membership events carry the user and the plan slug; plain {userId, planType} is also accepted."""
    data = payload.get("data")
    if payload.get("type") in ("organizationMembership.created", "organizationMembership.updated") and isinstance(data, dict):
        user_id = (data.get("public_user_data") or {}).get("user_id")
        plan_type = (data.get("organization") or {}).get("slug")
        return user_id, plan_type
    return payload.get("userId") or payload.get("user_id"), payload.get("planType") or payload.get("plan_type")


@app.post("/api/webhooks/billing")
async def billing_webhook(payload: dict):
    user_id, plan_type = _parse_billing_event(payload)
    if not user_id or not plan_type:
        logger.info(f"[BILLING] Ignoring billing event {payload.get('type')}")
        return {"status": "ignored"}
    try:
        minutes = await ledger.set_plan(user_id, plan_type)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return {"status": "processed", "user_id": user_id, "plan": plan_type, "minutes": minutes}


# ── Feedback & Progress ──────────────────────────────────

class TranscriptEntry(BaseModel):
    role: str
    content: str


class FeedbackCreate(BaseModel):
    interview_id: str
    user_id: str
    transcript: Optional[list[TranscriptEntry]] = None
    session_id: Optional[str] = None
    feedback_id: Optional[str] = None
    actual_duration_minutes: Optional[float] = Field(default=None, ge=0)


@app.post("/api/feedback")
async def create_feedback(body: FeedbackCreate):
    if body.transcript is not None:
        transcript = [t.model_dump() for t in body.transcript]
    elif body.session_id:
        collector = transcripts.get(body.session_id, create=False)
        transcript = collector.entries() if collector else []
    else:
        raise HTTPException(400, "Either transcript or session_id is required")

    result = await feedback_service.create_feedback(
        body.interview_id,
        body.user_id,
        transcript,
        feedback_id=body.feedback_id,
        actual_duration_minutes=body.actual_duration_minutes,
    )
    if result["success"] and body.session_id:
        transcripts.discard(body.session_id)
    return result


@app.get("/api/feedback/{interview_id}")
async def get_feedback(interview_id: str, user_id: str):
    feedback = await feedback_service.get_feedback(interview_id, user_id)
    if not feedback:
        raise HTTPException(404, "Feedback not found")
    return feedback


@app.get("/api/progress/{user_id}")
async def get_progress(user_id: str):
    progress = await tracker.get_user_progress(user_id)
    if progress is None:
        return {"user_id": user_id, "progress": None, "message": "Complete at least two interviews to see trends"}
    return {"user_id": user_id, "progress": progress}


@app.post("/api/maintenance/{user_id}")
async def run_maintenance(user_id: str):
    repaired = await validate_and_fix_corrupted_progress(async_session, user_id)
    removed = await cleanup_user_feedback(async_session, user_id)
    return {"user_id": user_id, "repaired": repaired, "feedback_removed": removed}

from sqlalchemy import Column, Integer, String, Float, Text, DateTime, JSON, Boolean, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase
import datetime


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp; SQLite hands back naive datetimes, so everything stays naive."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class UserAccount(Base):
    __tablename__ = "users"

    user_id = Column(String, primary_key=True)
    total_minutes = Column(Integer, nullable=True)  # NULL until the first-use grant
    plan_type = Column(String, nullable=True)  # hustle, prepped, hired
    last_updated = Column(DateTime, default=utcnow)


class UsageRecord(Base):
    __tablename__ = "usage_records"
    __table_args__ = (UniqueConstraint("user_id", "period", "resource", name="uq_usage_user_period_resource"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    period = Column(String, nullable=False)  # YYYY-MM
    resource = Column(String, nullable=False)  # session_minutes, interviews, job_targets
    amount = Column(Integer, nullable=False, default=0)


class Interview(Base):
    __tablename__ = "interviews"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    questions = Column(JSON, nullable=False)  # list of strings
    role = Column(String, nullable=False, default="")
    level = Column(String, nullable=True)
    specialty_skills = Column(JSON, nullable=True)
    type = Column(String, nullable=True)
    tone = Column(String, nullable=True)
    difficulty = Column(String, nullable=True)
    is_personalized = Column(Boolean, default=False)
    finalized = Column(Boolean, default=True)
    status = Column(String, nullable=True)  # completed once feedback arrives with a duration
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    duration = Column(Integer, nullable=True)  # minutes, from the voice webhook
    actual_duration_minutes = Column(Float, nullable=True)  # minutes, client-measured
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Feedback(Base):
    __tablename__ = "feedback"

    id = Column(String, primary_key=True)
    interview_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    total_score = Column(Float, nullable=True)
    overall_percentile = Column(String, nullable=True)
    reliability_score = Column(String, nullable=True)
    category_scores = Column(JSON, nullable=True)  # list of category objects
    question_ratings = Column(JSON, nullable=True)
    strengths = Column(JSON, nullable=True)
    areas_for_improvement = Column(JSON, nullable=True)
    final_assessment = Column(Text, nullable=True)
    limitations = Column(JSON, nullable=True)
    next_steps = Column(JSON, nullable=True)
    session_comparison = Column(JSON, nullable=True)
    transcript_quality = Column(JSON, nullable=True)
    assessment_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=True)


class VapiSession(Base):
    __tablename__ = "vapi_sessions"

    session_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    interview_id = Column(String, nullable=False)
    start_time = Column(DateTime, nullable=False, default=utcnow)
    end_time = Column(DateTime, nullable=True)
    max_duration_minutes = Column(Integer, nullable=False)
    questions_count = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="active")  # active, completed, timeout, error
    estimated_cost = Column(Float, nullable=False, default=0.0)
    actual_duration_minutes = Column(Float, nullable=True)
    actual_cost = Column(Float, nullable=True)


class VapiError(Base):
    __tablename__ = "vapi_errors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, nullable=False, index=True)
    error = Column(Text, nullable=False)
    error_type = Column(String, nullable=False)
    stack = Column(Text, nullable=True)
    timestamp = Column(DateTime, default=func.now())


class UserProgress(Base):
    __tablename__ = "user_progress"

    user_id = Column(String, primary_key=True)
    total_sessions = Column(Integer, nullable=False, default=0)
    average_score = Column(Float, nullable=True)
    best_score = Column(Float, nullable=True)
    recent_trend = Column(JSON, nullable=True)
    category_trends = Column(JSON, nullable=True)
    recommendations = Column(JSON, nullable=True)
    last_updated = Column(DateTime, default=utcnow)


class ProcessedWebhook(Base):
    __tablename__ = "processed_webhooks"

    key = Column(String, primary_key=True)  # "<event type>:<call id>"
    processed_at = Column(DateTime, default=func.now())

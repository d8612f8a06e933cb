"""Feedback scoring around a single LLM judgment call.

Everything here except the generator call is deterministic: prompt assembly,
strict schema validation with one repair pass, score caps derived from the
candidate's actual responses, and the augmentation of percentiles, rubric
text, limitations and next steps.
"""

import json
import logging
import re
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from llm import generate_json_text, strip_code_fences
from transcript import candidate_responses, classify_response, format_transcript

logger = logging.getLogger("mockmate.scoring")

CATEGORY_NAMES = (
    "Communication Skills",
    "Technical Knowledge",
    "Problem Solving",
    "Cultural Fit",
    "Confidence and Clarity",
)
LEVELS = ("junior", "mid", "senior")
MAX_QUESTIONS = 15
MAX_TRANSCRIPT_CHARS = 60000
TRUNCATION_MARKER = "...(truncated)"
EVIDENCE_REQUIRED_SCORE = 80

# Minimum score per percentile tier; seniors need more for the same label.
SCORING_BENCHMARKS = {
    "junior": {"excellent": 85, "good": 70, "adequate": 55, "concerning": 40, "poor": 0},
    "mid": {"excellent": 88, "good": 75, "adequate": 62, "concerning": 45, "poor": 0},
    "senior": {"excellent": 90, "good": 80, "adequate": 68, "concerning": 50, "poor": 0},
}
PERCENTILE_LABELS = (
    ("excellent", "Top 10% of candidates"),
    ("good", "Top 25% of candidates"),
    ("adequate", "Average performance"),
    ("concerning", "Below average"),
    ("poor", "Bottom 25% of candidates"),
)

CATEGORY_RUBRICS = {
    "Communication Skills": (
        "Articulate, well-structured responses with clear examples. Excellent listening and follow-up questions.",
        "Clear communication with good structure. Mostly complete responses with relevant details.",
        "Generally clear but some unclear explanations. Adequate structure and detail.",
        "Sometimes unclear or disorganized. Missing key details or structure.",
        "Frequently unclear or rambling responses. Poor organization.",
        "Very difficult to follow. Incomplete or confusing responses.",
    ),
    "Technical Knowledge": (
        "Deep understanding with specific examples. Explains complex concepts clearly. Shows current best practices.",
        "Solid technical foundation with good examples. Minor gaps in advanced topics.",
        "Adequate knowledge with some examples. Some confusion on intermediate topics.",
        "Basic understanding but significant gaps. Limited examples or outdated knowledge.",
        "Fundamental gaps in core concepts. Unclear explanations.",
        "Major misunderstandings. Cannot explain basic concepts.",
    ),
    "Problem Solving": (
        "Systematic approach with multiple solutions. Considers trade-offs and edge cases.",
        "Logical approach with reasonable solutions. Shows good analytical thinking.",
        "Basic problem-solving approach. Solutions are workable but may miss considerations.",
        "Inconsistent approach. Solutions may have issues or be incomplete.",
        "Poor problem-solving methodology. Solutions are unclear or incorrect.",
        "Cannot structure problem-solving approach effectively.",
    ),
    "Cultural Fit": (
        "Excellent alignment with professional values. Shows collaboration and growth mindset.",
        "Good professional presence. Shows teamwork and learning orientation.",
        "Adequate professional behavior. Some alignment with team values.",
        "Mixed signals about cultural alignment. Some concerning responses.",
        "Poor cultural alignment indicators. Conflicting values.",
        "Significant cultural misalignment.",
    ),
    "Confidence and Clarity": (
        "Confident, decisive responses. Clear thinking under pressure.",
        "Generally confident with clear responses. Minor hesitation on complex topics.",
        "Adequate confidence. Some uncertainty but recovers well.",
        "Inconsistent confidence. Some unclear or hesitant responses.",
        "Low confidence affecting response quality. Frequent uncertainty.",
        "Very uncertain responses. Lack of confidence impacts communication.",
    ),
}
_RUBRIC_FLOORS = (90, 80, 70, 60, 50)

IMPROVEMENT_TIPS = {
    "Communication Skills": [
        "Structure responses with clear beginning, middle, and end",
        "Use specific examples to illustrate points",
        "Practice explaining complex concepts simply",
    ],
    "Technical Knowledge": [
        "Prepare specific project examples for each technology",
        "Study current best practices and industry trends",
        "Practice explaining technical concepts to non-technical audiences",
    ],
    "Problem Solving": [
        "Use a structured approach: understand, analyze, solve, validate",
        "Think out loud to show your problem-solving process",
        "Consider multiple solutions and trade-offs",
    ],
    "Cultural Fit": [
        "Prepare stories that show collaboration and handling disagreement",
        "Research the company's values and connect them to your experience",
    ],
    "Confidence and Clarity": [
        "Pause briefly to organize your thoughts before answering",
        "Rehearse answers aloud to reduce filler words and hesitation",
    ],
}

SYSTEM_LIMITATIONS = [
    "Assessment based on communication only, not hands-on technical skills",
    "Cannot verify accuracy of technical claims made by candidate",
    "Cultural fit assessment is highly subjective and context-dependent",
    "Scores may vary based on question difficulty and interview context",
    "No comparison to actual job performance data",
    "Limited ability to assess soft skills like teamwork and leadership",
]

SYSTEM_PROMPT = (
    "You are a professional interviewer providing realistic, calibrated assessment. "
    "Use the full scoring range and be honest about gaps. Focus on interview communication skills."
)

Confidence = Literal["High", "Medium", "Low"]


class ScoringError(Exception):
    pass


class CategoryScore(BaseModel):
    name: str
    score: float = Field(ge=0, le=100)
    percentile: str = ""
    confidence: Confidence = "Medium"
    evidence: list[str] = []
    comment: str = ""
    benchmark_comparison: str = ""
    improvement_tips: list[str] = []


class QuestionRating(BaseModel):
    question: str
    response: str = ""
    rating: float = Field(ge=0, le=100)
    feedback: str = ""
    evidence: list[str] = []
    category: str = ""
    confidence: Confidence = "Medium"


class Strength(BaseModel):
    area: str
    description: str = ""
    evidence: list[str] = []


class AreaForImprovement(BaseModel):
    area: str
    description: str = ""
    priority: Confidence = "Medium"
    actionable_steps: list[str] = []


class GeneratedFeedback(BaseModel):
    total_score: float = Field(ge=0, le=100)
    overall_percentile: Optional[str] = None
    reliability_score: Confidence = "Medium"
    category_scores: list[CategoryScore]
    question_ratings: list[QuestionRating] = []
    strengths: list[Strength] = []
    areas_for_improvement: list[AreaForImprovement] = []
    final_assessment: str
    limitations: list[str] = []
    next_steps: list[str] = []

    @field_validator("category_scores")
    @classmethod
    def _five_fixed_categories(cls, value: list[CategoryScore]) -> list[CategoryScore]:
        names = [c.name for c in value]
        if sorted(names) != sorted(CATEGORY_NAMES):
            raise ValueError(f"category_scores must cover exactly {list(CATEGORY_NAMES)}, got {names}")
        order = {name: i for i, name in enumerate(CATEGORY_NAMES)}
        return sorted(value, key=lambda c: order[c.name])


# ── Calibration tables ───────────────────────────────────

def normalize_level(level: Optional[str]) -> str:
    level = (level or "").strip().lower()
    return level if level in LEVELS else "mid"


def get_percentile_for_score(score: float, level: str = "mid") -> str:
    thresholds = SCORING_BENCHMARKS[normalize_level(level)]
    for tier, label in PERCENTILE_LABELS:
        if score >= thresholds[tier]:
            return label
    return PERCENTILE_LABELS[-1][1]


def get_benchmark_comparison(score: float, category: str) -> str:
    rubric = CATEGORY_RUBRICS.get(category)
    if not rubric:
        return ""
    for floor, text in zip(_RUBRIC_FLOORS, rubric):
        if score >= floor:
            return text
    return rubric[-1]


def generate_improvement_tips(score: float, category: str) -> list[str]:
    if score >= EVIDENCE_REQUIRED_SCORE:
        return []
    return list(IMPROVEMENT_TIPS.get(category, []))


def generate_next_steps(category_scores: list[dict], overall_score: float) -> list[str]:
    steps: list[str] = []
    if category_scores:
        lowest = min(category_scores, key=lambda c: c["score"])
        steps.append(f"Focus improvement efforts on {lowest['name']} (scored {lowest['score']:g})")

    if overall_score < 70:
        steps.append("Practice basic interview communication and preparation")
        steps.append("Research common interview questions for your target role")
    elif overall_score < 85:
        steps.append("Refine responses with more specific examples and details")
        steps.append("Practice advanced technical discussions")
    else:
        steps.append("Focus on consistency and handling unexpected questions")
        steps.append("Practice leadership and strategic thinking questions")

    steps.append("Schedule regular practice sessions to track improvement")
    return steps


# ── Prompt ───────────────────────────────────────────────

def truncate_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def build_feedback_prompt(questions: list[str], transcript: str, level: str) -> str:
    level = normalize_level(level)
    limited = questions[:MAX_QUESTIONS]
    numbered = "\n".join(f"{i + 1}. {q}" for i, q in enumerate(limited))
    thresholds = SCORING_BENCHMARKS[level]
    return f"""Analyze interview performance with realistic, calibrated scoring.

QUESTIONS:
{numbered}

TRANSCRIPT:
{truncate_text(transcript, MAX_TRANSCRIPT_CHARS)}

EXPERIENCE LEVEL: {level.upper()}
Percentile thresholds for this level: top 10% >= {thresholds["excellent"]}, top 25% >= {thresholds["good"]}, average >= {thresholds["adequate"]}, below average >= {thresholds["concerning"]}.

SCORING RULES:
- Use the FULL range 0-100. Do not cluster around 50-70.
- No answer, a refusal, or a test utterance such as "testing" scores 0-10. Never use 50 as a neutral default.
- Off-topic responses score at most 20.
- Minimal effort, or fewer than 10 words of actual content, scores at most 20-30.
- Only give 50+ when there is a genuine attempt to answer the question.
- Scores of 80 or more are rare and MUST list the quoted evidence that justifies them.

EVIDENCE: for every category quote specific phrases from the candidate's responses, and note missing examples, structure or technical gaps.

Return ONLY valid JSON with EXACTLY this structure:
{{
  "total_score": number,
  "overall_percentile": string,
  "reliability_score": "High" | "Medium" | "Low",
  "category_scores": [
    {{
      "name": one of {json.dumps(list(CATEGORY_NAMES))},
      "score": number,
      "percentile": string,
      "confidence": "High" | "Medium" | "Low",
      "evidence": ["quoted or paraphrased evidence"],
      "comment": "assessment explanation",
      "benchmark_comparison": "performance level description",
      "improvement_tips": ["actionable tip"]
    }}
  ],
  "question_ratings": [
    {{
      "question": "question text, one entry per question above, same order",
      "response": "summary of the candidate response",
      "rating": number,
      "feedback": "specific feedback",
      "evidence": ["supporting evidence"],
      "category": "primary category tested",
      "confidence": "High" | "Medium" | "Low"
    }}
  ],
  "strengths": [{{"area": string, "description": string, "evidence": [string]}}],
  "areas_for_improvement": [{{"area": string, "description": string, "priority": "High" | "Medium" | "Low", "actionable_steps": [string]}}],
  "final_assessment": "overall assessment",
  "limitations": [string],
  "next_steps": [string]
}}
All five categories are required. No markdown, no extra text."""


# ── Validation and repair ────────────────────────────────

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")
_TRAILING_COMMA_RE = re.compile(r",\s*([\]\}])")
_SCORE_KEYS = {"total_score", "score", "rating"}
_LEVEL_KEYS = {"confidence", "reliability_score", "priority"}


def _snake_keys(value):
    if isinstance(value, dict):
        return {_CAMEL_RE.sub("_", str(k)).lower(): _snake_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_snake_keys(v) for v in value]
    return value


def _extract_json_object(raw: str) -> dict:
    text = strip_code_fences(raw)
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("No JSON object found in model output")
    data = json.loads(_TRAILING_COMMA_RE.sub(r"\1", text[start:end + 1]))
    if not isinstance(data, dict):
        raise ValueError("Model output is not a JSON object")
    return data


def _repair_node(value, key: str = ""):
    if isinstance(value, dict):
        return {k: _repair_node(v, k) for k, v in value.items()}
    if isinstance(value, list):
        return [_repair_node(v, key) for v in value]
    if key in _SCORE_KEYS and isinstance(value, (int, float, str)):
        try:
            return max(0.0, min(100.0, float(str(value).strip().rstrip("%"))))
        except ValueError:
            return value
    if key in _LEVEL_KEYS and isinstance(value, str):
        return value.strip().capitalize()
    if key in {"evidence", "improvement_tips", "actionable_steps", "limitations", "next_steps"} and isinstance(value, str):
        return [value]
    return value


def repair_feedback_payload(data: dict) -> dict:
    data = _repair_node(_snake_keys(data))
    for key in ("strengths", "areas_for_improvement"):
        items = data.get(key)
        if isinstance(items, list):
            data[key] = [{"area": i, "description": i} if isinstance(i, str) else i for i in items]
    return data


def parse_feedback(raw: str) -> GeneratedFeedback:
    """Strict validation first, then exactly one repair attempt; fails closed."""
    try:
        return GeneratedFeedback.model_validate(json.loads(strip_code_fences(raw)))
    except (ValueError, ValidationError) as e:
        logger.warning(f"[SCORING] Strict validation failed, attempting repair: {str(e)[:300]}")

    try:
        return GeneratedFeedback.model_validate(repair_feedback_payload(_extract_json_object(raw)))
    except (ValueError, ValidationError) as e:
        raise ScoringError(f"Feedback output failed validation after repair: {str(e)[:300]}") from e


# ── Deterministic calibration ────────────────────────────

def response_quality_cap(responses: list[str]) -> Optional[int]:
    kinds = [classify_response(r) for r in responses]
    if not kinds or all(k in {"no_answer", "test", "refusal"} for k in kinds):
        return 10
    if "substantive" not in kinds:
        return 30
    return None


def apply_score_cap(feedback: GeneratedFeedback, cap: float) -> None:
    feedback.total_score = min(feedback.total_score, cap)
    for category in feedback.category_scores:
        category.score = min(category.score, cap)
    for rating in feedback.question_ratings:
        rating.rating = min(rating.rating, cap)


def enforce_evidence(feedback: GeneratedFeedback) -> list[str]:
    flags = []
    for category in feedback.category_scores:
        if category.score >= EVIDENCE_REQUIRED_SCORE and not [e for e in category.evidence if e.strip()]:
            flags.append(f"missing_evidence:{category.name}")
            category.confidence = "Low"
            logger.warning(f"[SCORING] {category.name} scored {category.score} without evidence")
    return flags


def augment_feedback(feedback: GeneratedFeedback, level: str) -> dict:
    level = normalize_level(level)
    for category in feedback.category_scores:
        category.percentile = get_percentile_for_score(category.score, level)
        if not category.benchmark_comparison:
            category.benchmark_comparison = get_benchmark_comparison(category.score, category.name)
        if not category.improvement_tips:
            category.improvement_tips = generate_improvement_tips(category.score, category.name)

    result = feedback.model_dump()
    if not result["limitations"]:
        result["limitations"] = list(SYSTEM_LIMITATIONS)
    if not result["next_steps"]:
        result["next_steps"] = generate_next_steps(result["category_scores"], result["total_score"])
    # derived from the final, possibly capped, score like the category labels
    result["overall_percentile"] = get_percentile_for_score(result["total_score"], level)
    return result


class ScoringPipeline:
    def __init__(self, generate=None):
        self.generate = generate or generate_json_text

    async def evaluate(self, questions: list[str], transcript: list[dict], level: Optional[str]) -> dict:
        level = normalize_level(level)
        questions = list(questions)[:MAX_QUESTIONS]
        prompt = build_feedback_prompt(questions, format_transcript(transcript), level)

        try:
            raw = await self.generate(prompt, SYSTEM_PROMPT)
        except Exception as e:
            raise ScoringError(f"Feedback generation failed: {e}") from e

        feedback = parse_feedback(raw)
        flags: list[str] = []

        cap = response_quality_cap(candidate_responses(transcript))
        if cap is not None:
            apply_score_cap(feedback, cap)
            flags.append(f"score_cap:{cap}")
        if len(feedback.question_ratings) > len(questions):
            feedback.question_ratings = feedback.question_ratings[:len(questions)]
        elif len(feedback.question_ratings) < len(questions):
            flags.append(f"question_ratings:{len(feedback.question_ratings)}/{len(questions)}")
        flags.extend(enforce_evidence(feedback))

        result = augment_feedback(feedback, level)
        result["quality_flags"] = flags
        logger.info(f"[SCORING] total_score={result['total_score']} level={level} flags={flags}")
        return result

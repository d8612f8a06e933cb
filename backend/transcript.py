import re
from typing import Optional

CANDIDATE_ROLES = {"user", "candidate"}

_WORD_RE = re.compile(r"[A-Za-z0-9']+")
_FILLER = {
    "um", "uh", "erm", "hmm", "like", "so", "well", "yeah", "ok", "okay", "the", "a", "an",
    "i", "and", "or", "to", "of", "it", "is", "that", "this",
}
_TEST_PHRASES = {
    "testing", "test", "just testing", "test test", "testing testing", "testing 123",
    "testing one two three", "hello testing", "mic check", "check check", "1 2 3",
}
_REFUSAL_RE = re.compile(
    r"\b(i don'?t know|no idea|pass|skip|i'?d rather not|no comment|can'?t answer|not sure|nothing)\b"
)


class TranscriptCollector:
    """Append-only buffer of role-tagged utterances for one live session."""

    def __init__(self):
        self._parts: list[dict] = []

    def append(self, role: str, content: str) -> dict:
        part = {"role": role, "content": content.strip(), "index": len(self._parts)}
        self._parts.append(part)
        return part

    def entries(self) -> list[dict]:
        return [{"role": p["role"], "content": p["content"]} for p in self._parts]

    def __len__(self) -> int:
        return len(self._parts)


class TranscriptRegistry:
    def __init__(self):
        self._buffers: dict[str, TranscriptCollector] = {}

    def get(self, session_id: str, create: bool = True) -> Optional[TranscriptCollector]:
        if session_id not in self._buffers and create:
            self._buffers[session_id] = TranscriptCollector()
        return self._buffers.get(session_id)

    def discard(self, session_id: str) -> None:
        self._buffers.pop(session_id, None)


def format_transcript(transcript: list[dict]) -> str:
    return "".join(f"- {t['role']}: {t['content']}\n" for t in transcript)


def candidate_responses(transcript: list[dict]) -> list[str]:
    return [t.get("content", "") for t in transcript if t.get("role") in CANDIDATE_ROLES]


def validate_transcript(transcript: list[dict]) -> dict:
    issues: list[str] = []
    total_words = 0
    candidate_count = 0

    for sentence in transcript:
        content = sentence.get("content") or ""
        if len(content.strip()) < 5 and "Found very short or empty responses" not in issues:
            issues.append("Found very short or empty responses")
        total_words += len(content.split())
        if sentence.get("role") in CANDIDATE_ROLES:
            candidate_count += 1

    if total_words < 50:
        issues.append("Transcript is too short (less than 50 words)")
    if candidate_count < 2:
        issues.append("Very few candidate responses detected")

    completeness = min(100.0, total_words / 200 * 100)
    return {
        "is_reliable": not issues and completeness >= 40,
        "issues": issues,
        "completeness": round(completeness, 1),
    }


def substantive_word_count(text: str) -> int:
    return sum(1 for w in _WORD_RE.findall(text.lower()) if w not in _FILLER)


def classify_response(text: str) -> str:
    """One of no_answer, test, refusal, minimal, substantive."""
    normalized = " ".join(_WORD_RE.findall((text or "").lower()))
    if not normalized:
        return "no_answer"
    if normalized in _TEST_PHRASES or all(w in {"test", "testing"} for w in normalized.split()):
        return "test"
    words = substantive_word_count(normalized)
    if words < 10:
        if _REFUSAL_RE.search(normalized):
            return "refusal"
        return "minimal"
    return "substantive"

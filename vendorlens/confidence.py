from enum import Enum
from typing import Protocol

HIGH_CONFIDENCE = 0.80
MEDIUM_CONFIDENCE = 0.50

USER_CONFIDENCE = 1.0


class ResolutionSource(str, Enum):
    LLM = "llm"
    USER = "user"
    # Search-grounded answers; the value is part of the stored data.
    GOOGLE = "google"


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class MergeDecision(str, Enum):
    KEEP_EXISTING = "keep_existing"
    USE_CANDIDATE = "use_candidate"


# Tie-break order when confidences are equal.
SOURCE_AUTHORITY = {
    ResolutionSource.USER: 3,
    ResolutionSource.LLM: 2,
    ResolutionSource.GOOGLE: 1,
}


class Scored(Protocol):
    confidence: float
    source: str


def clamp(confidence: float) -> float:
    return min(1.0, max(0.0, float(confidence)))


def classify(confidence: float) -> ConfidenceLevel:
    if confidence >= HIGH_CONFIDENCE:
        return ConfidenceLevel.HIGH
    if confidence >= MEDIUM_CONFIDENCE:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def merge(existing: Scored, candidate: Scored) -> MergeDecision:
    """Decide whether ``candidate`` should replace ``existing``.

    A user-sourced mapping is authoritative: it always beats a non-user
    candidate and is never displaced by one. Otherwise the higher confidence
    wins and ties go to the more authoritative source.
    """
    existing_source = ResolutionSource(existing.source)
    candidate_source = ResolutionSource(candidate.source)

    if existing_source is ResolutionSource.USER:
        if candidate_source is not ResolutionSource.USER:
            return MergeDecision.KEEP_EXISTING
    elif candidate_source is ResolutionSource.USER:
        return MergeDecision.USE_CANDIDATE

    existing_conf = clamp(existing.confidence)
    candidate_conf = clamp(candidate.confidence)
    if candidate_conf > existing_conf:
        return MergeDecision.USE_CANDIDATE
    if candidate_conf < existing_conf:
        return MergeDecision.KEEP_EXISTING
    if SOURCE_AUTHORITY[candidate_source] > SOURCE_AUTHORITY[existing_source]:
        return MergeDecision.USE_CANDIDATE
    return MergeDecision.KEEP_EXISTING

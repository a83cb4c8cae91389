"""
Stress assessment scoring.
Turns raw per-question responses into a 0-10 combined score and a qualitative band.
Pure functions only: no I/O, no clock, no randomness.
"""
import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import FrozenSet, Iterable, List

from ..core.exceptions import EmptyAssessmentError
from ..schemas.assessment import AssessmentResponse, QuestionType, StressBand


@dataclass(frozen=True)
class AssessmentQuestion:
    id: int
    text: str
    type: QuestionType
    inverted: bool = False  # High raw score is a good outcome ("did you sleep well?")


STANDARD_STRESS_QUESTIONS: List[AssessmentQuestion] = [
    AssessmentQuestion(1, "Are you feeling overwhelmed today?", QuestionType.STRESS),
    AssessmentQuestion(2, "Have you had trouble relaxing recently?", QuestionType.STRESS),
    AssessmentQuestion(3, "Has anything been bothering you with work or at home?", QuestionType.STRESS),
    AssessmentQuestion(4, "Did you sleep well last night?", QuestionType.PHYSICAL, inverted=True),
    AssessmentQuestion(5, "How is your energy level today?", QuestionType.PHYSICAL, inverted=True),
    AssessmentQuestion(6, "Are you experiencing physical tension or discomfort?", QuestionType.PHYSICAL),
    AssessmentQuestion(7, "How would you rate your ability to focus today?", QuestionType.COGNITIVE, inverted=True),
    AssessmentQuestion(8, "Do you feel supported by friends and family?", QuestionType.SOCIAL, inverted=True),
]

INVERTED_QUESTION_IDS: FrozenSet[int] = frozenset(
    q.id for q in STANDARD_STRESS_QUESTIONS if q.inverted
)

MAX_SCORE = 10.0
LOW_THRESHOLD = 3.0       # < 3 → Low
MODERATE_THRESHOLD = 6.0  # < 6 → Moderate, else High


@dataclass(frozen=True)
class AssessmentScore:
    combined_score: float
    band: StressBand


def normalize_response(
    response: AssessmentResponse,
    inverted_ids: FrozenSet[int] = INVERTED_QUESTION_IDS,
) -> float:
    if response.question_id in inverted_ids:
        return MAX_SCORE - response.score
    return response.score


def calculate_combined_score(
    responses: Iterable[AssessmentResponse],
    inverted_ids: FrozenSet[int] = INVERTED_QUESTION_IDS,
) -> float:
    """
    Mean of normalized scores, rounded to one decimal place.
    fsum keeps the result independent of response order.
    """
    normalized = [normalize_response(r, inverted_ids) for r in responses]
    if not normalized:
        raise EmptyAssessmentError("Cannot score an assessment with no responses")

    mean = math.fsum(normalized) / len(normalized)
    rounded = Decimal(repr(mean)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    return min(MAX_SCORE, max(0.0, float(rounded)))


def stress_band(combined_score: float) -> StressBand:
    if combined_score < LOW_THRESHOLD:
        return StressBand.LOW
    if combined_score < MODERATE_THRESHOLD:
        return StressBand.MODERATE
    return StressBand.HIGH


def score_assessment(
    responses: Iterable[AssessmentResponse],
    inverted_ids: FrozenSet[int] = INVERTED_QUESTION_IDS,
) -> AssessmentScore:
    combined = calculate_combined_score(responses, inverted_ids)
    return AssessmentScore(combined_score=combined, band=stress_band(combined))

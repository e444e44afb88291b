from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

PHQ9 = "phq9"
GAD7 = "gad7"
PSS = "pss"

# Index 8 of PHQ-9 asks about thoughts of self-harm.
PHQ9_SELF_HARM_INDEX = 8

CRISIS_DEPRESSION_TOTAL = 20
CRISIS_ANXIETY_TOTAL = 15
CRISIS_STRESS_TOTAL = 27


class InvalidAnswerValue(ValueError):
    pass


@dataclass(frozen=True)
class InstrumentSpec:
    key: str
    question_count: int
    max_option_value: int
    reverse_indices: FrozenSet[int] = frozenset()
    # (inclusive upper bound, label), ascending; the last entry catches the rest.
    severity_ladder: Tuple[Tuple[Optional[int], str], ...] = ()

    @property
    def max_total(self) -> int:
        return self.question_count * self.max_option_value


INSTRUMENTS: Dict[str, InstrumentSpec] = {
    PHQ9: InstrumentSpec(
        key=PHQ9,
        question_count=9,
        max_option_value=3,
        severity_ladder=(
            (4, "Minimal depression"),
            (9, "Mild depression"),
            (14, "Moderate depression"),
            (19, "Moderately severe depression"),
            (None, "Severe depression"),
        ),
    ),
    GAD7: InstrumentSpec(
        key=GAD7,
        question_count=7,
        max_option_value=3,
        severity_ladder=(
            (4, "Minimal anxiety"),
            (9, "Mild anxiety"),
            (14, "Moderate anxiety"),
            (None, "Severe anxiety"),
        ),
    ),
    PSS: InstrumentSpec(
        key=PSS,
        question_count=10,
        max_option_value=4,
        reverse_indices=frozenset({3, 4, 6, 7}),
        severity_ladder=(
            (13, "Low perceived stress"),
            (26, "Moderate perceived stress"),
            (None, "High perceived stress"),
        ),
    ),
}


@dataclass
class AssessmentResult:
    phq9: int
    gad7: int
    pss: int
    severity_labels: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "phq9": self.phq9,
            "gad7": self.gad7,
            "pss": self.pss,
            "severity_labels": dict(self.severity_labels),
        }


@dataclass
class RiskAssessment:
    suicidal_ideation: bool
    high_risk_depression: bool
    high_risk_anxiety: bool
    high_risk_stress: bool
    is_crisis: bool

    @property
    def reasons(self) -> List[str]:
        flags = [
            ("suicidal_ideation", self.suicidal_ideation),
            ("high_risk_depression", self.high_risk_depression),
            ("high_risk_anxiety", self.high_risk_anxiety),
            ("high_risk_stress", self.high_risk_stress),
        ]
        return [name for name, raised in flags if raised]

    def to_dict(self) -> dict:
        return {
            "suicidal_ideation": self.suicidal_ideation,
            "high_risk_depression": self.high_risk_depression,
            "high_risk_anxiety": self.high_risk_anxiety,
            "high_risk_stress": self.high_risk_stress,
            "is_crisis": self.is_crisis,
            "reasons": self.reasons,
        }


def get_instrument(instrument: str) -> InstrumentSpec:
    spec = INSTRUMENTS.get(instrument)
    if spec is None:
        raise InvalidAnswerValue(f"Unknown instrument: {instrument!r}")
    return spec


def validate_answers(answers: Mapping[int, int], spec: InstrumentSpec) -> None:
    if not isinstance(answers, Mapping):
        raise InvalidAnswerValue(f"{spec.key} answers must be a mapping of question index to value")
    if len(answers) > spec.question_count:
        raise InvalidAnswerValue(
            f"{spec.key} expects {spec.question_count} questions, got {len(answers)}"
        )
    for index, value in answers.items():
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < spec.question_count:
            raise InvalidAnswerValue(f"{spec.key} has no question {index!r}")
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidAnswerValue(f"{spec.key} question {index} must be an integer, got {value!r}")
        if not 0 <= value <= spec.max_option_value:
            raise InvalidAnswerValue(
                f"{spec.key} question {index} must be between 0 and {spec.max_option_value}, got {value}"
            )


def compute_instrument_total(answers: Mapping[int, int], spec: InstrumentSpec) -> int:
    """Sum an instrument's answers, inverting reverse-scored items.

    Unanswered questions count as zero. Out-of-range values, non-integer
    values and unknown question indices raise ``InvalidAnswerValue``.
    """
    validate_answers(answers, spec)
    total = 0
    for index in range(spec.question_count):
        value = answers.get(index, 0)
        if index in spec.reverse_indices:
            value = spec.max_option_value - value
        total += value
    return total


def classify_severity(instrument: str, total: int) -> str:
    spec = get_instrument(instrument)
    for upper, label in spec.severity_ladder:
        if upper is None or total <= upper:
            return label
    return spec.severity_ladder[-1][1]


def detect_crisis(phq9_total: int, gad7_total: int, pss_total: int, phq9_item9_value: int) -> RiskAssessment:
    suicidal_ideation = phq9_item9_value >= 1
    high_risk_depression = phq9_total >= CRISIS_DEPRESSION_TOTAL
    high_risk_anxiety = high_risk_depression and gad7_total >= CRISIS_ANXIETY_TOTAL
    high_risk_stress = high_risk_depression and pss_total >= CRISIS_STRESS_TOTAL
    is_crisis = suicidal_ideation or high_risk_depression or high_risk_anxiety or high_risk_stress
    return RiskAssessment(
        suicidal_ideation=suicidal_ideation,
        high_risk_depression=high_risk_depression,
        high_risk_anxiety=high_risk_anxiety,
        high_risk_stress=high_risk_stress,
        is_crisis=is_crisis,
    )


def score_assessment(instrument_answers: Mapping[str, Mapping[int, int]]) -> AssessmentResult:
    unknown = [key for key in instrument_answers if key not in INSTRUMENTS]
    if unknown:
        raise InvalidAnswerValue(f"Unknown instruments: {sorted(unknown)}")
    totals: Dict[str, int] = {}
    for key, spec in INSTRUMENTS.items():
        totals[key] = compute_instrument_total(instrument_answers.get(key, {}), spec)
    labels = {key: classify_severity(key, total) for key, total in totals.items()}
    return AssessmentResult(
        phq9=totals[PHQ9],
        gad7=totals[GAD7],
        pss=totals[PSS],
        severity_labels=labels,
    )


def evaluate_submission(instrument_answers: Mapping[str, Mapping[int, int]]) -> Tuple[AssessmentResult, RiskAssessment]:
    """Score a full submission and run crisis detection on it.

    Nothing is persisted here; callers must look at ``risk.is_crisis``
    before writing the assessment or touching the streak.
    """
    result = score_assessment(instrument_answers)
    item9 = instrument_answers.get(PHQ9, {}).get(PHQ9_SELF_HARM_INDEX, 0)
    risk = detect_crisis(result.phq9, result.gad7, result.pss, item9)
    if risk.is_crisis:
        logger.info(
            "Crisis signals detected (phq9=%s gad7=%s pss=%s reasons=%s)",
            result.phq9,
            result.gad7,
            result.pss,
            ",".join(risk.reasons),
        )
    return result, risk

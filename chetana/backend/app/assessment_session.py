from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from .scoring_engine import GAD7, INSTRUMENTS, PHQ9, PSS, InvalidAnswerValue

FREQUENCY_OPTIONS = ["Not at all", "Several days", "More than half the days", "Nearly every day"]
STRESS_OPTIONS = ["Never", "Almost never", "Sometimes", "Fairly often", "Very often"]

QUESTION_TEXT = {
    PHQ9: [
        "Little interest or pleasure in doing things",
        "Feeling down, depressed, or hopeless",
        "Trouble falling or staying asleep, or sleeping too much",
        "Feeling tired or having little energy",
        "Poor appetite or overeating",
        "Feeling bad about yourself, or that you are a failure or have let yourself or your family down",
        "Trouble concentrating on things, such as reading or watching television",
        "Moving or speaking so slowly that other people could have noticed, or the opposite",
        "Thoughts that you would be better off dead, or of hurting yourself in some way",
    ],
    GAD7: [
        "Feeling nervous, anxious, or on edge",
        "Not being able to stop or control worrying",
        "Worrying too much about different things",
        "Trouble relaxing",
        "Being so restless that it is hard to sit still",
        "Becoming easily annoyed or irritable",
        "Feeling afraid, as if something awful might happen",
    ],
    PSS: [
        "In the last month, how often have you been upset because of something that happened unexpectedly?",
        "In the last month, how often have you felt that you were unable to control the important things in your life?",
        "In the last month, how often have you felt nervous and stressed?",
        "In the last month, how often have you felt confident about your ability to handle your personal problems?",
        "In the last month, how often have you felt that things were going your way?",
        "In the last month, how often have you found that you could not cope with all the things that you had to do?",
        "In the last month, how often have you been able to control irritations in your life?",
        "In the last month, how often have you felt that you were on top of things?",
        "In the last month, how often have you been angered because of things that were outside of your control?",
        "In the last month, how often have you felt difficulties were piling up so high that you could not overcome them?",
    ],
}

INSTRUMENT_ORDER = [PHQ9, GAD7, PSS]


def question_key(instrument: str, index: int) -> str:
    return f"{instrument}-q{index}"


def parse_question_key(key: str) -> Tuple[str, int]:
    instrument, sep, suffix = key.partition("-q")
    if not sep or instrument not in INSTRUMENTS or not suffix.isdigit():
        raise InvalidAnswerValue(f"Unknown question: {key!r}")
    index = int(suffix)
    if index >= INSTRUMENTS[instrument].question_count:
        raise InvalidAnswerValue(f"Unknown question: {key!r}")
    return instrument, index


def question_bank() -> List[dict]:
    bank = []
    for instrument in INSTRUMENT_ORDER:
        spec = INSTRUMENTS[instrument]
        labels = STRESS_OPTIONS if instrument == PSS else FREQUENCY_OPTIONS
        for index, text in enumerate(QUESTION_TEXT[instrument]):
            bank.append({
                "key": question_key(instrument, index),
                "instrument": instrument,
                "index": index,
                "text": text,
                "options": [{"label": label, "value": value} for value, label in enumerate(labels)],
                "reverse_scored": index in spec.reverse_indices,
            })
    return bank


QUESTION_KEYS = tuple(item["key"] for item in question_bank())


@dataclass(frozen=True)
class AssessmentSession:
    """Answers collected so far for one sitting of the three instruments.

    Sessions are values: every mutation returns a new session, so one
    sitting never leaks into another request.
    """

    answers: Mapping[str, int] = field(default_factory=dict)
    current_index: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "answers", MappingProxyType(dict(self.answers)))

    @classmethod
    def from_payload(cls, payload: Mapping[str, int]) -> "AssessmentSession":
        session = cls()
        for key, value in payload.items():
            session = session.with_answer(key, value)
        return session

    @staticmethod
    def question_keys() -> Tuple[str, ...]:
        return QUESTION_KEYS

    @property
    def is_complete(self) -> bool:
        return all(key in self.answers for key in QUESTION_KEYS)

    @property
    def progress(self) -> float:
        return round(len(self.answers) / len(QUESTION_KEYS), 2)

    def current_question(self) -> Optional[str]:
        if self.current_index >= len(QUESTION_KEYS):
            return None
        return QUESTION_KEYS[self.current_index]

    def with_answer(self, key: str, value: int) -> "AssessmentSession":
        instrument, _index = parse_question_key(key)
        max_value = INSTRUMENTS[instrument].max_option_value
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= max_value:
            raise InvalidAnswerValue(f"{key} must be an integer between 0 and {max_value}, got {value!r}")
        answers: Dict[str, int] = dict(self.answers)
        answers[key] = value
        return AssessmentSession(answers=answers, current_index=self.current_index)

    def answer(self, value: int) -> "AssessmentSession":
        key = self.current_question()
        if key is None:
            raise InvalidAnswerValue("All questions have already been answered")
        updated = self.with_answer(key, value)
        return AssessmentSession(answers=updated.answers, current_index=self.current_index + 1)

    def instrument_answers(self) -> Dict[str, Dict[int, int]]:
        grouped: Dict[str, Dict[int, int]] = {instrument: {} for instrument in INSTRUMENT_ORDER}
        for key, value in self.answers.items():
            instrument, index = parse_question_key(key)
            grouped[instrument][index] = value
        return grouped

from __future__ import annotations
import logging
import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .bands import clamp_band, nearest_half

logger = logging.getLogger(__name__)


WRITING_CRITERIA = ("taskAchievement", "coherenceCohesion", "lexicalResource", "grammaticalRange")
SPEAKING_CRITERIA = ("fluencyCoherence", "lexicalResource", "grammaticalRange", "pronunciation")

_SYNONYMS: Dict[str, List[str]] = {
	"big": ["large", "huge", "enormous", "massive"],
	"small": ["little", "tiny", "minute", "petite"],
	"happy": ["glad", "pleased", "joyful", "delighted"],
	"sad": ["unhappy", "sorrowful", "miserable", "depressed"],
	"good": ["excellent", "great", "wonderful", "fine"],
	"bad": ["terrible", "awful", "horrible", "poor"],
	"quick": ["fast", "rapid", "swift", "speedy"],
	"slow": ["sluggish", "gradual", "leisurely"],
}

_FILLER_WORDS = re.compile(r"\b(a|an|the|in|on|at|of|for|with|by)\b")
_CHOICE_LETTER = re.compile(r"^[a-d]\)?\s*$", re.IGNORECASE)
_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


@dataclass
class ScoringResult:
	total_questions: int
	correct_answers: int
	raw_score: int
	accuracy: float
	answered: int = 0
	empty: int = 0

	def as_dict(self) -> Dict[str, Any]:
		return asdict(self)


def normalize_answer(answer: Any) -> str:
	if not isinstance(answer, str):
		return ""
	stripped = answer.strip()
	# Multiple-choice letters such as "B" or "b)" collapse to the bare letter
	if _CHOICE_LETTER.match(stripped):
		return stripped[0].lower()
	normalized = re.sub(r"\s+", " ", stripped.lower())
	return re.sub(r"[.,;:!?]", "", normalized)


def _leading_int(text: str) -> Optional[int]:
	m = _LEADING_INT.match(text)
	return int(m.group(1)) if m else None


def compare_answers(user_answer: str, correct_answer: str) -> bool:
	"""Compare two normalized answers, tolerating the usual candidate variations."""
	if not user_answer or not correct_answer:
		return False
	if user_answer == correct_answer:
		return True

	if len(user_answer) > 1 and len(correct_answer) > 1:
		if correct_answer in user_answer or user_answer in correct_answer:
			return True

	user_num = _leading_int(user_answer)
	if user_num is not None and user_num == _leading_int(correct_answer):
		return True

	for base, synonyms in _SYNONYMS.items():
		if (user_answer == base and correct_answer in synonyms) or \
			(correct_answer == base and user_answer in synonyms) or \
			(user_answer in synonyms and correct_answer in synonyms):
			return True

	clean_user = re.sub(r"\s+", " ", _FILLER_WORDS.sub("", user_answer)).strip()
	clean_correct = re.sub(r"\s+", " ", _FILLER_WORDS.sub("", correct_answer)).strip()
	if clean_user and clean_user == clean_correct:
		return True

	user_words = user_answer.split()
	correct_words = correct_answer.split()
	if len(user_words) > 1 or len(correct_words) > 1:
		if set(correct_words).issubset(user_words):
			return True
	return False


def _answer_text(answer: Any) -> Any:
	# Pages send plain strings; older clients wrapped them as {"value": ...}
	if isinstance(answer, Mapping):
		return answer.get("value", answer.get("answer"))
	return answer


def answer_matches(answer: Any, correct_answers: Iterable[Any]) -> bool:
	user = normalize_answer(_answer_text(answer))
	return bool(user) and any(compare_answers(user, normalize_answer(c)) for c in correct_answers)


def score_objective_answers(answers: Iterable[Any], questions: Iterable[Any]) -> ScoringResult:
	"""Score listening/reading answers against the question bank.

	``answers`` and ``questions`` are ORM rows (or anything with the same
	attributes). Only the first answer per question counts; empty answers are
	counted as answered but incorrect.
	"""
	question_map = {q.id: q for q in questions}
	total = len(question_map)

	first_answers: Dict[str, Any] = {}
	for a in answers:
		if not a.question_id:
			continue
		if a.question_id in first_answers:
			logger.debug("Duplicate answer for question %s ignored", a.question_id)
			continue
		first_answers[a.question_id] = a

	correct = 0
	answered = 0
	empty = 0
	for question_id, a in first_answers.items():
		question = question_map.get(question_id)
		if question is None or not question.correct_answers:
			continue
		answered += 1
		user = normalize_answer(_answer_text(a.answer))
		if not user:
			empty += 1
			continue
		if answer_matches(a.answer, question.correct_answers):
			correct += 1

	accuracy = (correct / total) * 100 if total else 0.0
	logger.info("Scored %d answers against %d questions: %d correct, %d empty", answered, total, correct, empty)
	return ScoringResult(
		total_questions=total,
		correct_answers=correct,
		raw_score=correct,
		accuracy=accuracy,
		answered=answered,
		empty=empty,
	)


def calculate_subjective_band(section: str, criteria: Mapping[str, Any], fallback: Optional[float] = None) -> float:
	"""Writing/speaking band as the mean of the four criterion bands."""
	keys = WRITING_CRITERIA if section == "writing" else SPEAKING_CRITERIA if section == "speaking" else ()
	values: List[float] = []
	for key in keys:
		try:
			values.append(clamp_band(float(criteria[key])))
		except (KeyError, TypeError, ValueError):
			values = []
			break
	if values:
		return nearest_half(sum(values) / len(values))
	if fallback is None:
		raise ValueError(f"evaluation for {section!r} is missing criterion scores")
	return nearest_half(float(fallback))


def validate_answer_format(answer: Any, question_type: str) -> bool:
	if question_type == "multiple_choice":
		return isinstance(answer, str) and re.fullmatch(r"[A-Da-d]", answer.strip()) is not None
	if question_type in ("fill_blank", "short_answer"):
		return isinstance(answer, str) and bool(answer.strip())
	if question_type == "essay":
		return isinstance(answer, str) and len(answer.split()) >= 150
	return True

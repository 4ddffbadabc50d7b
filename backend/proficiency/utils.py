from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, NamedTuple, Optional

# Minimum words per writing task
WRITING_MIN_WORDS: Dict[int, int] = {1: 150, 2: 250}

# Minutes per section
SECTION_DURATIONS: Dict[str, int] = {"listening": 30, "reading": 60, "writing": 60, "speaking": 14}


class WordCountCheck(NamedTuple):
	is_valid: bool
	current_count: int
	needed: int


def format_time(seconds: int) -> str:
	seconds = max(0, int(seconds))
	hours, rest = divmod(seconds, 3600)
	minutes, secs = divmod(rest, 60)
	if hours > 0:
		return f"{hours:02d}:{minutes:02d}:{secs:02d}"
	return f"{minutes:02d}:{secs:02d}"


def word_count(text: Optional[str]) -> int:
	return len((text or "").split())


def validate_word_count(text: Optional[str], min_words: int) -> WordCountCheck:
	count = word_count(text)
	return WordCountCheck(is_valid=count >= min_words, current_count=count, needed=max(0, min_words - count))


def min_words_for(task: int) -> int:
	try:
		return WRITING_MIN_WORDS[int(task)]
	except (KeyError, TypeError, ValueError):
		raise ValueError(f"writing task must be one of {sorted(WRITING_MIN_WORDS)}") from None


def word_count_message(task: int, check: WordCountCheck) -> str:
	return (
		f"Task {task} requires at least {min_words_for(task)} words. "
		f"You have {check.current_count} words. {check.needed} more words needed."
	)


def section_duration(section: str) -> int:
	return SECTION_DURATIONS.get(section, 0)


def time_remaining(start_time: datetime, total_seconds: Optional[int], now: Optional[datetime] = None) -> int:
	if not start_time or not total_seconds:
		return 0
	now = now or datetime.utcnow()
	elapsed = int((now - start_time).total_seconds())
	return max(0, total_seconds - elapsed)


def session_summary(session: Any, answers_count: int = 0, now: Optional[datetime] = None) -> Dict[str, Any]:
	end = session.end_time or now or datetime.utcnow()
	minutes = max(0, int((end - session.start_time).total_seconds() // 60))
	bands = [session.listening_band, session.reading_band, session.writing_band, session.speaking_band]
	return {
		"duration": f"{minutes // 60}h {minutes % 60}m",
		"sectionsCompleted": sum(1 for b in bands if b is not None),
		"answersSubmitted": answers_count,
	}

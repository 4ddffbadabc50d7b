"""Which section of a test a candidate may be on: listening -> reading -> writing -> speaking -> completed."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional


class Section(str, Enum):
	LISTENING = "listening"
	READING = "reading"
	WRITING = "writing"
	SPEAKING = "speaking"
	COMPLETED = "completed"


# Sections a candidate actually sits, in order
TEST_SECTIONS: List[Section] = [Section.LISTENING, Section.READING, Section.WRITING, Section.SPEAKING]

# Allowed transitions: each state has exactly one successor
TRANSITIONS: Dict[Section, Section] = {
	Section.LISTENING: Section.READING,
	Section.READING: Section.WRITING,
	Section.WRITING: Section.SPEAKING,
	Section.SPEAKING: Section.COMPLETED,
}

_ORDER: Dict[Section, int] = {s: i for i, s in enumerate(TEST_SECTIONS + [Section.COMPLETED])}

# Session column holding each section's completion flag
COMPLETION_FLAGS: Dict[Section, str] = {
	Section.LISTENING: "listening_completed",
	Section.READING: "reading_completed",
	Section.WRITING: "writing_completed",
	Section.SPEAKING: "speaking_completed",
}


class TransitionError(ValueError):
	"""Raised when a requested move would skip or regress a section."""

	def __init__(self, message: str, *, current: Section, target: Optional[Section] = None) -> None:
		super().__init__(message)
		self.current = current
		self.target = target


@dataclass(frozen=True)
class Progress:
	current: Section = Section.LISTENING
	completed: FrozenSet[Section] = field(default_factory=frozenset)
	status: str = "in_progress"

	@classmethod
	def from_session(cls, session: Any) -> "Progress":
		"""Build from anything with the session columns as attributes (ORM row)."""
		completed = frozenset(s for s, attr in COMPLETION_FLAGS.items() if getattr(session, attr, False))
		return cls(current=parse_section(session.current_section), completed=completed, status=session.status)

	@classmethod
	def from_snapshot(cls, snapshot: Mapping[str, Any]) -> "Progress":
		"""Build from a camelCase session payload as returned by the API."""
		completed = frozenset(s for s in TEST_SECTIONS if snapshot.get(f"{s.value}Completed"))
		return cls(
			current=parse_section(snapshot.get("currentSection") or Section.LISTENING.value),
			completed=completed,
			status=snapshot.get("status") or "in_progress",
		)

	def flags(self) -> Dict[str, bool]:
		return {attr: s in self.completed for s, attr in COMPLETION_FLAGS.items()}


def parse_section(value: Any) -> Section:
	if isinstance(value, Section):
		return value
	try:
		return Section(str(value).strip().lower())
	except ValueError:
		raise ValueError(f"unknown section {value!r}; expected one of {[s.value for s in Section]}") from None


def next_section(section: Section) -> Optional[Section]:
	return TRANSITIONS.get(section)


def previous_section(section: Section) -> Optional[Section]:
	idx = _ORDER[section]
	if idx == 0:
		return None
	return (TEST_SECTIONS + [Section.COMPLETED])[idx - 1]


def can_enter(section: Section, progress: Progress) -> bool:
	"""True when the candidate may be on ``section`` right now.

	Only the current section is enterable, and only if every section before it
	carries its completion flag. ``completed`` (the results page) needs all four.
	"""
	section = parse_section(section)
	if section != progress.current:
		return False
	if section != Section.COMPLETED and section in progress.completed:
		return False
	return all(s in progress.completed for s in TEST_SECTIONS[: _ORDER[section]])


def advance(progress: Progress) -> Progress:
	"""Complete the current section and move to its successor."""
	target = TRANSITIONS.get(progress.current)
	if target is None:
		raise TransitionError("test is already completed", current=progress.current)
	completed = progress.completed | {progress.current}
	status = "completed" if target == Section.COMPLETED else progress.status
	return Progress(current=target, completed=frozenset(completed), status=status)


def transition(progress: Progress, target: Section) -> Progress:
	"""Move to ``target``; staying put is a no-op, anything but one step forward fails."""
	target = parse_section(target)
	if target == progress.current:
		return progress
	if TRANSITIONS.get(progress.current) == target:
		return advance(progress)
	if _ORDER[target] < _ORDER[progress.current]:
		raise TransitionError(
			f"cannot move back from {progress.current.value} to {target.value}",
			current=progress.current,
			target=target,
		)
	raise TransitionError(
		f"cannot skip from {progress.current.value} to {target.value}; complete {progress.current.value} first",
		current=progress.current,
		target=target,
	)


def route_for(section: Section, session_id: str) -> str:
	if section == Section.COMPLETED:
		return f"/results/{session_id}"
	return f"/test/{session_id}/{section.value}"


def redirect_for(section: Section, progress: Progress, session_id: str) -> Optional[str]:
	"""Where a candidate asking for ``section`` has to go instead, or None if allowed."""
	if can_enter(section, progress):
		return None
	return route_for(progress.current, session_id)


def completed_sections(progress: Progress) -> List[Section]:
	return [s for s in TEST_SECTIONS if s in progress.completed]


def is_test_complete(progress: Progress) -> bool:
	return progress.status == "completed" or len(completed_sections(progress)) == len(TEST_SECTIONS)


def section_progress(section: Section) -> float:
	"""Percentage through the test, counting the current section as reached."""
	section = parse_section(section)
	if section == Section.COMPLETED:
		return 100.0
	return (_ORDER[section] + 1) / len(TEST_SECTIONS) * 100

from __future__ import annotations

import itertools

import pytest

from proficiency.progression import (
	Progress,
	Section,
	TEST_SECTIONS,
	TRANSITIONS,
	TransitionError,
	advance,
	can_enter,
	is_test_complete,
	parse_section,
	previous_section,
	redirect_for,
	route_for,
	section_progress,
	transition,
)

ORDER = TEST_SECTIONS + [Section.COMPLETED]


def at(section: Section) -> Progress:
	"""Progress reached by completing every section before ``section``."""
	progress = Progress()
	while progress.current != section:
		progress = advance(progress)
	return progress


def test_transitions_form_a_single_chain():
	assert [s for s in ORDER if s not in TRANSITIONS] == [Section.COMPLETED]
	seen = [Section.LISTENING]
	while seen[-1] in TRANSITIONS:
		seen.append(TRANSITIONS[seen[-1]])
	assert seen == ORDER


def test_advance_sets_flag_and_moves_forward():
	progress = advance(Progress())
	assert progress.current == Section.READING
	assert progress.completed == {Section.LISTENING}
	assert progress.status == "in_progress"


def test_advance_into_completed_marks_status():
	progress = advance(at(Section.SPEAKING))
	assert progress.current == Section.COMPLETED
	assert progress.status == "completed"
	assert is_test_complete(progress)
	with pytest.raises(TransitionError):
		advance(progress)


@pytest.mark.parametrize("start, target", list(itertools.product(ORDER, ORDER)))
def test_transition_never_regresses_or_skips(start, target):
	progress = at(start)
	distance = ORDER.index(target) - ORDER.index(start)
	if distance in (0, 1):
		assert transition(progress, target).current == target
	else:
		with pytest.raises(TransitionError) as exc:
			transition(progress, target)
		assert exc.value.current == start


def test_walking_the_whole_test_is_monotonic():
	progress = Progress()
	positions = [ORDER.index(progress.current)]
	while progress.current != Section.COMPLETED:
		progress = advance(progress)
		positions.append(ORDER.index(progress.current))
	assert positions == sorted(positions) == list(range(len(ORDER)))


def test_speaking_session_cannot_reach_reading_or_listening():
	progress = at(Section.SPEAKING)
	assert not can_enter(Section.READING, progress)
	assert not can_enter(Section.LISTENING, progress)
	assert redirect_for(Section.READING, progress, "s1") == "/test/s1/speaking"
	assert redirect_for(Section.LISTENING, progress, "s1") == "/test/s1/speaking"
	assert redirect_for(Section.SPEAKING, progress, "s1") is None


def test_cannot_enter_ahead_of_current_section():
	progress = at(Section.READING)
	assert not can_enter(Section.WRITING, progress)
	assert redirect_for(Section.WRITING, progress, "s1") == "/test/s1/reading"


def test_section_without_prior_flags_is_not_enterable():
	progress = Progress(current=Section.WRITING, completed=frozenset({Section.LISTENING}))
	assert not can_enter(Section.WRITING, progress)


def test_results_page_needs_every_section():
	assert can_enter(Section.COMPLETED, at(Section.COMPLETED))
	assert route_for(Section.COMPLETED, "s1") == "/results/s1"


def test_from_snapshot_reads_camel_case_payload():
	progress = Progress.from_snapshot({
		"currentSection": "writing",
		"listeningCompleted": True,
		"readingCompleted": True,
		"writingCompleted": False,
		"status": "in_progress",
	})
	assert progress == at(Section.WRITING)


def test_parse_section_rejects_unknown_names():
	assert parse_section(" Reading ") == Section.READING
	with pytest.raises(ValueError):
		parse_section("grammar")


def test_previous_section_and_progress_percentage():
	assert previous_section(Section.LISTENING) is None
	assert previous_section(Section.COMPLETED) == Section.SPEAKING
	assert section_progress(Section.LISTENING) == 25.0
	assert section_progress(Section.COMPLETED) == 100.0

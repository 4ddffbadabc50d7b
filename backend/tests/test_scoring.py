from __future__ import annotations

from types import SimpleNamespace

import pytest

from proficiency.bands import band_descriptor, calculate_overall_band, nearest_half, raw_score_to_band, round_band
from proficiency.scoring import (
	calculate_subjective_band,
	compare_answers,
	normalize_answer,
	score_objective_answers,
	validate_answer_format,
)
from proficiency.utils import (
	format_time,
	min_words_for,
	section_duration,
	validate_word_count,
	word_count_message,
)


@pytest.mark.parametrize("raw, band", [(40, 9.0), (37, 8.5), (30, 7.0), (23, 6.0), (16, 5.0), (1, 1.0), (0, 0.0)])
def test_raw_score_to_band(raw, band):
	assert raw_score_to_band(raw, "listening") == band
	assert raw_score_to_band(raw, "reading") == band


def test_raw_score_only_for_objective_sections():
	with pytest.raises(ValueError):
		raw_score_to_band(30, "writing")


@pytest.mark.parametrize("value, expected", [(6.125, 6.0), (6.25, 6.5), (6.5, 6.5), (6.75, 7.0), (6.875, 7.0)])
def test_round_band_uses_quarter_rules(value, expected):
	assert round_band(value) == expected


def test_overall_band():
	assert calculate_overall_band(6.5, 6.5, 5.0, 7.0) == 6.5
	assert calculate_overall_band(7.0, 7.5, 6.5, 7.0) == 7.0
	assert band_descriptor(7.0) == "Good User"
	assert band_descriptor(None) == "Unknown"


def test_nearest_half_clamps():
	assert nearest_half(9.9) == 9.0
	assert nearest_half(6.3) == 6.5


@pytest.mark.parametrize("answer, expected", [("B)", "b"), ("  c ", "c"), ("The  Museum.", "the museum"), (None, "")])
def test_normalize_answer(answer, expected):
	assert normalize_answer(answer) == expected


@pytest.mark.parametrize("user, correct", [
	("the museum", "museum"),
	("15 minutes", "15"),
	("large", "big"),
	("north gate", "the north gate"),
	("b", "b"),
])
def test_compare_answers_tolerates_variants(user, correct):
	assert compare_answers(user, correct)


def test_compare_answers_rejects_wrong_answer():
	assert not compare_answers("a", "b")
	assert not compare_answers("library", "museum")
	assert not compare_answers("", "museum")


def test_first_answer_per_question_wins_and_empty_is_wrong():
	questions = [
		SimpleNamespace(id="q1", correct_answers=["B"]),
		SimpleNamespace(id="q2", correct_answers=["museum"]),
		SimpleNamespace(id="q3", correct_answers=["two"]),
	]
	answers = [
		SimpleNamespace(question_id="q1", answer="B)"),
		SimpleNamespace(question_id="q1", answer="C"),
		SimpleNamespace(question_id="q2", answer={"value": "the Museum"}),
		SimpleNamespace(question_id="q3", answer="  "),
	]
	result = score_objective_answers(answers, questions)
	assert result.total_questions == 3
	assert result.correct_answers == 2
	assert result.empty == 1
	assert result.answered == 3


def test_subjective_band_is_criteria_mean():
	criteria = {"taskAchievement": 6, "coherenceCohesion": 7, "lexicalResource": 7, "grammaticalRange": 6}
	assert calculate_subjective_band("writing", criteria) == 6.5


def test_subjective_band_falls_back_to_overall():
	assert calculate_subjective_band("speaking", {"fluencyCoherence": 7}, fallback=6.0) == 6.0
	with pytest.raises(ValueError):
		calculate_subjective_band("speaking", {})


def test_validate_answer_format():
	assert validate_answer_format("b", "multiple_choice")
	assert not validate_answer_format("E", "multiple_choice")
	assert not validate_answer_format(" ", "short_answer")
	assert not validate_answer_format("too short", "essay")


def test_word_count_for_140_word_task_one():
	check = validate_word_count(" ".join(["word"] * 140), min_words_for(1))
	assert not check.is_valid
	assert check.needed == 10
	assert word_count_message(1, check).endswith("10 more words needed.")


def test_task_two_needs_250_words():
	assert min_words_for(2) == 250
	assert validate_word_count(" ".join(["word"] * 250), 250).is_valid
	with pytest.raises(ValueError):
		min_words_for(3)


def test_format_time_and_durations():
	assert format_time(75) == "01:15"
	assert format_time(3725) == "01:02:05"
	assert section_duration("speaking") == 14

from __future__ import annotations

from typing import Any, List

import pytest

from proficiency.examiner import Examiner, dedupe_transcript
from proficiency.gemini_client import GeminiClient, GeminiError, extract_json

pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend():
	return "asyncio"


class StubModel:
	"""Stands in for GeminiClient: hands back queued JSON payloads."""

	def __init__(self, *payloads: Any) -> None:
		self.payloads = list(payloads)
		self.prompts: List[str] = []

	async def generate_json(self, prompt: str, **kwargs: Any) -> Any:
		self.prompts.append(prompt)
		return self.payloads.pop(0)

	async def generate(self, prompt: str, **kwargs: Any) -> str:
		self.prompts.append(prompt)
		return "ok"

	async def aclose(self) -> None:
		pass


def test_extract_json_from_fenced_and_wrapped_output():
	assert extract_json('{"a": 1}') == {"a": 1}
	assert extract_json('Here you go:\n```json\n{"band": 6.5}\n```') == {"band": 6.5}
	assert extract_json('Sure! [{"q": 1}] hope that helps') == [{"q": 1}]
	with pytest.raises(GeminiError):
		extract_json("no json here")


def test_client_requires_api_key(monkeypatch):
	from proficiency.settings import settings
	monkeypatch.setattr(settings, "gemini_api_key", None)
	with pytest.raises(GeminiError):
		GeminiClient()


def test_dedupe_transcript_collapses_repeats():
	assert dedupe_transcript("I I  think think that that is is fine") == "I think that is fine"
	assert dedupe_transcript("in my opinion in my opinion it is") == "in my opinion it is"


async def test_writing_band_recomputed_from_criteria():
	model = StubModel({
		"taskAchievement": 6,
		"coherenceCohesion": 7,
		"lexicalResource": 7,
		"grammaticalRange": 6,
		"overallWritingBand": 9,
		"improvementTips": "Use more linking words",
	})
	result = await Examiner(client=model).evaluate_writing("Describe the chart.", "The chart shows...")
	assert result["overallWritingBand"] == 6.5
	assert result["improvementTips"] == ["Use more linking words"]
	assert "The chart shows..." in model.prompts[0]


async def test_speaking_uses_overall_band_when_criteria_missing():
	model = StubModel({"overallSpeakingBand": 5.5, "improvementTips": []})
	result = await Examiner(client=model).evaluate_speaking("well well I like like music")
	assert result["overallSpeakingBand"] == 5.5
	assert "well I like music" in model.prompts[0]


async def test_unusable_evaluation_raises():
	with pytest.raises(GeminiError):
		await Examiner(client=StubModel({"feedback": "great"})).evaluate_writing("", "text")
	with pytest.raises(GeminiError):
		await Examiner(client=StubModel(["not", "an", "object"])).evaluate_speaking("hello")


async def test_generated_questions_are_normalized_and_filtered():
	model = StubModel({"questions": [
		{"questionType": "multiple_choice", "question": "Where?", "options": ["A) x", "B) y"], "correctAnswer": "B", "orderIndex": 1},
		{"questionType": "fill_blank", "question": "It costs ___ pounds.", "correctAnswer": "twelve"},
		{"questionType": "matching", "question": "Unsupported", "correctAnswer": "A"},
		{"questionType": "short_answer", "question": "No answer given"},
	]})
	questions = await Examiner(client=model).generate_listening_questions("transcript", count=4)
	assert [q["questionType"] for q in questions] == ["multiple_choice", "fill_blank"]
	assert questions[0]["content"] == {"question": "Where?", "options": ["A) x", "B) y"]}
	assert questions[1]["correctAnswers"] == ["twelve"]
	assert questions[1]["orderIndex"] == 2


async def test_generated_order_index_is_never_negative():
	model = StubModel({"questions": [
		{"questionType": "short_answer", "question": "Which pier?", "correctAnswer": "north", "orderIndex": -3},
	]})
	questions = await Examiner(client=model).generate_listening_questions("transcript", count=1)
	assert questions[0]["orderIndex"] == 1


async def test_generation_without_usable_questions_raises():
	with pytest.raises(GeminiError):
		await Examiner(client=StubModel([{"questionType": "matching"}])).generate_listening_questions("t")


async def test_speaking_prompt_requires_text():
	result = await Examiner(client=StubModel({"prompt": " Tell me about your job. ", "variations": ["a", "b"]})).generate_speaking_prompt(1)
	assert result == {"prompt": "Tell me about your job.", "variations": ["a", "b"]}
	with pytest.raises(GeminiError):
		await Examiner(client=StubModel({"prompt": ""})).generate_speaking_prompt(2)

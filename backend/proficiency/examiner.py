# Prompts and response handling for the AI examiner

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from .gemini_client import GeminiClient, GeminiError
from .scoring import SPEAKING_CRITERIA, WRITING_CRITERIA, calculate_subjective_band

logger = logging.getLogger(__name__)

QUESTION_TYPES = ("multiple_choice", "fill_blank", "short_answer", "essay", "speaking_task")


def dedupe_transcript(text: str) -> str:
	"""Collapse repeated 1–3 word phrases and extra whitespace in a transcript.

	Browser speech recognition often repeats phrases where interim and final
	results overlap.
	"""
	s = re.sub(r"\s+", " ", text or "").strip()
	if not s:
		return s
	patterns = [
		(r"\b(\w+\s+\w+\s+\w+)(?:\s+\1\b)+", r"\1"),
		(r"\b(\w+\s+\w+)(?:\s+\1\b)+", r"\1"),
		(r"\b(\w+)(?:\s+\1\b)+", r"\1"),
	]
	for pat, rep in patterns:
		s = re.sub(pat, rep, s, flags=re.IGNORECASE)
	return re.sub(r"\s+", " ", s).strip()


def _writing_prompt(task_prompt: str, candidate_text: str) -> str:
	return f"""
You are an IELTS-certified examiner. Score the writing sample using the IELTS band descriptors.
Give a band (0.0-9.0, half bands allowed) for each criterion: Task Achievement/Response,
Coherence & Cohesion, Lexical Resource, Grammatical Range & Accuracy. For each criterion give a
one or two sentence justification. Add three short improvement tips and the overall writing band
rounded to the nearest 0.5.

Writing prompt:
{task_prompt}

Candidate text:
{candidate_text}

Return STRICT JSON only:
{{
  "taskAchievement": number,
  "coherenceCohesion": number,
  "lexicalResource": number,
  "grammaticalRange": number,
  "overallWritingBand": number,
  "justifications": {{
    "taskAchievement": "...",
    "coherenceCohesion": "...",
    "lexicalResource": "...",
    "grammaticalRange": "..."
  }},
  "improvementTips": ["tip1", "tip2", "tip3"]
}}
""".strip()


def _speaking_prompt(transcript: str, audio_features: Optional[Dict[str, Any]]) -> str:
	features = f"\nAudio features: {json.dumps(audio_features)}\n" if audio_features else ""
	return f"""
You are an experienced IELTS speaking examiner. Evaluate the candidate's spoken response by
scoring Fluency & Coherence, Lexical Resource, Grammatical Range & Accuracy and Pronunciation.
Give a band (0.0-9.0) and a short justification for each, three short improvement tips, and the
overall speaking band rounded to the nearest 0.5.

Transcript:
{transcript}
{features}
Return STRICT JSON only:
{{
  "fluencyCoherence": number,
  "lexicalResource": number,
  "grammaticalRange": number,
  "pronunciation": number,
  "overallSpeakingBand": number,
  "justifications": {{
    "fluencyCoherence": "...",
    "lexicalResource": "...",
    "grammaticalRange": "...",
    "pronunciation": "..."
  }},
  "improvementTips": ["tip1", "tip2", "tip3"]
}}
""".strip()


def _listening_questions_prompt(transcript: str, count: int) -> str:
	return f"""
Based on this audio transcript, write {count} IELTS listening questions of mixed types
(multiple_choice, fill_blank, short_answer) at IELTS Academic level.

Transcript:
{transcript}

Return ONLY a JSON array. Each element has keys: questionType, question, options (array of
"A) ..." strings, multiple_choice only), correctAnswer (letter for multiple_choice, word or
phrase otherwise), orderIndex (1-based).
""".strip()


def _normalize_evaluation(section: str, data: Any) -> Dict[str, Any]:
	if not isinstance(data, dict):
		raise GeminiError(f"{section} evaluation was not a JSON object")
	overall_key = "overallWritingBand" if section == "writing" else "overallSpeakingBand"
	try:
		band = calculate_subjective_band(section, data, fallback=data.get(overall_key))
	except (TypeError, ValueError) as exc:
		raise GeminiError(f"{section} evaluation has no usable band: {exc}") from None
	tips = data.get("improvementTips")
	if not isinstance(tips, list):
		tips = [str(tips)] if tips else []
	data[overall_key] = band
	data["improvementTips"] = [str(t).strip() for t in tips if str(t).strip()]
	data.setdefault("justifications", {})
	return data


def _normalize_question(raw: Dict[str, Any], index: int) -> Optional[Dict[str, Any]]:
	question_type = str(raw.get("questionType") or "").strip()
	text = str(raw.get("question") or "").strip()
	answer = raw.get("correctAnswer")
	if question_type not in QUESTION_TYPES or not text or answer in (None, ""):
		return None
	options = raw.get("options")
	content: Dict[str, Any] = {"question": text}
	if isinstance(options, list) and options:
		content["options"] = [str(o).strip() for o in options]
	try:
		order_index = int(raw.get("orderIndex") or index + 1)
	except (TypeError, ValueError):
		order_index = index + 1
	if order_index < 0:
		order_index = index + 1
	return {
		"questionType": question_type,
		"content": content,
		"correctAnswers": [str(answer).strip()],
		"orderIndex": order_index,
	}


class Examiner:
	provider = "gemini"

	def __init__(self, client: Optional[GeminiClient] = None) -> None:
		self.client = client or GeminiClient()

	async def aclose(self) -> None:
		await self.client.aclose()

	async def evaluate_writing(self, task_prompt: str, candidate_text: str) -> Dict[str, Any]:
		data = await self.client.generate_json(_writing_prompt(task_prompt, candidate_text))
		result = _normalize_evaluation("writing", data)
		missing = [k for k in WRITING_CRITERIA if k not in result]
		if missing:
			logger.warning("Writing evaluation missing criteria %s; using overall band", missing)
		return result

	async def evaluate_speaking(self, transcript: str, audio_features: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
		data = await self.client.generate_json(_speaking_prompt(dedupe_transcript(transcript), audio_features))
		result = _normalize_evaluation("speaking", data)
		missing = [k for k in SPEAKING_CRITERIA if k not in result]
		if missing:
			logger.warning("Speaking evaluation missing criteria %s; using overall band", missing)
		return result

	async def generate_listening_questions(self, transcript: str, count: int = 5) -> List[Dict[str, Any]]:
		data = await self.client.generate_json(_listening_questions_prompt(transcript, count))
		if isinstance(data, dict):
			data = data.get("questions")
		if not isinstance(data, list):
			raise GeminiError("Question generation did not return a JSON array")
		questions = [q for q in (_normalize_question(item, i) for i, item in enumerate(data) if isinstance(item, dict)) if q]
		if not questions:
			raise GeminiError("Question generation returned no usable questions")
		return questions

	async def generate_listening_content(self) -> Dict[str, Any]:
		prompt = """
Generate IELTS Listening practice content with 3 sections of increasing difficulty. Each section
has a title, a realistic 2-3 minute transcript (conversation or monologue) and 3-4 multiple choice
questions with keys id, question, options (four "A) ..." strings) and correct (letter).

Return ONLY JSON: {"sections": [{"title": "...", "transcript": "...", "questions": [...]}]}
""".strip()
		data = await self.client.generate_json(prompt, max_output_tokens=3000, temperature=0.7)
		if not isinstance(data, dict) or not isinstance(data.get("sections"), list):
			raise GeminiError("Listening content did not contain a sections array")
		return data

	async def generate_speaking_prompt(self, part: int, topic: Optional[str] = None, last_response: Optional[str] = None) -> Dict[str, Any]:
		context = {"part": part, "topic": topic, "lastResponse": last_response}
		prompt = (
			f"You are an IELTS speaking examiner in part {part}. Based on the conversation context, "
			"produce a natural follow-up question in examiner style, plus an easier and a harder variation.\n\n"
			f"Context: {json.dumps(context)}\n\n"
			'Return ONLY JSON: {"prompt": "main question", "variations": ["easier", "harder"]}'
		)
		data = await self.client.generate_json(prompt)
		if not isinstance(data, dict) or not str(data.get("prompt") or "").strip():
			raise GeminiError("Speaking prompt generation returned no prompt")
		variations = data.get("variations") if isinstance(data.get("variations"), list) else []
		return {"prompt": str(data["prompt"]).strip(), "variations": [str(v) for v in variations]}

	async def health(self) -> bool:
		await self.client.generate("Reply with the single word: ok", max_output_tokens=5)
		return True

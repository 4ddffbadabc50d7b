from __future__ import annotations
import logging
import re
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from pydantic import Field
from sqlalchemy.orm import Session

from ..db import get_db
from ..examiner import Examiner
from ..gemini_client import GeminiError
from ..models import AiEvaluation, TestSession
from ..progression import Progress, can_enter, parse_section
from ..ratelimit import ai_rate_limit, check_ai_rate
from ..schemas import CamelModel, EvaluationOut, EvaluationResponse
from ..store import SessionStore
from ..transcription import TranscriptionError, transcribe
from ..utils import min_words_for, validate_word_count, word_count_message
from .auth import User, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ai", tags=["ai"])

_TASK_IN_QUESTION_ID = re.compile(r"task[-_ ]?(\d)", re.IGNORECASE)


class ExaminerSlot:
	"""Builds the examiner on first use, after the request has passed its own checks."""

	def __init__(self, examiner: Optional[Examiner] = None) -> None:
		self._examiner = examiner

	def get(self) -> Examiner:
		if self._examiner is None:
			try:
				self._examiner = Examiner()
			except GeminiError as e:
				raise HTTPException(status_code=502, detail=f"AI examiner unavailable: {e}")
		return self._examiner

	async def aclose(self) -> None:
		if self._examiner is not None:
			await self._examiner.aclose()


async def get_examiner() -> AsyncIterator[ExaminerSlot]:
	slot = ExaminerSlot()
	try:
		yield slot
	finally:
		await slot.aclose()


class WritingEvaluationRequest(CamelModel):
	session_id: str
	question_id: str = Field(min_length=1, max_length=64)
	task_prompt: str = ""
	content: str
	task: Optional[int] = None
	idempotency_key: Optional[str] = Field(default=None, max_length=64)


class SpeakingEvaluationRequest(CamelModel):
	session_id: str
	question_id: Optional[str] = Field(default=None, max_length=64)
	transcript: str
	audio_features: Optional[Dict[str, Any]] = None
	idempotency_key: Optional[str] = Field(default=None, max_length=64)


class SpeakingPromptRequest(CamelModel):
	part: int = Field(default=1, ge=1, le=3)
	topic: Optional[str] = None
	last_response: Optional[str] = None


def writing_task(req: WritingEvaluationRequest) -> int:
	if req.task is not None:
		return req.task
	m = _TASK_IN_QUESTION_ID.search(req.question_id)
	if not m:
		raise HTTPException(status_code=400, detail="Cannot tell which writing task this is; send task 1 or 2")
	return int(m.group(1))


def _evaluation_response(row: AiEvaluation, duplicate: bool) -> EvaluationResponse:
	return EvaluationResponse(
		evaluation=EvaluationOut.model_validate(row),
		result=row.raw_response or row.criteria,
		duplicate=duplicate,
	)


def _replayed(store: SessionStore, session: TestSession, key: Optional[str]) -> Optional[EvaluationResponse]:
	existing = store.find_evaluation(key)
	if existing is None:
		return None
	if existing.session_id != session.id:
		raise HTTPException(status_code=409, detail="Idempotency key already used for another session")
	logger.info("Replayed %s evaluation %s for session %s", existing.section, existing.id, session.id)
	return _evaluation_response(existing, True)


def _require_open(session: TestSession, section: str) -> None:
	progress = Progress.from_session(session)
	if not can_enter(parse_section(section), progress):
		raise HTTPException(status_code=409, detail=f"Answers for {section} are closed; session is on {progress.current.value}")


def _feedback(result: Dict[str, Any]) -> str:
	return "; ".join(result.get("improvementTips") or [])


@router.get("/health")
async def health(examiners: ExaminerSlot = Depends(get_examiner)):
	examiner = examiners.get()
	try:
		await examiner.health()
	except GeminiError as e:
		logger.warning("AI health check failed: %s", e)
		raise HTTPException(status_code=502, detail=f"AI provider unhealthy: {e}")
	return {"status": "healthy", "provider": examiner.provider}


# Replays and refused submissions return before the rate limit and the model are touched
@router.post("/evaluate/writing", response_model=EvaluationResponse)
async def evaluate_writing(
	req: WritingEvaluationRequest,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	examiners: ExaminerSlot = Depends(get_examiner),
):
	store = SessionStore(db)
	session = store.require(req.session_id, user)
	replay = _replayed(store, session, req.idempotency_key)
	if replay is not None:
		return replay
	_require_open(session, "writing")

	task = writing_task(req)
	try:
		min_words = min_words_for(task)
	except ValueError as e:
		raise HTTPException(status_code=400, detail=str(e))
	check = validate_word_count(req.content, min_words)
	if not check.is_valid:
		raise HTTPException(status_code=422, detail=word_count_message(task, check))

	check_ai_rate(user)
	examiner = examiners.get()
	try:
		result = await examiner.evaluate_writing(req.task_prompt, req.content)
	except GeminiError as e:
		logger.warning("Writing evaluation failed for session %s: %s", session.id, e)
		raise HTTPException(status_code=502, detail=f"AI evaluation failed: {e}")
	row, duplicate = store.add_evaluation(
		session,
		section="writing",
		question_id=req.question_id,
		result=result,
		band=result["overallWritingBand"],
		feedback=_feedback(result),
		provider=examiner.provider,
		idempotency_key=req.idempotency_key,
	)
	return _evaluation_response(row, duplicate)


@router.post("/evaluate/speaking", response_model=EvaluationResponse)
async def evaluate_speaking(
	req: SpeakingEvaluationRequest,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	examiners: ExaminerSlot = Depends(get_examiner),
):
	store = SessionStore(db)
	session = store.require(req.session_id, user)
	replay = _replayed(store, session, req.idempotency_key)
	if replay is not None:
		return replay
	_require_open(session, "speaking")
	if not req.transcript.strip():
		raise HTTPException(status_code=400, detail="transcript is required")

	check_ai_rate(user)
	examiner = examiners.get()
	try:
		result = await examiner.evaluate_speaking(req.transcript, req.audio_features)
	except GeminiError as e:
		logger.warning("Speaking evaluation failed for session %s: %s", session.id, e)
		raise HTTPException(status_code=502, detail=f"AI evaluation failed: {e}")
	row, duplicate = store.add_evaluation(
		session,
		section="speaking",
		question_id=req.question_id,
		result=result,
		band=result["overallSpeakingBand"],
		feedback=_feedback(result),
		provider=examiner.provider,
		idempotency_key=req.idempotency_key,
	)
	return _evaluation_response(row, duplicate)


@router.post("/listening/generate")
async def generate_listening(user: User = Depends(ai_rate_limit), examiners: ExaminerSlot = Depends(get_examiner)):
	try:
		return await examiners.get().generate_listening_content()
	except GeminiError as e:
		raise HTTPException(status_code=502, detail=f"Listening generation failed: {e}")


@router.post("/speaking/prompt")
async def speaking_prompt(req: SpeakingPromptRequest, user: User = Depends(ai_rate_limit), examiners: ExaminerSlot = Depends(get_examiner)):
	try:
		return await examiners.get().generate_speaking_prompt(req.part, req.topic, req.last_response)
	except GeminiError as e:
		raise HTTPException(status_code=502, detail=f"Speaking prompt generation failed: {e}")


@router.post("/transcribe")
async def transcribe_audio(audio: UploadFile = File(...), user: User = Depends(ai_rate_limit)):
	content = await audio.read()
	if not content:
		raise HTTPException(status_code=400, detail="Empty audio payload received")
	try:
		return await run_in_threadpool(transcribe, content, audio.content_type or "audio/webm")
	except TranscriptionError as e:
		logger.warning("Transcription failed for %s: %s", user.username, e)
		raise HTTPException(status_code=502, detail=str(e))
